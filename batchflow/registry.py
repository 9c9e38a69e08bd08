"""
Job registry: the handoff record between submission and monitoring.

A run's registry is a single line ``KIND:ID[,ID...]:RUN_DIR``:

    ARRAY:812345:/scratch/runs/20250101_120000_ab12cd
    INDIVIDUAL:812346,812347:/scratch/runs/20250101_120000_ab12cd

It is written once by the submission strategy and read by the monitor,
possibly in a later process. Monitor-only invocations can also synthesize
a record straight from scheduler ids.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from batchflow.errors import RegistryFormatError
from batchflow.types import SubmissionKind

logger = logging.getLogger(__name__)

UNKNOWN_RUN_DIR = "unknown"

_JOB_ID_RE = re.compile(r"^\d+(_\d+)?$")


@dataclass(frozen=True)
class JobRegistryRecord:
    """
    What was submitted, and where the run lives.

    Attributes:
        kind: ARRAY (one parent id) or INDIVIDUAL (one id per task).
        ids: Scheduler ids, in registry order.
        run_dir: Run directory as written, or "unknown" for re-attached jobs.
    """

    kind: SubmissionKind
    ids: tuple[str, ...]
    run_dir: str

    def __post_init__(self) -> None:
        if not self.ids:
            raise RegistryFormatError("Registry record has no job ids")
        for job_id in self.ids:
            if not _JOB_ID_RE.match(job_id):
                raise RegistryFormatError(f"Invalid job id in registry: {job_id!r}")
        if self.kind is SubmissionKind.ARRAY and len(self.ids) != 1:
            raise RegistryFormatError(
                f"ARRAY record must have exactly one id, got {len(self.ids)}"
            )
        if not self.run_dir or "\n" in self.run_dir:
            raise RegistryFormatError(f"Invalid run directory: {self.run_dir!r}")

    @property
    def run_path(self) -> Path | None:
        """Run directory as a Path, or None when it is unknown."""
        if self.run_dir == UNKNOWN_RUN_DIR:
            return None
        return Path(self.run_dir)

    # -- codec ---------------------------------------------------------------

    def encode(self) -> str:
        """Serialize to ``KIND:ID[,ID...]:RUN_DIR``."""
        return f"{self.kind.value}:{','.join(self.ids)}:{self.run_dir}"

    @classmethod
    def decode(cls, line: str) -> JobRegistryRecord:
        """
        Parse a registry line.

        Only the first two colons separate fields, so run directories that
        contain colons survive the round trip.

        Raises:
            RegistryFormatError: If the line is not a valid record.
        """
        line = line.strip()
        parts = line.split(":", 2)
        if len(parts) != 3:
            raise RegistryFormatError(
                f"Expected KIND:ID[,ID...]:RUN_DIR, got {line!r}"
            )
        raw_kind, raw_ids, run_dir = parts
        try:
            kind = SubmissionKind(raw_kind.strip().upper())
        except ValueError:
            raise RegistryFormatError(
                f"Unknown job kind {raw_kind!r} (expected ARRAY or INDIVIDUAL)"
            ) from None
        ids = tuple(i.strip() for i in raw_ids.split(",") if i.strip())
        return cls(kind=kind, ids=ids, run_dir=run_dir)

    # -- constructors --------------------------------------------------------

    @classmethod
    def from_existing_ids(
        cls, raw_ids: str | Iterable[str], run_dir: str | Path | None = None
    ) -> JobRegistryRecord:
        """
        Build a record for jobs submitted outside this process.

        A comma-separated list means one job per task (INDIVIDUAL); a single
        id is taken to be an array parent (ARRAY).

        Example:
            >>> JobRegistryRecord.from_existing_ids("55").encode()
            'ARRAY:55:unknown'
        """
        if isinstance(raw_ids, str):
            has_comma = "," in raw_ids
            ids = tuple(i.strip() for i in raw_ids.split(",") if i.strip())
        else:
            ids = tuple(raw_ids)
            has_comma = len(ids) > 1
        kind = SubmissionKind.INDIVIDUAL if has_comma else SubmissionKind.ARRAY
        return cls(
            kind=kind,
            ids=ids,
            run_dir=str(run_dir) if run_dir else UNKNOWN_RUN_DIR,
        )

    # -- persistence ---------------------------------------------------------

    def write(self, path: Path | str) -> Path:
        """Write the record as a single line."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.encode() + "\n")
        logger.info(f"Wrote job registry {path}: {self.encode()}")
        return path

    @classmethod
    def read(cls, path: Path | str) -> JobRegistryRecord:
        """
        Read a record written by write() (or by hand).

        Blank lines and ``#`` comments are ignored; exactly one record line
        must remain.

        Raises:
            FileNotFoundError: If the file does not exist.
            RegistryFormatError: If the content is not exactly one valid record.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(
                f"No job registry found at {path}. "
                "Cannot monitor without a registry or explicit job ids."
            )
        lines = [
            line.strip()
            for line in path.read_text().splitlines()
            if line.strip() and not line.lstrip().startswith("#")
        ]
        if len(lines) != 1:
            raise RegistryFormatError(
                f"Job registry {path} must contain exactly one record, found {len(lines)}"
            )
        return cls.decode(lines[0])
