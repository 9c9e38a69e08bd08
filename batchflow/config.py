"""
ProjectConfig: Project-level configuration loader for batchflow.

This module provides:

- find_config_file: Walk up directories to locate .batchflow.toml
- deep_merge: Recursively merge two dicts (override wins for leaf values)
- ProjectInfo: Typed project metadata
- Profile: A named cluster profile (partition, resources, engine, ...)
- ResolvedConfig: Fully resolved settings for one profile
- ProjectConfig: Main config object with load/resolve interface
- resolve_config: Load and resolve, tolerating a missing config file

Configuration is loaded from `.batchflow.toml` with optional
`.batchflow.local.toml` overrides. The resolution order is:

    [defaults] → [profiles.NAME] → local overrides → command line flags

Example:
    >>> config = ProjectConfig.load()
    >>> resolved = config.resolve("cluster")
    >>> resolved.resources.partition
    'normal'
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from batchflow.errors import ConfigurationError
from batchflow.types import EngineSpec, ResourceSpec

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".batchflow.toml"
LOCAL_CONFIG_FILENAME = ".batchflow.local.toml"


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """
    Walk up from *start_dir* to find `.batchflow.toml`.

    Args:
        start_dir: Directory to start searching from. Defaults to ``Path.cwd()``.

    Returns:
        Path to the config file, or ``None`` if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate

        parent = current.parent
        if parent == current:
            return None
        current = parent


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep-merge two dicts. *override* wins for leaf values.

    Nested dicts are merged recursively; neither input is mutated.

    Args:
        base: The base dictionary.
        override: The override dictionary whose values take precedence.

    Returns:
        A new merged dictionary.
    """
    merged: dict[str, Any] = dict(base)
    for key, over_val in override.items():
        base_val = merged.get(key)
        if isinstance(base_val, dict) and isinstance(over_val, dict):
            merged[key] = deep_merge(base_val, over_val)
        else:
            merged[key] = over_val
    return merged


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectInfo:
    """
    Typed project metadata from the ``[project]`` table.

    Attributes:
        name: Human-readable project name.
        default_profile: Profile resolved when none is given explicitly.
    """

    name: str = ""
    default_profile: str | None = None


@dataclass(frozen=True)
class Profile:
    """
    A named profile from ``[profiles.NAME]``.

    Attributes:
        name: Profile name.
        settings: Every key/value pair of the profile section, including the
            ``engine`` sub-table.
    """

    name: str
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedConfig:
    """
    Fully resolved settings for one profile.

    Produced by :meth:`ProjectConfig.resolve`. All layers (defaults,
    profile, local overrides) have been merged into ``settings``.

    Attributes:
        project: Project metadata.
        profile_name: The resolved profile, or None when only defaults apply.
        settings: Merged settings.
        source: Config file the settings came from, if any.
    """

    project: ProjectInfo = field(default_factory=ProjectInfo)
    profile_name: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    source: Path | None = None

    def get(self, key: str, default: Any = None) -> Any:
        """Return a top-level setting."""
        return self.settings.get(key, default)

    @property
    def resources(self) -> ResourceSpec:
        """Resource request built from the resolved settings."""
        return ResourceSpec.from_dict(self.settings)

    @property
    def engine(self) -> EngineSpec:
        """Engine invocation from the ``engine`` sub-table."""
        return EngineSpec.from_dict(self.settings.get("engine", {}))

    @property
    def strategy(self) -> str | None:
        return self.settings.get("strategy")

    @property
    def max_concurrent(self) -> int | None:
        value = self.settings.get("max_concurrent")
        return int(value) if value is not None else None


@dataclass
class ProjectConfig:
    """
    Main project configuration loaded from ``.batchflow.toml``.

    Typical usage::

        config = ProjectConfig.load()
        resolved = config.resolve()           # uses default_profile
        resolved = config.resolve("cluster")  # explicit profile
    """

    project: ProjectInfo
    defaults: dict[str, Any]
    profiles: dict[str, Profile]
    source: Path | None = None
    _local_overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, start_dir: Path | None = None) -> ProjectConfig:
        """
        Find and load project configuration.

        Walks up from *start_dir* (default: cwd) to locate ``.batchflow.toml``
        and deep-merges ``.batchflow.local.toml`` from the same directory.

        Raises:
            FileNotFoundError: If no ``.batchflow.toml`` is found.
            ConfigurationError: If a config file is not valid TOML.
        """
        config_path = find_config_file(start_dir)
        if config_path is None:
            raise FileNotFoundError(
                f"Could not find {CONFIG_FILENAME} in {start_dir or Path.cwd()} "
                f"or any parent directory"
            )

        data = _read_toml(config_path)
        local_overrides: dict[str, Any] = {}
        local_path = config_path.parent / LOCAL_CONFIG_FILENAME
        if local_path.is_file():
            local_overrides = _read_toml(local_path)

        config = cls.from_dict(data, local_overrides=local_overrides)
        config.source = config_path
        return config

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        local_overrides: dict[str, Any] | None = None,
    ) -> ProjectConfig:
        """
        Create a :class:`ProjectConfig` from a parsed TOML dict.

        Args:
            data: Parsed TOML data (from the base config file).
            local_overrides: Optional parsed TOML data from the local override
                file, applied during :meth:`resolve`.
        """
        project_raw = data.get("project", {})
        project = ProjectInfo(
            name=project_raw.get("name", ""),
            default_profile=project_raw.get("default_profile"),
        )
        profiles = {
            name: Profile(name=name, settings=dict(raw))
            for name, raw in data.get("profiles", {}).items()
        }
        return cls(
            project=project,
            defaults=dict(data.get("defaults", {})),
            profiles=profiles,
            _local_overrides=local_overrides or {},
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, profile_name: str | None = None) -> ResolvedConfig:
        """
        Resolve a profile into flat settings.

        Merging order:

        1. ``[defaults]``
        2. ``[profiles.NAME]``
        3. Local ``[defaults]`` then local ``[profiles.NAME]``

        If *profile_name* is ``None``, ``project.default_profile`` is used
        (the local file may override it). With no profile at all, only the
        defaults apply.

        Raises:
            ConfigurationError: If the requested profile does not exist.
        """
        local_project = self._local_overrides.get("project", {})
        project = ProjectInfo(
            name=local_project.get("name", self.project.name),
            default_profile=local_project.get(
                "default_profile", self.project.default_profile
            ),
        )
        profile_name = profile_name or project.default_profile

        settings = dict(self.defaults)
        settings = deep_merge(settings, self._local_overrides.get("defaults", {}))

        if profile_name is not None:
            if profile_name not in self.profiles:
                available = ", ".join(sorted(self.profiles)) or "(none)"
                raise ConfigurationError(
                    f"Unknown profile {profile_name!r}. Available profiles: {available}"
                )
            settings = deep_merge(settings, self.profiles[profile_name].settings)
            local_profile = self._local_overrides.get("profiles", {}).get(profile_name, {})
            settings = deep_merge(settings, local_profile)

        return ResolvedConfig(
            project=project,
            profile_name=profile_name,
            settings=settings,
            source=self.source,
        )

    def list_profiles(self) -> list[str]:
        """Sorted profile names."""
        return sorted(self.profiles)


def resolve_config(
    profile_name: str | None = None,
    start_dir: Path | None = None,
) -> ResolvedConfig:
    """
    Load ``.batchflow.toml`` (if any) and resolve a profile.

    A missing config file is not an error: built-in defaults apply, unless
    a profile was requested by name.

    Raises:
        ConfigurationError: If a named profile cannot be resolved.
    """
    try:
        config = ProjectConfig.load(start_dir)
    except FileNotFoundError:
        if profile_name:
            raise ConfigurationError(
                f"Profile {profile_name!r} requested but no {CONFIG_FILENAME} was found"
            ) from None
        logger.debug(f"No {CONFIG_FILENAME} found; using built-in defaults")
        return ResolvedConfig()

    resolved = config.resolve(profile_name)
    logger.info(
        f"Loaded {config.source} [profile: {resolved.profile_name or 'defaults'}] "
        f"({len(resolved.settings)} settings)"
    )
    return resolved
