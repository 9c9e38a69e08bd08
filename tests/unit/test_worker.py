"""Tests for the task runner invoked inside each unit."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from batchflow import worker
from batchflow.errors import TaskResolutionError
from batchflow.types import TaskList


@pytest.fixture
def spec(tmp_path: Path) -> dict:
    task_list = TaskList.parse("s1,s2,s3").write(tmp_path / "tasks.txt")
    return {
        "run_id": "run1",
        "task_list": str(task_list),
        "task_count": 3,
        "work_base": str(tmp_path / "work"),
        "output_base": str(tmp_path / "output"),
        "engine": {"command": ["nextflow", "run"], "pipeline": "main.nf"},
    }


@pytest.fixture
def spec_path(tmp_path: Path, spec: dict) -> Path:
    path = tmp_path / "run_spec.json"
    path.write_text(json.dumps(spec))
    return path


class TestResolveTask:
    def test_explicit_task_wins(self, spec):
        assert worker.resolve_task(spec, "s9", {"SLURM_ARRAY_TASK_ID": "1"}) == "s9"

    def test_array_index_is_one_based(self, spec):
        assert worker.resolve_task(spec, None, {"SLURM_ARRAY_TASK_ID": "1"}) == "s1"
        assert worker.resolve_task(spec, None, {"SLURM_ARRAY_TASK_ID": "3"}) == "s3"

    @pytest.mark.parametrize(
        "environ",
        [
            {},
            {"SLURM_ARRAY_TASK_ID": "two"},
            {"SLURM_ARRAY_TASK_ID": "0"},
            {"SLURM_ARRAY_TASK_ID": "4"},
        ],
    )
    def test_unresolvable(self, spec, environ):
        with pytest.raises(TaskResolutionError):
            worker.resolve_task(spec, None, environ)

    def test_missing_task_list(self, spec, tmp_path):
        spec["task_list"] = str(tmp_path / "gone.txt")
        with pytest.raises(TaskResolutionError, match="not found"):
            worker.resolve_task(spec, None, {"SLURM_ARRAY_TASK_ID": "1"})


class TestRunTask:
    def test_runs_engine_in_task_workdir(self, spec, tmp_path):
        with patch("batchflow.worker.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0)
            assert worker.run_task(spec, "s2") == 0

        cmd = mock_run.call_args.args[0]
        cwd = mock_run.call_args.kwargs["cwd"]
        assert cwd == tmp_path / "work" / "s2"
        assert cwd.is_dir()
        assert (tmp_path / "output" / "s2").is_dir()
        assert cmd[:3] == ["nextflow", "run", "main.nf"]
        assert str(cwd / "trace.txt") in cmd

    def test_propagates_engine_exit_code(self, spec):
        with patch("batchflow.worker.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 42)
            assert worker.run_task(spec, "s1") == 42

    def test_missing_engine(self, spec):
        with patch("batchflow.worker.subprocess.run", side_effect=FileNotFoundError("nextflow")):
            assert worker.run_task(spec, "s1") == worker.EXIT_ENGINE_NOT_FOUND

    @pytest.mark.parametrize("task", ["../../escaped", "..", "a/b"])
    def test_task_outside_bases_is_refused(self, spec, tmp_path, task):
        with patch("batchflow.worker.subprocess.run") as mock_run:
            assert worker.run_task(spec, task) == worker.EXIT_TASK_RESOLUTION
        mock_run.assert_not_called()
        assert not (tmp_path.parent / "escaped").exists()
        assert not (tmp_path / "work").exists()

    def test_task_dir(self, tmp_path):
        assert worker.task_dir(tmp_path, "s1") == tmp_path / "s1"
        with pytest.raises(TaskResolutionError):
            worker.task_dir(tmp_path, "../s1")


class TestMain:
    def test_unresolvable_index_exits_3(self, spec_path, monkeypatch):
        monkeypatch.setenv("SLURM_ARRAY_TASK_ID", "9")
        assert worker.main(["--spec", str(spec_path)]) == worker.EXIT_TASK_RESOLUTION

    def test_resolves_from_environment(self, spec_path, monkeypatch):
        seen = []
        monkeypatch.setenv("SLURM_ARRAY_TASK_ID", "2")
        monkeypatch.setattr(worker, "run_task", lambda spec, task: seen.append(task) or 0)
        assert worker.main(["--spec", str(spec_path)]) == 0
        assert seen == ["s2"]
