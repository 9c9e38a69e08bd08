"""Tests for batchflow.types: task lists, specs and the run context."""

from __future__ import annotations

from pathlib import Path

import pytest

from batchflow.errors import ConfigurationError, TaskResolutionError
from batchflow.types import EngineSpec, ResourceSpec, RunContext, TaskList


class TestTaskList:
    def test_parse_trims_and_drops_empty(self):
        assert TaskList.parse("a, b,,  c ").names == ("a", "b", "c")

    def test_duplicates_collapse_keeping_first(self):
        assert TaskList.parse("s2,s1,s2,s3,s1").names == ("s2", "s1", "s3")

    def test_direct_construction_rejects_duplicates(self):
        with pytest.raises(ConfigurationError):
            TaskList(("a", "a"))

    @pytest.mark.parametrize("name", ["../x", "/abs/path", "..", ".", "a/b", "a\\b"])
    def test_rejects_names_that_are_not_one_path_component(self, name):
        with pytest.raises(ConfigurationError, match="single path component"):
            TaskList((name,))

    def test_parse_rejects_escaping_names(self):
        with pytest.raises(ConfigurationError):
            TaskList.parse("s1,../../escaped")

    def test_dots_inside_names_are_allowed(self):
        assert TaskList.parse("s1.v2,..hidden").names == ("s1.v2", "..hidden")

    def test_name_at_is_one_based(self):
        tasks = TaskList.parse("x,y,z")
        assert tasks.name_at(1) == "x"
        assert tasks.name_at(3) == "z"

    @pytest.mark.parametrize("index", [0, 4, -1])
    def test_name_at_out_of_range(self, index):
        with pytest.raises(TaskResolutionError):
            TaskList.parse("x,y,z").name_at(index)

    def test_write_and_read(self, tmp_path: Path):
        path = TaskList.parse("s1,s2").write(tmp_path / "tasks.txt")
        assert path.read_text() == "s1\ns2\n"
        assert TaskList.read(path).names == ("s1", "s2")

    def test_len_and_iter(self):
        tasks = TaskList.parse("a,b")
        assert len(tasks) == 2
        assert list(tasks) == ["a", "b"]


class TestResourceSpec:
    def test_defaults(self):
        spec = ResourceSpec()
        assert spec.cpus == 1
        assert spec.account is None

    def test_from_dict_ignores_unrelated_keys(self):
        spec = ResourceSpec.from_dict(
            {"partition": "gpu", "cpus": "4", "strategy": "array", "setup": "source env.sh"}
        )
        assert spec.partition == "gpu"
        assert spec.cpus == 4
        assert spec.setup == ("source env.sh",)


class TestEngineSpec:
    def test_render_command(self, tmp_path: Path):
        engine = EngineSpec(pipeline="nf-core/rnaseq", profile="singularity")
        work = tmp_path / "work" / "s1"
        out = tmp_path / "out" / "s1"
        cmd = engine.render_command("s1", workdir=work, outdir=out)
        assert cmd[:3] == ["nextflow", "run", "nf-core/rnaseq"]
        assert cmd[3:5] == ["-profile", "singularity"]
        assert cmd[5:9] == ["--task", "s1", "--outdir", str(out)]
        assert cmd[-6:] == [
            "-with-report", str(work / "report.html"),
            "-with-trace", str(work / "trace.txt"),
            "-with-timeline", str(work / "timeline.html"),
        ]

    def test_from_dict_splits_strings(self):
        engine = EngineSpec.from_dict({"command": "nf run", "args": "--sample {task}"})
        assert engine.command == ("nf", "run")
        assert engine.args == ("--sample", "{task}")

    def test_dict_round_trip(self):
        engine = EngineSpec(pipeline="main.nf", profile="test")
        assert EngineSpec.from_dict(engine.to_dict()) == engine


class TestRunContext:
    def test_create_derives_paths(self, tmp_path: Path):
        ctx = RunContext.create(run_base=tmp_path, run_id="r1")
        assert ctx.run_dir == tmp_path.resolve() / "r1"
        assert ctx.work_base == ctx.run_dir / "work"
        assert ctx.output_base == ctx.run_dir / "output"
        assert ctx.task_list_path.name == "tasks.txt"
        assert ctx.registry_path.name == "job_registry.txt"
        assert ctx.run_spec_path.name == "run_spec.json"

    def test_generated_run_ids_differ(self, tmp_path: Path):
        a = RunContext.create(run_base=tmp_path)
        b = RunContext.create(run_base=tmp_path)
        assert a.run_id != b.run_id

    def test_is_immutable(self, tmp_path: Path):
        ctx = RunContext.create(run_base=tmp_path, run_id="r1")
        with pytest.raises(AttributeError):
            ctx.run_id = "other"  # type: ignore[misc]
