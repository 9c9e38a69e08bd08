"""Tests for batchflow.descriptor: array ranges and sbatch script rendering."""

from __future__ import annotations

import json
import os

import pytest

from batchflow.descriptor import (
    ArrayRange,
    DescriptorGenerator,
    IndexResolved,
    StaticName,
    array_range,
)
from batchflow.types import EngineSpec, ResourceSpec, RunContext, SubmissionKind, TaskList


class TestArrayRange:
    @pytest.mark.parametrize("n", range(2, 8))
    @pytest.mark.parametrize("cap", [1, 2, 3, 5, 10])
    def test_effective_cap_is_min_of_cap_and_count(self, n, cap):
        rng = array_range(n, cap)
        assert rng is not None
        assert rng.max_concurrency == min(cap, n)
        assert str(rng) == f"1-{n}%{min(cap, n)}"

    @pytest.mark.parametrize("cap", [None, 0, 3])
    def test_single_task_has_no_array(self, cap):
        assert array_range(1, cap) is None

    @pytest.mark.parametrize("cap", [None, 0, -1])
    def test_no_cap(self, cap):
        assert str(array_range(4, cap)) == "1-4"

    def test_count(self):
        assert ArrayRange(1, 5).count == 5


class TestDescriptors:
    def test_array_descriptor_resolves_by_index(self, generator: DescriptorGenerator):
        desc = generator.array_descriptor(TaskList.parse("s1,s2,s3"), 2)
        assert desc.mode is SubmissionKind.ARRAY
        assert isinstance(desc.task_binding, IndexResolved)
        assert str(desc.array_range) == "1-3%2"
        assert desc.unit_count == 3

    def test_single_task_array_binds_statically(self, generator: DescriptorGenerator):
        desc = generator.array_descriptor(TaskList.parse("only"), 4)
        assert desc.array_range is None
        assert desc.task_binding == StaticName("only")
        assert desc.unit_count == 1

    def test_individual_descriptor(self, generator: DescriptorGenerator):
        desc = generator.individual_descriptor("sample 1")
        assert desc.mode is SubmissionKind.INDIVIDUAL
        assert desc.task_binding == StaticName("sample 1")
        assert desc.job_name == "batchflow-sample_1"


class TestRender:
    def test_array_script(self, generator: DescriptorGenerator):
        desc = generator.array_descriptor(TaskList.parse("s1,s2,s3"), 2)
        script = generator.render(desc)
        lines = script.splitlines()

        assert lines[0] == "#!/bin/bash"
        assert "#SBATCH --array=1-3%2" in lines
        assert "#SBATCH --partition=normal" in lines
        assert "#SBATCH --time=02:00:00" in lines
        assert "#SBATCH --cpus-per-task=2" in lines
        assert "#SBATCH --mem-per-cpu=2G" in lines
        assert "#SBATCH --no-requeue" in lines
        assert any(line.endswith("%A_%a.out") for line in lines)
        assert "--task" not in script
        assert "batchflow.worker" in script
        assert "set -e" not in script
        assert lines[-1] == "exit $?"

    def test_individual_script_passes_task(self, generator: DescriptorGenerator):
        script = generator.render(generator.individual_descriptor("s1"))
        assert "--array" not in script
        assert "--task s1" in script
        assert "%x_%j.out" in script

    def test_optional_directives(self, context):
        gen = DescriptorGenerator(
            ResourceSpec(
                account="lab",
                java_module="java/17",
                setup=("source /opt/env.sh",),
                extra_sbatch={"gres": "gpu:1", "mail_type": "FAIL"},
            ),
            context,
        )
        script = gen.render(gen.individual_descriptor("s1"))
        assert "#SBATCH --account=lab" in script
        assert "#SBATCH --gres=gpu:1" in script
        assert "#SBATCH --mail-type=FAIL" in script
        assert "module load java/17" in script
        assert script.index("source /opt/env.sh") < script.index("batchflow.worker")

    def test_account_omitted_by_default(self, generator: DescriptorGenerator):
        assert "--account" not in generator.render(generator.individual_descriptor("s1"))

    def test_log_paths_with_spaces_are_quoted(self, tmp_path):
        context = RunContext.create(run_base=tmp_path / "my runs", run_id="run1")
        gen = DescriptorGenerator(ResourceSpec(), context)
        lines = gen.render(gen.array_descriptor(TaskList.parse("s1,s2"))).splitlines()
        assert f'#SBATCH --output="{context.logs_dir}/%A_%a.out"' in lines
        assert f'#SBATCH --error="{context.logs_dir}/%A_%a.err"' in lines

    def test_plain_log_paths_are_unquoted(self, generator: DescriptorGenerator, context):
        lines = generator.render(generator.individual_descriptor("s1")).splitlines()
        assert f"#SBATCH --output={context.logs_dir}/%x_%j.out" in lines


class TestArtifacts:
    def test_write_script(self, generator: DescriptorGenerator, context):
        path = generator.write_script(generator.individual_descriptor("s1"))
        assert path.parent == context.scripts_dir
        assert path.name.startswith("task_s1_")
        assert path.suffix == ".sbatch"
        assert path.read_text().startswith("#!/bin/bash")
        assert os.access(path, os.X_OK)
        assert context.logs_dir.is_dir()

    def test_array_script_path(self, generator: DescriptorGenerator, context):
        desc = generator.array_descriptor(TaskList.parse("a,b"))
        assert generator.script_path(desc) == context.scripts_dir / "array.sbatch"

    def test_names_that_sanitize_alike_get_distinct_scripts(self, generator: DescriptorGenerator):
        paths = {
            generator.script_path(generator.individual_descriptor(name))
            for name in ("a b", "a_b", "a:b")
        }
        assert len(paths) == 3

    def test_script_path_is_stable(self, generator: DescriptorGenerator):
        first = generator.script_path(generator.individual_descriptor("s1"))
        assert generator.script_path(generator.individual_descriptor("s1")) == first

    def test_write_run_spec(self, context):
        gen = DescriptorGenerator(ResourceSpec(), context, engine=EngineSpec(pipeline="x.nf"))
        path = gen.write_run_spec(TaskList.parse("s1,s2"))

        spec = json.loads(path.read_text())
        assert spec["task_list"] == str(context.task_list_path)
        assert spec["task_count"] == 2
        assert spec["work_base"] == str(context.work_base)
        assert spec["engine"]["pipeline"] == "x.nf"
        assert context.task_list_path.read_text() == "s1\ns2\n"
