"""Integration tests for complete runs with mocked external tools.

Every external tool is replaced by ``FakeToolExecutor``, which emulates the
partitioner, diff encoder, inference, tree export and rerooting on plain
files, so these tests exercise the real stage graph, task runner and
checkpoint chain end to end.
"""

import json
from pathlib import Path

import pandas as pd
import pytest

from matpipe.pipeline import run_pipeline
from matpipe.pipeline_core import MODE_UPDATE
from matpipe.pipeline_core.error_handling import (
    DEPENDENCY_MISSING,
    DependencyMissingError,
    StageExecutionError,
    TaskFailedError,
)
from matpipe.trees import leaf_names
from tests.mocks import (
    OUTGROUP,
    FakeToolExecutor,
    create_full_build_inputs,
    create_test_config,
    create_update_inputs,
    new_names,
    read_checkpoint,
    seed_leaves,
)

pytestmark = pytest.mark.integration


def _option(command, flag):
    return command[command.index(flag) + 1]


@pytest.fixture
def full_build(tmp_path):
    """Config for a full build: 10 seed leaves, 5 new sequences, batches of 2."""

    def _make(**overrides):
        inputs = create_full_build_inputs(tmp_path / "in", seed_count=10, new_count=5)
        overrides.setdefault("batch_size", 2)
        return create_test_config(tmp_path / "out", **inputs, **overrides)

    return _make


class TestFullBuild:
    """A full build from a seed tree."""

    def test_all_batches_applied(self, full_build):
        fake = FakeToolExecutor()
        config = full_build()

        context = run_pipeline(config, executor=fake)

        assert [b.size for b in context.batches] == [2, 2, 1]
        assert fake.task_names("infer.") == [
            "infer.batch_0000",
            "infer.batch_0001",
            "infer.batch_0002",
        ]
        assert context.threading_result.applied == [0, 1, 2]
        assert context.threading_result.skipped == []

        final_leaves = context.final_tree.leaf_names()
        assert len(final_leaves) == 15
        assert set(final_leaves) == set(seed_leaves(10) + new_names(5))

        out = Path(config["output_dir"])
        assert (out / "2024-05-01.final.pb").exists()
        rooted = out / "2024-05-01.rooted.nwk"
        assert rooted.exists()
        assert leaf_names(rooted.read_text())[0] == OUTGROUP

    def test_tool_call_order(self, full_build):
        fake = FakeToolExecutor()

        run_pipeline(full_build(), executor=fake)

        names = [call[0] for call in fake.calls]
        assert names[0] == "partition"
        assert names.index("encode.seed") < names.index("initial_build")
        assert names.index("initial_build") < names.index("infer.batch_0000")
        assert names[-1] == "reroot"

    def test_summary_files(self, full_build):
        config = full_build()

        context = run_pipeline(config, executor=FakeToolExecutor())

        table = pd.read_csv(context.summary_paths["tsv"], sep="\t")
        assert table["outcome"].tolist() == ["applied", "applied", "applied"]
        with open(context.summary_paths["json"]) as f:
            summary = json.load(f)
        assert summary["status"] == "completed"
        assert summary["mode"] == "full"

    def test_intermediates_removed_after_clean_run(self, full_build):
        config = full_build()

        context = run_pipeline(config, executor=FakeToolExecutor())

        assert not context.workspace.intermediate_dir.exists()
        assert context.workspace.get_checkpoint_path(2).exists()
        assert any(context.workspace.log_dir.iterdir())

    def test_keep_intermediates(self, full_build):
        config = full_build(keep_intermediates=True)

        context = run_pipeline(config, executor=FakeToolExecutor())

        assert context.workspace.get_batch_path(0, ".fa").exists()
        assert context.workspace.get_batch_path(0, ".vcf").exists()

    def test_memory_kills_retried_with_larger_budget(self, full_build):
        fake = FakeToolExecutor(kills={"encode.batch_0002": {1}, "partition": {1}})

        context = run_pipeline(full_build(), executor=fake)

        encode_budgets = [call[2] for call in fake.calls_for("encode.batch_0002")]
        assert encode_budgets == [6000, 10000]
        partition_budgets = [call[2] for call in fake.calls_for("partition")]
        assert partition_budgets == [4000, 6000]
        assert context.threading_result.applied == [0, 1, 2]


class TestIncrementalUpdate:
    """An update of an existing checkpoint."""

    def test_single_batch_update(self, tmp_path):
        inputs = create_update_inputs(tmp_path / "in", tree_count=10, new_count=3)
        config = create_test_config(tmp_path / "out", mode=MODE_UPDATE, batch_size=10, **inputs)
        fake = FakeToolExecutor()

        context = run_pipeline(config, executor=fake)

        assert fake.calls_for("tree_export")
        assert fake.task_names("initial_build") == []
        assert fake.task_names("infer.") == ["infer.batch_0000"]
        command = fake.calls_for("infer.batch_0000")[0][3]
        assert _option(command, "-i") == str(inputs["checkpoint"])
        assert len(context.final_tree.leaf_names()) == 13
        assert context.rooted_tree.path.exists()

    def test_update_with_existing_tree_skips_export(self, tmp_path):
        inputs = create_update_inputs(tmp_path / "in", tree_count=10, new_count=3)
        tree = tmp_path / "in" / "previous.nwk"
        tree.write_text(f"({','.join(seed_leaves(10))});\n")
        config = create_test_config(
            tmp_path / "out", mode=MODE_UPDATE, existing_tree=str(tree), **inputs
        )
        fake = FakeToolExecutor()

        context = run_pipeline(config, executor=fake)

        assert fake.calls_for("tree_export") == []
        assert context.threading_result.applied == [0]

    def test_update_without_new_sequences(self, tmp_path):
        inputs = create_update_inputs(tmp_path / "in", tree_count=10, new_count=0)
        config = create_test_config(tmp_path / "out", mode=MODE_UPDATE, **inputs)
        fake = FakeToolExecutor()

        context = run_pipeline(config, executor=fake)

        assert context.batches == []
        assert fake.task_names("infer.") == []
        assert read_checkpoint(context.final_checkpoint.path) == read_checkpoint(
            inputs["checkpoint"]
        )


class TestFailures:
    """Runs that stop or degrade."""

    def test_outgroup_absent(self, full_build):
        config = full_build(outgroup="Nowhere/X-1/2020")
        fake = FakeToolExecutor()

        with pytest.raises(DependencyMissingError) as exc_info:
            run_pipeline(config, executor=fake)

        assert exc_info.value.classification == DEPENDENCY_MISSING
        assert exc_info.value.stage == "reroot"
        out = Path(config["output_dir"])
        assert not (out / "2024-05-01.rooted.nwk").exists()
        assert (out / "2024-05-01.final.nwk").exists()
        assert fake.calls_for("reroot") == []

    def test_batch_skipped_after_memory_retries(self, full_build):
        config = full_build(tasks={"infer": {"max_attempts": 2}})
        fake = FakeToolExecutor(kills={"infer.batch_0001": {1, 2}})

        context = run_pipeline(config, executor=fake)

        assert context.threading_result.skipped == [1]
        assert context.threading_result.applied == [0, 2]
        assert [call[2] for call in fake.calls_for("infer.batch_0001")] == [64000, 96000]

        command = fake.calls_for("infer.batch_0002")[0][3]
        assert _option(command, "-i") == str(context.workspace.get_checkpoint_path(0))

        final_leaves = context.final_tree.leaf_names()
        assert len(final_leaves) == 13
        assert not set(new_names(5)[2:4]) & set(final_leaves)
        assert context.rooted_tree.path.exists()

        with open(context.summary_paths["json"]) as f:
            assert json.load(f)["skipped"] == [1]
        assert context.workspace.get_batch_path(1, ".fa").exists()

    def test_task_failure_is_fatal(self, full_build):
        config = full_build()
        fake = FakeToolExecutor(failures={"infer.batch_0001": 1})

        with pytest.raises(TaskFailedError) as exc_info:
            run_pipeline(config, executor=fake)

        error = exc_info.value
        assert error.batch_index == 1
        assert error.stage == "checkpoint_threading"
        assert "infer.batch_0002" not in fake.task_names("infer.")
        assert Path(config["output_dir"], "checkpoints", "2024-05-01.batch_0000.pb").exists()

    def test_ignore_policy_on_encode_rejected_before_any_tool_runs(self, full_build):
        config = full_build(tasks={"encode": {"failure_policy": "retry_then_ignore"}})
        fake = FakeToolExecutor(kills={"encode.batch_0001": {1}})

        with pytest.raises(StageExecutionError, match="only supported for infer") as exc_info:
            run_pipeline(config, executor=fake)

        assert exc_info.value.stage == "input_validation"
        assert fake.calls == []

    def test_missing_tool_output_is_fatal(self, full_build):
        fake = FakeToolExecutor(skip_outputs={"partition"})

        with pytest.raises(TaskFailedError, match="did not produce"):
            run_pipeline(full_build(), executor=fake)

    def test_failure_notification(self, full_build, monkeypatch):
        messages = []
        monkeypatch.setattr(
            "matpipe.pipeline.send_notification",
            lambda url, message, timeout: messages.append(message) or True,
        )
        config = full_build(outgroup="Nowhere/X-1/2020", notify_url="http://hooks.example/x")

        with pytest.raises(DependencyMissingError):
            run_pipeline(config, executor=FakeToolExecutor())

        assert len(messages) == 1
        assert "FAILED" in messages[0]
        assert "Nowhere/X-1/2020" in messages[0]


class TestResume:
    """Restarting an interrupted run."""

    def test_resume_continues_chain(self, full_build):
        config = full_build()
        first = FakeToolExecutor(failures={"infer.batch_0002": 1})
        with pytest.raises(TaskFailedError):
            run_pipeline(dict(config), executor=first)

        second = FakeToolExecutor()
        context = run_pipeline(dict(config, resume=True), executor=second)

        assert second.calls_for("partition") == []
        assert second.calls_for("initial_build") == []
        assert second.task_names("infer.") == ["infer.batch_0002"]
        command = second.calls_for("infer.batch_0002")[0][3]
        assert _option(command, "-i") == str(context.workspace.get_checkpoint_path(1))
        assert context.threading_result.applied == [0, 1, 2]
        assert len(context.final_tree.leaf_names()) == 15

    def test_changed_configuration_starts_over(self, full_build):
        config = full_build()
        with pytest.raises(TaskFailedError):
            run_pipeline(dict(config), executor=FakeToolExecutor(failures={"reroot": 1}))

        second = FakeToolExecutor()
        context = run_pipeline(dict(config, batch_size=5, resume=True), executor=second)

        assert second.calls_for("partition")
        assert second.task_names("infer.") == ["infer.batch_0000"]
        assert context.threading_result.applied == [0]
