"""Unit tests for output stages."""

import json

import pandas as pd
import pytest

from matpipe.pipeline_core.error_handling import DEPENDENCY_MISSING, DependencyMissingError
from matpipe.stages import (
    CheckpointThreadingStage,
    ChunkingStage,
    InitialCheckpointStage,
    InputValidationStage,
    NotificationStage,
    RerootStage,
    RunSummaryStage,
    SequencePartitionStage,
    TreeNormalizationStage,
    build_run_summary,
)
from tests.mocks import OUTGROUP, FakeToolExecutor, create_full_build_inputs, create_test_context


def threaded_context(tmp_path, fake, **overrides):
    """Run a full build up to the end of the checkpoint chain."""
    inputs = create_full_build_inputs(tmp_path / "in", seed_count=10, new_count=5)
    context = create_test_context(tmp_path / "out", fake, dict(inputs, batch_size=2, **overrides))
    for stage in (
        InputValidationStage(),
        TreeNormalizationStage(),
        SequencePartitionStage(),
        InitialCheckpointStage(),
        ChunkingStage(),
        CheckpointThreadingStage(),
    ):
        context = stage(context)
    return context


class TestRerootStage:
    """Test RerootStage."""

    def test_reroots_on_outgroup(self, tmp_path):
        fake = FakeToolExecutor()
        context = threaded_context(tmp_path, fake)

        RerootStage()(context)

        rooted = context.rooted_tree
        assert rooted.path == context.workspace.get_output_path(".rooted")
        assert rooted.read().startswith(f"({OUTGROUP},(")
        assert sorted(rooted.leaf_names()) == sorted(context.final_tree.leaf_names())

    def test_outgroup_not_in_tree(self, tmp_path):
        fake = FakeToolExecutor()
        context = threaded_context(tmp_path, fake, outgroup="Nowhere/X-1/2020")

        with pytest.raises(DependencyMissingError) as exc_info:
            RerootStage()(context)

        error = exc_info.value
        assert error.classification == DEPENDENCY_MISSING
        assert error.stage == "reroot"
        assert error.details["outgroup"] == "Nowhere/X-1/2020"
        assert fake.calls_for("reroot") == []
        assert not context.workspace.get_output_path(".rooted").exists()
        assert context.final_tree.path.exists()


class TestRunSummaryStage:
    """Test RunSummaryStage."""

    def test_writes_tsv_and_json(self, tmp_path):
        fake = FakeToolExecutor(kills={"infer.batch_0001": {1, 2, 3}})
        context = threaded_context(tmp_path, fake)
        RerootStage()(context)

        RunSummaryStage()(context)

        table = pd.read_csv(context.summary_paths["tsv"], sep="\t")
        assert list(table.columns) == ["batch_index", "sequences", "outcome", "checkpoint", "tree"]
        assert table["batch_index"].tolist() == [0, 1, 2]
        assert table["sequences"].tolist() == [2, 2, 1]
        assert table["outcome"].tolist() == ["applied", "skipped", "applied"]

        with open(context.summary_paths["json"]) as f:
            summary = json.load(f)
        assert summary["status"] == "completed"
        assert summary["applied"] == [0, 2]
        assert summary["skipped"] == [1]
        assert summary["batch_count"] == 3
        assert summary["rooted_tree"] == str(context.rooted_tree.path)
        workspace = context.workspace
        assert summary["checkpoints"] == [
            str(workspace.get_checkpoint_path(0)),
            str(workspace.get_checkpoint_path(2)),
        ]
        assert context.get_result("run_summary") == summary

    def test_summary_without_threading(self, tmp_path):
        context = create_test_context(tmp_path / "out")

        summary = build_run_summary(context, status="failed")

        assert summary["status"] == "failed"
        assert summary["applied"] == [] and summary["skipped"] == []
        assert summary["final_tree"] is None
        assert summary["run_date"] == "2024-05-01"


class TestNotificationStage:
    """Test NotificationStage."""

    @pytest.fixture
    def summarized(self, tmp_path):
        def _make(**overrides):
            context = threaded_context(tmp_path, FakeToolExecutor(), **overrides)
            RerootStage()(context)
            RunSummaryStage()(context)
            return context

        return _make

    def test_no_endpoint(self, summarized, monkeypatch):
        sent = []
        monkeypatch.setattr(
            "matpipe.stages.output_stages.send_notification", lambda *args: sent.append(args)
        )
        context = summarized()

        NotificationStage()(context)

        assert sent == []
        assert context.notification_sent is False
        assert context.is_complete("notification")

    def test_sends_rendered_summary(self, summarized, monkeypatch):
        sent = []

        def fake_send(url, message, timeout):
            sent.append((url, message, timeout))
            return True

        monkeypatch.setattr("matpipe.stages.output_stages.send_notification", fake_send)
        context = summarized(notify_url="http://hooks.example/x", notify_timeout=4)

        NotificationStage()(context)

        url, message, timeout = sent[0]
        assert url == "http://hooks.example/x"
        assert timeout == 4
        assert "Batches applied: 3 of 3" in message
        assert context.notification_sent is True

    def test_delivery_failure_does_not_fail_run(self, summarized, monkeypatch):
        monkeypatch.setattr(
            "matpipe.stages.output_stages.send_notification", lambda url, message, timeout: False
        )
        context = summarized(notify_url="http://hooks.example/x")

        NotificationStage()(context)

        assert context.is_complete("notification")
        assert context.notification_sent is False
