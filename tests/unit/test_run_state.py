"""Tests for run state tracking and resume decisions."""

import json
import os

import pytest

from matpipe.run_state import BATCH_APPLIED, BATCH_SKIPPED, BatchRecord, FileInfo, RunState

CONFIG = {
    "mode": "full",
    "sequences": "/data/sequences.fa",
    "seed_tree": "/data/seed.nwk",
    "batch_size": 500,
    "run_date": "2024-05-01",
    "outgroup": "Wuhan/Hu-1/2019",
    "tasks": {"infer": {"max_attempts": 3}},
}


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "out"


def reload(state_dir):
    state = RunState(str(state_dir))
    assert state.load()
    return state


@pytest.mark.unit
class TestRunStatePersistence:
    """Test saving and loading the state file."""

    def test_initialize_writes_state_file(self, state_dir):
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")

        path = state_dir / RunState.STATE_FILE_NAME
        assert path.exists()
        data = json.loads(path.read_text())
        assert data["pipeline_version"] == "0.3.0"
        assert data["steps"] == {}
        assert data["batches"] == {}

    def test_no_temp_files_left_behind(self, state_dir):
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")
        state.start_step("chunking")

        assert os.listdir(state_dir) == [RunState.STATE_FILE_NAME]

    def test_steps_round_trip(self, state_dir, tmp_path):
        output = tmp_path / "matched.fa"
        output.write_text(">a\nAC\n")
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")
        state.start_step("sequence_partition")
        state.complete_step("sequence_partition", output_files=[str(output)])
        state.start_step("checkpoint_threading")
        state.fail_step("checkpoint_threading", "TaskFailed in task 'infer.batch_0002'")

        loaded = reload(state_dir)
        steps = loaded.state["steps"]
        assert steps["sequence_partition"].status == "completed"
        assert steps["sequence_partition"].output_files[0].path == str(output)
        assert steps["checkpoint_threading"].status == "failed"
        assert "infer.batch_0002" in steps["checkpoint_threading"].error

    def test_batch_records_round_trip(self, state_dir):
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")
        state.record_batch(BatchRecord(0, BATCH_APPLIED, 2, "/c/0.pb", "/c/0.nwk", 1))
        state.record_batch(BatchRecord(1, BATCH_SKIPPED, 2))

        records = reload(state_dir).batch_records()
        assert records == {
            0: BatchRecord(0, BATCH_APPLIED, 2, "/c/0.pb", "/c/0.nwk", 1),
            1: BatchRecord(1, BATCH_SKIPPED, 2),
        }

    def test_batch_records_empty_for_fresh_run(self, state_dir):
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")
        state.record_batch(BatchRecord(0, BATCH_APPLIED, 2))

        assert state.batch_records() == {}

    def test_load_missing_or_corrupt(self, state_dir):
        assert not RunState(str(state_dir)).load()

        state_dir.mkdir()
        (state_dir / RunState.STATE_FILE_NAME).write_text("{not json")
        assert not RunState(str(state_dir)).load()

    def test_load_rejects_other_state_version(self, state_dir):
        state_dir.mkdir()
        (state_dir / RunState.STATE_FILE_NAME).write_text(json.dumps({"version": "0.1"}))
        assert not RunState(str(state_dir)).load()


@pytest.mark.unit
class TestResumeDecisions:
    """Test which runs and stages can be resumed."""

    def test_can_resume_same_configuration(self, state_dir):
        RunState(str(state_dir)).initialize(CONFIG, "0.3.0")

        assert reload(state_dir).can_resume(dict(CONFIG, resume=True, threads=8), "0.3.0")

    @pytest.mark.parametrize(
        "change", [{"batch_size": 100}, {"run_date": "2024-05-02"}, {"tasks": {}}]
    )
    def test_cannot_resume_changed_configuration(self, state_dir, change):
        RunState(str(state_dir)).initialize(CONFIG, "0.3.0")

        assert not reload(state_dir).can_resume(dict(CONFIG, **change), "0.3.0")

    def test_cannot_resume_other_version(self, state_dir):
        RunState(str(state_dir)).initialize(CONFIG, "0.3.0")

        assert not reload(state_dir).can_resume(CONFIG, "0.4.0")

    def test_cannot_resume_without_loading(self, state_dir):
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")

        assert not state.can_resume(CONFIG, "0.3.0")

    def test_skip_completed_step_with_intact_outputs(self, state_dir, tmp_path):
        output = tmp_path / "seed.normalized.nwk"
        output.write_text("(A,B);\n")
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")
        state.complete_step("tree_normalization", [str(output)])
        state.start_step("chunking")

        loaded = reload(state_dir)
        assert loaded.should_skip_step("tree_normalization")
        assert not loaded.should_skip_step("chunking")
        assert not loaded.should_skip_step("reroot")

    def test_rerun_step_whose_output_changed(self, state_dir, tmp_path):
        output = tmp_path / "seed.normalized.nwk"
        output.write_text("(A,B);\n")
        state = RunState(str(state_dir))
        state.initialize(CONFIG, "0.3.0")
        state.complete_step("tree_normalization", [str(output)])

        output.write_text("(A,B,C);\n")
        assert not reload(state_dir).should_skip_step("tree_normalization")

        output.unlink()
        assert not reload(state_dir).should_skip_step("tree_normalization")

    def test_file_info_validation(self, tmp_path):
        path = tmp_path / "f.txt"
        path.write_text("abc")
        info = FileInfo.from_file(str(path))

        assert info.validate()
        path.write_text("abcd")
        assert not info.validate()


@pytest.mark.unit
def test_summary_lists_skipped_batches(tmp_path):
    state = RunState(str(tmp_path))
    state.initialize(CONFIG, "0.3.0")
    state.start_step("checkpoint_threading")
    state.complete_step("checkpoint_threading")
    state.record_batch(BatchRecord(0, BATCH_APPLIED, 2))
    state.record_batch(BatchRecord(1, BATCH_SKIPPED, 2))
    state.record_batch(BatchRecord(2, BATCH_SKIPPED, 1))

    summary = state.get_summary()

    assert "+ checkpoint_threading (completed)" in summary
    assert "Batches: 1 applied, 2 skipped" in summary
    assert "Skipped batch indices: 1, 2" in summary
