# File: tests/test_cli.py
# Location: matpipe/tests/test_cli.py

"""
Tests for CLI module.

These tests call ``main`` in-process with the external tools replaced by
``FakeToolExecutor`` and check the exit code contract: 0 on completion
(even with skipped batches), 1 on a fatal failure, 2 on invalid arguments.
"""

import json
import subprocess
import sys

import pytest

from matpipe.cli import build_config, create_parser, describe_failure, main
from matpipe.pipeline_core.error_handling import RetriesExhaustedError
from tests.mocks import FakeToolExecutor, create_full_build_inputs, create_update_inputs


@pytest.fixture
def fake_tools(monkeypatch):
    """Route every tool invocation of a CLI run to a fake executor."""
    fake = FakeToolExecutor()
    monkeypatch.setattr("matpipe.pipeline.SubprocessExecutor", lambda: fake)
    return fake


@pytest.fixture
def user_config(tmp_path):
    """Write a user configuration without retry delays."""

    def _write(**task_settings):
        tasks = {kind: {"retry_delay": 0} for kind in ("partition", "encode", "infer")}
        for kind, settings in task_settings.items():
            tasks.setdefault(kind, {}).update(settings)
        path = tmp_path / "user_config.json"
        path.write_text(json.dumps({"tasks": tasks}))
        return str(path)

    return _write


def full_build_args(tmp_path, config_path, *extra):
    inputs = create_full_build_inputs(tmp_path / "in", seed_count=10, new_count=5)
    return [
        "-c",
        config_path,
        "-s",
        str(inputs["sequences"]),
        "-t",
        str(inputs["seed_tree"]),
        "-o",
        str(tmp_path / "out"),
        "--run-date",
        "2024-05-01",
        "-b",
        "2",
        "--skip-tool-check",
        "--max-memory-gb",
        "1024",
        "--encode-workers",
        "2",
        *extra,
    ]


def test_cli_help():
    """Test that the CLI help message can be displayed."""
    cmd = [sys.executable, "-m", "matpipe.cli", "--help"]
    result = subprocess.run(cmd, capture_output=True, text=True)
    assert result.returncode == 0
    assert "usage:" in result.stdout
    assert "--seed-tree" in result.stdout


class TestArguments:
    """Test argument validation."""

    def test_sequences_required(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["-t", str(tmp_path / "seed.nwk")])
        assert exc_info.value.code == 2

    def test_starting_point_required(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["-s", str(tmp_path / "seq.fa")])
        assert exc_info.value.code == 2

    def test_seed_tree_and_checkpoint_exclusive(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["-s", "seq.fa", "-t", "seed.nwk", "-i", "previous.pb"])
        assert exc_info.value.code == 2

    def test_existing_tree_needs_checkpoint(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["-s", "seq.fa", "-t", "seed.nwk", "--existing-tree", "tree.nwk"])
        assert exc_info.value.code == 2

    def test_build_config_sets_mode(self, tmp_path):
        parser = create_parser()
        args = parser.parse_args(["-s", "seq.fa", "-i", "previous.pb", "-b", "50"])
        cfg = build_config(args)
        assert cfg["mode"] == "update"
        assert cfg["checkpoint"] == "previous.pb"
        assert cfg["batch_size"] == 50
        assert cfg["seed_tree"] is None

    def test_missing_config_file(self, tmp_path):
        argv = ["-c", str(tmp_path / "nope.json"), "-s", "seq.fa", "-t", "seed.nwk"]
        assert main(argv) == 1

    def test_invalid_batch_size(self, tmp_path, user_config):
        assert main(full_build_args(tmp_path, user_config(), "-b", "0")) == 1


class TestRuns:
    """Test complete runs through the CLI."""

    def test_full_build_succeeds(self, tmp_path, fake_tools, user_config):
        assert main(full_build_args(tmp_path, user_config())) == 0
        assert (tmp_path / "out" / "2024-05-01.rooted.nwk").exists()
        assert fake_tools.task_names("infer.") == [
            "infer.batch_0000",
            "infer.batch_0001",
            "infer.batch_0002",
        ]

    def test_skipped_batch_still_exits_zero(self, tmp_path, fake_tools, user_config, caplog):
        fake_tools.kills["infer.batch_0001"] = {1}
        config_path = user_config(infer={"max_attempts": 1})

        assert main(full_build_args(tmp_path, config_path)) == 0
        assert "1 skipped batches: 1" in caplog.text

    def test_missing_outgroup_exits_one(self, tmp_path, fake_tools, user_config, caplog):
        argv = full_build_args(tmp_path, user_config(), "--outgroup", "Nowhere/X-1/2020")

        assert main(argv) == 1
        assert "stage=reroot" in caplog.text
        assert "classification=DependencyMissing" in caplog.text
        assert not (tmp_path / "out" / "2024-05-01.rooted.nwk").exists()

    def test_update_run(self, tmp_path, fake_tools, user_config):
        inputs = create_update_inputs(tmp_path / "in", tree_count=10, new_count=3)
        argv = [
            "-c",
            user_config(),
            "-s",
            str(inputs["sequences"]),
            "-i",
            str(inputs["checkpoint"]),
            "-o",
            str(tmp_path / "out"),
            "--run-date",
            "2024-05-01",
            "--skip-tool-check",
            "--max-memory-gb",
            "1024",
        ]

        assert main(argv) == 0
        assert fake_tools.calls_for("tree_export")
        assert fake_tools.task_names("infer.") == ["infer.batch_0000"]


class TestShowState:
    """Test the --show-state option."""

    def test_no_state(self, tmp_path, capsys):
        assert main(["--show-state", "-o", str(tmp_path)]) == 0
        assert "No run state found" in capsys.readouterr().out

    def test_state_after_run(self, tmp_path, fake_tools, user_config, capsys):
        main(full_build_args(tmp_path, user_config()))
        capsys.readouterr()

        assert main(["--show-state", "-o", str(tmp_path / "out")]) == 0
        out = capsys.readouterr().out
        assert "checkpoint_threading" in out
        assert "3 applied, 0 skipped" in out


def test_describe_failure():
    error = RetriesExhaustedError(
        "infer.batch_0007", "killed", batch_index=7, attempts=3, stage="checkpoint_threading"
    )
    description = describe_failure(error)
    assert "task=infer.batch_0007" in description
    assert "batch=7" in description
    assert "stage=checkpoint_threading" in description
