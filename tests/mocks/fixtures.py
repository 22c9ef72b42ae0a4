"""Test fixtures and factory functions."""

import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

from matpipe.config import load_config
from matpipe.pipeline import create_context
from matpipe.pipeline_core import PipelineContext

from .external_tools import FakeToolExecutor, write_checkpoint, write_fasta, write_newick

OUTGROUP = "Wuhan/Hu-1/2019"


def seed_leaves(count: int = 10) -> List[str]:
    """Return ``count`` leaf names, the outgroup first."""
    return [OUTGROUP] + [f"England/SEED-{i:03d}/2020" for i in range(1, count)]


def new_names(count: int, prefix: str = "NEW") -> List[str]:
    """Return ``count`` names of sequences not yet in any tree."""
    return [f"USA/{prefix}-{i:03d}/2021" for i in range(count)]


def create_test_config(output_dir: Path, **overrides: Any) -> Dict[str, Any]:
    """Create a run configuration for the fake tools.

    Retry delays are zeroed, the tool check is skipped, and the memory limit
    is set high enough that no budget gets capped.
    """
    config = load_config()
    for settings in config["tasks"].values():
        settings["retry_delay"] = 0
    config.update(
        {
            "output_dir": str(output_dir),
            "run_date": "2024-05-01",
            "skip_tool_check": True,
            "max_memory_gb": 1024,
            "encode_workers": 2,
            "threads": 2,
            "mode": "full",
        }
    )
    task_overrides = overrides.pop("tasks", {})
    config.update(overrides)
    for kind, settings in task_overrides.items():
        config["tasks"][kind].update(settings)
    return config


def create_full_build_inputs(
    directory: Path, seed_count: int = 10, new_count: int = 5
) -> Dict[str, Path]:
    """Write a seed tree and a FASTA holding its leaves plus new sequences."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    leaves = seed_leaves(seed_count)
    return {
        "seed_tree": write_newick(directory / "seed.nwk", leaves),
        "sequences": write_fasta(directory / "sequences.fa", leaves + new_names(new_count)),
    }


def create_update_inputs(
    directory: Path, tree_count: int = 10, new_count: int = 3
) -> Dict[str, Path]:
    """Write an existing checkpoint and a FASTA of new sequences."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    return {
        "checkpoint": write_checkpoint(directory / "previous.pb", seed_leaves(tree_count)),
        "sequences": write_fasta(directory / "new.fa", new_names(new_count, prefix="UPD")),
    }


def create_test_context(
    output_dir: Path,
    executor: Optional[FakeToolExecutor] = None,
    config_overrides: Optional[Dict[str, Any]] = None,
) -> PipelineContext:
    """Create a PipelineContext wired to the fake tools."""
    config = create_test_config(output_dir, **(config_overrides or {}))
    return create_context(config, argparse.Namespace(), executor or FakeToolExecutor())
