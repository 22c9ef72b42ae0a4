"""Test mocks and fixtures for matpipe tests."""

from .external_tools import (
    FakeToolExecutor,
    read_checkpoint,
    read_diff_names,
    write_checkpoint,
    write_fasta,
    write_newick,
)
from .fixtures import (
    OUTGROUP,
    create_full_build_inputs,
    create_test_config,
    create_test_context,
    create_update_inputs,
    new_names,
    seed_leaves,
)

__all__ = [
    "FakeToolExecutor",
    "read_checkpoint",
    "read_diff_names",
    "write_checkpoint",
    "write_fasta",
    "write_newick",
    "OUTGROUP",
    "create_full_build_inputs",
    "create_test_config",
    "create_test_context",
    "create_update_inputs",
    "new_names",
    "seed_leaves",
]
