"""
Chunker - split a sequence set into ordered, bounded-size batches.

Batches follow the order of the input file, and batch files are named by
position. Chunking the same input twice therefore yields the same batches
under the same names, which incremental rebuilds and resumed runs rely on.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from .sequences import SequenceSet, write_fasta_groups

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    """A bounded-size slice of a sequence set, tagged with its position."""

    index: int
    sequences: SequenceSet

    @property
    def size(self) -> int:
        return len(self.sequences)

    @property
    def name(self) -> str:
        return f"batch_{self.index:04d}"


def partition_names(names: Sequence[str], batch_size: int) -> List[List[str]]:
    """Split names into consecutive groups of at most ``batch_size``.

    Parameters
    ----------
    names : Sequence[str]
        Sequence names in input order
    batch_size : int
        Maximum group size; must be a positive integer

    Returns
    -------
    List[List[str]]
        Groups in order; every name appears in exactly one group

    Raises
    ------
    ValueError
        If ``batch_size`` is not a positive integer
    """
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ValueError(f"Batch size must be a positive integer, got {batch_size!r}")
    return [list(names[i : i + batch_size]) for i in range(0, len(names), batch_size)]


def chunk(sequence_set: SequenceSet, batch_size: int, out_dir: Path) -> List[Batch]:
    """Write ``sequence_set`` out as ordered batches of at most ``batch_size``.

    Parameters
    ----------
    sequence_set : SequenceSet
        Sequences to split
    batch_size : int
        Maximum sequences per batch
    out_dir : Path
        Directory receiving ``batch_NNNN.fa`` files

    Returns
    -------
    List[Batch]
        Batches in order; empty when the set is empty
    """
    groups = partition_names(sequence_set.names, batch_size)
    if not groups:
        logger.info(f"No sequences in {sequence_set.path}; nothing to chunk")
        return []

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    destinations = [out_dir / f"batch_{i:04d}.fa" for i in range(len(groups))]
    write_fasta_groups(sequence_set, groups, destinations)

    batches = [
        Batch(index=i, sequences=SequenceSet(path=dest, names=tuple(group)))
        for i, (group, dest) in enumerate(zip(groups, destinations))
    ]
    logger.info(
        f"Split {len(sequence_set)} sequences into {len(batches)} batches "
        f"of at most {batch_size}"
    )
    return batches
