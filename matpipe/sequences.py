"""
Sequence sets backed by FASTA files.

Records are read and written with Biopython's ``Bio.SeqIO``; files are opened
through ``smart_open`` so gzipped input works transparently. Sequence content
is passed through untouched for the external tools to deal with.
"""

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Sequence, Tuple

import smart_open
from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from .pipeline_core.error_handling import DependencyMissingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SequenceSet:
    """An immutable, ordered collection of named sequences in one FASTA file."""

    path: Path
    names: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.names)

    @classmethod
    def from_fasta(cls, path) -> "SequenceSet":
        """Index the sequence names of a FASTA file (plain or gzipped).

        Raises
        ------
        DependencyMissingError
            If the file is malformed or names a sequence twice
        """
        path = Path(path)
        names = []
        seen = set()
        for record in iter_fasta_records(path):
            if record.id in seen:
                raise DependencyMissingError(
                    f"Sequence '{record.id}' appears more than once in {path}",
                    details={"file": str(path)},
                )
            seen.add(record.id)
            names.append(record.id)
        logger.debug(f"Indexed {len(names)} sequences in {path}")
        return cls(path=path, names=tuple(names))


def iter_fasta_records(path) -> Iterator[SeqRecord]:
    """Yield the records of a FASTA file in order.

    A record's ``id`` is its header up to the first whitespace.

    Raises
    ------
    DependencyMissingError
        On a record with an empty header, or text Biopython cannot parse
    """
    with smart_open.open(str(path), "r", encoding="utf-8") as handle:
        try:
            for record in SeqIO.parse(handle, "fasta"):
                if not record.id:
                    raise DependencyMissingError(
                        f"Empty FASTA header in {path}", details={"file": str(path)}
                    )
                yield record
        except ValueError as e:
            raise DependencyMissingError(
                f"{path} is not valid FASTA: {e}", details={"file": str(path)}
            )


def write_fasta_groups(
    source: SequenceSet, groups: Sequence[Sequence[str]], destinations: Sequence[Path]
) -> None:
    """Split ``source`` into one FASTA file per group in a single pass.

    Records keep their order from the source file.

    Parameters
    ----------
    source : SequenceSet
        The sequences to split
    groups : Sequence[Sequence[str]]
        Sequence names for each destination
    destinations : Sequence[Path]
        One output path per group
    """
    if len(groups) != len(destinations):
        raise ValueError("Need exactly one destination per group")

    owner: Dict[str, int] = {}
    for position, group in enumerate(groups):
        for name in group:
            owner[name] = position

    with ExitStack() as stack:
        handles = [
            stack.enter_context(open(dest, "w", encoding="utf-8")) for dest in destinations
        ]
        for record in iter_fasta_records(source.path):
            position = owner.get(record.id)
            if position is not None:
                SeqIO.write(record, handles[position], "fasta")
