"""
Tree and checkpoint artifacts.

Newick files are read and written with Biopython's ``Bio.Phylo``. Only leaf
names are extracted and decorations that downstream tools reject are
stripped; topology is left as the tools built it.
"""

import logging
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import List

from Bio import Phylo
from Bio.Phylo import BaseTree
from Bio.Phylo.NewickIO import NewickError

from .pipeline_core.error_handling import DependencyMissingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tree:
    """A Newick tree file."""

    path: Path

    def read(self) -> str:
        return Path(self.path).read_text(encoding="utf-8")

    def leaf_names(self) -> List[str]:
        return leaf_names(self.read())


@dataclass(frozen=True)
class Checkpoint:
    """A binary mutation-annotated tree state.

    ``version`` counts the inference transitions behind this checkpoint within
    the current run (0 for the checkpoint the run started from).
    """

    path: Path
    version: int = 0


def parse_newick(newick: str) -> BaseTree.Tree:
    """Parse one Newick tree.

    Raises
    ------
    DependencyMissingError
        If the text does not hold exactly one well-formed tree
    """
    try:
        return Phylo.read(StringIO(newick), "newick")
    except (NewickError, ValueError) as e:
        raise DependencyMissingError(f"Malformed Newick tree: {e}")


def leaf_names(newick: str) -> List[str]:
    """Return the leaf names of a Newick string in file order."""
    return [clade.name for clade in parse_newick(newick).get_terminals()]


def normalize_newick(newick: str) -> str:
    """Strip decorations that downstream tools reject.

    Removes comments, internal node labels and support values; spaces in
    leaf names become underscores so no label needs quoting. Leaf names,
    topology and branch lengths are kept.
    """
    tree = parse_newick(newick)
    for clade in tree.find_clades():
        clade.comment = None
        if clade.is_terminal():
            if clade.name:
                clade.name = clade.name.replace(" ", "_")
        else:
            clade.name = None
            clade.confidence = None

    handle = StringIO()
    Phylo.write(tree, handle, "newick", format_branch_length="%.10g")
    return handle.getvalue().strip()


def normalize_tree_file(source: Path, destination: Path) -> Tree:
    """Write a normalized copy of ``source`` to ``destination``."""
    text = Path(source).read_text(encoding="utf-8")
    if not text.strip():
        raise DependencyMissingError(f"Tree file {source} is empty", details={"file": str(source)})
    normalized = normalize_newick(text)
    Path(destination).write_text(normalized + "\n", encoding="utf-8")
    logger.debug(f"Normalized {source} -> {destination}")
    return Tree(Path(destination))
