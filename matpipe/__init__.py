# File: matpipe/__init__.py
# Location: matpipe/matpipe/__init__.py

"""
matpipe Package.

This package builds and incrementally updates a mutation-annotated phylogenetic
tree by threading batches of new sequences through a chain of tree checkpoints,
delegating the heavy lifting to external tools.
"""

from .version import __version__
