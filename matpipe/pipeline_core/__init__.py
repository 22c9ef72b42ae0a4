"""
Pipeline infrastructure for matpipe.

This package provides the core abstractions for the staged run:
- PipelineContext: Container for all run state and artifacts
- Stage: Abstract base class for all pipeline steps
- Workspace: Centralized file path management
- PipelineRunner: Orchestrates stage execution with parallelization
"""

from .context import MODE_FULL, MODE_UPDATE, PipelineContext
from .runner import PipelineRunner
from .stage import Stage
from .workspace import Workspace

__all__ = [
    "MODE_FULL",
    "MODE_UPDATE",
    "PipelineContext",
    "Stage",
    "Workspace",
    "PipelineRunner",
]
