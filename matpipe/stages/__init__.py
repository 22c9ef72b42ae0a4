"""
Pipeline stages for matpipe.

This package contains all stage implementations organized by category:
- setup_stages: Tool checks, configuration and input validation
- processing_stages: Partitioning, initial checkpoint, chunking and threading
- output_stages: Rerooting, run summary and notification
"""

from .output_stages import NotificationStage, RerootStage, RunSummaryStage, build_run_summary
from .processing_stages import (
    CheckpointThreadingStage,
    ChunkingStage,
    InitialCheckpointStage,
    SequencePartitionStage,
    TreeExportStage,
    TreeNormalizationStage,
)
from .setup_stages import InputValidationStage, ToolCheckStage

__all__ = [
    # Setup stages
    "ToolCheckStage",
    "InputValidationStage",
    # Processing stages
    "TreeNormalizationStage",
    "TreeExportStage",
    "SequencePartitionStage",
    "InitialCheckpointStage",
    "ChunkingStage",
    "CheckpointThreadingStage",
    # Output stages
    "RerootStage",
    "RunSummaryStage",
    "NotificationStage",
    "build_run_summary",
]
