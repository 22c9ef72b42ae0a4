"""
PipelineContext - Single source of truth for a tree-building run.

The context flows through all stages, carrying configuration, the services
stages use to run external tools, and the artifacts each stage produces.
"""

import argparse
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

if TYPE_CHECKING:
    from ..chunker import Batch
    from ..run_state import RunState
    from ..sequences import SequenceSet
    from ..tasks import TaskRunner
    from ..threader import ThreadingResult
    from ..tools import Toolbox
    from ..trees import Checkpoint, Tree
    from .workspace import Workspace

logger = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_UPDATE = "update"


@dataclass
class PipelineContext:
    """Container for all run state and artifacts.

    Attributes
    ----------
    args : argparse.Namespace
        Parsed command-line arguments
    config : Dict[str, Any]
        Merged configuration from file and CLI
    workspace : Workspace
        Manages all file paths for the run
    toolbox : Toolbox
        Builds tasks for the external tools
    task_runner : TaskRunner
        Runs tasks under their failure and resource policies
    start_time : datetime
        Run start time
    completed_stages : Set[str]
        Names of stages that have completed successfully
    stage_results : Dict[str, Any]
        Optional results stored by stages
    sequences : SequenceSet, optional
        All input sequences
    seed_tree : Tree, optional
        Normalized seed tree (full build)
    reference_tree : Tree, optional
        Tree the sequences are partitioned against: the seed tree in a full
        build, the exported (or supplied) tree in an incremental update
    matched / unmatched : SequenceSet, optional
        Sequences already in the reference tree, and the rest
    initial_checkpoint : Checkpoint, optional
        Checkpoint the chain starts from
    initial_tree : Tree, optional
        Text tree of ``initial_checkpoint``
    batches : List[Batch]
        Ordered batches of the unmatched sequences
    threading_result : ThreadingResult, optional
        Final state and per-batch outcomes of the checkpoint chain
    final_checkpoint / final_tree : optional
        Published copies of the final state
    rooted_tree : Tree, optional
        Final tree rooted on the outgroup
    summary_paths : Dict[str, Path]
        Generated run summaries, by format
    notification_sent : bool
        Whether the completion notification was delivered
    checkpoint_state : RunState, optional
        Stage and batch tracking for ``--resume``
    """

    # --- Immutable Configuration ---
    args: argparse.Namespace
    config: Dict[str, Any]
    workspace: "Workspace"
    toolbox: "Toolbox"
    task_runner: "TaskRunner"
    start_time: datetime = field(default_factory=datetime.now)

    # Stage tracking
    completed_stages: Set[str] = field(default_factory=set)
    stage_results: Dict[str, Any] = field(default_factory=dict)

    # Inputs
    sequences: Optional["SequenceSet"] = None
    seed_tree: Optional["Tree"] = None
    reference_tree: Optional["Tree"] = None

    # Processing artifacts
    matched: Optional["SequenceSet"] = None
    unmatched: Optional["SequenceSet"] = None
    initial_checkpoint: Optional["Checkpoint"] = None
    initial_tree: Optional["Tree"] = None
    batches: List["Batch"] = field(default_factory=list)
    threading_result: Optional["ThreadingResult"] = None

    # Outputs
    final_checkpoint: Optional["Checkpoint"] = None
    final_tree: Optional["Tree"] = None
    rooted_tree: Optional["Tree"] = None
    summary_paths: Dict[str, Path] = field(default_factory=dict)
    notification_sent: bool = False

    # Checkpoint state (if enabled)
    checkpoint_state: Optional["RunState"] = None

    # Parallel stages share this context
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    @property
    def mode(self) -> str:
        """Return ``full`` or ``update``."""
        return self.config.get("mode", MODE_FULL)

    def mark_complete(self, stage_name: str, result: Any = None) -> None:
        """Mark a stage as complete with optional result storage.

        Parameters
        ----------
        stage_name : str
            Name of the stage to mark complete
        result : Any, optional
            Optional result to store for the stage
        """
        with self._lock:
            self.completed_stages.add(stage_name)
            if result is not None:
                self.stage_results[stage_name] = result
            logger.debug(f"Stage '{stage_name}' marked as complete")

    def is_complete(self, stage_name: str) -> bool:
        """Check if a stage has been completed."""
        with self._lock:
            return stage_name in self.completed_stages

    def get_result(self, stage_name: str) -> Optional[Any]:
        """Get the stored result for a completed stage."""
        with self._lock:
            return self.stage_results.get(stage_name)

    def update(self, **artifacts: Any) -> None:
        """Set artifacts under the context lock.

        Parameters
        ----------
        **artifacts
            Attribute names and values, e.g. ``update(batches=[...])``

        Raises
        ------
        AttributeError
            If an attribute is not a context field
        """
        with self._lock:
            for name, value in artifacts.items():
                if not hasattr(self, name) or name.startswith("_"):
                    raise AttributeError(f"PipelineContext has no artifact '{name}'")
                setattr(self, name, value)

    def get_execution_time(self) -> float:
        """Get the elapsed execution time in seconds."""
        return (datetime.now() - self.start_time).total_seconds()

    def __repr__(self) -> str:
        """Return string representation showing key state information."""
        return (
            f"PipelineContext("
            f"mode={self.mode}, "
            f"stages_completed={len(self.completed_stages)}, "
            f"batches={len(self.batches)}, "
            f"execution_time={self.get_execution_time():.1f}s)"
        )
