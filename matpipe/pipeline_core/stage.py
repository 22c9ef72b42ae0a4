"""
Stage - Abstract base class for all pipeline stages.

Every step of a run (validation, partitioning, chunking, threading,
finalization) is a stage. Stages declare their dependencies and implement
``_process``; ``__call__`` adds dependency checks, resume skipping, timing,
error normalization and logging.
"""

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Set

from .context import PipelineContext
from .error_handling import PipelineError, graceful_error_handling

logger = logging.getLogger(__name__)


class Stage(ABC):
    """Abstract base class for all pipeline stages.

    The stage execution is handled by __call__, which validates dependencies,
    logs execution, normalizes errors, and tracks timing.
    """

    def __init__(self):
        """Initialize the stage with subtask tracking."""
        self._subtask_times: Dict[str, float] = {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique stage name, used for dependencies, run state and logs."""
        pass

    @property
    def dependencies(self) -> Set[str]:
        """Stages that must have completed before this one starts."""
        return set()

    @property
    def soft_dependencies(self) -> Set[str]:
        """Stages this one runs after when they are part of the pipeline.

        Used where the flows differ: partitioning waits for tree
        normalization in a full build and for tree export in an update.
        """
        return set()

    @property
    def description(self) -> str:
        """Human-readable description for logging."""
        return f"Stage: {self.name}"

    @property
    def parallel_safe(self) -> bool:
        """Whether this stage may share its level's thread pool with others.

        Parallel-safe stages must only touch the context through its locked
        methods or their own fields.
        """
        return False

    @property
    def estimated_runtime(self) -> float:
        """Rough runtime in seconds; longer stages start first within a level."""
        return 1.0

    def __call__(self, context: PipelineContext) -> PipelineContext:
        """Execute the stage with pre/post processing.

        This method handles:
        - Dependency validation
        - Resume skipping
        - Execution logging and timing
        - Error normalization
        - Run state updates

        Parameters
        ----------
        context : PipelineContext
            The pipeline context

        Returns
        -------
        PipelineContext
            Updated context after stage execution

        Raises
        ------
        RuntimeError
            If dependencies are not satisfied
        PipelineError
            If stage execution fails
        """
        missing_deps = [dep for dep in self.dependencies if not context.is_complete(dep)]
        if missing_deps:
            raise RuntimeError(
                f"Stage '{self.name}' requires these stages to complete first: "
                f"{', '.join(sorted(missing_deps))}"
            )

        if context.is_complete(self.name):
            logger.info(f"Stage '{self.name}' already complete, skipping")
            return context

        if context.checkpoint_state and context.checkpoint_state.should_skip_step(self.name):
            logger.info(f"Stage '{self.name}' completed in a previous run, skipping")
            context = self._handle_checkpoint_skip(context)
            context.mark_complete(self.name)
            return context

        logger.info(f"Executing {self.description}")
        start_time = time.time()

        if context.checkpoint_state:
            context.checkpoint_state.start_step(self.name)

        try:
            with graceful_error_handling(self.name, logger):
                self.validate_prerequisites(context)
                self._pre_execute(context)
                updated_context = self._process(context)
                self._post_execute(updated_context)
        except PipelineError as e:
            elapsed = time.time() - start_time
            if e.stage is None:
                e.stage = self.name
            logger.error(f"Stage '{self.name}' failed after {elapsed:.1f}s: {e}")
            if context.checkpoint_state:
                context.checkpoint_state.fail_step(self.name, str(e))
            raise

        elapsed = time.time() - start_time
        updated_context.mark_complete(self.name)

        if context.checkpoint_state:
            output_files = self.get_output_files(updated_context)
            context.checkpoint_state.complete_step(
                self.name, output_files=[str(f) for f in output_files]
            )

        logger.info(f"Stage '{self.name}' completed successfully in {elapsed:.1f}s")
        return updated_context

    @abstractmethod
    def _process(self, context: PipelineContext) -> PipelineContext:
        """Core processing logic - must be implemented by subclasses.

        Parameters
        ----------
        context : PipelineContext
            The pipeline context

        Returns
        -------
        PipelineContext
            Updated context after processing
        """
        pass

    def _pre_execute(self, context: PipelineContext) -> None:
        """Execute hook called before stage execution."""
        pass

    def _post_execute(self, context: PipelineContext) -> None:
        """Execute hook called after successful stage execution."""
        pass

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Restore this stage's artifacts from disk when a resumed run skips it.

        Override in stages whose artifacts later stages read.
        """
        return context

    def get_output_files(self, context: PipelineContext) -> List[Path]:
        """Return output files for run state tracking.

        Override in subclasses to specify output files. A resumed run only
        skips the stage when all of them are unchanged.

        Parameters
        ----------
        context : PipelineContext
            The pipeline context

        Returns
        -------
        List[Path]
            List of output file paths
        """
        return []

    def validate_prerequisites(self, context: PipelineContext) -> None:
        """Validate stage-specific prerequisites beyond dependencies.

        Override in subclasses to add custom validation.

        Parameters
        ----------
        context : PipelineContext
            The pipeline context

        Raises
        ------
        DependencyMissingError
            If prerequisites are not satisfied
        """
        pass

    def __repr__(self) -> str:
        """Return string representation of the stage."""
        deps = f", depends_on={sorted(self.dependencies)}" if self.dependencies else ""
        return f"{self.__class__.__name__}(name='{self.name}'{deps})"

    def _start_subtask(self, subtask_name: str) -> float:
        """Start timing a subtask."""
        logger.debug(f"Stage '{self.name}': Starting subtask '{subtask_name}'")
        return time.time()

    def _end_subtask(self, subtask_name: str, start_time: float) -> None:
        """End timing a subtask and record duration."""
        elapsed = time.time() - start_time
        self._subtask_times[subtask_name] = elapsed
        logger.debug(f"Stage '{self.name}': Completed subtask '{subtask_name}' in {elapsed:.1f}s")

    @property
    def subtask_times(self) -> Dict[str, float]:
        """Get recorded subtask durations."""
        return self._subtask_times.copy()
