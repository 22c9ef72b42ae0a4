"""
Setup stages for validation and input loading.

These stages run before any external tool is launched: they reject bad
configuration and missing inputs early, check that every tool is installed,
and index the input sequences.
"""

import logging
import shutil

from ..config import validate_config
from ..pipeline_core import MODE_UPDATE, PipelineContext, Stage
from ..pipeline_core.error_handling import ToolNotFoundError, validate_file_exists
from ..sequences import SequenceSet
from ..trees import Checkpoint, Tree

logger = logging.getLogger(__name__)


class ToolCheckStage(Stage):
    """Verify that every configured external tool is on PATH."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "tool_check"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Check external tool availability"

    @property
    def parallel_safe(self) -> bool:
        """Return whether this stage can run in parallel with others."""
        return True

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Look up each executable with shutil.which."""
        for executable in context.toolbox.executables():
            location = shutil.which(executable)
            if location is None:
                raise ToolNotFoundError(executable, self.name)
            logger.debug(f"Found {executable} at {location}")
        return context


class InputValidationStage(Stage):
    """Validate configuration and input files, and index the sequences."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "input_validation"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Validate configuration and inputs"

    @property
    def soft_dependencies(self) -> set:
        """Return the set of stages that should run first if present."""
        return {"tool_check"}

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Check settings and files, then index the sequence FASTA."""
        validate_config(context.config)

        config = context.config
        sequences_path = validate_file_exists(config["sequences"], self.name)

        if context.mode == MODE_UPDATE:
            checkpoint_path = validate_file_exists(config["checkpoint"], self.name)
            context.initial_checkpoint = Checkpoint(checkpoint_path)
            if config.get("existing_tree"):
                tree = Tree(validate_file_exists(config["existing_tree"], self.name))
                context.reference_tree = tree
                context.initial_tree = tree
        else:
            validate_file_exists(config["seed_tree"], self.name)

        context.sequences = SequenceSet.from_fasta(sequences_path)
        logger.info(f"Indexed {len(context.sequences)} sequences from {sequences_path}")
        return context

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Validate again; later stages need the inputs on the context."""
        return self._process(context)
