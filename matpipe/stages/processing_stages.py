"""
Processing stages for tree building.

This module contains the stages between input validation and finalization:
- Seed tree normalization (full build) or tree export (incremental update)
- Partitioning sequences into represented and new
- Building the initial checkpoint (full build)
- Chunking the new sequences into batches
- Threading the batches through the checkpoint chain
"""

import logging
import shutil
from pathlib import Path
from typing import List

from ..chunker import chunk
from ..pipeline_core import PipelineContext, Stage
from ..pipeline_core.error_handling import DependencyMissingError
from ..run_state import BATCH_APPLIED, BATCH_SKIPPED
from ..sequences import SequenceSet
from ..threader import CheckpointThreader, ThreadingResult, ThreadState
from ..trees import Checkpoint, Tree, normalize_tree_file

logger = logging.getLogger(__name__)


class TreeNormalizationStage(Stage):
    """Strip decorations from the seed tree that downstream tools reject."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "tree_normalization"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Normalize seed tree"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"input_validation"}

    def _output_path(self, context: PipelineContext) -> Path:
        return context.workspace.get_intermediate_path("seed.normalized.nwk")

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Write the normalized seed tree to the intermediate directory."""
        tree = normalize_tree_file(Path(context.config["seed_tree"]), self._output_path(context))
        leaves = tree.leaf_names()
        if not leaves:
            raise DependencyMissingError(
                f"Seed tree {context.config['seed_tree']} has no leaves", self.name
            )
        logger.info(f"Seed tree has {len(leaves)} leaves")
        context.seed_tree = tree
        context.reference_tree = tree
        return context

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Restore the normalized tree from a previous run."""
        tree = Tree(self._output_path(context))
        context.seed_tree = tree
        context.reference_tree = tree
        return context

    def get_output_files(self, context: PipelineContext) -> List[Path]:
        """Return the normalized tree."""
        return [self._output_path(context)]


class TreeExportStage(Stage):
    """Extract the text tree held in the starting checkpoint."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "tree_export"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Export tree from existing checkpoint"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"input_validation"}

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Run the tree export tool on the starting checkpoint."""
        result = context.task_runner.run(context.toolbox.tree_export(context.initial_checkpoint))
        tree = Tree(result.outputs["tree"])
        logger.info(f"Existing tree has {len(tree.leaf_names())} leaves")
        context.reference_tree = tree
        context.initial_tree = tree
        return context

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Restore the exported tree from a previous run."""
        tree = Tree(context.workspace.get_intermediate_path("existing.nwk"))
        context.reference_tree = tree
        context.initial_tree = tree
        return context

    def get_output_files(self, context: PipelineContext) -> List[Path]:
        """Return the exported tree."""
        return [context.workspace.get_intermediate_path("existing.nwk")]


class SequencePartitionStage(Stage):
    """Split the sequences into those already in the tree and new ones."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "sequence_partition"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Partition sequences by tree leaves"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"input_validation"}

    @property
    def soft_dependencies(self) -> set:
        """Return the set of stages that should run first if present."""
        return {"tree_normalization", "tree_export"}

    def validate_prerequisites(self, context: PipelineContext) -> None:
        """Require a tree to partition against."""
        if context.reference_tree is None:
            raise DependencyMissingError("No tree available to partition sequences against")

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Run the partition tool and index both halves."""
        result = context.task_runner.run(
            context.toolbox.partition(context.sequences, context.reference_tree)
        )
        return self._load(context, result.outputs["matched"], result.outputs["unmatched"])

    def _load(self, context: PipelineContext, matched: Path, unmatched: Path) -> PipelineContext:
        context.matched = SequenceSet.from_fasta(matched)
        context.unmatched = SequenceSet.from_fasta(unmatched)
        logger.info(
            f"{len(context.matched)} sequences already in the tree, "
            f"{len(context.unmatched)} new"
        )
        return context

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Re-index the partition outputs of a previous run."""
        return self._load(context, *self.get_output_files(context))

    def get_output_files(self, context: PipelineContext) -> List[Path]:
        """Return the matched and unmatched FASTA files."""
        return [
            context.workspace.get_intermediate_path("matched.fa"),
            context.workspace.get_intermediate_path("unmatched.fa"),
        ]


class InitialCheckpointStage(Stage):
    """Build the first checkpoint from the seed tree and its sequences."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "initial_checkpoint"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Build initial checkpoint from seed tree"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"tree_normalization", "sequence_partition"}

    @property
    def parallel_safe(self) -> bool:
        """Return whether this stage can run in parallel with others."""
        return True

    @property
    def estimated_runtime(self) -> float:
        """Return the estimated runtime in seconds."""
        return 600.0

    def validate_prerequisites(self, context: PipelineContext) -> None:
        """Require at least one sequence represented in the seed tree."""
        if context.matched is None or len(context.matched) == 0:
            raise DependencyMissingError(
                "None of the input sequences match a leaf of the seed tree; "
                "cannot build an initial checkpoint",
                self.name,
            )

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Encode the represented sequences, then run the initial build."""
        start = self._start_subtask("encode")
        encoded = context.task_runner.run(context.toolbox.encode_seed(context.matched))
        self._end_subtask("encode", start)

        start = self._start_subtask("initial_build")
        built = context.task_runner.run(
            context.toolbox.initial_build(context.seed_tree, encoded.outputs["diff"])
        )
        self._end_subtask("initial_build", start)

        context.update(
            initial_checkpoint=Checkpoint(built.outputs["checkpoint"]),
            initial_tree=Tree(built.outputs["tree"]),
        )
        return context

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Restore the initial checkpoint of a previous run."""
        checkpoint_path, tree_path = self.get_output_files(context)
        context.update(initial_checkpoint=Checkpoint(checkpoint_path), initial_tree=Tree(tree_path))
        return context

    def get_output_files(self, context: PipelineContext) -> List[Path]:
        """Return the initial checkpoint and its tree."""
        return [
            context.workspace.get_initial_checkpoint_path(".pb"),
            context.workspace.get_initial_checkpoint_path(".nwk"),
        ]


class ChunkingStage(Stage):
    """Split the new sequences into ordered batches."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "chunking"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Split new sequences into batches"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"sequence_partition"}

    @property
    def parallel_safe(self) -> bool:
        """Return whether this stage can run in parallel with others."""
        return True

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Write batch FASTA files."""
        batches = chunk(
            context.unmatched, context.config["batch_size"], context.workspace.batch_dir
        )
        context.update(batches=batches)
        return context

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Re-chunk; the batch assignment is the same as in the previous run."""
        return self._process(context)


class CheckpointThreadingStage(Stage):
    """Apply every batch to the checkpoint chain and publish the final state."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "checkpoint_threading"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Thread batches through the checkpoint chain"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"chunking"}

    @property
    def soft_dependencies(self) -> set:
        """Return the set of stages that should run first if present."""
        return {"initial_checkpoint", "tree_export"}

    def validate_prerequisites(self, context: PipelineContext) -> None:
        """Require a starting checkpoint and its tree."""
        if context.initial_checkpoint is None or context.initial_tree is None:
            raise DependencyMissingError("No starting checkpoint for the checkpoint chain")

    def _encode_workers(self, context: PipelineContext) -> int:
        configured = context.config.get("encode_workers")
        if configured:
            return int(configured)
        resource_manager = context.task_runner.resource_manager
        if resource_manager is None or not context.batches:
            return 1
        encode_gb = context.toolbox.resource_policy("encode").base_mb / 1024
        return resource_manager.auto_workers(len(context.batches), encode_gb)

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Run the threader, then copy the final state to the output directory."""
        run_state = context.checkpoint_state
        threader = CheckpointThreader(
            context.toolbox,
            context.task_runner,
            encode_workers=self._encode_workers(context),
            keep_intermediates=context.config.get("keep_intermediates", False),
            on_batch=run_state.record_batch if run_state else None,
        )
        result = threader.run(
            context.batches,
            ThreadState(context.initial_checkpoint, context.initial_tree),
            completed=run_state.batch_records() if run_state else None,
        )
        context.threading_result = result
        self._publish(context, result.state)
        return context

    def _publish(self, context: PipelineContext, state: ThreadState) -> None:
        checkpoint_path, tree_path = self.get_output_files(context)
        shutil.copyfile(state.checkpoint.path, checkpoint_path)
        shutil.copyfile(state.tree.path, tree_path)
        context.final_checkpoint = Checkpoint(checkpoint_path, state.checkpoint.version)
        context.final_tree = Tree(tree_path)
        logger.info(f"Final checkpoint: {checkpoint_path}; final tree: {tree_path}")

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Rebuild the threading result from the recorded batch outcomes."""
        checkpoint_path, tree_path = self.get_output_files(context)
        records = sorted(context.checkpoint_state.batch_records().values(), key=lambda r: r.index)
        applied = [r.index for r in records if r.outcome == BATCH_APPLIED]
        version = max((r.version or 0 for r in records), default=0)
        context.final_checkpoint = Checkpoint(checkpoint_path, version)
        context.final_tree = Tree(tree_path)
        context.threading_result = ThreadingResult(
            state=ThreadState(context.final_checkpoint, context.final_tree),
            applied=applied,
            skipped=[r.index for r in records if r.outcome == BATCH_SKIPPED],
            records=records,
        )
        return context

    def get_output_files(self, context: PipelineContext) -> List[Path]:
        """Return the published final checkpoint and tree."""
        return [
            context.workspace.get_output_path(".final", ".pb"),
            context.workspace.get_output_path(".final", ".nwk"),
        ]
