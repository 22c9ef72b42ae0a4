"""
Toolbox - builds tasks for the external collaborators.

Every collaborator (partitioner, diff encoder, inference, tree export,
rerooting) is described in the configuration by a command template and its
resource/failure policies. This module turns those descriptions into concrete
``Task`` objects with deterministic output paths; it never runs anything.
"""

import logging
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

from .chunker import Batch
from .pipeline_core.workspace import Workspace
from .sequences import SequenceSet
from .tasks import ResourcePolicy, Task, policies_from_config, render_command
from .trees import Checkpoint, Tree

logger = logging.getLogger(__name__)

TASK_KINDS = ("partition", "encode", "initial_build", "infer", "tree_export", "reroot")


class Toolbox:
    """Task factory for all external tools used by the pipeline.

    Parameters
    ----------
    config : dict
        Pipeline configuration with a ``tasks`` section
    workspace : Workspace
        Provides the output paths
    """

    def __init__(self, config: Dict[str, Any], workspace: Workspace):
        self.config = config
        self.workspace = workspace
        tasks_config = config.get("tasks", {})
        missing = [kind for kind in TASK_KINDS if kind not in tasks_config]
        if missing:
            raise ValueError(f"Configuration has no task definition for: {', '.join(missing)}")
        self._definitions = {kind: tasks_config[kind] for kind in TASK_KINDS}
        self._policies = {
            kind: policies_from_config(definition)
            for kind, definition in self._definitions.items()
        }

    def _command_template(self, kind: str) -> List[str]:
        command = self._definitions[kind]["command"]
        if isinstance(command, str):
            return shlex.split(command)
        return list(command)

    def resource_policy(self, kind: str) -> ResourcePolicy:
        """Return the memory schedule configured for a task kind."""
        return self._policies[kind][0]

    def executables(self) -> List[str]:
        """Return the executable of every configured task kind."""
        return sorted({self._command_template(kind)[0] for kind in TASK_KINDS})

    def _task(
        self,
        kind: str,
        name: str,
        inputs: Dict[str, Path],
        outputs: Dict[str, Path],
        batch_index: Optional[int] = None,
        **extra: Any,
    ) -> Task:
        values = {
            "threads": self.config.get("threads", 1),
            "reference": self.config.get("reference_name", ""),
            "outgroup": self.config.get("outgroup", ""),
        }
        values.update(inputs)
        values.update({f"out_{role}": path for role, path in outputs.items()})
        values.update(extra)
        resource, failure = self._policies[kind]
        return Task(
            name=name,
            kind=kind,
            command=render_command(self._command_template(kind), values),
            inputs=dict(inputs),
            outputs=dict(outputs),
            resource=resource,
            failure=failure,
            batch_index=batch_index,
        )

    def partition(self, sequences: SequenceSet, tree: Tree) -> Task:
        """Split sequences into those matching tree leaves and the rest."""
        return self._task(
            "partition",
            "partition",
            {"sequences": sequences.path, "tree": tree.path},
            {
                "matched": self.workspace.get_intermediate_path("matched.fa"),
                "unmatched": self.workspace.get_intermediate_path("unmatched.fa"),
            },
        )

    def encode(self, batch: Batch) -> Task:
        """Diff-encode one batch against the reference."""
        return self._task(
            "encode",
            f"encode.{batch.name}",
            {"sequences": batch.sequences.path},
            {"diff": self.workspace.get_batch_path(batch.index, ".vcf")},
            batch_index=batch.index,
        )

    def encode_seed(self, sequences: SequenceSet) -> Task:
        """Diff-encode the sequences already represented in the seed tree."""
        return self._task(
            "encode",
            "encode.seed",
            {"sequences": sequences.path},
            {"diff": self.workspace.get_intermediate_path("seed.vcf")},
        )

    def initial_build(self, tree: Tree, diff: Path) -> Task:
        """Build the first checkpoint from the seed tree."""
        return self._task(
            "initial_build",
            "initial_build",
            {"tree": tree.path, "diff": diff},
            {
                "checkpoint": self.workspace.get_initial_checkpoint_path(".pb"),
                "tree": self.workspace.get_initial_checkpoint_path(".nwk"),
            },
        )

    def infer(self, batch_index: int, diff: Path, checkpoint: Checkpoint) -> Task:
        """Place one batch onto ``checkpoint``, producing the next checkpoint."""
        return self._task(
            "infer",
            f"infer.batch_{batch_index:04d}",
            {"checkpoint": checkpoint.path, "diff": diff},
            {
                "checkpoint": self.workspace.get_checkpoint_path(batch_index, ".pb"),
                "tree": self.workspace.get_checkpoint_path(batch_index, ".nwk"),
            },
            batch_index=batch_index,
        )

    def tree_export(self, checkpoint: Checkpoint) -> Task:
        """Write the text tree held in a checkpoint."""
        return self._task(
            "tree_export",
            "tree_export",
            {"checkpoint": checkpoint.path},
            {"tree": self.workspace.get_intermediate_path("existing.nwk")},
        )

    def reroot(self, tree: Tree, outgroup: str) -> Task:
        """Root ``tree`` on ``outgroup``."""
        return self._task(
            "reroot",
            "reroot",
            {"tree": tree.path},
            {"tree": self.workspace.get_output_path(".rooted")},
            outgroup=outgroup,
        )
