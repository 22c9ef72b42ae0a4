"""
Output stages for finalization.

This module contains the stages that run once the checkpoint chain is
complete: rooting the final tree on the outgroup, writing the run summary,
and sending the completion notification.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

from ..notify import render_message, send_notification
from ..pipeline_core import PipelineContext, Stage
from ..pipeline_core.error_handling import DependencyMissingError
from ..trees import Tree

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["batch_index", "sequences", "outcome", "checkpoint", "tree"]


def build_run_summary(context: PipelineContext, status: str = "completed") -> Dict[str, Any]:
    """Collect the facts an operator needs about a run.

    Parameters
    ----------
    context : PipelineContext
        Context after (or during) the run
    status : str
        ``completed`` or ``failed``

    Returns
    -------
    dict
        JSON-serializable summary
    """
    result = context.threading_result
    final_checkpoint = context.final_checkpoint
    return {
        "status": status,
        "mode": context.mode,
        "run_date": context.workspace.base_name,
        "batch_count": len(context.batches),
        "applied": list(result.applied) if result else [],
        "skipped": list(result.skipped) if result else [],
        "final_checkpoint": str(final_checkpoint.path) if final_checkpoint else None,
        "final_tree": str(context.final_tree.path) if context.final_tree else None,
        "rooted_tree": str(context.rooted_tree.path) if context.rooted_tree else None,
        "checkpoints": [str(p) for p in context.workspace.list_checkpoints()],
        "outgroup": context.config.get("outgroup"),
        "elapsed_seconds": context.get_execution_time(),
    }


class RerootStage(Stage):
    """Root the final tree on the configured outgroup."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "reroot"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Reroot final tree on outgroup"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"checkpoint_threading"}

    def validate_prerequisites(self, context: PipelineContext) -> None:
        """Require the outgroup to be a leaf of the final tree."""
        outgroup = context.config.get("outgroup")
        if context.final_tree is None:
            raise DependencyMissingError("No final tree to reroot", self.name)
        if outgroup not in set(context.final_tree.leaf_names()):
            raise DependencyMissingError(
                f"Outgroup '{outgroup}' is not a leaf of the final tree "
                f"{context.final_tree.path}",
                self.name,
                {"outgroup": outgroup, "tree": str(context.final_tree.path)},
            )

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Run the reroot tool."""
        outgroup = context.config["outgroup"]
        result = context.task_runner.run(context.toolbox.reroot(context.final_tree, outgroup))
        context.rooted_tree = Tree(result.outputs["tree"])
        logger.info(f"Rooted tree on '{outgroup}': {context.rooted_tree.path}")
        return context

    def _handle_checkpoint_skip(self, context: PipelineContext) -> PipelineContext:
        """Restore the rooted tree of a previous run."""
        context.rooted_tree = Tree(self.get_output_files(context)[0])
        return context

    def get_output_files(self, context: PipelineContext) -> List[Path]:
        """Return the rooted tree."""
        return [context.workspace.get_output_path(".rooted")]


class RunSummaryStage(Stage):
    """Write the per-batch TSV and the JSON run summary."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "run_summary"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Write run summary"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"reroot"}

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Write ``<label>.summary.tsv`` and ``<label>.summary.json``."""
        tsv_path = context.workspace.get_output_path(".summary", ".tsv")
        json_path = context.workspace.get_output_path(".summary", ".json")

        records = context.threading_result.records if context.threading_result else []
        df = pd.DataFrame(
            [
                {
                    "batch_index": r.index,
                    "sequences": r.size,
                    "outcome": r.outcome,
                    "checkpoint": r.checkpoint or "",
                    "tree": r.tree or "",
                }
                for r in records
            ],
            columns=SUMMARY_COLUMNS,
        )
        df.to_csv(tsv_path, sep="\t", index=False)

        summary = build_run_summary(context)
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)

        context.summary_paths = {"tsv": tsv_path, "json": json_path}
        context.mark_complete(self.name, summary)
        logger.info(f"Run summary written to {json_path}")
        return context


class NotificationStage(Stage):
    """Send the completion notification, if an endpoint is configured."""

    @property
    def name(self) -> str:
        """Return the stage name."""
        return "notification"

    @property
    def description(self) -> str:
        """Return a description of what this stage does."""
        return "Send completion notification"

    @property
    def dependencies(self) -> set:
        """Return the set of stage names this stage depends on."""
        return {"run_summary"}

    def _process(self, context: PipelineContext) -> PipelineContext:
        """Render and post the message; delivery failures are only logged."""
        url = context.config.get("notify_url")
        if not url:
            logger.info("No notification endpoint configured; skipping notification")
            return context

        summary = context.get_result("run_summary") or build_run_summary(context)
        context.notification_sent = send_notification(
            url, render_message(summary), context.config.get("notify_timeout", 10)
        )
        return context
