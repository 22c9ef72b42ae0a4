"""
Pipeline assembly for the two run modes.

A full build starts from a seed tree; an incremental update starts from an
existing checkpoint. Both share partitioning, chunking, the checkpoint chain
and finalization; they differ only in how the starting checkpoint and the
reference tree are obtained.
"""

import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .memory import ResourceManager
from .notify import render_message, send_notification
from .pipeline_core import MODE_FULL, MODE_UPDATE, PipelineContext, PipelineRunner, Stage
from .pipeline_core.error_handling import PipelineError
from .pipeline_core.workspace import Workspace
from .run_state import RunState
from .stages import (
    CheckpointThreadingStage,
    ChunkingStage,
    InitialCheckpointStage,
    InputValidationStage,
    NotificationStage,
    RerootStage,
    RunSummaryStage,
    SequencePartitionStage,
    ToolCheckStage,
    TreeExportStage,
    TreeNormalizationStage,
    build_run_summary,
)
from .tasks import DEFAULT_KILLED_RETURN_CODES, SubprocessExecutor, TaskRunner, ToolExecutor
from .tools import Toolbox
from .version import __version__

logger = logging.getLogger(__name__)


def default_run_date() -> str:
    """Return today's date as the default run label."""
    return datetime.now().strftime("%Y-%m-%d")


def build_pipeline_stages(config: Dict[str, Any]) -> List[Stage]:
    """Build the list of stages for the configured mode.

    Parameters
    ----------
    config : dict
        Merged configuration; ``mode`` selects the flow

    Returns
    -------
    List[Stage]
        Stages to execute
    """
    mode = config.get("mode", MODE_FULL)
    stages: List[Stage] = []

    if not config.get("skip_tool_check"):
        stages.append(ToolCheckStage())
    stages.append(InputValidationStage())

    if mode == MODE_FULL:
        stages.append(TreeNormalizationStage())
    elif mode == MODE_UPDATE:
        if not config.get("existing_tree"):
            stages.append(TreeExportStage())
    else:
        raise ValueError(f"Unknown pipeline mode: {mode}")

    stages.append(SequencePartitionStage())
    if mode == MODE_FULL:
        stages.append(InitialCheckpointStage())
    stages.append(ChunkingStage())
    stages.append(CheckpointThreadingStage())

    stages.append(RerootStage())
    stages.append(RunSummaryStage())
    stages.append(NotificationStage())

    return stages


def _prepare_run_state(config: Dict[str, Any], output_dir: Path) -> Optional[RunState]:
    """Create the run state, resuming from a previous run when asked and possible."""
    if not config.get("enable_checkpoint", True):
        return None

    run_state = RunState(str(output_dir))
    if config.get("resume"):
        if run_state.load() and run_state.can_resume(config, __version__):
            logger.info("Resuming previous run")
            logger.info(run_state.get_summary())
            return run_state
        logger.warning("No resumable state found; starting a fresh run")
    run_state.initialize(config, __version__)
    return run_state


def create_context(
    config: Dict[str, Any],
    args: Optional[argparse.Namespace] = None,
    executor: Optional[ToolExecutor] = None,
) -> PipelineContext:
    """Set up the workspace and services for a run.

    Parameters
    ----------
    config : dict
        Merged configuration, including inputs and ``output_dir``
    args : argparse.Namespace, optional
        Parsed command line, kept on the context for reference
    executor : ToolExecutor, optional
        Runs the external tools (default: ``SubprocessExecutor``)

    Returns
    -------
    PipelineContext
        Context ready for ``PipelineRunner.run``
    """
    config.setdefault("run_date", default_run_date())
    output_dir = Path(config.get("output_dir") or "output")
    workspace = Workspace(output_dir, config["run_date"])

    resource_manager = ResourceManager(config)
    task_runner = TaskRunner(
        executor or SubprocessExecutor(),
        workspace.log_dir,
        killed_return_codes=config.get("killed_return_codes") or DEFAULT_KILLED_RETURN_CODES,
        resource_manager=resource_manager,
    )

    return PipelineContext(
        args=args or argparse.Namespace(),
        config=config,
        workspace=workspace,
        toolbox=Toolbox(config, workspace),
        task_runner=task_runner,
        checkpoint_state=_prepare_run_state(config, output_dir),
    )


def _notify_failure(context: PipelineContext, error: Exception) -> None:
    url = context.config.get("notify_url")
    if not url:
        return
    summary = build_run_summary(context, status="failed")
    summary["error"] = str(error)
    send_notification(url, render_message(summary), context.config.get("notify_timeout", 10))


def run_pipeline(
    config: Dict[str, Any],
    args: Optional[argparse.Namespace] = None,
    executor: Optional[ToolExecutor] = None,
) -> PipelineContext:
    """Run a full build or an incremental update.

    Parameters
    ----------
    config : dict
        Merged configuration
    args : argparse.Namespace, optional
        Parsed command line
    executor : ToolExecutor, optional
        Runs the external tools (default: ``SubprocessExecutor``)

    Returns
    -------
    PipelineContext
        Final context; ``threading_result.skipped`` lists skipped batches

    Raises
    ------
    PipelineError
        On any fatal failure; artifacts produced so far are kept
    """
    context = create_context(config, args, executor)
    stages = build_pipeline_stages(config)
    runner = PipelineRunner(max_workers=config.get("threads"))

    logger.info(
        f"matpipe {__version__}: {context.mode} run '{context.workspace.base_name}' "
        f"with {len(stages)} stages"
    )
    if logger.isEnabledFor(logging.DEBUG):
        for i, level in enumerate(runner.dry_run(stages)):
            logger.debug(f"  Level {i}: {level}")

    try:
        context = runner.run(stages, context)
    except PipelineError as e:
        logger.error(f"Pipeline failed: {e}")
        _notify_failure(context, e)
        raise

    # Sequences of skipped batches stay on disk for resubmission
    skipped = context.threading_result.skipped if context.threading_result else []
    if not config.get("keep_intermediates") and not skipped:
        context.workspace.cleanup()

    logger.info("Pipeline completed successfully!")
    return context
