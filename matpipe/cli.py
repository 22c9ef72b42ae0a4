# File: matpipe/cli.py
# Location: matpipe/matpipe/cli.py

"""
Command-line interface (CLI) module.

This module defines the main entry point for matpipe's CLI. It parses the
arguments, configures logging, merges the command line over the loaded
configuration, runs the full build or incremental update, and maps the
outcome to the process exit code: 0 on completion (skipped batches
included), 1 on any fatal failure, 2 on invalid arguments.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_config, validate_config
from .pipeline import run_pipeline
from .pipeline_core import MODE_FULL, MODE_UPDATE
from .pipeline_core.error_handling import PipelineError, TaskError
from .run_state import RunState
from .version import __version__

logger = logging.getLogger("matpipe")

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

# CLI argument -> configuration key, for options that override config.json
CONFIG_OVERRIDES = {
    "batch_size": "batch_size",
    "outgroup": "outgroup",
    "notify_url": "notify_url",
    "threads": "threads",
    "encode_workers": "encode_workers",
    "max_memory_gb": "max_memory_gb",
    "reference_name": "reference_name",
}


def create_parser() -> argparse.ArgumentParser:
    """Create and return the argument parser for the matpipe CLI."""
    parser = argparse.ArgumentParser(
        description="matpipe: Build and update mutation-annotated trees in batches."
    )

    # General Options
    general_group = parser.add_argument_group("General Options")
    general_group.add_argument(
        "--version",
        action="version",
        version=f"matpipe {__version__}",
        help="Show the current version and exit",
    )
    general_group.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        default="INFO",
        help="Set the logging level",
    )
    general_group.add_argument(
        "--log-file", help="Path to a file to write logs to (in addition to stderr)."
    )
    general_group.add_argument(
        "-c",
        "--config",
        help="Path to configuration file",
        default=None,
    )

    # Core Input/Output
    io_group = parser.add_argument_group("Core Input/Output")
    io_group.add_argument("-s", "--sequences", help="Input sequences (FASTA, optionally gzipped)")
    start_group = io_group.add_mutually_exclusive_group()
    start_group.add_argument("-t", "--seed-tree", help="Seed tree (Newick) for a full build")
    start_group.add_argument(
        "-i", "--checkpoint", help="Existing checkpoint for an incremental update"
    )
    io_group.add_argument(
        "--existing-tree",
        help="Text tree of --checkpoint; skips exporting it from the checkpoint",
    )
    io_group.add_argument(
        "-o", "--output-dir", default="output", help="Output directory (default: output)"
    )
    io_group.add_argument(
        "--run-date", help="Run label used to name outputs (default: today, YYYY-MM-DD)"
    )

    # Tree Building
    build_group = parser.add_argument_group("Tree Building")
    build_group.add_argument(
        "-b", "--batch-size", type=int, help="Maximum sequences per batch (default from config)"
    )
    build_group.add_argument(
        "--outgroup", help="Leaf to root the final tree on (default from config)"
    )
    build_group.add_argument(
        "--reference-name", help="Reference sequence name passed to the diff encoder"
    )

    # Performance & Processing
    performance_group = parser.add_argument_group("Performance & Processing")
    performance_group.add_argument(
        "--threads", type=int, help="Threads for the inference tool (default from config)"
    )
    performance_group.add_argument(
        "--encode-workers",
        type=int,
        help="Concurrent diff-encoding tasks (default: derived from memory and CPUs)",
    )
    performance_group.add_argument(
        "--max-memory-gb", type=float, help="Memory available to tasks (default: detected)"
    )
    performance_group.add_argument(
        "--keep-intermediates",
        action="store_true",
        help="Keep batch FASTA and diff files after they are applied",
    )
    performance_group.add_argument(
        "--skip-tool-check",
        action="store_true",
        help="Do not check that the external tools are on PATH",
    )

    # Checkpoint & Resume Options
    resume_group = parser.add_argument_group("Checkpoint & Resume Options")
    resume_group.add_argument(
        "--resume",
        action="store_true",
        help="Resume an interrupted run in the same output directory",
    )
    resume_group.add_argument(
        "--show-state",
        action="store_true",
        help="Show the run state of the output directory and exit",
    )

    # Notification
    notify_group = parser.add_argument_group("Notification")
    notify_group.add_argument("--notify-url", help="Webhook URL for the completion message")

    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Set the matpipe log level and optionally add a file handler."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    level = LOG_LEVEL_MAP[level_name]
    logger.setLevel(level)

    if log_file:
        log_file_path = Path(log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        fh = logging.FileHandler(log_file)
        fh.setLevel(level)
        fh.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
        )
        logger.addHandler(fh)
        logger.debug(f"Logging to file enabled: {log_file}")


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    """Load the configuration and apply the command line over it.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist
    ValueError
        If the configuration file is not valid JSON
    """
    cfg = load_config(args.config)

    for arg_name, key in CONFIG_OVERRIDES.items():
        value = getattr(args, arg_name)
        if value is not None:
            cfg[key] = value

    cfg["mode"] = MODE_UPDATE if args.checkpoint else MODE_FULL
    cfg["sequences"] = args.sequences
    cfg["seed_tree"] = args.seed_tree
    cfg["checkpoint"] = args.checkpoint
    cfg["existing_tree"] = args.existing_tree
    cfg["output_dir"] = args.output_dir
    if args.run_date:
        cfg["run_date"] = args.run_date
    if args.keep_intermediates:
        cfg["keep_intermediates"] = True
    cfg["skip_tool_check"] = args.skip_tool_check
    cfg["resume"] = args.resume
    return cfg


def describe_failure(error: PipelineError) -> str:
    """Return the operator-facing description of a fatal error."""
    parts = []
    if isinstance(error, TaskError):
        parts.append(f"task={error.task}")
        if error.batch_index is not None:
            parts.append(f"batch={error.batch_index}")
    if error.stage:
        parts.append(f"stage={error.stage}")
    if error.classification:
        parts.append(f"classification={error.classification}")
    return ", ".join(parts)


def main(argv: Optional[List[str]] = None) -> int:
    """Run main entry point for the matpipe CLI.

    Steps:
        1. Parse arguments.
        2. Configure logging and load config.
        3. Validate mandatory parameters (sequences, seed tree or checkpoint).
        4. Update configuration with CLI parameters.
        5. Run the pipeline.
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    if args.show_state:
        run_state = RunState(args.output_dir)
        if run_state.load():
            print(run_state.get_summary())
        else:
            print(f"No run state found in {args.output_dir}")
        return 0

    if not args.sequences:
        parser.error("--sequences is required")
    if not (args.seed_tree or args.checkpoint):
        parser.error("one of --seed-tree (full build) or --checkpoint (update) is required")
    if args.existing_tree and not args.checkpoint:
        parser.error("--existing-tree is only valid with --checkpoint")

    logger.debug(f"CLI arguments: {args}")

    try:
        cfg = build_config(args)
        validate_config(cfg)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        context = run_pipeline(cfg, args)
    except PipelineError as e:
        logger.error(f"Pipeline failed ({describe_failure(e)}): {e}")
        return 1
    except Exception as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        return 1

    result = context.threading_result
    if result and result.skipped:
        logger.warning(
            f"Completed with {len(result.skipped)} skipped batches: "
            f"{', '.join(str(i) for i in result.skipped)} (see the run summary)"
        )
    if context.rooted_tree:
        logger.info(f"Rooted tree: {context.rooted_tree.path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
