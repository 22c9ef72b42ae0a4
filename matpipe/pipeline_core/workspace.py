"""
Workspace - Centralized file path management for pipeline runs.

All artifact names are derived from the run label and the batch index, so a
re-run with the same inputs writes to the same paths. That is what makes task
retries and resumed runs idempotent.
"""

import logging
import shutil
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class Workspace:
    """Manages all file paths for a pipeline run.

    Layout under ``output_dir``::

        <label>.final.pb / .final.nwk / .rooted.nwk / .summary.*
        checkpoints/<label>.batch_NNNN.pb and .nwk
        intermediate/            partition outputs, normalized tree
        intermediate/batches/    batch FASTA and diff files
        logs/                    one log per task attempt

    Attributes
    ----------
    output_dir : Path
        Main output directory
    base_name : str
        Run label used as the prefix of generated files
    """

    def __init__(self, output_dir: Path, base_name: str):
        """Initialize workspace with output directory and base name.

        Parameters
        ----------
        output_dir : Path
            Main output directory path
        base_name : str
            Run label, usually the run date
        """
        self.output_dir = Path(output_dir)
        self.base_name = base_name

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.intermediate_dir = self.output_dir / "intermediate"
        self.intermediate_dir.mkdir(exist_ok=True)
        self.batch_dir = self.intermediate_dir / "batches"
        self.batch_dir.mkdir(exist_ok=True)
        self.checkpoint_dir = self.output_dir / "checkpoints"
        self.checkpoint_dir.mkdir(exist_ok=True)
        self.log_dir = self.output_dir / "logs"
        self.log_dir.mkdir(exist_ok=True)

        logger.debug(f"Workspace initialized: output_dir={self.output_dir}")

    def get_output_path(self, suffix: str, extension: str = ".nwk") -> Path:
        """Generate output file path with suffix and extension.

        Parameters
        ----------
        suffix : str
            Suffix to append to base name (e.g., ".final", ".rooted")
        extension : str
            File extension including dot (default: ".nwk")

        Returns
        -------
        Path
            Full path for the output file
        """
        return self.output_dir / f"{self.base_name}{suffix}{extension}"

    def get_intermediate_path(self, name: str) -> Path:
        """Generate intermediate file path."""
        return self.intermediate_dir / name

    def get_batch_path(self, index: int, extension: str) -> Path:
        """Return the path of a per-batch intermediate (sequences or diff)."""
        return self.batch_dir / f"batch_{index:04d}{extension}"

    def get_checkpoint_path(self, index: int, extension: str = ".pb") -> Path:
        """Return the checkpoint (or tree, with ``.nwk``) produced by batch ``index``."""
        return self.checkpoint_dir / f"{self.base_name}.batch_{index:04d}{extension}"

    def get_initial_checkpoint_path(self, extension: str = ".pb") -> Path:
        """Return the checkpoint (or tree) built from the seed tree."""
        return self.checkpoint_dir / f"{self.base_name}.initial{extension}"

    def cleanup(self) -> None:
        """Remove the intermediate directory.

        Checkpoints and logs are never removed; they are needed to inspect or
        restart a run.
        """
        try:
            if self.intermediate_dir.exists() and self.intermediate_dir.parent == self.output_dir:
                shutil.rmtree(self.intermediate_dir)
                logger.debug(f"Cleaned up intermediate directory: {self.intermediate_dir}")
        except OSError as e:
            logger.warning(f"Error during cleanup: {e}")

    def list_checkpoints(self) -> List[Path]:
        """List the per-batch checkpoints in chain order."""
        return sorted(self.checkpoint_dir.glob(f"{self.base_name}.batch_*.pb"))

    def __repr__(self) -> str:
        """Return string representation of the workspace."""
        return f"Workspace(output_dir='{self.output_dir}', base_name='{self.base_name}')"
