"""
Tool executors - the seam between the orchestration core and real binaries.

The task runner only ever calls ``ToolExecutor.execute``. It sees a return
code and nothing else, so tools can be swapped (or faked in tests) without
touching the scheduling logic.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import psutil

from ..pipeline_core.error_handling import ToolNotFoundError

logger = logging.getLogger(__name__)


class ToolExecutor(ABC):
    """Runs one rendered command under a memory budget."""

    @abstractmethod
    def execute(self, command: List[str], memory_mb: int, log_path: Path) -> int:
        """Run ``command`` and return its exit code.

        Parameters
        ----------
        command : List[str]
            Command and its arguments
        memory_mb : int
            Memory budget for this attempt in megabytes (0 means unlimited)
        log_path : Path
            File receiving the combined stdout/stderr of the command

        Returns
        -------
        int
            Exit code; negative values are signal numbers (``-9`` for SIGKILL)

        Raises
        ------
        ToolNotFoundError
            If the executable does not exist
        """


class SubprocessExecutor(ToolExecutor):
    """Run commands as local subprocesses with a watched memory budget.

    The process tree's resident memory is sampled every ``poll_interval``
    seconds. A tree that exceeds its budget is killed with SIGKILL, which the
    task runner classifies exactly like a kill from the kernel OOM killer or a
    batch scheduler.
    """

    def __init__(self, poll_interval: float = 0.5, enforce_memory: bool = True):
        self.poll_interval = poll_interval
        self.enforce_memory = enforce_memory

    def execute(self, command: List[str], memory_mb: int, log_path: Path) -> int:
        """Run the command, killing it if it outgrows ``memory_mb``."""
        logger.debug("Running command: %s", " ".join(command))
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with open(log_path, "w", encoding="utf-8") as log_f:
            try:
                proc = psutil.Popen(command, stdout=log_f, stderr=subprocess.STDOUT)
            except FileNotFoundError:
                raise ToolNotFoundError(command[0])

            killed = False
            while True:
                try:
                    returncode = proc.wait(timeout=self.poll_interval)
                    break
                except psutil.TimeoutExpired:
                    pass

                if killed or not self.enforce_memory or not memory_mb:
                    continue

                used_mb = self._tree_rss_mb(proc)
                if used_mb is not None and used_mb > memory_mb:
                    logger.warning(
                        f"'{command[0]}' uses {used_mb:.0f}MB, over its {memory_mb}MB budget; "
                        f"killing it"
                    )
                    self._kill_tree(proc)
                    killed = True

        if returncode != 0:
            logger.debug(f"Command exited with {returncode}; see {log_path}")
        return int(returncode)

    @staticmethod
    def _tree_rss_mb(proc: psutil.Process) -> Optional[float]:
        """Return the resident memory of a process and its children in MB."""
        try:
            processes = [proc] + proc.children(recursive=True)
        except psutil.NoSuchProcess:
            return None

        total = 0
        for p in processes:
            try:
                total += p.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return total / (1024**2)

    @staticmethod
    def _kill_tree(proc: psutil.Process) -> None:
        """Send SIGKILL to a process and all of its children."""
        try:
            children = proc.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        for p in children + [proc]:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                continue
