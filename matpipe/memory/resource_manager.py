"""
Host resource detection for matpipe.

Detects the memory and CPUs available to the run (from configuration, SLURM,
cgroups, or psutil) so that task memory budgets can be capped at what the
host can actually grant, and so that the number of concurrent encode workers
fits in memory.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class ResourceManager:
    """
    Resource manager that:
    1. Detects usable memory from config, SLURM, cgroups, or psutil
    2. Detects CPU cores
    3. Caps per-attempt task memory budgets at the detected limit
    4. Calculates worker counts for parallel encode tasks
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, memory_safety_factor: float = 0.90):
        """
        Initialize the resource manager.

        Args:
            config: Configuration dictionary; ``max_memory_gb`` overrides detection
            memory_safety_factor: Fraction of detected memory tasks may use
        """
        self.config = config or {}
        self.memory_safety_factor = memory_safety_factor

        self.memory_gb = self._detect_memory()
        self.cpu_cores = self._detect_cpus()

        logger.info(
            f"ResourceManager: {self.cpu_cores} CPUs, {self.memory_gb:.1f}GB available "
            f"({self._get_memory_source()})"
        )

    def _get_memory_source(self) -> str:
        """Get description of memory detection source for logging."""
        if self.config.get("max_memory_gb"):
            return "config"
        if os.getenv("SLURM_MEM_PER_NODE"):
            return "SLURM"
        if self._get_cgroup_memory_limit():
            return "cgroup"
        return "psutil"

    def _detect_memory(self) -> float:
        """
        Detect the memory limit in GB.

        Priority: ``max_memory_gb`` config, SLURM allocation, cgroup limit,
        then psutil total memory.
        """
        configured = self.config.get("max_memory_gb")
        if configured:
            return float(configured)

        slurm_mem = os.getenv("SLURM_MEM_PER_NODE")
        if slurm_mem:
            try:
                # SLURM memory is in MB
                return float(slurm_mem) / 1024
            except ValueError:
                logger.warning(f"Invalid SLURM_MEM_PER_NODE value: {slurm_mem}")

        cgroup_limit = self._get_cgroup_memory_limit()
        if cgroup_limit:
            return cgroup_limit

        return psutil.virtual_memory().total / (1024**3)

    def _get_cgroup_memory_limit(self) -> Optional[float]:
        """Get memory limit from cgroup v1 or v2 in GB, or None if unlimited."""
        cgroup_paths = [
            "/sys/fs/cgroup/memory/memory.limit_in_bytes",  # cgroup v1
            "/sys/fs/cgroup/memory.max",  # cgroup v2
        ]

        for path in cgroup_paths:
            try:
                if Path(path).exists():
                    with open(path) as f:
                        limit_str = f.read().strip()
                    if limit_str == "max":
                        continue
                    limit_bytes = int(limit_str)
                    # v1 reports "unlimited" as a huge number
                    if limit_bytes < (1 << 62):
                        return limit_bytes / (1024**3)
            except (OSError, ValueError) as e:
                logger.debug(f"Could not read {path}: {e}")

        return None

    def _detect_cpus(self) -> int:
        """Detect CPU core count, falling back to 4."""
        cores = psutil.cpu_count(logical=False) or os.cpu_count()
        if cores:
            return cores
        logger.warning("Could not detect CPU count, using conservative 4 cores")
        return 4

    @property
    def usable_memory_mb(self) -> int:
        return int(self.memory_gb * self.memory_safety_factor * 1024)

    def cap_budget(self, memory_mb: int) -> int:
        """
        Cap a task memory budget at what this host can grant.

        Args:
            memory_mb: Requested budget in MB

        Returns:
            The budget, or the usable host memory if the request exceeds it
        """
        usable = self.usable_memory_mb
        if memory_mb > usable:
            logger.warning(
                f"Requested {memory_mb}MB exceeds usable host memory; capping at {usable}MB"
            )
            return usable
        return memory_mb

    def auto_workers(self, task_count: int, memory_per_task_gb: float) -> int:
        """
        Calculate the number of concurrent workers for independent tasks.

        Args:
            task_count: Number of tasks to process
            memory_per_task_gb: Memory requirement per task in GB

        Returns:
            Worker count bounded by memory, CPUs, and the number of tasks
        """
        safe_memory_gb = self.memory_gb * self.memory_safety_factor
        if memory_per_task_gb > 0:
            memory_constrained = max(1, int(safe_memory_gb / memory_per_task_gb))
        else:
            memory_constrained = self.cpu_cores

        workers = max(1, min(memory_constrained, self.cpu_cores, task_count))

        logger.debug(
            f"Auto workers: {workers} (memory_limit={memory_constrained}, "
            f"cpu_limit={self.cpu_cores}, task_limit={task_count})"
        )
        return workers

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of detected resources for logging."""
        return {
            "memory_gb": self.memory_gb,
            "memory_source": self._get_memory_source(),
            "cpu_cores": self.cpu_cores,
            "usable_memory_mb": self.usable_memory_mb,
        }
