"""
TaskRunner - runs one task to completion under its failure policy.

Memory kills are recovered here, inside the retry loop, with a larger budget
on every attempt. They only surface to callers once retries are exhausted, and
under ``RETRY_THEN_IGNORE`` not even then: the caller receives an ``ignored``
result and keeps its previous state.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from ..memory import ResourceManager
from ..pipeline_core.error_handling import (
    RESOURCE_EXHAUSTED,
    TASK_FAILED,
    ResourceExhaustedError,
    RetriesExhaustedError,
    TaskFailedError,
)
from .executor import ToolExecutor
from .policies import FailurePolicy
from .task import Task, TaskAttempt, TaskResult, TaskStatus

logger = logging.getLogger(__name__)

# SIGKILL as reported by Popen (-9) and by a shell wrapper (128 + 9)
DEFAULT_KILLED_RETURN_CODES = (-9, 137)


class TaskRunner:
    """Execute tasks through a ``ToolExecutor`` with retries and memory scaling.

    Attributes
    ----------
    executor : ToolExecutor
        Capability used to run commands
    log_dir : Path
        Directory for per-attempt logs
    killed_return_codes : tuple
        Return codes classified as ``ResourceExhausted``
    resource_manager : ResourceManager, optional
        Caps budgets at the host's memory when given
    """

    def __init__(
        self,
        executor: ToolExecutor,
        log_dir: Path,
        killed_return_codes: Iterable[int] = DEFAULT_KILLED_RETURN_CODES,
        resource_manager: Optional[ResourceManager] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.log_dir = Path(log_dir)
        self.killed_return_codes = tuple(killed_return_codes)
        self.resource_manager = resource_manager
        self._sleep = sleep

    def classify(self, returncode: int) -> Optional[str]:
        """Classify an exit code.

        Returns
        -------
        str or None
            None for success, otherwise ``ResourceExhausted`` or ``TaskFailed``
        """
        if returncode == 0:
            return None
        if returncode in self.killed_return_codes:
            return RESOURCE_EXHAUSTED
        return TASK_FAILED

    def run(self, task: Task) -> TaskResult:
        """Run a task, retrying memory kills as its policies allow.

        Parameters
        ----------
        task : Task
            The task to run

        Returns
        -------
        TaskResult
            ``succeeded`` with the declared outputs, or ``ignored`` with no
            outputs when a ``RETRY_THEN_IGNORE`` task ran out of retries

        Raises
        ------
        TaskFailedError
            The task exited non-zero for a non-memory reason, or did not
            produce its declared outputs
        ResourceExhaustedError
            A ``TERMINATE_IMMEDIATELY`` task was killed for memory
        RetriesExhaustedError
            A ``RETRY_THEN_TERMINATE`` task was still killed on its last attempt,
            or once the host memory cap left no larger budget to retry with
        """
        attempts: List[TaskAttempt] = []
        attempt = 1

        while True:
            delay = task.resource.delay_before(attempt)
            if delay > 0:
                logger.info(f"Waiting {delay:.1f}s before attempt {attempt} of '{task.name}'")
                self._sleep(delay)

            memory_mb = self.budget(task, attempt)

            self._clear_outputs(task)
            record = TaskAttempt(attempt=attempt, memory_mb=memory_mb)
            attempts.append(record)

            logger.info(f"Running task '{task.name}' (attempt {attempt}, {memory_mb}MB)")
            start = time.time()
            returncode = self.executor.execute(
                task.command, memory_mb, self.log_dir / f"{task.name}.attempt{attempt}.log"
            )
            record.returncode = returncode
            classification = self.classify(returncode)

            if classification is None:
                missing = [str(p) for p in task.outputs.values() if not Path(p).exists()]
                if missing:
                    record.outcome = TASK_FAILED
                    raise TaskFailedError(
                        task.name,
                        f"exited 0 but did not produce {', '.join(missing)}",
                        task.batch_index,
                        attempt,
                        returncode,
                    )
                record.outcome = "succeeded"
                logger.info(f"Task '{task.name}' succeeded in {time.time() - start:.1f}s")
                return TaskResult(task, TaskStatus.SUCCEEDED, dict(task.outputs), attempts)

            record.outcome = classification

            if classification == TASK_FAILED:
                raise TaskFailedError(
                    task.name,
                    f"exited with code {returncode}",
                    task.batch_index,
                    attempt,
                    returncode,
                )

            if not task.failure.retries:
                raise ResourceExhaustedError(
                    task.name,
                    f"killed at {memory_mb}MB (no retries for this task)",
                    task.batch_index,
                    attempt,
                    returncode,
                )

            exhausted = attempt >= task.resource.max_attempts
            if not exhausted and self.budget(task, attempt + 1) <= memory_mb:
                logger.warning(
                    f"Task '{task.name}' is at the host memory cap ({memory_mb}MB); "
                    f"no larger budget is available for attempt {attempt + 1}"
                )
                exhausted = True

            if exhausted:
                if task.failure is FailurePolicy.RETRY_THEN_IGNORE:
                    logger.warning(
                        f"Task '{task.name}' still killed for memory after {attempt} attempts; "
                        f"ignoring it and keeping the previous state"
                    )
                    return TaskResult(task, TaskStatus.IGNORED, {}, attempts)
                raise RetriesExhaustedError(
                    task.name,
                    f"killed for memory on {attempt} attempts (last budget {memory_mb}MB)",
                    task.batch_index,
                    attempt,
                    returncode,
                )

            logger.warning(
                f"Task '{task.name}' killed for memory at {memory_mb}MB; "
                f"retrying with attempt {attempt + 1}"
            )
            attempt += 1

    def budget(self, task: Task, attempt: int) -> int:
        """Memory budget for an attempt, capped at the host's usable memory."""
        memory_mb = task.resource.memory_mb(attempt)
        if self.resource_manager is not None:
            memory_mb = self.resource_manager.cap_budget(memory_mb)
        return memory_mb

    @staticmethod
    def _clear_outputs(task: Task) -> None:
        """Remove stale copies of the task's own outputs before an attempt."""
        for path in task.outputs.values():
            path = Path(path)
            if path.exists() and path.is_file():
                logger.debug(f"Removing stale output {path}")
                path.unlink()
