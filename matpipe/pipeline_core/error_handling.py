"""
Error handling utilities for the tree-building pipeline.

This module provides:
- Custom exception classes for the failure taxonomy of the pipeline
  (resource exhaustion, task failure, missing dependencies)
- A retry decorator for transient failures
- A context manager that turns unexpected errors into stage errors
- Input validation helpers
"""

import logging
import time
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

RESOURCE_EXHAUSTED = "ResourceExhausted"
TASK_FAILED = "TaskFailed"
DEPENDENCY_MISSING = "DependencyMissing"


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, stage: Optional[str] = None, details: Optional[Dict] = None):
        """Initialize pipeline error.

        Parameters
        ----------
        message : str
            Error message
        stage : str, optional
            Stage where error occurred
        details : dict, optional
            Additional error details
        """
        super().__init__(message)
        self.stage = stage
        self.details = details or {}

    @property
    def classification(self) -> Optional[str]:
        """Return the failure classification, if any."""
        return self.details.get("classification")


class ToolNotFoundError(PipelineError):
    """Raised when a required external tool is not found."""

    def __init__(self, tool: str, stage: Optional[str] = None):
        """Initialize tool not found error."""
        message = f"Required tool '{tool}' not found in PATH"
        super().__init__(message, stage, {"tool": tool})


class DependencyMissingError(PipelineError):
    """Raised when a structural input is missing or malformed.

    Retrying cannot fix these, so they are always fatal.
    """

    def __init__(self, message: str, stage: Optional[str] = None, details: Optional[Dict] = None):
        """Initialize dependency missing error."""
        details = dict(details or {})
        details["classification"] = DEPENDENCY_MISSING
        super().__init__(message, stage, details)


class TaskError(PipelineError):
    """Raised when an external tool task fails.

    Attributes
    ----------
    task : str
        Name of the failing task
    batch_index : int or None
        Batch the task belonged to, if any
    attempts : int
        Number of attempts made
    returncode : int or None
        Exit code of the last attempt
    """

    classification_name = TASK_FAILED

    def __init__(
        self,
        task: str,
        message: str,
        batch_index: Optional[int] = None,
        attempts: int = 1,
        returncode: Optional[int] = None,
        stage: Optional[str] = None,
    ):
        """Initialize task error."""
        where = f"task '{task}'"
        if batch_index is not None:
            where += f" (batch {batch_index})"
        super().__init__(
            f"{self.classification_name} in {where}: {message}",
            stage,
            {
                "task": task,
                "batch_index": batch_index,
                "attempts": attempts,
                "returncode": returncode,
                "classification": self.classification_name,
            },
        )
        self.task = task
        self.batch_index = batch_index
        self.attempts = attempts
        self.returncode = returncode


class ResourceExhaustedError(TaskError):
    """A task attempt was killed for exceeding its memory budget."""

    classification_name = RESOURCE_EXHAUSTED


class TaskFailedError(TaskError):
    """A task exited non-zero for a reason other than memory."""

    classification_name = TASK_FAILED


class RetriesExhaustedError(TaskError):
    """A task kept running out of memory after all allowed retries."""

    classification_name = RESOURCE_EXHAUSTED


class StageExecutionError(PipelineError):
    """Wraps an unexpected exception raised inside a stage."""

    def __init__(self, stage_name: str, original_error: Exception):
        """Initialize stage execution error."""
        super().__init__(
            f"Stage '{stage_name}' failed: {original_error}",
            stage_name,
            {"error_type": type(original_error).__name__},
        )
        self.original_error = original_error


def retry_on_failure(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> Callable:
    """Retry an in-process call that can fail transiently.

    External tools are retried by the task runner under their own policies;
    this decorator is for short calls such as posting a notification.

    Parameters
    ----------
    max_attempts : int
        Total number of calls, including the first
    delay : float
        Seconds to wait after the first failure
    backoff : float
        Factor applied to the wait after each further failure
    exceptions : tuple
        Exception types that trigger a retry; anything else propagates
    logger : logging.Logger, optional
        Logger for retry messages (default: the decorated function's module)

    Returns
    -------
    Callable
        Decorator
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            _logger = logger or logging.getLogger(func.__module__)
            wait = delay
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        _logger.error(f"Failed after {attempt} attempts: {e}")
                        raise
                    _logger.warning(
                        f"Attempt {attempt} of {max_attempts} failed: {e}; retrying in {wait:.1f}s"
                    )
                    time.sleep(wait)
                    wait *= backoff
                    attempt += 1

        return wrapper

    return decorator


@contextmanager
def graceful_error_handling(stage_name: str, logger: Optional[logging.Logger] = None):
    """Context manager that normalizes errors raised inside a stage.

    Pipeline errors pass through untouched; missing files become
    ``DependencyMissingError``; anything else is wrapped in
    ``StageExecutionError``.

    Parameters
    ----------
    stage_name : str
        Name of the stage for error reporting
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> with graceful_error_handling("chunking"):
    ...     pass
    """
    _logger = logger or logging.getLogger(__name__)

    try:
        yield
    except PipelineError:
        raise
    except FileNotFoundError as e:
        _logger.error(f"File not found in {stage_name}: {e}")
        raise DependencyMissingError(f"Required file not found: {e}", stage=stage_name)
    except Exception as e:
        _logger.error(f"Unexpected error in {stage_name}: {e}", exc_info=True)
        raise StageExecutionError(stage_name, e)


def validate_file_exists(file_path: Union[str, Path], stage_name: str) -> Path:
    """Validate that an input file exists and is a regular file.

    Parameters
    ----------
    file_path : str or Path
        Path to validate
    stage_name : str
        Stage name for error reporting

    Returns
    -------
    Path
        Validated path object

    Raises
    ------
    DependencyMissingError
        If the path is missing or not a file
    """
    path = Path(file_path)

    if not path.exists():
        raise DependencyMissingError(
            f"Required file not found: {path}", stage_name, {"file": str(path)}
        )

    if not path.is_file():
        raise DependencyMissingError(
            f"Expected a file but found something else: {path}", stage_name, {"file": str(path)}
        )

    return path
