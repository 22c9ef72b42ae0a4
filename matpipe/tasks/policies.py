"""
Resource and failure policies for external tool tasks.

Each task kind carries its own memory schedule and failure policy. Heavy
inference tasks start high and grow fast; light conversion tasks use a
smaller schedule.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class FailurePolicy(Enum):
    """What the task runner does when a task fails.

    RETRY_THEN_TERMINATE
        Retry memory kills up to ``max_attempts``, then abort the run.
    RETRY_THEN_IGNORE
        Retry memory kills up to ``max_attempts``, then report the task as
        ignored so the caller keeps its previous state. Used for the
        checkpoint-threading inference step: losing one batch must not lose
        the rest of a long incremental run.
    TERMINATE_IMMEDIATELY
        Any failure aborts the run on the first attempt. Used for steps with
        no fallback, such as the initial tree build.
    """

    RETRY_THEN_TERMINATE = "retry_then_terminate"
    RETRY_THEN_IGNORE = "retry_then_ignore"
    TERMINATE_IMMEDIATELY = "terminate_immediately"

    @property
    def retries(self) -> bool:
        """Return whether memory kills are retried under this policy."""
        return self is not FailurePolicy.TERMINATE_IMMEDIATELY


@dataclass(frozen=True)
class ResourcePolicy:
    """Memory schedule and retry limits for one task kind.

    Attributes
    ----------
    base_mb : int
        Memory budget offset in megabytes
    increment_mb : int
        Extra megabytes granted per attempt
    max_attempts : int
        Highest attempt number allowed; the retry limit of the task kind
    retry_delay : float
        Seconds to wait before the first retry
    backoff : float
        Multiplier applied to the delay for each further retry
    """

    base_mb: int
    increment_mb: int
    max_attempts: int = 1
    retry_delay: float = 0.0
    backoff: float = 2.0

    def __post_init__(self):
        if self.base_mb < 0 or self.increment_mb < 0:
            raise ValueError("Memory schedule must not be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def memory_mb(self, attempt: int) -> int:
        """Return the memory budget for ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError(f"Attempt numbers start at 1, got {attempt}")
        return self.base_mb + self.increment_mb * attempt

    def delay_before(self, attempt: int) -> float:
        """Return the wait before running ``attempt``; the first attempt never waits."""
        if attempt <= 1:
            return 0.0
        return self.retry_delay * self.backoff ** (attempt - 2)


def policies_from_config(task_config: Dict[str, Any]) -> tuple:
    """Build the (ResourcePolicy, FailurePolicy) pair for one task kind.

    Parameters
    ----------
    task_config : dict
        One entry of the ``tasks`` configuration section

    Returns
    -------
    tuple
        ``(ResourcePolicy, FailurePolicy)``

    Raises
    ------
    ValueError
        If the failure policy name is unknown
    """
    resource = ResourcePolicy(
        base_mb=int(task_config.get("base_mb", 0)),
        increment_mb=int(task_config.get("increment_mb", 0)),
        max_attempts=int(task_config.get("max_attempts", 1)),
        retry_delay=float(task_config.get("retry_delay", 0.0)),
        backoff=float(task_config.get("backoff", 2.0)),
    )
    policy_name = task_config.get("failure_policy", FailurePolicy.RETRY_THEN_TERMINATE.value)
    try:
        failure = FailurePolicy(policy_name)
    except ValueError:
        valid = ", ".join(p.value for p in FailurePolicy)
        raise ValueError(f"Unknown failure policy '{policy_name}' (expected one of: {valid})")
    return resource, failure
