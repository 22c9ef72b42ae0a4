"""
Task - one invocation of an external tool.

A task bundles a fully rendered command, the files it reads, the files it
promises to write, and the policies that govern retries. Tasks never modify
their inputs; outputs are named from the input identity (batch index, run
label), so running a task again with the same inputs is safe.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .policies import FailurePolicy, ResourcePolicy


class TaskStatus(Enum):
    """Final status of a task that did not abort the run."""

    SUCCEEDED = "succeeded"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Task:
    """A unit of external work.

    Attributes
    ----------
    name : str
        Unique task name, used for logs (e.g. ``infer.batch_0003``)
    kind : str
        Task kind, selects the policies from configuration (e.g. ``infer``)
    command : List[str]
        Rendered command line
    inputs : Dict[str, Path]
        Declared input files, by role
    outputs : Dict[str, Path]
        Declared output files, by role
    resource : ResourcePolicy
        Memory schedule and retry limits
    failure : FailurePolicy
        What to do when the task fails
    batch_index : int, optional
        Position of the batch this task belongs to
    """

    name: str
    kind: str
    command: List[str]
    inputs: Dict[str, Path]
    outputs: Dict[str, Path]
    resource: ResourcePolicy
    failure: FailurePolicy
    batch_index: Optional[int] = None


@dataclass
class TaskAttempt:
    """Record of one attempt at a task."""

    attempt: int
    memory_mb: int
    returncode: Optional[int] = None
    outcome: str = "pending"


@dataclass
class TaskResult:
    """Outcome of a task that did not abort the run.

    ``outputs`` is empty when the task was ignored.
    """

    task: Task
    status: TaskStatus
    outputs: Dict[str, Path] = field(default_factory=dict)
    attempts: List[TaskAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.SUCCEEDED

    @property
    def ignored(self) -> bool:
        return self.status is TaskStatus.IGNORED


def render_command(template: List[str], values: Mapping[str, Any]) -> List[str]:
    """Fill the ``{placeholders}`` of a command template.

    Parameters
    ----------
    template : List[str]
        Command tokens, e.g. ``["usher", "-i", "{checkpoint}", "-v", "{diff}"]``
    values : Mapping[str, Any]
        Placeholder values; paths are converted to strings

    Returns
    -------
    List[str]
        Rendered command tokens

    Raises
    ------
    KeyError
        If the template references a placeholder with no value
    """
    str_values = {key: str(value) for key, value in values.items()}
    return [token.format(**str_values) for token in template]
