"""
Task execution for external tools.

- Task: a rendered command with declared inputs, outputs and policies
- FailurePolicy / ResourcePolicy: per-task-kind retry and memory rules
- ToolExecutor: the capability that actually runs a command
- TaskRunner: runs a task under its policies and classifies failures
"""

from .executor import SubprocessExecutor, ToolExecutor
from .policies import FailurePolicy, ResourcePolicy, policies_from_config
from .runner import DEFAULT_KILLED_RETURN_CODES, TaskRunner
from .task import Task, TaskAttempt, TaskResult, TaskStatus, render_command

__all__ = [
    "DEFAULT_KILLED_RETURN_CODES",
    "FailurePolicy",
    "ResourcePolicy",
    "SubprocessExecutor",
    "Task",
    "TaskAttempt",
    "TaskResult",
    "TaskRunner",
    "TaskStatus",
    "ToolExecutor",
    "policies_from_config",
    "render_command",
]
