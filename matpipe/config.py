# File: matpipe/config.py
# Location: matpipe/matpipe/config.py

"""
Configuration management module.

This module handles loading configuration from a JSON file. All default
values reside in config.json, which is included in the installed package
directory. A user configuration file only needs the keys it changes: it is
merged over the defaults, task by task.
"""

import copy
import json
import os
from typing import Any, Dict, Optional

from .tasks import FailurePolicy, policies_from_config

DEFAULT_CONFIG_FILE = os.path.join(os.path.dirname(__file__), "config.json")

# Task kinds allowed to use RETRY_THEN_IGNORE
IGNORABLE_TASK_KINDS = frozenset({"infer"})


def _read_json(config_file: str) -> Dict[str, Any]:
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file '{config_file}' not found.")

    with open(config_file, "r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Error parsing JSON configuration: {e}")


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a JSON file.

    The package's config.json is always loaded first. If ``config_file`` is
    given, its top-level keys replace the defaults, except ``tasks``, where
    each task kind's settings are merged individually.

    Parameters
    ----------
    config_file : str, optional
        Path to a configuration file in JSON format.

    Returns
    -------
    dict
        Configuration dictionary.

    Raises
    ------
    FileNotFoundError
        If the specified configuration file does not exist.
    ValueError
        If there is an error parsing the JSON configuration file.
    """
    config = _read_json(DEFAULT_CONFIG_FILE)
    if not config_file:
        return config

    user_config = _read_json(config_file)
    user_tasks = user_config.pop("tasks", {}) or {}
    config.update(user_config)
    tasks = copy.deepcopy(config.get("tasks", {}))
    for kind, settings in user_tasks.items():
        tasks.setdefault(kind, {}).update(settings)
    config["tasks"] = tasks
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check configuration values that would otherwise fail deep inside a run.

    Parameters
    ----------
    config : dict
        Merged configuration

    Raises
    ------
    ValueError
        On a non-positive batch size, a bad memory schedule, an unknown
        failure policy, or an ignorable failure policy on a non-infer task
    """
    batch_size = config.get("batch_size")
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")

    workers = config.get("encode_workers")
    if workers is not None and (not isinstance(workers, int) or workers < 1):
        raise ValueError(f"encode_workers must be a positive integer, got {workers!r}")

    if not config.get("outgroup"):
        raise ValueError("An outgroup identifier is required")

    for kind, settings in config.get("tasks", {}).items():
        if not settings.get("command"):
            raise ValueError(f"Task '{kind}' has no command")
        try:
            _, failure = policies_from_config(settings)
        except ValueError as e:
            raise ValueError(f"Task '{kind}': {e}")
        if failure is FailurePolicy.RETRY_THEN_IGNORE and kind not in IGNORABLE_TASK_KINDS:
            raise ValueError(
                f"Task '{kind}': {failure.value} is only supported for "
                f"{', '.join(sorted(IGNORABLE_TASK_KINDS))} tasks"
            )
