"""Run state and resume support for matpipe.

This module tracks which stages of a run completed, with which output files,
and what happened to every batch of the checkpoint chain. A run that aborts
(or is killed) can then be restarted with ``--resume``: completed stages are
skipped and threading continues after the last recorded batch, from the
checkpoint that batch left behind.
"""

import hashlib
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

BATCH_APPLIED = "applied"
BATCH_SKIPPED = "skipped"


@dataclass
class FileInfo:
    """Size and modification time of a file, for validation on resume."""

    path: str
    size: int
    mtime: float

    @classmethod
    def from_file(cls, filepath: str) -> "FileInfo":
        """Create FileInfo from an existing file."""
        stat = os.stat(filepath)
        return cls(path=str(filepath), size=stat.st_size, mtime=stat.st_mtime)

    def validate(self) -> bool:
        """Validate that the file still matches the stored info."""
        if not os.path.exists(self.path):
            return False
        stat = os.stat(self.path)
        if stat.st_size != self.size:
            return False
        # Allow some tolerance for mtime (filesystem precision)
        return abs(stat.st_mtime - self.mtime) <= 1.0


@dataclass
class StepInfo:
    """Information about a pipeline stage."""

    name: str
    status: str  # "running", "completed", "failed"
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    output_files: List[FileInfo] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepInfo":
        data = dict(data)
        data["output_files"] = [FileInfo(**f) for f in data.get("output_files", [])]
        return cls(**data)


@dataclass
class BatchRecord:
    """Outcome of one batch of the checkpoint chain."""

    index: int
    outcome: str  # "applied" or "skipped"
    size: int = 0
    checkpoint: Optional[str] = None
    tree: Optional[str] = None
    version: Optional[int] = None


class RunState:
    """Manages the run state file for resume functionality."""

    STATE_FILE_NAME = ".matpipe_state.json"
    STATE_VERSION = "1.0"

    def __init__(self, output_dir: str):
        """Initialize run state manager.

        Parameters
        ----------
        output_dir : str
            Directory where pipeline outputs and the state file are stored
        """
        self.output_dir = str(output_dir)
        self.state_file = os.path.join(self.output_dir, self.STATE_FILE_NAME)
        self._state_lock = threading.RLock()

        self.state: Dict[str, Any] = {
            "version": self.STATE_VERSION,
            "pipeline_version": None,
            "start_time": None,
            "last_update": None,
            "configuration_hash": None,
            "steps": {},
            "batches": {},
        }
        self._loaded_from_file = False

    def initialize(self, configuration: Dict[str, Any], pipeline_version: str) -> None:
        """Start a fresh run, discarding any previous state."""
        with self._state_lock:
            self.state["pipeline_version"] = pipeline_version
            self.state["start_time"] = time.time()
            self.state["configuration_hash"] = self._hash_configuration(configuration)
            self.state["steps"] = {}
            self.state["batches"] = {}
            self._loaded_from_file = False
        self.save()

    def load(self) -> bool:
        """Load existing state from file.

        Returns
        -------
        bool
            True if state was loaded successfully, False otherwise
        """
        if not os.path.exists(self.state_file):
            return False

        try:
            with open(self.state_file, "r") as f:
                loaded_state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read run state {self.state_file}: {e}")
            return False

        if loaded_state.get("version") != self.STATE_VERSION:
            logger.warning(
                f"State file version mismatch: "
                f"{loaded_state.get('version')} != {self.STATE_VERSION}"
            )
            return False

        loaded_state["steps"] = {
            name: StepInfo.from_dict(info) for name, info in loaded_state.get("steps", {}).items()
        }
        loaded_state["batches"] = {
            int(index): BatchRecord(**record)
            for index, record in loaded_state.get("batches", {}).items()
        }

        with self._state_lock:
            self.state = loaded_state
            self._loaded_from_file = True
        logger.info(f"Loaded run state from {self.state_file}")
        return True

    def save(self) -> None:
        """Save current state to file atomically (thread-safe)."""
        with self._state_lock:
            self.state["last_update"] = time.time()
            save_state = dict(self.state)
            save_state["steps"] = {
                name: step.to_dict() for name, step in self.state["steps"].items()
            }
            save_state["batches"] = {
                str(index): asdict(record) for index, record in self.state["batches"].items()
            }

            os.makedirs(self.output_dir, exist_ok=True)
            temp_file = f"{self.state_file}.tmp.{uuid.uuid4().hex[:8]}"
            try:
                with open(temp_file, "w") as f:
                    json.dump(save_state, f, indent=2)
                os.replace(temp_file, self.state_file)
            finally:
                if os.path.exists(temp_file):
                    os.remove(temp_file)

    def can_resume(self, configuration: Dict[str, Any], pipeline_version: str) -> bool:
        """Check if the loaded state belongs to the same run configuration."""
        if not self._loaded_from_file:
            return False

        if self.state.get("pipeline_version") != pipeline_version:
            logger.warning("Pipeline version mismatch, cannot resume")
            return False

        if self.state.get("configuration_hash") != self._hash_configuration(configuration):
            logger.warning("Configuration has changed, cannot resume")
            return False

        return True

    def should_skip_step(self, step_name: str) -> bool:
        """Return True if a stage completed and its outputs are still intact."""
        if not self._loaded_from_file:
            return False

        step_info = self.state["steps"].get(step_name)
        if step_info is None or step_info.status != "completed":
            return False

        for file_info in step_info.output_files:
            if not file_info.validate():
                logger.info(
                    f"Output of '{step_name}' changed or vanished ({file_info.path}); re-running"
                )
                return False
        return True

    def start_step(self, step_name: str) -> None:
        """Mark a stage as started."""
        with self._state_lock:
            self.state["steps"][step_name] = StepInfo(
                name=step_name, status="running", start_time=time.time()
            )
        self.save()

    def complete_step(self, step_name: str, output_files: Optional[List[str]] = None) -> None:
        """Mark a stage as completed, recording its output files."""
        with self._state_lock:
            step_info = self.state["steps"].get(step_name)
            if step_info is None:
                step_info = StepInfo(name=step_name, status="running", start_time=time.time())
                self.state["steps"][step_name] = step_info
            step_info.status = "completed"
            step_info.end_time = time.time()
            step_info.output_files = [
                FileInfo.from_file(path) for path in (output_files or []) if os.path.exists(path)
            ]
        self.save()

    def fail_step(self, step_name: str, error: str) -> None:
        """Mark a stage as failed."""
        with self._state_lock:
            step_info = self.state["steps"].get(step_name)
            if step_info is None:
                step_info = StepInfo(name=step_name, status="running", start_time=time.time())
                self.state["steps"][step_name] = step_info
            step_info.status = "failed"
            step_info.end_time = time.time()
            step_info.error = error
        self.save()

    def record_batch(self, record: BatchRecord) -> None:
        """Record the outcome of one batch of the checkpoint chain."""
        with self._state_lock:
            self.state["batches"][record.index] = record
        self.save()

    def batch_records(self) -> Dict[int, BatchRecord]:
        """Return recorded batch outcomes of a loaded run, by batch index."""
        if not self._loaded_from_file:
            return {}
        with self._state_lock:
            return dict(self.state["batches"])

    def get_summary(self) -> str:
        """Get a human-readable summary of the run state."""
        lines = ["Run State Summary:"]
        lines.append(f"  State file: {self.state_file}")
        lines.append(f"  Pipeline version: {self.state.get('pipeline_version', 'unknown')}")

        if self.state.get("start_time"):
            start_time = datetime.fromtimestamp(self.state["start_time"])
            lines.append(f"  Started: {start_time.strftime('%Y-%m-%d %H:%M:%S')}")

        lines.append("\nStages:")
        for name, info in self.state["steps"].items():
            symbol = {"completed": "+", "failed": "x", "running": ">"}.get(info.status, ".")
            line = f"  {symbol} {name} ({info.status})"
            if info.duration:
                line += f" - {info.duration:.1f}s"
            if info.error:
                line += f" - Error: {info.error}"
            lines.append(line)

        batches = self.state["batches"]
        if batches:
            applied = sorted(i for i, r in batches.items() if r.outcome == BATCH_APPLIED)
            skipped = sorted(i for i, r in batches.items() if r.outcome == BATCH_SKIPPED)
            lines.append(f"\nBatches: {len(applied)} applied, {len(skipped)} skipped")
            if skipped:
                lines.append(f"  Skipped batch indices: {', '.join(map(str, skipped))}")

        return "\n".join(lines)

    def _hash_configuration(self, config: Dict[str, Any]) -> str:
        """Create a hash of the settings that determine a run's artifacts."""
        relevant_keys = [
            "mode",
            "sequences",
            "seed_tree",
            "checkpoint",
            "existing_tree",
            "batch_size",
            "run_date",
            "outgroup",
            "reference_name",
            "tasks",
        ]
        relevant_config = {k: config.get(k) for k in relevant_keys if config.get(k) is not None}
        config_str = json.dumps(relevant_config, sort_keys=True, default=str)
        return hashlib.sha256(config_str.encode()).hexdigest()
