"""
Queue persistence: saves the batch queue to a JSON file so a run survives a
crash or restart. The in-flight job is saved with its outline/script checkpoint.
"""
import asyncio
import json
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from config import QUEUE_STATE_FILE
from job_runner import Job, JobStatus

STATE_VERSION = "1.0"
MAX_STATE_AGE_HOURS = 24


def _log(msg: str) -> None:
    print(f"[PERSIST] {msg}")


@dataclass
class PersistedQueueState:
    jobs: list[Job] = field(default_factory=list)
    processed_jobs: list[Job] = field(default_factory=list)
    config: dict = field(default_factory=dict)
    last_updated: float = 0.0
    version: str = STATE_VERSION

    def to_dict(self) -> dict:
        return {
            "jobs": [j.to_dict() for j in self.jobs],
            "processed_jobs": [j.to_dict() for j in self.processed_jobs],
            "config": self.config,
            "last_updated": self.last_updated,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PersistedQueueState":
        return cls(
            jobs=[Job.from_dict(j) for j in data.get("jobs") or []],
            processed_jobs=[Job.from_dict(j) for j in data.get("processed_jobs") or []],
            config=data.get("config") or {},
            last_updated=data.get("last_updated", 0.0),
            version=data.get("version", STATE_VERSION),
        )


class QueuePersistence:
    def __init__(self, path: str | Path | None = None):
        self.path = Path(path if path is not None else QUEUE_STATE_FILE)
        # One writer at a time: sync saves and thread-pool saves share the temp file
        self._write_lock = threading.Lock()

    def save_state(self, state: PersistedQueueState) -> None:
        """Write state atomically (temp file + rename); stamps last_updated."""
        state.last_updated = time.time()
        self._write(state.to_dict())

    async def save_state_async(self, state: PersistedQueueState) -> None:
        """
        Same as save_state, but the file write runs in a worker thread.

        The state is converted to plain data first, on the calling thread, so jobs
        can keep changing while the write is in progress.
        """
        state.last_updated = time.time()
        data = state.to_dict()
        await asyncio.to_thread(self._write, data)

    def _write(self, data: dict) -> None:
        with self._write_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)

    def load_state(self) -> PersistedQueueState | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            _log(f"WARNING: Could not read saved queue {self.path}: {e}")
            return None
        return PersistedQueueState.from_dict(data)

    def clear_state(self) -> None:
        self.path.unlink(missing_ok=True)

    def has_saved_state(self, max_age_hours: float = MAX_STATE_AGE_HOURS) -> bool:
        """True when a saved state is recent and still has jobs to run."""
        state = self.load_state()
        if not state:
            return False
        is_recent = time.time() - state.last_updated < max_age_hours * 3600
        has_pending = any(j.status in (JobStatus.PENDING, JobStatus.PROCESSING) for j in state.jobs)
        return is_recent and has_pending

    def get_state_age(self) -> str | None:
        state = self.load_state()
        if not state:
            return None
        age_minutes = int((time.time() - state.last_updated) // 60)
        if age_minutes < 60:
            return f"{age_minutes} minutes ago"
        return f"{age_minutes // 60} hours ago"
