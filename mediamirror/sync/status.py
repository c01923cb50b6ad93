"""
Run status tracking shared between the sync worker and API readers.
"""

import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Set

from mediamirror.sync.models import SyncRunResult

# Completed runs stay pollable by id for this long
COMPLETED_RETENTION = timedelta(hours=1)


class RunInProgressError(Exception):
    """A run was requested while another one holds the active slot."""

    def __init__(self, active_run_id: str):
        super().__init__(f"Sync run {active_run_id} is already in progress")
        self.active_run_id = active_run_id


class RunState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    MATCHING = "matching"
    APPLYING = "applying"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED)


class RunStatus:
    """
    Progress of one run.

    Written by the worker thread, read by API handlers. Progress never
    decreases and the run is marked terminal exactly once.
    """

    def __init__(self, run_id: str, dry_run: bool = False):
        self.run_id = run_id
        self.dry_run = dry_run
        self.start_time = datetime.utcnow()
        self.end_time: Optional[datetime] = None
        self.result: Optional[SyncRunResult] = None

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = RunState.IDLE
        self._progress = 0.0
        self._message = "Queued"
        self._total = 0
        self._processed = 0

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def is_complete(self) -> bool:
        return self.state.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def request_cancel(self) -> bool:
        """Ask the worker to stop. Returns False if the run already ended."""
        if self.is_complete:
            return False
        self._cancel.set()
        return True

    def set_phase(
        self,
        state: RunState,
        message: str,
        total: int = 0,
        progress: Optional[float] = None
    ) -> None:
        """Enter a phase; processed/total restart for the phase."""
        with self._lock:
            if self._state.is_terminal:
                return
            self._state = state
            self._message = message
            self._total = max(0, total)
            self._processed = 0
            if progress is not None:
                self._bump(progress)

    def set_total(self, total: int) -> None:
        with self._lock:
            self._total = max(0, total)

    def update(self, progress: float, message: Optional[str] = None) -> None:
        with self._lock:
            if self._state.is_terminal:
                return
            self._bump(progress)
            if message:
                self._message = message

    def advance(
        self,
        count: int = 1,
        band: Optional[tuple] = None,
        message: Optional[str] = None
    ) -> None:
        """
        Count processed units and, given a (start, end) band, move progress
        proportionally within it.
        """
        with self._lock:
            if self._state.is_terminal:
                return
            self._processed = min(self._processed + count, self._total) if self._total else self._processed + count
            if message:
                self._message = message
            if band and self._total:
                start, end = band
                self._bump(start + (end - start) * self._processed / self._total)

    def _bump(self, progress: float) -> None:
        self._progress = max(self._progress, min(100.0, float(progress)))

    def finish(
        self,
        state: RunState,
        message: str,
        result: Optional[SyncRunResult] = None
    ) -> bool:
        """Mark the run terminal. Only the first call has any effect."""
        with self._lock:
            if self._state.is_terminal:
                return False
            self._state = state
            self._message = message
            self.end_time = datetime.utcnow()
            self.result = result
            if state is RunState.COMPLETED:
                self._progress = 100.0
                self._processed = self._total
            return True

    def complete(self, result: Optional[SyncRunResult] = None, message: str = "Sync completed") -> bool:
        return self.finish(RunState.COMPLETED, message, result)

    def fail(self, message: str, result: Optional[SyncRunResult] = None) -> bool:
        return self.finish(RunState.FAILED, message, result)

    def cancel(self, result: Optional[SyncRunResult] = None) -> bool:
        return self.finish(RunState.CANCELLED, "Sync cancelled", result)

    @property
    def elapsed_seconds(self) -> float:
        end = self.end_time or datetime.utcnow()
        return (end - self.start_time).total_seconds()

    def snapshot(self) -> Dict[str, Any]:
        """Consistent view for API responses."""
        with self._lock:
            return {
                "id": self.run_id,
                "state": self._state.value,
                "progress": round(self._progress, 1),
                "message": self._message,
                "is_complete": self._state.is_terminal,
                "is_dry_run": self.dry_run,
                "total_items": self._total,
                "processed_items": self._processed,
                "remaining_items": max(0, self._total - self._processed),
                "start_time": self.start_time.isoformat(),
                "end_time": self.end_time.isoformat() if self.end_time else None,
                "elapsed_seconds": round(self.elapsed_seconds, 1),
                "result": self.result.summary() if self.result else None,
            }


class ProcessedSet:
    """Destination ids already written during a run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def claim(self, item_id: str) -> bool:
        """Add the id; True only for the first caller."""
        with self._lock:
            if item_id in self._ids:
                return False
            self._ids.add(item_id)
            return True

    def __contains__(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class RunRegistry:
    """Owns the single active-run slot and recent run statuses."""

    def __init__(self, retention: timedelta = COMPLETED_RETENTION):
        self.retention = retention
        self._lock = threading.Lock()
        self._runs: Dict[str, RunStatus] = {}
        self._active: Optional[RunStatus] = None
        self._latest: Optional[RunStatus] = None

    def try_acquire(self, status: RunStatus) -> bool:
        """Claim the active slot without blocking."""
        with self._lock:
            if self._active is not None and not self._active.is_complete:
                return False
            self._active = status
            self._latest = status
            self._runs[status.run_id] = status
            self._prune()
            return True

    def acquire(self, status: RunStatus) -> None:
        """
        Claim the active slot.

        Raises:
            RunInProgressError: If another run holds it
        """
        if not self.try_acquire(status):
            raise RunInProgressError(self._active.run_id if self._active else "unknown")

    def release(self, status: RunStatus) -> None:
        with self._lock:
            if self._active is status:
                self._active = None

    @property
    def active(self) -> Optional[RunStatus]:
        with self._lock:
            return self._active

    def get(self, run_id: str) -> Optional[RunStatus]:
        with self._lock:
            self._prune()
            return self._runs.get(run_id)

    def latest(self) -> Optional[RunStatus]:
        with self._lock:
            return self._latest

    def _prune(self) -> None:
        cutoff = datetime.utcnow() - self.retention
        for run_id, status in list(self._runs.items()):
            if status is self._latest or status is self._active:
                continue
            if status.end_time and status.end_time < cutoff:
                del self._runs[run_id]


# Process-wide registry used by the engine and the web API
run_registry = RunRegistry()
