import threading
from datetime import datetime, timedelta

import pytest

from mediamirror.sync.status import (
    ProcessedSet,
    RunInProgressError,
    RunRegistry,
    RunState,
    RunStatus,
)


class TestRunStatus:
    def test_progress_is_monotonic(self):
        status = RunStatus("r1")
        status.set_phase(RunState.MATCHING, "Matching", total=4, progress=10)
        status.update(40)
        status.update(20)
        assert status.progress == 40

    def test_advance_moves_within_band(self):
        status = RunStatus("r1")
        status.set_phase(RunState.MATCHING, "Matching", total=4, progress=10)
        status.advance(band=(10, 50))
        status.advance(band=(10, 50))

        snapshot = status.snapshot()
        assert snapshot["progress"] == 30
        assert snapshot["processed_items"] == 2
        assert snapshot["remaining_items"] == 2

    def test_phase_resets_counts(self):
        status = RunStatus("r1")
        status.set_phase(RunState.MATCHING, "Matching", total=2)
        status.advance()
        status.set_phase(RunState.APPLYING, "Applying", total=5)
        assert status.snapshot()["processed_items"] == 0
        assert status.snapshot()["total_items"] == 5

    def test_finishes_exactly_once(self):
        status = RunStatus("r1")
        assert status.complete() is True
        assert status.fail("late error") is False

        snapshot = status.snapshot()
        assert snapshot["state"] == "completed"
        assert snapshot["is_complete"] is True
        assert snapshot["progress"] == 100
        assert snapshot["end_time"] is not None

    def test_updates_ignored_after_finish(self):
        status = RunStatus("r1")
        status.cancel()
        status.set_phase(RunState.APPLYING, "Applying")
        assert status.state is RunState.CANCELLED

    def test_cancel_request(self):
        status = RunStatus("r1")
        assert status.request_cancel() is True
        assert status.cancel_requested

        done = RunStatus("r2")
        done.complete()
        assert done.request_cancel() is False


class TestProcessedSet:
    def test_claim_once(self):
        processed = ProcessedSet()
        assert processed.claim("a") is True
        assert processed.claim("a") is False
        assert "a" in processed
        assert len(processed) == 1

    def test_concurrent_claims_single_winner(self):
        processed = ProcessedSet()
        wins = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            if processed.claim("item"):
                wins.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1


class TestRunRegistry:
    def test_single_active_slot(self):
        registry = RunRegistry()
        first = RunStatus("r1")
        registry.acquire(first)

        with pytest.raises(RunInProgressError) as excinfo:
            registry.acquire(RunStatus("r2"))
        assert excinfo.value.active_run_id == "r1"

    def test_slot_reusable_after_finish(self):
        registry = RunRegistry()
        first = RunStatus("r1")
        registry.acquire(first)
        first.complete()
        registry.release(first)

        second = RunStatus("r2")
        assert registry.try_acquire(second)
        assert registry.latest() is second
        assert registry.get("r1") is first

    def test_old_completed_runs_pruned(self):
        registry = RunRegistry(retention=timedelta(hours=1))
        old = RunStatus("old")
        registry.acquire(old)
        old.complete()
        old.end_time = datetime.utcnow() - timedelta(hours=2)
        registry.release(old)

        registry.acquire(RunStatus("new"))

        assert registry.get("old") is None
        assert registry.get("new") is not None
