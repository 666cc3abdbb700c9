import asyncio

import pytest

from smartwait.core.exceptions import StoreConflictError
from smartwait.models.queue import QueueStatus
from smartwait.services.queue_store import QueueStore


class TestConcurrentCheckIns:
    """Allocation under concurrent check-ins"""

    async def test_concurrent_check_ins_keep_positions_unique(self, queue_service):
        phones = [f"555-234-20{index:02d}" for index in range(5)]

        results = await asyncio.gather(
            *(queue_service.check_in(f"Patient {index}", phone, "9:00 AM") for index, phone in enumerate(phones)),
            return_exceptions=True,
        )

        successes = [result for result in results if not isinstance(result, Exception)]
        failures = [result for result in results if isinstance(result, Exception)]
        assert all(isinstance(failure, StoreConflictError) for failure in failures)

        active = await queue_service.get_queue()
        positions = [entry.position for entry in active]

        assert len(active) == len(successes)
        assert positions == list(range(1, len(active) + 1))
        assert sorted(result.position for result in successes) == positions

    async def test_concurrent_check_ins_all_succeed_with_queue_lock(self, queue_service):
        phones = [f"555-234-30{index:02d}" for index in range(5)]

        results = await asyncio.gather(
            *(queue_service.check_in(f"Patient {index}", phone, "9:00 AM") for index, phone in enumerate(phones))
        )

        assert sorted(result.position for result in results) == [1, 2, 3, 4, 5]

    async def test_concurrent_completions_leave_contiguous_queue(self, queue_service):
        results = []
        for index in range(6):
            results.append(await queue_service.check_in(f"Patient {index}", f"555-234-40{index:02d}", "noon"))

        await asyncio.gather(
            queue_service.complete(results[0].patient_id),
            queue_service.mark_no_show(results[2].patient_id),
            queue_service.complete(results[4].patient_id),
        )

        active = await queue_service.get_queue()
        assert [entry.patient_id for entry in active] == [results[i].patient_id for i in (1, 3, 5)]
        assert [entry.position for entry in active] == [1, 2, 3]
        assert [entry.estimated_wait_minutes for entry in active] == [0, 15, 30]


class TestPositionConflicts:
    """Unique active positions and the bounded check-in retry"""

    async def test_duplicate_active_position_rejected(self, db, settings):
        key = settings.queue.ADVISORY_LOCK_KEY
        async with db.get_async_session() as session:
            await QueueStore(session, key).add_patient_with_entry("Alice", "+15552340001", "10:00 AM", 1, 0)

        with pytest.raises(StoreConflictError):
            async with db.get_async_session() as session:
                await QueueStore(session, key).add_patient_with_entry("Bob", "+15552340002", "10:15 AM", 1, 0)

        async with db.get_async_session() as session:
            entries = await QueueStore(session, key).active_entries()
        assert [(entry.patient.name, entry.position) for entry in entries] == [("Alice", 1)]

    async def test_terminal_entry_frees_its_position(self, db, settings):
        key = settings.queue.ADVISORY_LOCK_KEY
        async with db.get_async_session() as session:
            entry = await QueueStore(session, key).add_patient_with_entry("Alice", "+15552340001", "10:00 AM", 1, 0)
            entry.status = QueueStatus.COMPLETED

        async with db.get_async_session() as session:
            again = await QueueStore(session, key).add_patient_with_entry("Bob", "+15552340002", "10:15 AM", 1, 0)

        assert again.position == 1

    async def test_check_in_gives_up_after_max_attempts(self, queue_service, monkeypatch):
        await queue_service.check_in("Alice", "555-234-5001", "10:00 AM")
        calls = []

        async def stale_max_position(store):
            calls.append(store)
            return 0

        monkeypatch.setattr(QueueStore, "max_active_position", stale_max_position)

        with pytest.raises(StoreConflictError):
            await queue_service.check_in("Bob", "555-234-5002", "10:15 AM")

        assert len(calls) == 3
        queue = await queue_service.get_queue()
        assert [(entry.patient.name, entry.position) for entry in queue] == [("Alice", 1)]

    async def test_single_attempt_fails_fast(self, queue_service, settings, monkeypatch):
        await queue_service.check_in("Alice", "555-234-5001", "10:00 AM")
        settings.queue.ALLOCATION_MAX_ATTEMPTS = 1
        calls = []

        async def stale_max_position(store):
            calls.append(store)
            return 0

        monkeypatch.setattr(QueueStore, "max_active_position", stale_max_position)

        with pytest.raises(StoreConflictError):
            await queue_service.check_in("Bob", "555-234-5002", "10:15 AM")

        assert len(calls) == 1

    async def test_check_in_retries_after_one_conflict(self, queue_service, monkeypatch):
        await queue_service.check_in("Alice", "555-234-5001", "10:00 AM")
        original = QueueStore.max_active_position
        calls = []

        async def stale_once(store):
            calls.append(store)
            if len(calls) == 1:
                return 0
            return await original(store)

        monkeypatch.setattr(QueueStore, "max_active_position", stale_once)

        result = await queue_service.check_in("Bob", "555-234-5002", "10:15 AM")

        assert len(calls) == 2
        assert result.position == 2
        queue = await queue_service.get_queue()
        assert [(entry.patient.name, entry.position) for entry in queue] == [("Alice", 1), ("Bob", 2)]
