import uuid

import pytest

from smartwait.core.exceptions import DuplicateActiveEntry, PatientNotFoundError, ValidationError
from smartwait.models.queue import QueueStatus
from smartwait.services.event_publisher import QueueEventType


PHONE_A = "555-234-0001"
PHONE_B = "555-234-0002"
PHONE_C = "555-234-0003"


async def _active_positions(queue_service):
    return [(entry.patient_id, entry.position, entry.estimated_wait_minutes) for entry in await queue_service.get_queue()]


class TestCheckIn:
    """Check-in allocation and validation"""

    async def test_sequential_check_ins_get_contiguous_positions(self, queue_service):
        first = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        second = await queue_service.check_in("Bob", PHONE_B, "10:15 AM")
        third = await queue_service.check_in("Carol", PHONE_C, "10:30 AM")

        assert [first.position, second.position, third.position] == [1, 2, 3]
        assert [first.estimated_wait_minutes, second.estimated_wait_minutes, third.estimated_wait_minutes] == [0, 15, 30]

    async def test_phone_is_normalized_before_storage(self, queue_service):
        await queue_service.check_in("Alice", "(555) 234-0001", "10:00 AM")

        queue = await queue_service.get_queue()
        assert queue[0].patient.phone == "+15552340001"

    async def test_duplicate_active_phone_rejected(self, queue_service):
        await queue_service.check_in("Alice", PHONE_A, "10:00 AM")

        with pytest.raises(DuplicateActiveEntry):
            # Same number in a different format still matches
            await queue_service.check_in("Alice Again", "+1 (555) 234-0001", "10:05 AM")

        assert len(await queue_service.get_queue()) == 1

    async def test_name_is_trimmed(self, queue_service):
        result = await queue_service.check_in("  Alice  ", PHONE_A, "10:00 AM")

        queue = await queue_service.get_queue()
        assert queue[0].patient.name == "Alice"
        assert result.position == 1

    @pytest.mark.parametrize(
        "name, phone, appointment_time",
        [
            ("", PHONE_A, "10:00 AM"),
            ("   ", PHONE_A, "10:00 AM"),
            ("x" * 101, PHONE_A, "10:00 AM"),
            ("Alice", "12345", "10:00 AM"),
            ("Alice", "555-CALL-NOW", "10:00 AM"),
            ("Alice", "----------", "10:00 AM"),
            ("Alice", "(  )  -  ( )", "10:00 AM"),
            ("Alice", PHONE_A, ""),
            ("Alice", PHONE_A, "x" * 51),
        ],
    )
    async def test_invalid_input_rejected(self, queue_service, name, phone, appointment_time):
        with pytest.raises(ValidationError):
            await queue_service.check_in(name, phone, appointment_time)

        assert await queue_service.get_queue() == []

    async def test_check_in_publishes_event(self, queue_service, publisher):
        result = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")

        events = publisher.of_type(QueueEventType.PATIENT_CHECKED_IN)
        assert len(events) == 1
        assert events[0].patient_id == result.patient_id
        assert events[0].position == 1
        assert events[0].total_in_queue == 1


class TestQueueScenarios:
    """End-to-end queue flows"""

    async def test_complete_and_call_flow(self, queue_service):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        b = await queue_service.check_in("Bob", PHONE_B, "10:15 AM")
        c = await queue_service.check_in("Carol", PHONE_C, "10:30 AM")

        await queue_service.complete(a.patient_id)
        assert await _active_positions(queue_service) == [
            (b.patient_id, 1, 0),
            (c.patient_id, 2, 15),
        ]

        result = await queue_service.call_next()
        assert result.success is True
        assert result.patient.patient_id == b.patient_id
        assert result.patient.status == QueueStatus.CALLED

        await queue_service.complete(b.patient_id)
        assert await _active_positions(queue_service) == [(c.patient_id, 1, 0)]

    async def test_phone_can_check_in_again_after_completion(self, queue_service):
        first = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")

        with pytest.raises(DuplicateActiveEntry):
            await queue_service.check_in("Alice", PHONE_A, "10:00 AM")

        await queue_service.complete(first.patient_id)
        again = await queue_service.check_in("Alice", PHONE_A, "11:00 AM")

        assert again.position == 1
        assert again.patient_id != first.patient_id

    async def test_recalculation_preserves_order(self, queue_service):
        results = []
        for index in range(6):
            results.append(await queue_service.check_in(f"Patient {index}", f"555-234-10{index:02d}", "noon"))

        await queue_service.complete(results[1].patient_id)
        await queue_service.mark_no_show(results[3].patient_id)

        active = await _active_positions(queue_service)
        expected_ids = [results[i].patient_id for i in (0, 2, 4, 5)]
        assert [patient_id for patient_id, _, _ in active] == expected_ids
        assert [position for _, position, _ in active] == [1, 2, 3, 4]
        assert [wait for _, _, wait in active] == [0, 15, 30, 45]

    async def test_called_patient_keeps_position_until_finished(self, queue_service):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        b = await queue_service.check_in("Bob", PHONE_B, "10:15 AM")

        await queue_service.call_next()
        active = await _active_positions(queue_service)
        assert active == [(a.patient_id, 1, 0), (b.patient_id, 2, 15)]

        # A waiting patient may be completed without being called
        await queue_service.complete(b.patient_id)
        assert await _active_positions(queue_service) == [(a.patient_id, 1, 0)]

    async def test_position_updates_published_after_recalculation(self, queue_service, publisher):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        b = await queue_service.check_in("Bob", PHONE_B, "10:15 AM")
        c = await queue_service.check_in("Carol", PHONE_C, "10:30 AM")
        publisher.clear()

        await queue_service.complete(a.patient_id)

        assert [event.type for event in publisher.events] == [
            QueueEventType.PATIENT_COMPLETED,
            QueueEventType.QUEUE_POSITION_UPDATED,
            QueueEventType.QUEUE_POSITION_UPDATED,
        ]
        updates = publisher.of_type(QueueEventType.QUEUE_POSITION_UPDATED)
        assert {(e.patient_id, e.old_position, e.position) for e in updates} == {
            (b.patient_id, 2, 1),
            (c.patient_id, 3, 2),
        }


class TestStaffActions:
    """Call next, complete and no-show edge cases"""

    async def test_call_next_on_empty_queue(self, queue_service, publisher):
        result = await queue_service.call_next()

        assert result.success is False
        assert result.message == "No patients waiting in queue"
        assert result.patient is None
        assert publisher.events == []

    async def test_call_next_skips_called_patients(self, queue_service):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        b = await queue_service.check_in("Bob", PHONE_B, "10:15 AM")

        first = await queue_service.call_next()
        second = await queue_service.call_next()
        third = await queue_service.call_next()

        assert first.patient.patient_id == a.patient_id
        assert second.patient.patient_id == b.patient_id
        assert third.success is False

    async def test_complete_unknown_patient(self, queue_service):
        with pytest.raises(PatientNotFoundError):
            await queue_service.complete(uuid.uuid4())

    async def test_complete_twice_is_not_found(self, queue_service):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        await queue_service.complete(a.patient_id)

        with pytest.raises(PatientNotFoundError):
            await queue_service.complete(a.patient_id)

    async def test_no_show_removes_patient_and_publishes(self, queue_service, publisher):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        b = await queue_service.check_in("Bob", PHONE_B, "10:15 AM")

        view = await queue_service.mark_no_show(a.patient_id)

        assert view.status == QueueStatus.NO_SHOW
        assert await _active_positions(queue_service) == [(b.patient_id, 1, 0)]
        assert len(publisher.of_type(QueueEventType.PATIENT_NO_SHOW)) == 1


class TestQueueViews:
    """Position lookup and statistics"""

    async def test_get_position(self, queue_service):
        await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        b = await queue_service.check_in("Bob", PHONE_B, "10:15 AM")

        view = await queue_service.get_position(b.patient_id)

        assert view.position == 2
        assert view.status == QueueStatus.WAITING
        assert view.estimated_wait_minutes == 15
        assert view.total_in_queue == 2

    async def test_get_position_reports_terminal_entries(self, queue_service):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        await queue_service.complete(a.patient_id)

        view = await queue_service.get_position(a.patient_id)

        assert view.status == QueueStatus.COMPLETED
        assert view.completed_at is not None
        assert view.total_in_queue == 0

    async def test_get_position_unknown_patient(self, queue_service):
        with pytest.raises(PatientNotFoundError):
            await queue_service.get_position(uuid.uuid4())

    async def test_stats(self, queue_service):
        a = await queue_service.check_in("Alice", PHONE_A, "10:00 AM")
        await queue_service.check_in("Bob", PHONE_B, "10:15 AM")
        await queue_service.check_in("Carol", PHONE_C, "10:30 AM")
        await queue_service.call_next()
        await queue_service.complete(a.patient_id)
        await queue_service.call_next()

        stats = await queue_service.stats()

        assert stats.waiting_count == 1
        assert stats.called_count == 1
        assert stats.completed_count == 1
        assert stats.average_wait_minutes == 0
        assert stats.longest_wait_minutes == 0
        assert stats.window_hours == 24

    async def test_health_check(self, queue_service):
        result = await queue_service.health_check()
        assert result["healthy"] is True
