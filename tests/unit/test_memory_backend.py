"""
Tests for the in-memory queue backend state machine.
"""

import asyncio
from datetime import timedelta

import pytest

from coffeeshop.infrastructure.repositories.queue_repository import (
    COMPLETED_RETENTION_SECONDS,
    RECOVERER_ID,
)
from coffeeshop.services.queues.tasks import QueueClass, TaskData, TaskStatus


def make_task(clock, delay: float = 0, queue=QueueClass.DEFAULT, **kwargs) -> TaskData:
    now = clock()
    return TaskData(
        task_type="delete_s3_object",
        payload='{"keys": ["a"]}',
        queue=queue,
        process_at=now + timedelta(seconds=delay),
        created_at=now,
        **kwargs,
    )


class TestInMemoryQueueBackend:
    """Test scheduling, leasing and terminal states."""

    @pytest.mark.asyncio
    async def test_delayed_task_not_claimable_early(self, backend, clock):
        task = make_task(clock, delay=60)
        await backend.enqueue(task)

        assert await backend.claim(QueueClass.DEFAULT, "w-1", 30) is None

        clock.advance(59)
        assert await backend.claim(QueueClass.DEFAULT, "w-1", 30) is None

        clock.advance(1)
        claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        assert claimed.task_id == task.task_id

    @pytest.mark.asyncio
    async def test_earliest_due_task_first(self, backend, clock):
        later = make_task(clock, delay=5)
        earlier = make_task(clock, delay=1)
        await backend.enqueue(later)
        await backend.enqueue(earlier)
        clock.advance(10)

        first = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        second = await backend.claim(QueueClass.DEFAULT, "w-1", 30)

        assert first.task_id == earlier.task_id
        assert second.task_id == later.task_id

    @pytest.mark.asyncio
    async def test_classes_are_separate(self, backend, clock):
        await backend.enqueue(make_task(clock, queue=QueueClass.CRITICAL))

        assert await backend.claim(QueueClass.DEFAULT, "w-1", 30) is None
        assert await backend.claim(QueueClass.CRITICAL, "w-1", 30) is not None

    @pytest.mark.asyncio
    async def test_task_claimed_once_under_contention(self, backend, clock):
        task = make_task(clock)
        await backend.enqueue(task)

        results = await asyncio.gather(
            *(backend.claim(QueueClass.DEFAULT, f"w-{i}", 30) for i in range(10))
        )

        claimed = [r for r in results if r is not None]
        assert len(claimed) == 1
        assert claimed[0].task_id == task.task_id

    @pytest.mark.asyncio
    async def test_claim_records_lease(self, backend, clock):
        task = make_task(clock, timeout_seconds=60)
        await backend.enqueue(task)

        await backend.claim(QueueClass.DEFAULT, "w-7", 30)
        status = await backend.get_status(task.task_id)

        assert status["state"] == TaskStatus.ACTIVE.value
        assert status["worker_id"] == "w-7"
        expected_deadline = (clock() + timedelta(seconds=90)).timestamp()
        assert float(status["lease_deadline"]) == pytest.approx(expected_deadline)

    @pytest.mark.asyncio
    async def test_complete(self, backend, clock):
        task = make_task(clock)
        await backend.enqueue(task)
        claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)

        assert await backend.complete(claimed) is True

        status = await backend.get_status(task.task_id)
        assert status["state"] == TaskStatus.COMPLETED.value
        stats = await backend.queue_stats(QueueClass.DEFAULT)
        assert stats == {"scheduled": 0, "active": 0, "archived": 0}

    @pytest.mark.asyncio
    async def test_complete_without_lease_reports_lost(self, backend, clock):
        task = make_task(clock)
        await backend.enqueue(task)

        assert await backend.complete(task) is False

    @pytest.mark.asyncio
    async def test_completed_tasks_expire_after_retention(self, backend, clock):
        tasks = [make_task(clock) for _ in range(50)]
        for task in tasks:
            await backend.enqueue(task)
        for _ in tasks:
            claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
            assert await backend.complete(claimed) is True

        failed = make_task(clock)
        await backend.enqueue(failed)
        await backend.archive(await backend.claim(QueueClass.DEFAULT, "w-1", 30))

        clock.advance(COMPLETED_RETENTION_SECONDS - 1)
        assert (await backend.get_status(tasks[0].task_id))["state"] == "completed"

        clock.advance(1)
        for task in tasks:
            assert await backend.get_task(task.task_id) is None
            assert await backend.get_status(task.task_id) is None
        assert len(backend._tasks) == 1
        assert (await backend.get_status(failed.task_id))["state"] == "archived"

    @pytest.mark.asyncio
    async def test_retry_reschedules_with_delay(self, backend, clock):
        await backend.enqueue(make_task(clock))
        claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        claimed.retried = 1
        claimed.last_error = "TransientExternalError: s3 down"

        assert await backend.retry(claimed, 10) is True
        assert claimed.process_at == clock() + timedelta(seconds=10)

        assert await backend.claim(QueueClass.DEFAULT, "w-1", 30) is None
        clock.advance(10)
        again = await backend.claim(QueueClass.DEFAULT, "w-1", 30)

        assert again.retried == 1
        assert again.last_error == "TransientExternalError: s3 down"

    @pytest.mark.asyncio
    async def test_archived_task_never_claimed(self, backend, clock):
        task = make_task(clock)
        await backend.enqueue(task)
        claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        claimed.retried = 3

        await backend.archive(claimed)
        clock.advance(3600)

        assert await backend.claim(QueueClass.DEFAULT, "w-1", 30) is None
        archived = await backend.list_archived(QueueClass.DEFAULT)
        assert [t.task_id for t in archived] == [task.task_id]
        assert (await backend.get_status(task.task_id))["state"] == "archived"

    @pytest.mark.asyncio
    async def test_recover_expired_leases(self, backend, clock):
        task = make_task(clock, timeout_seconds=10)
        await backend.enqueue(task)
        await backend.claim(QueueClass.DEFAULT, "w-1", 5)

        clock.advance(14)
        assert await backend.recover_expired_leases(QueueClass.DEFAULT, 5) == []

        clock.advance(1)
        recovered = await backend.recover_expired_leases(QueueClass.DEFAULT, 5)

        assert [t.task_id for t in recovered] == [task.task_id]
        status = await backend.get_status(task.task_id)
        assert status["worker_id"] == RECOVERER_ID
        # Re-leased to the recoverer, so a second scan finds nothing
        assert await backend.recover_expired_leases(QueueClass.DEFAULT, 5) == []

    @pytest.mark.asyncio
    async def test_requeue_archived_resets_budget(self, backend, clock):
        task = make_task(clock)
        await backend.enqueue(task)
        claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        claimed.retried = 3
        claimed.last_error = "RuntimeError: boom"
        await backend.archive(claimed)

        assert await backend.requeue_archived(QueueClass.DEFAULT, task.task_id) is True
        assert await backend.requeue_archived(QueueClass.DEFAULT, task.task_id) is False

        again = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        assert again.task_id == task.task_id
        assert again.retried == 0
        assert again.last_error is None

    @pytest.mark.asyncio
    async def test_delete_archived(self, backend, clock):
        task = make_task(clock)
        await backend.enqueue(task)
        claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        await backend.archive(claimed)

        assert await backend.delete_archived(QueueClass.DEFAULT, task.task_id) is True
        assert await backend.get_task(task.task_id) is None
        assert await backend.delete_archived(QueueClass.DEFAULT, task.task_id) is False

    @pytest.mark.asyncio
    async def test_payload_unchanged_by_state_transitions(self, backend, clock):
        task = make_task(clock)
        await backend.enqueue(task)
        claimed = await backend.claim(QueueClass.DEFAULT, "w-1", 30)
        claimed.retried = 1
        await backend.retry(claimed, 0)

        stored = await backend.get_task(task.task_id)
        assert stored.payload == task.payload
