"""
Tests for TaskProcessor: dispatch, retry rule and archive.
"""

import asyncio
from datetime import timedelta

import pytest

from coffeeshop.core.errors import TransientExternalError
from coffeeshop.services.queues.handlers import TaskHandlers
from coffeeshop.services.queues.processor import TaskProcessor
from coffeeshop.services.queues.tasks import (
    EnqueueOptions,
    QueueClass,
    TaskStatus,
    TaskType,
)


async def noop(task):
    return None


def dispatch_table(**overrides):
    table = {task_type: noop for task_type in TaskType}
    for name, handler in overrides.items():
        table[TaskType(name)] = handler
    return table


class FlakyHandler:
    """Fails the first ``failures`` calls, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self, task):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientExternalError("s3 unavailable", service="s3")


async def claim(backend, queue=QueueClass.DEFAULT):
    return await backend.claim(queue, "worker-test", 30)


class TestTaskProcessor:
    """Test task processing outcomes."""

    def test_validate_handlers_lists_missing_types(self, backend, retry_strategy):
        processor = TaskProcessor(
            backend, {TaskType.DELETE_S3_OBJECT: noop}, retry_strategy
        )

        with pytest.raises(ValueError, match="send_verification_mail"):
            processor.validate_handlers()

    def test_validate_handlers_accepts_full_table(self, backend, retry_strategy):
        TaskProcessor(backend, dispatch_table(), retry_strategy).validate_handlers()

    @pytest.mark.asyncio
    async def test_success_completes(self, backend, distributor, retry_strategy):
        processor = TaskProcessor(backend, dispatch_table(), retry_strategy)
        task = await distributor.distribute_delete_objects(["a.png"])

        outcome = await processor.process(await claim(backend), "worker-test")

        assert outcome == TaskStatus.COMPLETED
        assert (await backend.get_status(task.task_id))["state"] == "completed"

    @pytest.mark.asyncio
    async def test_unknown_type_archived_without_retry(
        self, backend, distributor, retry_strategy
    ):
        processor = TaskProcessor(backend, dispatch_table(), retry_strategy)
        task = await distributor.enqueue("resize_image", "{}")

        outcome = await processor.process(await claim(backend), "worker-test")

        assert outcome == TaskStatus.ARCHIVED
        stored = await backend.get_task(task.task_id)
        assert stored.retried == 0
        assert stored.last_error.startswith("FatalTaskError: Unknown task type")

    @pytest.mark.asyncio
    async def test_malformed_payload_archived(
        self, backend, distributor, retry_strategy, object_store, mailer
    ):
        handlers = TaskHandlers(object_store, mailer, database=None)
        processor = TaskProcessor(backend, handlers.as_dispatch_table(), retry_strategy)
        task = await distributor.enqueue(TaskType.UPLOAD_S3_OBJECT, '{"bogus": 1}')

        outcome = await processor.process(await claim(backend), "worker-test")

        assert outcome == TaskStatus.ARCHIVED
        assert (await backend.get_task(task.task_id)).retried == 0
        assert object_store.put_calls == []

    @pytest.mark.asyncio
    async def test_flaky_handler_completes_on_third_attempt(
        self, backend, distributor, retry_strategy, clock
    ):
        handler = FlakyHandler(failures=2)
        processor = TaskProcessor(
            backend, dispatch_table(delete_s3_object=handler), retry_strategy
        )
        task = await distributor.distribute_delete_objects(
            ["a.png"], EnqueueOptions(max_retry=3)
        )

        assert await processor.process(await claim(backend), "w") == TaskStatus.RETRYING
        # Backoff: not due before the first delay has passed
        assert await claim(backend) is None
        clock.advance(1)
        assert await processor.process(await claim(backend), "w") == TaskStatus.RETRYING
        clock.advance(2)
        final = await claim(backend)
        assert final.retried == 2
        assert await processor.process(final, "w") == TaskStatus.COMPLETED

        assert handler.calls == 3
        status = await backend.get_status(task.task_id)
        assert status["state"] == "completed"
        assert (await backend.get_task(task.task_id)).retried == 2

    @pytest.mark.asyncio
    async def test_always_failing_task_archived_after_budget(
        self, backend, distributor, retry_strategy, clock
    ):
        handler = FlakyHandler(failures=100)
        processor = TaskProcessor(
            backend, dispatch_table(delete_s3_object=handler), retry_strategy
        )
        task = await distributor.distribute_delete_objects(["a.png"])

        outcomes = []
        for _ in range(3):
            claimed = await claim(backend)
            outcomes.append(await processor.process(claimed, "w"))
            clock.advance(60)

        assert outcomes == [TaskStatus.RETRYING, TaskStatus.RETRYING, TaskStatus.ARCHIVED]
        assert handler.calls == 3

        clock.advance(timedelta(days=1).total_seconds())
        assert await claim(backend) is None

        stored = await backend.get_task(task.task_id)
        assert stored.retried == 3
        assert "s3 unavailable" in stored.last_error
        assert (await backend.get_status(task.task_id))["state"] == "archived"

    @pytest.mark.asyncio
    async def test_zero_retry_budget_archives_on_first_failure(
        self, backend, distributor, retry_strategy
    ):
        processor = TaskProcessor(
            backend,
            dispatch_table(delete_s3_object=FlakyHandler(failures=1)),
            retry_strategy,
        )
        await distributor.distribute_delete_objects(["a.png"], EnqueueOptions(max_retry=0))

        outcome = await processor.process(await claim(backend), "w")

        assert outcome == TaskStatus.ARCHIVED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, backend, distributor, retry_strategy):
        async def slow(task):
            await asyncio.sleep(5)

        processor = TaskProcessor(
            backend, dispatch_table(delete_s3_object=slow), retry_strategy
        )
        task = await distributor.distribute_delete_objects(
            ["a.png"], EnqueueOptions(timeout_seconds=1)
        )

        outcome = await processor.process(await claim(backend), "w")

        assert outcome == TaskStatus.RETRYING
        stored = await backend.get_task(task.task_id)
        assert stored.retried == 1
        assert stored.last_error.startswith("TimeoutError")

    @pytest.mark.asyncio
    async def test_expired_lease_counts_as_failure(
        self, backend, distributor, retry_strategy
    ):
        processor = TaskProcessor(backend, dispatch_table(), retry_strategy)
        task = await distributor.distribute_delete_objects(["a.png"])
        claimed = await claim(backend)

        outcome = await processor.handle_expired_lease(claimed)

        assert outcome == TaskStatus.RETRYING
        stats = await backend.queue_stats(QueueClass.DEFAULT)
        assert stats["active"] == 0
        assert stats["scheduled"] == 1
        assert (await backend.get_task(task.task_id)).retried == 1

    @pytest.mark.asyncio
    async def test_long_errors_truncated(self, backend, distributor, retry_strategy):
        async def verbose(task):
            raise RuntimeError("x" * 5000)

        processor = TaskProcessor(
            backend, dispatch_table(delete_s3_object=verbose), retry_strategy
        )
        task = await distributor.distribute_delete_objects(["a.png"])

        await processor.process(await claim(backend), "w")

        assert len((await backend.get_task(task.task_id)).last_error) == 1000
