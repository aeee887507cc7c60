"""
Task Processor

Consumer side state machine. For a leased task it looks up the handler,
runs it under the task's deadline and records the outcome:

    scheduled -> active -> completed
                        -> retrying (scheduled again after a backoff delay)
                        -> archived (retry budget spent, or fatal error)

Handler failures are never propagated; they end in retrying or archived.
Backend errors while recording an outcome do propagate, and the lease then
expires and is recovered later.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Union

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coffeeshop.core import metrics
from coffeeshop.core.errors import FatalTaskError
from coffeeshop.infrastructure.repositories.queue_repository import QueueBackend

from .handlers import TaskHandler
from .retry import ExponentialBackoffRetry, RetryPolicy, RetryStrategy
from .tasks import TaskData, TaskStatus, TaskType

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Errors stored on the task are truncated to this length
MAX_ERROR_LENGTH = 1000

OUTCOME_LABELS = {
    TaskStatus.COMPLETED: "completed",
    TaskStatus.RETRYING: "retried",
    TaskStatus.ARCHIVED: "archived",
}


class TaskProcessor:
    """Dispatches leased tasks to handlers and applies the retry rule."""

    def __init__(
        self,
        backend: QueueBackend,
        handlers: Dict[Union[TaskType, str], TaskHandler],
        retry_strategy: Optional[RetryStrategy] = None,
    ):
        self.backend = backend
        self.retry_strategy = retry_strategy or ExponentialBackoffRetry(
            RetryPolicy.from_settings()
        )
        # Keyed by the plain string id, which is what a stored task carries
        self._handlers: Dict[str, TaskHandler] = {
            (key.value if isinstance(key, TaskType) else key): handler
            for key, handler in handlers.items()
        }

    def validate_handlers(self) -> None:
        """Fail fast if any known task type has no handler."""
        missing = [t.value for t in TaskType if t.value not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for task types: {missing}")

    async def process(self, task: TaskData, worker_id: str) -> TaskStatus:
        """Run one leased task to a terminal state for this attempt."""
        started = time.monotonic()

        with tracer.start_as_current_span("task_processor.process") as span:
            span.set_attribute("task_id", str(task.task_id))
            span.set_attribute("task_type", task.task_type)
            span.set_attribute("queue", task.queue.value)
            span.set_attribute("worker_id", worker_id)
            span.set_attribute("retried", task.retried)

            logger.debug(
                f"Processing task {task.task_id}",
                extra={
                    "task_id": str(task.task_id),
                    "task_type": task.task_type,
                    "worker_id": worker_id,
                },
            )

            handler = self._handlers.get(task.task_type)

            try:
                if handler is None:
                    raise FatalTaskError(
                        f"Unknown task type: {task.task_type}",
                        task_type=task.task_type,
                        task_id=str(task.task_id),
                    )
                await asyncio.wait_for(handler(task), timeout=task.timeout_seconds)

            except asyncio.TimeoutError:
                outcome = await self.handle_failure(
                    task,
                    TimeoutError(f"Task timed out after {task.timeout_seconds}s"),
                )
                span.set_status(Status(StatusCode.ERROR, "timeout"))

            except Exception as e:
                outcome = await self.handle_failure(task, e)
                span.set_status(Status(StatusCode.ERROR, str(e)))

            else:
                held = await self.backend.complete(task)
                if not held:
                    logger.warning(
                        f"Task {task.task_id} completed after its lease was lost",
                        extra={"task_id": str(task.task_id), "worker_id": worker_id},
                    )
                outcome = TaskStatus.COMPLETED
                span.set_status(Status(StatusCode.OK))

            duration = time.monotonic() - started
            span.set_attribute("outcome", outcome.value)

        metrics.task_duration_seconds.labels(task_type=task.task_type).observe(duration)
        metrics.tasks_processed_total.labels(
            task_type=task.task_type,
            queue=task.queue.value,
            outcome=OUTCOME_LABELS[outcome],
        ).inc()

        logger.info(
            f"Task {task.task_id} finished as {outcome.value}",
            extra={
                "task_id": str(task.task_id),
                "task_type": task.task_type,
                "worker_id": worker_id,
                "outcome": outcome.value,
                "duration_ms": int(duration * 1000),
            },
        )

        return outcome

    async def handle_failure(self, task: TaskData, error: Exception) -> TaskStatus:
        """
        Record a failed attempt.

        Non-fatal failures consume one retry. The task is retried while
        ``retried < max_retry`` and archived otherwise. Fatal failures are
        archived without consuming a retry.
        """
        if not isinstance(error, FatalTaskError):
            task.retried += 1
        task.last_error = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]

        if self.retry_strategy.should_retry(task, error):
            delay = self.retry_strategy.calculate_delay(task.retried)
            await self.backend.retry(task, delay)

            logger.info(
                f"Task {task.task_id} scheduled for retry "
                f"({task.retried}/{task.max_retry}) in {delay:.1f}s",
                extra={
                    "task_id": str(task.task_id),
                    "task_type": task.task_type,
                    "retried": task.retried,
                    "error": task.last_error,
                },
            )
            return TaskStatus.RETRYING

        await self.backend.archive(task)

        logger.warning(
            f"Task {task.task_id} archived after {task.retried} retries: {task.last_error}",
            extra={
                "task_id": str(task.task_id),
                "task_type": task.task_type,
                "retried": task.retried,
                "fatal": isinstance(error, FatalTaskError),
            },
        )
        return TaskStatus.ARCHIVED

    async def handle_expired_lease(self, task: TaskData) -> TaskStatus:
        """Count a lease that expired (worker crash or hang) as a failed attempt."""
        outcome = await self.handle_failure(
            task, TimeoutError("Lease expired before the task finished")
        )
        metrics.recovered_leases_total.labels(queue=task.queue.value).inc()
        metrics.tasks_processed_total.labels(
            task_type=task.task_type,
            queue=task.queue.value,
            outcome=OUTCOME_LABELS[outcome],
        ).inc()
        return outcome
