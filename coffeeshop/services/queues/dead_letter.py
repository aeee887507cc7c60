"""
Dead Letter Queue

Access to archived tasks: tasks that exhausted their retry budget or failed
fatally. Archived tasks are kept for inspection and can be requeued by hand
with a fresh retry budget or deleted.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from opentelemetry import trace

from coffeeshop.infrastructure.repositories.queue_repository import QueueBackend

from .tasks import QueueClass, TaskData

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DeadLetterQueue:
    """Read and manage archived tasks of every queue class."""

    def __init__(self, backend: QueueBackend):
        self.backend = backend

    async def list_tasks(
        self, queue: Optional[QueueClass] = None, limit: int = 100
    ) -> List[TaskData]:
        """
        List archived tasks, most recent first.

        Args:
            queue: Restrict to one queue class (all classes when None)
            limit: Maximum number of tasks per class
        """
        queues = [queue] if queue else list(QueueClass)
        tasks: List[TaskData] = []
        for queue_class in queues:
            tasks.extend(await self.backend.list_archived(queue_class, limit))
        return tasks

    async def requeue_task(self, queue: QueueClass, task_id: UUID) -> bool:
        """Move an archived task back to scheduled with retried reset to 0."""
        with tracer.start_as_current_span("dead_letter.requeue_task") as span:
            span.set_attribute("task_id", str(task_id))
            span.set_attribute("queue", queue.value)

            requeued = await self.backend.requeue_archived(queue, task_id)
            if requeued:
                logger.info(
                    f"Requeued archived task {task_id}",
                    extra={"task_id": str(task_id), "queue": queue.value},
                )
            else:
                logger.warning(
                    f"Archived task {task_id} not found",
                    extra={"task_id": str(task_id), "queue": queue.value},
                )
            return requeued

    async def delete_task(self, queue: QueueClass, task_id: UUID) -> bool:
        deleted = await self.backend.delete_archived(queue, task_id)
        if deleted:
            logger.info(
                f"Deleted archived task {task_id}",
                extra={"task_id": str(task_id), "queue": queue.value},
            )
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        """Count archived tasks per class and per task type."""
        stats: Dict[str, Any] = {"total": 0, "by_queue": {}, "by_task_type": {}}
        for queue_class in QueueClass:
            queue_stats = await self.backend.queue_stats(queue_class)
            stats["by_queue"][queue_class.value] = queue_stats["archived"]
            stats["total"] += queue_stats["archived"]

        for task in await self.list_tasks(limit=1000):
            stats["by_task_type"][task.task_type] = (
                stats["by_task_type"].get(task.task_type, 0) + 1
            )

        return stats
