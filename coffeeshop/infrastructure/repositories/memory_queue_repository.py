"""
In-memory Queue Repository

Process-local implementation of QueueBackend with the same state machine as
the Redis backend, including the expiry of completed tasks. Producers and
workers must share the process, so it backs the test suite and embedded use
rather than the worker entrypoint. Tasks do not survive a restart.
"""

import asyncio
import itertools
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID

from coffeeshop.services.queues.tasks import QueueClass, TaskData, TaskStatus, utcnow

from .queue_repository import COMPLETED_RETENTION_SECONDS, RECOVERER_ID, QueueBackend

logger = logging.getLogger(__name__)


class InMemoryQueueBackend(QueueBackend):
    """
    Queue backend held in dictionaries and guarded by one asyncio lock.

    Every method takes the lock for its whole body, which gives the same
    atomicity the Lua scripts give the Redis backend.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock=clock)
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, TaskData] = {}
        self._status: Dict[str, Dict[str, str]] = {}
        # Sets per class: task_id -> (score, sequence)
        self._scheduled: Dict[QueueClass, Dict[str, Tuple[float, int]]] = {
            queue: {} for queue in QueueClass
        }
        self._active: Dict[QueueClass, Dict[str, float]] = {
            queue: {} for queue in QueueClass
        }
        self._archived: Dict[QueueClass, Dict[str, Tuple[float, int]]] = {
            queue: {} for queue in QueueClass
        }
        # Completed task_id -> expiry timestamp
        self._completed: Dict[str, float] = {}
        self._sequence = itertools.count()

    def _set_status(self, task_id: str, **fields) -> None:
        status = self._status.setdefault(task_id, {})
        status.update({key: str(value) for key, value in fields.items()})
        status["updated_at"] = self.clock().isoformat()

    def _purge_completed(self) -> None:
        now = self.clock().timestamp()
        expired = [
            task_id
            for task_id, expires_at in self._completed.items()
            if expires_at <= now
        ]
        for task_id in expired:
            del self._completed[task_id]
            self._tasks.pop(task_id, None)
            self._status.pop(task_id, None)

    def _release(self, task: TaskData) -> bool:
        task_id = str(task.task_id)
        held = self._active[task.queue].pop(task_id, None) is not None
        self._scheduled[task.queue].pop(task_id, None)
        return held

    async def enqueue(self, task: TaskData) -> None:
        async with self._lock:
            self._purge_completed()
            task_id = str(task.task_id)
            self._tasks[task_id] = task.model_copy(deep=True)
            self._scheduled[task.queue][task_id] = (
                task.process_at.timestamp(),
                next(self._sequence),
            )
            self._set_status(
                task_id,
                state=TaskStatus.SCHEDULED.value,
                worker_id="",
                lease_deadline="",
                retried=0,
                last_error="",
            )

    async def claim(
        self, queue: QueueClass, worker_id: str, lease_grace_seconds: int
    ) -> Optional[TaskData]:
        async with self._lock:
            now = self.clock()
            due = [
                (score, task_id)
                for task_id, score in self._scheduled[queue].items()
                if score[0] <= now.timestamp()
            ]
            if not due:
                return None

            _, task_id = min(due)
            del self._scheduled[queue][task_id]

            deadline = now + timedelta(
                seconds=self._tasks[task_id].timeout_seconds + lease_grace_seconds
            )
            self._active[queue][task_id] = deadline.timestamp()
            self._set_status(
                task_id,
                state=TaskStatus.ACTIVE.value,
                worker_id=worker_id,
                lease_deadline=deadline.timestamp(),
            )

            return self._tasks[task_id].model_copy(deep=True)

    async def complete(self, task: TaskData) -> bool:
        async with self._lock:
            held = self._release(task)
            self._purge_completed()
            self._set_status(
                str(task.task_id),
                state=TaskStatus.COMPLETED.value,
                worker_id="",
                lease_deadline="",
            )
            self._completed[str(task.task_id)] = (
                self.clock().timestamp() + COMPLETED_RETENTION_SECONDS
            )
            return held

    async def retry(self, task: TaskData, delay_seconds: float) -> bool:
        async with self._lock:
            task_id = str(task.task_id)
            held = self._release(task)

            task.process_at = self.clock() + timedelta(seconds=delay_seconds)
            self._tasks[task_id] = task.model_copy(deep=True)
            self._scheduled[task.queue][task_id] = (
                task.process_at.timestamp(),
                next(self._sequence),
            )
            self._set_status(
                task_id,
                state=TaskStatus.RETRYING.value,
                worker_id="",
                lease_deadline="",
                retried=task.retried,
                last_error=task.last_error or "",
            )
            return held

    async def archive(self, task: TaskData) -> bool:
        async with self._lock:
            task_id = str(task.task_id)
            held = self._release(task)

            self._tasks[task_id] = task.model_copy(deep=True)
            self._archived[task.queue][task_id] = (
                self.clock().timestamp(),
                next(self._sequence),
            )
            self._set_status(
                task_id,
                state=TaskStatus.ARCHIVED.value,
                worker_id="",
                lease_deadline="",
                retried=task.retried,
                last_error=task.last_error or "",
            )
            return held

    async def recover_expired_leases(
        self, queue: QueueClass, lease_seconds: int
    ) -> List[TaskData]:
        async with self._lock:
            now = self.clock()
            deadline = (now + timedelta(seconds=lease_seconds)).timestamp()

            expired = [
                task_id
                for task_id, lease_deadline in self._active[queue].items()
                if lease_deadline <= now.timestamp()
            ]

            recovered = []
            for task_id in expired:
                self._active[queue][task_id] = deadline
                self._set_status(
                    task_id, worker_id=RECOVERER_ID, lease_deadline=deadline
                )
                recovered.append(self._tasks[task_id].model_copy(deep=True))

            if recovered:
                logger.debug(
                    f"Recovered {len(recovered)} expired leases",
                    extra={"queue": queue.value},
                )

            return recovered

    async def get_task(self, task_id: UUID) -> Optional[TaskData]:
        async with self._lock:
            self._purge_completed()
            task = self._tasks.get(str(task_id))
            return task.model_copy(deep=True) if task else None

    async def get_status(self, task_id: UUID) -> Optional[Dict[str, str]]:
        async with self._lock:
            self._purge_completed()
            status = self._status.get(str(task_id))
            return dict(status) if status else None

    async def list_archived(
        self, queue: QueueClass, limit: int = 100
    ) -> List[TaskData]:
        async with self._lock:
            ordered = sorted(
                self._archived[queue].items(), key=lambda item: item[1], reverse=True
            )
            return [
                self._tasks[task_id].model_copy(deep=True)
                for task_id, _ in ordered[:limit]
            ]

    async def delete_archived(self, queue: QueueClass, task_id: UUID) -> bool:
        async with self._lock:
            key = str(task_id)
            if self._archived[queue].pop(key, None) is None:
                return False
            self._tasks.pop(key, None)
            self._status.pop(key, None)
            return True

    async def requeue_archived(self, queue: QueueClass, task_id: UUID) -> bool:
        async with self._lock:
            key = str(task_id)
            if self._archived[queue].pop(key, None) is None:
                return False

            task = self._tasks[key]
            task.retried = 0
            task.last_error = None
            task.process_at = self.clock()

        await self.enqueue(task)
        return True

    async def queue_stats(self, queue: QueueClass) -> Dict[str, int]:
        async with self._lock:
            return {
                TaskStatus.SCHEDULED.value: len(self._scheduled[queue]),
                TaskStatus.ACTIVE.value: len(self._active[queue]),
                TaskStatus.ARCHIVED.value: len(self._archived[queue]),
            }
