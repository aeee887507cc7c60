"""
Queue Workers

Background workers that pull tasks from the queue backend and hand them to
the task processor. Provides a weighted worker pool and expired lease
recovery.
"""

import asyncio
import logging
import math
from typing import Any, Dict, List, Optional

from opentelemetry import trace

from coffeeshop.core import metrics
from coffeeshop.core.config import settings
from coffeeshop.infrastructure.repositories.queue_repository import QueueBackend

from .processor import TaskProcessor
from .tasks import QUEUE_WEIGHTS, QueueClass, TaskData, TaskStatus, utcnow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def split_concurrency(
    total: int, weights: Optional[Dict[QueueClass, int]] = None
) -> Dict[QueueClass, int]:
    """
    Split a worker budget across queue classes in proportion to their weights.

    Every class gets at least one worker; the remainder after flooring goes
    to the heaviest classes first.
    """
    weights = weights or QUEUE_WEIGHTS
    if total < len(weights):
        raise ValueError(
            f"Concurrency {total} is lower than the number of queue classes ({len(weights)})"
        )

    total_weight = sum(weights.values())
    split = {
        queue: max(1, math.floor(total * weight / total_weight))
        for queue, weight in weights.items()
    }

    by_weight = sorted(weights, key=lambda queue: weights[queue], reverse=True)
    remaining = total - sum(split.values())
    index = 0
    while remaining > 0:
        split[by_weight[index % len(by_weight)]] += 1
        remaining -= 1
        index += 1

    return split


class QueueWorker:
    """
    Individual queue worker.

    Claims one task at a time from its queue class and runs it to completion
    before claiming the next. Sleeps for ``poll_interval`` when the class has
    nothing due.
    """

    def __init__(
        self,
        worker_id: str,
        queue: QueueClass,
        backend: QueueBackend,
        processor: TaskProcessor,
        poll_interval: Optional[float] = None,
        lease_grace_seconds: Optional[int] = None,
    ):
        """
        Initialize queue worker.

        Args:
            worker_id: Unique worker identifier, recorded as the lease owner
            queue: Queue class this worker serves
            backend: Queue backend to claim from
            processor: Task processor that runs claimed tasks
            poll_interval: Idle polling interval in seconds
            lease_grace_seconds: Lease time on top of each task's timeout
        """
        self.worker_id = worker_id
        self.queue = queue
        self.backend = backend
        self.processor = processor
        self.poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL
        self.lease_grace_seconds = lease_grace_seconds or settings.LEASE_GRACE_SECONDS

        self._running = False
        self._current_task: Optional[TaskData] = None
        self._shutdown_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stats = {
            "tasks_processed": 0,
            "tasks_completed": 0,
            "tasks_retried": 0,
            "tasks_archived": 0,
            "start_time": None,
            "last_activity": None,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run the worker loop until stop() is called."""
        if self._running:
            return

        self._running = True
        self._shutdown_event.clear()
        self._stats["start_time"] = utcnow()

        logger.info(f"Starting worker {self.worker_id} for queue {self.queue.value}")

        try:
            await self._worker_loop()
        finally:
            self._running = False
            logger.info(f"Worker {self.worker_id} shutdown complete")

    async def stop(self, graceful_timeout: Optional[float] = None) -> bool:
        """
        Stop claiming new tasks and wait for the in-flight one.

        Returns:
            True if the worker drained within the timeout
        """
        graceful_timeout = graceful_timeout or settings.WORKER_SHUTDOWN_TIMEOUT
        logger.info(f"Stopping worker {self.worker_id}")

        self._running = False
        self._shutdown_event.set()

        if self._current_task is not None:
            logger.info(
                f"Waiting for task {self._current_task.task_id} to complete"
            )

        try:
            await asyncio.wait_for(self._idle.wait(), timeout=graceful_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Worker {self.worker_id} shutdown timeout, task still running"
            )
            return False

    async def _worker_loop(self) -> None:
        """Main worker loop."""
        while self._running:
            try:
                outcome = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Backend unavailable; the lease, if any, is recovered later
                logger.error(f"Worker {self.worker_id} error in main loop: {e}")
                outcome = None

            if outcome is None and self._running:
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=self.poll_interval
                    )
                except asyncio.TimeoutError:
                    pass

    async def run_once(self) -> Optional[TaskStatus]:
        """
        Claim and process at most one task.

        Returns:
            The outcome of the attempt, or None if nothing was due
        """
        task = await self.backend.claim(
            self.queue, self.worker_id, self.lease_grace_seconds
        )
        if task is None:
            return None

        self._current_task = task
        self._idle.clear()
        self._stats["last_activity"] = utcnow()

        try:
            outcome = await self.processor.process(task, self.worker_id)
        finally:
            self._current_task = None
            self._idle.set()

        self._stats["tasks_processed"] += 1
        if outcome == TaskStatus.COMPLETED:
            self._stats["tasks_completed"] += 1
        elif outcome == TaskStatus.RETRYING:
            self._stats["tasks_retried"] += 1
        else:
            self._stats["tasks_archived"] += 1

        return outcome

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics."""
        runtime = None
        if self._stats["start_time"]:
            runtime = (utcnow() - self._stats["start_time"]).total_seconds()

        return {
            "worker_id": self.worker_id,
            "queue": self.queue.value,
            "running": self._running,
            "current_task": (
                str(self._current_task.task_id) if self._current_task else None
            ),
            "stats": self._stats.copy(),
            "runtime_seconds": runtime,
        }


class WorkerPool:
    """
    Pool of queue workers split across queue classes by weight.

    Also runs the recovery loop that returns tasks with expired leases to
    the processor as failed attempts.
    """

    def __init__(
        self,
        backend: QueueBackend,
        processor: TaskProcessor,
        concurrency: Optional[int] = None,
        weights: Optional[Dict[QueueClass, int]] = None,
        pool_name: str = "coffeeshop",
        poll_interval: Optional[float] = None,
        lease_grace_seconds: Optional[int] = None,
        recovery_interval: Optional[float] = None,
    ):
        self.backend = backend
        self.processor = processor
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.weights = weights or QUEUE_WEIGHTS
        self.pool_name = pool_name
        self.poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL
        self.lease_grace_seconds = lease_grace_seconds or settings.LEASE_GRACE_SECONDS
        self.recovery_interval = recovery_interval or settings.RECOVERY_INTERVAL

        self._workers: List[QueueWorker] = []
        self._worker_tasks: List[asyncio.Task] = []
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._recovery_task: Optional[asyncio.Task] = None

    @property
    def workers(self) -> List[QueueWorker]:
        return list(self._workers)

    def build_workers(self) -> List[QueueWorker]:
        """Create the workers for every class according to the weights."""
        workers = []
        for queue, count in split_concurrency(self.concurrency, self.weights).items():
            for i in range(count):
                workers.append(
                    QueueWorker(
                        worker_id=f"{self.pool_name}-{queue.value}-{i}",
                        queue=queue,
                        backend=self.backend,
                        processor=self.processor,
                        poll_interval=self.poll_interval,
                        lease_grace_seconds=self.lease_grace_seconds,
                    )
                )
        return workers

    async def start(self) -> None:
        """Validate handlers, then launch workers and the recovery loop."""
        if self._running:
            return

        self.processor.validate_handlers()

        self._running = True
        self._shutdown_event.clear()
        logger.info(f"Starting worker pool {self.pool_name}")

        self._workers = self.build_workers()
        self._worker_tasks = [
            asyncio.create_task(worker.start(), name=worker.worker_id)
            for worker in self._workers
        ]

        for queue in self.weights:
            metrics.active_workers.labels(queue=queue.value).set(
                sum(1 for worker in self._workers if worker.queue == queue)
            )

        self._recovery_task = asyncio.create_task(self._recovery_loop())

        logger.info(
            f"Worker pool {self.pool_name} started with {len(self._workers)} workers",
            extra={
                "workers_per_queue": {
                    queue.value: sum(1 for w in self._workers if w.queue == queue)
                    for queue in self.weights
                }
            },
        )

    async def serve(self) -> None:
        """Start the pool and block until request_shutdown(), then stop."""
        await self.start()
        await self._shutdown_event.wait()
        await self.stop()

    def request_shutdown(self) -> None:
        """Ask serve() to stop the pool. Safe to call from a signal handler."""
        self._shutdown_event.set()

    async def stop(self, graceful_timeout: Optional[float] = None) -> None:
        """
        Stop the worker pool.

        Workers stop claiming at once; in-flight tasks get ``graceful_timeout``
        seconds to finish before their workers are cancelled. A cancelled task
        keeps its lease and is recovered after the lease expires.
        """
        if not self._running:
            return

        graceful_timeout = graceful_timeout or settings.WORKER_SHUTDOWN_TIMEOUT
        logger.info(f"Stopping worker pool {self.pool_name}")
        self._running = False
        self._shutdown_event.set()

        if self._recovery_task:
            self._recovery_task.cancel()
            try:
                await self._recovery_task
            except asyncio.CancelledError:
                pass
            self._recovery_task = None

        await asyncio.gather(
            *(worker.stop(graceful_timeout) for worker in self._workers),
            return_exceptions=True,
        )

        for task in self._worker_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []

        for queue in self.weights:
            metrics.active_workers.labels(queue=queue.value).set(0)

        logger.info(f"Worker pool {self.pool_name} stopped")

    async def _recovery_loop(self) -> None:
        """Periodically recover tasks whose lease expired."""
        while self._running:
            try:
                await asyncio.sleep(self.recovery_interval)
                await self.recover_expired_leases()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Lease recovery error: {e}")

    async def recover_expired_leases(self) -> int:
        """Treat every expired lease as a failed attempt. Returns the count."""
        recovered = 0
        with tracer.start_as_current_span("worker_pool.recover_expired_leases"):
            for queue in self.weights:
                tasks = await self.backend.recover_expired_leases(
                    queue, self.lease_grace_seconds
                )
                for task in tasks:
                    outcome = await self.processor.handle_expired_lease(task)
                    logger.warning(
                        f"Recovered expired lease of task {task.task_id} as {outcome.value}",
                        extra={"task_id": str(task.task_id), "queue": queue.value},
                    )
                    recovered += 1
        return recovered

    def get_pool_stats(self) -> Dict[str, Any]:
        """Get worker pool statistics."""
        total_stats = {
            "pool_name": self.pool_name,
            "running": self._running,
            "total_workers": len(self._workers),
            "total_processed": 0,
            "total_completed": 0,
            "total_retried": 0,
            "total_archived": 0,
            "workers": [],
        }

        for worker in self._workers:
            worker_stats = worker.get_stats()
            total_stats["workers"].append(worker_stats)
            total_stats["total_processed"] += worker_stats["stats"]["tasks_processed"]
            total_stats["total_completed"] += worker_stats["stats"]["tasks_completed"]
            total_stats["total_retried"] += worker_stats["stats"]["tasks_retried"]
            total_stats["total_archived"] += worker_stats["stats"]["tasks_archived"]

        return total_stats
