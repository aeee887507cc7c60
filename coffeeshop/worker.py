"""
Worker process entrypoint.

    python -m coffeeshop.worker

Initializes the database and the queue backend, runs the weighted worker
pool until SIGINT/SIGTERM, drains in-flight tasks and closes every resource.
"""

import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from coffeeshop.core.config import settings
from coffeeshop.core.database import DatabaseManager
from coffeeshop.core.logging import configure_logging
from coffeeshop.core.telemetry import TelemetryManager
from coffeeshop.infrastructure.mail.smtp_gateway import SMTPMailer
from coffeeshop.infrastructure.repositories.queue_repository import (
    QueueBackend,
    RedisQueueBackend,
)
from coffeeshop.infrastructure.storage.s3_gateway import S3ObjectStore
from coffeeshop.services.queues.handlers import TaskHandlers
from coffeeshop.services.queues.processor import TaskProcessor
from coffeeshop.services.queues.workers import WorkerPool

logger = structlog.get_logger()


async def build_backend() -> QueueBackend:
    """Create and initialize the shared Redis queue backend."""
    backend = RedisQueueBackend()
    await backend.initialize()
    return backend


async def run_worker() -> None:
    database = DatabaseManager()
    await database.initialize()

    backend = None
    try:
        backend = await build_backend()

        handlers = TaskHandlers(
            object_store=S3ObjectStore(),
            mailer=SMTPMailer(),
            database=database,
        )
        processor = TaskProcessor(backend, handlers.as_dispatch_table())
        pool = WorkerPool(backend, processor)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, pool.request_shutdown)

        logger.info(
            "Worker process started",
            environment=settings.ENVIRONMENT,
            concurrency=settings.WORKER_CONCURRENCY,
        )

        await pool.serve()

    finally:
        if backend is not None:
            await backend.close()
        await database.close()
        logger.info("Worker process stopped")


def main() -> None:
    configure_logging()

    if settings.METRICS_PORT:
        start_http_server(settings.METRICS_PORT)
        logger.info("Metrics exporter started", port=settings.METRICS_PORT)

    telemetry = TelemetryManager()
    telemetry.initialize()
    try:
        asyncio.run(run_worker())
    finally:
        telemetry.shutdown()


if __name__ == "__main__":
    main()
