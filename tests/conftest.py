"""
Main pytest configuration for the coffeeshop tests.

Fixtures: a controllable clock, the in-memory queue backend, in-memory
object store and mailer fakes, real image bytes and a SQLite database.
"""

import io
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from PIL import Image

# Set test environment variables before importing coffeeshop modules
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_FORMAT"] = "console"

from coffeeshop.core.database import DatabaseManager  # noqa: E402
from coffeeshop.core.errors import TransientExternalError  # noqa: E402
from coffeeshop.infrastructure.mail.smtp_gateway import Mailer  # noqa: E402
from coffeeshop.infrastructure.repositories.memory_queue_repository import (  # noqa: E402
    InMemoryQueueBackend,
)
from coffeeshop.infrastructure.storage.s3_gateway import ObjectStore  # noqa: E402
from coffeeshop.services.queues.distributor import TaskDistributor  # noqa: E402
from coffeeshop.services.queues.retry import (  # noqa: E402
    ExponentialBackoffRetry,
    RetryPolicy,
)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeObjectStore(ObjectStore):
    """Object store held in a dict. Can be told to fail the next N writes."""

    def __init__(self):
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.put_calls: List[str] = []
        self.delete_calls: List[str] = []
        self.fail_puts = 0

    def put_object(self, key: str, data: bytes, content_type: str) -> None:
        self.put_calls.append(key)
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise TransientExternalError(
                f"Failed to upload object {key}", service="s3", operation="put_object"
            )
        self.objects[key] = (data, content_type)

    def delete_object(self, key: str) -> None:
        self.delete_calls.append(key)
        self.objects.pop(key, None)

    def get_object(self, key: str) -> Optional[bytes]:
        stored = self.objects.get(key)
        return stored[0] if stored else None


class FakeMailer(Mailer):
    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    def send(self, recipient: str, subject: str, body: str) -> None:
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})


def make_image_bytes(image_format: str = "PNG", color=(120, 80, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=color).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return InMemoryQueueBackend(clock=clock)


@pytest.fixture
def distributor(backend, clock):
    return TaskDistributor(backend, clock=clock)


@pytest.fixture
def retry_strategy():
    """Deterministic backoff: 1s, 2s, 4s, ... without jitter."""
    return ExponentialBackoffRetry(
        RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=60.0, jitter=False)
    )


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes("JPEG", color=(10, 200, 30))


@pytest_asyncio.fixture
async def database(tmp_path):
    """SQLite database with the full schema, one file per test."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'coffeeshop.db'}")
    await manager.initialize()
    await manager.create_schema()
    yield manager
    await manager.close()
