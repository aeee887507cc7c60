"""
Task Handlers

One coroutine per task type. Handlers are idempotent so that at-least-once
delivery is safe:

- uploads overwrite by key
- deletes of absent keys are no-ops
- mail has no dedup guard; a retried send may deliver twice

Gateways are synchronous and run in a worker thread.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from coffeeshop.core.config import settings
from coffeeshop.core.database import DatabaseManager
from coffeeshop.core.errors import FatalTaskError
from coffeeshop.infrastructure.mail.smtp_gateway import Mailer
from coffeeshop.infrastructure.storage.s3_gateway import ObjectStore, content_type_for
from coffeeshop.repositories import UserRepository

from .tasks import (
    PAYLOAD_MODELS,
    DeleteObjectsPayload,
    SendMailPayload,
    TaskData,
    TaskType,
    UploadImageBatchPayload,
    UploadImagePayload,
    utcnow,
)

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskData], Awaitable[None]]
PayloadT = TypeVar("PayloadT", bound=BaseModel)

# Lifetime of the links embedded in account mail
LINK_EXPIRY = timedelta(minutes=2880)

VERIFICATION_SUBJECT = "Verify your Coffeeshop account"
RESET_PASSWORD_SUBJECT = "Reset your Coffeeshop password"


def decode_payload(task: TaskData, model: Type[PayloadT]) -> PayloadT:
    """Parse the task payload. A payload that does not parse is fatal."""
    try:
        return model.model_validate_json(task.payload)
    except PydanticValidationError as e:
        raise FatalTaskError(
            f"Malformed payload: {e.error_count()} validation error(s)",
            task_type=task.task_type,
            task_id=str(task.task_id),
        )


def build_account_link(
    base_url: str, path: str, token: str, expires_at: datetime
) -> str:
    timestamp = int(expires_at.timestamp() * 1000)
    return f"{base_url.rstrip('/')}/{path}?token={token}&timestamp={timestamp}"


class TaskHandlers:
    """Handlers bound to the gateways and the database they need."""

    def __init__(
        self,
        object_store: ObjectStore,
        mailer: Mailer,
        database: DatabaseManager,
        base_url: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.object_store = object_store
        self.mailer = mailer
        self.database = database
        self.base_url = base_url or settings.APP_BASE_URL
        self.clock = clock

    def as_dispatch_table(self) -> Dict[TaskType, TaskHandler]:
        return {
            TaskType.UPLOAD_S3_OBJECT: self.upload_image,
            TaskType.UPLOAD_MULTIPLE_S3_OBJECTS: self.upload_images,
            TaskType.DELETE_S3_OBJECT: self.delete_objects,
            TaskType.SEND_VERIFICATION_MAIL: self.send_verification_mail,
            TaskType.SEND_RESET_PASSWORD_MAIL: self.send_reset_password_mail,
        }

    async def _put(self, image: UploadImagePayload) -> None:
        await asyncio.to_thread(
            self.object_store.put_object,
            image.object_key,
            image.image,
            content_type_for(image.extension),
        )

    async def upload_image(self, task: TaskData) -> None:
        payload = decode_payload(task, PAYLOAD_MODELS[TaskType.UPLOAD_S3_OBJECT])
        await self._put(payload)

    async def upload_images(self, task: TaskData) -> None:
        payload: UploadImageBatchPayload = decode_payload(
            task, PAYLOAD_MODELS[TaskType.UPLOAD_MULTIPLE_S3_OBJECTS]
        )
        for image in payload.images:
            await self._put(image)

        logger.info(
            f"Uploaded {len(payload.images)} objects",
            extra={"task_id": str(task.task_id)},
        )

    async def delete_objects(self, task: TaskData) -> None:
        payload: DeleteObjectsPayload = decode_payload(
            task, PAYLOAD_MODELS[TaskType.DELETE_S3_OBJECT]
        )
        for key in payload.keys:
            await asyncio.to_thread(self.object_store.delete_object, key)

    async def send_verification_mail(self, task: TaskData) -> None:
        await self._send_account_mail(task, "verify", VERIFICATION_SUBJECT)

    async def send_reset_password_mail(self, task: TaskData) -> None:
        await self._send_account_mail(task, "resetpassword", RESET_PASSWORD_SUBJECT)

    async def _send_account_mail(self, task: TaskData, path: str, subject: str) -> None:
        payload: SendMailPayload = decode_payload(task, SendMailPayload)

        async with self.database.transaction() as session:
            user = await UserRepository(session).get_by_email(payload.email)

        if user is None:
            raise FatalTaskError(
                f"No user with email {payload.email}",
                task_type=task.task_type,
                task_id=str(task.task_id),
            )

        link = build_account_link(
            self.base_url, path, str(user.id), self.clock() + LINK_EXPIRY
        )
        body = f"Hello {user.username},\n\n{link}\n"

        await asyncio.to_thread(self.mailer.send, user.email, subject, body)
