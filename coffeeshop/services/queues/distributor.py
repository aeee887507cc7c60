"""
Task Distributor

Producer side of the queue. Serializes typed payloads and writes them to the
queue backend with delivery options (delay, retry budget, queue class).

Enqueue only talks to the backend: it returns once the task is stored and
never waits for the task to run. Backend errors propagate so the caller can
abort its own transaction.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from coffeeshop.core import metrics
from coffeeshop.core.errors import ValidationError
from coffeeshop.infrastructure.repositories.queue_repository import QueueBackend

from .tasks import (
    DeleteObjectsPayload,
    EnqueueOptions,
    SendMailPayload,
    TaskData,
    TaskType,
    UploadImageBatchPayload,
    UploadImagePayload,
    utcnow,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class TaskDistributor:
    """Enqueues tasks on a queue backend."""

    def __init__(self, backend: QueueBackend, clock: Callable[[], datetime] = utcnow):
        self.backend = backend
        self.clock = clock

    async def enqueue(
        self,
        task_type: Union[TaskType, str],
        payload: Union[BaseModel, str],
        options: Optional[Union[EnqueueOptions, Dict[str, Any]]] = None,
    ) -> TaskData:
        """
        Enqueue one task.

        Args:
            task_type: Task type id
            payload: Payload model, or payload JSON text
            options: Delivery options, as a model or a dict of its fields
                (defaults: max_retry=3, no delay, default queue, 300s timeout)

        Returns:
            The stored task

        Raises:
            ValidationError: If the task type or options are invalid
            QueueBackendError: If the backend rejects the write
        """
        options = self._resolve_options(options)
        type_value = task_type.value if isinstance(task_type, TaskType) else task_type
        if not type_value:
            raise ValidationError("task_type is required", field="task_type")

        payload_json = (
            payload.model_dump_json() if isinstance(payload, BaseModel) else payload
        )
        now = self.clock()

        task = TaskData(
            task_type=type_value,
            payload=payload_json,
            queue=options.queue,
            max_retry=options.max_retry,
            timeout_seconds=options.timeout_seconds,
            process_at=now + options.process_in,
            created_at=now,
        )

        with tracer.start_as_current_span("task_distributor.enqueue") as span:
            span.set_attribute("task_id", str(task.task_id))
            span.set_attribute("task_type", type_value)
            span.set_attribute("queue", task.queue.value)

            try:
                await self.backend.enqueue(task)
            except Exception as e:
                logger.error(f"Failed to enqueue task: {e}")
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            span.set_status(Status(StatusCode.OK))

        metrics.tasks_enqueued_total.labels(
            task_type=type_value, queue=task.queue.value
        ).inc()

        logger.info(
            f"Enqueued task {task.task_id} of type {type_value}",
            extra={
                "task_id": str(task.task_id),
                "task_type": type_value,
                "queue": task.queue.value,
                "process_at": task.process_at.isoformat(),
                "max_retry": task.max_retry,
            },
        )

        return task

    async def distribute_upload_image(
        self, payload: UploadImagePayload, options: Optional[EnqueueOptions] = None
    ) -> TaskData:
        return await self.enqueue(TaskType.UPLOAD_S3_OBJECT, payload, options)

    async def distribute_upload_images(
        self,
        images: List[UploadImagePayload],
        options: Optional[EnqueueOptions] = None,
    ) -> Optional[TaskData]:
        """Enqueue every image of one record as a single batch task.

        A failure of any image retries the whole batch. An empty batch
        enqueues nothing and returns None.
        """
        if not images:
            return None
        return await self.enqueue(
            TaskType.UPLOAD_MULTIPLE_S3_OBJECTS,
            UploadImageBatchPayload(images=images),
            options,
        )

    async def distribute_delete_objects(
        self, keys: List[str], options: Optional[EnqueueOptions] = None
    ) -> Optional[TaskData]:
        """Enqueue one task deleting every non-empty key. No keys, no task."""
        keys = [key for key in keys if key]
        if not keys:
            return None
        return await self.enqueue(
            TaskType.DELETE_S3_OBJECT, DeleteObjectsPayload(keys=keys), options
        )

    async def distribute_verification_mail(
        self, email: str, options: Optional[EnqueueOptions] = None
    ) -> TaskData:
        return await self.enqueue(
            TaskType.SEND_VERIFICATION_MAIL, self._mail_payload(email), options
        )

    async def distribute_reset_password_mail(
        self, email: str, options: Optional[EnqueueOptions] = None
    ) -> TaskData:
        return await self.enqueue(
            TaskType.SEND_RESET_PASSWORD_MAIL, self._mail_payload(email), options
        )

    @staticmethod
    def _resolve_options(
        options: Optional[Union[EnqueueOptions, Dict[str, Any]]]
    ) -> EnqueueOptions:
        if options is None:
            return EnqueueOptions()
        if isinstance(options, EnqueueOptions):
            return options
        try:
            return EnqueueOptions(**options)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid enqueue options", field="options", errors=e.errors()
            )

    @staticmethod
    def _mail_payload(email: str) -> SendMailPayload:
        try:
            return SendMailPayload(email=email)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid email address", field="email", errors=e.errors()
            )
