"""
Task Model

Task types, queue classes, payload variants and enqueue options shared by the
distributor, the queue backends and the processor.
"""

import base64
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_serializer, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskType(str, Enum):
    """Task types understood by the processor."""

    SEND_VERIFICATION_MAIL = "send_verification_mail"
    SEND_RESET_PASSWORD_MAIL = "send_reset_password_mail"
    UPLOAD_S3_OBJECT = "upload_s3_object"
    UPLOAD_MULTIPLE_S3_OBJECTS = "upload_multiple_s3_objects"
    DELETE_S3_OBJECT = "delete_s3_object"


class QueueClass(str, Enum):
    """Priority classes. Workers are split between them by weight."""

    CRITICAL = "critical"
    DEFAULT = "default"


# Share of worker concurrency per class
QUEUE_WEIGHTS = {
    QueueClass.CRITICAL: 2,
    QueueClass.DEFAULT: 1,
}


class TaskStatus(str, Enum):
    """Task execution status."""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class UploadImagePayload(BaseModel):
    """One blob to put in the object store. The image is base64 on the wire."""

    image: bytes = Field(..., description="Raw image bytes")
    object_key: str = Field(..., min_length=1, description="Destination key")
    extension: str = Field(..., min_length=1, description="File extension")

    @field_validator("image", mode="before")
    @classmethod
    def decode_image(cls, v):
        if isinstance(v, str):
            return base64.b64decode(v, validate=True)
        return v

    @field_serializer("image")
    def encode_image(self, v: bytes) -> str:
        return base64.b64encode(v).decode("ascii")


class UploadImageBatchPayload(BaseModel):
    """Every image of one record, uploaded (and retried) as a unit."""

    images: List[UploadImagePayload] = Field(..., min_length=1)


class DeleteObjectsPayload(BaseModel):
    keys: List[str] = Field(..., min_length=1)

    @field_validator("keys")
    @classmethod
    def validate_keys(cls, v):
        if any(not key for key in v):
            raise ValueError("object keys cannot be empty")
        return v


class SendMailPayload(BaseModel):
    email: str = Field(..., min_length=3, description="Recipient address")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.strip()


# Payload model expected by each task type
PAYLOAD_MODELS = {
    TaskType.UPLOAD_S3_OBJECT: UploadImagePayload,
    TaskType.UPLOAD_MULTIPLE_S3_OBJECTS: UploadImageBatchPayload,
    TaskType.DELETE_S3_OBJECT: DeleteObjectsPayload,
    TaskType.SEND_VERIFICATION_MAIL: SendMailPayload,
    TaskType.SEND_RESET_PASSWORD_MAIL: SendMailPayload,
}


class EnqueueOptions(BaseModel):
    """Per-task delivery options."""

    max_retry: int = Field(default=3, ge=0, le=25, description="Retry budget")
    process_in: timedelta = Field(
        default=timedelta(0), description="Delay before the task becomes due"
    )
    queue: QueueClass = Field(default=QueueClass.DEFAULT, description="Queue class")
    timeout_seconds: int = Field(
        default=300, ge=1, le=3600, description="Per-attempt deadline"
    )

    @field_validator("process_in")
    @classmethod
    def validate_process_in(cls, v):
        if v < timedelta(0):
            raise ValueError("process_in cannot be negative")
        return v


class TaskData(BaseModel):
    """Task data model.

    ``payload`` is JSON text and never changes after enqueue. ``retried`` and
    ``last_error`` are the only fields the processor writes.
    """

    task_id: UUID = Field(default_factory=uuid4)
    task_type: str = Field(..., min_length=1, description="Type of task")
    payload: str = Field(..., description="Serialized payload (JSON)")
    queue: QueueClass = Field(default=QueueClass.DEFAULT)
    max_retry: int = Field(default=3, ge=0)
    retried: int = Field(default=0, ge=0)
    timeout_seconds: int = Field(default=300, ge=1)
    process_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None
