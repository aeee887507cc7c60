"""
Task Queue Services

Distribution, processing and retry of background tasks. The task model is
re-exported here; the distributor, processor and workers are imported from
their own modules.
"""

from .tasks import (
    DeleteObjectsPayload,
    EnqueueOptions,
    QueueClass,
    SendMailPayload,
    TaskData,
    TaskStatus,
    TaskType,
    UploadImageBatchPayload,
    UploadImagePayload,
)

__all__ = [
    "TaskType",
    "QueueClass",
    "TaskStatus",
    "TaskData",
    "EnqueueOptions",
    "UploadImagePayload",
    "UploadImageBatchPayload",
    "DeleteObjectsPayload",
    "SendMailPayload",
]
