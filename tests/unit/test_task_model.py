"""
Tests for task model payloads and enqueue options.
"""

import base64
import json
from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from coffeeshop.services.queues.tasks import (
    PAYLOAD_MODELS,
    DeleteObjectsPayload,
    EnqueueOptions,
    QueueClass,
    SendMailPayload,
    TaskData,
    TaskType,
    UploadImageBatchPayload,
    UploadImagePayload,
)


class TestPayloads:
    """Test payload wire formats."""

    def test_upload_payload_encodes_image_as_base64(self):
        payload = UploadImagePayload(
            image=b"\x89PNG raw", object_key="images/products/a.png", extension="png"
        )

        wire = json.loads(payload.model_dump_json())

        assert wire["image"] == base64.b64encode(b"\x89PNG raw").decode("ascii")
        assert wire["object_key"] == "images/products/a.png"
        assert wire["extension"] == "png"

    def test_upload_payload_decodes_base64_from_json(self):
        wire = json.dumps(
            {
                "image": base64.b64encode(b"blob").decode("ascii"),
                "object_key": "k",
                "extension": "jpeg",
            }
        )

        payload = UploadImagePayload.model_validate_json(wire)

        assert payload.image == b"blob"

    def test_upload_payload_rejects_invalid_base64(self):
        wire = json.dumps({"image": "not base64!!", "object_key": "k", "extension": "png"})

        with pytest.raises(PydanticValidationError):
            UploadImagePayload.model_validate_json(wire)

    def test_batch_payload_requires_images(self):
        with pytest.raises(PydanticValidationError):
            UploadImageBatchPayload(images=[])

    def test_delete_payload_rejects_empty_keys(self):
        with pytest.raises(PydanticValidationError):
            DeleteObjectsPayload(keys=["a", ""])

        with pytest.raises(PydanticValidationError):
            DeleteObjectsPayload(keys=[])

    def test_mail_payload_requires_at_sign(self):
        with pytest.raises(PydanticValidationError):
            SendMailPayload(email="not-an-address")

        assert SendMailPayload(email=" ann@example.com ").email == "ann@example.com"

    def test_every_task_type_has_payload_model(self):
        assert set(PAYLOAD_MODELS) == set(TaskType)


class TestEnqueueOptions:
    """Test enqueue option defaults and validation."""

    def test_defaults(self):
        options = EnqueueOptions()

        assert options.max_retry == 3
        assert options.process_in == timedelta(0)
        assert options.queue == QueueClass.DEFAULT
        assert options.timeout_seconds == 300

    def test_negative_delay_rejected(self):
        with pytest.raises(PydanticValidationError):
            EnqueueOptions(process_in=timedelta(seconds=-1))

    def test_negative_max_retry_rejected(self):
        with pytest.raises(PydanticValidationError):
            EnqueueOptions(max_retry=-1)

    def test_zero_timeout_rejected(self):
        with pytest.raises(PydanticValidationError):
            EnqueueOptions(timeout_seconds=0)

    def test_queue_accepts_plain_string(self):
        assert EnqueueOptions(queue="critical").queue == QueueClass.CRITICAL


class TestTaskData:
    def test_json_roundtrip_keeps_identity(self):
        task = TaskData(task_type="upload_s3_object", payload='{"a": 1}', retried=2)

        restored = TaskData.model_validate_json(task.model_dump_json())

        assert restored.task_id == task.task_id
        assert restored.retried == 2
        assert restored.process_at == task.process_at
