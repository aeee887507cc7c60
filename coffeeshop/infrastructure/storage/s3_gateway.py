"""
S3 Object Store Gateway

Thin synchronous wrapper over a boto3 S3 client. Task handlers call it through
asyncio.to_thread. The gateway never retries; failures surface as
TransientExternalError and the task processor decides what happens next.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from coffeeshop.core.config import settings
from coffeeshop.core.errors import TransientExternalError

logger = logging.getLogger(__name__)

# Error codes S3 uses for a key or bucket entry that does not exist
MISSING_KEY_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class ObjectStore(ABC):
    """Blob storage addressed by key."""

    @abstractmethod
    def put_object(self, key: str, data: bytes, content_type: str) -> None:
        """Store data under key, overwriting any previous object."""

    @abstractmethod
    def delete_object(self, key: str) -> None:
        """Delete the object under key. Deleting an absent key is a no-op."""

    @abstractmethod
    def get_object(self, key: str) -> Optional[bytes]:
        """Return the object under key, or None if it does not exist."""


def content_type_for(extension: str) -> str:
    return f"image/{extension.lower().lstrip('.')}"


class S3ObjectStore(ObjectStore):
    """S3 implementation of ObjectStore. Objects are written public-read."""

    def __init__(self, client=None, bucket: Optional[str] = None):
        self.bucket = bucket or settings.S3_BUCKET_NAME
        self._client = client or boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
        )

    def put_object(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ACL="public-read",
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(
                f"S3 upload failed for {key}: {e}",
                extra={"bucket": self.bucket, "object_key": key},
            )
            raise TransientExternalError(
                f"Failed to upload object {key}",
                service="s3",
                operation="put_object",
                original_error=e,
            )

        logger.info(
            f"Uploaded object {key}",
            extra={"bucket": self.bucket, "object_key": key, "size": len(data)},
        )

    def delete_object(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in MISSING_KEY_CODES:
                logger.debug(f"Object {key} already absent")
                return
            raise TransientExternalError(
                f"Failed to delete object {key}",
                service="s3",
                operation="delete_object",
                original_error=e,
            )
        except BotoCoreError as e:
            raise TransientExternalError(
                f"Failed to delete object {key}",
                service="s3",
                operation="delete_object",
                original_error=e,
            )

        logger.info(
            f"Deleted object {key}",
            extra={"bucket": self.bucket, "object_key": key},
        )

    def get_object(self, key: str) -> Optional[bytes]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in MISSING_KEY_CODES:
                return None
            raise TransientExternalError(
                f"Failed to read object {key}",
                service="s3",
                operation="get_object",
                original_error=e,
            )
        except BotoCoreError as e:
            raise TransientExternalError(
                f"Failed to read object {key}",
                service="s3",
                operation="get_object",
                original_error=e,
            )
