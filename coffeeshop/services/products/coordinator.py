"""
Product Mutation Coordinator

Runs product create/update/delete inside one database transaction and
decides which side-effect tasks (blob uploads and deletes) to enqueue.

Order within each operation:

1. validate input and sniff every blob (no I/O against the queue yet)
2. open the transaction and re-read whatever the decision depends on
3. enqueue the accumulated side effects
4. write the record and commit

Enqueued tasks are not retracted if the write or the commit fails
afterwards. Handlers tolerate that: an upload for a record that was never
written leaves an orphan blob, a delete for a record that still exists is
repeated by the next successful delete.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from uuid import UUID, uuid4

import structlog
from opentelemetry import trace
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

from coffeeshop.core.database import DatabaseManager
from coffeeshop.core.errors import ConflictError, NotFoundError, ValidationError
from coffeeshop.models import Product
from coffeeshop.repositories import ProductRepository
from coffeeshop.services.queues.distributor import TaskDistributor
from coffeeshop.services.queues.tasks import (
    DeleteObjectsPayload,
    EnqueueOptions,
    QueueClass,
    TaskData,
    TaskType,
    UploadImageBatchPayload,
    utcnow,
)

from .images import SniffedImage, image_key, thumbnail_key
from .schemas import ImageUpload, ProductCreate, ProductRead, ProductUpdate

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

UPLOAD_OPTIONS = EnqueueOptions(
    max_retry=3, process_in=timedelta(seconds=2), queue=QueueClass.CRITICAL
)
# Replaced blobs stay readable for a while so in-flight readers can finish
REPLACED_DELETE_OPTIONS = EnqueueOptions(
    max_retry=3, process_in=timedelta(minutes=3), queue=QueueClass.CRITICAL
)
DELETE_OPTIONS = EnqueueOptions(
    max_retry=3, process_in=timedelta(minutes=1), queue=QueueClass.CRITICAL
)


class PendingEffect:
    """One task to enqueue once the operation has been validated."""

    def __init__(self, task_type: TaskType, payload: BaseModel, options: EnqueueOptions):
        self.task_type = task_type
        self.payload = payload
        self.options = options

    def __repr__(self) -> str:
        return f"<PendingEffect({self.task_type.value}, queue={self.options.queue.value})>"


class PendingSideEffects:
    """Ordered side effects of one mutation, enqueued together."""

    def __init__(self):
        self._effects: List[PendingEffect] = []

    def add(
        self, task_type: TaskType, payload: BaseModel, options: EnqueueOptions
    ) -> None:
        self._effects.append(PendingEffect(task_type, payload, options))

    def __len__(self) -> int:
        return len(self._effects)

    def __iter__(self):
        return iter(self._effects)

    async def flush(self, distributor: TaskDistributor) -> List[TaskData]:
        """Enqueue every effect in order. Stops at the first backend error."""
        tasks = []
        for effect in self._effects:
            tasks.append(
                await distributor.enqueue(effect.task_type, effect.payload, effect.options)
            )
        return tasks


def _validate(model, fields: Union[BaseModel, Dict[str, Any]]):
    if isinstance(fields, model):
        return fields
    if isinstance(fields, BaseModel):
        fields = fields.model_dump(exclude_unset=True)
    try:
        return model.model_validate(fields or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid product fields: {first.get('msg')}",
            field=field,
            errors=[
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in e.errors()
            ],
        )


class ProductCoordinator:
    """Transactional product mutations with queued blob side effects."""

    def __init__(
        self,
        database: DatabaseManager,
        distributor: TaskDistributor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.distributor = distributor
        self.clock = clock

    async def create(
        self,
        fields: Union[ProductCreate, Dict[str, Any]],
        thumbnail: Optional[ImageUpload] = None,
        images: Optional[Sequence[ImageUpload]] = None,
        author: Optional[UUID] = None,
    ) -> ProductRead:
        """
        Create a product and queue the upload of its blobs.

        Raises:
            ValidationError: Invalid fields or a blob that is not an image
            ConflictError: The name is already used
            QueueBackendError: The side effects could not be enqueued
        """
        data = _validate(ProductCreate, fields)
        sniffed_thumbnail = (
            SniffedImage.from_upload(thumbnail, field="thumbnail") if thumbnail else None
        )
        sniffed_images = [
            SniffedImage.from_upload(image, field="images") for image in images or []
        ]

        effects = PendingSideEffects()
        thumbnail_object_key = ""
        if sniffed_thumbnail:
            thumbnail_object_key = thumbnail_key(sniffed_thumbnail.extension)
            effects.add(
                TaskType.UPLOAD_S3_OBJECT,
                sniffed_thumbnail.to_payload(thumbnail_object_key),
                UPLOAD_OPTIONS,
            )

        image_payloads = [
            image.to_payload(image_key(data.category, image.extension))
            for image in sniffed_images
        ]
        if image_payloads:
            effects.add(
                TaskType.UPLOAD_MULTIPLE_S3_OBJECTS,
                UploadImageBatchPayload(images=image_payloads),
                UPLOAD_OPTIONS,
            )

        now = self.clock()
        product = Product(
            id=uuid4(),
            **data.model_dump(),
            images=[payload.object_key for payload in image_payloads],
            thumbnail=thumbnail_object_key,
            author=author,
            created_at=now,
            updated_at=now,
        )

        with tracer.start_as_current_span("product_coordinator.create") as span:
            span.set_attribute("product_id", str(product.id))
            span.set_attribute("side_effects", len(effects))

            try:
                async with self.database.transaction() as session:
                    repo = ProductRepository(session)
                    if await repo.name_taken(data.name):
                        raise ConflictError(
                            f"Product '{data.name}' already exists",
                            field="name",
                            value=data.name,
                        )

                    await effects.flush(self.distributor)
                    await repo.create(product)

            except IntegrityError as e:
                raise ConflictError(
                    f"Product '{data.name}' already exists",
                    field="name",
                    value=data.name,
                    original_error=e,
                )

        logger.info(
            "ProductCoordinator: Product created",
            product_id=str(product.id),
            name=product.name,
            images=len(product.images),
            has_thumbnail=bool(product.thumbnail),
        )

        return ProductRead.model_validate(product)

    async def update(
        self,
        product_id: UUID,
        fields: Optional[Union[ProductUpdate, Dict[str, Any]]] = None,
        thumbnail: Optional[ImageUpload] = None,
        images: Optional[Sequence[ImageUpload]] = None,
    ) -> ProductRead:
        """
        Apply a partial update and queue blob replacement.

        A new thumbnail queues a delayed delete of the old one (when there is
        one) followed by the upload of the new one. New images replace the
        whole image list the same way, as one delete and one batch upload.

        Raises:
            ValidationError: Invalid fields or a blob that is not an image
            NotFoundError: No product with this id
            ConflictError: The new name is already used by another product
        """
        data = _validate(ProductUpdate, fields or {})
        changes = data.changes()
        sniffed_thumbnail = (
            SniffedImage.from_upload(thumbnail, field="thumbnail") if thumbnail else None
        )
        sniffed_images = [
            SniffedImage.from_upload(image, field="images") for image in images or []
        ]

        with tracer.start_as_current_span("product_coordinator.update") as span:
            span.set_attribute("product_id", str(product_id))

            try:
                async with self.database.transaction() as session:
                    repo = ProductRepository(session)
                    product = await repo.get(product_id, for_update=True)
                    if product is None:
                        raise NotFoundError("Product", product_id)

                    new_name = changes.get("name")
                    if (
                        new_name
                        and new_name != product.name
                        and await repo.name_taken(new_name, exclude_id=product.id)
                    ):
                        raise ConflictError(
                            f"Product '{new_name}' already exists",
                            field="name",
                            value=new_name,
                        )

                    effects = PendingSideEffects()

                    if sniffed_thumbnail:
                        if product.thumbnail:
                            effects.add(
                                TaskType.DELETE_S3_OBJECT,
                                DeleteObjectsPayload(keys=[product.thumbnail]),
                                REPLACED_DELETE_OPTIONS,
                            )
                        changes["thumbnail"] = thumbnail_key(sniffed_thumbnail.extension)
                        effects.add(
                            TaskType.UPLOAD_S3_OBJECT,
                            sniffed_thumbnail.to_payload(changes["thumbnail"]),
                            UPLOAD_OPTIONS,
                        )

                    if sniffed_images:
                        category = changes.get("category", product.category)
                        if product.images:
                            effects.add(
                                TaskType.DELETE_S3_OBJECT,
                                DeleteObjectsPayload(keys=list(product.images)),
                                REPLACED_DELETE_OPTIONS,
                            )
                        image_payloads = [
                            image.to_payload(image_key(category, image.extension))
                            for image in sniffed_images
                        ]
                        changes["images"] = [p.object_key for p in image_payloads]
                        effects.add(
                            TaskType.UPLOAD_MULTIPLE_S3_OBJECTS,
                            UploadImageBatchPayload(images=image_payloads),
                            UPLOAD_OPTIONS,
                        )

                    span.set_attribute("side_effects", len(effects))

                    await effects.flush(self.distributor)
                    await repo.update_fields(product, changes, now=self.clock())

            except IntegrityError as e:
                raise ConflictError(
                    f"Product '{changes.get('name')}' already exists",
                    field="name",
                    value=changes.get("name"),
                    original_error=e,
                )

        logger.info(
            "ProductCoordinator: Product updated",
            product_id=str(product_id),
            fields=sorted(changes),
        )

        return ProductRead.model_validate(product)

    async def delete(self, product_id: UUID) -> None:
        """
        Delete a product and queue the deletion of every blob it references.

        Raises:
            NotFoundError: No product with this id
        """
        with tracer.start_as_current_span("product_coordinator.delete") as span:
            span.set_attribute("product_id", str(product_id))

            async with self.database.transaction() as session:
                repo = ProductRepository(session)
                product = await repo.get(product_id, for_update=True)
                if product is None:
                    raise NotFoundError("Product", product_id)

                keys = [key for key in [*product.images, product.thumbnail] if key]
                effects = PendingSideEffects()
                if keys:
                    effects.add(
                        TaskType.DELETE_S3_OBJECT,
                        DeleteObjectsPayload(keys=keys),
                        DELETE_OPTIONS,
                    )

                await effects.flush(self.distributor)
                await repo.delete(product)

        logger.info(
            "ProductCoordinator: Product deleted",
            product_id=str(product_id),
            deleted_keys=len(keys),
        )
