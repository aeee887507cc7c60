"""
Coffeeshop Error Taxonomy

Domain exceptions shared by the request path (product coordinator) and the
task path (processor and handlers).

Request path errors (ValidationError, ConflictError, NotFoundError) are raised
synchronously to the caller and are never retried. Task path errors
(TransientExternalError, FatalTaskError) never reach the original caller;
the processor decides between retry and archive based on their type.
"""

from typing import Any, Dict, Optional


class CoffeeShopError(Exception):
    """Base exception for all domain errors.

    Carries a stable error code and JSON-safe details so the HTTP layer can
    map outcomes to responses without inspecting messages.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(CoffeeShopError):
    """Raised when input is malformed or violates field constraints."""

    def __init__(
        self,
        message: str = "Invalid input",
        field: Optional[str] = None,
        errors: Optional[list] = None,
    ):
        details: Dict[str, Any] = {}
        if field:
            details["field"] = field
        if errors:
            details["errors"] = errors

        super().__init__(message=message, error_code="VALIDATION_ERROR", details=details)


class ConflictError(CoffeeShopError):
    """Raised when a uniqueness constraint would be violated."""

    def __init__(
        self,
        message: str = "Resource already exists",
        field: Optional[str] = None,
        value: Optional[Any] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message=message, error_code="CONFLICT", details=details)
        if original_error:
            self.__cause__ = original_error


class NotFoundError(CoffeeShopError):
    """Raised when the primary record does not exist."""

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            message=f"{resource} {resource_id} not found",
            error_code="NOT_FOUND",
            details={"resource": resource, "id": str(resource_id)},
        )


class TransientExternalError(CoffeeShopError):
    """Raised by gateways when an external call fails and may succeed later."""

    def __init__(
        self,
        message: str,
        service: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {"service": service}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=message, error_code="TRANSIENT_EXTERNAL_ERROR", details=details
        )
        if original_error:
            self.__cause__ = original_error


class FatalTaskError(CoffeeShopError):
    """Raised when a task can never succeed (unknown type, malformed payload).

    The processor archives such tasks immediately instead of retrying them.
    """

    def __init__(
        self,
        message: str,
        task_type: Optional[str] = None,
        task_id: Optional[str] = None,
    ):
        details: Dict[str, Any] = {}
        if task_type:
            details["task_type"] = task_type
        if task_id:
            details["task_id"] = task_id

        super().__init__(message=message, error_code="FATAL_TASK_ERROR", details=details)


class QueueBackendError(CoffeeShopError):
    """Raised when the queue backend cannot accept or hand out tasks.

    Propagates to the caller; on the request path it aborts the transaction.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "QUEUE_BACKEND_ERROR",
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        details = dict(details or {})
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message=message, error_code=error_code, details=details)
        if original_error:
            self.__cause__ = original_error
