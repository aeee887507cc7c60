"""
Tests for settings, logging, telemetry and the error taxonomy.
"""

import logging

import pytest
import structlog
from pydantic import ValidationError as PydanticValidationError

from coffeeshop.core.config import Settings, get_settings
from coffeeshop.core.errors import (
    ConflictError,
    NotFoundError,
    QueueBackendError,
    TransientExternalError,
)
from coffeeshop.core.logging import configure_logging
from coffeeshop.core.telemetry import TelemetryManager
from coffeeshop.infrastructure.redis import RedisConnectionException


class TestSettings:
    def test_test_environment_loaded(self):
        settings = get_settings()

        assert settings.ENVIRONMENT == "test"

    def test_invalid_environment_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(ENVIRONMENT="qa")

    def test_log_format_normalized(self):
        assert Settings(LOG_FORMAT="JSON").LOG_FORMAT == "json"

    def test_concurrency_must_cover_both_classes(self):
        with pytest.raises(PydanticValidationError):
            Settings(WORKER_CONCURRENCY=1)


class TestErrors:
    def test_not_found_details(self):
        error = NotFoundError("Product", "abc")

        assert error.error_code == "NOT_FOUND"
        assert error.details == {"resource": "Product", "id": "abc"}
        assert str(error) == "Product abc not found"

    def test_conflict_keeps_cause(self):
        cause = RuntimeError("unique violation")
        error = ConflictError("taken", field="name", value="Mocha", original_error=cause)

        assert error.__cause__ is cause
        assert error.details == {"field": "name", "value": "Mocha"}

    def test_transient_error_records_original(self):
        error = TransientExternalError(
            "upload failed", service="s3", original_error=TimeoutError("slow")
        )

        assert error.details["original_error_type"] == "TimeoutError"

    def test_redis_errors_are_queue_backend_errors(self):
        error = RedisConnectionException(message="refused")

        assert isinstance(error, QueueBackendError)


class TestLogging:
    def test_configure_logging_is_repeatable(self):
        configure_logging()
        handlers = list(logging.getLogger().handlers)
        configure_logging()

        assert logging.getLogger().handlers == handlers
        structlog.get_logger().info("logging configured", component="test")

    def test_library_levels_clamped_when_handlers_exist(self):
        root = logging.getLogger()
        existing = logging.NullHandler()
        root.addHandler(existing)
        logging.getLogger("botocore").setLevel(logging.NOTSET)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.NOTSET)

        try:
            configure_logging()
        finally:
            root.removeHandler(existing)

        assert logging.getLogger("botocore").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


class TestTelemetry:
    def test_initialize_and_shutdown(self):
        manager = TelemetryManager()

        provider = manager.initialize(instrument_libraries=False)

        assert manager.is_initialized
        assert manager.initialize(instrument_libraries=False) is provider
        assert provider.resource.attributes["service.name"] == "coffeeshop-worker"

        manager.shutdown()
        assert not manager.is_initialized
