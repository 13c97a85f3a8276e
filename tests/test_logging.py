"""Tests for the structured logging system (inventory_kernel/logging_config.py)."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from inventory_kernel.exceptions import DeviceVersionConflictError
from inventory_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


def _parse_log(stream: StringIO) -> dict:
    return _parse_all_logs(stream)[0]


# ---------------------------------------------------------------------------
# StructuredFormatter
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "inventory_kernel.test"
        assert "ts" in record

    def test_extra_fields_and_uuid(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        device_id = uuid4()
        get_logger("test").info(
            "device_assigned", extra={"holder_id": device_id, "kinds": {"laptop"}}
        )

        record = _parse_log(stream)
        assert record["holder_id"] == str(device_id)
        assert record["kinds"] == ["laptop"]

    def test_exception_attributes_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise DeviceVersionConflictError("dev-1", 3)
        except DeviceVersionConflictError:
            get_logger("test").error("device_version_conflict", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "DeviceVersionConflictError"
        assert record["exc_code"] == "DEVICE_VERSION_CONFLICT"
        assert record["exc_device_id"] == "dev-1"
        assert record["exc_attempts"] == 3
        assert "traceback" in record

    def test_level_filtering(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.debug("hidden")
        logger.warning("shown")

        assert [r["message"] for r in _parse_all_logs(stream)] == ["shown"]


# ---------------------------------------------------------------------------
# LogContext
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="req-1", device_kind="phone", unknown_field="ignored")
        get_logger("test").info("msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "req-1"
        assert record["device_kind"] == "phone"
        assert "unknown_field" not in record

    def test_bind_restores_previous_values(self):
        LogContext.set(actor_id="outer")
        with LogContext.bind(actor_id="inner", device_id=None):
            assert LogContext.get_all() == {"actor_id": "inner"}
        assert LogContext.get_all() == {"actor_id": "outer"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=_make_handler()[0])

        handlers = logging.getLogger("inventory_kernel").handlers
        assert sum(h is handler for h in handlers) == 1
        structured = [h for h in handlers if isinstance(h.formatter, StructuredFormatter)]
        assert structured == [handler]

    def test_does_not_propagate(self):
        configure_logging(handler=_make_handler()[0])
        assert logging.getLogger("inventory_kernel").propagate is False
