"""Tests for the error taxonomy and the centralized error handler."""

from unittest.mock import Mock

import pytest

from core.error_handler import (
    ChannelTimeout,
    ChannelUnavailable,
    ConfigurationError,
    ErrorCategory,
    ErrorHandler,
    ErrorSeverity,
    OperationRejected,
    ResolutionFailure,
    SyncCoreError,
    TransportError,
    get_error_handler,
    set_error_handler,
)


@pytest.fixture
def handler():
    return ErrorHandler()


def test_hierarchy():
    """Test exception categories and inheritance."""
    assert issubclass(ChannelUnavailable, TransportError)
    assert issubclass(ChannelTimeout, TransportError)
    assert issubclass(OperationRejected, TransportError)
    assert issubclass(TransportError, SyncCoreError)
    assert ResolutionFailure("x").category == ErrorCategory.RESOLUTION
    assert ConfigurationError("x").category == ErrorCategory.CONFIG
    assert ChannelTimeout("x").category == ErrorCategory.TRANSPORT


def test_operation_rejected_details():
    """Test that rejections carry status and operation ids."""
    error = OperationRejected("conflict", status_code=409, operation_ids=["a", "b"])

    assert error.status_code == 409
    assert error.operation_ids == ("a", "b")


@pytest.mark.parametrize("error,category,severity", [
    (ChannelUnavailable("down"), ErrorCategory.TRANSPORT, ErrorSeverity.WARNING),
    (ChannelTimeout("slow"), ErrorCategory.TRANSPORT, ErrorSeverity.WARNING),
    (OperationRejected("conflict"), ErrorCategory.TRANSPORT, ErrorSeverity.ERROR),
    (ResolutionFailure("no url"), ErrorCategory.RESOLUTION, ErrorSeverity.WARNING),
    (ConfigurationError("bad"), ErrorCategory.CONFIG, ErrorSeverity.CRITICAL),
    (ConnectionResetError("reset"), ErrorCategory.TRANSPORT, ErrorSeverity.WARNING),
    (RuntimeError("weird"), ErrorCategory.UNKNOWN, ErrorSeverity.ERROR),
])
def test_categorization(handler, error, category, severity):
    """Test category and severity of known and foreign errors."""
    context = handler.handle_error(error, "send_operations", show_notification=False)

    assert context.category == category
    assert context.severity == severity
    assert context.operation == "send_operations"


def test_context_fields_and_log(handler, caplog):
    """Test that identifiers are kept and logged."""
    with caplog.at_level("WARNING", logger="core.error_handler"):
        context = handler.handle_error(
            ChannelUnavailable("down"),
            "send_operations",
            project_id="project-1",
            transport="streaming",
            show_notification=False
        )

    assert context.project_id == "project-1"
    assert context.transport == "streaming"
    assert "project_id=project-1" in caplog.text
    assert "transport=streaming" in caplog.text


def test_notification_callback(handler):
    """Test that notifications are forwarded with a title and severity."""
    callback = Mock()
    handler.set_notification_callback(callback)

    handler.handle_error(OperationRejected("conflict"), "send_operations")

    callback.assert_called_once()
    title, message, severity = callback.call_args.args
    assert title == "Sync Error"
    assert "rejected" in message
    assert severity == ErrorSeverity.ERROR


def test_notification_failure_is_logged(handler, caplog):
    """Test that a failing callback does not break error handling."""
    handler.set_notification_callback(Mock(side_effect=RuntimeError("ui gone")))

    context = handler.handle_error(ResolutionFailure("no url"), "resolve_one")

    assert context.category == ErrorCategory.RESOLUTION
    assert "Failed to show notification" in caplog.text


def test_error_count(handler):
    """Test counting and resetting handled errors."""
    handler.handle_error(ChannelTimeout("slow"), "pull", show_notification=False)
    handler.handle_error(ChannelTimeout("slow"), "pull", show_notification=False)

    assert handler.get_error_count() == 2
    handler.reset_error_count()
    assert handler.get_error_count() == 0


def test_global_handler():
    """Test replacing the global handler."""
    custom = ErrorHandler()
    set_error_handler(custom)

    assert get_error_handler() is custom
