"""
Error Handler for the Collaborative Sync Core

Provides the exception taxonomy of the transport and resource layers and a
centralized handler that categorizes, logs and forwards errors to the UI.
The handler never swallows: callers log through it and re-raise.
"""

import logging
import traceback
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple
from dataclasses import dataclass


logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories for classification."""
    TRANSPORT = "transport"
    RESOLUTION = "resolution"
    CONFIG = "config"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for an error."""
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    user_message: str
    technical_details: str
    project_id: Optional[str] = None
    resource: Optional[str] = None
    transport: Optional[str] = None


# Custom Exception Classes

class SyncCoreError(Exception):
    """Base exception for sync core errors."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class TransportError(SyncCoreError):
    """A channel failed to deliver or fetch operations."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.TRANSPORT)


class ChannelUnavailable(TransportError):
    """The channel is not connected or the server could not be reached."""
    pass


class ChannelTimeout(TransportError):
    """No response arrived within the bound."""
    pass


class OperationRejected(TransportError):
    """
    The server actively refused the request (e.g. version conflict).

    Never retried by this layer; only the caller knows the correct
    conflict-resolution policy.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        operation_ids: Iterable[str] = ()
    ):
        super().__init__(message)
        self.status_code = status_code
        self.operation_ids: Tuple[str, ...] = tuple(operation_ids)


class ResolutionFailure(SyncCoreError):
    """A resource resolution network call failed or returned no URL."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.RESOLUTION)


class ConfigurationError(SyncCoreError):
    """Invalid or missing configuration."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.CONFIG)


class ErrorHandler:
    """
    Global error handler for the sync core.

    Provides centralized error handling with:
    - Error categorization (transport, resolution, config)
    - Severity classification
    - User-friendly error messages
    - Detailed logging for debugging
    - Notification callbacks for UI integration

    Usage:
        error_handler = ErrorHandler()
        error_handler.set_notification_callback(editor.show_toast)

        try:
            await dispatcher.send_operations(batch)
        except SyncCoreError as e:
            error_handler.handle_error(e, "send_operations", project_id=batch.project_id)
            raise
    """

    def __init__(self):
        """Initialize error handler."""
        self._notification_callback: Optional[Callable] = None
        self._error_count = 0

    def set_notification_callback(self, callback: Callable):
        """
        Set callback for displaying notifications to user.

        Args:
            callback: Function(title: str, content: str, severity: ErrorSeverity)
        """
        self._notification_callback = callback

    def handle_error(
        self,
        error: Exception,
        context: str,
        project_id: Optional[str] = None,
        resource: Optional[str] = None,
        transport: Optional[str] = None,
        show_notification: bool = True
    ) -> ErrorContext:
        """
        Handle an error with appropriate categorization and response.

        Args:
            error: The exception that occurred
            context: Description of the operation that failed
            project_id: Optional project the failing request belonged to
            resource: Optional resource key the failing resolution belonged to
            transport: Optional channel name that produced the error
            show_notification: Whether to show user notification (default: True)

        Returns:
            ErrorContext with categorized error information
        """
        self._error_count += 1

        if isinstance(error, SyncCoreError):
            category = error.category
        else:
            category = self._categorize_error(error)

        severity = self._determine_severity(error, category)
        user_message = self._generate_user_message(error, category, context)
        technical_details = self._get_technical_details(error)

        error_context = ErrorContext(
            category=category,
            severity=severity,
            operation=context,
            user_message=user_message,
            technical_details=technical_details,
            project_id=project_id,
            resource=resource,
            transport=transport
        )

        self._log_error(error_context)

        if show_notification and self._notification_callback:
            self._show_notification(error_context)

        return error_context

    def _categorize_error(self, error: Exception) -> ErrorCategory:
        """
        Categorize a foreign error based on its type and message.

        Args:
            error: The exception to categorize

        Returns:
            ErrorCategory
        """
        error_type = type(error).__name__.lower()
        error_msg = str(error).lower()

        if isinstance(error, (TimeoutError, ConnectionError, OSError)):
            return ErrorCategory.TRANSPORT

        if any(keyword in error_type or keyword in error_msg for keyword in [
            'connection', 'network', 'socket', 'timeout', 'http', 'transport'
        ]):
            return ErrorCategory.TRANSPORT

        if any(keyword in error_type or keyword in error_msg for keyword in [
            'url', 'token', 'resolve', 'signed'
        ]):
            return ErrorCategory.RESOLUTION

        if any(keyword in error_type or keyword in error_msg for keyword in [
            'config', 'yaml', 'setting'
        ]):
            return ErrorCategory.CONFIG

        return ErrorCategory.UNKNOWN

    def _determine_severity(
        self,
        error: Exception,
        category: ErrorCategory
    ) -> ErrorSeverity:
        """
        Determine the severity of an error.

        Args:
            error: The exception
            category: Error category

        Returns:
            ErrorSeverity
        """
        if category == ErrorCategory.CONFIG:
            return ErrorSeverity.CRITICAL

        # Rejections need the user's attention, connectivity blips usually not
        if isinstance(error, OperationRejected):
            return ErrorSeverity.ERROR

        if category == ErrorCategory.TRANSPORT:
            return ErrorSeverity.WARNING

        if category == ErrorCategory.RESOLUTION:
            return ErrorSeverity.WARNING

        return ErrorSeverity.ERROR

    def _generate_user_message(
        self,
        error: Exception,
        category: ErrorCategory,
        context: str
    ) -> str:
        """
        Generate a user-friendly error message.

        Args:
            error: The exception
            category: Error category
            context: Operation context

        Returns:
            User-friendly error message
        """
        if category == ErrorCategory.TRANSPORT:
            return self._generate_transport_message(error, context)
        elif category == ErrorCategory.RESOLUTION:
            return "Failed to load media. It will be retried when the view refreshes."
        elif category == ErrorCategory.CONFIG:
            return "The sync configuration is invalid. Please check your settings."
        else:
            return f"An error occurred during {context}. Please try again."

    def _generate_transport_message(self, error: Exception, context: str) -> str:
        """Generate user message for transport errors."""
        if isinstance(error, OperationRejected):
            return "The server rejected your changes. Reload the project to get the latest version."
        elif isinstance(error, ChannelTimeout):
            return "The server did not respond in time. Your changes were not saved."
        elif isinstance(error, ChannelUnavailable):
            return "Cannot reach the server. Please check your connection."
        else:
            return "Synchronization failed. Please check your connection."

    def _get_technical_details(self, error: Exception) -> str:
        """
        Get technical details for logging.

        Args:
            error: The exception

        Returns:
            Technical details string
        """
        details = [
            f"Exception Type: {type(error).__name__}",
            f"Message: {str(error)}",
            "Traceback:",
            "".join(traceback.format_exception(type(error), error, error.__traceback__))
        ]
        return "\n".join(details)

    def _log_error(self, error_context: ErrorContext):
        """
        Log error with appropriate level.

        Args:
            error_context: Error context information
        """
        log_message = (
            f"[{error_context.category.value.upper()}] "
            f"{error_context.operation}: {error_context.user_message}"
        )

        extra_info = []
        if error_context.project_id:
            extra_info.append(f"project_id={error_context.project_id}")
        if error_context.resource:
            extra_info.append(f"resource={error_context.resource}")
        if error_context.transport:
            extra_info.append(f"transport={error_context.transport}")

        if extra_info:
            log_message += f" ({', '.join(extra_info)})"

        if error_context.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
            logger.critical(f"Technical details:\n{error_context.technical_details}")
        elif error_context.severity == ErrorSeverity.ERROR:
            logger.error(log_message)
            logger.debug(f"Technical details:\n{error_context.technical_details}")
        elif error_context.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
            logger.debug(f"Technical details:\n{error_context.technical_details}")
        else:
            logger.info(log_message)

    def _show_notification(self, error_context: ErrorContext):
        """
        Show notification to user.

        Args:
            error_context: Error context information
        """
        if not self._notification_callback:
            return

        title_map = {
            ErrorCategory.TRANSPORT: "Sync Error",
            ErrorCategory.RESOLUTION: "Media Error",
            ErrorCategory.CONFIG: "Configuration Error",
            ErrorCategory.UNKNOWN: "Error"
        }
        title = title_map.get(error_context.category, "Error")

        try:
            self._notification_callback(
                title,
                error_context.user_message,
                error_context.severity
            )
        except Exception as e:
            logger.error(f"Failed to show notification: {e}")

    def get_error_count(self) -> int:
        """
        Get total number of errors handled.

        Returns:
            Error count
        """
        return self._error_count

    def reset_error_count(self):
        """Reset error counter."""
        self._error_count = 0


# Global error handler instance
_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """
    Get the global error handler instance.

    Returns:
        Global ErrorHandler instance
    """
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def set_error_handler(handler: ErrorHandler):
    """
    Set the global error handler instance.

    Args:
        handler: ErrorHandler instance to use globally
    """
    global _global_error_handler
    _global_error_handler = handler
