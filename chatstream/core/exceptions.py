"""
Exception hierarchy for the chat job protocol.

Every failure the client can observe maps to one error type so callers can
react without string matching:
- Unauthenticated (401): navigate to login, never shown in the widget
- Daily limit (429): user-facing, carries the limit for display
- Server busy (503): recoverable, callers retry with backoff
- Network (other non-2xx): generic transport failure
- Job failed: backend reported terminal failure, not retried

Usage:
    from chatstream.core.exceptions import ServerBusyError

    try:
        await stream.send_message("Compare AAPL and MSFT")
    except ServerBusyError:
        ...  # schedule a retry
"""

from typing import Any


class AppError(Exception):
    """
    Base application error with HTTP status mapping.

    All custom exceptions inherit from this to enable consistent error handling.
    """

    # Default status code (subclasses override)
    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, **context: Any):
        """
        Initialize error with message and optional context.

        Args:
            message: Human-readable error description
            **context: Additional key-value pairs for logging (e.g., job_id, status)
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for structured logging and UI display."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "status_code": self.status_code,
            **self.context,
        }


class ChatStreamError(AppError):
    """Base class for errors raised while submitting or observing a chat job."""

    error_type = "chat_stream_error"

    # Flags checked by callers deciding whether to retry
    is_server_busy: bool = False
    is_network_error: bool = False


class UnauthenticatedError(ChatStreamError):
    """Session expired or missing; the caller is sent to the login page."""

    status_code = 401
    error_type = "unauthenticated"


class DailyLimitExceededError(ChatStreamError):
    """User used up the daily chat quota."""

    status_code = 429
    error_type = "daily_limit_exceeded"

    def __init__(self, limit: int, **context: Any):
        """
        Initialize with the daily limit for display.

        Args:
            limit: Number of chats allowed per day
            **context: Additional context (e.g., used, remaining)
        """
        super().__init__(
            f"Daily chat limit ({limit} chats) exceeded.", limit=limit, **context
        )
        self.limit = limit


class ServerBusyError(ChatStreamError):
    """Backend is at capacity; retrying after a short delay usually succeeds."""

    status_code = 503
    error_type = "server_busy"
    is_server_busy = True

    def __init__(
        self,
        message: str = "Server is busy. Retrying automatically shortly.",
        **context: Any,
    ):
        super().__init__(message, **context)


class NetworkError(ChatStreamError):
    """Generic transport or HTTP failure."""

    status_code = 502
    error_type = "network_error"
    is_network_error = True

    def __init__(
        self, status: int | None, message: str | None = None, **context: Any
    ):
        """
        Initialize with the HTTP status that caused the failure.

        Args:
            status: HTTP status code returned by the backend, None when the
                request never got a response (connection refused, reset)
            message: Optional override of the default message
            **context: Additional context (e.g., job_id)
        """
        default = f"Network error ({status})" if status else "Network error"
        super().__init__(message or default, status=status, **context)
        self.status = status
        if status is not None:
            self.status_code = status


class JobFailedError(ChatStreamError):
    """Backend reported that the generation job failed."""

    status_code = 502
    error_type = "job_failed"

    DEFAULT_MESSAGE = "The job failed. Please try again."

    def __init__(self, message: str | None = None, **context: Any):
        super().__init__(message or self.DEFAULT_MESSAGE, **context)
