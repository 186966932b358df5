"""
Exception hierarchy for the MIDI session relay.

Each exception maps onto one ErrorType category. Components that detect a
failure construct the matching exception, which records itself in the
structured log; the session layer then turns it into an activity record and
a connection state instead of letting it reach the presentation layer.
"""

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .error_types import ErrorType
from .logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ErrorContext:
    """
    Contextual information for error handling.

    Provides structured context for error reporting and debugging.
    """

    session_key: str | None = None
    participant_id: str | None = None
    channel_topic: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {
            "session_key": self.session_key,
            "participant_id": self.participant_id,
            "channel_topic": self.channel_topic,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class MidiSessionError(Exception):
    """
    Base exception for all MIDI session relay errors.

    Provides structured error handling with context and metadata
    for proper error categorization and debugging.
    """

    error_type: ErrorType = ErrorType.INTERNAL_ERROR
    log_level: str = "error"

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        details: dict[str, Any] | None = None,
        user_friendly: str | None = None,
    ):
        """
        Initialize relay error.

        Args:
            message: Technical error message
            context: Error context information
            details: Additional error details
            user_friendly: User-friendly error message
        """
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.details = details or {}
        self.user_friendly = user_friendly or message
        self.timestamp = datetime.now()

        self._log_error()

    def _log_error(self):
        """Log the error with structured context."""
        log_method = getattr(logger, self.log_level, logger.error)
        log_method(
            "Relay error occurred",
            error_type=self.__class__.__name__,
            category=self.error_type.value,
            message=self.message,
            context=self.context.to_dict(),
            details=self.details,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for diagnostics."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.error_type.value,
            "message": self.message,
            "user_friendly": self.user_friendly,
            "context": self.context.to_dict(),
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class TransportUnavailableError(MidiSessionError):
    """The channel cannot subscribe at all, typically missing configuration."""

    error_type = ErrorType.TRANSPORT_UNAVAILABLE

    def __init__(self, message: str, context: ErrorContext | None = None, config_key: str | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.config_key = config_key
        if config_key:
            self.details["config_key"] = config_key


class ChannelError(MidiSessionError):
    """Transient connectivity failure reported by the transport."""

    error_type = ErrorType.CHANNEL_ERROR
    log_level = "warning"


class ChannelTimeoutError(ChannelError):
    """The transport did not confirm a subscription in time."""

    error_type = ErrorType.TIMED_OUT

    def __init__(self, message: str, context: ErrorContext | None = None, timeout: float | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.timeout = timeout
        if timeout is not None:
            self.details["timeout"] = timeout


class HeartbeatLivenessFailure(ChannelError):
    """The heartbeat found the channel out of the joined state while believed connected."""

    error_type = ErrorType.HEARTBEAT_LIVENESS_FAILURE

    def __init__(self, message: str, context: ErrorContext | None = None, channel_state: str | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.channel_state = channel_state
        if channel_state:
            self.details["channel_state"] = channel_state


class MalformedEnvelopeError(MidiSessionError):
    """A received payload failed to decode into a MIDI event envelope."""

    error_type = ErrorType.MALFORMED_ENVELOPE
    log_level = "warning"

    def __init__(self, message: str, context: ErrorContext | None = None, field: str | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.field = field
        if field:
            self.details["field"] = field


class DeviceUnavailableError(MidiSessionError):
    """Local MIDI capability absent, access denied, or a device vanished."""

    error_type = ErrorType.DEVICE_UNAVAILABLE
    log_level = "warning"

    def __init__(self, message: str, context: ErrorContext | None = None, device_id: str | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.device_id = device_id
        if device_id:
            self.details["device_id"] = device_id


class UnplayableMidiError(MidiSessionError):
    """The output device layer cannot parse the received bytes into a MIDI message."""

    error_type = ErrorType.UNPLAYABLE_MIDI
    log_level = "warning"

    def __init__(self, message: str, context: ErrorContext | None = None, data: bytes | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.data = data
        if data is not None:
            self.details["data"] = list(data)


def create_error_context(**kwargs) -> ErrorContext:
    """
    Create an error context with the given parameters.

    Args:
        **kwargs: Context parameters

    Returns:
        ErrorContext object
    """
    return ErrorContext(**kwargs)


def handle_exception(exc: Exception, context: ErrorContext | None = None) -> MidiSessionError:
    """
    Convert a generic exception to a relay error.

    Args:
        exc: The original exception
        context: Error context

    Returns:
        MidiSessionError instance
    """
    if isinstance(exc, MidiSessionError):
        return exc

    if isinstance(exc, TimeoutError):
        return ChannelTimeoutError(str(exc), context, details={"original_type": type(exc).__name__})
    elif isinstance(exc, ConnectionError | OSError):
        return ChannelError(str(exc), context, details={"original_type": type(exc).__name__})
    else:
        return MidiSessionError(
            str(exc), context, details={"original_type": type(exc).__name__, "traceback": traceback.format_exc()}
        )
