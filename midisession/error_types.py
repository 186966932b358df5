"""
Centralized error types and constants for the MIDI session relay.

Every failure the relay can detect maps onto one of these categories so
that components report problems consistently through the activity log and
the structured logger, never as exceptions thrown at the presentation layer.
"""

from enum import Enum


class ErrorType(Enum):
    """Standardized error types for consistent categorization."""

    # Transport
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    CHANNEL_ERROR = "channel_error"
    TIMED_OUT = "timed_out"
    HEARTBEAT_LIVENESS_FAILURE = "heartbeat_liveness_failure"

    # Wire format
    MALFORMED_ENVELOPE = "malformed_envelope"

    # Local MIDI capability
    DEVICE_UNAVAILABLE = "device_unavailable"
    UNPLAYABLE_MIDI = "unplayable_midi"

    # Catch-all
    INTERNAL_ERROR = "internal_error"


# Common messages surfaced in the activity log
class ErrorMessages:
    """User-facing activity messages for each error category."""

    TRANSPORT_UNAVAILABLE = "Realtime transport unavailable"
    CHANNEL_ERROR = "Connection lost"
    TIMED_OUT = "Connection timed out"
    HEARTBEAT_LIVENESS_FAILURE = "Connection heartbeat failed"
    MALFORMED_ENVELOPE = "Dropped malformed MIDI message"
    DEVICE_UNAVAILABLE = "MIDI device unavailable"
    UNPLAYABLE_MIDI = "Unplayable MIDI message"
    RECONNECT_EXHAUSTED = "Reconnect attempts exhausted. Restart the session to try again."
    INTERNAL_ERROR = "An internal error occurred"

    @classmethod
    def for_type(cls, error_type: ErrorType) -> str:
        """Look up the activity message for an error type."""
        return getattr(cls, error_type.name, cls.INTERNAL_ERROR)
