"""Structured logging for the MIDI session relay."""

from .enhanced_logging_config import (
    bind_session_context,
    clear_session_context,
    get_logger,
    setup_enhanced_logging,
)

__all__ = ["bind_session_context", "clear_session_context", "get_logger", "setup_enhanced_logging"]
