"""
Configuration for the MIDI session relay.

Settings come from MIDISESSION_* environment variables and an optional
.env file, validated by the pydantic-settings models in models.py.

Usage:
    from midisession.config import get_config

    config = get_config()
    logger.info("Transport configuration", url=config.transport.url)
"""

import os
import sys
import threading

from .models import AppConfig, HeartbeatConfig, LoggingConfig, MidiConfig, ReconnectConfig, TransportConfig

__all__ = [
    "get_config",
    "reset_config",
    "AppConfig",
    "HeartbeatConfig",
    "LoggingConfig",
    "MidiConfig",
    "ReconnectConfig",
    "TransportConfig",
]

_cached_config: AppConfig | None = None
_cache_lock = threading.Lock()


def _running_under_pytest() -> bool:
    return "pytest" in sys.modules or bool(os.getenv("PYTEST_CURRENT_TEST"))


def get_config() -> AppConfig:
    """
    Return the application configuration.

    Loaded once per process and cached. Under pytest every call builds a
    fresh AppConfig so tests can change the environment with monkeypatch.

    Raises:
        ValidationError: If an environment value fails validation
    """
    global _cached_config  # pylint: disable=global-statement
    if _running_under_pytest():
        return AppConfig()
    with _cache_lock:
        if _cached_config is None:
            _cached_config = AppConfig()
        return _cached_config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _cached_config  # pylint: disable=global-statement
    with _cache_lock:
        _cached_config = None
