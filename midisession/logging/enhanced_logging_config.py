"""
Enhanced structlog-based logging configuration for the MIDI session relay.

Every module logs through get_logger(__name__) with structured fields.
setup_enhanced_logging() wires structlog onto stdlib logging once per
process and, unless file logging is disabled, writes one rotating file per
subsystem under <log_base>/<environment>/.

CORRECT USAGE:
    from ..logging.enhanced_logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Channel subscribed", topic=topic, attempt=attempt)
"""

import json
import logging
import os
import re
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars
from structlog.stdlib import BoundLogger, LoggerFactory

_LOGGING_INITIALIZED = False
_LOGGING_SIGNATURE: str | None = None

_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_SENSITIVE_KEY = re.compile(r"password|token|secret|key|credential|auth", re.IGNORECASE)
_SIZE = re.compile(r"^(\d+)\s*(KB|MB|B)?$", re.IGNORECASE)
_SIZE_UNITS = {None: 1, "B": 1, "KB": 1024, "MB": 1024 * 1024}

# Subsystem log files and the logger prefixes routed into them
LOG_CATEGORIES: dict[str, tuple[str, ...]] = {
    "session": ("midisession.services", "midisession.cli"),
    "realtime": ("midisession.realtime", "midisession.infrastructure", "nats"),
    "midi": ("midisession.midi", "mido"),
}


def detect_environment() -> str:
    """
    Work out which environment the process runs in.

    Returns:
        "unit_test" under pytest, else MIDISESSION_ENV, else "local"
    """
    if "pytest" in sys.modules or "pytest" in sys.argv[0]:
        return "unit_test"
    return os.getenv("MIDISESSION_ENV") or "local"


def _redact(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    return {
        key: "[REDACTED]" if isinstance(key, str) and _SENSITIVE_KEY.search(key) else _redact(item)
        for key, item in value.items()
    }


def sanitize_sensitive_data(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    structlog processor that redacts sensitive fields.

    A session key is enough to join a relay group, so any field whose name
    contains "key" is redacted along with credentials and tokens. Nested
    dicts are walked; the participant id is left readable.
    """
    return _redact(event_dict)


def strip_ansi_renderer(bound_logger: Any, name: str, event_dict: dict[str, Any]) -> str:
    """Render key/value output with ANSI escape sequences removed."""
    rendered = structlog.processors.KeyValueRenderer(key_order=["event"])(bound_logger, name, event_dict)
    return _ANSI_ESCAPE.sub("", rendered)


def _parse_max_bytes(max_size: str | int) -> int:
    """Convert a size such as "10MB" into a byte count."""
    if isinstance(max_size, int):
        return max_size
    match = _SIZE.match(max_size.strip())
    if match is None:
        raise ValueError(f"Unrecognised log size: {max_size!r}")
    unit = match.group(2).upper() if match.group(2) else None
    return int(match.group(1)) * _SIZE_UNITS[unit]


def _archive_previous_logs(log_dir: Path) -> None:
    """Move non-empty logs from an earlier run aside so each process starts with fresh files."""
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    for log_file in sorted(log_dir.glob("*.log")):
        if log_file.stat().st_size == 0:
            continue
        try:
            log_file.rename(log_file.with_name(f"{log_file.name}.{stamp}"))
        except OSError as e:
            print(f"Could not archive {log_file}: {e}", file=sys.stderr)


def _attach_file_handlers(environment: str, log_config: dict[str, Any], level: int) -> None:
    log_dir = Path(log_config.get("log_base", "logs")).expanduser().resolve() / environment
    log_dir.mkdir(parents=True, exist_ok=True)
    _archive_previous_logs(log_dir)

    max_bytes = _parse_max_bytes(log_config.get("rotation_max_size", "10MB"))
    backup_count = int(log_config.get("rotation_backup_count", 5))
    formatter = logging.Formatter(_FILE_FORMAT)

    def rotating(file_name: str, handler_level: int) -> RotatingFileHandler:
        handler = RotatingFileHandler(
            log_dir / file_name, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        handler.setLevel(handler_level)
        handler.setFormatter(formatter)
        return handler

    for category, prefixes in LOG_CATEGORIES.items():
        handler = rotating(f"{category}.log", logging.DEBUG)
        for prefix in prefixes:
            logging.getLogger(prefix).addHandler(handler)

    root = logging.getLogger()
    root.addHandler(rotating("console.log", level))
    root.addHandler(rotating("errors.log", logging.WARNING))


def configure_enhanced_structlog(
    environment: str | None = None,
    log_level: str = "INFO",
    log_config: dict[str, Any] | None = None,
) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        environment: Environment name (auto-detected if None)
        log_level: Root logging level
        log_config: The "logging" section of the application config
    """
    environment = environment or detect_environment()
    level = logging.getLevelName(str(log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.getLogger().setLevel(level)

    if log_config and not log_config.get("disable_logging", False):
        _attach_file_handlers(environment, log_config, level)

    structlog.configure(
        processors=[
            merge_contextvars,
            sanitize_sensitive_data,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            strip_ansi_renderer,
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_enhanced_logging(config: dict[str, Any], *, force_reconfigure: bool = False) -> None:
    """
    Set up logging for the process.

    Calling it again with any config is a no-op unless force_reconfigure is set.

    Args:
        config: Application configuration dictionary with a "logging" section
        force_reconfigure: When True, reconfigure even if already initialized
    """
    global _LOGGING_INITIALIZED, _LOGGING_SIGNATURE  # pylint: disable=global-statement

    if _LOGGING_INITIALIZED and not force_reconfigure:
        get_logger(__name__).debug("Logging already initialized", config_signature=_LOGGING_SIGNATURE)
        return

    logging_config = config.get("logging", {})
    environment = logging_config.get("environment") or detect_environment()
    log_level = logging_config.get("level", "INFO")
    configure_enhanced_structlog(environment, log_level, logging_config)

    _LOGGING_INITIALIZED = True
    _LOGGING_SIGNATURE = json.dumps(config, sort_keys=True, default=str)
    get_logger(__name__).info(
        "Logging initialized",
        environment=environment,
        log_level=log_level,
        file_logging=not logging_config.get("disable_logging", False),
    )


def bind_session_context(
    session_key: str | None = None,
    participant_id: str | None = None,
    **kwargs,
) -> None:
    """
    Bind session fields to the logging context of the current task.

    Every later log entry in this context carries the participant id (and
    the session key, which the sanitizer redacts). None values are skipped.
    """
    fields = {"session_key": session_key, "participant_id": participant_id, **kwargs}
    bind_contextvars(**{name: value for name, value in fields.items() if value is not None})


def clear_session_context() -> None:
    """Clear the current session context from logging."""
    clear_contextvars()


def get_current_context() -> dict[str, Any]:
    """Get the current logging context."""
    return structlog.contextvars.get_contextvars()


def get_logger(name: str) -> BoundLogger:
    """
    Get a structlog logger with the specified name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)
