"""
Pydantic-based configuration models for the MIDI session relay.

Values are read from the environment (and a local .env file) using
pydantic-settings; defaults reproduce the relay's fixed reconnect and
heartbeat schedule.
"""

import re
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from ..logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

_SUBJECT_TOKEN = re.compile(r"^[A-Za-z0-9_-]+$")


class TransportConfig(BaseSettings):
    """Realtime pub/sub transport configuration."""

    url: str = Field(default="nats://localhost:4222", description="Pub/sub server URL (empty disables the transport)")
    subject_prefix: str = Field(default="midi-session", description="Subject prefix for every relay channel")
    broadcast_event: str = Field(default="midi-message", description="Broadcast event name carrying MIDI envelopes")
    connect_timeout: float = Field(default=5.0, description="Seconds to wait for a subscription to be confirmed")
    max_payload: int = Field(default=65536, description="Maximum encoded envelope size in bytes")

    @field_validator("subject_prefix", "broadcast_event")
    @classmethod
    def validate_subject_tokens(cls, v: str) -> str:
        """Validate that the value forms dot-separated NATS subject tokens."""
        tokens = v.split(".")
        if not v or not all(_SUBJECT_TOKEN.match(token) for token in tokens):
            logger.error("Invalid subject token", value=v)
            raise ValueError(f"'{v}' is not a valid subject token sequence")
        return v

    @field_validator("connect_timeout")
    @classmethod
    def validate_connect_timeout(cls, v: float) -> float:
        """Validate connect timeout is positive."""
        if v <= 0:
            raise ValueError("connect_timeout must be positive")
        return v

    model_config = {"env_prefix": "MIDISESSION_TRANSPORT_", "case_sensitive": False, "extra": "ignore"}


class ReconnectConfig(BaseSettings):
    """Reconnect backoff schedule."""

    max_attempts: int = Field(default=5, description="Reconnect attempts before the session is marked failed")
    base_delay_ms: int = Field(default=1000, description="Delay before the first reconnect attempt, doubled per attempt")

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """Validate attempt count is not negative."""
        if v < 0:
            raise ValueError("max_attempts must be >= 0")
        return v

    @field_validator("base_delay_ms")
    @classmethod
    def validate_base_delay(cls, v: int) -> int:
        """Validate base delay is positive."""
        if v <= 0:
            raise ValueError("base_delay_ms must be > 0")
        return v

    model_config = {"env_prefix": "MIDISESSION_RECONNECT_", "case_sensitive": False, "extra": "ignore"}


class HeartbeatConfig(BaseSettings):
    """Channel liveness check configuration."""

    interval_ms: int = Field(default=5000, description="Milliseconds between channel liveness checks")
    presence_ttl_intervals: int = Field(
        default=3, description="Heartbeat intervals without a presence refresh before a member is dropped"
    )

    @field_validator("interval_ms")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        """Validate heartbeat interval is positive."""
        if v <= 0:
            raise ValueError("interval_ms must be > 0")
        return v

    @field_validator("presence_ttl_intervals")
    @classmethod
    def validate_presence_ttl(cls, v: int) -> int:
        """Validate at least one refresh interval is allowed."""
        if v < 1:
            raise ValueError("presence_ttl_intervals must be >= 1")
        return v

    model_config = {"env_prefix": "MIDISESSION_HEARTBEAT_", "case_sensitive": False, "extra": "ignore"}


class MidiConfig(BaseSettings):
    """Local MIDI capability configuration."""

    backend: str | None = Field(default=None, description="mido backend module, e.g. mido.backends.rtmidi")
    hotplug_poll_interval: float = Field(default=2.0, description="Seconds between device list refreshes")
    input_device: str | None = Field(default=None, description="Input port selected on startup")
    output_device: str | None = Field(default=None, description="Output port selected on startup")

    @field_validator("hotplug_poll_interval")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        """Validate poll interval is positive."""
        if v <= 0:
            raise ValueError("hotplug_poll_interval must be positive")
        return v

    model_config = {"env_prefix": "MIDISESSION_MIDI_", "case_sensitive": False, "extra": "ignore"}


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    environment: str | None = Field(default=None, description="Logging environment (auto-detected when unset)")
    level: str = Field(default="INFO", description="Log level")
    log_base: str = Field(default="logs", description="Base log directory")
    rotation_max_size: str = Field(default="10MB", description="Log rotation max size")
    rotation_backup_count: int = Field(default=5, description="Number of backup log files")
    disable_logging: bool = Field(default=False, description="Disable file logging")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str | None) -> str | None:
        """Validate logging environment."""
        valid_environments = ["local", "unit_test", "production"]
        if v is not None and v not in valid_environments:
            logger.error("Invalid logging environment", environment=v, valid_environments=valid_environments)
            raise ValueError(f"Environment must be one of {valid_environments}, got '{v}'")
        return v

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}, got '{v}'")
        return v_upper

    model_config = {"env_prefix": "MIDISESSION_LOGGING_", "case_sensitive": False, "extra": "ignore"}


class AppConfig(BaseSettings):
    """
    Composite application configuration.

    Access via get_config().
    """

    transport: TransportConfig = Field(default_factory=TransportConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    midi: MidiConfig = Field(default_factory=MidiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}

    def to_logging_dict(self) -> dict[str, Any]:
        """Return the dictionary shape expected by setup_enhanced_logging()."""
        return {"logging": self.logging.model_dump()}
