"""
Connection state machine for the relay channel.

Implements the lifecycle of one logical pub/sub channel: initial connect,
loss detection, bounded exponential-backoff reconnects and the terminal
failed state that requires an explicit restart.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from statemachine import State, StateMachine

from ..config.models import ReconnectConfig
from ..logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class ConnectionState(Enum):
    """Coarse connection state observed by the session layer."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ReconnectPolicy:
    """
    Deterministic reconnect schedule.

    The delay for attempt n (1-indexed) is base_delay_ms * 2^(n-1), with no
    jitter, and at most max_attempts attempts are made before giving up.
    """

    max_attempts: int = 5
    base_delay_ms: int = 1000
    attempts_used: int = 0

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> "ReconnectPolicy":
        return cls(max_attempts=config.max_attempts, base_delay_ms=config.base_delay_ms)

    def delay_for(self, attempt: int) -> int:
        """
        Delay in milliseconds before the given attempt.

        Args:
            attempt: Attempt number (1-indexed)
        """
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return self.base_delay_ms * (2 ** (attempt - 1))

    @property
    def exhausted(self) -> bool:
        return self.attempts_used >= self.max_attempts

    def next_delay_ms(self) -> int | None:
        """Delay before the next attempt, or None when no attempts remain."""
        if self.exhausted:
            return None
        return self.delay_for(self.attempts_used + 1)

    def schedule(self) -> list[int]:
        """The full delay sequence for a fresh reconnect cycle."""
        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts + 1)]

    def reset(self) -> None:
        self.attempts_used = 0


class RelayConnectionStateMachine(StateMachine):
    """
    State machine for the relay channel lifecycle.

    Transitions:
    - disconnected → connecting: request_connect
    - connecting → connected: subscription_confirmed
    - connecting/connected → reconnecting: connection_lost
    - reconnecting → connecting: retry_connect (consumes one attempt)
    - reconnecting → failed: exhaust_retries
    - connecting → disconnected: abandon (transport unavailable)
    - any other state → disconnected: teardown
    """

    disconnected = State("Disconnected", initial=True)
    connecting = State("Connecting")
    connected = State("Connected")
    reconnecting = State("Reconnecting")
    failed = State("Failed")

    request_connect = disconnected.to(connecting)
    subscription_confirmed = connecting.to(connected)
    connection_lost = connecting.to(reconnecting) | connected.to(reconnecting)
    retry_connect = reconnecting.to(connecting)
    exhaust_retries = reconnecting.to(failed)
    abandon = connecting.to(disconnected)
    teardown = (
        connecting.to(disconnected)
        | connected.to(disconnected)
        | reconnecting.to(disconnected)
        | failed.to(disconnected)
    )

    def __init__(
        self,
        connection_id: str,
        policy: ReconnectPolicy | None = None,
        listener: Callable[[ConnectionState], None] | None = None,
    ):
        """
        Initialize connection state machine.

        Args:
            connection_id: Identifier used in log lines (the participant id)
            policy: Reconnect policy whose attempt counter this machine advances
            listener: Called with the new ConnectionState after every transition
        """
        # on_enter_state runs during super().__init__(), so attributes come first
        self.connection_id = connection_id
        self.policy = policy or ReconnectPolicy()
        self._listener = listener

        self.last_connected_time: datetime | None = None
        self.last_error: Exception | None = None
        self.total_connections = 0
        self.total_disconnections = 0

        super().__init__()

    @property
    def connection_state(self) -> ConnectionState:
        return ConnectionState(self.current_state.id)

    def on_enter_state(self, state: State, event: Any = None) -> None:
        """Log every transition and notify the listener."""
        logger.info(
            "Relay connection state transition",
            connection_id=self.connection_id,
            trigger_event=str(event) if event else "initial",
            to_state=state.id,
            attempts_used=self.policy.attempts_used,
        )
        if self._listener is not None:
            self._listener(ConnectionState(state.id))

    def on_subscription_confirmed(self) -> None:
        """Reaching connected resets the reconnect attempt count."""
        self.last_connected_time = datetime.now(UTC)
        self.total_connections += 1
        self.policy.reset()

    def on_connection_lost(self, source: State, error: Exception | None = None) -> None:
        self.last_error = error
        if source.id == "connected":
            self.total_disconnections += 1
        logger.warning(
            "Relay connection lost",
            connection_id=self.connection_id,
            from_state=source.id,
            attempts_used=self.policy.attempts_used,
            max_attempts=self.policy.max_attempts,
            error=str(error) if error else "unknown",
        )

    def on_retry_connect(self) -> None:
        self.policy.attempts_used += 1
        logger.info(
            "Starting relay reconnection attempt",
            connection_id=self.connection_id,
            attempt=self.policy.attempts_used,
            max_attempts=self.policy.max_attempts,
        )

    def on_exhaust_retries(self) -> None:
        logger.critical(
            "Relay reconnect attempts exhausted",
            connection_id=self.connection_id,
            attempts=self.policy.attempts_used,
        )

    def on_teardown(self) -> None:
        logger.info("Relay connection torn down", connection_id=self.connection_id)

    def get_stats(self) -> dict[str, Any]:
        """
        Get connection statistics.

        Returns:
            Dictionary with connection metrics
        """
        return {
            "connection_id": self.connection_id,
            "current_state": self.current_state.id,
            "attempts_used": self.policy.attempts_used,
            "max_attempts": self.policy.max_attempts,
            "total_connections": self.total_connections,
            "total_disconnections": self.total_disconnections,
            "last_connected_time": self.last_connected_time.isoformat() if self.last_connected_time else None,
            "last_error": str(self.last_error) if self.last_error else None,
        }
