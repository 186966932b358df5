"""
Connection resilience manager for the relay channel.

Owns the live channel handle, the heartbeat timer and the reconnect timer
for one session. Every transport callback and timer firing is turned into a
ConnectionEvent and funnelled through dispatch(), which is the only place
state transitions happen. Callbacks from a channel that has since been
replaced carry an old generation number and are ignored.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from ..app.task_registry import TaskRegistry
from ..error_types import ErrorMessages, ErrorType
from ..exceptions import (
    ChannelError,
    ChannelTimeoutError,
    ErrorContext,
    HeartbeatLivenessFailure,
    MidiSessionError,
    TransportUnavailableError,
    create_error_context,
    handle_exception,
)
from ..infrastructure.realtime_channel import (
    BroadcastHandler,
    ChannelState,
    ChannelStatus,
    PresenceEvent,
    PresenceHandler,
    RealtimeChannel,
    RealtimeTransport,
)
from ..logging.enhanced_logging_config import get_logger
from .activity_log import ActivityLog, ActivityMessages
from .connection_state_machine import ConnectionState, ReconnectPolicy, RelayConnectionStateMachine
from .envelope import utc_now_iso

logger = get_logger(__name__)

TOPIC_PREFIX = "midi-session-"
DEFAULT_BROADCAST_EVENT = "midi-message"
DEFAULT_HEARTBEAT_INTERVAL_MS = 5000

SleepFunc = Callable[[float], Awaitable[Any]]


class ConnectionEvent(Enum):
    """Events that drive the relay connection state machine."""

    START = "start"
    SUBSCRIBED = "subscribed"
    CHANNEL_ERROR = "channel_error"
    TIMED_OUT = "timed_out"
    HEARTBEAT_FAILED = "heartbeat_failed"
    RECONNECT_DUE = "reconnect_due"
    TRANSPORT_UNAVAILABLE = "transport_unavailable"


_LOSS_EVENTS = frozenset({ConnectionEvent.CHANNEL_ERROR, ConnectionEvent.TIMED_OUT, ConnectionEvent.HEARTBEAT_FAILED})

_STATUS_EVENTS = {
    ChannelStatus.SUBSCRIBED: ConnectionEvent.SUBSCRIBED,
    ChannelStatus.CHANNEL_ERROR: ConnectionEvent.CHANNEL_ERROR,
    ChannelStatus.TIMED_OUT: ConnectionEvent.TIMED_OUT,
    ChannelStatus.CLOSED: ConnectionEvent.CHANNEL_ERROR,
}

# Anything not listed here is treated as a transient channel error
_FAILURE_EVENTS = {
    ErrorType.TRANSPORT_UNAVAILABLE: ConnectionEvent.TRANSPORT_UNAVAILABLE,
    ErrorType.TIMED_OUT: ConnectionEvent.TIMED_OUT,
    ErrorType.HEARTBEAT_LIVENESS_FAILURE: ConnectionEvent.HEARTBEAT_FAILED,
}


def topic_for_session(session_key: str) -> str:
    """Channel topic shared by every participant of a session."""
    return f"{TOPIC_PREFIX}{session_key}"


class ConnectionResilienceManager:
    """
    Supervises the channel for one session.

    Must be driven from a single running event loop: start() and dispatch()
    create tasks on the current loop.
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        session_key: str,
        participant_id: str,
        activity: ActivityLog,
        *,
        on_broadcast: BroadcastHandler,
        on_presence: PresenceHandler,
        policy: ReconnectPolicy | None = None,
        heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS,
        broadcast_event: str = DEFAULT_BROADCAST_EVENT,
        sleep: SleepFunc = asyncio.sleep,
        on_state_change: Callable[[ConnectionState], None] | None = None,
    ):
        """
        Initialize the manager.

        Args:
            transport: Factory for session channels
            session_key: Session key; the topic is derived from it
            participant_id: This process's participant id, used as presence key
            activity: Activity feed to report connection events to
            on_broadcast: Receives every broadcast payload of the relay event
            on_presence: Receives every presence signal
            policy: Reconnect policy, defaults to 5 attempts from 1000 ms
            heartbeat_interval_ms: Interval between channel liveness checks
            broadcast_event: Broadcast event name used for MIDI envelopes
            sleep: Coroutine function used for every timed wait
            on_state_change: Called with the new ConnectionState on every transition
        """
        self._transport = transport
        self.session_key = session_key
        self.participant_id = participant_id
        self.topic = topic_for_session(session_key)
        self._activity = activity
        self._on_broadcast = on_broadcast
        self._on_presence = on_presence
        self._heartbeat_interval_ms = heartbeat_interval_ms
        self._broadcast_event = broadcast_event
        self._sleep = sleep

        self._fsm = RelayConnectionStateMachine(participant_id, policy or ReconnectPolicy(), on_state_change)
        self._tasks = TaskRegistry()
        self._channel: RealtimeChannel | None = None
        self._channel_generation = 0
        self._heartbeat_task: asyncio.Task[Any] | None = None
        self._reconnect_task: asyncio.Task[Any] | None = None
        self._publisher_task: asyncio.Task[Any] | None = None
        self._outbound: asyncio.Queue[dict[str, Any]] | None = None
        self._has_connected = False

    @property
    def state(self) -> ConnectionState:
        return self._fsm.connection_state

    @property
    def policy(self) -> ReconnectPolicy:
        return self._fsm.policy

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def channel(self) -> RealtimeChannel | None:
        return self._channel

    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def start(self) -> None:
        """Begin connecting; a no-op unless currently disconnected."""
        self.dispatch(ConnectionEvent.START)

    def dispatch(
        self,
        event: ConnectionEvent,
        error: Exception | None = None,
        generation: int | None = None,
    ) -> None:
        """
        Apply one event to the connection state machine.

        Args:
            event: The event to apply
            error: Failure that caused the event, if any
            generation: Channel generation the event came from; events from a
                replaced channel are ignored
        """
        if generation is not None and generation != self._channel_generation:
            logger.debug(
                "Ignoring event from replaced channel",
                connection_event=event.value,
                generation=generation,
                current_generation=self._channel_generation,
            )
            return

        state = self.state

        if event is ConnectionEvent.START:
            if state is not ConnectionState.DISCONNECTED:
                logger.debug("Start ignored", state=state.value)
                return
            self._fsm.request_connect()
            self._start_connect()

        elif event is ConnectionEvent.SUBSCRIBED:
            if state is not ConnectionState.CONNECTING:
                logger.debug("Subscription confirmation ignored", state=state.value)
                return
            self._on_connected()

        elif event in _LOSS_EVENTS:
            if state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                logger.debug("Connection loss ignored", connection_event=event.value, state=state.value)
                return
            self._on_connection_lost(event, error)

        elif event is ConnectionEvent.RECONNECT_DUE:
            if state is not ConnectionState.RECONNECTING:
                logger.debug("Reconnect timer ignored", state=state.value)
                return
            self._fsm.retry_connect()
            self._start_connect()

        elif event is ConnectionEvent.TRANSPORT_UNAVAILABLE:
            if state is not ConnectionState.CONNECTING:
                return
            self._fsm.abandon()
            self._activity.add(ErrorMessages.TRANSPORT_UNAVAILABLE)

    def broadcast(self, payload: dict[str, Any]) -> bool:
        """
        Queue a payload for broadcast on the live channel.

        Returns:
            bool: False when not connected and the payload was dropped
        """
        if not self.is_connected or self._outbound is None:
            logger.debug("Broadcast dropped while not connected", state=self.state.value)
            return False
        self._outbound.put_nowait(payload)
        return True

    async def stop(self) -> None:
        """
        Tear down the session channel.

        Cancels the reconnect and heartbeat timers, unsubscribes the channel
        and leaves the manager Disconnected with no further automatic action.
        """
        channel = self._detach_channel()
        self._heartbeat_task = None
        self._reconnect_task = None
        self._publisher_task = None
        self._outbound = None

        if self.state is not ConnectionState.DISCONNECTED:
            self._fsm.teardown()

        await self._tasks.shutdown_all()
        if channel is not None:
            await self._close_channel(channel)
        self._has_connected = False

    async def restart(self) -> None:
        """Tear down and connect again with a fresh set of reconnect attempts."""
        await self.stop()
        self.policy.reset()
        self.start()

    def get_stats(self) -> dict[str, Any]:
        """
        Get connection statistics.

        Returns:
            Dictionary with connection metrics
        """
        stats = self._fsm.get_stats()
        stats.update(
            {
                "topic": self.topic,
                "channel_state": self._channel.state.value if self._channel is not None else None,
                "heartbeat_active": self.heartbeat_active,
                "reconnect_pending": self.reconnect_pending,
                "active_tasks": self._tasks.active_count(),
            }
        )
        return stats

    def _start_connect(self) -> None:
        self._tasks.register_task(self._connect(), f"relay-connect:{self.topic}", "connect")

    async def _connect(self) -> None:
        previous = self._detach_channel()
        if previous is not None:
            await self._close_channel(previous)

        generation = self._channel_generation
        try:
            channel = self._transport.channel(self.topic, presence_key=self.participant_id)
        except TransportUnavailableError as e:
            self.dispatch(ConnectionEvent.TRANSPORT_UNAVAILABLE, error=e, generation=generation)
            return

        channel.on_broadcast(self._broadcast_event, lambda payload: self._route_broadcast(payload, generation))
        channel.on_presence(lambda event, payload: self._route_presence(event, payload, generation))
        self._channel = channel

        def on_status(status: ChannelStatus, error: Exception | None = None) -> None:
            self.dispatch(_STATUS_EVENTS[status], error=error, generation=generation)

        logger.info("Subscribing to channel", topic=self.topic, attempt=self.policy.attempts_used)
        try:
            await channel.subscribe(on_status)
        except Exception as e:  # noqa: BLE001 - every subscribe failure becomes a connection event
            failure = handle_exception(e, self._error_context())
            logger.error("Channel subscribe raised", topic=self.topic, category=failure.error_type.value)
            event = _FAILURE_EVENTS.get(failure.error_type, ConnectionEvent.CHANNEL_ERROR)
            self.dispatch(event, error=failure, generation=generation)

    def _on_connected(self) -> None:
        reconnected = self._has_connected
        self._fsm.subscription_confirmed()
        self._has_connected = True

        channel = self._channel
        self._outbound = asyncio.Queue()
        self._publisher_task = self._tasks.register_task(
            self._publish_loop(channel, self._outbound), f"relay-publish:{self.topic}", "publish"
        )
        self._heartbeat_task = self._tasks.register_task(
            self._heartbeat_loop(self._channel_generation), f"relay-heartbeat:{self.topic}", "heartbeat"
        )
        self._tasks.register_task(self._track_presence(channel), f"relay-track:{self.topic}", "presence")

        self._activity.add(ActivityMessages.RECONNECTED if reconnected else ActivityMessages.CONNECTED)

    def _on_connection_lost(self, event: ConnectionEvent, error: Exception | None) -> None:
        self._stop_connection_tasks()
        # The dropped channel stays attached for unsubscribe, but nothing it delivers is routed any more
        self._channel_generation += 1
        failure = self._build_failure(event, error)
        self._fsm.connection_lost(error=failure)
        self._schedule_reconnect(failure)

    def _schedule_reconnect(self, failure: MidiSessionError) -> None:
        if self.reconnect_pending:
            logger.debug("Reconnect already pending", topic=self.topic)
            return

        policy = self.policy
        delay_ms = policy.next_delay_ms()
        if delay_ms is None:
            self._fsm.exhaust_retries()
            self._activity.add(ErrorMessages.RECONNECT_EXHAUSTED)
            channel = self._detach_channel()
            if channel is not None:
                self._tasks.register_task(self._close_channel(channel), f"relay-close:{self.topic}", "teardown")
            return

        attempt = policy.attempts_used + 1
        self._activity.add(
            ActivityMessages.CONNECTION_DROPPED.format(
                reason=ErrorMessages.for_type(failure.error_type),
                delay_ms=delay_ms,
                attempt=attempt,
                max_attempts=policy.max_attempts,
            )
        )
        logger.info("Scheduling reconnect", topic=self.topic, attempt=attempt, delay_ms=delay_ms)
        self._reconnect_task = self._tasks.register_task(
            self._reconnect_after(delay_ms), f"relay-reconnect:{self.topic}", "reconnect"
        )

    async def _reconnect_after(self, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)
        self._reconnect_task = None
        self.dispatch(ConnectionEvent.RECONNECT_DUE)

    async def _heartbeat_loop(self, generation: int) -> None:
        interval = self._heartbeat_interval_ms / 1000
        while True:
            await self._sleep(interval)
            if generation != self._channel_generation or not self.is_connected:
                return
            channel_state = self._channel.state if self._channel is not None else ChannelState.CLOSED
            if channel_state is ChannelState.JOINED:
                continue

            logger.warning("Heartbeat found channel not joined", topic=self.topic, channel_state=channel_state.value)
            failure = HeartbeatLivenessFailure(
                ErrorMessages.HEARTBEAT_LIVENESS_FAILURE,
                self._error_context(),
                channel_state=channel_state.value,
            )
            self.dispatch(ConnectionEvent.HEARTBEAT_FAILED, error=failure, generation=generation)
            return

    async def _publish_loop(self, channel: RealtimeChannel | None, queue: asyncio.Queue[dict[str, Any]]) -> None:
        while True:
            payload = await queue.get()
            if channel is None:
                continue
            try:
                await channel.send_broadcast(self._broadcast_event, payload)
            except MidiSessionError as e:
                logger.warning("Broadcast dropped", topic=self.topic, error=e.message)
            except Exception as e:
                logger.error("Broadcast failed", topic=self.topic, error=str(e), exc_info=True)

    async def _track_presence(self, channel: RealtimeChannel | None) -> None:
        if channel is None:
            return
        meta = {"participantId": self.participant_id, "joinedAt": utc_now_iso()}
        try:
            await channel.track(meta)
        except Exception as e:
            logger.warning("Presence track failed", topic=self.topic, error=str(e))

    def _route_broadcast(self, payload: Any, generation: int) -> None:
        if generation != self._channel_generation:
            return
        self._on_broadcast(payload)

    def _route_presence(self, event: PresenceEvent, payload: Any, generation: int) -> None:
        if generation != self._channel_generation:
            return
        self._on_presence(event, payload)

    def _stop_connection_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._publisher_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._publisher_task = None
        self._outbound = None

    def _detach_channel(self) -> RealtimeChannel | None:
        self._stop_connection_tasks()
        self._channel_generation += 1
        channel, self._channel = self._channel, None
        return channel

    async def _close_channel(self, channel: RealtimeChannel) -> None:
        try:
            await channel.unsubscribe()
        except Exception as e:
            logger.warning("Error unsubscribing channel", topic=self.topic, error=str(e))

    def _build_failure(self, event: ConnectionEvent, error: Exception | None) -> MidiSessionError:
        if isinstance(error, MidiSessionError):
            return error
        details = {"cause": str(error)} if error is not None else None
        if event is ConnectionEvent.TIMED_OUT:
            return ChannelTimeoutError(ErrorMessages.TIMED_OUT, self._error_context(), details=details)
        if event is ConnectionEvent.HEARTBEAT_FAILED:
            return HeartbeatLivenessFailure(ErrorMessages.HEARTBEAT_LIVENESS_FAILURE, self._error_context())
        return ChannelError(ErrorMessages.CHANNEL_ERROR, self._error_context(), details=details)

    def _error_context(self) -> ErrorContext:
        return create_error_context(
            session_key=self.session_key,
            participant_id=self.participant_id,
            channel_topic=self.topic,
        )
