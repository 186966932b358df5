"""
NATS implementation of the RealtimeChannel protocol.

Each channel owns one NATS connection with client-side reconnect disabled,
so connectivity loss surfaces as a CHANNEL_ERROR status and the relay's own
backoff policy decides what happens next.

Subjects for a channel with topic T under prefix P:
- P.T.broadcast.<event>: broadcast payloads
- P.T.presence: presence announcements

Presence is emulated on plain subjects. A member announces itself with a
"join" message; members that are already tracked answer any join from
another key with a "state" message so the newcomer learns the full
membership. A "leave" message removes the key. Every change to the
membership map produces a SYNC carrying the whole map, preceded by JOIN or
LEAVE when a key appears or disappears.

Nothing on the server notices a member that vanishes without a "leave", so
tracked members re-announce a "state" every heartbeat interval and any
other key not heard from for presence_ttl_intervals intervals is dropped
as if it had left.
"""

import asyncio
import json
import time
from collections.abc import Callable
from typing import Any

import nats
from nats.aio.msg import Msg

from ..config.models import HeartbeatConfig, TransportConfig
from ..exceptions import TransportUnavailableError
from ..logging.enhanced_logging_config import get_logger
from .realtime_channel import (
    BroadcastError,
    BroadcastHandler,
    ChannelState,
    ChannelStatus,
    PresenceEvent,
    PresenceHandler,
    StatusCallback,
)

logger = get_logger(__name__)

PRESENCE_JOIN = "join"
PRESENCE_STATE = "state"
PRESENCE_LEAVE = "leave"


class NATSRealtimeChannel:
    """
    NATS implementation of RealtimeChannel.

    All NATS callbacks run on the event loop that called subscribe(), so
    handlers registered here are invoked on that loop as well.
    """

    def __init__(
        self,
        config: TransportConfig,
        topic: str,
        presence_key: str,
        heartbeat: HeartbeatConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize a channel.

        Args:
            config: Transport configuration
            topic: Channel topic
            presence_key: Key this member is tracked under
            heartbeat: Presence refresh interval and expiry
            clock: Monotonic clock used to age presence entries
        """
        self.config = config
        self.topic = topic
        self.presence_key = presence_key
        self._base_subject = f"{config.subject_prefix}.{topic}"
        self._client: Any = None
        self._subscriptions: list[Any] = []
        self._state = ChannelState.CLOSED
        self._status_callback: StatusCallback | None = None
        self._broadcast_handlers: dict[str, list[BroadcastHandler]] = {}
        self._presence_handlers: list[PresenceHandler] = []
        self._presence: dict[str, list[dict[str, Any]]] = {}
        self._own_meta: dict[str, Any] | None = None
        self._heartbeat = heartbeat or HeartbeatConfig()
        self._clock = clock
        self._last_seen: dict[str, float] = {}
        self._presence_task: asyncio.Task[None] | None = None

    @property
    def broadcast_subject_pattern(self) -> str:
        return f"{self._base_subject}.broadcast.*"

    @property
    def presence_subject(self) -> str:
        return f"{self._base_subject}.presence"

    def broadcast_subject(self, event: str) -> str:
        return f"{self._base_subject}.broadcast.{event}"

    @property
    def presence_refresh_interval(self) -> float:
        return self._heartbeat.interval_ms / 1000

    @property
    def presence_ttl(self) -> float:
        return self.presence_refresh_interval * self._heartbeat.presence_ttl_intervals

    @property
    def state(self) -> ChannelState:
        if self._state is ChannelState.JOINED and not (self._client is not None and self._client.is_connected):
            return ChannelState.ERRORED
        return self._state

    def on_broadcast(self, event: str, handler: BroadcastHandler) -> None:
        self._broadcast_handlers.setdefault(event, []).append(handler)

    def on_presence(self, handler: PresenceHandler) -> None:
        self._presence_handlers.append(handler)

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        return {key: [dict(meta) for meta in metas] for key, metas in self._presence.items()}

    async def subscribe(self, callback: StatusCallback) -> None:
        """
        Connect to NATS and subscribe to the channel subjects.

        Reports SUBSCRIBED once the server has acknowledged both
        subscriptions, TIMED_OUT when that takes longer than
        connect_timeout, and CHANNEL_ERROR for any other failure.
        """
        self._status_callback = callback
        self._state = ChannelState.JOINING
        timeout = self.config.connect_timeout

        try:
            self._client = await asyncio.wait_for(
                nats.connect(
                    servers=self.config.url,
                    allow_reconnect=False,
                    connect_timeout=timeout,
                    error_cb=self._error_callback,
                    disconnected_cb=self._disconnected_callback,
                    closed_cb=self._closed_callback,
                ),
                timeout=timeout,
            )
            self._subscriptions.append(
                await self._client.subscribe(self.broadcast_subject_pattern, cb=self._on_broadcast_message)
            )
            self._subscriptions.append(await self._client.subscribe(self.presence_subject, cb=self._on_presence_message))
            await asyncio.wait_for(self._client.flush(), timeout=timeout)

        except TimeoutError as e:
            logger.warning("Timed out joining channel", topic=self.topic, timeout=timeout)
            await self._abort_join()
            self._report(ChannelStatus.TIMED_OUT, e)
            return

        except Exception as e:
            logger.error("Failed to join channel", topic=self.topic, url=self.config.url, error=str(e))
            await self._abort_join()
            self._report(ChannelStatus.CHANNEL_ERROR, e)
            return

        self._state = ChannelState.JOINED
        logger.info("Joined channel", topic=self.topic, subject=self._base_subject)
        self._report(ChannelStatus.SUBSCRIBED, None)

    async def unsubscribe(self) -> None:
        """Announce departure, drop subscriptions and close the connection."""
        if self._client is None:
            self._state = ChannelState.CLOSED
            return

        self._state = ChannelState.LEAVING
        self._stop_presence_refresh()
        if self._own_meta is not None and self._client.is_connected:
            try:
                await self._publish_presence(PRESENCE_LEAVE, [])
            except Exception as e:
                logger.warning("Error announcing presence leave", topic=self.topic, error=str(e))

        for subscription in self._subscriptions:
            try:
                await subscription.unsubscribe()
            except Exception as e:
                logger.warning("Error unsubscribing", topic=self.topic, error=str(e))
        self._subscriptions.clear()

        await self._close_client()
        self._presence.clear()
        self._last_seen.clear()
        self._own_meta = None
        self._state = ChannelState.CLOSED
        logger.info("Left channel", topic=self.topic)

    async def send_broadcast(self, event: str, payload: dict[str, Any]) -> None:
        """
        Publish a broadcast to the channel.

        Raises:
            BroadcastError: If the channel is not joined, the encoded message
                exceeds max_payload, or the publish fails
        """
        if self.state is not ChannelState.JOINED:
            raise BroadcastError(f"Cannot broadcast on {self.topic}: channel is {self.state.value}")

        body = json.dumps({"event": event, "payload": payload}).encode("utf-8")
        if len(body) > self.config.max_payload:
            raise BroadcastError(
                f"Broadcast of {len(body)} bytes exceeds max_payload {self.config.max_payload}",
                details={"size": len(body)},
            )

        try:
            await self._client.publish(self.broadcast_subject(event), body)
        except Exception as e:
            raise BroadcastError(f"Failed to broadcast on {self.topic}: {e}") from e

        logger.debug("Published broadcast", topic=self.topic, broadcast_event=event, message_size=len(body))

    async def track(self, meta: dict[str, Any]) -> None:
        """Record this member's presence locally and announce it to the channel."""
        self._own_meta = dict(meta)
        self._apply_presence(PRESENCE_JOIN, self.presence_key, [self._own_meta])
        await self._publish_presence(PRESENCE_JOIN, [self._own_meta])
        if self._presence_task is None or self._presence_task.done():
            self._presence_task = asyncio.create_task(self._presence_refresh_loop(), name=f"presence:{self.topic}")

    async def refresh_presence(self) -> list[str]:
        """
        Re-announce this member and drop members that stopped announcing.

        Returns:
            Keys that expired
        """
        if self._own_meta is not None and self.state is ChannelState.JOINED:
            try:
                await self._publish_presence(PRESENCE_STATE, [self._own_meta])
            except Exception as e:
                logger.warning("Error refreshing presence", topic=self.topic, error=str(e))
        return self.expire_stale_presence()

    def expire_stale_presence(self) -> list[str]:
        """Remove every other member not heard from within presence_ttl, emitting LEAVE and SYNC."""
        cutoff = self._clock() - self.presence_ttl
        stale = [key for key, seen in self._last_seen.items() if key != self.presence_key and seen < cutoff]
        for key in stale:
            logger.info("Presence expired", topic=self.topic, presence_key=key, ttl=self.presence_ttl)
            self._apply_presence(PRESENCE_LEAVE, key, [])
        return stale

    async def _presence_refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.presence_refresh_interval)
            await self.refresh_presence()

    def _stop_presence_refresh(self) -> None:
        task, self._presence_task = self._presence_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _publish_presence(self, kind: str, metas: list[dict[str, Any]]) -> None:
        if self._client is None:
            raise BroadcastError(f"Cannot publish presence on {self.topic}: not connected")
        message = {"type": kind, "key": self.presence_key, "metas": metas}
        await self._client.publish(self.presence_subject, json.dumps(message).encode("utf-8"))

    async def _on_broadcast_message(self, msg: Msg) -> None:
        try:
            message = json.loads(msg.data.decode("utf-8"))
            event = message.get("event") or msg.subject.rsplit(".", 1)[-1]
            payload = message.get("payload")
        except (UnicodeDecodeError, ValueError, AttributeError) as e:
            logger.warning("Dropped undecodable broadcast", subject=msg.subject, error=str(e))
            return

        for handler in list(self._broadcast_handlers.get(event, [])):
            try:
                handler(payload)
            except Exception as e:
                logger.error("Error processing broadcast", subject=msg.subject, error=str(e), exc_info=True)

    async def _on_presence_message(self, msg: Msg) -> None:
        try:
            message = json.loads(msg.data.decode("utf-8"))
            kind = message["type"]
            key = str(message["key"])
            metas = list(message.get("metas") or [])
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Dropped undecodable presence message", subject=msg.subject, error=str(e))
            return

        self._apply_presence(kind, key, metas)

        if kind == PRESENCE_JOIN and key != self.presence_key and self._own_meta is not None:
            try:
                await self._publish_presence(PRESENCE_STATE, [self._own_meta])
            except Exception as e:
                logger.warning("Error re-announcing presence", topic=self.topic, error=str(e))

    def _apply_presence(self, kind: str, key: str, metas: list[dict[str, Any]]) -> None:
        if kind in (PRESENCE_JOIN, PRESENCE_STATE):
            self._last_seen[key] = self._clock()
            previous = self._presence.get(key)
            if previous == metas:
                return
            self._presence[key] = metas
            if previous is None:
                self._emit_presence(PresenceEvent.JOIN, {"key": key, "metas": metas})
            self._emit_presence(PresenceEvent.SYNC, self.presence_state())
        elif kind == PRESENCE_LEAVE:
            self._last_seen.pop(key, None)
            removed = self._presence.pop(key, None)
            if removed is None:
                return
            self._emit_presence(PresenceEvent.LEAVE, {"key": key, "metas": removed})
            self._emit_presence(PresenceEvent.SYNC, self.presence_state())
        else:
            logger.warning("Unknown presence message type", topic=self.topic, presence_type=kind)

    def _emit_presence(self, event: PresenceEvent, payload: Any) -> None:
        for handler in list(self._presence_handlers):
            try:
                handler(event, payload)
            except Exception as e:
                logger.error("Error processing presence", topic=self.topic, presence_event=event.value, error=str(e))

    def _report(self, status: ChannelStatus, error: Exception | None) -> None:
        if self._status_callback is not None:
            self._status_callback(status, error)

    async def _abort_join(self) -> None:
        self._state = ChannelState.ERRORED
        self._stop_presence_refresh()
        self._subscriptions.clear()
        await self._close_client()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if not client.is_closed:
                await client.close()
        except Exception as e:
            logger.warning("Error closing NATS connection", topic=self.topic, error=str(e))

    def _connection_lost(self, reason: str) -> None:
        if self._state is not ChannelState.JOINED:
            return
        self._state = ChannelState.ERRORED
        self._stop_presence_refresh()
        logger.warning("Channel connection lost", topic=self.topic, reason=reason)
        self._report(ChannelStatus.CHANNEL_ERROR, ConnectionError(reason))

    # NATS event callbacks
    async def _error_callback(self, error: Exception) -> None:
        """Handle NATS errors."""
        logger.error("NATS error occurred", topic=self.topic, error=str(error))

    async def _disconnected_callback(self) -> None:
        """Handle NATS disconnection."""
        self._connection_lost("Disconnected from NATS")

    async def _closed_callback(self) -> None:
        """Handle NATS connection close."""
        self._connection_lost("NATS connection closed")


class NATSRealtimeTransport:
    """Creates NATS-backed channels from transport configuration."""

    def __init__(self, config: TransportConfig, heartbeat: HeartbeatConfig | None = None):
        self.config = config
        self.heartbeat = heartbeat or HeartbeatConfig()

    def channel(self, topic: str, *, presence_key: str) -> NATSRealtimeChannel:
        if not self.config.url.strip():
            raise TransportUnavailableError(
                "Realtime transport URL is not configured",
                config_key="MIDISESSION_TRANSPORT_URL",
            )
        return NATSRealtimeChannel(self.config, topic, presence_key, self.heartbeat)
