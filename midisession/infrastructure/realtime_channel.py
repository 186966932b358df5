"""
Realtime channel abstraction for the MIDI session relay.

This module defines the RealtimeTransport and RealtimeChannel protocols
that abstract the managed pub/sub backend. The relay depends on these
interfaces, never on a specific broker client.

A channel is bound to one topic (one session) and supports:
- subscribe, reporting subscribed | channel_error | timed_out through a callback
- unsubscribe
- broadcast send/receive of structured payloads under an event name
- presence: track self, and sync/join/leave notifications
- a synchronous membership state read for heartbeat checks
"""

from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from ..exceptions import ChannelError


class ChannelStatus(Enum):
    """Subscription status reported through the subscribe callback."""

    SUBSCRIBED = "subscribed"
    CHANNEL_ERROR = "channel_error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


class ChannelState(Enum):
    """Membership state of a channel, readable at any time."""

    CLOSED = "closed"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
    ERRORED = "errored"


class PresenceEvent(Enum):
    """Presence signals emitted by the transport."""

    SYNC = "sync"
    JOIN = "join"
    LEAVE = "leave"


StatusCallback = Callable[[ChannelStatus, Exception | None], None]
BroadcastHandler = Callable[[Any], None]
PresenceHandler = Callable[[PresenceEvent, Any], None]


class BroadcastError(ChannelError):
    """Raised when a broadcast cannot be handed to the transport."""


class RealtimeChannel(Protocol):
    """
    Protocol defining one session channel.

    Implementations must invoke every callback on the event loop thread.
    """

    topic: str

    @property
    def state(self) -> ChannelState:
        """
        Current membership state.

        Returns:
            ChannelState: JOINED only while the subscription is live
        """
        ...

    def on_broadcast(self, event: str, handler: BroadcastHandler) -> None:
        """
        Register a handler for broadcasts sent under `event`.

        Args:
            event: Broadcast event name
            handler: Called with the structured payload of each broadcast
        """
        ...

    def on_presence(self, handler: PresenceHandler) -> None:
        """
        Register a handler for presence signals.

        For SYNC the payload is the full presence state (key -> list of metas);
        for JOIN and LEAVE it is {"key": ..., "metas": [...]}.
        """
        ...

    async def subscribe(self, callback: StatusCallback) -> None:
        """
        Join the channel.

        The outcome is reported through `callback`, including later
        connectivity loss (CHANNEL_ERROR) while joined.
        """
        ...

    async def unsubscribe(self) -> None:
        """Leave the channel and release the connection."""
        ...

    async def send_broadcast(self, event: str, payload: dict[str, Any]) -> None:
        """
        Broadcast a structured payload to every member of the channel.

        Raises:
            BroadcastError: If the channel is not joined or sending fails
        """
        ...

    async def track(self, meta: dict[str, Any]) -> None:
        """Announce this member's presence with metadata."""
        ...

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        """
        Current authoritative presence state.

        Returns:
            dict: presence key -> list of metadata records
        """
        ...


class RealtimeTransport(Protocol):
    """Factory for session channels."""

    def channel(self, topic: str, *, presence_key: str) -> RealtimeChannel:
        """
        Create a channel for a topic.

        Args:
            topic: Channel topic, equal for every member of a session
            presence_key: Key this member is tracked under

        Raises:
            TransportUnavailableError: If the transport is not configured
        """
        ...
