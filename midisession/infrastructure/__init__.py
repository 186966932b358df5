"""
Infrastructure layer for the MIDI session relay.

This package contains the abstraction over the realtime pub/sub backend and
its NATS implementation. The relay core depends on the abstraction only.
"""

from .realtime_channel import (
    BroadcastError,
    ChannelState,
    ChannelStatus,
    PresenceEvent,
    RealtimeChannel,
    RealtimeTransport,
)

__all__ = [
    "BroadcastError",
    "ChannelState",
    "ChannelStatus",
    "PresenceEvent",
    "RealtimeChannel",
    "RealtimeTransport",
]
