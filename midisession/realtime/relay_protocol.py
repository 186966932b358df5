"""
MIDI relay protocol.

Outbound: wraps locally produced MIDI bytes in an envelope and hands it to
the connection manager, but only while connected. MIDI is a live stream,
so events produced while disconnected are dropped rather than queued.

Inbound: decodes received envelopes, suppresses the participant's own
events and dispatches everything else verbatim to the selected output.
The feed only says an event was played once the output accepted it.
"""

from collections.abc import Iterable
from typing import Any, Protocol

from pydantic import ValidationError

from ..error_types import ErrorMessages
from ..exceptions import DeviceUnavailableError, MalformedEnvelopeError, UnplayableMidiError
from ..logging.enhanced_logging_config import get_logger
from .activity_log import ActivityLog, ActivityMessages, format_midi_bytes
from .envelope import MidiEventEnvelope, decode, encode

logger = get_logger(__name__)


class MidiSink(Protocol):
    """Anything that can play raw MIDI bytes."""

    def send(self, data: bytes) -> None: ...


class BroadcastChannel(Protocol):
    """The part of the connection manager the relay uses."""

    @property
    def is_connected(self) -> bool: ...

    def broadcast(self, payload: dict[str, Any]) -> bool: ...


class MidiRelayProtocol:
    """Decides what is broadcast and what is played locally."""

    def __init__(self, participant_id: str, connection: BroadcastChannel, activity: ActivityLog):
        self.participant_id = participant_id
        self._connection = connection
        self._activity = activity
        self.output: MidiSink | None = None
        self.sent_count = 0
        self.received_count = 0
        self.dropped_count = 0

    def submit_local(self, data: Iterable[int]) -> MidiEventEnvelope | None:
        """
        Relay bytes produced by the local input device.

        Returns:
            The envelope handed to the connection, or None if the event was dropped
        """
        data = tuple(data)
        if not self._connection.is_connected:
            self.dropped_count += 1
            logger.debug("Dropped local MIDI while not connected", data=format_midi_bytes(data))
            return None

        try:
            envelope = MidiEventEnvelope.from_bytes(self.participant_id, data)
        except ValidationError as e:
            self.dropped_count += 1
            logger.warning("Dropped invalid local MIDI event", data=format_midi_bytes(data), error=str(e))
            return None

        if not self._connection.broadcast(encode(envelope)):
            self.dropped_count += 1
            return None

        self.sent_count += 1
        self._activity.add(ActivityMessages.MIDI_SENT.format(data=format_midi_bytes(envelope.payload)))
        return envelope

    def handle_inbound(self, raw: Any) -> MidiEventEnvelope | None:
        """
        Apply one received broadcast payload.

        Returns:
            The decoded envelope if it came from another participant, else None
        """
        try:
            envelope = decode(raw)
        except MalformedEnvelopeError as e:
            self._activity.add(f"{ErrorMessages.MALFORMED_ENVELOPE} ({e.field or 'payload'})")
            return None

        if envelope.sender_id == self.participant_id:
            return None

        self.received_count += 1
        formatted = format_midi_bytes(envelope.payload)
        if self.output is None:
            self._activity.add(ActivityMessages.MIDI_RECEIVED_NOT_PLAYED.format(data=formatted))
            return envelope

        try:
            self.output.send(envelope.data)
        except UnplayableMidiError:
            self._activity.add(ActivityMessages.MIDI_RECEIVED_UNPLAYABLE.format(data=formatted))
            return envelope
        except DeviceUnavailableError as e:
            self._activity.add(f"{ErrorMessages.DEVICE_UNAVAILABLE}: {e.message}")
            return envelope

        self._activity.add(ActivityMessages.MIDI_RECEIVED.format(data=formatted))
        return envelope

    def get_stats(self) -> dict[str, int]:
        return {
            "sent": self.sent_count,
            "received": self.received_count,
            "dropped": self.dropped_count,
        }
