"""
MIDI event envelope and its wire codec.

Every relayed MIDI event crosses the transport as one structured record:
- senderId: str, the producing participant
- payload: list of ints 0-255, the raw MIDI message bytes
- sentAtMillis: int, producer wall-clock time (advisory only)

Bytes must survive a round trip exactly, so values are validated strictly
and never coerced.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import MalformedEnvelopeError

MidiByte = Annotated[int, Field(strict=True, ge=0, le=255)]


def utc_now_iso() -> str:
    """Return current UTC time in ISO 8601 format with 'Z' suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def current_millis() -> int:
    """Return the current wall-clock time in integer milliseconds."""
    return time.time_ns() // 1_000_000


class MidiEventEnvelope(BaseModel):
    """Immutable unit of relayed MIDI data."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    sender_id: str = Field(alias="senderId", min_length=1, strict=True)
    payload: tuple[MidiByte, ...] = Field(min_length=1)
    sent_at_millis: int = Field(alias="sentAtMillis", strict=True)

    @classmethod
    def from_bytes(cls, sender_id: str, data: Iterable[int], sent_at_millis: int | None = None) -> MidiEventEnvelope:
        """
        Build an envelope for locally produced MIDI bytes.

        Raises:
            pydantic.ValidationError: If the bytes are empty or out of range
        """
        return cls(
            sender_id=sender_id,
            payload=tuple(data),
            sent_at_millis=current_millis() if sent_at_millis is None else sent_at_millis,
        )

    @property
    def data(self) -> bytes:
        """Payload as a bytes object for handing to a MIDI output."""
        return bytes(self.payload)


def encode(envelope: MidiEventEnvelope) -> dict[str, Any]:
    """Serialize an envelope into the transport's structured payload."""
    return envelope.model_dump(by_alias=True, mode="json")


def decode(raw: Any) -> MidiEventEnvelope:
    """
    Parse a transport payload into an envelope.

    Args:
        raw: Structured payload received from the transport

    Returns:
        MidiEventEnvelope

    Raises:
        MalformedEnvelopeError: If required fields are absent or a payload byte is outside 0-255
    """
    if not isinstance(raw, Mapping):
        raise MalformedEnvelopeError(
            "Envelope is not a structured record", details={"received_type": type(raw).__name__}
        )

    try:
        return MidiEventEnvelope.model_validate(dict(raw))
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise MalformedEnvelopeError(
            f"Malformed MIDI envelope: {first.get('msg', 'invalid')}",
            field=field,
            details={"error_count": e.error_count()},
        ) from e
