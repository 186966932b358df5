"""
Append-only activity feed shown to the participant.

Records are kept for the lifetime of the session in emission order; the
presentation layer decides how much of the tail to display.
"""

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime

from ..logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

ActivityListener = Callable[["ActivityRecord"], None]


def format_midi_bytes(data: Iterable[int]) -> str:
    """Format MIDI bytes as bracketed lowercase hex, e.g. "[90 40 7f]"."""
    return "[" + " ".join(f"{byte:02x}" for byte in data) + "]"


class ActivityMessages:
    """Message templates for the activity feed."""

    MIDI_SENT = "MIDI sent: {data}"
    MIDI_RECEIVED = "MIDI received: {data}"
    MIDI_RECEIVED_NOT_PLAYED = "MIDI received (no output selected): {data}"
    MIDI_RECEIVED_UNPLAYABLE = "MIDI received (not played, output cannot parse it): {data}"
    PARTICIPANT_COUNT = "Participants: {count}"
    PARTICIPANT_JOINED = "A participant joined."
    PARTICIPANT_LEFT = "A participant left."
    CONNECTED = "Connected to session"
    RECONNECTED = "Reconnected to session"
    CONNECTION_DROPPED = "{reason}. Reconnecting in {delay_ms} ms (attempt {attempt}/{max_attempts})"
    MIDI_INITIALIZED = "MIDI initialized: {inputs} inputs, {outputs} outputs"
    INPUT_CONNECTED = "Input device connected: {name}"
    INPUT_DISCONNECTED = "Input device disconnected: {name}"
    OUTPUT_SELECTED = "Output device selected: {name}"
    OUTPUT_CLEARED = "Output device cleared"
    OUTPUT_DISCONNECTED = "Output device disconnected: {name}"


@dataclass(frozen=True)
class ActivityRecord:
    """One line of the activity feed."""

    timestamp: str
    message: str


class ActivityLog:
    """Append-only sequence of ActivityRecords with change listeners."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._records: list[ActivityRecord] = []
        self._listeners: list[ActivityListener] = []
        self._clock = clock

    def add(self, message: str) -> ActivityRecord:
        """Append a record stamped with the local wall-clock time."""
        record = ActivityRecord(timestamp=self._clock().strftime("%H:%M:%S"), message=message)
        self._records.append(record)
        logger.debug("Activity", activity=message)
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:  # noqa: BLE001 - a broken listener must not stop the feed
                logger.error("Activity listener failed", error=str(e), exc_info=True)
        return record

    def add_listener(self, listener: ActivityListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ActivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def records(self) -> tuple[ActivityRecord, ...]:
        return tuple(self._records)

    def tail(self, count: int) -> tuple[ActivityRecord, ...]:
        """Return the most recent `count` records."""
        if count <= 0:
            return ()
        return tuple(self._records[-count:])

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ActivityRecord]:
        return iter(tuple(self._records))
