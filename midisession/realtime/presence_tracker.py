"""
Participant presence tracking.

The transport distributes membership as whole snapshots ("sync") plus
advisory join/leave notifications. Only a sync changes the participant
count; join and leave only produce activity lines, so the count never
double-counts overlapping join/leave races. Join/leave lines can therefore
briefly disagree with the displayed count until the next sync arrives.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from ..infrastructure.realtime_channel import PresenceEvent
from ..logging.enhanced_logging_config import get_logger
from .activity_log import ActivityLog, ActivityMessages

logger = get_logger(__name__)


@dataclass(frozen=True)
class PresenceEntry:
    """Join metadata of one participant."""

    joined_at_iso: str


PresenceSnapshot = Mapping[str, PresenceEntry]

_EMPTY_SNAPSHOT: PresenceSnapshot = MappingProxyType({})


def _first_meta(metas: Any) -> Mapping[str, Any]:
    if isinstance(metas, Mapping):
        return metas
    if isinstance(metas, list | tuple) and metas and isinstance(metas[0], Mapping):
        return metas[0]
    return {}


def snapshot_from_presence_state(state: Mapping[str, Any]) -> PresenceSnapshot:
    """
    Build a snapshot from a transport presence state.

    The transport reports key -> list of metas; the first meta of each key
    carries the participant's join time.
    """
    entries = {
        str(key): PresenceEntry(joined_at_iso=str(_first_meta(metas).get("joinedAt", "")))
        for key, metas in state.items()
    }
    return MappingProxyType(entries)


class PresenceTracker:
    """Derives the participant count and presence activity lines."""

    def __init__(self, activity: ActivityLog, on_count_changed: Callable[[int], None] | None = None):
        self._activity = activity
        self._snapshot: PresenceSnapshot = _EMPTY_SNAPSHOT
        self._on_count_changed = on_count_changed

    @property
    def snapshot(self) -> PresenceSnapshot:
        return self._snapshot

    @property
    def participant_count(self) -> int:
        return len(self._snapshot)

    def handle(self, event: PresenceEvent, payload: Any = None) -> None:
        """Dispatch one transport presence signal."""
        if event is PresenceEvent.SYNC:
            self.on_sync(payload or {})
        elif event is PresenceEvent.JOIN:
            self.on_join(payload)
        elif event is PresenceEvent.LEAVE:
            self.on_leave(payload)

    def on_sync(self, presence_state: Mapping[str, Any]) -> int:
        """Replace the held snapshot wholesale and report the new count."""
        self._snapshot = snapshot_from_presence_state(presence_state)
        count = len(self._snapshot)
        logger.debug("Presence synced", participant_count=count)
        self._activity.add(ActivityMessages.PARTICIPANT_COUNT.format(count=count))
        if self._on_count_changed is not None:
            self._on_count_changed(count)
        return count

    def on_join(self, payload: Any = None) -> None:
        logger.debug("Presence join", payload=payload)
        self._activity.add(ActivityMessages.PARTICIPANT_JOINED)

    def on_leave(self, payload: Any = None) -> None:
        logger.debug("Presence leave", payload=payload)
        self._activity.add(ActivityMessages.PARTICIPANT_LEFT)

    def reset(self) -> None:
        """Forget the snapshot, used when the session is torn down."""
        self._snapshot = _EMPTY_SNAPSHOT
