"""
Playback state tracking for Region Remote.

The tracker is the only writer of the authoritative PlaybackState. Raw
transport snapshots go through a dedicated parsing stage first
(parse_snapshot -> TransportSnapshot), then the tracker works out the active
region and reports whether anything observers care about changed.

Snapshot format (REAPER web interface "TRANSPORT" line):

    TRANSPORT \t playstate \t position_seconds \t repeat \t pos_string \t beats

Only the first three fields are required. playstate 1 means playing; every
other value (stopped, paused, recording...) counts as not playing.
"""

import math
import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import (
    AUTOPLAY_ENABLED, COUNT_IN_ENABLED,
    PARSE_ERROR_ESCALATION_COUNT,
)

from .errors import ParseError
from .events import EventBus

logger = logging.getLogger("RegionRemote.PlaybackState")

SNAPSHOT_DELIMITER = '\t'
MIN_SNAPSHOT_FIELDS = 3
PLAYSTATE_PLAYING = 1


@dataclass(frozen=True)
class PlaybackState:
    """
    Immutable view of the transport as last reported.

    Attributes:
        is_playing: Transport is rolling
        current_position: Position in seconds
        current_region_id: Region at the position (None outside regions)
        autoplay_enabled: Advance to the next region when one ends
        count_in_enabled: Delay autoplay advances by the count-in lead
    """
    is_playing: bool = False
    current_position: float = 0.0
    current_region_id: Optional[int] = None
    autoplay_enabled: bool = True
    count_in_enabled: bool = False

    def to_dict(self):
        return {
            'is_playing': self.is_playing,
            'current_position': self.current_position,
            'current_region_id': self.current_region_id,
            'autoplay_enabled': self.autoplay_enabled,
            'count_in_enabled': self.count_in_enabled,
        }


@dataclass(frozen=True)
class TransportSnapshot:
    """Validated transport snapshot."""
    opcode: str
    play_state: int
    position: float
    extra: Tuple[str, ...] = ()

    @property
    def is_playing(self) -> bool:
        return self.play_state == PLAYSTATE_PLAYING


def parse_snapshot(raw: str) -> TransportSnapshot:
    """
    Parse a raw tab-delimited snapshot.

    Raises:
        ParseError: fewer than 3 fields, a non-integer playstate or a
            non-numeric / non-finite position
    """
    if raw is None:
        raise ParseError("empty snapshot", "")

    fields = raw.rstrip('\r\n').split(SNAPSHOT_DELIMITER)
    if len(fields) < MIN_SNAPSHOT_FIELDS:
        raise ParseError(f"expected at least {MIN_SNAPSHOT_FIELDS} fields, got {len(fields)}", raw)

    try:
        play_state = int(fields[1].strip())
    except ValueError:
        raise ParseError(f"invalid playstate {fields[1]!r}", raw)

    try:
        position = float(fields[2].strip())
    except ValueError:
        raise ParseError(f"invalid position {fields[2]!r}", raw)
    if not math.isfinite(position):
        raise ParseError(f"non-finite position {fields[2]!r}", raw)

    return TransportSnapshot(
        opcode=fields[0],
        play_state=play_state,
        position=position,
        extra=tuple(fields[3:]),
    )


class PlaybackStateTracker:
    """
    Sole writer of the authoritative playback state.

    Usage:
        tracker = PlaybackStateTracker(bus)
        changed = tracker.update_from_snapshot("TRANSPORT\\t1\\t12.5", catalog)
        tracker.state.current_region_id
    """

    def __init__(self, bus: Optional[EventBus] = None,
                 autoplay_enabled: bool = AUTOPLAY_ENABLED,
                 count_in_enabled: bool = COUNT_IN_ENABLED,
                 escalation_count: int = PARSE_ERROR_ESCALATION_COUNT):
        self.bus = bus or EventBus()
        self._state = PlaybackState(
            autoplay_enabled=autoplay_enabled,
            count_in_enabled=count_in_enabled,
        )
        self.escalation_count = escalation_count
        self.parse_error_streak = 0
        self.last_snapshot: Optional[TransportSnapshot] = None
        self._escalated = False

    @property
    def state(self) -> PlaybackState:
        return self._state

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def update_from_snapshot(self, raw: str, catalog) -> bool:
        """
        Parse a raw snapshot and apply it.

        Returns:
            True if play state, position or active region changed. A
            malformed snapshot returns False and leaves the state untouched.
        """
        try:
            snapshot = parse_snapshot(raw)
        except ParseError as e:
            self._on_parse_error(e)
            return False

        if self.parse_error_streak:
            logger.debug(f"Snapshot stream recovered after {self.parse_error_streak} bad snapshots")
        self.parse_error_streak = 0
        self._escalated = False
        return self.apply_snapshot(snapshot, catalog)

    def apply_snapshot(self, snapshot: TransportSnapshot, catalog) -> bool:
        """Apply an already validated snapshot."""
        self.last_snapshot = snapshot
        previous = self._state

        region = catalog.find_region_at(snapshot.position) if catalog is not None else None
        new_state = replace(
            previous,
            is_playing=snapshot.is_playing,
            current_position=snapshot.position,
            current_region_id=region.id if region is not None else None,
        )

        # Exact comparison on purpose: any new position is a change
        changed = (
            previous.is_playing != new_state.is_playing
            or previous.current_position != new_state.current_position
            or previous.current_region_id != new_state.current_region_id
        )
        if not changed:
            return False

        self._state = new_state
        if previous.current_region_id != new_state.current_region_id:
            logger.info(f"Region changed: {previous.current_region_id} -> {new_state.current_region_id} "
                        f"at {new_state.current_position:.3f}s")
        if previous.is_playing != new_state.is_playing:
            logger.info(f"Transport {'PLAYING' if new_state.is_playing else 'STOPPED'} "
                        f"at {new_state.current_position:.3f}s")

        self.bus.emit('state_changed', new_state)
        return True

    def recompute_region(self, catalog) -> bool:
        """
        Re-evaluate the active region after the catalog was reloaded.

        'state_changed' stays reserved for snapshot changes; the caller
        announces the reload with 'regions_loaded'.

        Returns:
            True if the region changed
        """
        region = catalog.find_region_at(self._state.current_position)
        region_id = region.id if region is not None else None
        if region_id == self._state.current_region_id:
            return False
        self._state = replace(self._state, current_region_id=region_id)
        return True

    def _on_parse_error(self, error: ParseError) -> None:
        self.parse_error_streak += 1
        logger.debug(f"Ignoring malformed snapshot ({error}): {error.raw!r}")

        if self.parse_error_streak >= self.escalation_count and not self._escalated:
            self._escalated = True
            message = (f"Transport sent {self.parse_error_streak} malformed snapshots in a row. "
                       "Check that the DAW web interface is reachable.")
            logger.warning(message)
            self.bus.emit('error', 'connectivity', message)

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def apply_settings(self, autoplay_enabled: Optional[bool] = None,
                       count_in_enabled: Optional[bool] = None) -> bool:
        """
        Change the autoplay / count-in flags.

        Returns:
            True if a flag changed (and 'settings_changed' was emitted)
        """
        new_state = self._state
        if autoplay_enabled is not None:
            new_state = replace(new_state, autoplay_enabled=bool(autoplay_enabled))
        if count_in_enabled is not None:
            new_state = replace(new_state, count_in_enabled=bool(count_in_enabled))

        if new_state == self._state:
            return False

        self._state = new_state
        logger.info(f"Settings: autoplay={new_state.autoplay_enabled} count_in={new_state.count_in_enabled}")
        self.bus.emit('settings_changed', new_state)
        return True
