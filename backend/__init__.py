"""
Backend module for Region Remote.

Contains transport state tracking, position prediction, autoplay and the
REAPER gateway. These modules are UI-agnostic and can be used independently
for testing.
"""

from .regions import Region, Marker, RegionCatalog
from .playback_state import PlaybackState, PlaybackStateTracker, TransportSnapshot, parse_snapshot
from .position_predictor import PositionPredictor
from .autoplay import AutoplayController, AutoplayState
from .session import PlaybackSession

__all__ = [
    'Region',
    'Marker',
    'RegionCatalog',
    'PlaybackState',
    'PlaybackStateTracker',
    'TransportSnapshot',
    'parse_snapshot',
    'PositionPredictor',
    'AutoplayController',
    'AutoplayState',
    'PlaybackSession',
]
