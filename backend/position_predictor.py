"""
Local position prediction for Region Remote.

The transport is only polled every 100-250 ms. Between snapshots the
playhead is extrapolated from a reference point (anchor time + anchor
position) so the performer sees a smoothly moving clock.

The reference is re-anchored when play/pause toggles or when an
authoritative position diverges from the prediction by more than the
resync tolerance. Small divergences keep the current anchor, which keeps
the displayed clock free of jitter. Seeks are just large divergences.
"""

import logging
from dataclasses import dataclass

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import RESYNC_TOLERANCE_SECONDS, DRIFT_WARNING_STREAK, DEFAULT_PLAYBACK_RATE

from .errors import DriftError

logger = logging.getLogger("RegionRemote.PositionPredictor")


@dataclass
class TimerReference:
    anchor_time: float = 0.0
    anchor_position: float = 0.0
    is_running: bool = False


class PositionPredictor:
    """
    Interpolates the playhead between authoritative updates.

    predict() is pure and may be called at any rate. resync() and
    reconcile() are only called from the scheduler thread, right after the
    tracker accepted a snapshot.
    """

    def __init__(self, tolerance: float = RESYNC_TOLERANCE_SECONDS,
                 rate: float = DEFAULT_PLAYBACK_RATE):
        self.tolerance = tolerance
        self.rate = rate
        self.reference = TimerReference()
        self.drift_streak = 0
        self.resync_count = 0

    def resync(self, now: float, position: float, is_playing: bool) -> None:
        """Re-anchor the prediction at an authoritative position."""
        self.reference = TimerReference(
            anchor_time=now,
            anchor_position=position,
            is_running=is_playing,
        )
        self.resync_count += 1

    def predict(self, now: float) -> float:
        """Predicted position at `now` (seconds)."""
        ref = self.reference
        if not ref.is_running:
            return ref.anchor_position
        return ref.anchor_position + (now - ref.anchor_time) * self.rate

    def check_drift(self, now: float, position: float) -> float:
        """
        Compare the prediction against an authoritative position.

        Returns:
            Signed divergence in seconds (authoritative - predicted)

        Raises:
            DriftError: divergence exceeds the tolerance
        """
        predicted = self.predict(now)
        divergence = position - predicted
        if abs(divergence) > self.tolerance:
            raise DriftError(predicted, position, self.tolerance)
        return divergence

    def reconcile(self, now: float, position: float, is_playing: bool) -> bool:
        """
        Fold an authoritative update into the prediction.

        Returns:
            True if the reference was re-anchored
        """
        ref = self.reference
        if is_playing != ref.is_running or not is_playing:
            # Play/pause toggled, or parked: the snapshot is the truth
            self.drift_streak = 0
            self.resync(now, position, is_playing)
            return True

        try:
            self.check_drift(now, position)
        except DriftError as e:
            self.drift_streak += 1
            logger.debug(f"Resync: {e}")
            if self.drift_streak == DRIFT_WARNING_STREAK:
                logger.warning(
                    f"Prediction drifted {self.drift_streak} times in a row; "
                    f"transport speed may differ from {self.rate:.3f}"
                )
            self.resync(now, position, is_playing)
            return True

        self.drift_streak = 0
        return False
