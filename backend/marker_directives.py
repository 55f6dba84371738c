"""
Marker directives for Region Remote.

Performers annotate regions in the DAW with markers whose labels carry small
commands:

    !length:3:45     nominal song length (the region may run longer, e.g.
                     for applause or a click-track tail)
    !bpm:128         tempo of the song, used for the tempo count-in policy
    !1008            REAPER's stop action: the region is a hard stop and
                     autoplay must not advance past it

A label may combine them ("!1008 !length:245"). Malformed values are treated
as absent, never as errors; callers fall back to the region span.
"""

import re
import logging
from typing import List, Optional

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import LENGTH_DIRECTIVE, BPM_DIRECTIVE, HARD_STOP_DIRECTIVE
from utils.formatting import parse_time

from .regions import Marker, Region

logger = logging.getLogger("RegionRemote.MarkerDirectives")

_UNITS = r'(?:ms|msec|milliseconds?|s|secs?|seconds?|m|mins?|minutes?)'

_BPM_RE = re.compile(re.escape(BPM_DIRECTIVE) + r'\s*[:=]?\s*(\d+(?:\.\d+)?)', re.IGNORECASE)

# "!1008" as a whole token, so "!10080" is a different command
_HARD_STOP_RE = re.compile(re.escape(HARD_STOP_DIRECTIVE) + r"\b")

# Any directive token: "!1008", "!length:245", "!bpm=120", "!length: 3.5 min"
_DIRECTIVE_TOKEN_RE = re.compile(
    r'!\d+|!(?:length|bpm)\s*[:=]?\s*[0-9][0-9.:]*(?:\s*' + _UNITS + r'\b)?',
    re.IGNORECASE,
)


def _length_pattern(key: str):
    # key token, optional separator, numeric value (seconds or M:SS),
    # optional unit suffix
    return re.compile(
        re.escape(key) + r'\s*[:=]?\s*(?P<value>[0-9][0-9.:]*(?:\s*' + _UNITS + r'\b)?)',
        re.IGNORECASE,
    )


class MarkerLengthExtractor:
    """
    Recovers the nominal song length of a region from its markers.

    Usage:
        extractor = MarkerLengthExtractor()
        extractor.extract_length(region)     # -> 225.0 or None
        extractor.effective_length(region)   # -> 225.0 or region span
    """

    def __init__(self, key: str = LENGTH_DIRECTIVE):
        self.key = key
        self._pattern = _length_pattern(key)

    def extract_length(self, region: Optional[Region]) -> Optional[float]:
        """
        Return the length encoded by the first matching marker, or None.

        Markers are scanned in position order; the first label carrying the
        directive decides. If its value does not parse (or is not positive)
        the result is None.
        """
        if region is None:
            return None

        for marker in sorted(region.markers, key=lambda m: m.position):
            match = self._pattern.search(marker.label or '')
            if not match:
                continue

            value = parse_time(match.group('value'))
            if value is None or value <= 0:
                logger.debug(
                    f"Ignoring malformed length marker '{marker.label}' in region {region.id}"
                )
                return None
            return value
        return None

    def effective_length(self, region: Optional[Region]) -> float:
        """Marker length if present, otherwise the region span."""
        if region is None:
            return 0.0
        length = self.extract_length(region)
        return length if length is not None else region.end - region.start

    def effective_end(self, region: Region) -> float:
        """
        Timeline position where the song is over.

        A marker length longer than the region is capped at the region end.
        """
        length = self.extract_length(region)
        if length is None:
            return region.end
        return min(region.end, region.start + length)


def extract_bpm(region: Optional[Region]) -> Optional[float]:
    """Tempo from the first !bpm marker of a region, or None."""
    if region is None:
        return None
    for marker in sorted(region.markers, key=lambda m: m.position):
        match = _BPM_RE.search(marker.label or '')
        if match:
            bpm = float(match.group(1))
            return bpm if bpm > 0 else None
    return None


def is_hard_stop(region: Optional[Region]) -> bool:
    """True if any marker of the region carries the stop command."""
    if region is None:
        return False
    return any(_HARD_STOP_RE.search(m.label or '') for m in region.markers)


def is_command_only(label: str) -> bool:
    """True if a marker label is made of directives only (nothing to display)."""
    text = (label or '').strip()
    if not text:
        return False
    return _DIRECTIVE_TOKEN_RE.sub('', text).strip() == ''


def display_markers(region: Optional[Region]) -> List[Marker]:
    """Markers of a region worth showing to a performer, in position order."""
    if region is None:
        return []
    return [
        m for m in sorted(region.markers, key=lambda m: m.position)
        if not is_command_only(m.label)
    ]
