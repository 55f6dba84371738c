"""
Regions and markers for Region Remote.

A Region is a named span of the project timeline (usually one song of the
setlist). Markers are point annotations inside a region; some of them carry
directives such as a nominal song length (see marker_directives.py).

Both are immutable once loaded. The RegionCatalog is replaced wholesale when
the project is (re)loaded, and answers "which region is playing at this
position?" with a precise boundary policy:

1. A region starting exactly at the position wins.
2. Otherwise a region ending exactly at the position is still current
   ("sticky end"), as long as no region starts there.
3. Otherwise the region whose half-open span [start, end) holds the position.
4. Otherwise no region.

So at a shared boundary (end of A == start of B) the catalog reports B.
"""

import bisect
import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from .errors import ValidationError

logger = logging.getLogger("RegionRemote.Regions")


@dataclass(frozen=True)
class Marker:
    """
    A point-in-time annotation inside a region.

    Attributes:
        id: Marker id as reported by the DAW
        position: Position in seconds
        label: Marker text, may carry directives like "!length:3:45"
    """
    id: int
    position: float
    label: str = ""

    def to_dict(self):
        return {'id': self.id, 'position': self.position, 'label': self.label}

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=int(data['id']),
            position=float(data['position']),
            label=data.get('label', data.get('name', '')) or '',
        )


@dataclass(frozen=True)
class Region:
    """
    A named span of the timeline.

    Attributes:
        id: Region id as reported by the DAW
        start: Start time in seconds
        end: End time in seconds
        name: Human-readable name (e.g., "Song 3 - Encore")
        markers: Markers inside the region, ordered by position
    """
    id: int
    start: float
    end: float
    name: str = ""
    markers: Tuple[Marker, ...] = field(default_factory=tuple)

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, position: float) -> bool:
        """Half-open containment: start <= position < end."""
        return self.start <= position < self.end

    def to_dict(self):
        """Serialize to the wire form."""
        return {
            'id': self.id,
            'start': self.start,
            'end': self.end,
            'name': self.name,
            'markers': [m.to_dict() for m in self.markers],
        }

    @classmethod
    def from_dict(cls, data):
        """Deserialize from the wire form {id, start, end, name, markers}."""
        markers = sorted(
            (Marker.from_dict(m) for m in data.get('markers', [])),
            key=lambda m: m.position,
        )
        return cls(
            id=int(data['id']),
            start=float(data['start']),
            end=float(data['end']),
            name=data.get('name', '') or '',
            markers=tuple(markers),
        )


def assign_markers(regions, markers):
    """
    Attach project-wide markers to the regions they fall into.

    A marker belongs to every region whose closed span [start, end] holds
    it, so a marker sitting on a shared boundary is seen by both regions.

    Args:
        regions: Iterable of Region (markers ignored)
        markers: Iterable of Marker

    Returns:
        List of new Region objects with their markers filled in
    """
    ordered = sorted(markers, key=lambda m: m.position)
    result = []
    for region in regions:
        inside = tuple(m for m in ordered if region.start <= m.position <= region.end)
        result.append(Region(region.id, region.start, region.end, region.name, inside))
    return result


class RegionCatalog:
    """
    Ordered, validated collection of regions.

    Usage:
        catalog = RegionCatalog()
        catalog.load([Region(1, 0.0, 10.0, "Intro"), Region(2, 10.0, 20.0, "Song")])
        catalog.find_region_at(10.0)   # -> region 2 (start-match wins)
    """

    def __init__(self, regions=None):
        self._regions: List[Region] = []
        self._starts: List[float] = []
        self._index_by_id = {}
        if regions:
            self.load(regions)

    # =========================================================================
    # LOADING
    # =========================================================================

    def load(self, regions) -> None:
        """
        Replace the catalog with a new list of regions.

        Raises:
            ValidationError: if a region is inverted, the list is not sorted
                by start, two regions overlap or ids repeat. The previous
                catalog stays active in that case.
        """
        candidate = list(regions)
        self._validate(candidate)

        self._regions = candidate
        self._starts = [r.start for r in candidate]
        self._index_by_id = {r.id: i for i, r in enumerate(candidate)}
        logger.info(f"Loaded {len(candidate)} regions")

    @staticmethod
    def _validate(regions: List[Region]) -> None:
        seen = set()
        previous = None
        for region in regions:
            if region.start > region.end:
                raise ValidationError(
                    f"Region {region.id} '{region.name}' ends before it starts "
                    f"({region.start:.3f} > {region.end:.3f})"
                )
            if region.id in seen:
                raise ValidationError(f"Duplicate region id {region.id}")
            seen.add(region.id)

            if previous is not None:
                if region.start < previous.start:
                    raise ValidationError(
                        f"Regions not sorted: {region.id} starts at {region.start:.3f} "
                        f"before {previous.id} at {previous.start:.3f}"
                    )
                if region.start < previous.end:
                    raise ValidationError(
                        f"Regions {previous.id} and {region.id} overlap "
                        f"({previous.end:.3f} > {region.start:.3f})"
                    )
            previous = region

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def find_region_at(self, position: float) -> Optional[Region]:
        """Find the region playing at a position (see module docstring)."""
        if not self._regions:
            return None

        # 1. Start-match wins (first region in order if several start here)
        i = bisect.bisect_left(self._starts, position)
        if i < len(self._regions) and self._regions[i].start == position:
            return self._regions[i]

        # Nothing starts here, so only the last region starting before the
        # position can still hold it.
        candidate_index = i - 1
        if candidate_index < 0:
            return None
        candidate = self._regions[candidate_index]

        # 2. Sticky end
        if candidate.end == position:
            return candidate

        # 3. Half-open span
        if candidate.contains(position):
            return candidate

        return None

    def get(self, region_id) -> Optional[Region]:
        index = self._index_by_id.get(region_id)
        return self._regions[index] if index is not None else None

    def next_region(self, region_id) -> Optional[Region]:
        """Region after the given one in catalog order."""
        index = self._index_by_id.get(region_id)
        if index is None or index + 1 >= len(self._regions):
            return None
        return self._regions[index + 1]

    def previous_region(self, region_id) -> Optional[Region]:
        """Region before the given one in catalog order."""
        index = self._index_by_id.get(region_id)
        if index is None or index == 0:
            return None
        return self._regions[index - 1]

    def first(self) -> Optional[Region]:
        return self._regions[0] if self._regions else None

    def last(self) -> Optional[Region]:
        return self._regions[-1] if self._regions else None

    def to_list(self) -> List[Region]:
        return list(self._regions)

    def __len__(self) -> int:
        return len(self._regions)

    def __iter__(self) -> Iterator[Region]:
        return iter(list(self._regions))
