"""
Tests for marker directives: song length, tempo and hard stops.
"""
import pytest

from backend.marker_directives import (
    MarkerLengthExtractor,
    display_markers,
    extract_bpm,
    is_command_only,
    is_hard_stop,
)
from backend.regions import Marker, Region


def region_with(*labels, start=0.0, end=300.0):
    markers = tuple(Marker(i, start + i, label) for i, label in enumerate(labels))
    return Region(1, start, end, "Song", markers)


# =============================================================================
# Length extraction
# =============================================================================

class TestExtractLength:
    """extract_length / effective_length."""

    @pytest.fixture
    def extractor(self):
        return MarkerLengthExtractor()

    @pytest.mark.parametrize("label, expected", [
        ("!length:245", 245.0),
        ("!LENGTH:245", 245.0),
        ("!length: 3:45", 225.0),
        ("!length=180s", 180.0),
        ("!length:3.5 min", 210.0),
        ("!1008 !length:90", 90.0),
    ])
    def test_parses_value(self, extractor, label, expected):
        assert extractor.extract_length(region_with(label)) == pytest.approx(expected)

    def test_no_directive(self, extractor):
        assert extractor.extract_length(region_with("Verse", "Chorus")) is None

    def test_first_matching_marker_wins(self, extractor):
        region = region_with("intro", "!length:100", "!length:200")
        assert extractor.extract_length(region) == 100.0

    def test_malformed_value_is_absent(self, extractor):
        assert extractor.extract_length(region_with("!length:1:xx")) is None
        assert extractor.extract_length(region_with("!length:0")) is None

    def test_trailing_words_are_not_a_unit(self, extractor):
        assert extractor.extract_length(region_with("!length:200 Encore")) == 200.0

    def test_effective_length_falls_back_to_span(self, extractor):
        assert extractor.effective_length(region_with("Verse", start=10.0, end=70.0)) == 60.0
        assert extractor.effective_length(region_with("!length:1:xx", start=0.0, end=42.0)) == 42.0
        assert extractor.effective_length(None) == 0.0

    def test_effective_end_capped_at_region_end(self, extractor):
        assert extractor.effective_end(region_with("!length:30", start=100.0, end=200.0)) == 130.0
        assert extractor.effective_end(region_with("!length:500", start=100.0, end=200.0)) == 200.0


# =============================================================================
# Other directives
# =============================================================================

class TestOtherDirectives:
    """!bpm, !1008 and display filtering."""

    def test_bpm(self):
        assert extract_bpm(region_with("!bpm:128")) == 128.0
        assert extract_bpm(region_with("!BPM = 96.5")) == 96.5
        assert extract_bpm(region_with("Verse")) is None

    def test_hard_stop(self):
        assert is_hard_stop(region_with("Stop here !1008"))
        assert not is_hard_stop(region_with("!1007"))
        assert not is_hard_stop(region_with("!10080"))
        assert is_hard_stop(region_with("!1008, then talk"))
        assert not is_hard_stop(None)

    def test_command_only(self):
        assert is_command_only("!length:245 !bpm:120")
        assert is_command_only("!1008")
        assert not is_command_only("Guitar solo !bpm:120")
        assert not is_command_only("")

    def test_display_markers_hide_commands(self):
        region = region_with("!length:245", "Chorus", "!1008")
        assert [m.label for m in display_markers(region)] == ["Chorus"]
