"""
Tests for formatting helpers, preferences and session settings.
"""
import json

import pytest

from backend.settings import SessionSettings
from utils.formatting import format_countdown, format_time, parse_time
from utils.preferences import (
    get_session_preferences,
    load_preferences,
    save_preferences,
    set_session_preference,
)


# =============================================================================
# Formatting
# =============================================================================

class TestFormatting:
    """format_time / parse_time / format_countdown."""

    def test_format_time(self):
        assert format_time(83.456) == "1:23.46"
        assert format_time(83.456, include_ms=False) == "1:23"
        assert format_time(-4) == "0:00.00"
        assert format_time(None) == "-:--"

    def test_format_time_rounds_into_next_minute(self):
        assert format_time(59.996) == "1:00.00"

    def test_format_time_long_set(self):
        assert format_time(3723.5) == "1:02:03.50"
        assert format_time(3723.5, include_ms=False) == "1:02:03"

    @pytest.mark.parametrize("text, expected", [
        ("1:23.5", 83.5),
        ("1:02:03", 3723.0),
        ("42", 42.0),
        ("42s", 42.0),
        ("1500ms", 1.5),
        ("3.5 min", 210.0),
        ("2 minutes", 120.0),
    ])
    def test_parse_time(self, text, expected):
        assert parse_time(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", ["", "abc", "1:xx", "12 parsecs", "1:2:3:4", None])
    def test_parse_time_invalid(self, text):
        assert parse_time(text) is None

    def test_format_countdown(self):
        assert format_countdown(11.2) == "-0:12"
        assert format_countdown(75) == "-1:15"
        assert format_countdown(-3) == "-0:00"
        assert format_countdown(None) == ""


# =============================================================================
# Preferences
# =============================================================================

class TestPreferences:
    """JSON preferences file."""

    def test_missing_file_is_empty(self, tmp_path):
        assert load_preferences(str(tmp_path / "none.json")) == {}

    def test_save_merges(self, tmp_path):
        path = str(tmp_path / "data" / "prefs.json")
        save_preferences({"autoplay_enabled": False}, path)
        save_preferences({"count_in_enabled": True}, path)
        assert load_preferences(path) == {"autoplay_enabled": False, "count_in_enabled": True}

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "prefs.json"
        path.write_text("{not json")
        assert load_preferences(str(path)) == {}

    def test_session_preferences_filter_unknown_keys(self, tmp_path):
        path = tmp_path / "prefs.json"
        path.write_text(json.dumps({"theme": "dark", "count_in_policy": "tempo"}))
        assert get_session_preferences(str(path)) == {"count_in_policy": "tempo"}

    def test_unknown_session_preference_rejected(self, tmp_path):
        with pytest.raises(KeyError):
            set_session_preference("volume", 11, str(tmp_path / "prefs.json"))


# =============================================================================
# Settings
# =============================================================================

class TestSessionSettings:
    """Defaults, preference overrides and validation."""

    def test_defaults(self):
        settings = SessionSettings()
        assert settings.autoplay_enabled is True
        assert settings.count_in_enabled is False
        assert settings.count_in_policy == "fixed"

    def test_preferences_override(self):
        settings = SessionSettings.from_preferences({
            "autoplay_enabled": "false",
            "count_in_lead_seconds": "6",
            "count_in_policy": "tempo",
            "unrelated": 1,
        })
        assert settings.autoplay_enabled is False
        assert settings.count_in_lead_seconds == 6.0
        assert settings.count_in_policy == "tempo"

    def test_invalid_values_keep_defaults(self):
        settings = SessionSettings.from_preferences({
            "count_in_policy": "vibes",
            "resync_tolerance_seconds": -1,
            "autoplay_enabled": "maybe",
        })
        assert settings == SessionSettings()

    def test_cli_overrides(self):
        settings = SessionSettings().with_overrides(count_in_enabled=True, autoplay_enabled=None)
        assert settings.count_in_enabled is True
        assert settings.autoplay_enabled is True
