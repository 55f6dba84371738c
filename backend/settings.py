"""
Session settings for Region Remote.

Defaults come from config.py; a user's saved overrides (see
utils/preferences.py) replace them. Invalid saved values are ignored with a
warning rather than refusing to start.
"""

import logging
from dataclasses import dataclass, asdict, fields

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import (
    AUTOPLAY_ENABLED, COUNT_IN_ENABLED,
    COUNT_IN_LEAD_SECONDS, COUNT_IN_POLICY,
    RESYNC_TOLERANCE_SECONDS,
    POLL_INTERVAL, UI_REFRESH_INTERVAL,
)

logger = logging.getLogger("RegionRemote.Settings")


@dataclass
class SessionSettings:
    """Recognized session options."""
    autoplay_enabled: bool = AUTOPLAY_ENABLED
    count_in_enabled: bool = COUNT_IN_ENABLED
    count_in_lead_seconds: float = COUNT_IN_LEAD_SECONDS
    count_in_policy: str = COUNT_IN_POLICY
    resync_tolerance_seconds: float = RESYNC_TOLERANCE_SECONDS
    poll_interval: float = POLL_INTERVAL
    ui_refresh_interval: float = UI_REFRESH_INTERVAL

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_preferences(cls, prefs):
        """
        Build settings from a preferences dict.

        Unknown keys are ignored. A value of the wrong type or out of range
        keeps the default.
        """
        settings = cls()
        known = {f.name: f for f in fields(cls)}
        for key, value in (prefs or {}).items():
            if key not in known:
                continue
            try:
                setattr(settings, key, _coerce(key, value))
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring preference {key}={value!r}: {e}")
        return settings

    def with_overrides(self, **overrides):
        """Copy with non-None overrides applied (CLI flags)."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return SessionSettings.from_preferences(data)


def _coerce(key, value):
    if key in ("autoplay_enabled", "count_in_enabled"):
        if isinstance(value, str):
            value = value.strip().lower()
            if value in ("1", "true", "yes", "on"):
                return True
            if value in ("0", "false", "no", "off"):
                return False
            raise ValueError("not a boolean")
        return bool(value)

    if key == "count_in_policy":
        if value not in ("fixed", "tempo"):
            raise ValueError("expected 'fixed' or 'tempo'")
        return value

    number = float(value)
    if key == "count_in_lead_seconds" and number < 0:
        raise ValueError("must not be negative")
    if key in ("resync_tolerance_seconds", "poll_interval", "ui_refresh_interval") and number <= 0:
        raise ValueError("must be positive")
    return number
