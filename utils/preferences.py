import os
import sys
import json
import logging

logger = logging.getLogger("RegionRemote.Preferences")

def _get_prefs_dir():
    """Get the writable data directory for preferences."""
    if getattr(sys, 'frozen', False) and sys.platform == 'darwin':
        return os.path.join(os.path.expanduser("~"), "Library", "Application Support", "RegionRemote")
    else:
        return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data")

# Path to the preferences file
PREFS_FILE = os.path.join(_get_prefs_dir(), "user_preferences.json")

# Session options a user may override
SESSION_KEYS = (
    "autoplay_enabled",
    "count_in_enabled",
    "count_in_lead_seconds",
    "count_in_policy",
    "resync_tolerance_seconds",
)

def load_preferences(path=None):
    """Load user preferences from JSON."""
    path = path or PREFS_FILE
    if not os.path.exists(path):
        return {}

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading preferences: {e}")
        return {}
    return data if isinstance(data, dict) else {}

def save_preferences(prefs, path=None):
    """Merge a preferences dictionary into the JSON file."""
    path = path or PREFS_FILE
    try:
        data_dir = os.path.dirname(path)
        if data_dir and not os.path.exists(data_dir):
            os.makedirs(data_dir, exist_ok=True)

        current = load_preferences(path)
        current.update(prefs)

        with open(path, 'w') as f:
            json.dump(current, f, indent=2)

    except OSError as e:
        logger.error(f"Error saving preferences: {e}")

def get_session_preferences(path=None):
    """Saved session overrides only (unknown keys dropped)."""
    prefs = load_preferences(path)
    return {k: prefs[k] for k in SESSION_KEYS if k in prefs}

def set_session_preference(key, value, path=None):
    """Save one session override."""
    if key not in SESSION_KEYS:
        raise KeyError(f"Unknown session preference '{key}'")
    save_preferences({key: value}, path)
