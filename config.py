"""
Configuration constants for Region Remote.

All tunable parameters in one place for easy adjustment and debugging.
Modify these values to fine-tune polling, prediction and autoplay behavior.
User overrides for the session options live in the preferences file
(see utils/preferences.py) and are merged by backend.settings.
"""

import sys
import os

# =============================================================================
# PATHS
# =============================================================================

# HELPER: Detect if we are running as a compiled exe or a script
def get_base_path():
    if getattr(sys, 'frozen', False):
        # We are running as an exe - use the folder the exe is sitting in
        return os.path.dirname(sys.executable)
    else:
        # We are running as a script - use the script's folder
        return os.path.dirname(os.path.abspath(__file__))

# ROOT DIR
BASE_DIR = get_base_path()

# Data directory for preferences (uses BASE_DIR so it works in frozen builds)
DATA_DIR = os.path.join(BASE_DIR, "data")

# Log directory
LOG_DIR = os.path.join(BASE_DIR, "logs")

# =============================================================================
# REAPER CONNECTION
# REAPER's built-in web interface (Preferences > Control/OSC/web)
# =============================================================================

REAPER_HOST = "127.0.0.1"
REAPER_PORT = 8080

# Per-request timeout (seconds). A command that exceeds it is a CommandError.
REAPER_REQUEST_TIMEOUT = 2.0

# Retries for a failed request before giving up
REAPER_REQUEST_RETRIES = 2
REAPER_RETRY_DELAY = 0.2

# Project ext-state section used to persist the autoplay flag and the
# project id in the .rpp file
REAPER_EXTSTATE_SECTION = "ReaperControl"
REAPER_AUTOPLAY_KEY = "AutoplayEnabled"
REAPER_PROJECT_ID_KEY = "ProjectId"

# =============================================================================
# SCHEDULER SETTINGS
# =============================================================================

# How often to poll the transport for a fresh snapshot (seconds)
# TUNABLE: 0.1 - 0.25. Lower = tighter region changes, more HTTP traffic
POLL_INTERVAL = 0.15

# How often to push predicted positions to observers (seconds)
# 0.05 = 20 FPS
UI_REFRESH_INTERVAL = 0.05

# Scheduler idle tick (seconds)
SCHEDULER_TICK = 0.01

# How often to check whether another project was opened (seconds)
PROJECT_POLL_INTERVAL = 2.0

# =============================================================================
# POSITION PREDICTION
# =============================================================================

# Divergence between predicted and authoritative position before the
# prediction is re-anchored (seconds)
# TUNABLE: Increase if the playhead jitters, decrease if it lags visibly
RESYNC_TOLERANCE_SECONDS = 0.25

# Consecutive drift resyncs before a warning is logged
DRIFT_WARNING_STREAK = 5

# Transport speed used for prediction
DEFAULT_PLAYBACK_RATE = 1.0

# =============================================================================
# AUTOPLAY SETTINGS
# =============================================================================

AUTOPLAY_ENABLED = True
COUNT_IN_ENABLED = False

# Lead time before an autoplay advance when count-in is enabled (seconds)
COUNT_IN_LEAD_SECONDS = 4.0

# "fixed" = COUNT_IN_LEAD_SECONDS
# "tempo" = COUNT_IN_BARS at the next region's !bpm marker (falls back to fixed)
COUNT_IN_POLICY = "fixed"
COUNT_IN_BARS = 2
BEATS_PER_BAR = 4

# How far past a region's end a snapshot may land and still count as
# "reached the end" (seconds). Further away is treated as an external seek.
# Should be comfortably larger than POLL_INTERVAL
AUTOPLAY_END_WINDOW_SECONDS = 1.0

# How long an advance may wait for a snapshot confirming the target region
# before it is treated as a timed-out command (seconds)
ADVANCE_CONFIRM_TIMEOUT = 2.0

# =============================================================================
# ERROR HANDLING
# =============================================================================

# Consecutive malformed snapshots before a connectivity warning is emitted
PARSE_ERROR_ESCALATION_COUNT = 10

# Consecutive failed transport polls before the DAW is reported unreachable
# (and any pending autoplay is dropped)
FETCH_FAILURE_ESCALATION_COUNT = 10

# =============================================================================
# MARKER DIRECTIVES
# =============================================================================

LENGTH_DIRECTIVE = "!length"
BPM_DIRECTIVE = "!bpm"

# REAPER's transport "stop" action id; a marker carrying it ends the show
HARD_STOP_DIRECTIVE = "!1008"

# =============================================================================
# SETLISTS
# =============================================================================

# One JSON file per project: <project id>-setlist.json
SETLIST_DIR = os.path.join(DATA_DIR, "setlists")

# =============================================================================
# WEB SERVER (remote performer page)
# =============================================================================

WEB_SERVER_HOST = "0.0.0.0"
WEB_SERVER_PORT = 8090

# How often the performer page polls /api/state (milliseconds)
WEB_POLL_INTERVAL_MS = 250

# A command error stays on the performer page at least this long (seconds);
# lost contact is cleared as soon as a snapshot arrives again
WEB_ERROR_HOLD_SECONDS = 3.0
