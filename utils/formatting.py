"""
Formatting utilities for Region Remote.

Clock strings for the console and the web remote, and the lenient time
parser used by marker directives ("!length:3:45", "!length=210s").
"""

import math
import re
from typing import Optional

# Unit suffix -> multiplier to seconds
_UNIT_SCALE = {
    'ms': 0.001, 'msec': 0.001, 'millisecond': 0.001, 'milliseconds': 0.001,
    's': 1.0, 'sec': 1.0, 'secs': 1.0, 'second': 1.0, 'seconds': 1.0,
    'm': 60.0, 'min': 60.0, 'mins': 60.0, 'minute': 60.0, 'minutes': 60.0,
}
_SECOND_UNITS = ('s', 'sec', 'secs', 'second', 'seconds')

_UNIT_RE = re.compile(r'^(?P<number>.*?)\s*(?P<unit>[a-z]+)?$', re.IGNORECASE)


def format_time(seconds: Optional[float], include_ms: bool = True) -> str:
    """
    Format a project position as a clock string.

    Args:
        seconds: Position in seconds (None renders as a placeholder)
        include_ms: Whether to include hundredths

    Returns:
        "1:23.45", "1:23", or "1:02:03.00" once a set runs past an hour
    """
    if seconds is None:
        return "-:--"
    seconds = max(0.0, seconds)
    # Round first so 59.996 shows as 1:00.00, not 0:60.00
    seconds = round(seconds, 2) if include_ms else float(int(seconds))

    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    clock = f"{secs:05.2f}" if include_ms else f"{int(secs):02d}"
    if hours:
        return f"{int(hours)}:{int(minutes):02d}:{clock}"
    return f"{int(minutes)}:{clock}"


def format_countdown(seconds: Optional[float]) -> str:
    """
    Format the time left in a song, e.g. "-0:12".

    Rounds up so the display reads -0:00 only once the end is reached.
    """
    if seconds is None:
        return ""
    whole = int(math.ceil(max(0.0, seconds)))
    return f"-{whole // 60}:{whole % 60:02d}"


def parse_time(text: str) -> Optional[float]:
    """
    Parse a time string to seconds.

    Accepts formats:
    - "1:23.45" (M:SS.ms)
    - "1:02:03" (H:MM:SS)
    - "83.45" / "83" (plain seconds)
    - any of the above followed by a unit: "83s", "1500ms", "3.5 min"

    Returns:
        Time in seconds, or None if the text is not a time
    """
    if text is None:
        return None
    match = _UNIT_RE.match(text.strip())
    if not match:
        return None

    number = match.group('number').strip()
    unit = (match.group('unit') or '').lower()
    if not number or (unit and unit not in _UNIT_SCALE):
        return None

    try:
        if ':' not in number:
            return float(number) * _UNIT_SCALE.get(unit, 1.0)

        # Clock notation is already in seconds
        if unit and unit not in _SECOND_UNITS:
            return None
        fields = number.split(':')
        if len(fields) > 3:
            return None
        total = 0
        for field in fields[:-1]:
            total = total * 60 + int(field)
        return total * 60 + float(fields[-1])
    except ValueError:
        return None
