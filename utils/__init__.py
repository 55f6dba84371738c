"""
Utility functions for Region Remote.
"""

from .formatting import format_time, parse_time, format_countdown

__all__ = ['format_time', 'parse_time', 'format_countdown']
