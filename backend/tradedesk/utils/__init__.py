"""
Utilities Package

Common helpers shared across the engine.
"""

from .time_utils import parse_signal_time, utcnow

__all__ = [
    "parse_signal_time",
    "utcnow",
]
