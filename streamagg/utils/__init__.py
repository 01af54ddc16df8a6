"""
Utilities package for the streaming aggregation engine.

Exports shared helpers for logging and profiling.
Keep this package lightweight and free of domain-specific logic.
"""

from streamagg.utils.logging import bind, configure_logging, get_logger
from streamagg.utils.profiler import ProfileStats, profile_block

__all__ = [
    "bind",
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
