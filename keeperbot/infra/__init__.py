"""
Infrastructure package.

This package contains logging configuration and the injectable clock.
"""

from keeperbot.infra.clock import Clock
from keeperbot.infra.logging_cfg import build_logger, log_event

__all__ = [
    "Clock",
    "build_logger",
    "log_event",
]
