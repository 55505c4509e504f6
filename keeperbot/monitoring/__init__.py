"""
Monitoring package.

This package contains Prometheus metrics and the console price board.
"""

from keeperbot.monitoring.metrics_rich import KeeperMetrics
from keeperbot.monitoring.price_board import PriceBoard

__all__ = [
    "KeeperMetrics",
    "PriceBoard",
]
