"""
Strategy package - eligibility rules and the synthetic price process.
"""

from keeperbot.strategy.eligibility import (
    LegPolicy,
    PriceLeg,
    evaluate_liquidation,
    evaluate_order,
    pnl_ratio_percent,
)
from keeperbot.strategy.price_model import (
    PriceModel,
    PriceModelConfig,
    PricePoint,
    PriceStats,
    VolatilityTier,
)

__all__ = [
    "LegPolicy",
    "PriceLeg",
    "evaluate_liquidation",
    "evaluate_order",
    "pnl_ratio_percent",
    "PriceModel",
    "PriceModelConfig",
    "PricePoint",
    "PriceStats",
    "VolatilityTier",
]
