"""
Eligibility rules for order execution and position liquidation.

Pure functions of a snapshot plus prices: no I/O, no state, identical
inputs always give identical answers. The keeper calls them every cycle.

Which leg's price an order is judged on is a policy, not a constant. The
defaults reproduce the deployed behavior: limit orders track the non-native
leg when the input is the native asset, stop-losses track the input leg.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from keeperbot.ledger.models import (
    Direction,
    Order,
    OrderKind,
    Position,
    PositionKind,
    is_native,
    to_fixed,
)


class PriceLeg(Enum):
    NATIVE_RELATIVE = "native_relative"  # token_out if token_in is native, else token_in
    TOKEN_IN = "token_in"
    TOKEN_OUT = "token_out"


@dataclass(frozen=True)
class LegPolicy:
    limit: PriceLeg = PriceLeg.NATIVE_RELATIVE
    stop_loss: PriceLeg = PriceLeg.TOKEN_IN

    def for_kind(self, kind: OrderKind) -> PriceLeg:
        return self.limit if kind is OrderKind.LIMIT else self.stop_loss


DEFAULT_POLICY = LegPolicy()


def _uses_token_in(order: Order, policy: LegPolicy) -> bool:
    leg = policy.for_kind(order.kind)
    if leg is PriceLeg.TOKEN_IN:
        return True
    if leg is PriceLeg.TOKEN_OUT:
        return False
    return not is_native(order.token_in)


def tracked_asset(order: Order, policy: LegPolicy = DEFAULT_POLICY) -> str:
    """Address of the asset whose price decides this order."""
    return order.token_in if _uses_token_in(order, policy) else order.token_out


def tracked_price(
    order: Order,
    price_in: Optional[Decimal],
    price_out: Optional[Decimal],
    policy: LegPolicy = DEFAULT_POLICY,
) -> Optional[Decimal]:
    return price_in if _uses_token_in(order, policy) else price_out


def _gap(price: Decimal, target: Decimal) -> str:
    if target == 0:
        return f"price {price} vs zero target"
    pct = (price - target) / target * 100
    side = "above" if pct >= 0 else "below"
    return f"price {price} is {abs(pct):.2f}% {side} target {target}"


def evaluate_order(
    order: Order,
    price_in: Optional[Decimal],
    price_out: Optional[Decimal],
    policy: LegPolicy = DEFAULT_POLICY,
) -> Tuple[bool, str]:
    """
    Decide whether a pending order should be executed now.

    LIMIT:     LONG when price <= target (buy the dip), SHORT when price >= target.
    STOP_LOSS: LONG when price <= stop, SHORT when price >= stop.

    Returns (eligible, reason); the reason always states the gap.
    """
    if order.executed:
        return False, "already executed"

    price = tracked_price(order, price_in, price_out, policy)
    leg = policy.for_kind(order.kind).value
    if price is None or price <= 0:
        return False, f"price unavailable for {leg} leg"

    target = order.target_price
    if order.direction is Direction.LONG:
        eligible = price <= target
    else:
        eligible = price >= target

    label = "limit" if order.kind is OrderKind.LIMIT else "stop"
    if eligible:
        return True, f"{label} reached: {_gap(price, target)}"
    return False, f"{label} not reached: {_gap(price, target)}"


def _div_trunc(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero, like the ledger's uint/int math."""
    q = abs(numerator) // abs(denominator)
    return q if (numerator >= 0) == (denominator > 0) else -q


def pnl_ratio_percent(position: Position, current_price: Decimal) -> int:
    """Integer percent PnL on 18-decimal fixed-point prices."""
    entry = to_fixed(position.entry_price)
    current = to_fixed(current_price)
    if entry <= 0:
        raise ValueError(f"position {position.id} has no entry price")
    if position.kind is PositionKind.LONG:
        delta = current - entry
    else:
        delta = entry - current
    return _div_trunc(delta * 100, entry)


def evaluate_liquidation(
    position: Position,
    current_price: Decimal,
    threshold_pct: int,
) -> Tuple[bool, int]:
    """Eligible when the PnL ratio is at or below `threshold_pct` (e.g. -90)."""
    if not position.is_open:
        return False, 0
    ratio = pnl_ratio_percent(position, current_price)
    return ratio <= threshold_pct, ratio
