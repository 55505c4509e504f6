"""
PriceModel: synthetic price process for the feeder.

Each symbol follows a bounded multiplicative random walk,
`next = max(current * (1 + U(-v, v)), floor)`, where the volatility `v`
depends on the current price tier (or a per-symbol override). History is a
fixed-size FIFO; `current` is always the last history entry.

The model is the source of truth for the feeder's intended prices and is
never synchronized from the ledger.
"""

from __future__ import annotations

import random
from collections import deque
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from keeperbot.infra.clock import Clock

PRICE_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class VolatilityTier:
    """Applies when min_price <= price < max_price."""
    min_price: Decimal
    max_price: Optional[Decimal]
    volatility: Decimal

    def matches(self, price: Decimal) -> bool:
        if price < self.min_price:
            return False
        return self.max_price is None or price < self.max_price


DEFAULT_TIERS: Tuple[VolatilityTier, ...] = (
    VolatilityTier(Decimal("10000"), None, Decimal("0.04")),
    VolatilityTier(Decimal("10"), Decimal("10000"), Decimal("0.05")),
    VolatilityTier(Decimal("0"), Decimal("2.000001"), Decimal("0.001")),
)


@dataclass
class PriceModelConfig:
    history_cap: int = 100
    floor: Decimal = Decimal("0.01")
    tiers: Tuple[VolatilityTier, ...] = DEFAULT_TIERS
    default_volatility: Decimal = Decimal("0.03")
    overrides: Dict[str, Decimal] = field(default_factory=lambda: {"ETH": Decimal("0.01")})
    shock_step: Decimal = Decimal("0.1")  # a multiplier of 1.0 moves the price 10%


@dataclass(frozen=True)
class PricePoint:
    price: Decimal
    timestamp: float


@dataclass(frozen=True)
class PriceStats:
    symbol: str
    current: Decimal
    change_pct: Decimal
    window_min: Decimal
    window_max: Decimal
    samples: int


@dataclass
class PriceState:
    symbol: str
    history: Deque[PricePoint]
    volatility: Decimal

    @property
    def current(self) -> Decimal:
        return self.history[-1].price


class PriceModel:
    def __init__(
        self,
        seeds: Mapping[str, Decimal],
        config: Optional[PriceModelConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config or PriceModelConfig()
        if self.config.history_cap < 1:
            raise ValueError("history_cap must be >= 1")
        if self.config.floor <= 0:
            raise ValueError("price floor must be > 0")
        self._rng = rng or random.Random()
        self._clock = clock or Clock()
        self._states: Dict[str, PriceState] = {}
        for symbol, seed in seeds.items():
            self.add_symbol(symbol, Decimal(str(seed)))

    @property
    def symbols(self) -> List[str]:
        return list(self._states)

    def add_symbol(self, symbol: str, seed: Decimal) -> None:
        price = self._clamp(Decimal(seed))
        history: Deque[PricePoint] = deque(maxlen=self.config.history_cap)
        history.append(PricePoint(price, self._clock.time()))
        self._states[symbol] = PriceState(symbol, history, self.volatility_for(symbol, price))

    def state(self, symbol: str) -> PriceState:
        try:
            return self._states[symbol]
        except KeyError:
            raise KeyError(f"unknown symbol {symbol}") from None

    def current(self, symbol: str) -> Decimal:
        return self.state(symbol).current

    def history(self, symbol: str) -> List[PricePoint]:
        return list(self.state(symbol).history)

    def volatility_for(self, symbol: str, price: Decimal) -> Decimal:
        override = self.config.overrides.get(symbol)
        if override is not None:
            return Decimal(override)
        for tier in self.config.tiers:
            if tier.matches(price):
                return tier.volatility
        return self.config.default_volatility

    def step(self, symbol: str) -> Decimal:
        """Advance one symbol by one random-walk step and record it."""
        st = self.state(symbol)
        v = self.volatility_for(symbol, st.current)
        change = Decimal(repr(self._rng.uniform(-float(v), float(v))))
        return self._record(st, st.current * (1 + change), v)

    def step_all(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, Decimal]:
        return {s: self.step(s) for s in (symbols or self.symbols)}

    def shock(self, symbol: str, multiplier: Decimal, sign: Optional[int] = None) -> Decimal:
        """Force a discrete jump of +/- shock_step * multiplier (random sign by default)."""
        st = self.state(symbol)
        if sign is None:
            sign = 1 if self._rng.random() > 0.5 else -1
        move = Decimal(sign) * self.config.shock_step * Decimal(str(multiplier))
        return self._record(st, st.current * (1 + move), st.volatility)

    def stats(self, symbol: str, window: int = 24) -> PriceStats:
        """Last change percent and rolling min/max over the last `window` entries."""
        prices = [p.price for p in self.state(symbol).history]
        current = prices[-1]
        if len(prices) >= 2 and prices[-2] != 0:
            change = (current - prices[-2]) / prices[-2] * 100
        else:
            change = Decimal("0")
        recent = prices[-window:] if window > 0 else prices
        return PriceStats(
            symbol=symbol,
            current=current,
            change_pct=change.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            window_min=min(recent),
            window_max=max(recent),
            samples=len(recent),
        )

    def _record(self, st: PriceState, candidate: Decimal, volatility: Decimal) -> Decimal:
        price = self._clamp(candidate)
        st.history.append(PricePoint(price, self._clock.time()))
        st.volatility = volatility
        return price

    def _clamp(self, candidate: Decimal) -> Decimal:
        price = candidate.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)
        return max(price, self.config.floor)
