"""
Tests for the feeder's synthetic price model.

Covers:
- Floor and 6-decimal quantization on every step
- Bounded history (FIFO) and current == last history entry
- Volatility tiers and per-symbol overrides
- Shocks (fixed and random sign)
- Rolling statistics
- Determinism under a seeded RNG
"""
import random
from decimal import Decimal

import pytest

from conftest import FakeClock
from keeperbot.strategy.price_model import PRICE_QUANTUM, PriceModel, PriceModelConfig


class StubRng:
    """Returns scripted uniform()/random() values."""

    def __init__(self, uniform=0.0, rand=0.9):
        self._uniform = uniform
        self._rand = rand

    def uniform(self, lo, hi):
        return max(lo, min(hi, self._uniform))

    def random(self):
        return self._rand


def _model(seeds, **cfg):
    return PriceModel(seeds, PriceModelConfig(**cfg), rng=random.Random(7), clock=FakeClock())


class TestStep:
    def test_never_below_floor(self):
        model = PriceModel({"TKN": Decimal("0.02")},
                           PriceModelConfig(overrides={"TKN": Decimal("0.99")}),
                           rng=StubRng(uniform=-0.99), clock=FakeClock())
        for _ in range(20):
            assert model.step("TKN") >= Decimal("0.01")
        assert model.current("TKN") == Decimal("0.01")

    def test_seed_below_floor_is_clamped(self):
        model = _model({"TKN": Decimal("0.001")})
        assert model.current("TKN") == Decimal("0.01")

    def test_prices_rounded_to_six_decimals(self):
        model = _model({"TKN": Decimal("1.5"), "BTC": Decimal("50000")})
        for _ in range(50):
            for price in model.step_all().values():
                assert price == price.quantize(PRICE_QUANTUM)

    def test_step_within_volatility_band(self):
        model = _model({"TKN": Decimal("100")})
        prev = model.current("TKN")
        for _ in range(100):
            price = model.step("TKN")
            v = model.volatility_for("TKN", prev)
            assert abs(price - prev) <= prev * v + PRICE_QUANTUM
            prev = price

    def test_unknown_symbol(self):
        with pytest.raises(KeyError):
            _model({"TKN": Decimal("1")}).step("NOPE")


class TestHistory:
    def test_history_capped_fifo(self):
        model = _model({"TKN": Decimal("100")}, history_cap=5)
        produced = [model.step("TKN") for _ in range(10)]
        history = [p.price for p in model.history("TKN")]
        assert len(history) == 5
        assert history == produced[-5:]

    def test_current_is_last_history_entry(self):
        model = _model({"TKN": Decimal("100")})
        for _ in range(3):
            model.step("TKN")
            assert model.current("TKN") == model.history("TKN")[-1].price

    def test_history_timestamps_follow_clock(self):
        clock = FakeClock(start=1000.0)
        model = PriceModel({"TKN": Decimal("1")}, rng=random.Random(1), clock=clock)
        clock.advance(300)
        model.step("TKN")
        assert [p.timestamp for p in model.history("TKN")] == [1000.0, 1300.0]

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            _model({"TKN": Decimal("1")}, history_cap=0)
        with pytest.raises(ValueError):
            _model({"TKN": Decimal("1")}, floor=Decimal("0"))


class TestVolatility:
    @pytest.mark.parametrize("price,expected", [
        ("50000", "0.04"),
        ("10000", "0.04"),
        ("100", "0.05"),
        ("10", "0.05"),
        ("5", "0.03"),
        ("2", "0.001"),
        ("1.5", "0.001"),
    ])
    def test_tiers(self, price, expected):
        model = _model({})
        assert model.volatility_for("TKN", Decimal(price)) == Decimal(expected)

    def test_eth_override_ignores_tier(self):
        model = _model({})
        assert model.volatility_for("ETH", Decimal("2000")) == Decimal("0.01")


class TestShock:
    def test_shock_up_then_down(self):
        model = _model({"TKN": Decimal("100")})
        assert model.shock("TKN", Decimal("2"), sign=1) == Decimal("120")
        assert model.shock("TKN", Decimal("2"), sign=-1) == Decimal("96")
        assert len(model.history("TKN")) == 3

    def test_random_sign_from_rng(self):
        up = PriceModel({"TKN": Decimal("100")}, rng=StubRng(rand=0.9), clock=FakeClock())
        down = PriceModel({"TKN": Decimal("100")}, rng=StubRng(rand=0.1), clock=FakeClock())
        assert up.shock("TKN", Decimal("1")) == Decimal("110")
        assert down.shock("TKN", Decimal("1")) == Decimal("90")

    def test_large_down_shock_hits_floor(self):
        model = _model({"TKN": Decimal("1")})
        assert model.shock("TKN", Decimal("20"), sign=-1) == Decimal("0.01")


class TestStats:
    def test_change_and_window(self):
        model = _model({"TKN": Decimal("100")})
        model.shock("TKN", Decimal("1"), sign=1)   # 110
        model.shock("TKN", Decimal("1"), sign=-1)  # 99
        stats = model.stats("TKN", window=24)
        assert stats.current == Decimal("99")
        assert stats.change_pct == Decimal("-10.00")
        assert (stats.window_min, stats.window_max) == (Decimal("99"), Decimal("110"))
        assert stats.samples == 3

        narrow = model.stats("TKN", window=1)
        assert narrow.window_min == narrow.window_max == Decimal("99")

    def test_single_sample_has_zero_change(self):
        stats = _model({"TKN": Decimal("5")}).stats("TKN")
        assert stats.change_pct == Decimal("0")
        assert stats.samples == 1


class TestDeterminism:
    def test_same_seed_same_path(self):
        seeds = {"ETH": Decimal("2000"), "TKN": Decimal("1.5")}
        a = PriceModel(seeds, rng=random.Random(42), clock=FakeClock())
        b = PriceModel(seeds, rng=random.Random(42), clock=FakeClock())
        assert [a.step_all() for _ in range(10)] == [b.step_all() for _ in range(10)]
