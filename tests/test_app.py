"""
Tests for loop wiring and supervision.
"""
import asyncio
import dataclasses
import os
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import FEEDER_ADDR, KEEPER_ADDR, TKN, FakeLedger, FakeSigner
from keeperbot.app import build_feeder, build_keeper, check_accounts, run_all
from keeperbot.config.config import Settings
from keeperbot.config.deployment import DeploymentConfig, TokenInfo
from keeperbot.ledger.errors import StartupError
from keeperbot.orchestrator.feeder_loop import FeederLoop
from keeperbot.orchestrator.keeper_loop import KeeperLoop
from keeperbot.strategy.eligibility import PriceLeg

ROUTER = "0x5fbdb2315678afecb367f032d93f642f64180aa3"


@pytest.fixture
def settings(monkeypatch):
    for key in list(os.environ):
        if key.startswith("KB_"):
            monkeypatch.delenv(key)
    return Settings.load()


@pytest.fixture
def deployment():
    return DeploymentConfig(
        "deployment.json", ROUTER, None,
        tokens={"TKN": TokenInfo("TKN", TKN)},
        initial_prices={"ETH": Decimal("2000"), "TKN": Decimal("110")},
    )


class TestCheckAccounts:
    def test_distinct_accounts_pass(self):
        check_accounts({"keeper": FakeSigner(KEEPER_ADDR), "feeder": FakeSigner(FEEDER_ADDR)})

    def test_shared_account_rejected_case_insensitive(self):
        with pytest.raises(StartupError):
            check_accounts({"keeper": FakeSigner(KEEPER_ADDR), "feeder": FakeSigner(KEEPER_ADDR.upper())})


class TestBuild:
    def test_keeper_wired_from_settings(self, settings):
        keeper = build_keeper(settings, FakeLedger(), FakeSigner(KEEPER_ADDR))
        assert isinstance(keeper, KeeperLoop)
        assert keeper.name == "keeper"
        assert keeper.controller.account == KEEPER_ADDR
        assert keeper.config.liquidation_threshold_pct == -90
        assert keeper.config.leg_policy.limit is PriceLeg.NATIVE_RELATIVE
        assert keeper.config.leg_policy.stop_loss is PriceLeg.TOKEN_IN

    def test_feeder_tracks_native_and_tokens(self, settings, deployment):
        feeder = build_feeder(settings, FakeLedger(), FakeSigner(FEEDER_ADDR), deployment)
        assert isinstance(feeder, FeederLoop)
        assert feeder.controller.account == FEEDER_ADDR
        assert set(feeder.assets) == {"ETH", "TKN"}
        assert feeder.model.current("ETH") == Decimal("2000")

    def test_bad_shock_spec_is_startup_error(self, settings, deployment):
        cfg = dataclasses.replace(settings, feeder_shocks="ETH:2")
        with pytest.raises(StartupError):
            build_feeder(cfg, FakeLedger(), FakeSigner(FEEDER_ADDR), deployment)

    def test_unknown_shock_symbol_is_startup_error(self, settings, deployment):
        cfg = dataclasses.replace(settings, feeder_shocks="DOGE:2:30")
        with pytest.raises(StartupError):
            build_feeder(cfg, FakeLedger(), FakeSigner(FEEDER_ADDR), deployment)


class FakeLoop:
    def __init__(self, name, fail_after=None, start_error=None):
        self.name = name
        self.controller = AsyncMock()
        if start_error is not None:
            self.controller.start.side_effect = start_error
        self.fail_after = fail_after
        self.ran = False
        self.exited_cleanly = False

    async def run(self, stop_event):
        self.ran = True
        if self.fail_after is not None:
            await asyncio.sleep(self.fail_after)
            raise RuntimeError(f"{self.name} crashed")
        await stop_event.wait()
        self.exited_cleanly = True


class TestRunAll:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        loops = [FakeLoop("keeper"), FakeLoop("feeder")]
        stop = asyncio.Event()
        task = asyncio.create_task(run_all(loops, stop))
        await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, 1)
        assert all(loop.exited_cleanly for loop in loops)
        for loop in loops:
            loop.controller.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_stops_sibling_and_propagates(self):
        keeper = FakeLoop("keeper", fail_after=0.01)
        feeder = FakeLoop("feeder")
        stop = asyncio.Event()
        with pytest.raises(RuntimeError, match="keeper crashed"):
            await asyncio.wait_for(run_all([keeper, feeder], stop), 1)
        assert stop.is_set()
        assert feeder.exited_cleanly

    @pytest.mark.asyncio
    async def test_startup_error_before_any_loop_runs(self):
        keeper = FakeLoop("keeper")
        feeder = FakeLoop("feeder", start_error=StartupError("sequence unavailable"))
        with pytest.raises(StartupError):
            await run_all([keeper, feeder], asyncio.Event())
        assert not keeper.ran
        assert not feeder.ran
