"""
Wiring and supervision for the keeper and feeder loops.

Each loop owns its own signing account, GasNonceController and StatusGate;
they share only the LedgerClient thread pool, metrics and alerting. A loop
that dies stops its sibling through the shared stop event, so the sibling
finishes any confirmation it is waiting on before exiting.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Dict, List, Optional, Sequence

from keeperbot.config.config import Settings
from keeperbot.config.deployment import DeploymentConfig
from keeperbot.infra.clock import Clock
from keeperbot.ledger.abi import ROUTER_ABI, load_abi
from keeperbot.ledger.client import LedgerClient
from keeperbot.ledger.errors import StartupError
from keeperbot.ledger.web3_ledger import Web3Ledger
from keeperbot.nonce import GWEI, GasConfig, GasNonceController
from keeperbot.orchestrator.feeder_loop import FeederConfig, FeederLoop, ShockSpec
from keeperbot.orchestrator.keeper_loop import KeeperConfig, KeeperLoop
from keeperbot.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from keeperbot.status import StatusGate, StatusGateConfig
from keeperbot.strategy.eligibility import LegPolicy, PriceLeg
from keeperbot.strategy.price_model import PriceModel, PriceModelConfig

log = logging.getLogger("keeperbot")

ROLES = ("keeper", "feeder")


def build_ledger(cfg: Settings, deployment: DeploymentConfig, clock: Optional[Clock] = None) -> LedgerClient:
    try:
        abi = load_abi(cfg.router_abi_path, ROUTER_ABI)
    except (OSError, ValueError) as exc:
        raise StartupError(f"Cannot load router ABI from {cfg.router_abi_path}: {exc}") from exc
    adapter = Web3Ledger(
        cfg.rpc_url,
        deployment.router,
        access_control_address=deployment.access_control,
        chain_id=cfg.chain_id,
        request_timeout=cfg.http_timeout,
        poa=cfg.poa,
        router_abi=abi,
        token_decimals=deployment.token_decimals(),
        receipt_timeout=cfg.receipt_timeout,
    )
    return LedgerClient(adapter, timeout=cfg.http_timeout, read_retries=cfg.read_retries, clock=clock)


def check_accounts(signers: Dict[str, Any]) -> None:
    """Two loops sharing one account would race for sequence numbers."""
    seen: Dict[str, str] = {}
    for role, signer in signers.items():
        address = signer.address.lower()
        if address in seen:
            raise StartupError(f"{role} and {seen[address]} use the same account {signer.address}; "
                               "give each loop its own key")
        seen[address] = role


def _gas_config(cfg: Settings) -> GasConfig:
    return GasConfig(
        estimate_multiplier_pct=cfg.gas_estimate_pct,
        fallback_multiplier_pct=cfg.gas_fallback_pct,
        initial_gas_price_wei=int(cfg.gas_initial_gwei * GWEI),
        max_gas_price_wei=int(cfg.max_gas_gwei * GWEI),
    )


def build_keeper(
    cfg: Settings,
    ledger: LedgerClient,
    signer: Any,
    metrics: Any = None,
    alerts: Any = None,
    clock: Optional[Clock] = None,
) -> KeeperLoop:
    clock = clock or Clock()
    name = "keeper"
    controller = GasNonceController(ledger, signer.address, _gas_config(cfg), name=name)
    gate = StatusGate(
        ledger,
        StatusGateConfig(poll_interval_sec=cfg.keeper_pause_poll, fail_closed=cfg.pause_fail_closed),
        clock=clock,
        name=name,
        on_change=(lambda paused: alerts.alert_pause_change(name, paused)) if alerts else None,
    )
    breaker = CircuitBreaker(CircuitBreakerConfig(error_threshold=cfg.api_error_threshold), clock=clock, name=name)
    config = KeeperConfig(
        cycle_interval_sec=cfg.keeper_interval,
        position_scan_every=cfg.position_scan_every,
        liquidation_threshold_pct=cfg.liquidation_threshold_pct,
        confirm_on_chain=cfg.confirm_on_chain,
        diagnostics_every=cfg.diagnostics_every,
        low_balance_warn=cfg.low_balance_warn,
        leg_policy=LegPolicy(limit=PriceLeg(cfg.limit_price_leg), stop_loss=PriceLeg(cfg.stop_price_leg)),
    )
    return KeeperLoop(ledger, controller, signer, gate, config, clock=clock, breaker=breaker,
                      metrics=metrics, alerts=alerts, name=name)


def build_feeder(
    cfg: Settings,
    ledger: LedgerClient,
    signer: Any,
    deployment: DeploymentConfig,
    metrics: Any = None,
    alerts: Any = None,
    board: Any = None,
    clock: Optional[Clock] = None,
) -> FeederLoop:
    clock = clock or Clock()
    name = "feeder"
    try:
        shocks = ShockSpec.parse(cfg.feeder_shocks)
    except (ValueError, ArithmeticError) as exc:
        raise StartupError(f"KB_FEEDER_SHOCKS: {exc}") from exc

    model = PriceModel(
        deployment.seed_prices(),
        PriceModelConfig(history_cap=cfg.feeder_history_cap),
        rng=random.Random(cfg.feeder_seed),
        clock=clock,
    )
    controller = GasNonceController(ledger, signer.address, _gas_config(cfg), name=name)
    gate = StatusGate(
        ledger,
        StatusGateConfig(poll_interval_sec=cfg.feeder_pause_poll, fail_closed=cfg.pause_fail_closed),
        clock=clock,
        name=name,
        on_change=(lambda paused: alerts.alert_pause_change(name, paused)) if alerts else None,
    )
    breaker = CircuitBreaker(CircuitBreakerConfig(error_threshold=cfg.api_error_threshold), clock=clock, name=name)
    config = FeederConfig(
        update_interval_sec=cfg.feeder_update_interval,
        submit_delay_sec=cfg.feeder_submit_delay,
        nonce_retry_delay_sec=cfg.feeder_nonce_retry_delay,
        report_interval_sec=cfg.feeder_report_interval,
        stats_window=cfg.feeder_stats_window,
        gas_limit=cfg.feeder_gas_limit,
        shocks=shocks,
    )
    try:
        return FeederLoop(ledger, controller, signer, gate, model, deployment.asset_addresses(), config,
                          clock=clock, breaker=breaker, metrics=metrics, board=board, name=name)
    except ValueError as exc:
        raise StartupError(str(exc)) from exc


class LoopRunner:
    """Starts one loop after its sequence number is known."""

    def __init__(self, loop: Any) -> None:
        self.loop = loop
        self.task: Optional[asyncio.Task] = None
        self.error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self.loop.name

    async def prepare(self) -> None:
        await self.loop.controller.start()

    def launch(self, stop_event: asyncio.Event) -> None:
        self.task = asyncio.create_task(self.loop.run(stop_event), name=self.name)


async def run_all(loops: Sequence[Any], stop_event: asyncio.Event) -> None:
    """
    Start every loop and supervise them until all have exited.

    Startup failures (unreachable sequence number) propagate as StartupError
    before any loop runs.
    """
    runners: List[LoopRunner] = [LoopRunner(loop) for loop in loops]
    for runner in runners:
        await runner.prepare()
    for runner in runners:
        runner.launch(stop_event)

    async with asyncio.TaskGroup() as tg:
        for runner in runners:
            tg.create_task(_watch_loop(runner, stop_event))

    failed = [r for r in runners if r.error is not None]
    if failed:
        raise failed[0].error


async def _watch_loop(runner: LoopRunner, stop_event: asyncio.Event) -> None:
    try:
        await runner.task
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        runner.error = exc
        log.error(json.dumps({"event": "loop_run_error", "loop": runner.name, "err": str(exc)}))
        # Siblings exit at their next suspension point, never mid-confirmation.
        stop_event.set()
