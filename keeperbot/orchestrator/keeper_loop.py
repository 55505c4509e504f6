"""
KeeperLoop: periodic scan of pending orders and open positions.

Per cycle:
    IDLE -> CHECK_PAUSE -> (paused) WAIT -> IDLE
                        -> SCAN_ORDERS -> SCAN_POSITIONS -> SLEEP -> IDLE

SCAN_ORDERS walks order ids 1..next_order_id-1 and submits an execution for
every pending order the evaluator accepts. SCAN_POSITIONS runs on a coarser
cadence and submits liquidations. A failure on one id is logged with the id
and reason and never aborts the cycle.

Stopping is cooperative: the stop event is only observed between items and
at sleeps, so a submission already waiting for its receipt always finishes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Dict, List, Optional

from keeperbot.infra.clock import Clock
from keeperbot.ledger.errors import ErrorKind, LedgerError
from keeperbot.ledger.models import Order
from keeperbot.nonce import GasNonceController, SubmissionResult
from keeperbot.orchestrator.submission import failure_kind, log_failure, submit_with_resync
from keeperbot.risk.circuit_breaker import CircuitBreaker
from keeperbot.status import StatusGate
from keeperbot.strategy.eligibility import (
    DEFAULT_POLICY,
    LegPolicy,
    evaluate_liquidation,
    evaluate_order,
    tracked_asset,
)

log = logging.getLogger("keeperbot")


class KeeperState(Enum):
    IDLE = auto()
    CHECK_PAUSE = auto()
    WAIT = auto()
    SCAN_ORDERS = auto()
    SCAN_POSITIONS = auto()
    SLEEP = auto()


@dataclass
class KeeperConfig:
    cycle_interval_sec: float = 5.0
    position_scan_every: int = 2  # scan positions every Nth cycle
    liquidation_threshold_pct: int = -90
    confirm_on_chain: bool = False  # ask shouldExecuteOrder() before spending gas
    diagnostics_every: int = 0  # 0 = off
    low_balance_warn: Decimal = Decimal("0")
    leg_policy: LegPolicy = DEFAULT_POLICY
    execute_gas_limit: Optional[int] = None
    liquidate_gas_limit: Optional[int] = None


@dataclass
class CycleResult:
    """What one keeper cycle saw and did."""
    cycle: int
    paused: bool = False
    stopped: bool = False
    orders_pending: int = 0
    orders_executed: int = 0
    orders_skipped: int = 0
    orders_failed: int = 0
    positions_scanned: bool = False
    positions_open: int = 0
    positions_liquidated: int = 0
    positions_skipped: int = 0
    positions_failed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "orders": {
                "pending": self.orders_pending,
                "executed": self.orders_executed,
                "skipped": self.orders_skipped,
                "failed": self.orders_failed,
            },
            "positions": {
                "scanned": self.positions_scanned,
                "open": self.positions_open,
                "liquidated": self.positions_liquidated,
                "skipped": self.positions_skipped,
                "failed": self.positions_failed,
            },
            "errors": len(self.errors),
            "duration_ms": round(self.duration_ms, 1),
        }


class KeeperLoop:
    def __init__(
        self,
        ledger: Any,
        controller: GasNonceController,
        signer: Any,
        gate: StatusGate,
        config: Optional[KeeperConfig] = None,
        clock: Optional[Clock] = None,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[Any] = None,
        alerts: Optional[Any] = None,
        name: str = "keeper",
    ) -> None:
        self.ledger = ledger
        self.controller = controller
        self.signer = signer
        self.gate = gate
        self.config = config or KeeperConfig()
        self.clock = clock or Clock()
        self.breaker = breaker or CircuitBreaker(clock=self.clock, name=name)
        self.metrics = metrics
        self.alerts = alerts
        self.name = name

        self.state = KeeperState.IDLE
        self._cycle = 0
        self._stop = asyncio.Event()

    @property
    def cycle_count(self) -> int:
        return self._cycle

    def stop(self) -> None:
        """Ask the loop to exit at its next suspension point."""
        self._stop.set()

    def _log_event(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, "loop": self.name, **kwargs}, default=str))

    def _transition(self, state: KeeperState) -> None:
        self.state = state

    # ========== Main loop ==========

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        if stop_event is not None:
            self._stop = stop_event
        self._log_event("loop_start", account=self.controller.account,
                        interval_sec=self.config.cycle_interval_sec,
                        threshold_pct=self.config.liquidation_threshold_pct)
        if self.metrics:
            self.metrics.loop_started.labels(loop=self.name).inc()

        while not self._stop.is_set():
            if self.breaker.is_tripped:
                self._transition(KeeperState.SLEEP)
                await self.clock.sleep(self.breaker.cooldown_remaining, self._stop)
                self._transition(KeeperState.IDLE)
                continue

            result = await self.run_cycle()
            if result.paused or result.stopped:
                continue
            self._transition(KeeperState.SLEEP)
            await self.clock.sleep(self.config.cycle_interval_sec, self._stop)
            self._transition(KeeperState.IDLE)

        self._log_event("loop_stop", cycles=self._cycle)

    async def run_cycle(self) -> CycleResult:
        start = time.perf_counter()
        self._cycle += 1
        result = CycleResult(cycle=self._cycle)

        self._transition(KeeperState.CHECK_PAUSE)
        if await self.gate.is_paused():
            self._transition(KeeperState.WAIT)
            result.paused = True
            self._set_paused_metric(True)
            resumed = await self.gate.wait_until_unpaused(self._stop)
            result.stopped = not resumed
            self._transition(KeeperState.IDLE)
            result.duration_ms = (time.perf_counter() - start) * 1000
            if self.metrics:
                self.metrics.cycles.labels(loop=self.name, outcome="paused").inc()
            return result
        self._set_paused_metric(False)

        prices: Dict[str, Optional[Decimal]] = {}

        self._transition(KeeperState.SCAN_ORDERS)
        await self._scan_orders(prices, result)

        if not self._stop.is_set() and self._position_cycle():
            self._transition(KeeperState.SCAN_POSITIONS)
            result.positions_scanned = True
            await self._scan_positions(prices, result)

        if self._diagnostics_cycle():
            await self._account_diagnostics()

        if result.errors:
            tripped = self.breaker.record_error("cycle", Exception("; ".join(result.errors)))
            if tripped and self.alerts:
                await self.alerts.alert_circuit_breaker(self.name, "ledger reads failing repeatedly",
                                                        errors=result.errors[:3])
        else:
            self.breaker.record_success()

        result.stopped = self._stop.is_set()
        result.duration_ms = (time.perf_counter() - start) * 1000
        self._log_event("cycle_summary", **result.summary())
        if self.metrics:
            outcome = "error" if result.errors else "ok"
            self.metrics.cycles.labels(loop=self.name, outcome=outcome).inc()
            self.metrics.cycle_duration_ms.labels(loop=self.name).observe(result.duration_ms)
            self.metrics.pending_orders.labels(loop=self.name).set(result.orders_pending)
            if result.positions_scanned:
                self.metrics.open_positions.labels(loop=self.name).set(result.positions_open)
        return result

    def _position_cycle(self) -> bool:
        every = max(1, self.config.position_scan_every)
        return self._cycle % every == 0

    def _diagnostics_cycle(self) -> bool:
        every = self.config.diagnostics_every
        return every > 0 and self._cycle % every == 0

    # ========== Orders ==========

    async def _scan_orders(self, prices: Dict[str, Optional[Decimal]], result: CycleResult) -> None:
        try:
            next_id = await self.ledger.get_next_order_id()
        except LedgerError as exc:
            self._record_read_error("get_next_order_id", exc, result)
            return

        for order_id in range(1, next_id):
            if self._stop.is_set():
                return
            try:
                await self._process_order(order_id, prices, result)
            except Exception as exc:
                result.orders_failed += 1
                self._log_event("order_error", logging.WARNING, id=order_id, err=str(exc)[:300])

    async def _process_order(self, order_id: int, prices: Dict[str, Optional[Decimal]], result: CycleResult) -> None:
        try:
            order = await self.ledger.get_order(order_id)
        except LedgerError as exc:
            if exc.kind is ErrorKind.ALREADY_SETTLED:
                return
            result.orders_failed += 1
            self._log_event("order_read_error", logging.WARNING, id=order_id, kind=exc.kind.value, err=exc.message[:200])
            return
        if not order.is_pending:
            return

        result.orders_pending += 1
        asset = tracked_asset(order, self.config.leg_policy)
        price = await self._price(asset, prices)
        price_in = price if asset == order.token_in else None
        price_out = price if asset == order.token_out else None
        eligible, reason = evaluate_order(order, price_in, price_out, self.config.leg_policy)
        if not eligible:
            result.orders_skipped += 1
            self._log_event("order_not_eligible", logging.DEBUG, id=order_id, reason=reason)
            return

        self._log_event("order_eligible", id=order_id, reason=reason, **order.describe())
        if self.config.confirm_on_chain and not await self._confirmed_on_chain(order):
            result.orders_skipped += 1
            return

        if not await self._writable("order", order_id):
            result.orders_skipped += 1
            return

        submission = await self._submit(
            "order", order_id,
            lambda seq, gas: self.ledger.execute_order(self.signer, order_id, seq, gas, self.config.execute_gas_limit),
        )
        if submission.success:
            result.orders_executed += 1
            self._log_event("order_executed", id=order_id, tx=submission.receipt.tx_hash,
                            sequence=submission.sequence, gas_price=submission.gas_price, kind=order.kind.name)
            if self.metrics:
                self.metrics.orders_executed.labels(loop=self.name, kind=order.kind.name).inc()
        else:
            result.orders_failed += 1

    async def _confirmed_on_chain(self, order: Order) -> bool:
        try:
            ok = await self.ledger.should_execute_order(order.id)
        except LedgerError as exc:
            self._log_event("order_confirm_error", logging.WARNING, id=order.id, kind=exc.kind.value, err=exc.message[:200])
            return False
        if not ok:
            self._log_event("order_declined_on_chain", id=order.id)
        return ok

    # ========== Positions ==========

    async def _scan_positions(self, prices: Dict[str, Optional[Decimal]], result: CycleResult) -> None:
        try:
            next_id = await self.ledger.get_next_position_id()
        except LedgerError as exc:
            self._record_read_error("get_next_position_id", exc, result)
            return

        for position_id in range(1, next_id):
            if self._stop.is_set():
                return
            try:
                await self._process_position(position_id, prices, result)
            except Exception as exc:
                result.positions_failed += 1
                self._log_event("position_error", logging.WARNING, id=position_id, err=str(exc)[:300])

    async def _process_position(self, position_id: int, prices: Dict[str, Optional[Decimal]], result: CycleResult) -> None:
        try:
            position = await self.ledger.get_position(position_id)
        except LedgerError as exc:
            if exc.kind is ErrorKind.ALREADY_SETTLED:
                return
            result.positions_failed += 1
            self._log_event("position_read_error", logging.WARNING, id=position_id, kind=exc.kind.value, err=exc.message[:200])
            return
        if not position.is_open:
            return

        result.positions_open += 1
        price = await self._price(position.token, prices)
        if price is None or price <= 0:
            result.positions_skipped += 1
            self._log_event("position_not_eligible", logging.DEBUG, id=position_id, reason="price unavailable")
            return

        eligible, ratio = evaluate_liquidation(position, price, self.config.liquidation_threshold_pct)
        if not eligible:
            result.positions_skipped += 1
            self._log_event("position_not_eligible", logging.DEBUG, id=position_id, pnl_ratio=ratio)
            return

        self._log_event("position_liquidatable", id=position_id, pnl_ratio=ratio, price=str(price), **position.describe())
        if not await self._writable("position", position_id):
            result.positions_skipped += 1
            return

        submission = await self._submit(
            "position", position_id,
            lambda seq, gas: self.ledger.liquidate_position(
                self.signer, position_id, seq, gas, self.config.liquidate_gas_limit),
        )
        if submission.success:
            result.positions_liquidated += 1
            self._log_event("position_liquidated", id=position_id, tx=submission.receipt.tx_hash,
                            sequence=submission.sequence, pnl_ratio=ratio)
            if self.metrics:
                self.metrics.positions_liquidated.labels(loop=self.name).inc()
        else:
            result.positions_failed += 1

    # ========== Shared ==========

    async def _price(self, asset: str, prices: Dict[str, Optional[Decimal]]) -> Optional[Decimal]:
        """Read each asset's price at most once per cycle; failures cache as None."""
        if asset in prices:
            return prices[asset]
        try:
            prices[asset] = await self.ledger.get_price(asset)
        except LedgerError as exc:
            prices[asset] = None
            self._log_event("price_read_error", logging.WARNING, asset=asset, kind=exc.kind.value, err=exc.message[:200])
        return prices[asset]

    async def _writable(self, item: str, item_id: int) -> bool:
        if await self.gate.is_paused():
            self._log_event("submission_deferred", item=item, id=item_id, reason="system paused")
            return False
        return True

    async def _submit(self, item: str, item_id: int, send: Any) -> SubmissionResult:
        unfunded: List[str] = []

        def on_failure(res: SubmissionResult, action: str) -> None:
            log_failure(self.name, item, item_id, res, action)
            kind = failure_kind(res)
            if self.metrics:
                self.metrics.submission_failures.labels(loop=self.name, kind=kind.value).inc()
                if action == "retried":
                    self.metrics.nonce_resyncs.labels(loop=self.name).inc()
            if kind is ErrorKind.INSUFFICIENT_FUNDS and action == "skipped":
                unfunded.append(res.error.message if res.error else "")

        submission = await submit_with_resync(self.controller, f"{item}:{item_id}", send,
                                              clock=self.clock, on_failure=on_failure)
        if unfunded and self.alerts:
            await self.alerts.alert_insufficient_funds(self.name, f"{item} {item_id}", unfunded[-1])
        if self.metrics:
            self.metrics.gas_price_gwei.labels(loop=self.name).set(submission.gas_price / 10 ** 9)
            if self.controller.next_sequence_value is not None:
                self.metrics.next_sequence.labels(loop=self.name).set(self.controller.next_sequence_value)
        return submission

    def _record_read_error(self, call: str, exc: LedgerError, result: CycleResult) -> None:
        result.errors.append(f"{call}: {exc.kind.value}")
        self._log_event("cycle_read_error", logging.WARNING, call=call, kind=exc.kind.value, err=exc.message[:200])
        if self.metrics:
            self.metrics.read_errors.labels(loop=self.name, kind=exc.kind.value).inc()

    def _set_paused_metric(self, paused: bool) -> None:
        if self.metrics:
            self.metrics.paused.labels(loop=self.name).set(1 if paused else 0)

    async def _account_diagnostics(self) -> None:
        account = self.controller.account
        try:
            balance = await self.ledger.get_native_balance(account)
        except LedgerError as exc:
            self._log_event("diagnostics_error", logging.WARNING, kind=exc.kind.value, err=exc.message[:200])
            return
        self._log_event("account_diagnostics", account=account, balance=str(balance),
                        next_sequence=self.controller.next_sequence_value,
                        gas_price=self.controller.gas_price,
                        resyncs=self.controller.resync_count,
                        breaker=self.breaker.get_state())
        if self.metrics:
            self.metrics.account_balance.labels(loop=self.name).set(float(balance))
        threshold = self.config.low_balance_warn
        if threshold > 0 and balance < threshold:
            self._log_event("low_balance", logging.WARNING, account=account, balance=str(balance), threshold=str(threshold))
            if self.alerts:
                await self.alerts.alert_low_balance(self.name, account, balance, threshold)
