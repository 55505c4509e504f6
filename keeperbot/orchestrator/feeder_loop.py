"""
FeederLoop: publishes PriceModel output to the ledger's price oracle.

Every update interval each tracked symbol is stepped once and the results are
published as one batch, one transaction at a time, with a short delay
between items. The status gate is checked before every item. A pause found
mid-batch defers the remainder; once the ledger is operational again the
whole batch is resubmitted from its first item, so a batch is never left
half applied.

A SYSTEM_PAUSED rejection while the flag reads operational backs off before
the restart and is retried only a few times per batch. Batches and shocks
share one publish lock, so a shock never lands between two batch items.

Two helper tasks run beside the main loop: a periodic report of per-symbol
statistics (observational only) and the configured one-shot price shocks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from keeperbot.infra.clock import Clock
from keeperbot.ledger.errors import ErrorKind
from keeperbot.nonce import GasNonceController, SubmissionResult
from keeperbot.orchestrator.submission import failure_kind, log_failure, submit_with_resync
from keeperbot.risk.circuit_breaker import CircuitBreaker
from keeperbot.status import StatusGate
from keeperbot.strategy.price_model import PriceModel, PriceStats

log = logging.getLogger("keeperbot")


@dataclass(frozen=True)
class ShockSpec:
    symbol: str
    multiplier: Decimal
    delay_sec: float

    @classmethod
    def parse(cls, text: str) -> Tuple["ShockSpec", ...]:
        """Parse "ETH:2:30,TKN:1.5:60" (symbol:multiplier:delay seconds)."""
        specs = []
        for chunk in (text or "").split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            parts = chunk.split(":")
            if len(parts) != 3:
                raise ValueError(f"bad shock spec {chunk!r}, expected SYMBOL:MULTIPLIER:DELAY")
            specs.append(cls(parts[0].strip(), Decimal(parts[1]), float(parts[2])))
        return tuple(specs)


@dataclass
class FeederConfig:
    update_interval_sec: float = 300.0
    submit_delay_sec: float = 1.0
    nonce_retry_delay_sec: float = 2.0
    report_interval_sec: float = 50.0
    stats_window: int = 24
    error_log_size: int = 10
    gas_limit: Optional[int] = 300_000
    # SYSTEM_PAUSED rejections per batch before the item is failed
    max_pause_restarts: int = 3
    shocks: Tuple[ShockSpec, ...] = ()


@dataclass(frozen=True)
class FeedError:
    timestamp: float
    symbol: str
    kind: ErrorKind
    message: str


@dataclass
class BatchResult:
    """Outcome of one batch, after any pause-driven restarts."""
    batch: int
    prices: Dict[str, Decimal]
    published: Dict[str, Decimal] = field(default_factory=dict)
    failed: Dict[str, ErrorKind] = field(default_factory=dict)
    deferrals: int = 0
    stopped: bool = False
    duration_ms: float = 0.0

    @property
    def complete(self) -> bool:
        return not self.stopped and len(self.published) + len(self.failed) == len(self.prices)


class FeederLoop:
    def __init__(
        self,
        ledger: Any,
        controller: GasNonceController,
        signer: Any,
        gate: StatusGate,
        model: PriceModel,
        assets: Mapping[str, str],
        config: Optional[FeederConfig] = None,
        clock: Optional[Clock] = None,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[Any] = None,
        board: Optional[Any] = None,
        name: str = "feeder",
    ) -> None:
        self.ledger = ledger
        self.controller = controller
        self.signer = signer
        self.gate = gate
        self.model = model
        self.assets = dict(assets)
        self.config = config or FeederConfig()
        self.clock = clock or Clock()
        self.breaker = breaker or CircuitBreaker(clock=self.clock, name=name)
        self.metrics = metrics
        self.board = board
        self.name = name

        missing = [s for s in model.symbols if s not in self.assets]
        if missing:
            raise ValueError(f"no asset address for symbols: {', '.join(missing)}")
        unknown = [s.symbol for s in self.config.shocks if s.symbol not in self.assets]
        if unknown:
            raise ValueError(f"shock configured for unknown symbols: {', '.join(unknown)}")

        self._errors: Deque[FeedError] = deque(maxlen=self.config.error_log_size)
        self._batch = 0
        self._stop = asyncio.Event()
        # one writer of prices at a time: batches and shocks
        self._publish_lock = asyncio.Lock()

    @property
    def recent_errors(self) -> List[FeedError]:
        return list(self._errors)

    @property
    def batch_count(self) -> int:
        return self._batch

    def stop(self) -> None:
        self._stop.set()

    def _log_event(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, "loop": self.name, **kwargs}, default=str))

    # ========== Main loop ==========

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        if stop_event is not None:
            self._stop = stop_event
        self._log_event("loop_start", account=self.controller.account, symbols=self.model.symbols,
                        interval_sec=self.config.update_interval_sec)
        if self.metrics:
            self.metrics.loop_started.labels(loop=self.name).inc()

        helpers = [asyncio.create_task(self._report_task(), name=f"{self.name}-report")]
        helpers += [asyncio.create_task(self._scheduled_shock(spec), name=f"{self.name}-shock-{spec.symbol}")
                    for spec in self.config.shocks]
        try:
            while not self._stop.is_set():
                if self.breaker.is_tripped:
                    await self.clock.sleep(self.breaker.cooldown_remaining, self._stop)
                    continue
                await self.tick()
                await self.clock.sleep(self.config.update_interval_sec, self._stop)
        except BaseException:
            for task in helpers:
                task.cancel()
            raise
        finally:
            for outcome in await asyncio.gather(*helpers, return_exceptions=True):
                if isinstance(outcome, Exception):
                    self._log_event("helper_task_error", logging.ERROR, err=str(outcome))
        self._log_event("loop_stop", batches=self._batch)

    async def tick(self) -> BatchResult:
        """Step every symbol once and publish the batch."""
        async with self._publish_lock:
            prices = self.model.step_all()
            if self.metrics:
                for symbol, price in prices.items():
                    self.metrics.model_price.labels(loop=self.name, symbol=symbol).set(float(price))
            result = await self._publish_batch(prices)

        connectivity = [k for k in result.failed.values() if k is ErrorKind.TRANSIENT_CONNECTIVITY]
        if result.failed and len(connectivity) == len(result.prices):
            self.breaker.record_error("price_batch", Exception(f"{len(connectivity)} updates lost connectivity"))
        elif result.published:
            self.breaker.record_success()
        return result

    async def publish_batch(self, prices: Mapping[str, Decimal]) -> BatchResult:
        async with self._publish_lock:
            return await self._publish_batch(prices)

    async def _publish_batch(self, prices: Mapping[str, Decimal]) -> BatchResult:
        start = time.perf_counter()
        self._batch += 1
        items = list(prices.items())
        result = BatchResult(batch=self._batch, prices=dict(prices))
        # SYSTEM_PAUSED rejections while the flag reads operational
        rejections = 0
        backoff = self.gate.config.poll_interval_sec

        while True:
            restart = False
            rejected = False
            for index, (symbol, price) in enumerate(items):
                if index > 0 and await self.clock.sleep(self.config.submit_delay_sec, self._stop):
                    result.stopped = True
                    break
                if await self.gate.is_paused():
                    restart = True
                else:
                    submission = await self._publish_one(symbol, price)
                    if submission.success:
                        result.published[symbol] = price
                        result.failed.pop(symbol, None)
                        continue
                    kind = failure_kind(submission)
                    if kind is not ErrorKind.SYSTEM_PAUSED:
                        result.failed[symbol] = kind
                        continue
                    if rejections >= self.config.max_pause_restarts:
                        result.failed[symbol] = kind
                        self._log_event("pause_restart_limit", level=logging.WARNING, batch=self._batch,
                                        symbol=symbol, restarts=rejections)
                        continue
                    rejections += 1
                    restart = rejected = True
                result.deferrals += 1
                self._log_event("batch_deferred", level=logging.WARNING, batch=self._batch,
                                deferred=[s for s, _ in items[index:]])
                if self.metrics:
                    self.metrics.batches_deferred.labels(loop=self.name).inc()
                if rejected:
                    if await self.clock.sleep(backoff, self._stop):
                        result.stopped = True
                        break
                    backoff = min(backoff * self.gate.config.backoff_multiplier,
                                  self.gate.config.max_poll_interval_sec)
                if not await self.gate.wait_until_unpaused(self._stop):
                    result.stopped = True
                break
            if result.stopped or not restart:
                break
            self._log_event("batch_resubmit", batch=self._batch, symbols=[s for s, _ in items])
            result.published.clear()
            result.failed.clear()

        result.duration_ms = (time.perf_counter() - start) * 1000
        self._log_event("batch_done", batch=self._batch, published=len(result.published),
                        failed={s: k.value for s, k in result.failed.items()},
                        deferrals=result.deferrals, stopped=result.stopped,
                        duration_ms=round(result.duration_ms, 1))
        return result

    async def _publish_one(self, symbol: str, price: Decimal) -> SubmissionResult:
        asset = self.assets[symbol]

        def send(seq: int, gas_price: int):
            return self.ledger.update_price(self.signer, asset, price, seq, gas_price, self.config.gas_limit)

        def on_failure(res: SubmissionResult, action: str) -> None:
            log_failure(self.name, "price", symbol, res, action)
            if self.metrics:
                self.metrics.submission_failures.labels(loop=self.name, kind=failure_kind(res).value).inc()
                if action == "retried":
                    self.metrics.nonce_resyncs.labels(loop=self.name).inc()

        submission = await submit_with_resync(
            self.controller, f"price:{symbol}", send,
            clock=self.clock, retry_delay_sec=self.config.nonce_retry_delay_sec, on_failure=on_failure,
        )
        if submission.success:
            self._log_event("price_published", symbol=symbol, price=str(price),
                            tx=submission.receipt.tx_hash, sequence=submission.sequence)
            outcome = "ok"
        else:
            kind = failure_kind(submission)
            message = submission.error.message if submission.error else "transaction reverted"
            self._errors.append(FeedError(self.clock.time(), symbol, kind, message))
            outcome = kind.value
        if self.metrics:
            self.metrics.price_updates.labels(loop=self.name, symbol=symbol, outcome=outcome).inc()
            self.metrics.gas_price_gwei.labels(loop=self.name).set(submission.gas_price / 10 ** 9)
        return submission

    # ========== Shocks ==========

    async def trigger_shock(self, symbol: str, multiplier: Decimal, sign: Optional[int] = None) -> Optional[SubmissionResult]:
        """
        Jump one symbol's price by +/- 10% x multiplier and publish it alone.

        The jump is always recorded in the model; the update is skipped while
        the ledger is paused. Returns None when skipped. A batch in flight
        finishes first, so the shocked price is the last one published.
        """
        async with self._publish_lock:
            before = self.model.current(symbol)
            price = self.model.shock(symbol, multiplier, sign)
            self._log_event("price_shock", symbol=symbol, multiplier=str(multiplier),
                            before=str(before), after=str(price))
            if self.metrics:
                self.metrics.shocks.labels(loop=self.name, symbol=symbol).inc()
            if await self.gate.is_paused():
                self._log_event("shock_skipped", symbol=symbol, reason="system paused")
                return None
            return await self._publish_one(symbol, price)

    async def _scheduled_shock(self, spec: ShockSpec) -> None:
        if await self.clock.sleep(spec.delay_sec, self._stop):
            return
        await self.trigger_shock(spec.symbol, spec.multiplier)

    # ========== Report ==========

    def report(self) -> List[PriceStats]:
        window = self.config.stats_window
        stats = [self.model.stats(symbol, window) for symbol in self.model.symbols]
        self._log_event("price_report", window=window, prices={
            s.symbol: {"price": str(s.current), "change_pct": str(s.change_pct),
                       "min": str(s.window_min), "max": str(s.window_max)}
            for s in stats
        }, errors=len(self._errors))
        if self.board:
            self.board.render(stats, self.recent_errors, window)
        return stats

    async def _report_task(self) -> None:
        while not await self.clock.sleep(self.config.report_interval_sec, self._stop):
            self.report()
