"""
Per-account sequence (nonce) and gas-price controller.

One controller owns one signing account. It holds a single asyncio.Lock for
the whole send + confirmation wait, so a loop never has two transactions in
flight and never issues the same sequence number twice unless it was
explicitly resynchronized from the ledger.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from keeperbot.ledger.errors import ErrorKind, LedgerError, StartupError
from keeperbot.ledger.models import TxReceipt

log = logging.getLogger("keeperbot")

GWEI = 10 ** 9


@dataclass
class GasConfig:
    """Gas price policy."""
    estimate_multiplier_pct: int = 120  # headroom over the network estimate
    fallback_multiplier_pct: int = 110  # bump applied to the last price when estimation fails
    initial_gas_price_wei: int = 1 * GWEI
    max_gas_price_wei: int = 0  # 0 = uncapped


@dataclass
class SubmissionResult:
    """Outcome of one sequenced submission."""
    label: str
    sequence: int
    gas_price: int
    receipt: Optional[TxReceipt] = None
    error: Optional[LedgerError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.receipt is not None and self.receipt.succeeded

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None


SendFn = Callable[[int, int], Awaitable[str]]


class GasNonceController:
    def __init__(
        self,
        ledger: Any,
        account: str,
        config: Optional[GasConfig] = None,
        name: str = "keeper",
    ) -> None:
        self.ledger = ledger
        self.account = account
        self.config = config or GasConfig()
        self.name = name
        self._lock = asyncio.Lock()
        self._next_sequence: Optional[int] = None
        self._gas_price = self.config.initial_gas_price_wei
        self._dirty = False
        self._resyncs = 0

    @property
    def next_sequence_value(self) -> Optional[int]:
        return self._next_sequence

    @property
    def gas_price(self) -> int:
        return self._gas_price

    @property
    def resync_count(self) -> int:
        return self._resyncs

    async def start(self) -> int:
        """Load the account's next usable sequence; failure here is fatal."""
        try:
            seq = await self.ledger.get_account_sequence(self.account)
        except LedgerError as exc:
            raise StartupError(f"{self.name}: cannot resolve initial sequence for {self.account}: {exc.message}") from exc
        self._next_sequence = int(seq)
        self._dirty = False
        self._log_event("sequence_loaded", sequence=self._next_sequence)
        return self._next_sequence

    async def resync(self, reason: str = "conflict") -> int:
        """Refresh the sequence from the ledger's pending transaction count."""
        previous = self._next_sequence
        self._next_sequence = int(await self.ledger.get_account_sequence(self.account))
        self._dirty = False
        self._resyncs += 1
        self._log_event("sequence_resync", previous=previous, sequence=self._next_sequence, reason=reason)
        return self._next_sequence

    async def next_sequence(self) -> int:
        """Return and reserve the next sequence number."""
        if self._next_sequence is None or self._dirty:
            await self.resync(reason="dirty" if self._dirty else "uninitialized")
        seq = self._next_sequence
        self._next_sequence = seq + 1
        return seq

    async def estimate_gas_price(self) -> int:
        """Network estimate plus headroom; on failure, bump the last known price."""
        cfg = self.config
        try:
            estimate = int(await self.ledger.get_fee_estimate())
            price = estimate * cfg.estimate_multiplier_pct // 100
        except LedgerError as exc:
            price = self._gas_price * cfg.fallback_multiplier_pct // 100
            self._log_event("gas_estimate_fallback", err=exc.message[:200], gas_price=price)
        if cfg.max_gas_price_wei > 0:
            price = min(price, cfg.max_gas_price_wei)
        self._gas_price = max(1, price)
        return self._gas_price

    async def submit(self, label: str, send: SendFn) -> SubmissionResult:
        """
        Send one transaction and wait for its terminal outcome.

        `send(sequence, gas_price)` must broadcast using exactly the values it
        is given and return the transaction hash. Failures are returned in the
        result, not raised.
        """
        async with self._lock:
            gas_price = await self.estimate_gas_price()
            try:
                seq = await self.next_sequence()
            except LedgerError as exc:
                return SubmissionResult(label=label, sequence=-1, gas_price=gas_price, error=exc)
            result = SubmissionResult(label=label, sequence=seq, gas_price=gas_price)
            try:
                tx_hash = await send(seq, gas_price)
            except LedgerError as exc:
                if not exc.broadcast:
                    # The ledger may or may not have consumed the sequence;
                    # reload it before the next reservation instead of guessing.
                    self._dirty = True
                result.error = exc
                return result
            try:
                result.receipt = await self.ledger.wait_for_receipt(tx_hash)
            except LedgerError as exc:
                result.error = exc
            return result

    def _log_event(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, "loop": self.name, "account": self.account, **kwargs}
        log.info(json.dumps(payload))
