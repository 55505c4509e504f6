"""
Async facade over the blocking ledger adapter using a shared thread pool.

Reads are retried on transient connectivity failures with jittered
exponential backoff; writes are attempted exactly once because a resend
must go back through the GasNonceController. Every failure leaving this
module is a classified LedgerError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

from keeperbot.infra.clock import Clock
from keeperbot.ledger.errors import ErrorKind, LedgerError, to_ledger_error
from keeperbot.ledger.models import Order, Position, TxReceipt

log = logging.getLogger("keeperbot")

T = TypeVar("T")


class LedgerClient:
    def __init__(
        self,
        ledger: Any,
        timeout: float = 10.0,
        read_retries: int = 2,
        max_workers: int = 4,
        clock: Optional[Clock] = None,
    ) -> None:
        self._ledger = ledger
        self._timeout = timeout
        self._read_retries = read_retries
        self._clock = clock or Clock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger")

    # ========== Reads ==========

    async def get_order(self, order_id: int) -> Order:
        return await self._read("get_order", lambda: self._ledger.get_order(order_id))

    async def get_position(self, position_id: int) -> Position:
        return await self._read("get_position", lambda: self._ledger.get_position(position_id))

    async def get_next_order_id(self) -> int:
        return await self._read("get_next_order_id", self._ledger.get_next_order_id)

    async def get_next_position_id(self) -> int:
        return await self._read("get_next_position_id", self._ledger.get_next_position_id)

    async def get_price(self, asset: str) -> Decimal:
        return await self._read("get_price", lambda: self._ledger.get_price(asset))

    async def should_execute_order(self, order_id: int) -> bool:
        return await self._read("should_execute_order", lambda: self._ledger.should_execute_order(order_id))

    async def get_pause_flag(self) -> bool:
        return await self._read("get_pause_flag", self._ledger.get_pause_flag)

    async def get_account_sequence(self, address: str) -> int:
        return await self._read("get_account_sequence", lambda: self._ledger.get_account_sequence(address))

    async def get_fee_estimate(self) -> int:
        return await self._read("get_fee_estimate", self._ledger.get_fee_estimate)

    async def get_native_balance(self, address: str) -> Decimal:
        return await self._read("get_native_balance", lambda: self._ledger.get_native_balance(address))

    # ========== Writes ==========

    async def execute_order(
        self, signer: Any, order_id: int, nonce: int, gas_price: int, gas_limit: Optional[int] = None
    ) -> str:
        return await self._write(lambda: self._ledger.send_execute_order(signer, order_id, nonce, gas_price, gas_limit))

    async def liquidate_position(
        self, signer: Any, position_id: int, nonce: int, gas_price: int, gas_limit: Optional[int] = None
    ) -> str:
        return await self._write(
            lambda: self._ledger.send_liquidate_position(signer, position_id, nonce, gas_price, gas_limit)
        )

    async def update_price(
        self,
        signer: Any,
        asset: str,
        price: Decimal,
        nonce: int,
        gas_price: int,
        gas_limit: Optional[int] = None,
    ) -> str:
        return await self._write(
            lambda: self._ledger.send_update_price(signer, asset, price, nonce, gas_price, gas_limit)
        )

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        # No asyncio timeout here: the adapter enforces its own confirmation
        # deadline, and abandoning the wait would hide the outcome.
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, lambda: self._ledger.wait_for_receipt(tx_hash))
        except Exception as exc:
            raise to_ledger_error(exc, tx_hash=tx_hash, broadcast=True) from exc

    async def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ========== Internals ==========

    async def _read(self, label: str, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        backoff = 0.2
        for attempt in range(self._read_retries + 1):
            try:
                return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
            except Exception as exc:
                err = to_ledger_error(exc)
                if err.kind is not ErrorKind.TRANSIENT_CONNECTIVITY or attempt >= self._read_retries:
                    raise err from exc
                log.warning(json.dumps({
                    "event": "ledger_read_retry",
                    "call": label,
                    "attempt": attempt + 1,
                    "err": err.message[:200],
                }))
                await self._clock.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2
        raise LedgerError(ErrorKind.TRANSIENT_CONNECTIVITY, f"{label}: retries exhausted")

    async def _write(self, fn: Callable[[], str]) -> str:
        # Not bounded here: an abandoned executor thread could still broadcast
        # after the sequence was released. The provider request timeout bounds it.
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn)
        except Exception as exc:
            raise to_ledger_error(exc, broadcast=False) from exc
