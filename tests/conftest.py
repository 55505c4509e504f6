"""
Shared fakes for keeper / feeder tests.

FakeClock advances virtual time instead of sleeping. FakeLedger mirrors the
LedgerClient async API over in-memory orders, positions and prices, and
enforces sequence ordering the way a node does (a stale sequence is a
NONCE_CONFLICT).
"""
import asyncio
import dataclasses
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import pytest

from keeperbot.ledger.errors import ErrorKind, LedgerError
from keeperbot.ledger.models import (
    Direction,
    Order,
    OrderKind,
    Position,
    PositionKind,
    TxReceipt,
    ZERO_ADDRESS,
)
from keeperbot.nonce import GWEI, GasConfig, GasNonceController
from keeperbot.status import StatusGate, StatusGateConfig

TKN = "0x00000000000000000000000000000000000000a1"
USD = "0x00000000000000000000000000000000000000b2"
BTC = "0x00000000000000000000000000000000000000c3"
KEEPER_ADDR = "0x1111111111111111111111111111111111111111"
FEEDER_ADDR = "0x2222222222222222222222222222222222222222"


class FakeClock:
    """Virtual clock: sleep() records the duration and advances time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.mono = 0.0
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.now += seconds
        self.mono += seconds

    async def sleep(self, seconds: float, stop_event: Optional[asyncio.Event] = None) -> bool:
        self.sleeps.append(seconds)
        self.advance(max(seconds, 0.0))
        await asyncio.sleep(0)
        return bool(stop_event is not None and stop_event.is_set())


class FakeSigner:
    def __init__(self, address: str):
        self.address = address


class FakeLedger:
    """In-memory ledger with scripted pause flags and send failures."""

    def __init__(self):
        self.orders: Dict[int, Order] = {}
        self.positions: Dict[int, Position] = {}
        self.prices: Dict[str, Decimal] = {}
        self.should_execute: Dict[int, bool] = {}
        self.paused = False
        self.pause_script: List[Any] = []
        self.sequences: Dict[str, int] = {}
        self.fee_estimate = 10 * GWEI
        self.balance = Decimal("1")
        self.send_errors: List[Optional[LedgerError]] = []
        self.read_errors: Dict[str, Exception] = {}
        self.receipt_errors: Dict[str, LedgerError] = {}
        self.attempts: List[tuple] = []
        self.sent: List[tuple] = []
        self.calls: Dict[str, int] = {}
        self.on_send: Optional[Callable[[tuple], None]] = None

    def add_order(self, order_id: int, **overrides) -> Order:
        fields = dict(
            id=order_id,
            user="0x9999999999999999999999999999999999999999",
            token_in=TKN,
            token_out=USD,
            amount_in=Decimal("1"),
            target_price=Decimal("100"),
            kind=OrderKind.LIMIT,
            direction=Direction.LONG,
            executed=False,
            created_at=0,
        )
        fields.update(overrides)
        order = Order(**fields)
        self.orders[order_id] = order
        return order

    def add_position(self, position_id: int, **overrides) -> Position:
        fields = dict(
            id=position_id,
            user="0x9999999999999999999999999999999999999999",
            token=TKN,
            kind=PositionKind.LONG,
            collateral=Decimal("10"),
            leverage=2,
            entry_price=Decimal("1000"),
            is_open=True,
        )
        fields.update(overrides)
        position = Position(**fields)
        self.positions[position_id] = position
        return position

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        err = self.read_errors.get(name)
        if err is not None:
            raise err

    # ---- reads ----

    async def get_next_order_id(self) -> int:
        self._count("get_next_order_id")
        return max(self.orders, default=0) + 1

    async def get_next_position_id(self) -> int:
        self._count("get_next_position_id")
        return max(self.positions, default=0) + 1

    async def get_order(self, order_id: int) -> Order:
        self._count("get_order")
        if order_id not in self.orders:
            raise LedgerError(ErrorKind.ALREADY_SETTLED, f"order {order_id} not found")
        order = self.orders[order_id]
        if isinstance(order, Exception):
            raise order
        return order

    async def get_position(self, position_id: int) -> Position:
        self._count("get_position")
        if position_id not in self.positions:
            raise LedgerError(ErrorKind.ALREADY_SETTLED, f"position {position_id} not found")
        return self.positions[position_id]

    async def get_price(self, asset: str) -> Decimal:
        self._count("get_price")
        if asset not in self.prices:
            raise LedgerError(ErrorKind.UNCLASSIFIED, f"no price for {asset}")
        return self.prices[asset]

    async def should_execute_order(self, order_id: int) -> bool:
        self._count("should_execute_order")
        return self.should_execute.get(order_id, True)

    async def get_pause_flag(self) -> bool:
        self._count("get_pause_flag")
        if self.pause_script:
            value = self.pause_script.pop(0)
            if isinstance(value, Exception):
                raise value
            return value
        return self.paused

    async def get_account_sequence(self, address: str) -> int:
        self._count("get_account_sequence")
        return self.sequences.get(address.lower(), 0)

    async def get_fee_estimate(self) -> int:
        self._count("get_fee_estimate")
        return self.fee_estimate

    async def get_native_balance(self, address: str) -> Decimal:
        self._count("get_native_balance")
        return self.balance

    # ---- writes ----

    async def _send(self, signer: Any, call: tuple, nonce: int, gas_price: int) -> str:
        self.attempts.append(call)
        if self.send_errors:
            err = self.send_errors.pop(0)
            if err is not None:
                raise err
        key = signer.address.lower()
        expected = self.sequences.get(key, 0)
        if nonce != expected:
            raise LedgerError(ErrorKind.NONCE_CONFLICT, f"nonce too low: next nonce {expected}, tx nonce {nonce}")
        self.sequences[key] = expected + 1
        record = call + (nonce, gas_price)
        self.sent.append(record)
        if self.on_send:
            self.on_send(record)
        return "0x%064x" % len(self.sent)

    async def execute_order(self, signer, order_id, nonce, gas_price, gas_limit=None) -> str:
        tx = await self._send(signer, ("execute", order_id), nonce, gas_price)
        self.orders[order_id] = dataclasses.replace(self.orders[order_id], executed=True)
        return tx

    async def liquidate_position(self, signer, position_id, nonce, gas_price, gas_limit=None) -> str:
        tx = await self._send(signer, ("liquidate", position_id), nonce, gas_price)
        self.positions[position_id] = dataclasses.replace(self.positions[position_id], is_open=False)
        return tx

    async def update_price(self, signer, asset, price, nonce, gas_price, gas_limit=None) -> str:
        tx = await self._send(signer, ("price", asset, price), nonce, gas_price)
        self.prices[asset] = price
        return tx

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        err = self.receipt_errors.pop(tx_hash, None)
        if err is not None:
            raise err
        return TxReceipt(tx_hash=tx_hash, status=1, block_number=len(self.sent))

    async def close(self) -> None:
        pass


def conflict(message: str = "nonce too low") -> LedgerError:
    return LedgerError(ErrorKind.NONCE_CONFLICT, message)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    fake = FakeLedger()
    fake.prices = {TKN: Decimal("110"), USD: Decimal("1"), ZERO_ADDRESS: Decimal("2000")}
    return fake


@pytest.fixture
def keeper_signer():
    return FakeSigner(KEEPER_ADDR)


@pytest.fixture
def feeder_signer():
    return FakeSigner(FEEDER_ADDR)


@pytest.fixture
def gas_config():
    return GasConfig(initial_gas_price_wei=1 * GWEI)


def make_controller(ledger, signer, name="keeper", config=None):
    return GasNonceController(ledger, signer.address, config or GasConfig(), name=name)


def make_gate(ledger, clock, name="keeper", **kwargs):
    return StatusGate(ledger, StatusGateConfig(**kwargs), clock=clock, name=name)
