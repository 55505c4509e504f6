"""
Snapshots of ledger state as seen by the keeper.

Orders and positions are read-only views of the ledger's structs; the keeper
never mutates them, it only decides whether to act. Amounts and prices are
Decimals in whole units. The ledger stores them as 18-decimal fixed-point
integers; conversion happens in the ledger adapter only.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Dict, Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

PRICE_DECIMALS = 18
PRICE_SCALE = 10 ** PRICE_DECIMALS


class OrderKind(Enum):
    """Order type as encoded by the ledger (uint8)."""
    LIMIT = 0
    STOP_LOSS = 1


class Direction(Enum):
    """Trade direction. The ledger encodes it as an isLong flag."""
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_is_long(cls, is_long: bool) -> "Direction":
        return cls.LONG if is_long else cls.SHORT


class PositionKind(Enum):
    """Position type as encoded by the ledger (uint8)."""
    LONG = 0
    SHORT = 1


def is_native(address: Optional[str]) -> bool:
    """True for the zero address, which the ledger uses for the native asset."""
    return bool(address) and address.lower() == ZERO_ADDRESS


def to_fixed(value: Decimal) -> int:
    """Whole units -> 18-decimal fixed-point integer (truncating)."""
    return int((Decimal(value) * PRICE_SCALE).to_integral_value(rounding=ROUND_DOWN))


def from_fixed(raw: int) -> Decimal:
    """18-decimal fixed-point integer -> whole units."""
    return Decimal(int(raw)) / PRICE_SCALE


@dataclass(frozen=True)
class Order:
    id: int
    user: str
    token_in: str
    token_out: str
    amount_in: Decimal
    target_price: Decimal
    kind: OrderKind
    direction: Direction
    executed: bool
    created_at: int
    min_amount_out: Optional[Decimal] = None
    triggered_at: int = 0
    slippage_bps: int = 0

    @property
    def is_pending(self) -> bool:
        return not self.executed

    def describe(self) -> Dict[str, Any]:
        return {
            "order_id": self.id,
            "kind": self.kind.name,
            "direction": self.direction.name,
            "target": str(self.target_price),
            "token_in": self.token_in,
            "token_out": self.token_out,
        }


@dataclass(frozen=True)
class Position:
    id: int
    user: str
    token: str
    kind: PositionKind
    collateral: Decimal
    leverage: int
    entry_price: Decimal
    is_open: bool

    def describe(self) -> Dict[str, Any]:
        return {
            "position_id": self.id,
            "kind": self.kind.name,
            "token": self.token,
            "entry": str(self.entry_price),
            "leverage": self.leverage,
        }


@dataclass(frozen=True)
class TxReceipt:
    """Terminal outcome of a confirmed transaction."""
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1
