"""
Ledger access package.

This package contains the web3 adapter for the router contracts, the async
client the loops use, the ledger snapshot models and the failure taxonomy.
"""

from keeperbot.ledger.client import LedgerClient
from keeperbot.ledger.errors import ErrorKind, LedgerError, StartupError, classify_error
from keeperbot.ledger.models import (
    Direction,
    Order,
    OrderKind,
    Position,
    PositionKind,
    TxReceipt,
    ZERO_ADDRESS,
)
from keeperbot.ledger.web3_ledger import Web3Ledger

__all__ = [
    "LedgerClient",
    "ErrorKind",
    "LedgerError",
    "StartupError",
    "classify_error",
    "Direction",
    "Order",
    "OrderKind",
    "Position",
    "PositionKind",
    "TxReceipt",
    "ZERO_ADDRESS",
    "Web3Ledger",
]
