"""
Failure taxonomy for ledger calls.

Raw errors (web3 exceptions, RPC error payloads, revert strings) are mapped
to an ErrorKind exactly once, where they leave the ledger adapter. Everything
above the adapter branches on `LedgerError.kind` and never looks at message
text.
"""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class ErrorKind(Enum):
    TRANSIENT_CONNECTIVITY = "transient_connectivity"
    NONCE_CONFLICT = "nonce_conflict"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    CIRCUIT_BREAKER_REJECTED = "circuit_breaker_rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SYSTEM_PAUSED = "system_paused"
    ALREADY_SETTLED = "already_settled"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ErrorPolicy:
    """What the loops do after a failure of a given kind."""
    retry: bool
    alert: bool = False


POLICIES = {
    ErrorKind.TRANSIENT_CONNECTIVITY: ErrorPolicy(retry=False),
    ErrorKind.NONCE_CONFLICT: ErrorPolicy(retry=True),
    ErrorKind.SLIPPAGE_EXCEEDED: ErrorPolicy(retry=False),
    ErrorKind.CIRCUIT_BREAKER_REJECTED: ErrorPolicy(retry=False),
    ErrorKind.INSUFFICIENT_FUNDS: ErrorPolicy(retry=False, alert=True),
    ErrorKind.SYSTEM_PAUSED: ErrorPolicy(retry=False),
    ErrorKind.ALREADY_SETTLED: ErrorPolicy(retry=False),
    ErrorKind.UNCLASSIFIED: ErrorPolicy(retry=False),
}


class LedgerError(Exception):
    """A ledger read or write failed; `kind` says how callers should react."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        tx_hash: Optional[str] = None,
        broadcast: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.tx_hash = tx_hash
        # True once the transaction reached the network (its sequence number is spent)
        self.broadcast = broadcast

    @property
    def retryable(self) -> bool:
        return POLICIES[self.kind].retry

    def __repr__(self) -> str:
        return f"LedgerError({self.kind.value}, {self.message!r})"


class StartupError(RuntimeError):
    """Unrecoverable misconfiguration detected before the loops start."""


# Revert reasons and RPC messages, lower-cased. Order matters: the first
# matching entry wins, so specific reasons come before generic ones.
_REASON_TABLE: Tuple[Tuple[str, ErrorKind], ...] = (
    ("price change too large", ErrorKind.CIRCUIT_BREAKER_REJECTED),
    ("circuit breaker", ErrorKind.CIRCUIT_BREAKER_REJECTED),
    ("slippage", ErrorKind.SLIPPAGE_EXCEEDED),
    ("insufficient output amount", ErrorKind.SLIPPAGE_EXCEEDED),
    ("insufficient funds", ErrorKind.INSUFFICIENT_FUNDS),
    ("insufficient liquidity", ErrorKind.INSUFFICIENT_FUNDS),
    ("insufficient balance", ErrorKind.INSUFFICIENT_FUNDS),
    ("exceeds balance", ErrorKind.INSUFFICIENT_FUNDS),
    ("nonce too low", ErrorKind.NONCE_CONFLICT),
    ("nonce too high", ErrorKind.NONCE_CONFLICT),
    ("replacement transaction underpriced", ErrorKind.NONCE_CONFLICT),
    ("already known", ErrorKind.NONCE_CONFLICT),
    ("nonce", ErrorKind.NONCE_CONFLICT),
    ("system paused", ErrorKind.SYSTEM_PAUSED),
    ("emergency stop", ErrorKind.SYSTEM_PAUSED),
    ("paused", ErrorKind.SYSTEM_PAUSED),
    ("already executed", ErrorKind.ALREADY_SETTLED),
    ("order not found", ErrorKind.ALREADY_SETTLED),
    ("position not open", ErrorKind.ALREADY_SETTLED),
    ("position not found", ErrorKind.ALREADY_SETTLED),
    ("not found", ErrorKind.ALREADY_SETTLED),
    ("cancelled", ErrorKind.ALREADY_SETTLED),
    ("other side closed", ErrorKind.TRANSIENT_CONNECTIVITY),
    ("connection error", ErrorKind.TRANSIENT_CONNECTIVITY),
    ("connection refused", ErrorKind.TRANSIENT_CONNECTIVITY),
    ("connection reset", ErrorKind.TRANSIENT_CONNECTIVITY),
    ("timed out", ErrorKind.TRANSIENT_CONNECTIVITY),
    ("timeout", ErrorKind.TRANSIENT_CONNECTIVITY),
    ("too many requests", ErrorKind.TRANSIENT_CONNECTIVITY),
    ("rate limit", ErrorKind.TRANSIENT_CONNECTIVITY),
)

# Exception type names treated as connectivity loss. Matched by name so that
# requests/aiohttp/urllib3 variants are covered without importing each one.
_CONNECTIVITY_TYPE_NAMES = {
    "ConnectionError",
    "ConnectTimeout",
    "ReadTimeout",
    "Timeout",
    "TimeoutError",
    "ProtocolError",
    "RemoteDisconnected",
    "ChunkedEncodingError",
    "ClientConnectionError",
    "ServerDisconnectedError",
    "ProviderConnectionError",
}


def classify_message(text: str) -> ErrorKind:
    """Map a revert reason or RPC error message to an ErrorKind."""
    lowered = (text or "").lower()
    for needle, kind in _REASON_TABLE:
        if needle in lowered:
            return kind
    return ErrorKind.UNCLASSIFIED


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map an arbitrary exception raised by web3 / the RPC transport to an ErrorKind.

    LedgerError passes through with its existing kind.
    """
    if isinstance(exc, LedgerError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, socket.timeout, ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT_CONNECTIVITY
    for cls in type(exc).__mro__:
        if cls.__name__ in _CONNECTIVITY_TYPE_NAMES:
            return ErrorKind.TRANSIENT_CONNECTIVITY
    return classify_message(_error_text(exc))


def _error_text(exc: BaseException) -> str:
    """Flatten web3 error payloads ({'code':..,'message':..}) into one string."""
    parts = [str(exc)]
    for attr in ("message", "data", "reason"):
        value = getattr(exc, attr, None)
        if value:
            parts.append(str(value))
    for arg in getattr(exc, "args", ()):
        if isinstance(arg, dict):
            parts.append(str(arg.get("message", "")))
    return " ".join(parts)


def to_ledger_error(
    exc: BaseException,
    tx_hash: Optional[str] = None,
    broadcast: bool = False,
) -> LedgerError:
    """Wrap any exception into a classified LedgerError."""
    if isinstance(exc, LedgerError):
        return exc
    return LedgerError(classify_error(exc), _error_text(exc).strip(), tx_hash=tx_hash, broadcast=broadcast)
