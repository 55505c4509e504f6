"""
Blocking web3 adapter for the router proxy and access-control contracts.

Every method here performs synchronous JSON-RPC calls; the async facade in
`keeperbot.ledger.client` runs them on a thread pool. Reads return domain
snapshots (Order, Position, Decimal prices); writes return a transaction
hash and never pick their own nonce or gas price.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from keeperbot.ledger.abi import ACCESS_CONTROL_ABI, ROUTER_ABI, output_names
from keeperbot.ledger.errors import (
    ErrorKind,
    LedgerError,
    classify_error,
    to_ledger_error,
)
from keeperbot.ledger.models import (
    Direction,
    Order,
    OrderKind,
    Position,
    PositionKind,
    TxReceipt,
    ZERO_ADDRESS,
    from_fixed,
    to_fixed,
)

log = logging.getLogger("keeperbot")

MIN_GAS_LIMIT = 21_000
GAS_ESTIMATE_HEADROOM = 1.20


def _as_hex(value: Any) -> str:
    if hasattr(value, "to_0x_hex"):
        return str(value.to_0x_hex())
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


class Web3Ledger:
    """Synchronous ledger access over a single HTTP provider."""

    def __init__(
        self,
        rpc_url: str,
        router_address: str,
        access_control_address: Optional[str] = None,
        chain_id: Optional[int] = None,
        request_timeout: float = 10.0,
        poa: bool = False,
        router_abi: Optional[List[Dict[str, Any]]] = None,
        token_decimals: Optional[Dict[str, int]] = None,
        receipt_timeout: float = 120.0,
        receipt_poll_sec: float = 0.5,
        w3: Optional[Web3] = None,
    ) -> None:
        if w3 is None:
            provider = Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
            w3 = Web3(provider)
            if poa:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = w3
        self._router_abi = router_abi or ROUTER_ABI
        self.router = w3.eth.contract(address=Web3.to_checksum_address(router_address), abi=self._router_abi)
        self.access_control = None
        if access_control_address:
            self.access_control = w3.eth.contract(
                address=Web3.to_checksum_address(access_control_address),
                abi=ACCESS_CONTROL_ABI,
            )
        self._chain_id = chain_id
        self._token_decimals = {k.lower(): int(v) for k, v in (token_decimals or {}).items()}
        self._order_fields = output_names(self._router_abi, "getOrder")
        self._position_fields = output_names(self._router_abi, "getPosition")
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_sec = receipt_poll_sec

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    # ========== Reads ==========

    def get_next_order_id(self) -> int:
        return int(self.router.functions.getNextOrderId().call())

    def get_next_position_id(self) -> int:
        return int(self.router.functions.getNextPositionId().call())

    def get_order(self, order_id: int) -> Order:
        raw = dict(zip(self._order_fields, self.router.functions.getOrder(order_id).call()))
        user = raw.get("user") or ZERO_ADDRESS
        if user.lower() == ZERO_ADDRESS:
            # Deleted (cancelled) orders come back as a zeroed struct
            raise LedgerError(ErrorKind.ALREADY_SETTLED, f"order {order_id} not found")
        token_in = raw.get("tokenIn", ZERO_ADDRESS)
        min_out = raw.get("minAmountOut")
        return Order(
            id=order_id,
            user=user,
            token_in=token_in,
            token_out=raw.get("tokenOut", ZERO_ADDRESS),
            amount_in=self._from_token_units(token_in, raw.get("amountIn", 0)),
            target_price=from_fixed(raw.get("targetPrice", 0)),
            kind=OrderKind(int(raw.get("orderType", 0))),
            direction=Direction.from_is_long(bool(raw.get("isLong", True))),
            executed=bool(raw.get("executed", False)),
            created_at=int(raw.get("createdAt", 0)),
            min_amount_out=from_fixed(min_out) if min_out is not None else None,
            triggered_at=int(raw.get("triggeredAt", 0)),
            slippage_bps=int(raw.get("slippage", 0)),
        )

    def get_position(self, position_id: int) -> Position:
        raw = dict(zip(self._position_fields, self.router.functions.getPosition(position_id).call()))
        user = raw.get("user") or ZERO_ADDRESS
        if user.lower() == ZERO_ADDRESS:
            raise LedgerError(ErrorKind.ALREADY_SETTLED, f"position {position_id} not found")
        return Position(
            id=position_id,
            user=user,
            token=raw.get("token", ZERO_ADDRESS),
            kind=PositionKind(int(raw.get("positionType", 0))),
            collateral=from_fixed(raw.get("collateral", 0)),
            leverage=int(raw.get("leverage", 1)),
            entry_price=from_fixed(raw.get("entryPrice", 0)),
            is_open=bool(raw.get("isOpen", False)),
        )

    def get_price(self, asset: str) -> Decimal:
        return from_fixed(self.router.functions.getPrice(Web3.to_checksum_address(asset)).call())

    def should_execute_order(self, order_id: int) -> bool:
        return bool(self.router.functions.shouldExecuteOrder(order_id).call())

    def get_pause_flag(self) -> bool:
        if self.access_control is None:
            return False
        return bool(self.access_control.functions.emergencyStop().call())

    def get_account_sequence(self, address: str) -> int:
        return int(self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"))

    def get_fee_estimate(self) -> int:
        return int(self.w3.eth.gas_price)

    def get_native_balance(self, address: str) -> Decimal:
        return from_fixed(self.w3.eth.get_balance(Web3.to_checksum_address(address)))

    # ========== Writes ==========

    def send_execute_order(
        self, signer: LocalAccount, order_id: int, nonce: int, gas_price: int, gas_limit: Optional[int] = None
    ) -> str:
        return self._send(self.router.functions.selfExecuteOrder(order_id), signer, nonce, gas_price, gas_limit)

    def send_liquidate_position(
        self, signer: LocalAccount, position_id: int, nonce: int, gas_price: int, gas_limit: Optional[int] = None
    ) -> str:
        return self._send(self.router.functions.liquidatePosition(position_id), signer, nonce, gas_price, gas_limit)

    def send_update_price(
        self,
        signer: LocalAccount,
        asset: str,
        price: Decimal,
        nonce: int,
        gas_price: int,
        gas_limit: Optional[int] = None,
    ) -> str:
        fn = self.router.functions.updateOraclePrice(Web3.to_checksum_address(asset), to_fixed(price))
        return self._send(fn, signer, nonce, gas_price, gas_limit)

    def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> TxReceipt:
        """
        Block until the transaction is mined.

        A reverted transaction is replayed with eth_call at its block to
        recover the revert reason, and raised as a classified LedgerError.
        """
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout if timeout is not None else self.receipt_timeout,
                poll_latency=self.receipt_poll_sec,
            )
        except TimeExhausted as exc:
            raise LedgerError(
                ErrorKind.UNCLASSIFIED,
                f"transaction not confirmed in time: {exc}",
                tx_hash=tx_hash,
                broadcast=True,
            ) from exc
        except Exception as exc:
            raise to_ledger_error(exc, tx_hash=tx_hash, broadcast=True) from exc

        result = TxReceipt(
            tx_hash=_as_hex(receipt.get("transactionHash", tx_hash)),
            status=int(receipt.get("status", 0)),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            effective_gas_price=receipt.get("effectiveGasPrice"),
        )
        if not result.succeeded:
            reason = self._revert_reason(tx_hash, result.block_number)
            raise LedgerError(classify_error(Exception(reason)), reason, tx_hash=tx_hash, broadcast=True)
        return result

    # ========== Internals ==========

    def _send(self, fn: Any, signer: LocalAccount, nonce: int, gas_price: int, gas_limit: Optional[int]) -> str:
        params: Dict[str, Any] = {
            "from": signer.address,
            "nonce": int(nonce),
            "gasPrice": int(gas_price),
            "chainId": self.chain_id,
        }
        if gas_limit:
            params["gas"] = int(gas_limit)
        try:
            # Without an explicit gas limit this runs eth_estimateGas, which is
            # where pre-flight reverts (slippage, circuit breaker) surface.
            tx = fn.build_transaction(params)
            if not gas_limit:
                tx["gas"] = max(MIN_GAS_LIMIT, int(int(tx["gas"]) * GAS_ESTIMATE_HEADROOM))
            signed = signer.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            raise to_ledger_error(exc, broadcast=False) from exc
        return _as_hex(tx_hash)

    def _revert_reason(self, tx_hash: str, block_number: Optional[int]) -> str:
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            call = {
                "from": tx["from"],
                "to": tx["to"],
                "data": tx["input"],
                "value": tx.get("value", 0),
            }
            self.w3.eth.call(call, block_identifier=block_number or "latest")
        except Exception as exc:
            return str(exc)
        return "transaction reverted (reason unavailable)"

    def _from_token_units(self, token: str, raw: int) -> Decimal:
        decimals = self._token_decimals.get((token or "").lower(), 18)
        return Decimal(int(raw)) / (Decimal(10) ** decimals)
