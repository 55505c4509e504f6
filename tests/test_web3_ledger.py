"""
Tests for the blocking web3 adapter with a mocked Web3 instance.

Covers struct decoding by field name, transaction building with caller
supplied sequence and gas price, and receipt / revert classification.
"""
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from web3.exceptions import TimeExhausted

from conftest import TKN, USD
from keeperbot.ledger.abi import ROUTER_ABI, load_abi, output_names
from keeperbot.ledger.errors import ErrorKind, LedgerError
from keeperbot.ledger.models import Direction, OrderKind, PositionKind, ZERO_ADDRESS
from keeperbot.ledger.web3_ledger import Web3Ledger

ROUTER = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ACCESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
USER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
E18 = 10 ** 18


@pytest.fixture
def w3():
    return MagicMock()


@pytest.fixture
def ledger(w3):
    return Web3Ledger("http://unused", ROUTER, chain_id=31337, token_decimals={TKN: 6}, w3=w3)


@pytest.fixture
def signer():
    account = MagicMock()
    account.address = USER
    account.sign_transaction.return_value = MagicMock(raw_transaction=b"\x01\x02")
    return account


class TestReads:
    def test_order_decoded_by_field_name(self, ledger):
        raw = (USER, TKN, USD, 2 * 10 ** 6, 100 * E18, 0, 0, True, False, 1700, 0, 50)
        ledger.router.functions.getOrder.return_value.call.return_value = raw
        order = ledger.get_order(4)
        ledger.router.functions.getOrder.assert_called_with(4)
        assert order.id == 4
        assert order.amount_in == Decimal("2")
        assert order.target_price == Decimal("100")
        assert order.kind is OrderKind.LIMIT
        assert order.direction is Direction.LONG
        assert order.slippage_bps == 50
        assert order.is_pending

    def test_deleted_order_is_already_settled(self, ledger):
        raw = (ZERO_ADDRESS, ZERO_ADDRESS, ZERO_ADDRESS, 0, 0, 0, 0, False, False, 0, 0, 0)
        ledger.router.functions.getOrder.return_value.call.return_value = raw
        with pytest.raises(LedgerError) as info:
            ledger.get_order(9)
        assert info.value.kind is ErrorKind.ALREADY_SETTLED

    def test_position_decoded(self, ledger):
        raw = (USER, TKN, 10 * E18, 5, 1000 * E18, 1, True)
        ledger.router.functions.getPosition.return_value.call.return_value = raw
        pos = ledger.get_position(2)
        assert pos.kind is PositionKind.SHORT
        assert pos.entry_price == Decimal("1000")
        assert pos.leverage == 5
        assert pos.is_open

    def test_price_fixed_point(self, ledger):
        ledger.router.functions.getPrice.return_value.call.return_value = 1500000000000000000
        assert ledger.get_price(TKN) == Decimal("1.5")

    def test_pause_flag_without_access_control(self, ledger):
        assert ledger.get_pause_flag() is False

    def test_pause_flag_reads_emergency_stop(self, w3):
        ledger = Web3Ledger("http://unused", ROUTER, access_control_address=ACCESS, chain_id=1, w3=w3)
        ledger.access_control.functions.emergencyStop.return_value.call.return_value = True
        assert ledger.get_pause_flag() is True

    def test_sequence_uses_pending_count(self, ledger, w3):
        w3.eth.get_transaction_count.return_value = 12
        assert ledger.get_account_sequence(USER) == 12
        w3.eth.get_transaction_count.assert_called_once_with(USER, "pending")


class TestWrites:
    def test_execute_builds_with_given_sequence_and_gas(self, ledger, w3, signer):
        fn = ledger.router.functions.selfExecuteOrder.return_value
        fn.build_transaction.return_value = {"gas": 100_000}
        w3.eth.send_raw_transaction.return_value = b"\xab" * 32

        tx_hash = ledger.send_execute_order(signer, 7, nonce=3, gas_price=5_000)

        fn.build_transaction.assert_called_once_with(
            {"from": USER, "nonce": 3, "gasPrice": 5_000, "chainId": 31337})
        signed_tx = signer.sign_transaction.call_args.args[0]
        assert signed_tx["gas"] == 120_000
        assert tx_hash == "0x" + "ab" * 32

    def test_update_price_scales_and_keeps_gas_limit(self, ledger, w3, signer):
        fn = ledger.router.functions.updateOraclePrice.return_value
        fn.build_transaction.return_value = {"gas": 300_000}
        w3.eth.send_raw_transaction.return_value = b"\x01" * 32

        ledger.send_update_price(signer, TKN, Decimal("1.5"), 0, 1, gas_limit=300_000)

        args = ledger.router.functions.updateOraclePrice.call_args.args
        assert args[0].lower() == TKN
        assert args[1] == 15 * 10 ** 17
        assert fn.build_transaction.call_args.args[0]["gas"] == 300_000
        assert signer.sign_transaction.call_args.args[0]["gas"] == 300_000

    def test_preflight_revert_classified_not_broadcast(self, ledger, signer):
        fn = ledger.router.functions.liquidatePosition.return_value
        fn.build_transaction.side_effect = ValueError(
            {"code": 3, "message": "execution reverted: Position not open"})
        with pytest.raises(LedgerError) as info:
            ledger.send_liquidate_position(signer, 1, 0, 1)
        assert info.value.kind is ErrorKind.ALREADY_SETTLED
        assert info.value.broadcast is False


class TestReceipts:
    def test_success(self, ledger, w3):
        w3.eth.wait_for_transaction_receipt.return_value = {
            "transactionHash": b"\xcd" * 32, "status": 1, "blockNumber": 8, "gasUsed": 50_000,
        }
        receipt = ledger.wait_for_receipt("0x" + "cd" * 32)
        assert receipt.succeeded
        assert receipt.block_number == 8
        assert receipt.tx_hash == "0x" + "cd" * 32

    def test_revert_reason_recovered(self, ledger, w3):
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 8}
        w3.eth.get_transaction.return_value = {"from": USER, "to": ROUTER, "input": "0x", "value": 0}
        w3.eth.call.side_effect = ValueError("execution reverted: Price change too large")
        with pytest.raises(LedgerError) as info:
            ledger.wait_for_receipt("0xaa")
        assert info.value.kind is ErrorKind.CIRCUIT_BREAKER_REJECTED
        assert info.value.broadcast is True
        assert info.value.tx_hash == "0xaa"

    def test_timeout_is_broadcast_unclassified(self, ledger, w3):
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not mined")
        with pytest.raises(LedgerError) as info:
            ledger.wait_for_receipt("0xbb")
        assert info.value.kind is ErrorKind.UNCLASSIFIED
        assert info.value.broadcast is True


class TestAbi:
    def test_default_abi_field_names(self):
        assert output_names(ROUTER_ABI, "getPosition")[-1] == "isOpen"
        with pytest.raises(KeyError):
            output_names(ROUTER_ABI, "missing")

    def test_load_hardhat_artifact(self, tmp_path):
        path = tmp_path / "Router.json"
        path.write_text(json.dumps({"contractName": "Router", "abi": ROUTER_ABI[:2]}))
        assert load_abi(str(path), []) == ROUTER_ABI[:2]
        assert load_abi(None, ROUTER_ABI) is ROUTER_ABI

    def test_load_rejects_non_list(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"nope": 1}))
        with pytest.raises(ValueError):
            load_abi(str(path), [])
