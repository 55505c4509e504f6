"""
Tests for GasNonceController.

Covers:
- Startup sequence load (and fatal failure)
- No sequence issued twice across sequential and concurrent submissions
- Dirty state after a non-broadcast failure forces a resync
- Gas estimate headroom, fallback bump and cap
- Receipt failures returned, not raised
"""
import asyncio

import pytest

from conftest import FakeLedger, FakeSigner, KEEPER_ADDR
from keeperbot.ledger.errors import ErrorKind, LedgerError, StartupError
from keeperbot.nonce import GWEI, GasConfig, GasNonceController


@pytest.fixture
def fake():
    ledger = FakeLedger()
    ledger.sequences[KEEPER_ADDR] = 7
    return ledger


@pytest.fixture
def signer():
    return FakeSigner(KEEPER_ADDR)


@pytest.fixture
def controller(fake):
    return GasNonceController(fake, KEEPER_ADDR, GasConfig(initial_gas_price_wei=1 * GWEI))


def _send(fake, signer, tag):
    return lambda seq, gas: fake.update_price(signer, "0xasset", tag, seq, gas)


class TestStartup:
    @pytest.mark.asyncio
    async def test_start_loads_pending_count(self, controller):
        assert await controller.start() == 7
        assert controller.next_sequence_value == 7

    @pytest.mark.asyncio
    async def test_start_failure_is_fatal(self, fake, controller):
        fake.read_errors["get_account_sequence"] = LedgerError(ErrorKind.TRANSIENT_CONNECTIVITY, "connection refused")
        with pytest.raises(StartupError):
            await controller.start()

    @pytest.mark.asyncio
    async def test_next_sequence_without_start_resyncs(self, controller):
        assert await controller.next_sequence() == 7
        assert controller.resync_count == 1


class TestSequencing:
    @pytest.mark.asyncio
    async def test_sequential_submissions_use_consecutive_sequences(self, fake, signer, controller):
        await controller.start()
        results = [await controller.submit(f"p{i}", _send(fake, signer, i)) for i in range(5)]
        assert all(r.success for r in results)
        assert [r.sequence for r in results] == [7, 8, 9, 10, 11]
        assert controller.resync_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_submissions_are_serialized(self, fake, signer, controller):
        await controller.start()
        results = await asyncio.gather(*(controller.submit(f"p{i}", _send(fake, signer, i)) for i in range(4)))
        sequences = [r.sequence for r in results]
        assert len(set(sequences)) == 4
        assert sorted(sequences) == [7, 8, 9, 10]
        assert [s[-2] for s in fake.sent] == [7, 8, 9, 10]

    @pytest.mark.asyncio
    async def test_failed_send_marks_dirty_and_next_submit_resyncs(self, fake, signer, controller):
        await controller.start()
        fake.send_errors = [LedgerError(ErrorKind.SLIPPAGE_EXCEEDED, "slippage")]
        first = await controller.submit("a", _send(fake, signer, 1))
        assert first.kind is ErrorKind.SLIPPAGE_EXCEEDED
        second = await controller.submit("b", _send(fake, signer, 2))
        assert second.success
        # the unbroadcast sequence 7 is reused only after reloading it from the ledger
        assert second.sequence == 7
        assert controller.resync_count == 1

    @pytest.mark.asyncio
    async def test_external_transaction_causes_conflict(self, fake, signer, controller):
        await controller.start()
        fake.sequences[KEEPER_ADDR] = 9  # someone else used the account
        result = await controller.submit("a", _send(fake, signer, 1))
        assert result.kind is ErrorKind.NONCE_CONFLICT
        assert await controller.resync() == 9

    @pytest.mark.asyncio
    async def test_broadcast_failure_keeps_sequence_consumed(self, fake, signer, controller):
        await controller.start()
        fake.receipt_errors["0x%064x" % 1] = LedgerError(
            ErrorKind.SLIPPAGE_EXCEEDED, "reverted: slippage", tx_hash="0x1", broadcast=True)
        first = await controller.submit("a", _send(fake, signer, 1))
        assert first.kind is ErrorKind.SLIPPAGE_EXCEEDED
        second = await controller.submit("b", _send(fake, signer, 2))
        assert second.sequence == 8
        assert controller.resync_count == 0


class TestGasPrice:
    @pytest.mark.asyncio
    async def test_estimate_adds_headroom(self, fake, controller):
        fake.fee_estimate = 10 * GWEI
        assert await controller.estimate_gas_price() == 12 * GWEI

    @pytest.mark.asyncio
    async def test_fallback_bumps_last_price(self, fake, controller):
        fake.read_errors["get_fee_estimate"] = LedgerError(ErrorKind.TRANSIENT_CONNECTIVITY, "timeout")
        assert await controller.estimate_gas_price() == 1_100_000_000
        assert await controller.estimate_gas_price() == 1_210_000_000

    @pytest.mark.asyncio
    async def test_cap_applies(self, fake):
        fake.fee_estimate = 500 * GWEI
        capped = GasNonceController(fake, KEEPER_ADDR, GasConfig(max_gas_price_wei=100 * GWEI))
        assert await capped.estimate_gas_price() == 100 * GWEI

    @pytest.mark.asyncio
    async def test_submit_passes_gas_price_to_send(self, fake, signer, controller):
        await controller.start()
        result = await controller.submit("a", _send(fake, signer, 1))
        assert result.gas_price == 12 * GWEI
        assert fake.sent[0][-1] == 12 * GWEI
