"""Tests for the deposit monitor."""

from __future__ import annotations

from dataclasses import replace

from tapchannel.chain.mempool.models import TxStatus
from tapchannel.engine.models.deposit import DepositStatus
from tests.conftest import DEPOSIT_TIME, block_dt


class TestScan:
    async def test_records_confirmed_deposit(self, engine, indexer, bound_wallet) -> None:
        indexer.fund(bound_wallet.taproot_address, "aa" * 32, 100_000)
        result = await engine.deposit_service.scan(bound_wallet.id, bound_wallet.taproot_address)

        assert result.new == 1
        assert result.updated == 0
        assert result.recalculated is True

        deposits = await engine.deposit_service.list_deposits(bound_wallet.id)
        assert len(deposits) == 1
        deposit = deposits[0]
        assert deposit.txid == "aa" * 32
        assert deposit.amount_sats == 100_000
        assert deposit.status == DepositStatus.CONFIRMED.value
        assert deposit.confirmations == 51
        assert deposit.confirmed_at == block_dt(DEPOSIT_TIME)
        assert deposit.consumed is False

        wallet = await engine.wallet_service.get_wallet(bound_wallet.id)
        assert wallet.l2_balance_sats == 100_000

    async def test_pending_deposit_does_not_count(self, engine, indexer, bound_wallet) -> None:
        indexer.fund(bound_wallet.taproot_address, "aa" * 32, 100_000, block_time=None)
        result = await engine.deposit_service.scan(bound_wallet.id, bound_wallet.taproot_address)

        assert result.new == 1
        assert result.recalculated is False
        deposit = (await engine.deposit_service.list_deposits(bound_wallet.id))[0]
        assert deposit.status == DepositStatus.PENDING.value
        assert deposit.confirmed_at is None
        wallet = await engine.wallet_service.get_wallet(bound_wallet.id)
        assert wallet.l2_balance_sats == 0

    async def test_pending_then_confirmed(self, engine, indexer, bound_wallet) -> None:
        address = bound_wallet.taproot_address
        indexer.fund(address, "aa" * 32, 100_000, block_time=None)
        await engine.deposit_service.scan(bound_wallet.id, address)

        tx = indexer.address_txs[address][0]
        indexer.address_txs[address][0] = replace(
            tx, status=TxStatus(confirmed=True, block_height=190, block_time=DEPOSIT_TIME)
        )
        result = await engine.deposit_service.scan(bound_wallet.id, address)

        assert result.new == 0
        assert result.updated == 1
        deposit = (await engine.deposit_service.list_deposits(bound_wallet.id))[0]
        assert deposit.status == DepositStatus.CONFIRMED.value
        assert deposit.confirmations == 11
        wallet = await engine.wallet_service.get_wallet(bound_wallet.id)
        assert wallet.l2_balance_sats == 100_000

    async def test_rescan_is_noop(self, engine, indexer, bound_wallet) -> None:
        indexer.fund(bound_wallet.taproot_address, "aa" * 32, 100_000)
        await engine.deposit_service.scan(bound_wallet.id, bound_wallet.taproot_address)
        again = await engine.deposit_service.scan(bound_wallet.id, bound_wallet.taproot_address)
        assert again.changed is False
        assert again.recalculated is False
        assert len(await engine.deposit_service.list_deposits(bound_wallet.id)) == 1

    async def test_sums_outputs_and_skips_unrelated(self, engine, indexer, bound_wallet) -> None:
        address = bound_wallet.taproot_address
        indexer.fund(address, "aa" * 32, 70_000, vout=1)
        indexer.fund("tb1qsomeoneelse", "bb" * 32, 5_000)
        indexer.address_txs[address].append(indexer.address_txs["tb1qsomeoneelse"][0])

        result = await engine.deposit_service.scan(bound_wallet.id, address)

        assert result.new == 1
        deposit = (await engine.deposit_service.list_deposits(bound_wallet.id))[0]
        assert deposit.amount_sats == 70_000

    async def test_indexer_failure_leaves_ledger(self, engine, indexer, bound_wallet) -> None:
        indexer.fund(bound_wallet.taproot_address, "aa" * 32, 100_000)
        indexer.fail = True
        result = await engine.deposit_service.scan(bound_wallet.id, bound_wallet.taproot_address)
        assert result.changed is False
        assert await engine.deposit_service.list_deposits(bound_wallet.id) == []

    async def test_counts_detected_deposits(self, engine, indexer, bound_wallet) -> None:
        indexer.fund(bound_wallet.taproot_address, "aa" * 32, 1_000)
        indexer.fund(bound_wallet.taproot_address, "bb" * 32, 2_000)
        await engine.deposit_service.scan(bound_wallet.id, bound_wallet.taproot_address)
        value = engine.metrics.registry.get_sample_value("tapchannel_deposits_detected_total")
        assert value == 2.0
