"""Deposit monitor: mirrors funding transactions at the Taproot address into the ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select

from tapchannel.chain.mempool.client import confirmations_at
from tapchannel.engine.models.deposit import Deposit, DepositStatus
from tapchannel.errors.chain_errors import IndexerError

if TYPE_CHECKING:
    from tapchannel.engine.client import ChannelEngine

logger = logging.getLogger(__name__)


@dataclass
class DepositScanResult:
    """What a scan changed."""

    new: int = 0
    updated: int = 0
    recalculated: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.new or self.updated)


class DepositService:
    """Scans the chain indexer for deposits to a wallet's Taproot address."""

    def __init__(self, engine: ChannelEngine) -> None:
        self._engine = engine

    async def list_deposits(self, wallet_id: int) -> list[Deposit]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Deposit)
                .where(Deposit.wallet_id == wallet_id)
                .order_by(Deposit.created_at.desc(), Deposit.id.desc())
            )
            return list(result.scalars().all())

    async def scan(self, wallet_id: int, taproot_address: str) -> DepositScanResult:
        """Record new deposits and status transitions for *taproot_address*.

        Known deposits are only touched when their status changes or a block
        time becomes available. Indexer failures are logged and yield an
        empty result; the ledger is left as it was.
        """
        indexer = self._engine.indexer
        try:
            transactions = await indexer.get_address_transactions(taproot_address)
            tip = await indexer.get_tip_height()
        except IndexerError as exc:
            logger.warning("Deposit scan for wallet %d failed: %s", wallet_id, exc.message)
            return DepositScanResult()

        result = DepositScanResult()
        rebalance = False
        async with self._engine.datastore.session() as session:
            existing = {
                d.txid: d
                for d in (
                    await session.execute(select(Deposit).where(Deposit.wallet_id == wallet_id))
                ).scalars()
            }
            for tx in transactions:
                amount = tx.value_to(taproot_address)
                if amount <= 0:
                    continue
                confirmed = tx.status.confirmed
                status = DepositStatus.CONFIRMED if confirmed else DepositStatus.PENDING
                confirmed_at = tx.status.block_datetime if confirmed else None
                confirmations = confirmations_at(tip, tx.status.block_height) if confirmed else 0

                deposit = existing.get(tx.txid)
                if deposit is None:
                    session.add(
                        Deposit(
                            wallet_id=wallet_id,
                            txid=tx.txid,
                            amount_sats=amount,
                            status=status.value,
                            confirmations=confirmations,
                            confirmed_at=confirmed_at,
                        )
                    )
                    result.new += 1
                    rebalance = rebalance or confirmed
                    logger.info(
                        "New %s deposit %s of %d sats for wallet %d",
                        status.value,
                        tx.txid,
                        amount,
                        wallet_id,
                    )
                    continue

                status_changed = deposit.status != status.value
                gained_time = deposit.confirmed_at is None and confirmed_at is not None
                if not (status_changed or gained_time):
                    continue
                deposit.status = status.value
                deposit.confirmations = confirmations
                deposit.confirmed_at = confirmed_at
                result.updated += 1
                rebalance = True

            if result.changed:
                await session.commit()

        metrics = self._engine.metrics
        if metrics and result.new:
            metrics.record_deposits(result.new)
        if rebalance:
            await self._engine.balance_service.recalculate(wallet_id)
            result.recalculated = True
        return result
