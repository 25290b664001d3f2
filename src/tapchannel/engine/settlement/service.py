"""Settlement state machine: lock, broadcast, confirm or time out, and reconcile.

Per-wallet lifecycle, persisted on the wallet row::

    idle -> locked -> broadcast -> confirmed
                               \\-> timed_out

The lock (``settlement_in_progress``) is taken with one conditional UPDATE.
Errors before broadcast, and a rejected broadcast, release it. A broadcast
that fails in transport may still have reached the node, so it is handled
as broadcast: only the reconcile sweep or a confirmation releases the lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import or_, select, update

from tapchannel.engine.models.base import utcnow
from tapchannel.engine.models.commitment import Commitment
from tapchannel.engine.models.deposit import Deposit, DepositStatus
from tapchannel.engine.models.wallet import SettlementState, Wallet
from tapchannel.engine.settlement.finalizer import DualSignatureFinalizer
from tapchannel.engine.settlement.models import SettlementResult
from tapchannel.errors.chain_errors import BroadcastError, IndexerError, TransactionNotFoundError
from tapchannel.errors.definitions import (
    ErrCommitmentAlreadySettled,
    ErrCommitmentNotFound,
    ErrCommitmentNotSigned,
    ErrNoSettlementFound,
    ErrSettlementInProgress,
)

if TYPE_CHECKING:
    from datetime import datetime

    from tapchannel.engine.client import ChannelEngine

logger = logging.getLogger(__name__)

_ACTIVE_STATES = frozenset({SettlementState.LOCKED.value, SettlementState.BROADCAST.value})


class SettlementService:
    """Collapses a wallet's commitments into one on-chain transaction."""

    def __init__(self, engine: ChannelEngine) -> None:
        self._engine = engine
        self._watchers: set[asyncio.Task[SettlementResult]] = set()

    # ------------------------------------------------------------------
    # Settle
    # ------------------------------------------------------------------

    async def settle(self, wallet_id: int, *, wait: bool = True) -> SettlementResult:
        """Finalize and broadcast the latest commitment, then watch for confirmation.

        Args:
            wallet_id: Wallet to settle.
            wait: Poll until confirmation or timeout before returning. When
                False, polling continues on a background task and the result
                reports the ``broadcast`` state.

        Raises:
            ChannelError: ``commitment-not-found``, ``commitment-not-signed``,
                ``commitment-already-settled`` or ``settlement-in-progress``,
                plus any finalization error.
            BroadcastError: If the network rejects the transaction.

        A broadcast that fails in transport returns ``timed_out`` with the
        txid recorded, for the sweep to confirm or revert.
        """
        wallet = await self._engine.wallet_service.get_wallet(wallet_id)
        context = self._engine.wallet_service.context_for(wallet)

        latest = await self._engine.commitment_service.get_latest(wallet_id)
        if latest is None:
            raise ErrCommitmentNotFound
        if not latest.user_signed_psbt:
            raise ErrCommitmentNotSigned
        if latest.settled:
            raise ErrCommitmentAlreadySettled

        await self._acquire_lock(wallet_id)
        started = time.monotonic()
        try:
            finalized = DualSignatureFinalizer(self._engine.hub_keys, context).finalize(latest.user_signed_psbt)
        except Exception:
            await self._abort(wallet_id, started)
            raise

        try:
            reported = await self._engine.indexer.broadcast(finalized.raw_tx)
        except BroadcastError as exc:
            await self._abort(wallet_id, started)
            raise BroadcastError(
                exc.message, tx_hex=finalized.raw_tx, witnesses=finalized.witnesses
            ) from exc
        except IndexerError as exc:
            # The node may hold the transaction; the sweep settles or reverts it.
            logger.warning(
                "Broadcast of settlement %s for wallet %d unacknowledged: %s",
                finalized.txid,
                wallet_id,
                exc.message,
            )
            await self._mark_timed_out(wallet_id, finalized.txid)
            self._record(SettlementState.TIMED_OUT, started)
            return SettlementResult(
                txid=finalized.txid,
                state=SettlementState.TIMED_OUT,
                message="broadcast unacknowledged, awaiting reconciliation",
            )
        except Exception:
            await self._abort(wallet_id, started)
            raise

        txid = finalized.txid
        if reported and reported != txid:
            logger.warning("Indexer reported txid %s for settlement %s", reported, txid)
        await self._mark_broadcast(wallet_id, txid)
        logger.info("Wallet %d settlement %s broadcast", wallet_id, txid)

        if not wait:
            task = asyncio.create_task(self._watch(wallet_id, txid, started))
            self._watchers.add(task)
            task.add_done_callback(self._watchers.discard)
            return SettlementResult(
                txid=txid,
                state=SettlementState.BROADCAST,
                message="broadcast, awaiting confirmation",
            )
        return await self._watch(wallet_id, txid, started)

    async def _watch(self, wallet_id: int, txid: str, started: float) -> SettlementResult:
        try:
            result = await self._poll(wallet_id, txid)
        except Exception:
            logger.exception("Settlement %s of wallet %d failed after broadcast", txid, wallet_id)
            await self._mark_timed_out(wallet_id, txid)
            result = SettlementResult(
                txid=txid,
                state=SettlementState.TIMED_OUT,
                message="broadcast, unconfirmed",
            )
        self._record(result.state, started)
        return result

    async def _poll(self, wallet_id: int, txid: str) -> SettlementResult:
        settings = self._engine.config.settlement
        for attempt in range(1, settings.max_attempts + 1):
            await asyncio.sleep(settings.poll_interval)
            try:
                confirmation = await self._engine.indexer.get_confirmation(txid)
            except IndexerError as exc:
                logger.warning("Settlement %s poll %d failed: %s", txid, attempt, exc.message)
                continue
            if confirmation.confirmed:
                block_time = confirmation.block_datetime or utcnow()
                await self._apply_confirmation(wallet_id, txid, block_time)
                return SettlementResult(
                    txid=txid,
                    state=SettlementState.CONFIRMED,
                    confirmed=True,
                    attempts=attempt,
                    block_time=block_time,
                    message="confirmed",
                )

        logger.warning(
            "Settlement %s of wallet %d unconfirmed after %d polls",
            txid,
            wallet_id,
            settings.max_attempts,
        )
        await self._mark_timed_out(wallet_id, txid)
        return SettlementResult(
            txid=txid,
            state=SettlementState.TIMED_OUT,
            attempts=settings.max_attempts,
            message="broadcast, unconfirmed",
        )

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def _is_stale(self, wallet: Wallet) -> bool:
        settings = self._engine.config.settlement
        if wallet.settlement_started_at is None:
            return True
        budget = timedelta(seconds=settings.poll_budget + settings.poll_interval)
        return utcnow() - wallet.settlement_started_at > budget

    async def reconcile_pending(self, wallet_id: int) -> SettlementResult | None:
        """Resolve a wallet's unfinished settlement, if any.

        Returns:
            What changed, or None when there was nothing to do (or the
            settlement is still being watched).
        """
        wallet = await self._engine.wallet_service.get_wallet(wallet_id)
        stale = self._is_stale(wallet)
        if wallet.settlement_state in _ACTIVE_STATES and wallet.settlement_in_progress and not stale:
            return None

        txid = wallet.pending_settlement_txid
        if txid is None:
            if wallet.settlement_in_progress and stale:
                logger.warning("Releasing stale settlement lock of wallet %d", wallet_id)
                await self._release_lock(wallet_id)
                return SettlementResult(txid=None, state=SettlementState.IDLE, message="stale lock released")
            return None

        try:
            confirmation = await self._engine.indexer.get_confirmation(txid)
        except TransactionNotFoundError:
            logger.warning("Settlement %s of wallet %d evicted; reverting", txid, wallet_id)
            await self._revert(wallet_id, txid)
            return SettlementResult(txid=txid, state=SettlementState.IDLE, message="evicted, reverted")
        except IndexerError as exc:
            logger.warning("Reconcile of wallet %d deferred: %s", wallet_id, exc.message)
            return None

        if confirmation.confirmed:
            block_time = confirmation.block_datetime or utcnow()
            await self._apply_confirmation(wallet_id, txid, block_time)
            self._record(SettlementState.CONFIRMED)
            return SettlementResult(
                txid=txid,
                state=SettlementState.CONFIRMED,
                confirmed=True,
                block_time=block_time,
                message="confirmed",
            )

        if wallet.settlement_state != SettlementState.TIMED_OUT.value:
            await self._mark_timed_out(wallet_id, txid)
        return SettlementResult(txid=txid, state=SettlementState.TIMED_OUT, message="broadcast, unconfirmed")

    async def reconcile_all(self) -> list[SettlementResult]:
        """Run :meth:`reconcile_pending` for every wallet with unfinished settlement work."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Wallet.id).where(
                    or_(
                        Wallet.settlement_in_progress.is_(True),
                        Wallet.pending_settlement_txid.is_not(None),
                    )
                )
            )
            wallet_ids = list(result.scalars().all())

        outcomes: list[SettlementResult] = []
        for wallet_id in wallet_ids:
            try:
                outcome = await self.reconcile_pending(wallet_id)
            except Exception:
                logger.exception("Reconcile of wallet %d failed", wallet_id)
                continue
            if outcome is not None:
                outcomes.append(outcome)
        if outcomes:
            logger.info("Settlement sweep resolved %d of %d wallets", len(outcomes), len(wallet_ids))
        return outcomes

    async def sync_settlement(self, wallet_id: int) -> SettlementResult:
        """Report, and record if newly confirmed, the status of the latest settlement.

        Raises:
            ChannelError: ``settlement-not-found`` if the wallet never settled.
            IndexerError: If the indexer cannot be reached.
        """
        wallet = await self._engine.wallet_service.get_wallet(wallet_id)
        txid = wallet.pending_settlement_txid
        if txid is None:
            history = await self._engine.commitment_service.settlement_history(wallet_id)
            if not history:
                raise ErrNoSettlementFound
            txid = history[0].txid

        confirmation = await self._engine.indexer.get_confirmation(txid)
        if not confirmation.confirmed:
            return SettlementResult(
                txid=txid,
                state=SettlementState(wallet.settlement_state),
                message="unconfirmed",
            )

        block_time = confirmation.block_datetime or utcnow()
        if await self._needs_confirmation(wallet, txid):
            await self._apply_confirmation(wallet_id, txid, block_time)
        return SettlementResult(
            txid=txid,
            state=SettlementState.CONFIRMED,
            confirmed=True,
            block_time=block_time,
            message=f"{confirmation.confirmations} confirmations",
        )

    async def close(self) -> None:
        """Cancel background watchers."""
        for task in list(self._watchers):
            task.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
        self._watchers.clear()

    # ------------------------------------------------------------------
    # Ledger transitions
    # ------------------------------------------------------------------

    async def _acquire_lock(self, wallet_id: int) -> None:
        async with self._engine.datastore.transaction() as session:
            result = await session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id, Wallet.settlement_in_progress.is_(False))
                .values(
                    settlement_in_progress=True,
                    settlement_state=SettlementState.LOCKED.value,
                    settlement_started_at=utcnow(),
                    pending_settlement_txid=None,
                )
            )
            if result.rowcount == 0:
                raise ErrSettlementInProgress

    async def _release_lock(self, wallet_id: int) -> None:
        async with self._engine.datastore.transaction() as session:
            await session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id)
                .values(
                    settlement_in_progress=False,
                    settlement_state=SettlementState.IDLE.value,
                    settlement_started_at=None,
                    pending_settlement_txid=None,
                )
            )

    async def _abort(self, wallet_id: int, started: float) -> None:
        await self._release_lock(wallet_id)
        self._record(SettlementState.IDLE, started, outcome="failed")

    async def _mark_broadcast(self, wallet_id: int, txid: str) -> None:
        async with self._engine.datastore.transaction() as session:
            await session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id)
                .values(settlement_state=SettlementState.BROADCAST.value, pending_settlement_txid=txid)
            )

    async def _mark_timed_out(self, wallet_id: int, txid: str) -> None:
        """Attach *txid* to the unsettled commitments without a confirmation time."""
        async with self._engine.datastore.transaction() as session:
            await session.execute(
                update(Commitment)
                .where(Commitment.wallet_id == wallet_id, Commitment.settled.is_(False))
                .values(settled=True, settlement_txid=txid)
            )
            await session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id)
                .values(settlement_state=SettlementState.TIMED_OUT.value, pending_settlement_txid=txid)
            )

    async def _apply_confirmation(self, wallet_id: int, txid: str, block_time: datetime) -> None:
        async with self._engine.datastore.transaction() as session:
            await session.execute(
                update(Commitment)
                .where(
                    Commitment.wallet_id == wallet_id,
                    or_(
                        Commitment.settled.is_(False),
                        (Commitment.settlement_txid == txid) & Commitment.settlement_confirmed_at.is_(None),
                    ),
                )
                .values(settled=True, settlement_txid=txid, settlement_confirmed_at=block_time)
            )
            consumed = await session.execute(
                update(Deposit)
                .where(
                    Deposit.wallet_id == wallet_id,
                    Deposit.status == DepositStatus.CONFIRMED.value,
                    Deposit.consumed.is_(False),
                    Deposit.confirmed_at <= block_time,
                )
                .values(consumed=True)
            )
            await session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id)
                .values(
                    l2_balance_sats=0,
                    settlement_in_progress=False,
                    settlement_state=SettlementState.CONFIRMED.value,
                    settlement_started_at=None,
                    pending_settlement_txid=None,
                )
            )
        logger.info(
            "Settlement %s of wallet %d confirmed at %s; %d deposits consumed",
            txid,
            wallet_id,
            block_time.isoformat(),
            consumed.rowcount,
        )
        await self._engine.balance_service.recalculate(wallet_id)

    async def _revert(self, wallet_id: int, txid: str) -> None:
        """Undo a settlement the network dropped."""
        async with self._engine.datastore.transaction() as session:
            await session.execute(
                update(Commitment)
                .where(Commitment.wallet_id == wallet_id, Commitment.settlement_txid == txid)
                .values(settled=False, settlement_txid=None, settlement_confirmed_at=None)
            )
            await session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id)
                .values(
                    settlement_in_progress=False,
                    settlement_state=SettlementState.IDLE.value,
                    settlement_started_at=None,
                    pending_settlement_txid=None,
                )
            )
        await self._engine.balance_service.recalculate(wallet_id)

    async def _needs_confirmation(self, wallet: Wallet, txid: str) -> bool:
        if wallet.pending_settlement_txid == txid:
            return True
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Commitment.id)
                .where(
                    Commitment.wallet_id == wallet.id,
                    Commitment.settlement_txid == txid,
                    Commitment.settlement_confirmed_at.is_(None),
                )
                .limit(1)
            )
            return result.first() is not None

    def _record(self, state: SettlementState, started: float | None = None, *, outcome: str | None = None) -> None:
        metrics = self._engine.metrics
        if metrics is None:
            return
        metrics.record_settlement(outcome or state.value)
        if started is not None:
            metrics.observe_settlement_duration(time.monotonic() - started)
