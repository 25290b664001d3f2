"""Balance reconciliation: derive the L2 balance from the ledger.

The cached ``Wallet.l2_balance_sats`` is always re-derivable from deposits
and commitments; :func:`compute_balance` is that derivation.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from tapchannel.engine.models.commitment import Commitment
from tapchannel.engine.models.deposit import Deposit, DepositStatus
from tapchannel.engine.models.wallet import Wallet
from tapchannel.errors.definitions import ErrBalanceContention, ErrWalletNotFound
from tapchannel.utils.amounts import format_btc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tapchannel.engine.client import ChannelEngine

logger = logging.getLogger(__name__)

# Compare-and-set rounds before giving up on a wallet under heavy writes.
MAX_RECALCULATE_ATTEMPTS = 5


def compute_balance(deposits: Iterable[Deposit], commitments: Iterable[Commitment]) -> int:
    """Spendable L2 balance in satoshis.

    Only confirmed, unconsumed deposits count. Once any commitment has been
    settled, deposits confirmed at or before the latest confirmed settlement
    were swept by it; while every settled commitment still awaits its
    settlement confirmation, the balance is zero. Unsettled commitments are
    subtracted with their fees.
    """
    commitments = list(commitments)
    usable = [d for d in deposits if d.status == DepositStatus.CONFIRMED and not d.consumed]
    settled = [c for c in commitments if c.settled]
    pending_debits = sum(c.amount_sats + c.fee_sats for c in commitments if not c.settled)

    if not settled:
        return sum(d.amount_sats for d in usable) - pending_debits

    confirmed_times = [c.settlement_confirmed_at for c in settled if c.settlement_confirmed_at]
    if not confirmed_times:
        # The settlement lock blocks new commitments until confirmation.
        return 0

    cutoff = max(confirmed_times)
    fresh = sum(d.amount_sats for d in usable if d.confirmed_at is not None and d.confirmed_at > cutoff)
    return fresh - pending_debits


class BalanceService:
    """Recomputes and caches a wallet's L2 balance."""

    def __init__(self, engine: ChannelEngine) -> None:
        self._engine = engine

    async def recalculate(self, wallet_id: int) -> str:
        """Recompute the balance from the ledger and update the cache if it changed.

        The cache write is a compare-and-set against the balance read before
        the ledger rows. A commitment debit landing in between fails the
        write, and the derivation is repeated on fresh rows.

        Returns:
            The balance as an 8-decimal BTC string.

        Raises:
            ChannelError: ``wallet-not-found`` or ``balance-contention``.
        """
        for _ in range(MAX_RECALCULATE_ATTEMPTS):
            balance = await self._recalculate_once(wallet_id)
            if balance is not None:
                return format_btc(balance)
            logger.debug("Wallet %d balance moved during reconciliation; retrying", wallet_id)
        logger.warning(
            "Wallet %d balance still moving after %d attempts", wallet_id, MAX_RECALCULATE_ATTEMPTS
        )
        raise ErrBalanceContention

    async def _recalculate_once(self, wallet_id: int) -> int | None:
        """One read-derive-write round; None when the cached balance moved underneath."""
        async with self._engine.datastore.session() as session:
            cached = (
                await session.execute(select(Wallet.l2_balance_sats).where(Wallet.id == wallet_id))
            ).scalar_one_or_none()
            if cached is None:
                raise ErrWalletNotFound
            deposits = (
                await session.execute(select(Deposit).where(Deposit.wallet_id == wallet_id))
            ).scalars().all()
            commitments = (
                await session.execute(select(Commitment).where(Commitment.wallet_id == wallet_id))
            ).scalars().all()
            balance = compute_balance(deposits, commitments)
            if cached == balance:
                return balance

            result = await session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id, Wallet.l2_balance_sats == cached)
                .values(l2_balance_sats=balance)
            )
            await session.commit()
            if result.rowcount == 0:
                return None
        logger.info("Wallet %d balance %s -> %s", wallet_id, format_btc(cached), format_btc(balance))
        return balance
