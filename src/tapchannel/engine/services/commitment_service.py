"""Commitment service: off-chain payments deducted from the L2 balance."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from tapchannel.btc.address import address_to_script
from tapchannel.btc.psbt import Psbt, PsbtError
from tapchannel.engine.models.commitment import Commitment
from tapchannel.engine.models.wallet import Wallet
from tapchannel.errors.channel_errors import InsufficientBalanceError
from tapchannel.errors.definitions import (
    ErrCommitmentAlreadySettled,
    ErrCommitmentNotFound,
    ErrInvalidAddress,
    ErrInvalidAmount,
    ErrInvalidPsbt,
    ErrSettlementInProgress,
    ErrWalletNotFound,
)

if TYPE_CHECKING:
    from tapchannel.engine.client import ChannelEngine

logger = logging.getLogger(__name__)


def psbt_fee(psbt_hex: str) -> int:
    """Witness-UTXO sum minus output sum of a funding PSBT.

    Raises:
        ChannelError: ``invalid-psbt`` if the PSBT does not parse, lacks UTXO
            data, or pays out more than it spends.
    """
    try:
        fee = Psbt.from_hex(psbt_hex).fee()
    except PsbtError as exc:
        raise ErrInvalidPsbt from exc
    if fee < 0:
        raise ErrInvalidPsbt
    return fee


@dataclass
class SettlementSummary:
    """Settled commitments sharing one settlement transaction."""

    txid: str
    total_sats: int
    fee_sats: int
    count: int
    confirmed_at: datetime | None
    latest: Commitment
    commitments: list[Commitment] = field(default_factory=list)


class CommitmentService:
    """Creates and queries payment commitments."""

    def __init__(self, engine: ChannelEngine) -> None:
        self._engine = engine

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_commitment(
        self,
        wallet_id: int,
        merchant_address: str,
        amount_sats: int,
        psbt_hex: str,
    ) -> Commitment:
        """Record a commitment and deduct ``amount + fee`` from the balance.

        The deduction is a single UPDATE guarded by the settlement lock and
        the cached balance, committed together with the insert.

        The merchant address is checked against the channel network before
        anything is written.

        Raises:
            ChannelError: ``invalid-amount``, ``invalid-address``,
                ``invalid-psbt``, ``wallet-not-found`` or
                ``settlement-in-progress``.
            InsufficientBalanceError: If the balance cannot cover the deduction.
        """
        if amount_sats <= 0:
            raise ErrInvalidAmount
        try:
            address_to_script(merchant_address, self._engine.config.channel.network.value)
        except ValueError as exc:
            raise ErrInvalidAddress from exc
        fee = psbt_fee(psbt_hex)
        deduction = amount_sats + fee

        async with self._engine.datastore.transaction() as session:
            result = await session.execute(
                update(Wallet)
                .where(
                    Wallet.id == wallet_id,
                    Wallet.settlement_in_progress.is_(False),
                    Wallet.l2_balance_sats >= deduction,
                )
                .values(l2_balance_sats=Wallet.l2_balance_sats - deduction)
            )
            if result.rowcount == 0:
                wallet = await session.get(Wallet, wallet_id)
                if wallet is None:
                    raise ErrWalletNotFound
                if wallet.settlement_in_progress:
                    raise ErrSettlementInProgress
                raise InsufficientBalanceError(
                    amount=amount_sats, fee=fee, available=wallet.l2_balance_sats
                )

            commitment = Commitment(
                wallet_id=wallet_id,
                merchant_address=merchant_address,
                amount_sats=amount_sats,
                fee_sats=fee,
                psbt=psbt_hex,
            )
            session.add(commitment)

        logger.info(
            "Commitment %d: wallet %d pays %d sats (+%d fee) to %s",
            commitment.id,
            wallet_id,
            amount_sats,
            fee,
            merchant_address,
        )
        if self._engine.metrics:
            self._engine.metrics.record_commitment()
        return commitment

    async def attach_user_signature(self, commitment_id: int, signed_psbt_hex: str) -> Commitment:
        """Store the PSBT returned by the user's signer.

        Raises:
            ChannelError: ``commitment-not-found``, ``invalid-psbt`` or
                ``commitment-already-settled``.
        """
        try:
            Psbt.from_hex(signed_psbt_hex)
        except PsbtError as exc:
            raise ErrInvalidPsbt from exc

        async with self._engine.datastore.session() as session:
            commitment = await session.get(Commitment, commitment_id)
            if commitment is None:
                raise ErrCommitmentNotFound
            if commitment.settled:
                raise ErrCommitmentAlreadySettled
            commitment.user_signed_psbt = signed_psbt_hex.strip()
            await session.commit()
            await session.refresh(commitment)
        return commitment

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_commitment(self, commitment_id: int) -> Commitment:
        async with self._engine.datastore.session() as session:
            commitment = await session.get(Commitment, commitment_id)
        if commitment is None:
            raise ErrCommitmentNotFound
        return commitment

    async def get_latest(self, wallet_id: int) -> Commitment | None:
        """Most recently created commitment of a wallet."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Commitment)
                .where(Commitment.wallet_id == wallet_id)
                .order_by(Commitment.created_at.desc(), Commitment.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_commitments(self, wallet_id: int, *, unsettled_only: bool = False) -> list[Commitment]:
        async with self._engine.datastore.session() as session:
            query = select(Commitment).where(Commitment.wallet_id == wallet_id)
            if unsettled_only:
                query = query.where(Commitment.settled.is_(False))
            result = await session.execute(
                query.order_by(Commitment.created_at.desc(), Commitment.id.desc())
            )
            return list(result.scalars().all())

    async def settlement_history(self, wallet_id: int) -> list[SettlementSummary]:
        """Settled commitments grouped by settlement txid, newest confirmation first.

        Unconfirmed settlements sort ahead of confirmed ones.
        """
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Commitment)
                .where(
                    Commitment.wallet_id == wallet_id,
                    Commitment.settled.is_(True),
                    Commitment.settlement_txid.is_not(None),
                )
                .order_by(Commitment.created_at.desc(), Commitment.id.desc())
            )
            commitments = result.scalars().all()

        groups: dict[str, SettlementSummary] = {}
        for c in commitments:
            summary = groups.get(c.settlement_txid)
            if summary is None:
                summary = SettlementSummary(
                    txid=c.settlement_txid,
                    total_sats=0,
                    fee_sats=0,
                    count=0,
                    confirmed_at=c.settlement_confirmed_at,
                    latest=c,
                )
                groups[c.settlement_txid] = summary
            summary.total_sats += c.amount_sats
            summary.fee_sats += c.fee_sats
            summary.count += 1
            summary.commitments.append(c)

        return sorted(
            groups.values(),
            key=lambda s: (s.confirmed_at is not None, -(s.confirmed_at.timestamp() if s.confirmed_at else 0)),
        )
