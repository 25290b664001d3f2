"""PSBT builder: unsigned spends of a wallet's Taproot output.

Every UTXO at the channel address is spent through the cooperative leaf,
the requested payments are the outputs and any non-dust change returns to
the user's funding address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from tapchannel.btc.address import address_to_script
from tapchannel.btc.psbt import Psbt
from tapchannel.engine.models.commitment import Commitment
from tapchannel.errors.channel_errors import AllOutputsDustError, InsufficientFundsError
from tapchannel.errors.definitions import (
    ErrInvalidAddress,
    ErrInvalidAmount,
    ErrNoOutputs,
    ErrNoUtxos,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tapchannel.engine.client import ChannelEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOutput:
    """A requested payment."""

    address: str
    amount_sats: int

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "amount_sats": self.amount_sats}


@dataclass
class PsbtDraft:
    """An unsigned funding spend ready for the user's signer."""

    psbt_hex: str
    fee: int
    inputs: int
    accumulated: int
    change: int
    outputs: list[PaymentOutput] = field(default_factory=list)
    dropped: list[PaymentOutput] = field(default_factory=list)


def merge_outputs(outputs: Iterable[PaymentOutput]) -> list[PaymentOutput]:
    """Sum amounts per address, keeping first-seen order."""
    totals: dict[str, int] = {}
    for out in outputs:
        totals[out.address] = totals.get(out.address, 0) + out.amount_sats
    return [PaymentOutput(address, amount) for address, amount in totals.items()]


def split_dust(outputs: Iterable[PaymentOutput], threshold: int) -> tuple[list[PaymentOutput], list[PaymentOutput]]:
    """Partition outputs into ``(kept, dropped)`` around the dust threshold."""
    kept: list[PaymentOutput] = []
    dropped: list[PaymentOutput] = []
    for out in outputs:
        (kept if out.amount_sats >= threshold else dropped).append(out)
    return kept, dropped


class PsbtService:
    """Builds unsigned PSBTs against a wallet's channel output."""

    def __init__(self, engine: ChannelEngine) -> None:
        self._engine = engine

    async def _merchant_balances(self, wallet_id: int) -> list[PaymentOutput]:
        """Unsettled commitment amounts summed per merchant address."""
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Commitment)
                .where(Commitment.wallet_id == wallet_id, Commitment.settled.is_(False))
                .order_by(Commitment.created_at, Commitment.id)
            )
            commitments = result.scalars().all()
        return merge_outputs(PaymentOutput(c.merchant_address, c.amount_sats) for c in commitments)

    async def build_payment_psbt(
        self,
        wallet_id: int,
        outputs: list[PaymentOutput],
        *,
        aggregate: bool = False,
    ) -> PsbtDraft:
        """Build an unsigned PSBT paying *outputs* from the channel output.

        Args:
            wallet_id: Paying wallet.
            outputs: Requested payments.
            aggregate: Pay every merchant its accumulated unsettled balance
                in addition to *outputs*.

        Raises:
            ChannelError: ``wallet-not-found``, ``no-taproot-address``,
                ``invalid-address``, ``invalid-amount``, ``no-outputs`` or
                ``no-utxos``.
            AllOutputsDustError: If every output is below the dust threshold.
            InsufficientFundsError: If the UTXOs cannot cover outputs plus fee.
            IndexerError: If UTXOs cannot be fetched.
        """
        channel = self._engine.config.channel
        network = channel.network.value
        wallet = await self._engine.wallet_service.get_wallet(wallet_id)
        context = self._engine.wallet_service.context_for(wallet)

        for out in outputs:
            if out.amount_sats <= 0:
                raise ErrInvalidAmount

        requested = list(outputs)
        if aggregate:
            requested = merge_outputs([*await self._merchant_balances(wallet_id), *requested])
        if not requested:
            raise ErrNoOutputs

        kept, dropped = split_dust(requested, channel.dust_threshold)
        if not kept:
            raise AllOutputsDustError(
                threshold=channel.dust_threshold,
                rejected=[o.to_dict() for o in dropped],
            )
        for out in dropped:
            logger.info("Dropping dust output %d sats to %s", out.amount_sats, out.address)

        scripts: list[tuple[bytes, int]] = []
        for out in kept:
            try:
                scripts.append((address_to_script(out.address, network), out.amount_sats))
            except ValueError as exc:
                raise ErrInvalidAddress from exc

        utxos = await self._engine.indexer.get_utxos(context.address)
        if not utxos:
            raise ErrNoUtxos

        psbt = Psbt()
        accumulated = 0
        for utxo in utxos:
            psbt.add_input(
                utxo.txid,
                utxo.vout,
                witness_utxo=context.witness_utxo(utxo.value),
                tap_leaf_scripts=[context.multisig_leaf],
            )
            accumulated += utxo.value

        total_output = sum(amount for _, amount in scripts)
        fee = channel.fixed_fee
        if accumulated < total_output + fee:
            raise InsufficientFundsError(accumulated=accumulated, total_output=total_output, fee=fee)

        for script, amount in scripts:
            psbt.add_output(script, amount)

        change = accumulated - total_output - fee
        if change >= channel.dust_threshold:
            psbt.add_output(address_to_script(wallet.bitcoin_address, network), change)
        else:
            fee += change
            change = 0

        logger.info(
            "Built PSBT for wallet %d: %d inputs, %d outputs, fee %d",
            wallet_id,
            len(utxos),
            len(kept),
            fee,
        )
        return PsbtDraft(
            psbt_hex=psbt.to_hex(),
            fee=fee,
            inputs=len(utxos),
            accumulated=accumulated,
            change=change,
            outputs=kept,
            dropped=dropped,
        )
