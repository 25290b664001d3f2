"""Wallet service: channel wallets and their Taproot addresses."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from tapchannel.btc.address import address_to_script
from tapchannel.engine.models.wallet import Wallet
from tapchannel.engine.taproot_context import build_taproot_context, parse_user_key
from tapchannel.errors.channel_errors import ChannelError
from tapchannel.errors.definitions import (
    ErrInvalidAddress,
    ErrNoTaprootAddress,
    ErrWalletNotFound,
)

if TYPE_CHECKING:
    from tapchannel.engine.client import ChannelEngine
    from tapchannel.engine.taproot_context import TaprootContext

logger = logging.getLogger(__name__)

ErrUserKeyConflict = ChannelError(
    "wallet already has a different user public key",
    status_code=409,
    code="user-key-conflict",
)


class WalletService:
    """Business logic for channel wallets."""

    def __init__(self, engine: ChannelEngine) -> None:
        self._engine = engine

    @property
    def _network(self) -> str:
        return self._engine.config.channel.network.value

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_wallet(self, wallet_id: int) -> Wallet:
        """Fetch a wallet by id.

        Raises:
            ChannelError: ``wallet-not-found``.
        """
        async with self._engine.datastore.session() as session:
            wallet = await session.get(Wallet, wallet_id)
        if wallet is None:
            raise ErrWalletNotFound
        return wallet

    async def get_wallet_by_address(self, bitcoin_address: str) -> Wallet | None:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Wallet).where(Wallet.bitcoin_address == bitcoin_address)
            )
            return result.scalar_one_or_none()

    async def list_wallets(self) -> list[Wallet]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(select(Wallet).order_by(Wallet.id))
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def get_or_create_wallet(self, bitcoin_address: str) -> Wallet:
        """Return the wallet for a funding address, creating it on first use.

        Raises:
            ChannelError: ``invalid-address`` if the address does not decode
                for the configured network.
        """
        bitcoin_address = bitcoin_address.strip()
        try:
            address_to_script(bitcoin_address, self._network)
        except ValueError as exc:
            raise ErrInvalidAddress from exc

        existing = await self.get_wallet_by_address(bitcoin_address)
        if existing is not None:
            return existing

        wallet = Wallet(bitcoin_address=bitcoin_address)
        async with self._engine.datastore.session() as session:
            session.add(wallet)
            await session.commit()
            await session.refresh(wallet)
        logger.info("Created wallet %d for %s", wallet.id, bitcoin_address)
        return wallet

    async def generate_taproot_address(self, wallet_id: int, user_public_key: str) -> Wallet:
        """Derive the channel address for a wallet and store it with both keys.

        Calling again with the same user key is a no-op that re-checks the
        stored address.

        Raises:
            ChannelError: ``wallet-not-found``, ``invalid-pubkey``, or
                ``user-key-conflict`` when another user key is already bound.
            TaprootAddressMismatchError: If the stored address no longer
                matches the derivation.
        """
        user_key = parse_user_key(user_public_key)
        hub_keys = self._engine.hub_keys

        async with self._engine.datastore.session() as session:
            wallet = await session.get(Wallet, wallet_id)
            if wallet is None:
                raise ErrWalletNotFound

            if wallet.user_public_key and parse_user_key(wallet.user_public_key) != user_key:
                raise ErrUserKeyConflict

            context = build_taproot_context(
                hub_keys,
                user_key,
                self._network,
                expected_address=wallet.taproot_address,
            )
            if wallet.taproot_address is None:
                wallet.taproot_address = context.address
                wallet.hub_public_key = context.hub_key.hex()
                wallet.user_public_key = user_public_key.lower()
                await session.commit()
                await session.refresh(wallet)
                logger.info("Wallet %d bound to taproot address %s", wallet_id, context.address)
        return wallet

    async def refresh_wallet(self, wallet_id: int) -> Wallet:
        """Scan deposits, reconcile the balance and return the fresh wallet."""
        wallet = await self.get_wallet(wallet_id)
        if wallet.taproot_address:
            await self._engine.deposit_service.scan(wallet.id, wallet.taproot_address)
        await self._engine.balance_service.recalculate(wallet.id)
        return await self.get_wallet(wallet_id)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def context_for(self, wallet: Wallet) -> TaprootContext:
        """Rebuild the wallet's Taproot context and check it against the stored address.

        Raises:
            ChannelError: ``no-taproot-address`` if the wallet was never bound.
            TaprootAddressMismatchError: On a derivation mismatch.
        """
        if not wallet.taproot_address or not wallet.user_public_key:
            raise ErrNoTaprootAddress
        return build_taproot_context(
            self._engine.hub_keys,
            wallet.user_public_key,
            self._network,
            expected_address=wallet.taproot_address,
        )
