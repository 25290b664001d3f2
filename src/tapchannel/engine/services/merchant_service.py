"""Merchant registry: named payees with a receiving wallet."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tapchannel.engine.models.base import utcnow
from tapchannel.engine.models.merchant import Merchant
from tapchannel.errors.definitions import ErrMerchantDuplicate, ErrMerchantNotFound

if TYPE_CHECKING:
    from tapchannel.engine.client import ChannelEngine

logger = logging.getLogger(__name__)


class MerchantService:
    def __init__(self, engine: ChannelEngine) -> None:
        self._engine = engine

    async def create_merchant(self, name: str, wallet_id: int, payment_url: str = "") -> Merchant:
        """Register a merchant.

        Raises:
            ChannelError: ``wallet-not-found`` or ``merchant-duplicate``.
        """
        await self._engine.wallet_service.get_wallet(wallet_id)
        merchant = Merchant(name=name.strip(), wallet_id=wallet_id, payment_url=payment_url)
        async with self._engine.datastore.session() as session:
            session.add(merchant)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ErrMerchantDuplicate from exc
            await session.refresh(merchant)
        logger.info("Registered merchant %r for wallet %d", merchant.name, wallet_id)
        return merchant

    async def get_merchant(self, merchant_id: int) -> Merchant:
        async with self._engine.datastore.session() as session:
            merchant = await session.get(Merchant, merchant_id)
        if merchant is None or merchant.deleted_at is not None:
            raise ErrMerchantNotFound
        return merchant

    async def get_by_name(self, name: str) -> Merchant:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Merchant).where(Merchant.name == name, Merchant.deleted_at.is_(None))
            )
            merchant = result.scalar_one_or_none()
        if merchant is None:
            raise ErrMerchantNotFound
        return merchant

    async def list_merchants(self, wallet_id: int) -> list[Merchant]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(Merchant)
                .where(Merchant.wallet_id == wallet_id, Merchant.deleted_at.is_(None))
                .order_by(Merchant.name)
            )
            return list(result.scalars().all())

    async def delete_merchant(self, merchant_id: int) -> None:
        """Soft-delete a merchant.

        The name stays reserved; the unique index covers deleted rows.
        """
        async with self._engine.datastore.session() as session:
            merchant = await session.get(Merchant, merchant_id)
            if merchant is None or merchant.deleted_at is not None:
                raise ErrMerchantNotFound
            merchant.deleted_at = utcnow()
            await session.commit()
        logger.info("Deleted merchant %d", merchant_id)
