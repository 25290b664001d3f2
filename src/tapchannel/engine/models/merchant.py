"""Merchant model: registry of payees."""

from __future__ import annotations

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from tapchannel.engine.models.base import Base, MetadataMixin, SoftDeleteMixin, TimestampMixin


class Merchant(Base, TimestampMixin, SoftDeleteMixin, MetadataMixin):
    """A named payee whose receiving wallet can be paid through the channel."""

    __tablename__ = "merchants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wallets.id"), nullable=False, index=True, comment="Receiving wallet"
    )
    payment_url: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    def __repr__(self) -> str:
        return f"<Merchant {self.name!r} wallet={self.wallet_id}>"
