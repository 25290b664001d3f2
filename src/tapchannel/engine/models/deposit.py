"""Deposit model: funding transactions observed at a wallet's Taproot address."""

from __future__ import annotations

import enum
from datetime import datetime  # noqa: TC003 - SQLAlchemy needs this at runtime for Mapped[datetime]

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tapchannel.engine.models.base import Base, TimestampMixin, UTCDateTime
from tapchannel.utils.amounts import format_btc


class DepositStatus(enum.StrEnum):
    """Chain status of a deposit."""

    PENDING = "pending"
    CONFIRMED = "confirmed"


class Deposit(Base, TimestampMixin):
    """Value paid to the Taproot address by one transaction.

    Consumed deposits were absorbed by a confirmed settlement and never
    count toward the balance again.
    """

    __tablename__ = "deposits"
    __table_args__ = (UniqueConstraint("wallet_id", "txid", name="uq_deposits_wallet_txid"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wallets.id"), nullable=False, index=True, comment="Owning wallet"
    )
    txid: Mapped[str] = mapped_column(String(64), nullable=False, comment="Funding transaction id")
    amount_sats: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Sum of outputs paying the taproot address"
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DepositStatus.PENDING.value, comment="pending | confirmed"
    )
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Block time of the confirming block"
    )
    consumed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, comment="Absorbed by a confirmed settlement"
    )

    @property
    def is_confirmed(self) -> bool:
        return self.status == DepositStatus.CONFIRMED

    @property
    def amount(self) -> str:
        return format_btc(self.amount_sats)

    def __repr__(self) -> str:
        return f"<Deposit {self.txid[:16]} sats={self.amount_sats} {self.status}>"
