"""Wallet model: one custodial channel per user funding address."""

from __future__ import annotations

import enum
from datetime import datetime  # noqa: TC003 - SQLAlchemy needs this at runtime for Mapped[datetime]

from sqlalchemy import BigInteger, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from tapchannel.engine.models.base import Base, TimestampMixin, UTCDateTime
from tapchannel.utils.amounts import format_btc


class SettlementState(enum.StrEnum):
    """Per-wallet settlement lifecycle."""

    IDLE = "idle"
    LOCKED = "locked"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"


class Wallet(Base, TimestampMixin):
    """A user's channel: funding address, Taproot output and cached L2 balance.

    ``settlement_in_progress`` is the per-wallet settlement lock. While it is
    set no commitment may be created and no second settlement may start.
    """

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bitcoin_address: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, index=True, comment="User funding / change address"
    )
    taproot_address: Mapped[str | None] = mapped_column(
        String(128), nullable=True, comment="Shared P2TR channel address"
    )
    hub_public_key: Mapped[str | None] = mapped_column(
        String(66), nullable=True, comment="Hub x-only key used in the leaf scripts"
    )
    user_public_key: Mapped[str | None] = mapped_column(
        String(66), nullable=True, comment="User key as supplied (x-only or compressed hex)"
    )
    l2_balance_sats: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, comment="Cached spendable L2 balance in satoshis"
    )
    settlement_in_progress: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, comment="Settlement lock"
    )
    settlement_state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SettlementState.IDLE.value, comment="Settlement lifecycle"
    )
    pending_settlement_txid: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Broadcast but not yet confirmed settlement txid"
    )
    settlement_started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When the current settlement took the lock"
    )

    @property
    def l2_balance(self) -> str:
        """Cached balance as an 8-decimal BTC string."""
        return format_btc(self.l2_balance_sats)

    def __repr__(self) -> str:
        return f"<Wallet {self.id} {self.bitcoin_address} sats={self.l2_balance_sats}>"
