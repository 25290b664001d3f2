"""Commitment model: an off-chain, hub-co-signed payment to a merchant."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - SQLAlchemy needs this at runtime for Mapped[datetime]

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tapchannel.engine.models.base import Base, TimestampMixin, UTCDateTime
from tapchannel.utils.amounts import format_btc


class Commitment(Base, TimestampMixin):
    """A payment commitment.

    ``amount_sats`` and ``fee_sats`` never change after creation. A commitment
    is settled once its value has been swept on-chain; ``settlement_confirmed_at``
    stays empty while the settlement transaction is unconfirmed.
    """

    __tablename__ = "commitments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wallets.id"), nullable=False, index=True, comment="Owning wallet"
    )
    merchant_address: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_sats: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Funding PSBT inputs minus outputs"
    )
    psbt: Mapped[str] = mapped_column(Text, nullable=False, comment="Unsigned funding PSBT (hex)")
    user_signed_psbt: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="PSBT as returned by the user's signer (hex)"
    )
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settlement_txid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settlement_confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def amount(self) -> str:
        return format_btc(self.amount_sats)

    @property
    def fee(self) -> str:
        return format_btc(self.fee_sats)

    @property
    def total_sats(self) -> int:
        """Amount plus fee, the value deducted from the L2 balance."""
        return self.amount_sats + self.fee_sats

    def __repr__(self) -> str:
        return f"<Commitment {self.id} sats={self.amount_sats} settled={self.settled}>"
