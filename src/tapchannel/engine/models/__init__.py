"""Ledger data models (SQLAlchemy ORM).

Import :data:`ALL_MODELS` for migration and table creation.
"""

from tapchannel.engine.models.base import Base, MetadataMixin, SoftDeleteMixin, TimestampMixin
from tapchannel.engine.models.commitment import Commitment
from tapchannel.engine.models.deposit import Deposit, DepositStatus
from tapchannel.engine.models.merchant import Merchant
from tapchannel.engine.models.wallet import SettlementState, Wallet

ALL_MODELS: list[type[Base]] = [
    Wallet,
    Deposit,
    Commitment,
    Merchant,
]

__all__ = [
    "ALL_MODELS",
    "Base",
    "Commitment",
    "Deposit",
    "DepositStatus",
    "Merchant",
    "MetadataMixin",
    "SettlementState",
    "SoftDeleteMixin",
    "TimestampMixin",
    "Wallet",
]
