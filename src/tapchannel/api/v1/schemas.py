"""V1 API request/response Pydantic schemas.

API-layer schemas only; endpoints map ORM objects onto them. Amounts leave
the API as 8-decimal BTC strings next to their satoshi values.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - Pydantic needs this at runtime
from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error body."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


class WalletCreateRequest(BaseModel):
    """POST /api/v1/wallets: get or create a wallet for a funding address."""

    bitcoin_address: str = Field(min_length=1)


class TaprootRequest(BaseModel):
    """POST /api/v1/wallets/{id}/taproot."""

    user_public_key: str = Field(min_length=64, max_length=66)


class WalletResponse(BaseModel):
    id: int
    bitcoin_address: str
    taproot_address: str | None = None
    hub_public_key: str | None = None
    user_public_key: str | None = None
    l2_balance: str
    l2_balance_sats: int
    settlement_in_progress: bool
    settlement_state: str
    pending_settlement_txid: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DepositResponse(BaseModel):
    id: int
    txid: str
    amount: str
    amount_sats: int
    status: str
    confirmations: int
    confirmed_at: datetime | None = None
    consumed: bool


class DepositScanResponse(BaseModel):
    new: int
    updated: int
    recalculated: bool
    wallet: WalletResponse


# ---------------------------------------------------------------------------
# PSBT & commitments
# ---------------------------------------------------------------------------


class PaymentOutputSchema(BaseModel):
    address: str = Field(min_length=1)
    amount_sats: int


class PsbtRequest(BaseModel):
    """POST /api/v1/psbt: build an unsigned spend of the channel output."""

    wallet_id: int
    outputs: list[PaymentOutputSchema] = Field(default_factory=list)
    include_merchant_balances: bool = False


class PsbtResponse(BaseModel):
    psbt: str
    fee: int
    inputs: int
    accumulated: int
    change: int
    outputs: list[PaymentOutputSchema]
    dropped: list[PaymentOutputSchema]


class CommitmentCreateRequest(BaseModel):
    """POST /api/v1/commitments."""

    wallet_id: int
    merchant_address: str = Field(min_length=1)
    amount: str = Field(description="BTC amount with up to 8 decimals")
    psbt: str = Field(min_length=1, description="Unsigned funding PSBT (hex)")


class CommitmentSignRequest(BaseModel):
    """PATCH /api/v1/commitments/{id}/sign."""

    signed_psbt: str = Field(min_length=1)


class CommitmentResponse(BaseModel):
    id: int
    wallet_id: int
    merchant_address: str
    amount: str
    amount_sats: int
    fee: str
    fee_sats: int
    psbt: str
    user_signed_psbt: str | None = None
    settled: bool
    settlement_txid: str | None = None
    settlement_confirmed_at: datetime | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class SettleRequest(BaseModel):
    """POST /api/v1/settlements."""

    wallet_id: int
    wait: bool = False


class SettlementResponse(BaseModel):
    txid: str | None = None
    state: str
    confirmed: bool
    attempts: int = 0
    block_time: datetime | None = None
    message: str = ""


class SettlementHistoryEntry(BaseModel):
    txid: str
    total: str
    total_sats: int
    fee_sats: int
    count: int
    confirmed_at: datetime | None = None
    latest_commitment_id: int


# ---------------------------------------------------------------------------
# Merchants
# ---------------------------------------------------------------------------


class MerchantCreateRequest(BaseModel):
    """POST /api/v1/merchants."""

    name: str = Field(min_length=1, max_length=128)
    wallet_id: int
    payment_url: str = ""


class MerchantResponse(BaseModel):
    id: int
    name: str
    wallet_id: int
    payment_url: str
    created_at: datetime | None = None
