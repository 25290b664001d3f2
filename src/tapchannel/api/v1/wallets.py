"""V1 wallet endpoints: funding wallets, Taproot binding, deposit scans."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from tapchannel.api.dependencies import get_engine
from tapchannel.api.v1.schemas import (
    DepositResponse,
    DepositScanResponse,
    TaprootRequest,
    WalletCreateRequest,
    WalletResponse,
)
from tapchannel.engine.client import ChannelEngine  # noqa: TC001
from tapchannel.errors.definitions import ErrNoTaprootAddress, ErrWalletNotFound

router = APIRouter(tags=["wallets"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def wallet_resp(w: object) -> dict:
    return WalletResponse(
        id=w.id,
        bitcoin_address=w.bitcoin_address,
        taproot_address=w.taproot_address,
        hub_public_key=w.hub_public_key,
        user_public_key=w.user_public_key,
        l2_balance=w.l2_balance,
        l2_balance_sats=w.l2_balance_sats,
        settlement_in_progress=w.settlement_in_progress,
        settlement_state=w.settlement_state,
        pending_settlement_txid=w.pending_settlement_txid,
        created_at=w.created_at,
        updated_at=w.updated_at,
    ).model_dump(mode="json")


def _deposit_resp(d: object) -> dict:
    return DepositResponse(
        id=d.id,
        txid=d.txid,
        amount=d.amount,
        amount_sats=d.amount_sats,
        status=d.status,
        confirmations=d.confirmations,
        confirmed_at=d.confirmed_at,
        consumed=d.consumed,
    ).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/wallets", status_code=201)
async def create_wallet(
    body: WalletCreateRequest,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    """Get or create the wallet for a funding address."""
    wallet = await engine.wallet_service.get_or_create_wallet(body.bitcoin_address)
    return wallet_resp(wallet)


@router.get("/wallets/address/{bitcoin_address}")
async def get_wallet_by_address(
    bitcoin_address: str,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    wallet = await engine.wallet_service.get_wallet_by_address(bitcoin_address)
    if wallet is None:
        raise ErrWalletNotFound
    wallet = await engine.wallet_service.refresh_wallet(wallet.id)
    return wallet_resp(wallet)


@router.get("/wallets/{wallet_id}")
async def get_wallet(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    """Fetch a wallet with a freshly reconciled balance."""
    wallet = await engine.wallet_service.refresh_wallet(wallet_id)
    return wallet_resp(wallet)


@router.post("/wallets/{wallet_id}/taproot")
async def generate_taproot(
    wallet_id: int,
    body: TaprootRequest,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    """Bind the user's key and derive the channel address."""
    wallet = await engine.wallet_service.generate_taproot_address(wallet_id, body.user_public_key)
    return wallet_resp(wallet)


@router.post("/wallets/{wallet_id}/deposits/scan")
async def scan_deposits(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    wallet = await engine.wallet_service.get_wallet(wallet_id)
    if not wallet.taproot_address:
        raise ErrNoTaprootAddress
    result = await engine.deposit_service.scan(wallet.id, wallet.taproot_address)
    if not result.recalculated:
        await engine.balance_service.recalculate(wallet.id)
    wallet = await engine.wallet_service.get_wallet(wallet_id)
    return DepositScanResponse(
        new=result.new,
        updated=result.updated,
        recalculated=result.recalculated,
        wallet=WalletResponse(**wallet_resp(wallet)),
    ).model_dump(mode="json")


@router.get("/wallets/{wallet_id}/deposits")
async def list_deposits(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> list[dict]:
    await engine.wallet_service.get_wallet(wallet_id)
    deposits = await engine.deposit_service.list_deposits(wallet_id)
    return [_deposit_resp(d) for d in deposits]
