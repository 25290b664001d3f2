"""V1 PSBT and commitment endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from tapchannel.api.dependencies import get_engine
from tapchannel.api.v1.schemas import (
    CommitmentCreateRequest,
    CommitmentResponse,
    CommitmentSignRequest,
    PaymentOutputSchema,
    PsbtRequest,
    PsbtResponse,
)
from tapchannel.engine.client import ChannelEngine  # noqa: TC001
from tapchannel.engine.services.psbt_service import PaymentOutput
from tapchannel.errors.definitions import ErrCommitmentNotFound, ErrInvalidAmount
from tapchannel.utils.amounts import parse_btc

router = APIRouter(tags=["commitments"])


def commitment_resp(c: object) -> dict:
    return CommitmentResponse(
        id=c.id,
        wallet_id=c.wallet_id,
        merchant_address=c.merchant_address,
        amount=c.amount,
        amount_sats=c.amount_sats,
        fee=c.fee,
        fee_sats=c.fee_sats,
        psbt=c.psbt,
        user_signed_psbt=c.user_signed_psbt,
        settled=c.settled,
        settlement_txid=c.settlement_txid,
        settlement_confirmed_at=c.settlement_confirmed_at,
        created_at=c.created_at,
    ).model_dump(mode="json")


def _outputs(items: list[PaymentOutput]) -> list[PaymentOutputSchema]:
    return [PaymentOutputSchema(address=o.address, amount_sats=o.amount_sats) for o in items]


@router.post("/psbt")
async def build_psbt(
    body: PsbtRequest,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    """Build an unsigned PSBT spending the wallet's channel output."""
    draft = await engine.psbt_service.build_payment_psbt(
        body.wallet_id,
        [PaymentOutput(o.address, o.amount_sats) for o in body.outputs],
        aggregate=body.include_merchant_balances,
    )
    return PsbtResponse(
        psbt=draft.psbt_hex,
        fee=draft.fee,
        inputs=draft.inputs,
        accumulated=draft.accumulated,
        change=draft.change,
        outputs=_outputs(draft.outputs),
        dropped=_outputs(draft.dropped),
    ).model_dump(mode="json")


@router.post("/commitments", status_code=201)
async def create_commitment(
    body: CommitmentCreateRequest,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    try:
        amount_sats = parse_btc(body.amount)
    except ValueError as exc:
        raise ErrInvalidAmount from exc
    commitment = await engine.commitment_service.create_commitment(
        body.wallet_id,
        body.merchant_address,
        amount_sats,
        body.psbt,
    )
    return commitment_resp(commitment)


@router.patch("/commitments/{commitment_id}/sign")
async def sign_commitment(
    commitment_id: int,
    body: CommitmentSignRequest,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    """Attach the user's signed PSBT."""
    commitment = await engine.commitment_service.attach_user_signature(commitment_id, body.signed_psbt)
    return commitment_resp(commitment)


@router.get("/wallets/{wallet_id}/commitments")
async def list_commitments(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
    unsettled_only: bool = False,
) -> list[dict]:
    await engine.wallet_service.get_wallet(wallet_id)
    commitments = await engine.commitment_service.list_commitments(wallet_id, unsettled_only=unsettled_only)
    return [commitment_resp(c) for c in commitments]


@router.get("/wallets/{wallet_id}/commitments/latest")
async def latest_commitment(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    commitment = await engine.commitment_service.get_latest(wallet_id)
    if commitment is None:
        raise ErrCommitmentNotFound
    return commitment_resp(commitment)
