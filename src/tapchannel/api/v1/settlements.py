"""V1 settlement endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from tapchannel.api.dependencies import get_engine
from tapchannel.api.v1.schemas import SettleRequest, SettlementHistoryEntry, SettlementResponse
from tapchannel.engine.client import ChannelEngine  # noqa: TC001
from tapchannel.engine.settlement.models import SettlementResult  # noqa: TC001
from tapchannel.utils.amounts import format_btc

router = APIRouter(tags=["settlements"])


def _result_resp(r: SettlementResult) -> dict:
    return SettlementResponse(
        txid=r.txid,
        state=r.state.value,
        confirmed=r.confirmed,
        attempts=r.attempts,
        block_time=r.block_time,
        message=r.message,
    ).model_dump(mode="json")


@router.post("/settlements", status_code=202)
async def settle(
    body: SettleRequest,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    """Settle the wallet's commitments on-chain.

    With ``wait`` false the call returns once the transaction is broadcast.
    """
    result = await engine.settlement_service.settle(body.wallet_id, wait=body.wait)
    return _result_resp(result)


@router.post("/wallets/{wallet_id}/settlements/sync")
async def sync_settlement(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    result = await engine.settlement_service.sync_settlement(wallet_id)
    return _result_resp(result)


@router.get("/wallets/{wallet_id}/settlements")
async def settlement_history(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> list[dict]:
    await engine.wallet_service.get_wallet(wallet_id)
    history = await engine.commitment_service.settlement_history(wallet_id)
    return [
        SettlementHistoryEntry(
            txid=s.txid,
            total=format_btc(s.total_sats),
            total_sats=s.total_sats,
            fee_sats=s.fee_sats,
            count=s.count,
            confirmed_at=s.confirmed_at,
            latest_commitment_id=s.latest.id,
        ).model_dump(mode="json")
        for s in history
    ]
