"""V1 merchant registry endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response

from tapchannel.api.dependencies import get_engine
from tapchannel.api.v1.schemas import MerchantCreateRequest, MerchantResponse
from tapchannel.engine.client import ChannelEngine  # noqa: TC001

router = APIRouter(tags=["merchants"])


def _merchant_resp(m: object) -> dict:
    return MerchantResponse(
        id=m.id,
        name=m.name,
        wallet_id=m.wallet_id,
        payment_url=m.payment_url,
        created_at=m.created_at,
    ).model_dump(mode="json")


@router.post("/merchants", status_code=201)
async def create_merchant(
    body: MerchantCreateRequest,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    merchant = await engine.merchant_service.create_merchant(body.name, body.wallet_id, body.payment_url)
    return _merchant_resp(merchant)


@router.get("/merchants/name/{name}")
async def get_merchant_by_name(
    name: str,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    return _merchant_resp(await engine.merchant_service.get_by_name(name))


@router.get("/merchants/{merchant_id}")
async def get_merchant(
    merchant_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> dict:
    return _merchant_resp(await engine.merchant_service.get_merchant(merchant_id))


@router.get("/wallets/{wallet_id}/merchants")
async def list_merchants(
    wallet_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> list[dict]:
    return [_merchant_resp(m) for m in await engine.merchant_service.list_merchants(wallet_id)]


@router.delete("/merchants/{merchant_id}", status_code=204)
async def delete_merchant(
    merchant_id: int,
    engine: Annotated[ChannelEngine, Depends(get_engine)],
) -> Response:
    await engine.merchant_service.delete_merchant(merchant_id)
    return Response(status_code=204)
