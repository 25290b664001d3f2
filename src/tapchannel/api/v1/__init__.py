"""V1 REST API routes.

Combines all sub-routers under the ``/api/v1`` prefix.
"""

from fastapi import APIRouter

from tapchannel.api.v1.commitments import router as commitments_router
from tapchannel.api.v1.merchants import router as merchants_router
from tapchannel.api.v1.settlements import router as settlements_router
from tapchannel.api.v1.wallets import router as wallets_router

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(wallets_router)
v1_router.include_router(commitments_router)
v1_router.include_router(settlements_router)
v1_router.include_router(merchants_router)

__all__ = ["v1_router"]
