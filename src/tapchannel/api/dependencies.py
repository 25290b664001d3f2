"""FastAPI dependency injection helpers.

Usage in a route::

    @router.get("/wallets/{wallet_id}")
    async def get_wallet(
        wallet_id: int,
        engine: Annotated[ChannelEngine, Depends(get_engine)],
    ) -> ...:
        ...
"""

from __future__ import annotations

from fastapi import Request

from tapchannel.engine.client import ChannelEngine  # noqa: TC001
from tapchannel.errors.channel_errors import ChannelError

ErrEngineUnavailable = ChannelError("engine is not running", status_code=503, code="engine-unavailable")


def get_engine(request: Request) -> ChannelEngine:
    """Retrieve the engine stored on ``app.state`` by the lifespan hook.

    Raises:
        ChannelError: 503 if the engine is not running.
    """
    engine: ChannelEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise ErrEngineUnavailable
    return engine
