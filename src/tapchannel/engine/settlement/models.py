"""Settlement value objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003

from tapchannel.engine.models.wallet import SettlementState


@dataclass(frozen=True)
class FinalizedTransaction:
    """A fully witnessed settlement transaction."""

    raw_tx: str
    txid: str
    witnesses: list[list[str]] = field(default_factory=list)


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of a settlement run or a reconcile step.

    ``confirmed`` is False both for a settlement still in flight and for a
    timed-out one; ``state`` tells them apart.
    """

    txid: str | None
    state: SettlementState
    confirmed: bool = False
    attempts: int = 0
    block_time: datetime | None = None
    message: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "txid": self.txid,
            "state": self.state.value,
            "confirmed": self.confirmed,
            "attempts": self.attempts,
            "block_time": self.block_time.isoformat() if self.block_time else None,
            "message": self.message,
        }
