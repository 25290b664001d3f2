"""Cron job handlers run by the engine's task manager.

- ``settlement_reconcile`` (``TaskConfig.settlement_reconcile_period``):
  resolve broadcast, timed-out and stale settlements
- ``calculate_metrics`` (15 s): ledger counts for the stats gauge

Handlers let errors propagate; the task manager logs them and records the
job as failing until its next clean run.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from tapchannel.engine.models.commitment import Commitment
from tapchannel.engine.models.deposit import Deposit
from tapchannel.engine.models.wallet import Wallet

if TYPE_CHECKING:
    from tapchannel.engine.client import ChannelEngine
    from tapchannel.metrics.collector import EngineMetrics

logger = logging.getLogger(__name__)

CALCULATE_METRICS_PERIOD = 15

_LEDGER_COUNTS = {
    "wallets": select(func.count(Wallet.id)),
    "deposits": select(func.count(Deposit.id)),
    "unsettled_commitments": select(func.count(Commitment.id)).where(Commitment.settled.is_(False)),
    "settlements_in_flight": select(func.count(Wallet.id)).where(Wallet.settlement_in_progress.is_(True)),
}


async def task_reconcile_settlements(engine: ChannelEngine) -> None:
    """Sweep every wallet with unfinished settlement work."""
    for outcome in await engine.settlement_service.reconcile_all():
        logger.info("Reconciled settlement %s -> %s", outcome.txid, outcome.state.value)


async def task_calculate_metrics(engine: ChannelEngine, metrics: EngineMetrics) -> None:
    """Count ledger entities and publish them on the stats gauge."""
    async with engine.datastore.session() as session:
        counts = {entity: (await session.execute(query)).scalar() or 0 for entity, query in _LEDGER_COUNTS.items()}
    for entity, count in counts.items():
        metrics.set_stat(entity, count)
