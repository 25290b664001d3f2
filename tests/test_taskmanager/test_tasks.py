"""Tests for the background task handlers."""

from __future__ import annotations

from functools import partial
from unittest.mock import AsyncMock, MagicMock

import pytest

from tapchannel.engine.models.wallet import SettlementState
from tapchannel.metrics.collector import EngineMetrics
from tapchannel.taskmanager.manager import CronJob, TaskManager
from tapchannel.taskmanager.tasks import task_calculate_metrics, task_reconcile_settlements
from tests.conftest import signed_commitment


def _stat(metrics: EngineMetrics, entity: str) -> float | None:
    return metrics.registry.get_sample_value("tapchannel_stats_total", {"entity": entity})


class TestCalculateMetrics:
    async def test_empty_ledger(self, engine) -> None:
        metrics = EngineMetrics()
        await task_calculate_metrics(engine, metrics)
        for entity in ("wallets", "deposits", "unsettled_commitments", "settlements_in_flight"):
            assert _stat(metrics, entity) == 0.0

    async def test_counts_ledger(self, engine, funded_wallet) -> None:
        await signed_commitment(engine, funded_wallet.id)
        await signed_commitment(engine, funded_wallet.id, amount=5_000)

        metrics = EngineMetrics()
        await task_calculate_metrics(engine, metrics)
        assert _stat(metrics, "wallets") == 1.0
        assert _stat(metrics, "deposits") == 1.0
        assert _stat(metrics, "unsettled_commitments") == 2.0
        assert _stat(metrics, "settlements_in_flight") == 0.0

    async def test_counts_settlement_in_flight(self, engine, funded_wallet) -> None:
        await signed_commitment(engine, funded_wallet.id)
        result = await engine.settlement_service.settle(funded_wallet.id)
        assert result.state == SettlementState.TIMED_OUT

        metrics = EngineMetrics()
        await task_calculate_metrics(engine, metrics)
        assert _stat(metrics, "settlements_in_flight") == 1.0

    async def test_datastore_failure_propagates(self) -> None:
        engine = MagicMock()
        engine.datastore.session.side_effect = RuntimeError("Datastore is not open")
        metrics = EngineMetrics()
        with pytest.raises(RuntimeError, match="not open"):
            await task_calculate_metrics(engine, metrics)
        assert _stat(metrics, "wallets") is None


class TestReconcileSettlements:
    async def test_confirms_timed_out_settlement(self, engine, indexer, funded_wallet) -> None:
        await signed_commitment(engine, funded_wallet.id)
        result = await engine.settlement_service.settle(funded_wallet.id)
        indexer.confirm(result.txid)

        await task_reconcile_settlements(engine)

        wallet = await engine.wallet_service.get_wallet(funded_wallet.id)
        assert wallet.settlement_state == SettlementState.CONFIRMED.value
        assert wallet.settlement_in_progress is False

    async def test_nothing_to_do(self, engine, funded_wallet) -> None:
        await task_reconcile_settlements(engine)
        wallet = await engine.wallet_service.get_wallet(funded_wallet.id)
        assert wallet.settlement_state == SettlementState.IDLE.value

    async def test_failure_reaches_the_task_manager(self) -> None:
        engine = MagicMock()
        engine.settlement_service.reconcile_all = AsyncMock(side_effect=RuntimeError("boom"))
        tm = TaskManager()
        tm.register("settlement_reconcile", CronJob(handler=partial(task_reconcile_settlements, engine), period=60))

        await tm.trigger("settlement_reconcile")
        assert tm.failing == {"settlement_reconcile": "RuntimeError: boom"}
        engine.settlement_service.reconcile_all.assert_awaited_once()
