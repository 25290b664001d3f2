"""ChannelEngine: central engine client owning the ledger, indexer and services."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tapchannel.chain.mempool.client import MempoolClient
    from tapchannel.config.settings import AppConfig
    from tapchannel.datastore.client import Datastore
    from tapchannel.engine.services.balance_service import BalanceService
    from tapchannel.engine.services.commitment_service import CommitmentService
    from tapchannel.engine.services.deposit_service import DepositService
    from tapchannel.engine.services.merchant_service import MerchantService
    from tapchannel.engine.services.psbt_service import PsbtService
    from tapchannel.engine.services.wallet_service import WalletService
    from tapchannel.engine.settlement.service import SettlementService
    from tapchannel.engine.taproot_context import HubKeys
    from tapchannel.metrics.collector import EngineMetrics
    from tapchannel.taskmanager.manager import TaskManager

logger = logging.getLogger(__name__)

_ERR_NOT_INITIALIZED = "Engine not initialized. Call initialize() first."


class ChannelEngine:
    """Owns infrastructure and services, and manages their lifecycle.

    Usage::

        engine = ChannelEngine(AppConfig())
        await engine.initialize()
        wallet = await engine.wallet_service.get_or_create_wallet("tb1q...")
        ...
        await engine.close()
    """

    def __init__(self, config: AppConfig, *, indexer: MempoolClient | None = None) -> None:
        """Initialize engine with configuration.

        Args:
            config: Application configuration.
            indexer: Pre-built chain indexer. When omitted a ``MempoolClient``
                is created from ``config.indexer`` and owned by the engine.
        """
        self._config = config
        self._initialized = False

        self._datastore: Datastore | None = None
        self._indexer: MempoolClient | None = indexer
        self._owns_indexer = indexer is None
        self._hub_keys: HubKeys | None = None

        self._wallet_service: WalletService | None = None
        self._deposit_service: DepositService | None = None
        self._balance_service: BalanceService | None = None
        self._psbt_service: PsbtService | None = None
        self._commitment_service: CommitmentService | None = None
        self._merchant_service: MerchantService | None = None
        self._settlement_service: SettlementService | None = None
        self._task_manager: TaskManager | None = None
        self._metrics: EngineMetrics | None = None

    async def initialize(self) -> None:
        """Load keys, open the ledger, start services and sweep pending settlements.

        Raises:
            RuntimeError: If already initialized.
            ChannelError: If the hub key material is missing or inconsistent.
        """
        if self._initialized:
            msg = "Engine already initialized"
            raise RuntimeError(msg)

        # Import here to avoid circular deps
        from tapchannel.datastore.client import Datastore
        from tapchannel.datastore.migrations import run_auto_migrate
        from tapchannel.engine.models.base import Base
        from tapchannel.engine.taproot_context import HubKeys

        self._hub_keys = HubKeys.from_config(self._config.hub)

        self._datastore = Datastore(self._config.db)
        await self._datastore.open(base=Base)
        await run_auto_migrate(self._datastore.engine)

        if self._indexer is None:
            from tapchannel.chain.mempool.client import MempoolClient

            self._indexer = MempoolClient(self._config.indexer, self._config.channel.network)
            await self._indexer.connect()

        from tapchannel.engine.services.balance_service import BalanceService
        from tapchannel.engine.services.commitment_service import CommitmentService
        from tapchannel.engine.services.deposit_service import DepositService
        from tapchannel.engine.services.merchant_service import MerchantService
        from tapchannel.engine.services.psbt_service import PsbtService
        from tapchannel.engine.services.wallet_service import WalletService
        from tapchannel.engine.settlement.service import SettlementService

        self._wallet_service = WalletService(self)
        self._deposit_service = DepositService(self)
        self._balance_service = BalanceService(self)
        self._psbt_service = PsbtService(self)
        self._commitment_service = CommitmentService(self)
        self._merchant_service = MerchantService(self)
        self._settlement_service = SettlementService(self)

        if self._config.metrics.enabled:
            from tapchannel.metrics.collector import EngineMetrics

            self._metrics = EngineMetrics()

        self._initialized = True

        # Resume settlements interrupted by a restart before taking new work.
        resolved = await self._settlement_service.reconcile_all()
        if resolved:
            logger.info("Startup sweep resolved %d settlements", len(resolved))

        from functools import partial

        from tapchannel.taskmanager.manager import CronJob, TaskManager
        from tapchannel.taskmanager.tasks import (
            CALCULATE_METRICS_PERIOD,
            task_calculate_metrics,
            task_reconcile_settlements,
        )

        if self._config.task.enabled:
            self._task_manager = TaskManager(metrics=self._metrics)
            self._task_manager.register(
                "settlement_reconcile",
                CronJob(
                    handler=partial(task_reconcile_settlements, self),
                    period=self._config.task.settlement_reconcile_period,
                ),
            )
            if self._metrics is not None:
                self._task_manager.register(
                    "calculate_metrics",
                    CronJob(
                        handler=partial(task_calculate_metrics, self, self._metrics),
                        period=CALCULATE_METRICS_PERIOD,
                    ),
                )
            await self._task_manager.start()

        logger.info("Channel engine initialized on %s", self._config.channel.network.value)

    async def close(self) -> None:
        """Shut down jobs, watchers and connections. Idempotent."""
        if not self._initialized:
            return

        if self._task_manager is not None:
            await self._task_manager.stop()
            self._task_manager = None

        if self._settlement_service is not None:
            await self._settlement_service.close()

        self._metrics = None
        self._wallet_service = None
        self._deposit_service = None
        self._balance_service = None
        self._psbt_service = None
        self._commitment_service = None
        self._merchant_service = None
        self._settlement_service = None

        if self._indexer is not None and self._owns_indexer:
            await self._indexer.close()
            self._indexer = None

        if self._datastore is not None:
            await self._datastore.close()
            self._datastore = None

        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def datastore(self) -> Datastore:
        """Get the datastore instance.

        Raises:
            RuntimeError: If engine not initialized.
        """
        if self._datastore is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._datastore

    @property
    def indexer(self) -> MempoolClient:
        if self._indexer is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._indexer

    @property
    def hub_keys(self) -> HubKeys:
        if self._hub_keys is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._hub_keys

    @property
    def wallet_service(self) -> WalletService:
        if self._wallet_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._wallet_service

    @property
    def deposit_service(self) -> DepositService:
        if self._deposit_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._deposit_service

    @property
    def balance_service(self) -> BalanceService:
        if self._balance_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._balance_service

    @property
    def psbt_service(self) -> PsbtService:
        if self._psbt_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._psbt_service

    @property
    def commitment_service(self) -> CommitmentService:
        if self._commitment_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._commitment_service

    @property
    def merchant_service(self) -> MerchantService:
        if self._merchant_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._merchant_service

    @property
    def settlement_service(self) -> SettlementService:
        if self._settlement_service is None:
            raise RuntimeError(_ERR_NOT_INITIALIZED)
        return self._settlement_service

    @property
    def metrics(self) -> EngineMetrics | None:
        """Get the engine metrics (None if disabled or not initialized)."""
        return self._metrics

    @property
    def task_manager(self) -> TaskManager | None:
        """Get the task manager (None if not enabled)."""
        return self._task_manager

    async def health_check(self) -> dict[str, str]:
        """Check health status of all engine components.

        Returns:
            Component statuses: ``ok``, ``error``, ``not_initialized``, ``not_connected``,
            ``disabled``, ``stopped`` or ``degraded`` (a cron job's last run failed).
        """
        status = {
            "engine": "ok" if self._initialized else "not_initialized",
            "datastore": "unknown",
            "indexer": "unknown",
            "tasks": "unknown",
        }
        if not self._initialized:
            return status

        status["datastore"] = "ok" if self._datastore and await self._datastore.ping() else "error"
        connected = getattr(self._indexer, "is_connected", False)
        status["indexer"] = "ok" if connected else "not_connected"
        if self._task_manager is None:
            status["tasks"] = "disabled"
        elif not self._task_manager.is_running:
            status["tasks"] = "stopped"
        else:
            status["tasks"] = "degraded" if self._task_manager.failing else "ok"
        return status
