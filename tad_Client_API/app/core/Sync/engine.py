# Sync/engine.py
# Description: Composition root. Builds every sync component around one transport and one cache and ties
#              their lifecycles together. Owned by the caller (the FastAPI lifespan keeps it on app.state).
#
# Imports
from typing import Callable, Optional, Sequence
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from ..config import AppConfig
from .cache import LocalCache, QueryCache
from .conflict import ConflictManager
from .consistency import DataConsistencyService
from .metrics import SyncPerformanceMonitor
from .models import ConsistencyIssue, ConsistencyReport, RepairResult, RepairStrategy, SyncResult, utcnow
from .optimistic import OptimisticMutationCoordinator
from .scheduler import SyncScheduler
from .sync_service import SyncService
from .transport import HttpApiTransport, SyncTransport
#
#######################################################################################################################
#
# Functions:


class SyncEngine:
    """Wires the scheduler, mutation coordinator, conflict manager, consistency service and monitor together."""

    def __init__(
        self,
        transport: SyncTransport,
        config: Optional[AppConfig] = None,
        cache: Optional[LocalCache] = None,
        clock: Callable = utcnow,
    ):
        if not isinstance(transport, SyncTransport):
            raise TypeError("transport must be a SyncTransport object")
        self.config = config or AppConfig()
        self.transport = transport
        self.cache = cache if cache is not None else QueryCache()

        self.sync_service = SyncService(transport, self.cache)
        self.conflict_manager = ConflictManager(clock=clock)
        self.monitor = SyncPerformanceMonitor()
        self.scheduler = SyncScheduler(
            self.sync_service,
            self.cache,
            self.config.sync,
            conflict_manager=self.conflict_manager,
            monitor=self.monitor,
            clock=clock,
        )
        self.mutations = OptimisticMutationCoordinator(transport, self.cache, clock=clock)
        self.consistency = DataConsistencyService(
            transport,
            self.cache,
            conflict_resolution=self.config.sync.conflict_resolution,
            clock=clock,
        )
        self.last_consistency_report: Optional[ConsistencyReport] = None

        if self.config.consistency.check_after_sync:
            self.scheduler.on_sync_result(self._check_after_large_sync)
        logger.info("SyncEngine initialized")

    @classmethod
    def from_config(cls, config: AppConfig) -> "SyncEngine":
        transport = HttpApiTransport(
            config.transport.base_url,
            api_key=config.transport.api_key,
            timeout=config.transport.timeout,
        )
        return cls(transport, config=config)

    async def start(self) -> None:
        if self.config.sync.enabled:
            await self.scheduler.start_sync()

    async def close(self) -> None:
        self.mutations.close()
        await self.scheduler.close()
        await self.transport.aclose()
        logger.info("SyncEngine closed")

    # --- Consistency ---

    async def check_consistency(self) -> ConsistencyReport:
        report = await self.consistency.perform_consistency_check()
        self.last_consistency_report = report
        return report

    async def repair(
        self,
        issues: Optional[Sequence[ConsistencyIssue]] = None,
        strategy: Optional[RepairStrategy] = None,
    ) -> RepairResult:
        """Repair the given issues, or the issues of a fresh consistency check when none are given."""
        if issues is None:
            issues = (await self.check_consistency()).issues
        strategy = strategy or RepairStrategy(self.config.consistency.repair_strategy)
        return await self.consistency.repair_consistency_issues(issues, strategy)

    async def _check_after_large_sync(self, result: SyncResult) -> None:
        changed = result.records_added + result.records_updated
        if not result.success or changed < self.config.consistency.large_sync_threshold:
            return
        logger.info(f"Large sync ({changed} records changed); running consistency check")
        report = await self.check_consistency()
        if not report.is_consistent:
            logger.warning(f"Post-sync consistency check found {len(report.issues)} issues")

#
# End of engine.py
#######################################################################################################################
