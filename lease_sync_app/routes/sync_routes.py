import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi_utils.cbv import cbv

from core.safe_handler import safe_handler
from core.services import SyncServices, get_sync_services
from models.enums import StatsWindow, SyncAction, SyncOutcome
from schemas.schema import (
    FailurePatterns,
    HealthReport,
    LeaseSyncFailure,
    MigrationResult,
    MigrationStatus,
    MonitoringStatus,
    PaymentSettlementSchema,
    ProcessPaymentResult,
    SyncLogEntry,
    SyncOptions,
    SyncResult,
    SyncStats,
    ValidationResult,
)

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Lease Payment Synchronization"])


@cbv(router)
class SyncRoutes:
    services: SyncServices = Depends(get_sync_services)

    @router.post("/leases/{lease_id}/sync", response_model=SyncResult)
    @safe_handler
    async def sync_lease(
        self,
        lease_id: uuid.UUID,
        options: Optional[SyncOptions] = Body(default=None),
    ):
        result = await self.services.synchronizer.sync_lease(lease_id, options)
        outcome = SyncOutcome.SUCCESS if result.success else SyncOutcome.WARNING
        self.services.sync_logger.log_event(
            None,
            SyncAction.MANUAL_SYNC_TRIGGERED,
            outcome,
            f"Manual sync: {result.payments_updated} payments updated"
            if result.success
            else f"Manual sync did not complete: {'; '.join(result.errors + result.warnings)}",
            metadata=(options or SyncOptions()).model_dump(),
            lease_id=lease_id,
        )
        return result

    @router.get("/leases/{lease_id}/consistency", response_model=ValidationResult)
    @safe_handler
    async def lease_consistency(self, lease_id: uuid.UUID):
        return await self.services.synchronizer.validate_lease_payment_consistency(
            lease_id
        )

    @router.post("/payments/{payment_id}/process", response_model=ProcessPaymentResult)
    @safe_handler
    async def process_payment(
        self,
        payment_id: uuid.UUID,
        settlement: PaymentSettlementSchema,
    ):
        return await self.services.synchronizer.process_payment_with_sync(
            payment_id, settlement
        )

    @router.get("/health", response_model=HealthReport)
    @safe_handler
    async def health(self):
        return await self.services.monitor.generate_health_report()

    @router.post("/monitoring/start", response_model=MonitoringStatus)
    @safe_handler
    async def start_monitoring(
        self, interval_seconds: Optional[float] = Query(default=None, gt=0)
    ):
        self.services.monitor.start(interval_seconds)
        return self.services.monitor.status()

    @router.post("/monitoring/stop", response_model=MonitoringStatus)
    @safe_handler
    async def stop_monitoring(self):
        await self.services.monitor.stop()
        return self.services.monitor.status()

    @router.get("/monitoring/status", response_model=MonitoringStatus)
    @safe_handler
    async def monitoring_status(self):
        return self.services.monitor.status()

    @router.get("/failures", response_model=List[LeaseSyncFailure])
    @safe_handler
    async def sync_failures(self):
        return await self.services.synchronizer.detect_sync_failures()

    @router.get("/log/stats", response_model=SyncStats)
    @safe_handler
    async def log_stats(self, window: StatsWindow = StatsWindow.DAY):
        return self.services.sync_logger.stats(window)

    @router.get("/log/errors", response_model=List[SyncLogEntry])
    @safe_handler
    async def log_errors(self, limit: int = Query(default=50, ge=1, le=1000)):
        return self.services.sync_logger.recent_errors(limit)

    @router.get("/log/patterns", response_model=FailurePatterns)
    @safe_handler
    async def log_patterns(self):
        return self.services.sync_logger.detect_failure_patterns()

    @router.get("/log/payments/{payment_id}", response_model=List[SyncLogEntry])
    @safe_handler
    async def payment_log(self, payment_id: uuid.UUID):
        return self.services.sync_logger.entries_for(payment_id)

    @router.get("/migration/status", response_model=MigrationStatus)
    @safe_handler
    async def migration_status(self):
        return await self.services.migration.status()

    @router.post("/migration/up", response_model=MigrationResult)
    @safe_handler
    async def migration_up(self):
        return await self.services.migration.up()

    @router.post("/migration/down", response_model=MigrationResult)
    @safe_handler
    async def migration_down(self):
        return await self.services.migration.down()
