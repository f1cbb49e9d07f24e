import logging

from repos.lease_repo import LeaseRepo
from schemas.schema import InitializationChecks, InitializationResult
from services.lease_payment_synchronizer import LeasePaymentSynchronizer
from services.sync_migration_service import PaymentSyncMigration
from services.sync_monitor_service import PaymentSyncMonitor

logger = logging.getLogger("startup")


class PaymentSyncInitializer:
    """Startup checks for the sync subsystem.

    Optionally applies the migration, reports whether it is still needed,
    starts the monitor and validates a small sample of leases.
    """

    def __init__(
        self,
        session_factory,
        migration: PaymentSyncMigration,
        monitor: PaymentSyncMonitor,
        synchronizer: LeasePaymentSynchronizer,
        auto_migrate: bool = False,
        start_monitoring: bool = True,
        sample_size: int = 10,
    ):
        self.session_factory = session_factory
        self.migration = migration
        self.monitor = monitor
        self.synchronizer = synchronizer
        self.auto_migrate = auto_migrate
        self.start_monitoring = start_monitoring
        self.sample_size = sample_size
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> InitializationResult:
        if self._initialized:
            return InitializationResult(
                success=True,
                message="Payment synchronization already initialized",
                checks=InitializationChecks(
                    migration_status="completed",
                    monitoring_status="already_running"
                    if self.monitor.is_running
                    else "failed",
                    data_consistency="valid",
                ),
            )

        result = InitializationResult()

        if self.auto_migrate:
            await self._run_migration(result)
        migration_needed = await self._check_migration(result)
        self._start_monitoring(result)

        if migration_needed:
            result.checks.data_consistency = "skipped"
            result.warnings.append("Skipping consistency checks - migration required")
        elif result.checks.migration_status == "completed":
            await self._check_consistency(result)

        result.success = not result.errors and result.checks.migration_status != "error"
        if self.start_monitoring:
            result.success = result.success and result.checks.monitoring_status != "failed"
        result.message = (
            "Payment synchronization system initialized successfully"
            if result.success
            else "Payment synchronization system initialized with issues"
        )

        if result.success:
            self._initialized = True
            logger.info(result.message)
        else:
            logger.warning(f"{result.message}: {'; '.join(result.errors)}")
        for warning in result.warnings:
            logger.warning(warning)
        return result

    async def shutdown(self) -> None:
        await self.monitor.stop()
        self._initialized = False

    async def _run_migration(self, result: InitializationResult) -> None:
        migration = await self.migration.up()
        if not migration.success:
            result.errors.append(f"Automatic migration failed: {migration.message}")

    async def _check_migration(self, result: InitializationResult) -> bool:
        try:
            status = await self.migration.status()
        except Exception as e:
            logger.exception("Migration check failed")
            result.checks.migration_status = "error"
            result.errors.append(f"Migration check failed: {e}")
            return False

        if status.needed:
            result.checks.migration_status = "needed"
            result.warnings.append(
                f"Migration required: {status.payments_without_sync_fields} payments "
                f"need sync fields"
            )
            return True
        result.checks.migration_status = "completed"
        return False

    def _start_monitoring(self, result: InitializationResult) -> None:
        if not self.start_monitoring:
            result.checks.monitoring_status = "failed"
            result.warnings.append("Monitoring disabled by configuration")
            return
        try:
            started = self.monitor.start()
        except Exception as e:
            logger.exception("Failed to start monitoring")
            result.checks.monitoring_status = "failed"
            result.errors.append(f"Monitoring startup failed: {e}")
            return
        result.checks.monitoring_status = "started" if started else "already_running"

    async def _check_consistency(self, result: InitializationResult) -> None:
        try:
            async with self.session_factory() as db:
                lease_ids = await LeaseRepo(db).list_ids(limit=self.sample_size)
        except Exception as e:
            logger.exception("Consistency check failed")
            result.checks.data_consistency = "error"
            result.errors.append(f"Consistency check failed: {e}")
            return

        total_issues = 0
        details = []
        for lease_id in lease_ids:
            try:
                validation = await self.synchronizer.validate_lease_payment_consistency(
                    lease_id
                )
            except Exception:
                logger.exception(f"Validation of lease {lease_id} failed")
                total_issues += 1
                details.append(f"Lease {lease_id}: Validation failed")
                continue
            if not validation.is_valid:
                total_issues += len(validation.errors)
                details.append(f"Lease {lease_id}: {', '.join(validation.errors)}")

        if not total_issues:
            result.checks.data_consistency = "valid"
            return

        result.checks.data_consistency = "issues_found"
        result.warnings.append(
            f"Found {total_issues} consistency issues in sample of {len(lease_ids)} leases"
        )
        result.warnings.extend(details[:3])
        if len(details) > 3:
            result.warnings.append(f"... and {len(details) - 3} more issues")
