from dataclasses import dataclass

from fastapi import HTTPException, Request

from services.lease_payment_synchronizer import LeasePaymentSynchronizer
from services.payment_event_service import PaymentEventService
from services.sync_initializer import PaymentSyncInitializer
from services.sync_log_service import PaymentSyncLogger
from services.sync_migration_service import PaymentSyncMigration
from services.sync_monitor_service import PaymentSyncMonitor

from .clock import Clock
from .settings import Settings, settings as default_settings


@dataclass
class SyncServices:
    sync_logger: PaymentSyncLogger
    migration: PaymentSyncMigration
    synchronizer: LeasePaymentSynchronizer
    monitor: PaymentSyncMonitor
    initializer: PaymentSyncInitializer
    payment_events: PaymentEventService


def build_sync_services(
    session_factory,
    settings: Settings | None = None,
    clock: Clock | None = None,
) -> SyncServices:
    """Wire one instance of every sync service around a session factory."""
    settings = settings or default_settings
    clock = clock or Clock()

    sync_logger = PaymentSyncLogger(capacity=settings.SYNC_LOG_CAPACITY, clock=clock)
    migration = PaymentSyncMigration(session_factory, clock=clock)
    synchronizer = LeasePaymentSynchronizer(
        session_factory,
        migration,
        sync_logger,
        clock=clock,
        transaction_timeout=settings.SYNC_TRANSACTION_TIMEOUT_SECONDS,
        duration_window=settings.SYNC_DURATION_WINDOW,
    )
    monitor = PaymentSyncMonitor(
        session_factory,
        synchronizer,
        sync_logger,
        migration,
        clock=clock,
        interval_seconds=settings.HEALTH_CHECK_INTERVAL_SECONDS,
        stale_pending_minutes=settings.STALE_PENDING_MINUTES,
        max_pending_syncs=settings.MAX_PENDING_SYNCS,
    )
    initializer = PaymentSyncInitializer(
        session_factory,
        migration,
        monitor,
        synchronizer,
        auto_migrate=settings.SYNC_AUTO_MIGRATE,
        start_monitoring=settings.START_MONITORING_ON_STARTUP,
        sample_size=settings.CONSISTENCY_SAMPLE_SIZE,
    )
    payment_events = PaymentEventService(session_factory, synchronizer, sync_logger)
    return SyncServices(
        sync_logger=sync_logger,
        migration=migration,
        synchronizer=synchronizer,
        monitor=monitor,
        initializer=initializer,
        payment_events=payment_events,
    )


def get_sync_services(request: Request) -> SyncServices:
    services = getattr(request.app.state, "sync_services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Sync services are not ready")
    return services
