import asyncio
import logging
from datetime import timedelta
from typing import Optional

from core.clock import Clock
from core.exceptions import SyncUnavailableError
from models.enums import (
    IssueType,
    Severity,
    StatsWindow,
    SyncAction,
    SyncOutcome,
    max_severity,
)
from repos.lease_repo import LeaseRepo
from repos.payment_repo import PaymentRepo
from schemas.schema import (
    HealthReport,
    MonitoringStatus,
    PerformanceMetrics,
    SyncIssue,
    SyncOptions,
)
from services.lease_payment_synchronizer import LeasePaymentSynchronizer
from services.sync_log_service import PaymentSyncLogger
from services.sync_migration_service import PaymentSyncMigration

logger = logging.getLogger(__name__)

MIGRATION_PENDING_WARNING = (
    "Auto-fix skipped: payment sync migration has not been applied"
)


def _ids(rows, index: int) -> list[str]:
    seen: dict[str, None] = {}
    for row in rows:
        seen[str(row[index])] = None
    return list(seen)


class PaymentSyncMonitor:
    """Periodic health checks over leases and payments, with auto-fix."""

    def __init__(
        self,
        session_factory,
        synchronizer: LeasePaymentSynchronizer,
        sync_logger: PaymentSyncLogger,
        migration: PaymentSyncMigration,
        clock: Clock | None = None,
        interval_seconds: float = 300.0,
        stale_pending_minutes: int = 30,
        max_pending_syncs: int = 10,
    ):
        self.session_factory = session_factory
        self.synchronizer = synchronizer
        self.sync_logger = sync_logger
        self.migration = migration
        self.clock = clock or Clock()
        self.interval_seconds = interval_seconds
        self.stale_pending_minutes = stale_pending_minutes
        self.max_pending_syncs = max_pending_syncs

        self.tick_count = 0
        self.last_report: Optional[HealthReport] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running_interval: Optional[float] = None

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_seconds: float | None = None) -> bool:
        if self.is_running:
            logger.info("Payment sync monitoring already running")
            return False
        interval = interval_seconds or self.interval_seconds
        self._stop_event = asyncio.Event()
        self._running_interval = interval
        self._task = asyncio.create_task(self._loop(interval, self._stop_event))
        logger.info(f"Payment sync monitoring started (every {interval}s)")
        return True

    async def stop(self) -> bool:
        if self._task is None:
            return False
        self._stop_event.set()
        task, self._task = self._task, None
        await task
        self._running_interval = None
        logger.info("Payment sync monitoring stopped")
        return True

    def status(self) -> MonitoringStatus:
        return MonitoringStatus(
            running=self.is_running,
            interval_seconds=self._running_interval,
            tick_count=self.tick_count,
            last_report_at=self.last_report.timestamp if self.last_report else None,
        )

    async def _loop(self, interval: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.run_tick()
            except SyncUnavailableError as e:
                logger.warning(f"Monitoring tick skipped, database unavailable: {e}")
            except Exception:
                logger.exception("Monitoring tick failed")

    # Reporting

    async def generate_health_report(self) -> HealthReport:
        now = self.clock.now()
        report = HealthReport(timestamp=now)

        try:
            async with self.session_factory() as db:
                report.total_leases = await LeaseRepo(db).count_active()
                report.total_payments = await PaymentRepo(db).count_active()
        except Exception as e:
            logger.exception("Failed to count leases and payments")
            report.warnings.append(f"Counting failed: {e}")

        detectors = (
            ("Data inconsistency check", self._detect_data_inconsistencies),
            ("Sync failure check", self._detect_sync_failures),
            ("Performance check", self._detect_performance_issues),
            ("Orphaned data check", self._detect_orphaned_data),
        )
        for name, detector in detectors:
            try:
                report.issues.extend(await detector(now))
            except Exception as e:
                logger.exception(f"{name} failed")
                report.warnings.append(f"{name} failed: {e}")

        try:
            report.metrics = await self._calculate_metrics()
        except Exception as e:
            logger.exception("Failed to calculate sync metrics")
            report.warnings.append(f"Metrics calculation failed: {e}")

        try:
            report.migration_needed = not await self.migration.ensure_ready()
        except Exception as e:
            logger.exception("Failed to check migration status")
            report.warnings.append(f"Migration check failed: {e}")

        report.highest_severity = max_severity(i.severity for i in report.issues)
        report.recommendations = self._recommendations(report)
        return report

    def _issue(self, code, now, issue_type, severity, description, rows, fixable):
        return SyncIssue(
            id=f"{code}_{now.strftime('%Y%m%d%H%M%S')}",
            type=issue_type,
            severity=severity,
            description=description,
            lease_ids=_ids(rows, 1),
            payment_ids=_ids(rows, 0),
            detected_at=now,
            auto_fixable=fixable,
        )

    async def _detect_data_inconsistencies(self, now) -> list[SyncIssue]:
        async with self.session_factory() as db:
            repo = PaymentRepo(db)
            mismatched = await repo.find_reference_mismatches()
            out_of_period = await repo.find_out_of_period()

        issues = []
        if mismatched:
            issues.append(
                self._issue(
                    "mismatched_refs",
                    now,
                    IssueType.DATA_INCONSISTENCY,
                    Severity.HIGH,
                    f"Found {len(mismatched)} payments with mismatched tenant/property references",
                    mismatched,
                    True,
                )
            )
        if out_of_period:
            issues.append(
                self._issue(
                    "out_of_range",
                    now,
                    IssueType.DATA_INCONSISTENCY,
                    Severity.MEDIUM,
                    f"Found {len(out_of_period)} payments with due dates outside lease periods",
                    out_of_period,
                    False,
                )
            )
        return issues

    async def _detect_sync_failures(self, now) -> list[SyncIssue]:
        cutoff = now - timedelta(minutes=self.stale_pending_minutes)
        async with self.session_factory() as db:
            repo = PaymentRepo(db)
            stale = await repo.find_stale_pending(cutoff)
            failed = await repo.find_failed_sync()

        issues = []
        if stale:
            issues.append(
                self._issue(
                    "stale_pending",
                    now,
                    IssueType.SYNC_FAILURE,
                    Severity.MEDIUM,
                    f"Found {len(stale)} payments with stale pending sync status",
                    stale,
                    True,
                )
            )
        if failed:
            issues.append(
                self._issue(
                    "failed_sync",
                    now,
                    IssueType.SYNC_FAILURE,
                    Severity.HIGH,
                    f"Found {len(failed)} payments with failed sync status",
                    failed,
                    True,
                )
            )
        return issues

    async def _detect_performance_issues(self, now) -> list[SyncIssue]:
        async with self.session_factory() as db:
            pending = await PaymentRepo(db).count_pending_sync()
        if pending <= self.max_pending_syncs:
            return []
        return [
            self._issue(
                "high_pending_count",
                now,
                IssueType.PERFORMANCE_ISSUE,
                Severity.MEDIUM,
                f"High number of pending syncs: {pending}",
                [],
                False,
            )
        ]

    async def _detect_orphaned_data(self, now) -> list[SyncIssue]:
        async with self.session_factory() as db:
            orphans = await PaymentRepo(db).find_orphans()
        if not orphans:
            return []
        return [
            self._issue(
                "orphaned_payments",
                now,
                IssueType.ORPHANED_DATA,
                Severity.HIGH,
                f"Found {len(orphans)} payments referencing non-existent leases",
                orphans,
                False,
            )
        ]

    async def _calculate_metrics(self) -> PerformanceMetrics:
        hourly = self.sync_logger.stats(StatsWindow.HOUR)
        async with self.session_factory() as db:
            repo = PaymentRepo(db)
            pending = await repo.count_pending_sync()
            last_sync = await repo.latest_sync_time()
        return PerformanceMetrics(
            avg_sync_time_ms=self.synchronizer.average_duration_ms(),
            failure_rate=(hourly.errors / hourly.total) * 100 if hourly.total else 0.0,
            pending_sync_count=pending,
            last_sync_time=last_sync,
        )

    def _recommendations(self, report: HealthReport) -> list[str]:
        issues = report.issues
        recommendations = []
        if any(i.severity == Severity.CRITICAL for i in issues):
            recommendations.append(
                "Immediate attention required: Critical synchronization issues detected"
            )
        if any(i.severity == Severity.HIGH for i in issues):
            recommendations.append("High priority: Review and fix data inconsistencies")
        fixable = sum(1 for i in issues if i.auto_fixable)
        if fixable:
            recommendations.append(f"{fixable} issues can be automatically fixed")
        if report.metrics.pending_sync_count > self.max_pending_syncs:
            recommendations.append("Consider increasing sync processing capacity")
        if report.migration_needed:
            recommendations.append("Run the payment sync migration before auto-fixing")
        if not recommendations:
            recommendations.append("All systems operating normally")
        return recommendations

    # Processing

    async def run_tick(self) -> HealthReport:
        report = await self.generate_health_report()
        await self.process_health_report(report)
        self.tick_count += 1
        self.last_report = report
        return report

    async def process_health_report(self, report: HealthReport) -> None:
        for issue in report.issues:
            if issue.severity == Severity.CRITICAL:
                logger.error(f"CRITICAL SYNC ISSUE {issue.id}: {issue.description}")
            elif issue.severity == Severity.HIGH:
                logger.warning(f"HIGH PRIORITY SYNC ISSUE {issue.id}: {issue.description}")

        fixable = [i for i in report.issues if i.auto_fixable]
        if not fixable:
            return
        if report.migration_needed:
            report.warnings.append(MIGRATION_PENDING_WARNING)
            logger.warning(MIGRATION_PENDING_WARNING)
            return

        for issue in fixable:
            try:
                if await self.auto_fix_issue(issue):
                    report.auto_fixed.append(issue.id)
            except SyncUnavailableError:
                raise
            except Exception as e:
                logger.exception(f"Failed to auto-fix issue {issue.id}")
                report.warnings.append(f"Auto-fix of {issue.id} failed: {e}")

    async def auto_fix_issue(self, issue: SyncIssue) -> bool:
        """Force a sync of every lease behind ``issue``; True when all succeeded."""
        fixed_all = True
        for lease_id in issue.lease_ids:
            if issue.type == IssueType.DATA_INCONSISTENCY:
                validation = await self.synchronizer.validate_lease_payment_consistency(
                    lease_id
                )
                if validation.is_valid:
                    continue

            result = await self.synchronizer.sync_lease(
                lease_id, SyncOptions(force_sync=True)
            )
            outcome = SyncOutcome.SUCCESS if result.success else SyncOutcome.ERROR
            details = (
                f"Auto-fix for {issue.id} synced lease"
                if result.success
                else f"Auto-fix for {issue.id} failed: {'; '.join(result.errors + result.warnings)}"
            )
            self.sync_logger.log_event(
                None,
                SyncAction.SYNC_RECOVERY_ATTEMPTED,
                outcome,
                details,
                metadata={"issue_id": issue.id, "issue_type": issue.type.value},
                lease_id=lease_id,
            )
            fixed_all = fixed_all and result.success
        return fixed_all
