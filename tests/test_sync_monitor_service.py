"""Tests for PaymentSyncMonitor detectors, auto-fix and the background task."""

import asyncio
import uuid
from datetime import date, timedelta

import pytest

from models.enums import IssueType, Severity, SyncAction, SyncStatus
from repos.payment_repo import PaymentRepo
from services.sync_monitor_service import MIGRATION_PENDING_WARNING


@pytest.fixture
def monitor(services):
    return services.monitor


def issue_by_prefix(report, prefix):
    matches = [i for i in report.issues if i.id.startswith(prefix)]
    assert matches, f"no {prefix} issue in {[i.id for i in report.issues]}"
    return matches[0]


class TestHealthReport:
    async def test_healthy_system(self, services, monitor, add_lease, add_payment, clock):
        lease = await add_lease()
        await add_payment(lease)
        await services.synchronizer.sync_lease(lease.id)

        report = await monitor.generate_health_report()

        assert report.issues == []
        assert report.warnings == []
        assert report.total_leases == 1
        assert report.total_payments == 1
        assert report.highest_severity is None
        assert report.recommendations == ["All systems operating normally"]
        assert report.metrics.last_sync_time == clock.now()
        assert report.metrics.avg_sync_time_ms > 0

    async def test_mismatched_references(self, monitor, add_lease, add_payment):
        lease = await add_lease()
        payment = await add_payment(lease, tenant_id=uuid.uuid4())

        report = await monitor.generate_health_report()

        issue = issue_by_prefix(report, "mismatched_refs")
        assert issue.type == IssueType.DATA_INCONSISTENCY
        assert issue.severity == Severity.HIGH
        assert issue.auto_fixable
        assert issue.payment_ids == [str(payment.id)]
        assert issue.lease_ids == [str(lease.id)]
        assert report.highest_severity == Severity.HIGH
        assert "High priority: Review and fix data inconsistencies" in report.recommendations

    async def test_out_of_period_payments(self, monitor, add_lease, add_payment):
        lease = await add_lease()
        await add_payment(lease, due_date=date(2026, 3, 1))

        report = await monitor.generate_health_report()

        issue = issue_by_prefix(report, "out_of_range")
        assert issue.severity == Severity.MEDIUM
        assert not issue.auto_fixable

    async def test_stale_and_failed_syncs(
        self, monitor, add_lease, add_payment, update_payment, clock
    ):
        lease = await add_lease()
        stale = await add_payment(lease, due_date=date(2025, 2, 1))
        failed = await add_payment(lease, due_date=date(2025, 3, 1))
        await update_payment(stale.id, last_synced_at=clock.now() - timedelta(hours=2))
        await update_payment(failed.id, sync_status=SyncStatus.FAILED)

        report = await monitor.generate_health_report()

        stale_issue = issue_by_prefix(report, "stale_pending")
        assert stale_issue.severity == Severity.MEDIUM
        assert stale_issue.payment_ids == [str(stale.id)]
        failed_issue = issue_by_prefix(report, "failed_sync")
        assert failed_issue.severity == Severity.HIGH
        assert failed_issue.auto_fixable

    async def test_pending_backlog(self, monitor, add_lease, add_payment):
        monitor.max_pending_syncs = 1
        lease = await add_lease()
        await add_payment(lease, due_date=date(2025, 2, 1))
        await add_payment(lease, due_date=date(2025, 3, 1))

        report = await monitor.generate_health_report()

        issue = issue_by_prefix(report, "high_pending_count")
        assert issue.type == IssueType.PERFORMANCE_ISSUE
        assert "Consider increasing sync processing capacity" in report.recommendations

    async def test_orphaned_payments(self, monitor, add_payment):
        orphan = await add_payment(None)

        report = await monitor.generate_health_report()

        issue = issue_by_prefix(report, "orphaned_payments")
        assert issue.severity == Severity.HIGH
        assert not issue.auto_fixable
        assert issue.payment_ids == [str(orphan.id)]

    async def test_detector_failure_is_isolated(
        self, monitor, add_lease, add_payment, monkeypatch
    ):
        lease = await add_lease()
        await add_payment(lease, tenant_id=uuid.uuid4())

        async def broken(self):
            raise RuntimeError("orphan query exploded")

        monkeypatch.setattr(PaymentRepo, "find_orphans", broken)

        report = await monitor.generate_health_report()

        assert report.warnings == ["Orphaned data check failed: orphan query exploded"]
        issue_by_prefix(report, "mismatched_refs")


class TestRunTick:
    async def test_auto_fix_repairs_mismatch(
        self, services, monitor, add_lease, add_payment, get_payment
    ):
        lease = await add_lease()
        payment = await add_payment(lease, tenant_id=uuid.uuid4())

        report = await monitor.run_tick()

        issue = issue_by_prefix(report, "mismatched_refs")
        assert issue.id in report.auto_fixed
        assert (await get_payment(payment.id)).tenant_id == lease.tenant_id
        assert monitor.tick_count == 1
        assert monitor.last_report is report

        recoveries = [
            e
            for e in services.sync_logger.entries_for_lease(lease.id)
            if e.action == SyncAction.SYNC_RECOVERY_ATTEMPTED
        ]
        assert len(recoveries) == 1
        assert recoveries[0].metadata["issue_id"] == issue.id

        follow_up = await monitor.generate_health_report()
        assert [i for i in follow_up.issues if i.id.startswith("mismatched_refs")] == []

    async def test_auto_fix_retries_failed_sync(
        self, monitor, add_lease, add_payment, update_payment, get_payment
    ):
        lease = await add_lease()
        payment = await add_payment(lease)
        await update_payment(payment.id, sync_status=SyncStatus.FAILED)

        report = await monitor.run_tick()

        assert issue_by_prefix(report, "failed_sync").id in report.auto_fixed
        assert (await get_payment(payment.id)).sync_status == SyncStatus.SYNCED

    async def test_no_auto_fix_before_migration(
        self, monitor, add_lease, add_payment, make_legacy, get_payment
    ):
        lease = await add_lease()
        stray = await add_payment(lease, tenant_id=uuid.uuid4())
        await make_legacy(stray.id)

        report = await monitor.run_tick()

        assert report.migration_needed
        assert report.auto_fixed == []
        assert MIGRATION_PENDING_WARNING in report.warnings
        assert "Run the payment sync migration before auto-fixing" in report.recommendations
        assert (await get_payment(stray.id)).tenant_id == stray.tenant_id


class TestMonitoringTask:
    async def test_start_and_stop(self, monitor):
        assert monitor.start(0.01)
        assert not monitor.start(0.01)
        await asyncio.sleep(0.2)

        status = monitor.status()
        assert status.running
        assert status.interval_seconds == 0.01
        assert monitor.tick_count >= 1

        assert await monitor.stop()
        assert not await monitor.stop()
        assert not monitor.status().running

    async def test_stop_interrupts_long_interval(self, monitor):
        monitor.start(60)
        await asyncio.wait_for(monitor.stop(), timeout=1)
        assert monitor.tick_count == 0
