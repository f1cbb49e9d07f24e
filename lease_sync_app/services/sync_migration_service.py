import logging

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from core.clock import Clock
from models.models import ProcessedGatewayEvent
from repos.payment_repo import PaymentRepo
from schemas.schema import MigrationResult, MigrationStats, MigrationStatus

logger = logging.getLogger(__name__)

SYNC_INDEXES = {
    "unique_lease_payment_per_due_date": (
        "CREATE UNIQUE INDEX IF NOT EXISTS unique_lease_payment_per_due_date "
        "ON payments (lease_id, type, due_date) WHERE deleted_at IS NULL"
    ),
    "sync_status_lookup": (
        "CREATE INDEX IF NOT EXISTS sync_status_lookup "
        "ON payments (sync_status, last_synced_at)"
    ),
    "version_lookup": "CREATE INDEX IF NOT EXISTS version_lookup ON payments (version)",
}


class PaymentSyncMigration:
    """Bootstraps the payment sync-control fields and their indexes."""

    def __init__(self, session_factory, clock: Clock | None = None):
        self.session_factory = session_factory
        self.clock = clock or Clock()
        self._ready = False

    async def _existing_indexes(self, db) -> set[str]:
        conn = await db.connection()
        indexes = await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).get_indexes("payments")
        )
        return {index["name"] for index in indexes}

    async def _repair_tenant_references(self, repo: PaymentRepo, stats) -> None:
        for payment_id, tenant_id, user_id in await repo.find_legacy_tenant_references():
            if user_id is None:
                stats.inconsistencies.append(
                    f"Payment {payment_id} references tenant {tenant_id} with no user"
                )
                continue
            stats.tenant_references_fixed += await repo.set_tenant(payment_id, user_id)

    async def _create_indexes(self, stats: MigrationStats) -> None:
        async with self.session_factory() as db:
            existing = await self._existing_indexes(db)

        for name, ddl in SYNC_INDEXES.items():
            if name in existing:
                continue
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        await db.execute(text(ddl))
                stats.indexes_created += 1
                logger.info(f"Created index {name}")
            except SQLAlchemyError as e:
                logger.warning(f"Could not create index {name}: {e}")
                stats.errors.append(f"Could not create index {name}: {e}")

    async def up(self) -> MigrationResult:
        self._ready = False
        stats = MigrationStats()
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    conn = await db.connection()
                    await conn.run_sync(
                        lambda sync_conn: ProcessedGatewayEvent.__table__.create(
                            sync_conn, checkfirst=True
                        )
                    )
                    repo = PaymentRepo(db)
                    stats.payments_updated = await repo.backfill_sync_fields(
                        self.clock.now()
                    )
                    await self._repair_tenant_references(repo, stats)

            await self._create_indexes(stats)

            async with self.session_factory() as db:
                mismatches = await PaymentRepo(db).find_reference_mismatches()
            for payment_id, lease_id in mismatches:
                stats.inconsistencies.append(
                    f"Payment {payment_id} references do not match lease {lease_id}"
                )
            if mismatches:
                logger.warning(
                    f"Found {len(mismatches)} payments with inconsistent references"
                )
        except SQLAlchemyError as e:
            logger.exception("Payment sync migration failed")
            stats.errors.append(str(e))
            return MigrationResult(
                success=False, message=f"Migration failed: {e}", stats=stats
            )

        logger.info(
            f"Payment sync migration completed: {stats.payments_updated} backfilled, "
            f"{stats.tenant_references_fixed} tenant references fixed, "
            f"{stats.indexes_created} indexes created"
        )
        return MigrationResult(
            success=True,
            message="Payment sync enhancement migration completed successfully",
            stats=stats,
        )

    async def down(self) -> MigrationResult:
        self._ready = False
        stats = MigrationStats()
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    stats.payments_updated = await PaymentRepo(db).clear_sync_fields()

            async with self.session_factory() as db:
                existing = await self._existing_indexes(db)
            for name in SYNC_INDEXES:
                if name not in existing:
                    continue
                async with self.session_factory() as db:
                    async with db.begin():
                        await db.execute(text(f"DROP INDEX IF EXISTS {name}"))
                stats.indexes_dropped += 1
        except SQLAlchemyError as e:
            logger.exception("Payment sync migration rollback failed")
            stats.errors.append(str(e))
            return MigrationResult(
                success=False, message=f"Rollback failed: {e}", stats=stats
            )

        logger.info(
            f"Payment sync migration rolled back: {stats.payments_updated} payments cleared"
        )
        return MigrationResult(
            success=True,
            message="Payment sync enhancement migration rollback completed successfully",
            stats=stats,
        )

    async def is_needed(self) -> bool:
        async with self.session_factory() as db:
            return await PaymentRepo(db).count_missing_sync_fields() > 0

    async def status(self) -> MigrationStatus:
        async with self.session_factory() as db:
            repo = PaymentRepo(db)
            total = await repo.count_all()
            missing = await repo.count_missing_sync_fields()
        return MigrationStatus(
            needed=missing > 0,
            total_payments=total,
            payments_with_sync_fields=total - missing,
            payments_without_sync_fields=missing,
        )

    async def ensure_ready(self) -> bool:
        """True once no payment is missing sync fields; a positive answer is cached."""
        if self._ready:
            return True
        self._ready = not await self.is_needed()
        return self._ready

    def reset(self) -> None:
        self._ready = False
