import uuid
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from models.enums import PaymentStatus, SyncStatus
from models.models import Lease, Payment, Tenant


class PaymentRepo:
    def __init__(self, db):
        self.db = db

    async def create(self, payment: Payment) -> Payment:
        try:
            self.db.add(payment)
            await self.db.flush()
            return payment
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(
                Payment.id == payment_id, Payment.deleted_at.is_(None)
            )
        )
        return result.scalar_one_or_none()

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(
                Payment.gateway_transaction_id == transaction_id,
                Payment.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def list_active_for_lease(self, lease_id: uuid.UUID) -> List[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.lease_id == lease_id, Payment.deleted_at.is_(None))
            .order_by(Payment.due_date, Payment.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def apply_versioned_update(
        self,
        payment_id: uuid.UUID,
        expected_version: Optional[int],
        values: dict[str, Any],
    ) -> bool:
        """Write ``values`` and bump the version only if nobody else did first."""
        version_guard = (
            Payment.version.is_(None)
            if expected_version is None
            else Payment.version == expected_version
        )
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, version_guard)
            .values(**values, version=func.coalesce(Payment.version, 0) + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def mark_sync_status_for_lease(
        self, lease_id: uuid.UUID, sync_status: SyncStatus
    ) -> int:
        stmt = (
            update(Payment)
            .where(Payment.lease_id == lease_id, Payment.deleted_at.is_(None))
            .values(
                sync_status=sync_status,
                version=func.coalesce(Payment.version, 0) + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount

    async def count_active(self) -> int:
        result = await self.db.execute(
            select(func.count(Payment.id)).where(Payment.deleted_at.is_(None))
        )
        return result.scalar_one()

    async def count_pending_sync(self) -> int:
        result = await self.db.execute(
            select(func.count(Payment.id)).where(
                Payment.sync_status == SyncStatus.PENDING,
                Payment.deleted_at.is_(None),
            )
        )
        return result.scalar_one()

    async def latest_sync_time(self) -> Optional[datetime]:
        result = await self.db.execute(select(func.max(Payment.last_synced_at)))
        return result.scalar_one_or_none()

    async def lease_ids_with_pending_sync(self) -> List[uuid.UUID]:
        result = await self.db.execute(
            select(Payment.lease_id)
            .where(
                Payment.sync_status == SyncStatus.PENDING,
                Payment.deleted_at.is_(None),
            )
            .distinct()
        )
        return list(result.scalars().all())

    async def find_reference_mismatches(self) -> List[tuple[uuid.UUID, uuid.UUID]]:
        result = await self.db.execute(
            select(Payment.id, Payment.lease_id)
            .join(Lease, Lease.id == Payment.lease_id)
            .where(
                Payment.deleted_at.is_(None),
                Lease.deleted_at.is_(None),
                or_(
                    Payment.tenant_id != Lease.tenant_id,
                    Payment.property_id != Lease.property_id,
                ),
            )
        )
        return [(row.id, row.lease_id) for row in result.all()]

    async def find_out_of_period(self) -> List[tuple[uuid.UUID, uuid.UUID]]:
        result = await self.db.execute(
            select(Payment.id, Payment.lease_id)
            .join(Lease, Lease.id == Payment.lease_id)
            .where(
                Payment.deleted_at.is_(None),
                Lease.deleted_at.is_(None),
                Payment.status != PaymentStatus.CANCELLED,
                or_(
                    Payment.due_date < Lease.start_date,
                    Payment.due_date > Lease.end_date,
                ),
            )
        )
        return [(row.id, row.lease_id) for row in result.all()]

    async def find_stale_pending(
        self, cutoff: datetime
    ) -> List[tuple[uuid.UUID, uuid.UUID]]:
        result = await self.db.execute(
            select(Payment.id, Payment.lease_id).where(
                Payment.sync_status == SyncStatus.PENDING,
                Payment.deleted_at.is_(None),
                func.coalesce(Payment.last_synced_at, Payment.created_at) < cutoff,
            )
        )
        return [(row.id, row.lease_id) for row in result.all()]

    async def find_failed_sync(self) -> List[tuple[uuid.UUID, uuid.UUID]]:
        result = await self.db.execute(
            select(Payment.id, Payment.lease_id).where(
                Payment.sync_status == SyncStatus.FAILED,
                Payment.deleted_at.is_(None),
            )
        )
        return [(row.id, row.lease_id) for row in result.all()]

    async def find_orphans(self) -> List[tuple[uuid.UUID, uuid.UUID]]:
        result = await self.db.execute(
            select(Payment.id, Payment.lease_id)
            .outerjoin(Lease, Lease.id == Payment.lease_id)
            .where(Payment.deleted_at.is_(None), Lease.id.is_(None))
        )
        return [(row.id, row.lease_id) for row in result.all()]

    # Schema bootstrap helpers

    # A never-synced payment legitimately has no last_synced_at, so only
    # version and sync_status mark a row as predating the sync fields.
    def _missing_sync_fields(self):
        return or_(Payment.version.is_(None), Payment.sync_status.is_(None))

    async def count_all(self) -> int:
        result = await self.db.execute(select(func.count(Payment.id)))
        return result.scalar_one()

    async def count_missing_sync_fields(self) -> int:
        result = await self.db.execute(
            select(func.count(Payment.id)).where(self._missing_sync_fields())
        )
        return result.scalar_one()

    async def backfill_sync_fields(self, now: datetime) -> int:
        """Fill only the missing sync fields; returns how many payments were touched."""
        result = await self.db.execute(
            select(Payment.id).where(self._missing_sync_fields())
        )
        legacy_ids = list(result.scalars().all())
        if not legacy_ids:
            return 0
        defaults = (
            (Payment.version, {"version": 0}),
            (Payment.sync_status, {"sync_status": SyncStatus.SYNCED}),
            (Payment.last_synced_at, {"last_synced_at": now}),
        )
        for column, values in defaults:
            await self.db.execute(
                update(Payment)
                .where(Payment.id.in_(legacy_ids), column.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return len(legacy_ids)

    async def clear_sync_fields(self) -> int:
        stmt = (
            update(Payment)
            .where(
                or_(
                    Payment.version.is_not(None),
                    Payment.last_synced_at.is_not(None),
                    Payment.sync_status.is_not(None),
                )
            )
            .values(version=None, last_synced_at=None, sync_status=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount

    async def find_legacy_tenant_references(
        self,
    ) -> List[tuple[uuid.UUID, uuid.UUID, Optional[uuid.UUID]]]:
        result = await self.db.execute(
            select(Payment.id, Payment.tenant_id, Tenant.user_id).join(
                Tenant, Tenant.id == Payment.tenant_id
            )
        )
        return [(row.id, row.tenant_id, row.user_id) for row in result.all()]

    async def set_tenant(self, payment_id: uuid.UUID, tenant_id: uuid.UUID) -> int:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .values(tenant_id=tenant_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount
