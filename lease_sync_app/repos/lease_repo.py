import uuid
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from models.enums import LeasePaymentStatus
from models.models import Lease


class LeaseRepo:
    def __init__(self, db):
        self.db = db

    async def create(self, lease: Lease) -> Lease:
        try:
            self.db.add(lease)
            await self.db.flush()
            return lease
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def get_by_id(
        self, lease_id: uuid.UUID, include_deleted: bool = False
    ) -> Optional[Lease]:
        stmt = select(Lease).where(Lease.id == lease_id)
        if not include_deleted:
            stmt = stmt.where(Lease.deleted_at.is_(None))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def count_active(self) -> int:
        result = await self.db.execute(
            select(func.count(Lease.id)).where(Lease.deleted_at.is_(None))
        )
        return result.scalar_one()

    async def list_ids(self, limit: int | None = None) -> List[uuid.UUID]:
        stmt = (
            select(Lease.id)
            .where(Lease.deleted_at.is_(None))
            .order_by(Lease.created_at, Lease.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update_payment_status(
        self, lease_id: uuid.UUID, payment_status: LeasePaymentStatus
    ) -> int:
        stmt = (
            update(Lease)
            .where(Lease.id == lease_id)
            .values(payment_status=payment_status)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount
