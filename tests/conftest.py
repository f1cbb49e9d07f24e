"""Pytest configuration and fixtures."""

import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from core.clock import Clock
from core.get_db import Base, build_engine, build_session_factory
from core.services import build_sync_services
from core.settings import Settings
from models.enums import LeaseStatus, PaymentStatus, PaymentType
from models.models import Lease, Payment


class FakeClock(Clock):
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    """Mid-January 2025, noon UTC."""
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0))


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        SYNC_TRANSACTION_TIMEOUT_SECONDS=5.0,
        HEALTH_CHECK_INTERVAL_SECONDS=0.05,
        SYNC_LOG_CAPACITY=1000,
        STALE_PENDING_MINUTES=30,
        MAX_PENDING_SYNCS=10,
        SYNC_AUTO_MIGRATE=False,
        START_MONITORING_ON_STARTUP=False,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def services(session_factory, test_settings, clock):
    services = build_sync_services(session_factory, test_settings, clock)
    yield services
    await services.monitor.stop()


@pytest.fixture
def add_lease(session_factory):
    async def _add(**overrides) -> Lease:
        values = dict(
            tenant_id=uuid.uuid4(),
            property_id=uuid.uuid4(),
            start_date=date(2025, 1, 1),
            end_date=date(2025, 12, 31),
            status=LeaseStatus.ACTIVE,
            rent_amount=Decimal("1200.00"),
            rent_due_day=1,
        )
        values.update(overrides)
        async with session_factory() as db:
            lease = Lease(**values)
            db.add(lease)
            await db.commit()
            return lease

    return _add


@pytest.fixture
def add_payment(session_factory):
    async def _add(lease: Lease | None = None, **overrides) -> Payment:
        values = dict(
            lease_id=lease.id if lease else uuid.uuid4(),
            tenant_id=lease.tenant_id if lease else uuid.uuid4(),
            property_id=lease.property_id if lease else uuid.uuid4(),
            amount=Decimal("1200.00"),
            amount_paid=Decimal("0"),
            due_date=date(2025, 2, 1),
            type=PaymentType.RENT,
            status=PaymentStatus.PENDING,
        )
        values.update(overrides)
        async with session_factory() as db:
            payment = Payment(**values)
            db.add(payment)
            await db.commit()
            return payment

    return _add


@pytest.fixture
def get_payment(session_factory):
    async def _get(payment_id) -> Payment:
        async with session_factory() as db:
            result = await db.execute(select(Payment).where(Payment.id == payment_id))
            return result.scalar_one()

    return _get


@pytest.fixture
def get_lease(session_factory):
    async def _get(lease_id) -> Lease:
        async with session_factory() as db:
            result = await db.execute(select(Lease).where(Lease.id == lease_id))
            return result.scalar_one()

    return _get


@pytest.fixture
def update_payment(session_factory):
    """Write payment columns directly, bypassing the engine."""

    async def _update(payment_id, **values) -> None:
        async with session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(Payment).where(Payment.id == payment_id).values(**values)
                )

    return _update


@pytest.fixture
def make_legacy(update_payment):
    """Strip the sync-control fields, as on rows written before the migration."""

    async def _make(payment_id) -> None:
        await update_payment(
            payment_id, version=None, sync_status=None, last_synced_at=None
        )

    return _make
