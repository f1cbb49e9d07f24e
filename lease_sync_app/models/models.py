import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from core.get_db import Base

from .enums import (
    LeasePaymentStatus,
    LeaseStatus,
    PaymentStatus,
    PaymentType,
    SyncStatus,
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )


class Tenant(Base):
    """Deprecated tenant record. Payments should reference the matched user instead."""

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )


class Lease(Base):
    __tablename__ = "leases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    property_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[LeaseStatus] = mapped_column(
        Enum(LeaseStatus, native_enum=False),
        nullable=False,
        default=LeaseStatus.DRAFT,
        index=True,
    )

    rent_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    rent_due_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    payment_status: Mapped[Optional[LeasePaymentStatus]] = mapped_column(
        Enum(LeasePaymentStatus, native_enum=False), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @validates("end_date")
    def validate_dates(self, key, value):
        if self.start_date and value and value < self.start_date:
            raise ValueError("Lease end date must not be before start date.")
        return value

    @validates("rent_due_day")
    def validate_due_day(self, key, value):
        if value is not None and not 1 <= value <= 31:
            raise ValueError("Rent due day must be between 1 and 31.")
        return value

    def __repr__(self) -> str:
        return f"<Lease id={self.id} status={self.status}>"


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # No foreign keys: orphans and mismatches are detected, not prevented.
    lease_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    property_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    type: Mapped[PaymentType] = mapped_column(
        Enum(PaymentType, native_enum=False), nullable=False, default=PaymentType.RENT
    )
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, index=True, nullable=True
    )

    version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=0)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sync_status: Mapped[Optional[SyncStatus]] = mapped_column(
        Enum(SyncStatus, native_enum=False),
        nullable=True,
        default=SyncStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def balance(self) -> Decimal:
        return Decimal(self.amount or 0) - Decimal(self.amount_paid or 0)

    @validates("amount")
    def validate_amount(self, key, value):
        if value is not None and value <= 0:
            raise ValueError("Payment amount must be positive.")
        return value

    def __repr__(self) -> str:
        return f"<Payment id={self.id} lease_id={self.lease_id} status={self.status}>"


class ProcessedGatewayEvent(Base):
    """One row per money-moving gateway event already applied to a payment."""

    __tablename__ = "processed_gateway_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
