from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models.enums import (
    GatewayResult,
    IssueType,
    PaymentStatus,
    Severity,
    StatsWindow,
    SyncAction,
    SyncOutcome,
    ValidationLevel,
)


class SyncOptions(BaseModel):
    skip_validation: bool = False
    force_sync: bool = False


class PaymentSummary(BaseModel):
    total_due: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    total_overdue: Decimal = Decimal("0")
    total_pending: Decimal = Decimal("0")
    overdue_count: int = 0
    pending_count: int = 0
    completed_count: int = 0
    next_due_date: Optional[date] = None


class SyncResult(BaseModel):
    success: bool = False
    lease_id: Optional[str] = None
    lease_updated: bool = False
    payments_updated: int = 0
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    summary: Optional[PaymentSummary] = None
    duration_ms: Optional[float] = None


class Inconsistency(BaseModel):
    code: str
    type: IssueType
    severity: Severity
    level: ValidationLevel
    description: str
    lease_ids: List[str] = Field(default_factory=list)
    payment_ids: List[str] = Field(default_factory=list)
    auto_fixable: bool = False


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    inconsistencies: List[Inconsistency] = Field(default_factory=list)


class SyncIssue(BaseModel):
    id: str
    type: IssueType
    severity: Severity
    description: str
    lease_ids: List[str] = Field(default_factory=list)
    payment_ids: List[str] = Field(default_factory=list)
    detected_at: datetime
    auto_fixable: bool = False


class PerformanceMetrics(BaseModel):
    avg_sync_time_ms: float = 0.0
    failure_rate: float = 0.0
    pending_sync_count: int = 0
    last_sync_time: Optional[datetime] = None


class HealthReport(BaseModel):
    timestamp: datetime
    total_leases: int = 0
    total_payments: int = 0
    issues: List[SyncIssue] = Field(default_factory=list)
    metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    recommendations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    auto_fixed: List[str] = Field(default_factory=list)
    highest_severity: Optional[Severity] = None
    migration_needed: bool = False


class LeaseSyncFailure(BaseModel):
    lease_id: str
    issues: List[str] = Field(default_factory=list)


class MonitoringStatus(BaseModel):
    running: bool
    interval_seconds: Optional[float] = None
    tick_count: int = 0
    last_report_at: Optional[datetime] = None


class SyncLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: Optional[str] = None
    lease_id: Optional[str] = None
    action: SyncAction
    outcome: SyncOutcome
    details: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_code: Optional[str] = None
    timestamp: datetime


class SyncStats(BaseModel):
    window: StatsWindow
    total: int = 0
    success: int = 0
    warnings: int = 0
    errors: int = 0
    success_rate: float = 0.0


class RepeatedFailure(BaseModel):
    payment_id: str
    count: int
    last_error: str


class FailurePatterns(BaseModel):
    critical_errors: List[SyncLogEntry] = Field(default_factory=list)
    repeated_failures: List[RepeatedFailure] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class MigrationStats(BaseModel):
    payments_updated: int = 0
    tenant_references_fixed: int = 0
    indexes_created: int = 0
    indexes_dropped: int = 0
    inconsistencies: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class MigrationResult(BaseModel):
    success: bool = False
    message: str = ""
    stats: MigrationStats = Field(default_factory=MigrationStats)


class MigrationStatus(BaseModel):
    needed: bool
    total_payments: int = 0
    payments_with_sync_fields: int = 0
    payments_without_sync_fields: int = 0


class InitializationChecks(BaseModel):
    migration_status: str = "error"
    monitoring_status: str = "failed"
    data_consistency: str = "error"


class InitializationResult(BaseModel):
    success: bool = False
    message: str = ""
    checks: InitializationChecks = Field(default_factory=InitializationChecks)
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class PaymentSettlementSchema(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    status: Optional[PaymentStatus] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def require_amount_or_status(self):
        if self.amount is None and self.status is None:
            raise ValueError("A settlement needs an amount or a status.")
        return self


class ProcessPaymentResult(BaseModel):
    payment_id: str
    lease_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    amount_paid: Optional[Decimal] = None
    sync: SyncResult


class GatewayEventSchema(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    result: GatewayResult
    amount: Optional[Decimal] = Field(default=None, gt=0)
    event_id: Optional[str] = Field(default=None, max_length=200)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("transaction_id", mode="before")
    @classmethod
    def strip_transaction_id(cls, value: str) -> str:
        return value.strip() if isinstance(value, str) else value

    @property
    def dedupe_key(self) -> str:
        """Identity of the money movement; redeliveries share it."""
        if self.event_id:
            return f"event:{self.event_id}"
        amount = (
            self.amount.quantize(Decimal("0.01")) if self.amount is not None else "balance"
        )
        return f"{self.transaction_id}:{self.result.value}:{amount}"
