from enum import Enum


class LeaseStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    TERMINATED = "terminated"
    EXPIRED = "expired"


class LeasePaymentStatus(str, Enum):
    CURRENT = "current"
    PENDING = "pending"
    OVERDUE = "overdue"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    UPCOMING = "upcoming"
    DUE_SOON = "due_soon"
    DUE_TODAY = "due_today"
    PROCESSING = "processing"
    PARTIAL = "partial"
    GRACE_PERIOD = "grace_period"
    OVERDUE = "overdue"
    LATE = "late"
    SEVERELY_OVERDUE = "severely_overdue"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentPhase(str, Enum):
    OPEN = "open"
    IN_FLIGHT = "in_flight"
    DELINQUENT = "delinquent"
    SETTLED = "settled"
    VOID = "void"


PAYMENT_PHASES: dict[PaymentStatus, PaymentPhase] = {
    PaymentStatus.PENDING: PaymentPhase.OPEN,
    PaymentStatus.UPCOMING: PaymentPhase.OPEN,
    PaymentStatus.DUE_SOON: PaymentPhase.OPEN,
    PaymentStatus.DUE_TODAY: PaymentPhase.OPEN,
    PaymentStatus.PARTIAL: PaymentPhase.OPEN,
    PaymentStatus.FAILED: PaymentPhase.OPEN,
    PaymentStatus.PROCESSING: PaymentPhase.IN_FLIGHT,
    PaymentStatus.GRACE_PERIOD: PaymentPhase.DELINQUENT,
    PaymentStatus.OVERDUE: PaymentPhase.DELINQUENT,
    PaymentStatus.LATE: PaymentPhase.DELINQUENT,
    PaymentStatus.SEVERELY_OVERDUE: PaymentPhase.DELINQUENT,
    PaymentStatus.COMPLETED: PaymentPhase.SETTLED,
    PaymentStatus.REFUNDED: PaymentPhase.SETTLED,
    PaymentStatus.CANCELLED: PaymentPhase.VOID,
}

_unclassified = set(PaymentStatus) - set(PAYMENT_PHASES)
if _unclassified:
    raise RuntimeError(
        f"Payment statuses without a phase: {sorted(s.value for s in _unclassified)}"
    )

# Scheduled but not yet due; cancelled when the lease ends early.
PRE_DUE_STATUSES = frozenset(
    {
        PaymentStatus.PENDING,
        PaymentStatus.UPCOMING,
        PaymentStatus.DUE_SOON,
        PaymentStatus.DUE_TODAY,
    }
)

# Promoted to OVERDUE once the due date passes with a balance left.
PRE_OVERDUE_STATUSES = PRE_DUE_STATUSES | frozenset(
    {
        PaymentStatus.GRACE_PERIOD,
        PaymentStatus.PARTIAL,
        PaymentStatus.FAILED,
    }
)


def payment_phase(status: PaymentStatus) -> PaymentPhase:
    return PAYMENT_PHASES[PaymentStatus(status)]


class PaymentType(str, Enum):
    RENT = "rent"
    SECURITY_DEPOSIT = "security_deposit"
    LATE_FEE = "late_fee"
    PRORATED_RENT = "prorated_rent"
    UTILITY = "utility"
    MAINTENANCE = "maintenance"
    OTHER = "other"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class IssueType(str, Enum):
    DATA_INCONSISTENCY = "data_inconsistency"
    SYNC_FAILURE = "sync_failure"
    PERFORMANCE_ISSUE = "performance_issue"
    ORPHANED_DATA = "orphaned_data"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __ge__(self, other):
        if isinstance(other, Severity):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Severity):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Severity):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, Severity):
            return self.rank < other.rank
        return NotImplemented


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


def max_severity(severities) -> Severity | None:
    severities = list(severities)
    if not severities:
        return None
    return max(severities, key=lambda s: Severity(s).rank)


class ValidationLevel(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class SyncAction(str, Enum):
    WEBHOOK_RECEIVED = "webhook_received"
    PAYMENT_STATUS_UPDATED = "payment_status_updated"
    INVOICE_PAYMENT_ADDED = "invoice_payment_added"
    PAYMENT_LINKAGE_CREATED = "payment_linkage_created"
    PAYMENT_LINKAGE_REMOVED = "payment_linkage_removed"
    SYNC_FAILURE_DETECTED = "sync_failure_detected"
    SYNC_RECOVERY_ATTEMPTED = "sync_recovery_attempted"
    MANUAL_SYNC_TRIGGERED = "manual_sync_triggered"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class StatsWindow(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"


class GatewayResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROCESSING = "processing"
    CANCELED = "canceled"
    REFUNDED = "refunded"
