import logging
import threading
from collections import Counter, deque
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.clock import Clock
from core.exceptions import (
    ConcurrencyConflictError,
    LeaseNotFoundError,
    MigrationRequiredError,
    PaymentNotFoundError,
    SyncUnavailableError,
    SyncValidationError,
    TransactionFailureError,
)
from core.validate_enum import validate_enum
from models.enums import StatsWindow, SyncAction, SyncOutcome
from schemas.schema import FailurePatterns, RepeatedFailure, SyncLogEntry, SyncStats

logger = logging.getLogger(__name__)

WINDOWS = {
    StatsWindow.HOUR: timedelta(hours=1),
    StatsWindow.DAY: timedelta(days=1),
    StatsWindow.WEEK: timedelta(weeks=1),
}

CRITICAL_ACTIONS = frozenset(
    {SyncAction.WEBHOOK_RECEIVED, SyncAction.INVOICE_PAYMENT_ADDED}
)

ERROR_CODES = (
    (LeaseNotFoundError, "LEASE_NOT_FOUND"),
    (PaymentNotFoundError, "PAYMENT_NOT_FOUND"),
    (SyncValidationError, "VALIDATION_FAILED"),
    (ConcurrencyConflictError, "CONCURRENCY_CONFLICT"),
    (MigrationRequiredError, "MIGRATION_REQUIRED"),
    (SyncUnavailableError, "NETWORK_ERROR"),
    (TransactionFailureError, "DATABASE_ERROR"),
    (SQLAlchemyError, "DATABASE_ERROR"),
    (TimeoutError, "TIMEOUT"),
    (ConnectionError, "NETWORK_ERROR"),
)

_OUTCOME_LEVELS = {
    SyncOutcome.SUCCESS: logging.INFO,
    SyncOutcome.WARNING: logging.WARNING,
    SyncOutcome.ERROR: logging.ERROR,
}


def error_code_for(error: BaseException | str | None) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, BaseException):
        for exc_type, code in ERROR_CODES:
            if isinstance(error, exc_type):
                return code
        message = str(error)
    else:
        message = error

    lowered = message.lower()
    if "lease not found" in lowered:
        return "LEASE_NOT_FOUND"
    if "payment not found" in lowered:
        return "PAYMENT_NOT_FOUND"
    if "database" in lowered:
        return "DATABASE_ERROR"
    if "network" in lowered or "connection" in lowered:
        return "NETWORK_ERROR"
    return "UNKNOWN_ERROR"


class PaymentSyncLogger:
    """Bounded in-memory log of synchronization events.

    The oldest entry is evicted once ``capacity`` is reached. Each entry is
    also written to the module logger at a level matching its outcome.
    """

    def __init__(self, capacity: int = 1000, clock: Clock | None = None):
        self.capacity = capacity
        self.clock = clock or Clock()
        self._entries: deque[SyncLogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _snapshot(self) -> list[SyncLogEntry]:
        with self._lock:
            return list(self._entries)

    def log_event(
        self,
        payment_id,
        action: SyncAction,
        outcome: SyncOutcome,
        details: str,
        metadata: dict[str, Any] | None = None,
        lease_id=None,
        error: BaseException | str | None = None,
    ) -> Optional[SyncLogEntry]:
        try:
            entry = SyncLogEntry(
                payment_id=str(payment_id) if payment_id is not None else None,
                lease_id=str(lease_id) if lease_id is not None else None,
                action=action,
                outcome=outcome,
                details=details,
                metadata=dict(metadata or {}),
                error_code=error_code_for(error),
                timestamp=self.clock.now(),
            )
            with self._lock:
                self._entries.append(entry)

            logger.log(
                _OUTCOME_LEVELS[entry.outcome],
                f"[PaymentSync] {entry.action.value} {entry.outcome.value} "
                f"payment={entry.payment_id} lease={entry.lease_id}: {details}"
                + (f" ({entry.error_code})" if entry.error_code else ""),
            )
            return entry
        except Exception:
            logger.exception("Failed to record payment sync event")
            return None

    def log_success(self, payment_id, action, details, metadata=None, lease_id=None):
        return self.log_event(
            payment_id, action, SyncOutcome.SUCCESS, details, metadata, lease_id
        )

    def log_warning(self, payment_id, action, details, metadata=None, lease_id=None):
        return self.log_event(
            payment_id, action, SyncOutcome.WARNING, details, metadata, lease_id
        )

    def log_error(self, payment_id, action, error, metadata=None, lease_id=None):
        return self.log_event(
            payment_id,
            action,
            SyncOutcome.ERROR,
            str(error),
            metadata,
            lease_id,
            error=error,
        )

    def entries_for(self, payment_id) -> list[SyncLogEntry]:
        payment_id = str(payment_id)
        return [e for e in self._snapshot() if e.payment_id == payment_id]

    def entries_for_lease(self, lease_id) -> list[SyncLogEntry]:
        lease_id = str(lease_id)
        return [e for e in self._snapshot() if e.lease_id == lease_id]

    def recent_errors(self, limit: int = 50) -> list[SyncLogEntry]:
        errors = [e for e in self._snapshot() if e.outcome == SyncOutcome.ERROR]
        return list(reversed(errors[-limit:])) if limit > 0 else []

    def stats(self, window: StatsWindow | str = StatsWindow.DAY) -> SyncStats:
        window = validate_enum(window, StatsWindow, field="window")
        cutoff = self.clock.now() - WINDOWS[window]
        recent = [e for e in self._snapshot() if e.timestamp >= cutoff]

        outcomes = Counter(e.outcome for e in recent)
        total = len(recent)
        success = outcomes[SyncOutcome.SUCCESS]
        return SyncStats(
            window=window,
            total=total,
            success=success,
            warnings=outcomes[SyncOutcome.WARNING],
            errors=outcomes[SyncOutcome.ERROR],
            success_rate=(success / total) * 100 if total else 0.0,
        )

    def detect_failure_patterns(self) -> FailurePatterns:
        entries = self._snapshot()
        errors = [e for e in entries if e.outcome == SyncOutcome.ERROR]

        critical = [e for e in errors if e.action in CRITICAL_ACTIONS]

        by_payment: dict[str, list[SyncLogEntry]] = {}
        for entry in errors:
            if entry.payment_id is None:
                continue
            by_payment.setdefault(entry.payment_id, []).append(entry)

        repeated = [
            RepeatedFailure(
                payment_id=payment_id,
                count=len(failures),
                last_error=failures[-1].details,
            )
            for payment_id, failures in by_payment.items()
            if len(failures) >= 2
        ]

        recommendations = []
        if critical:
            recommendations.append(
                "Critical sync errors detected - immediate attention required"
            )
        if repeated:
            recommendations.append(
                "Repeated failures detected - check payment data integrity"
            )
        hourly = self.stats(StatsWindow.HOUR)
        if hourly.total >= 10 and hourly.success_rate < 90:
            recommendations.append(
                "Low success rate detected - investigate system issues"
            )

        return FailurePatterns(
            critical_errors=critical,
            repeated_failures=repeated,
            recommendations=recommendations,
        )

    def clear_old(self, older_than_days: int = 30) -> int:
        cutoff = self.clock.now() - timedelta(days=older_than_days)
        with self._lock:
            kept = [e for e in self._entries if e.timestamp >= cutoff]
            removed = len(self._entries) - len(kept)
            self._entries.clear()
            self._entries.extend(kept)
        if removed:
            logger.info(f"Cleared {removed} sync log entries older than {older_than_days} days")
        return removed
