import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

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
from models.enums import SyncAction, SyncOutcome, SyncStatus, ValidationLevel
from repos.lease_repo import LeaseRepo
from repos.payment_repo import PaymentRepo
from schemas.schema import (
    LeaseSyncFailure,
    PaymentSettlementSchema,
    PaymentSummary,
    ProcessPaymentResult,
    SyncOptions,
    SyncResult,
    ValidationResult,
)
from services.consistency_validator import validate_lease_payments
from services.reconciliation_rules import (
    derive_lease_payment_status,
    derive_payment_changes,
    derive_settlement_changes,
    summarize_payments,
)
from services.sync_log_service import PaymentSyncLogger
from services.sync_migration_service import PaymentSyncMigration

logger = logging.getLogger(__name__)

IN_PROGRESS_WARNING = "Synchronization already in progress for this lease"

REFERENCE_FIELDS = ("tenant_id", "property_id")


class InFlightRegistry:
    """Lease ids with a reconciliation currently running in this process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: set[str] = set()

    def acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys


@dataclass
class _Reconciliation:
    lease_updated: bool = False
    payments_updated: int = 0
    summary: Optional[PaymentSummary] = None
    warnings: list[str] = field(default_factory=list)
    events: list[tuple] = field(default_factory=list)
    settled_payment: object = None


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class LeasePaymentSynchronizer:
    def __init__(
        self,
        session_factory,
        migration: PaymentSyncMigration,
        sync_logger: PaymentSyncLogger,
        clock: Clock | None = None,
        transaction_timeout: float = 5.0,
        duration_window: int = 200,
    ):
        self.session_factory = session_factory
        self.migration = migration
        self.sync_logger = sync_logger
        self.clock = clock or Clock()
        self.transaction_timeout = transaction_timeout
        self.registry = InFlightRegistry()
        self._durations: deque[float] = deque(maxlen=duration_window)
        self._durations_lock = threading.Lock()

    # Metrics

    def _record_duration(self, duration_ms: float) -> None:
        with self._durations_lock:
            self._durations.append(duration_ms)

    def average_duration_ms(self) -> float:
        with self._durations_lock:
            if not self._durations:
                return 0.0
            return sum(self._durations) / len(self._durations)

    # Public operations

    async def sync_lease(self, lease_id, options: SyncOptions | None = None) -> SyncResult:
        """Reconcile one lease with its payments.

        Always returns a ``SyncResult``; only ``SyncUnavailableError`` escapes.
        """
        options = options or SyncOptions()
        result = SyncResult(lease_id=str(lease_id))
        try:
            lease_uuid = _as_uuid(lease_id)
        except ValueError:
            result.errors.append(f"Invalid lease id: {lease_id}")
            return result

        key = str(lease_uuid)
        if not self.registry.acquire(key):
            result.warnings.append(IN_PROGRESS_WARNING)
            return result

        started = time.perf_counter()
        try:
            if not await self._ensure_ready():
                result.errors.append(str(MigrationRequiredError()))
                return result
            await self._run(lease_uuid, options, result)
        finally:
            self.registry.release(key)
            result.duration_ms = (time.perf_counter() - started) * 1000
            self._record_duration(result.duration_ms)
        return result

    async def process_payment_with_sync(
        self,
        payment_id,
        settlement: PaymentSettlementSchema,
        options: SyncOptions | None = None,
    ) -> ProcessPaymentResult:
        """Apply a settlement and reconcile its lease in the same transaction."""
        options = options or SyncOptions()
        try:
            payment_uuid = _as_uuid(payment_id)
        except ValueError:
            raise PaymentNotFoundError(payment_id) from None
        payment = await self._read(
            lambda db: PaymentRepo(db).get_by_id(payment_uuid)
        )
        if payment is None:
            raise PaymentNotFoundError(payment_uuid)

        result = SyncResult(lease_id=str(payment.lease_id))
        response = ProcessPaymentResult(
            payment_id=str(payment.id),
            lease_id=str(payment.lease_id),
            status=payment.status,
            amount_paid=payment.amount_paid,
            sync=result,
        )

        key = str(payment.lease_id)
        if not self.registry.acquire(key):
            result.warnings.append(IN_PROGRESS_WARNING)
            return response

        started = time.perf_counter()
        try:
            if not await self._ensure_ready():
                result.errors.append(str(MigrationRequiredError()))
                return response
            outcome = await self._run(
                payment.lease_id,
                options,
                result,
                settlement=(payment_uuid, settlement),
            )
            if outcome is not None and outcome.settled_payment is not None:
                response.status = outcome.settled_payment.status
                response.amount_paid = outcome.settled_payment.amount_paid
        finally:
            self.registry.release(key)
            result.duration_ms = (time.perf_counter() - started) * 1000
            self._record_duration(result.duration_ms)
        return response

    async def validate_lease_payment_consistency(self, lease_id) -> ValidationResult:
        try:
            lease_uuid = _as_uuid(lease_id)
        except ValueError:
            return ValidationResult(is_valid=False, errors=["Lease not found"])

        async with self.session_factory() as db:
            lease = await LeaseRepo(db).get_by_id(lease_uuid)
            if lease is None:
                return ValidationResult(is_valid=False, errors=["Lease not found"])
            payments = await PaymentRepo(db).list_active_for_lease(lease_uuid)
        return validate_lease_payments(lease, payments, self.clock.today())

    async def detect_sync_failures(self) -> list[LeaseSyncFailure]:
        lease_ids = await self._read(
            lambda db: PaymentRepo(db).lease_ids_with_pending_sync()
        )
        failures = []
        for lease_id in lease_ids:
            validation = await self.validate_lease_payment_consistency(lease_id)
            if not validation.is_valid:
                failures.append(
                    LeaseSyncFailure(lease_id=str(lease_id), issues=validation.errors)
                )
        return failures

    # Internals

    async def _read(self, fn):
        async with self.session_factory() as db:
            return await fn(db)

    async def _ensure_ready(self) -> bool:
        try:
            return await self.migration.ensure_ready()
        except DBAPIError as e:
            if e.connection_invalidated:
                raise SyncUnavailableError(str(e)) from e
            raise
        except ConnectionError as e:
            raise SyncUnavailableError(str(e)) from e

    async def _reconcile_with_retry(
        self, lease_id: uuid.UUID, options: SyncOptions, result: SyncResult, settlement
    ) -> _Reconciliation:
        def note_retry(retry_state) -> None:
            e = retry_state.outcome.exception()
            logger.warning(f"{e}; retrying sync of lease {lease_id}")
            result.warnings.append(
                f"Retried after concurrent modification of payment {e.payment_id}"
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            retry=retry_if_exception_type(ConcurrencyConflictError),
            before_sleep=note_retry,
            reraise=True,
        ):
            with attempt:
                outcome = await asyncio.wait_for(
                    self._reconcile(lease_id, options, settlement),
                    timeout=self.transaction_timeout,
                )
        return outcome

    async def _run(
        self,
        lease_id: uuid.UUID,
        options: SyncOptions,
        result: SyncResult,
        settlement=None,
    ) -> Optional[_Reconciliation]:
        try:
            outcome = await self._reconcile_with_retry(
                lease_id, options, result, settlement
            )
        except ConcurrencyConflictError as e:
            result.errors.append(str(e))
            self.sync_logger.log_event(
                None,
                SyncAction.SYNC_FAILURE_DETECTED,
                SyncOutcome.WARNING,
                f"Concurrent modification persisted after retry: {e}",
                lease_id=lease_id,
                error=e,
            )
            await self._mark_payments(lease_id, SyncStatus.PENDING)
            return None
        except asyncio.TimeoutError:
            message = f"Synchronization timed out after {self.transaction_timeout}s"
            result.errors.append(message)
            self.sync_logger.log_event(
                None,
                SyncAction.SYNC_FAILURE_DETECTED,
                SyncOutcome.WARNING,
                message,
                lease_id=lease_id,
            )
            await self._mark_payments(lease_id, SyncStatus.PENDING)
            return None
        except SyncValidationError as e:
            result.errors.extend(e.errors)
            for payment_id in e.payment_ids or [None]:
                self.sync_logger.log_event(
                    payment_id,
                    SyncAction.SYNC_FAILURE_DETECTED,
                    SyncOutcome.ERROR,
                    str(e),
                    metadata={"errors": e.errors},
                    lease_id=lease_id,
                    error=e,
                )
            return None
        except (LeaseNotFoundError, PaymentNotFoundError) as e:
            result.errors.append(str(e))
            self.sync_logger.log_error(
                None, SyncAction.SYNC_FAILURE_DETECTED, e, lease_id=lease_id
            )
            return None
        except TransactionFailureError as e:
            logger.error(f"Sync transaction for lease {lease_id} failed: {e}")
            result.errors.append(f"Transaction failed: {e}")
            self.sync_logger.log_error(
                None, SyncAction.SYNC_FAILURE_DETECTED, e, lease_id=lease_id
            )
            await self._mark_payments(lease_id, SyncStatus.FAILED)
            return None

        result.success = True
        result.lease_updated = outcome.lease_updated
        result.payments_updated = outcome.payments_updated
        result.summary = outcome.summary
        result.warnings.extend(outcome.warnings)
        for payment_id, action, details, metadata in outcome.events:
            self.sync_logger.log_success(
                payment_id, action, details, metadata, lease_id=lease_id
            )
        logger.info(
            f"Synced lease {lease_id}: {outcome.payments_updated} payments updated, "
            f"lease updated={outcome.lease_updated}"
        )
        return outcome

    async def _reconcile(
        self, lease_id: uuid.UUID, options: SyncOptions, settlement
    ) -> _Reconciliation:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    return await self._reconcile_in(db, lease_id, options, settlement)
        except DBAPIError as e:
            if e.connection_invalidated:
                raise SyncUnavailableError(str(e)) from e
            raise TransactionFailureError(str(e.orig or e)) from e
        except SQLAlchemyError as e:
            raise TransactionFailureError(str(e)) from e
        except ConnectionError as e:
            raise SyncUnavailableError(str(e)) from e

    async def _reconcile_in(
        self, db, lease_id: uuid.UUID, options: SyncOptions, settlement
    ) -> _Reconciliation:
        lease_repo = LeaseRepo(db)
        payment_repo = PaymentRepo(db)
        outcome = _Reconciliation()

        lease = await lease_repo.get_by_id(lease_id)
        if lease is None:
            raise LeaseNotFoundError(lease_id)
        payments = await payment_repo.list_active_for_lease(lease_id)
        # Working copies only; every write below goes through a versioned UPDATE.
        db.expunge_all()

        now = self.clock.now()
        today = now.date()
        changes: dict = {p.id: {} for p in payments}

        if settlement is not None:
            payment_id, data = settlement
            target = next((p for p in payments if p.id == payment_id), None)
            if target is None:
                raise PaymentNotFoundError(payment_id)
            settled = derive_settlement_changes(target, data, now)
            for name, value in settled.items():
                setattr(target, name, value)
            changes[target.id].update(settled)
            outcome.settled_payment = target

        if not options.skip_validation:
            validation = validate_lease_payments(lease, payments, today)
            if not validation.is_valid:
                if not options.force_sync:
                    blocking = {
                        pid
                        for issue in validation.inconsistencies
                        if issue.level == ValidationLevel.ERROR
                        for pid in issue.payment_ids
                    }
                    raise SyncValidationError(validation.errors, sorted(blocking))
                outcome.warnings.extend(
                    f"Forced past validation error: {error}"
                    for error in validation.errors
                )

        for payment in payments:
            derived = derive_payment_changes(lease, payment, today)
            changes[payment.id].update(derived)
            for name, value in derived.items():
                setattr(payment, name, value)

        outcome.summary = summarize_payments(payments, today)
        new_status = derive_lease_payment_status(p.status for p in payments)
        if lease.payment_status != new_status:
            await lease_repo.update_payment_status(lease.id, new_status)
            outcome.lease_updated = True

        for payment in payments:
            payment_changes = changes[payment.id]
            values = {
                **payment_changes,
                "sync_status": SyncStatus.SYNCED,
                "last_synced_at": now,
            }
            applied = await payment_repo.apply_versioned_update(
                payment.id, payment.version, values
            )
            if not applied:
                raise ConcurrencyConflictError(payment.id)
            if not payment_changes:
                continue

            outcome.payments_updated += 1
            if "status" in payment_changes:
                outcome.events.append(
                    (
                        payment.id,
                        SyncAction.PAYMENT_STATUS_UPDATED,
                        f"Payment status set to {payment.status.value}",
                        {"status": payment.status.value},
                    )
                )
            if any(name in payment_changes for name in REFERENCE_FIELDS):
                outcome.events.append(
                    (
                        payment.id,
                        SyncAction.PAYMENT_LINKAGE_CREATED,
                        "Payment references realigned with lease",
                        {
                            "tenant_id": str(lease.tenant_id),
                            "property_id": str(lease.property_id),
                        },
                    )
                )
        return outcome

    async def _mark_payments(self, lease_id: uuid.UUID, sync_status: SyncStatus) -> None:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    await PaymentRepo(db).mark_sync_status_for_lease(
                        lease_id, sync_status
                    )
        except SQLAlchemyError:
            logger.exception(
                f"Could not mark payments of lease {lease_id} as {sync_status.value}"
            )
