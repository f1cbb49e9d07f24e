"""Pure derivations shared by the validator and the synchronizer.

Nothing here touches the database; every function takes the lease, its
payments and "today" and returns plain values.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence

from core.exceptions import SyncValidationError
from models.enums import (
    PRE_DUE_STATUSES,
    PRE_OVERDUE_STATUSES,
    LeasePaymentStatus,
    LeaseStatus,
    PaymentPhase,
    PaymentStatus,
    payment_phase,
)
from models.models import Lease, Payment
from schemas.schema import PaymentSummary

ENDED_LEASE_STATUSES = frozenset({LeaseStatus.TERMINATED, LeaseStatus.EXPIRED})

OUT_OF_PERIOD_NOTE = "Cancelled: due date outside lease period"


def termination_note(lease_status: LeaseStatus) -> str:
    return f"Cancelled due to lease {LeaseStatus(lease_status).value}"


def is_unpaid(payment: Payment) -> bool:
    return Decimal(payment.amount_paid or 0) <= 0


def has_balance(payment: Payment) -> bool:
    return payment.balance > 0


def is_within_period(lease: Lease, payment: Payment) -> bool:
    return lease.start_date <= payment.due_date <= lease.end_date


def needs_overdue_promotion(payment: Payment, today: date) -> bool:
    return (
        payment.status in PRE_OVERDUE_STATUSES
        and payment.due_date < today
        and has_balance(payment)
    )


def needs_termination_cancel(lease: Lease, payment: Payment, today: date) -> bool:
    return (
        lease.status in ENDED_LEASE_STATUSES
        and payment.status in PRE_DUE_STATUSES
        and payment.due_date > today
        and is_unpaid(payment)
    )


def needs_out_of_period_cancel(lease: Lease, payment: Payment) -> bool:
    return (
        payment.status in PRE_OVERDUE_STATUSES
        and is_unpaid(payment)
        and not is_within_period(lease, payment)
    )


def has_reference_mismatch(lease: Lease, payment: Payment) -> bool:
    return (
        payment.tenant_id != lease.tenant_id
        or payment.property_id != lease.property_id
    )


def derive_payment_changes(lease: Lease, payment: Payment, today: date) -> dict:
    """Return the field changes reconciliation would apply to ``payment``.

    Rules run in order: overdue promotion, cancellation on lease end,
    out-of-period cancellation, reference repair. The cancellation rules
    look at the status as read, so an out-of-period payment is cancelled
    rather than promoted. An empty dict means the payment is already
    consistent.
    """
    changes: dict = {}

    if needs_overdue_promotion(payment, today):
        changes["status"] = PaymentStatus.OVERDUE

    if needs_termination_cancel(lease, payment, today):
        changes["status"] = PaymentStatus.CANCELLED
        changes["notes"] = termination_note(lease.status)
    elif needs_out_of_period_cancel(lease, payment):
        changes["status"] = PaymentStatus.CANCELLED
        changes["notes"] = OUT_OF_PERIOD_NOTE

    if payment.tenant_id != lease.tenant_id:
        changes["tenant_id"] = lease.tenant_id
    if payment.property_id != lease.property_id:
        changes["property_id"] = lease.property_id

    return changes


def derive_settlement_changes(payment: Payment, settlement, now: datetime) -> dict:
    """Field changes for a settlement received from the gateway or an operator.

    Raises ``SyncValidationError`` for an overpayment or for money arriving
    on a cancelled payment.
    """
    changes: dict = {}
    amount = Decimal(payment.amount)
    paid = Decimal(payment.amount_paid or 0)
    status = settlement.status

    if settlement.amount is not None:
        if payment.status == PaymentStatus.CANCELLED:
            raise SyncValidationError(
                [f"Payment {payment.id} is cancelled and cannot be settled"],
                [str(payment.id)],
            )
        new_paid = paid + Decimal(settlement.amount)
        if new_paid > amount:
            raise SyncValidationError(
                [
                    f"Payment {payment.id} would be overpaid: {new_paid} received "
                    f"against {amount} due"
                ],
                [str(payment.id)],
            )
        changes["amount_paid"] = new_paid
        changes["paid_date"] = now
        if status is None:
            status = (
                PaymentStatus.COMPLETED if new_paid >= amount else PaymentStatus.PARTIAL
            )
    elif status == PaymentStatus.COMPLETED and paid < amount:
        changes["amount_paid"] = amount
        changes["paid_date"] = now

    if status is not None and status != payment.status:
        changes["status"] = status
    if (
        settlement.transaction_id
        and settlement.transaction_id != payment.gateway_transaction_id
    ):
        changes["gateway_transaction_id"] = settlement.transaction_id
    if settlement.notes and settlement.notes != payment.notes:
        changes["notes"] = settlement.notes
    return changes


def derive_lease_payment_status(
    statuses: Iterable[PaymentStatus],
) -> LeasePaymentStatus:
    phases = {payment_phase(status) for status in statuses}
    if PaymentPhase.DELINQUENT in phases:
        return LeasePaymentStatus.OVERDUE
    if phases & {PaymentPhase.OPEN, PaymentPhase.IN_FLIGHT}:
        return LeasePaymentStatus.PENDING
    return LeasePaymentStatus.CURRENT


def summarize_payments(
    payments: Sequence[Payment],
    today: date,
    projected: Optional[Mapping] = None,
) -> PaymentSummary:
    """Aggregate payment totals, using ``projected`` statuses where given."""
    projected = projected or {}
    summary = PaymentSummary()
    upcoming: list[date] = []

    for payment in payments:
        status = projected.get(payment.id, payment.status)
        phase = payment_phase(status)
        if phase == PaymentPhase.VOID:
            continue

        amount = Decimal(payment.amount or 0)
        paid = Decimal(payment.amount_paid or 0)
        balance = max(amount - paid, Decimal("0"))

        summary.total_due += amount
        summary.total_paid += paid

        if phase == PaymentPhase.DELINQUENT:
            summary.total_overdue += balance
            summary.overdue_count += 1
        elif phase in (PaymentPhase.OPEN, PaymentPhase.IN_FLIGHT):
            summary.total_pending += balance
            summary.pending_count += 1
            if payment.due_date >= today:
                upcoming.append(payment.due_date)
        elif phase == PaymentPhase.SETTLED:
            summary.completed_count += 1

    summary.next_due_date = min(upcoming) if upcoming else None
    return summary
