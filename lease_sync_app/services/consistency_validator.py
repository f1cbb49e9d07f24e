from datetime import date
from decimal import Decimal
from typing import Sequence

from models.enums import (
    IssueType,
    LeasePaymentStatus,
    PaymentStatus,
    PaymentType,
    Severity,
    ValidationLevel,
)
from models.models import Lease, Payment
from schemas.schema import Inconsistency, ValidationResult
from services.reconciliation_rules import (
    derive_lease_payment_status,
    has_reference_mismatch,
    is_within_period,
    needs_out_of_period_cancel,
    needs_overdue_promotion,
    needs_termination_cancel,
)


def _issue(
    code: str,
    level: ValidationLevel,
    severity: Severity,
    description: str,
    lease: Lease,
    payment: Payment | None = None,
    auto_fixable: bool = True,
    type: IssueType = IssueType.DATA_INCONSISTENCY,
) -> Inconsistency:
    return Inconsistency(
        code=code,
        type=type,
        severity=severity,
        level=level,
        description=description,
        lease_ids=[str(lease.id)],
        payment_ids=[str(payment.id)] if payment is not None else [],
        auto_fixable=auto_fixable,
    )


def validate_lease_payments(
    lease: Lease, payments: Sequence[Payment], today: date
) -> ValidationResult:
    """Check a lease and its live payments against the consistency rules.

    Errors make the result invalid and block a non-forced sync; warnings
    are informational. Every finding is also returned as an
    ``Inconsistency`` so callers can filter by severity or fixability.
    """
    found: list[Inconsistency] = []

    for payment in payments:
        if payment.status != PaymentStatus.CANCELLED and not is_within_period(
            lease, payment
        ):
            found.append(
                _issue(
                    "date_range",
                    ValidationLevel.ERROR,
                    Severity.MEDIUM,
                    f"Payment {payment.id} due date {payment.due_date} is outside "
                    f"lease period {lease.start_date} to {lease.end_date}",
                    lease,
                    payment,
                    auto_fixable=needs_out_of_period_cancel(lease, payment),
                )
            )

        if has_reference_mismatch(lease, payment):
            found.append(
                _issue(
                    "reference_mismatch",
                    ValidationLevel.ERROR,
                    Severity.HIGH,
                    f"Payment {payment.id} tenant/property references do not match "
                    f"lease {lease.id}",
                    lease,
                    payment,
                )
            )

        if needs_termination_cancel(lease, payment, today):
            found.append(
                _issue(
                    "status_inconsistency",
                    ValidationLevel.WARNING,
                    Severity.MEDIUM,
                    f"Payment {payment.id} is still {payment.status.value} for a "
                    f"{lease.status.value} lease",
                    lease,
                    payment,
                )
            )

        if needs_overdue_promotion(payment, today):
            found.append(
                _issue(
                    "overdue_not_promoted",
                    ValidationLevel.WARNING,
                    Severity.LOW,
                    f"Payment {payment.id} was due {payment.due_date} and is still "
                    f"{payment.status.value}",
                    lease,
                    payment,
                )
            )

        if payment.type == PaymentType.RENT and Decimal(payment.amount) != Decimal(
            lease.rent_amount
        ):
            found.append(
                _issue(
                    "amount_mismatch",
                    ValidationLevel.WARNING,
                    Severity.LOW,
                    f"Rent payment {payment.id} amount {payment.amount} differs from "
                    f"lease rent {lease.rent_amount}",
                    lease,
                    payment,
                    auto_fixable=False,
                )
            )

    expected = derive_lease_payment_status(p.status for p in payments)
    if lease.payment_status != expected:
        current = (
            LeasePaymentStatus(lease.payment_status).value
            if lease.payment_status
            else "unset"
        )
        found.append(
            _issue(
                "payment_status_drift",
                ValidationLevel.WARNING,
                Severity.LOW,
                f"Lease payment status is {current} but payments imply "
                f"{expected.value}",
                lease,
            )
        )

    errors = [i.description for i in found if i.level == ValidationLevel.ERROR]
    warnings = [i.description for i in found if i.level == ValidationLevel.WARNING]
    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        inconsistencies=found,
    )
