"""Unit tests for the pure reconciliation rules, status phases and severity ordering."""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from core.exceptions import SyncValidationError
from models.enums import (
    PAYMENT_PHASES,
    LeasePaymentStatus,
    LeaseStatus,
    PaymentPhase,
    PaymentStatus,
    Severity,
    max_severity,
    payment_phase,
)
from schemas.schema import PaymentSettlementSchema
from services.reconciliation_rules import (
    OUT_OF_PERIOD_NOTE,
    derive_lease_payment_status,
    derive_payment_changes,
    derive_settlement_changes,
    summarize_payments,
)
from tests.factories import NOW, TODAY, make_lease, make_payment


class TestPaymentPhases:
    def test_every_status_has_a_phase(self):
        assert set(PAYMENT_PHASES) == set(PaymentStatus)

    @pytest.mark.parametrize(
        "status,phase",
        [
            (PaymentStatus.PARTIAL, PaymentPhase.OPEN),
            (PaymentStatus.PROCESSING, PaymentPhase.IN_FLIGHT),
            (PaymentStatus.GRACE_PERIOD, PaymentPhase.DELINQUENT),
            (PaymentStatus.REFUNDED, PaymentPhase.SETTLED),
            (PaymentStatus.CANCELLED, PaymentPhase.VOID),
        ],
    )
    def test_phase_lookup(self, status, phase):
        assert payment_phase(status) == phase


class TestSeverity:
    def test_ordering(self):
        assert Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL
        assert Severity.CRITICAL >= Severity.HIGH

    def test_max_severity(self):
        assert max_severity([Severity.MEDIUM, Severity.HIGH, Severity.LOW]) == Severity.HIGH

    def test_max_severity_of_nothing(self):
        assert max_severity([]) is None


class TestLeasePaymentStatus:
    def test_any_delinquent_is_overdue(self):
        statuses = [PaymentStatus.COMPLETED, PaymentStatus.LATE, PaymentStatus.PENDING]
        assert derive_lease_payment_status(statuses) == LeasePaymentStatus.OVERDUE

    def test_open_or_in_flight_is_pending(self):
        assert (
            derive_lease_payment_status([PaymentStatus.PROCESSING])
            == LeasePaymentStatus.PENDING
        )
        assert (
            derive_lease_payment_status([PaymentStatus.COMPLETED, PaymentStatus.UPCOMING])
            == LeasePaymentStatus.PENDING
        )

    def test_settled_and_void_only_is_current(self):
        statuses = [PaymentStatus.COMPLETED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED]
        assert derive_lease_payment_status(statuses) == LeasePaymentStatus.CURRENT

    def test_no_payments_is_current(self):
        assert derive_lease_payment_status([]) == LeasePaymentStatus.CURRENT


class TestDerivePaymentChanges:
    def test_past_due_unpaid_is_promoted(self):
        lease = make_lease()
        payment = make_payment(lease, due_date=date(2025, 1, 14))
        assert derive_payment_changes(lease, payment, TODAY) == {
            "status": PaymentStatus.OVERDUE
        }

    def test_past_due_fully_paid_is_unchanged(self):
        lease = make_lease()
        payment = make_payment(
            lease, due_date=date(2025, 1, 14), amount_paid=Decimal("1200.00")
        )
        assert derive_payment_changes(lease, payment, TODAY) == {}

    def test_due_today_is_not_promoted(self):
        lease = make_lease()
        payment = make_payment(lease, due_date=TODAY, status=PaymentStatus.DUE_TODAY)
        assert derive_payment_changes(lease, payment, TODAY) == {}

    def test_partial_past_due_is_promoted(self):
        lease = make_lease()
        payment = make_payment(
            lease,
            due_date=date(2025, 1, 1),
            status=PaymentStatus.PARTIAL,
            amount_paid=Decimal("200.00"),
        )
        assert derive_payment_changes(lease, payment, TODAY)["status"] == PaymentStatus.OVERDUE

    def test_terminated_lease_cancels_future_pending(self):
        lease = make_lease(status=LeaseStatus.TERMINATED)
        payment = make_payment(lease, due_date=date(2025, 3, 1))
        changes = derive_payment_changes(lease, payment, TODAY)
        assert changes == {
            "status": PaymentStatus.CANCELLED,
            "notes": "Cancelled due to lease terminated",
        }

    def test_expired_lease_leaves_paid_payment_alone(self):
        lease = make_lease(status=LeaseStatus.EXPIRED)
        payment = make_payment(
            lease,
            due_date=date(2025, 3, 1),
            status=PaymentStatus.COMPLETED,
            amount_paid=Decimal("1200.00"),
        )
        assert derive_payment_changes(lease, payment, TODAY) == {}

    def test_out_of_period_wins_over_promotion(self):
        lease = make_lease(start_date=date(2025, 1, 10))
        payment = make_payment(lease, due_date=date(2025, 1, 5))
        assert derive_payment_changes(lease, payment, TODAY) == {
            "status": PaymentStatus.CANCELLED,
            "notes": OUT_OF_PERIOD_NOTE,
        }

    def test_references_are_copied_from_lease(self):
        lease = make_lease()
        payment = make_payment(lease, tenant_id=uuid.uuid4())
        assert derive_payment_changes(lease, payment, TODAY) == {
            "tenant_id": lease.tenant_id
        }


class TestSummarizePayments:
    def test_totals_use_projected_statuses(self):
        lease = make_lease()
        p1 = make_payment(lease, due_date=date(2025, 1, 1))
        p2 = make_payment(lease, due_date=date(2025, 2, 1))
        p3 = make_payment(
            lease, due_date=date(2024, 12, 1), status=PaymentStatus.CANCELLED
        )
        summary = summarize_payments(
            [p1, p2, p3], TODAY, {p1.id: PaymentStatus.OVERDUE}
        )

        assert summary.total_due == Decimal("2400.00")
        assert summary.total_overdue == Decimal("1200.00")
        assert summary.total_pending == Decimal("1200.00")
        assert summary.overdue_count == 1
        assert summary.pending_count == 1
        assert summary.next_due_date == date(2025, 2, 1)

    def test_completed_counted(self):
        lease = make_lease()
        paid = make_payment(
            lease, status=PaymentStatus.COMPLETED, amount_paid=Decimal("1200.00")
        )
        summary = summarize_payments([paid], TODAY)
        assert summary.completed_count == 1
        assert summary.total_paid == Decimal("1200.00")
        assert summary.next_due_date is None


class TestSettlementChanges:
    def test_full_amount_completes(self):
        lease = make_lease()
        payment = make_payment(lease)
        changes = derive_settlement_changes(
            payment, PaymentSettlementSchema(amount=Decimal("1200.00")), NOW
        )
        assert changes["status"] == PaymentStatus.COMPLETED
        assert changes["amount_paid"] == Decimal("1200.00")
        assert changes["paid_date"] == NOW

    def test_partial_amount(self):
        lease = make_lease()
        payment = make_payment(lease)
        changes = derive_settlement_changes(
            payment, PaymentSettlementSchema(amount=Decimal("500.00")), NOW
        )
        assert changes["status"] == PaymentStatus.PARTIAL

    def test_overpayment_is_rejected(self):
        lease = make_lease()
        payment = make_payment(lease, amount_paid=Decimal("1000.00"))
        with pytest.raises(SyncValidationError) as exc:
            derive_settlement_changes(
                payment, PaymentSettlementSchema(amount=Decimal("300.00")), NOW
            )
        assert exc.value.payment_ids == [str(payment.id)]

    def test_completed_status_fills_amount_paid(self):
        lease = make_lease()
        payment = make_payment(lease)
        changes = derive_settlement_changes(
            payment,
            PaymentSettlementSchema(status=PaymentStatus.COMPLETED, transaction_id="tx-1"),
            NOW,
        )
        assert changes["amount_paid"] == Decimal("1200.00")
        assert changes["gateway_transaction_id"] == "tx-1"

    def test_settlement_needs_amount_or_status(self):
        with pytest.raises(ValueError):
            PaymentSettlementSchema(notes="nothing to apply")
