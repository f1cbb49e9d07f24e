"""Tests for applying payment-gateway events through the sync engine."""

from decimal import Decimal

import pytest

from core.exceptions import PaymentNotFoundError
from models.enums import (
    GatewayResult,
    LeasePaymentStatus,
    PaymentStatus,
    SyncAction,
    SyncOutcome,
)
from schemas.schema import GatewayEventSchema
from services.payment_event_service import DUPLICATE_EVENT_WARNING


@pytest.fixture
def events(services):
    return services.payment_events


@pytest.fixture
async def charged(add_lease, add_payment):
    lease = await add_lease()
    payment = await add_payment(lease, gateway_transaction_id="pi_123")
    return lease, payment


def event(result, **kwargs):
    return GatewayEventSchema(transaction_id="pi_123", result=result, **kwargs)


class TestSucceeded:
    async def test_full_payment_completes(self, events, charged, get_payment, get_lease):
        lease, payment = charged

        response = await events.handle_gateway_event(event(GatewayResult.SUCCEEDED))

        assert response.sync.success
        assert response.status == PaymentStatus.COMPLETED
        assert response.amount_paid == Decimal("1200.00")
        stored = await get_payment(payment.id)
        assert stored.status == PaymentStatus.COMPLETED
        assert stored.paid_date is not None
        assert (await get_lease(lease.id)).payment_status == LeasePaymentStatus.CURRENT

    async def test_partial_amount(self, events, charged, get_payment):
        _, payment = charged

        response = await events.handle_gateway_event(
            event(GatewayResult.SUCCEEDED, amount=Decimal("500.00"))
        )

        assert response.status == PaymentStatus.PARTIAL
        assert (await get_payment(payment.id)).amount_paid == Decimal("500.00")

    async def test_duplicate_delivery_is_a_no_op(self, events, charged):
        await events.handle_gateway_event(event(GatewayResult.SUCCEEDED))

        response = await events.handle_gateway_event(event(GatewayResult.SUCCEEDED))

        assert response.sync.success
        assert response.status == PaymentStatus.COMPLETED
        assert response.amount_paid == Decimal("1200.00")
        assert response.sync.payments_updated == 0
        assert not response.sync.lease_updated

    async def test_redelivered_partial_amount_is_counted_once(
        self, events, charged, get_payment
    ):
        _, payment = charged
        partial = event(GatewayResult.SUCCEEDED, amount=Decimal("500.00"))

        await events.handle_gateway_event(partial)
        replay = await events.handle_gateway_event(partial)

        assert replay.sync.success
        assert replay.sync.warnings == [DUPLICATE_EVENT_WARNING]
        assert replay.amount_paid == Decimal("500.00")
        stored = await get_payment(payment.id)
        assert stored.amount_paid == Decimal("500.00")
        assert stored.status == PaymentStatus.PARTIAL

    async def test_redelivered_full_amount_raises_no_alerts(
        self, services, events, charged, get_payment
    ):
        _, payment = charged
        full = event(GatewayResult.SUCCEEDED, amount=Decimal("1200.00"))

        await events.handle_gateway_event(full)
        replay = await events.handle_gateway_event(full)

        assert replay.sync.success
        assert replay.status == PaymentStatus.COMPLETED
        assert (await get_payment(payment.id)).amount_paid == Decimal("1200.00")
        patterns = services.sync_logger.detect_failure_patterns()
        assert patterns.critical_errors == []
        assert patterns.recommendations == []

    async def test_distinct_event_ids_are_both_applied(
        self, events, charged, get_payment
    ):
        _, payment = charged

        await events.handle_gateway_event(
            event(GatewayResult.SUCCEEDED, amount=Decimal("500.00"), event_id="evt_1")
        )
        await events.handle_gateway_event(
            event(GatewayResult.SUCCEEDED, amount=Decimal("500.00"), event_id="evt_2")
        )

        assert (await get_payment(payment.id)).amount_paid == Decimal("1000.00")

    async def test_rejected_event_can_be_redelivered(self, events, charged, get_payment):
        _, payment = charged
        overpay = event(GatewayResult.SUCCEEDED, amount=Decimal("5000.00"))

        first = await events.handle_gateway_event(overpay)
        second = await events.handle_gateway_event(overpay)

        assert not first.sync.success
        assert not second.sync.success
        assert second.sync.warnings != [DUPLICATE_EVENT_WARNING]
        assert (await get_payment(payment.id)).amount_paid == Decimal("0")

    async def test_overpayment_is_logged_not_applied(
        self, services, events, charged, get_payment
    ):
        _, payment = charged

        response = await events.handle_gateway_event(
            event(GatewayResult.SUCCEEDED, amount=Decimal("5000.00"))
        )

        assert not response.sync.success
        assert (await get_payment(payment.id)).amount_paid == Decimal("0")
        webhook_errors = [
            e
            for e in services.sync_logger.entries_for(payment.id)
            if e.action == SyncAction.WEBHOOK_RECEIVED
        ]
        assert webhook_errors[-1].outcome == SyncOutcome.ERROR


class TestOtherResults:
    @pytest.mark.parametrize(
        "result,status",
        [
            (GatewayResult.FAILED, PaymentStatus.FAILED),
            (GatewayResult.PROCESSING, PaymentStatus.PROCESSING),
            (GatewayResult.REFUNDED, PaymentStatus.REFUNDED),
        ],
    )
    async def test_result_sets_status(self, events, charged, get_payment, result, status):
        _, payment = charged

        response = await events.handle_gateway_event(event(result))

        assert response.sync.success
        assert (await get_payment(payment.id)).status == status

    async def test_canceled_charge_reopens_payment(self, events, charged, get_payment):
        _, payment = charged
        await events.handle_gateway_event(event(GatewayResult.PROCESSING))

        await events.handle_gateway_event(event(GatewayResult.CANCELED))

        assert (await get_payment(payment.id)).status == PaymentStatus.PENDING

    async def test_success_is_logged(self, services, events, charged):
        _, payment = charged

        await events.handle_gateway_event(event(GatewayResult.FAILED))

        entry = [
            e
            for e in services.sync_logger.entries_for(payment.id)
            if e.action == SyncAction.WEBHOOK_RECEIVED
        ][-1]
        assert entry.outcome == SyncOutcome.SUCCESS
        assert entry.metadata["transaction_id"] == "pi_123"
        assert entry.metadata["result"] == "failed"


class TestUnknownTransaction:
    async def test_raises_and_records_critical_error(self, services, events):
        with pytest.raises(PaymentNotFoundError):
            await events.handle_gateway_event(
                GatewayEventSchema(transaction_id="pi_missing", result="succeeded")
            )

        patterns = services.sync_logger.detect_failure_patterns()
        assert len(patterns.critical_errors) == 1
        assert patterns.critical_errors[0].error_code == "PAYMENT_NOT_FOUND"

    def test_transaction_id_is_stripped(self):
        assert event(GatewayResult.FAILED).transaction_id == "pi_123"
        assert GatewayEventSchema(transaction_id="  pi_9 ", result="failed").transaction_id == "pi_9"
