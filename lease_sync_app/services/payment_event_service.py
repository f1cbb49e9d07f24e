import logging

from core.exceptions import PaymentNotFoundError
from models.enums import GatewayResult, PaymentStatus, SyncAction, SyncOutcome
from repos.gateway_event_repo import GatewayEventRepo
from repos.payment_repo import PaymentRepo
from schemas.schema import (
    GatewayEventSchema,
    PaymentSettlementSchema,
    ProcessPaymentResult,
    SyncOptions,
    SyncResult,
)
from services.lease_payment_synchronizer import LeasePaymentSynchronizer
from services.sync_log_service import PaymentSyncLogger

logger = logging.getLogger(__name__)

DUPLICATE_EVENT_WARNING = "Gateway event already applied"

# A canceled charge leaves the obligation open.
STATUS_FOR_RESULT = {
    GatewayResult.FAILED: PaymentStatus.FAILED,
    GatewayResult.PROCESSING: PaymentStatus.PROCESSING,
    GatewayResult.CANCELED: PaymentStatus.PENDING,
    GatewayResult.REFUNDED: PaymentStatus.REFUNDED,
}


class PaymentEventService:
    def __init__(
        self,
        session_factory,
        synchronizer: LeasePaymentSynchronizer,
        sync_logger: PaymentSyncLogger,
    ):
        self.session_factory = session_factory
        self.synchronizer = synchronizer
        self.sync_logger = sync_logger

    def settlement_for(self, payment, event: GatewayEventSchema) -> PaymentSettlementSchema:
        if event.result == GatewayResult.SUCCEEDED:
            amount = event.amount if event.amount is not None else payment.balance
            if amount <= 0:
                return PaymentSettlementSchema(
                    status=PaymentStatus.COMPLETED,
                    transaction_id=event.transaction_id,
                )
            return PaymentSettlementSchema(
                amount=amount, transaction_id=event.transaction_id
            )
        return PaymentSettlementSchema(
            status=STATUS_FOR_RESULT[event.result],
            transaction_id=event.transaction_id,
        )

    async def handle_gateway_event(self, event: GatewayEventSchema) -> ProcessPaymentResult:
        async with self.session_factory() as db:
            payment = await PaymentRepo(db).get_by_transaction_id(event.transaction_id)

        if payment is None:
            self.sync_logger.log_event(
                None,
                SyncAction.WEBHOOK_RECEIVED,
                SyncOutcome.ERROR,
                f"No payment for gateway transaction {event.transaction_id}",
                metadata={"result": event.result.value},
                error="Payment not found",
            )
            raise PaymentNotFoundError(event.transaction_id)

        metadata = {
            "transaction_id": event.transaction_id,
            "result": event.result.value,
            **event.metadata,
        }

        # Status-only results are idempotent; money-moving ones are applied once.
        dedupe_key = (
            event.dedupe_key if event.result == GatewayResult.SUCCEEDED else None
        )
        if dedupe_key is not None:
            async with self.session_factory() as db:
                claimed = await GatewayEventRepo(db).claim(dedupe_key, payment.id)
            if not claimed:
                return self._replayed(payment, metadata)

        try:
            settlement = self.settlement_for(payment, event)
            response = await self.synchronizer.process_payment_with_sync(
                payment.id, settlement, SyncOptions(force_sync=True)
            )
        except PaymentNotFoundError as e:
            await self._release(dedupe_key)
            self.sync_logger.log_error(
                payment.id,
                SyncAction.WEBHOOK_RECEIVED,
                e,
                metadata=metadata,
                lease_id=payment.lease_id,
            )
            raise
        except Exception:
            await self._release(dedupe_key)
            raise

        if response.sync.success:
            self.sync_logger.log_success(
                payment.id,
                SyncAction.WEBHOOK_RECEIVED,
                f"Gateway {event.result.value} applied to payment",
                metadata=metadata,
                lease_id=payment.lease_id,
            )
        else:
            await self._release(dedupe_key)
            self.sync_logger.log_event(
                payment.id,
                SyncAction.WEBHOOK_RECEIVED,
                SyncOutcome.ERROR,
                "; ".join(response.sync.errors + response.sync.warnings)
                or "Gateway result not applied",
                metadata=metadata,
                lease_id=payment.lease_id,
                error="; ".join(response.sync.errors) or None,
            )
            logger.warning(
                f"Gateway event {event.transaction_id} not applied: {response.sync.errors}"
            )
        return response

    async def _release(self, dedupe_key: str | None) -> None:
        if dedupe_key is None:
            return
        async with self.session_factory() as db:
            await GatewayEventRepo(db).release(dedupe_key)

    def _replayed(self, payment, metadata) -> ProcessPaymentResult:
        self.sync_logger.log_success(
            payment.id,
            SyncAction.WEBHOOK_RECEIVED,
            "Duplicate gateway event ignored",
            metadata={**metadata, "duplicate": True},
            lease_id=payment.lease_id,
        )
        logger.info(
            f"Gateway event {metadata['transaction_id']} already applied to payment {payment.id}"
        )
        return ProcessPaymentResult(
            payment_id=str(payment.id),
            lease_id=str(payment.lease_id),
            status=payment.status,
            amount_paid=payment.amount_paid,
            sync=SyncResult(
                success=True,
                lease_id=str(payment.lease_id),
                warnings=[DUPLICATE_EVENT_WARNING],
            ),
        )
