from fastapi import APIRouter, Depends, Request
from fastapi_utils.cbv import cbv

from core.safe_handler import safe_handler
from core.services import SyncServices, get_sync_services
from schemas.schema import GatewayEventSchema, ProcessPaymentResult

router = APIRouter(tags=["Webhooks"])


@cbv(router)
class WebhookRoutes:
    @router.post("/webhooks/payment-gateway", response_model=ProcessPaymentResult)
    @safe_handler
    async def payment_gateway_webhook(
        self,
        request: Request,
        event: GatewayEventSchema,
        services: SyncServices = Depends(get_sync_services),
    ):
        return await services.payment_events.handle_gateway_event(event)
