"""
Webhooks Router - payment gateway callbacks
Webhook routes are registered FIRST so no body-consuming middleware runs before
signature verification.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.adumo_gateway import AdumoGateway
from services.gateway_factory import get_adumo_gateway, get_stripe_gateway
from services.payment_gateway import PaymentGateway
from services.stripe_gateway import StripeGateway
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _process(request: Request, gateway: PaymentGateway, db: AsyncSession) -> dict:
    # Raw bytes are required for signature verification
    body = await request.body()
    event = gateway.parse_webhook(request.headers, body)
    logger.info(f"{gateway.name.value} webhook received: {event.event_type}")

    result = await SubscriptionService(db, gateway).handle_webhook(event)
    return {"received": True, "eventType": event.event_type, **result}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Handle Stripe webhook events with signature verification.
    A bad signature is rejected with 400 before any state is touched.
    """
    return await _process(request, gateway, db)


@router.post("/adumo")
async def adumo_webhook(
    request: Request,
    gateway: AdumoGateway = Depends(get_adumo_gateway),
    db: AsyncSession = Depends(get_db)
):
    """Handle Adumo payment notifications signed with X-Adumo-Signature."""
    return await _process(request, gateway, db)
