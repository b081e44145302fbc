"""
Subscriptions Router - lifecycle endpoints for the signed-in user
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from database_models import User
from models.subscription import FullSubscriptionRequest, PlanChangeRequest
from services.gateway_factory import get_payment_gateway
from services.payment_gateway import PaymentGateway
from services.subscription_service import SubscriptionService
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> SubscriptionService:
    return SubscriptionService(db, gateway)


@router.post("/create")
async def create_subscription(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Subscribe to a plan. With the redirect gateway the response carries
    paymentData (POST url and form fields) for the hosted payment page.
    """
    result = await service.create(current_user.id, request.plan_name.value)
    log_endpoint_event("/api/subscriptions/create", user_id=current_user.id, details={"plan": request.plan_name.value})
    return result


@router.get("/current")
async def get_current_subscription(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    return {"subscription": await service.get_current(current_user.id)}


@router.post("/update")
async def update_subscription(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    result = await service.update(current_user.id, request.plan_name.value)
    log_endpoint_event("/api/subscriptions/update", user_id=current_user.id, details={"plan": request.plan_name.value})
    return result


@router.post("/cancel")
async def cancel_subscription(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    result = await service.cancel(current_user.id)
    log_endpoint_event("/api/subscriptions/cancel", user_id=current_user.id)
    return result


@router.post("/create-full")
async def create_full_subscription(
    request: FullSubscriptionRequest,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Subscribe and attach extended cover members in one request."""
    result = await service.create_full(current_user.id, request.plan_id, request.extended_members)
    log_endpoint_event(
        "/api/subscriptions/create-full",
        user_id=current_user.id,
        details={"plan_id": request.plan_id, "members": len(request.extended_members)},
    )
    return result
