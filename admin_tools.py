"""
Admin Tools - user listing, revenue statistics and Stripe catalog sync
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_admin, user_to_dict
from crud.subscription import PlanRepository
from crud.user import UserRepository
from database import get_db
from database_models import User
from services.gateway_factory import get_stripe_gateway
from services.ledger_service import LedgerService
from services.plan_catalog import DEV_STRIPE_PRICE_PREFIX
from services.stripe_gateway import StripeGateway
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

# Every route requires the ADMIN role
admin_router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@admin_router.get("/users")
async def list_users(db: AsyncSession = Depends(get_db)):
    users = await UserRepository(db).list_users()
    return {"users": [user_to_dict(user) for user in users]}


@admin_router.get("/stats")
async def get_stats(db: AsyncSession = Depends(get_db)):
    """
    Subscriber and revenue totals.

    totalSubscribers counts ACTIVE subscriptions, totalRevenue sums paid
    invoices and pendingRevenue sums invoices still awaiting payment.
    """
    stats = await LedgerService(db).get_stats()
    return {"stats": stats}


@admin_router.post("/stripe/sync-products")
async def sync_stripe_products(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    current_user: User = Depends(require_admin),
):
    """
    Create a Stripe Product and monthly ZAR Price per tier and store the ids
    on the plan rows.

    Each plan's ids are committed as soon as Stripe returns them, so a failure
    part way through keeps the earlier plans. Plans already holding a real
    price id are skipped, which makes a re-run pick up where the last one
    stopped.
    """
    plan_repo = PlanRepository(db)
    plans = await plan_repo.list_active_plans()

    synced = {}
    skipped = []
    for plan in plans:
        if plan.stripe_price_id and not plan.stripe_price_id.startswith(DEV_STRIPE_PRICE_PREFIX):
            skipped.append(plan.name)
            continue
        ids = gateway.sync_product(plan)
        await plan_repo.update_plan(plan, ids)
        await db.commit()
        synced[plan.name] = ids

    log_endpoint_event(
        "/api/admin/stripe/sync-products",
        user_id=current_user.id,
        details={"plans": list(synced), "skipped": skipped},
    )
    return {"message": "Stripe products synced", "products": synced, "skipped": skipped}
