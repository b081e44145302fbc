"""
Plan catalog: the five fixed protection tiers and their idempotent seeding.
"""
import json
import logging
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.subscription import PlanRepository
from database_models import PlanName, SubscriptionPlan

logger = logging.getLogger(__name__)

DEV_STRIPE_PRICE_PREFIX = "price_dev_"

PLAN_CATALOG: List[dict[str, Any]] = [
    {
        "name": PlanName.OPPORTUNITY.value,
        "price": Decimal("350.00"),
        "description": "Essential protection for everyday life",
        "features": [
            "EMS Assist", "Legal Assist", "Repatriation Cover", "Celebrate Life", "24/7 Nurse On-Call",
            "Funeral Cover", "Accidental Death Cover", "Funeral Assist", "Family Income Benefit",
            "Lawyer Assist", "Virtual GP Assistant", "Medical Second Opinion", "Crime Victim Assist",
            "Assault & Trauma Assist", "Emergency Medical Services",
        ],
    },
    {
        "name": PlanName.MOMENTUM.value,
        "price": Decimal("450.00"),
        "description": "Enhanced protection with increased coverage",
        "features": [
            "Funeral Cover: R5,000", "Funeral Assist", "EMS Assist", "Legal Assist", "Repatriation Cover",
            "Celebrate Life", "24/7 Nurse On-Call", "Accidental Death Cover", "Family Income Benefit",
            "Lawyer Assist", "Virtual GP Assistant", "Medical Second Opinion", "Crime Victim Assist",
            "Assault & Trauma Assist", "Emergency Medical Services",
        ],
    },
    {
        "name": PlanName.PROSPER.value,
        "price": Decimal("550.00"),
        "description": "Comprehensive protection for growing families",
        "features": [
            "Funeral Cover: R10,000", "Accidental Death Cover: R20,000", "Funeral Assist",
            "Family Income Benefit: R5,000 x6", "EMS Assist", "Legal Assist", "Repatriation Cover",
            "Celebrate Life", "24/7 Nurse On-Call", "Virtual GP Assistant", "Medical Second Opinion",
            "Lawyer Assist", "Crime Victim Assist", "Assault & Trauma Assist", "Emergency Medical Services",
        ],
    },
    {
        "name": PlanName.PRESTIGE.value,
        "price": Decimal("695.00"),
        "description": "Premium protection with superior benefits",
        "features": [
            "Funeral Cover: R15,000", "Accidental Death Cover: R50,000", "Funeral Assist",
            "Family Income Benefit: R5,000 x6", "EMS Assist", "Legal Assist", "Repatriation Cover",
            "Celebrate Life", "24/7 Nurse On-Call", "Virtual GP Assistant", "Medical Second Opinion",
            "Crime Victim Assist", "Assault & Trauma Assist", "Emergency Medical Services", "Lawyer Assist",
        ],
    },
    {
        "name": PlanName.PINNACLE.value,
        "price": Decimal("825.00"),
        "description": "Ultimate protection with maximum coverage",
        "features": [
            "Funeral Cover: R20,000", "Accidental Death Cover: R100,000", "Funeral Assist",
            "Family Income Benefit: R5,000 x6", "EMS Assist", "Legal Assist", "Lawyer Assist",
            "Repatriation Cover", "Celebrate Life", "24/7 Nurse On-Call", "Virtual GP Assistant",
            "Medical Second Opinion", "Crime Victim Assist", "Assault & Trauma Assist",
            "Emergency Medical Services",
        ],
    },
]


def serialize_features(features: List[str]) -> str:
    return json.dumps(list(features))


def deserialize_features(raw: Optional[str]) -> List[str]:
    """Inverse of serialize_features; tolerates NULL and corrupt rows."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Plan features column is not valid JSON; returning empty list")
        return []
    return [str(item) for item in value] if isinstance(value, list) else []


def dev_price_ids(name: str, price: Decimal) -> dict:
    """Placeholder external ids used until real products are synced."""
    return {
        "stripe_price_id": f"{DEV_STRIPE_PRICE_PREFIX}{name.lower()}",
        "adumo_price_id": f"adumo_dev_{name.lower()}_{int(price)}",
    }


async def seed_plans(db: AsyncSession) -> int:
    """
    Insert any catalog tier missing from the database.

    Existing rows are left untouched so synced external ids survive restarts.

    Returns:
        Number of plans inserted
    """
    plan_repo = PlanRepository(db)
    inserted = 0
    for item in PLAN_CATALOG:
        existing = await plan_repo.get_plan_by_name(item["name"])
        if existing is not None:
            continue
        await plan_repo.create_plan({
            "name": item["name"],
            "price": item["price"],
            "currency": "ZAR",
            "interval": "month",
            "description": item["description"],
            "features": serialize_features(item["features"]),
            **dev_price_ids(item["name"], item["price"]),
        })
        inserted += 1

    if inserted:
        logger.info(f"Seeded {inserted} subscription plan(s)")
    return inserted


def plan_to_dict(plan: SubscriptionPlan) -> dict:
    """Wire representation of a plan (camelCase, decimal price as string)."""
    return {
        "id": plan.id,
        "name": plan.name,
        "price": f"{Decimal(plan.price):.2f}",
        "currency": plan.currency,
        "interval": plan.interval,
        "description": plan.description,
        "features": deserialize_features(plan.features),
        "stripePriceId": plan.stripe_price_id,
        "adumoPriceId": plan.adumo_price_id,
        "isActive": plan.is_active,
    }
