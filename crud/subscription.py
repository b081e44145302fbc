"""
Repositories for plans, subscriptions and gateway references
"""

from typing import Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select
from database_models import (
    GatewayReference,
    ReferenceKind,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)


class PlanRepository:
    """Read access to the plan catalog plus external id updates."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active_plans(self) -> List[SubscriptionPlan]:
        result = await self.db.execute(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.price)
        )
        return list(result.scalars().all())

    async def get_plan_by_name(self, name: str) -> Optional[SubscriptionPlan]:
        result = await self.db.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.name == name)
        )
        return result.scalar_one_or_none()

    async def get_plan_by_id(self, plan_id: str) -> Optional[SubscriptionPlan]:
        result = await self.db.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id)
        )
        return result.scalar_one_or_none()

    async def create_plan(self, plan_data: dict) -> SubscriptionPlan:
        plan = SubscriptionPlan(**plan_data)
        self.db.add(plan)
        await self.db.flush()
        return plan

    async def update_plan(self, plan: SubscriptionPlan, updates: dict) -> SubscriptionPlan:
        for key, value in updates.items():
            if hasattr(plan, key):
                setattr(plan, key, value)
        await self.db.flush()
        return plan


class SubscriptionRepository:
    """
    Repository class for Subscription database operations.

    Nothing at the storage level stops a user holding several subscription
    rows; the current one is always the most recently created.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        Retrieve the user's current subscription.

        Args:
            user_id: Owner of the subscription

        Returns:
            Most recently created Subscription, or None if the user never subscribed
        """
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def get_subscription_by_id(self, subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_subscription_by_external_id(self, external_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.external_subscription_id == external_id)
        )
        return result.scalar_one_or_none()

    async def list_user_subscriptions(self, user_id: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_subscription(self, subscription_data: dict) -> Subscription:
        subscription = Subscription(**subscription_data)
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription)
        await self.db.refresh(subscription, ["plan"])
        return subscription

    async def update_subscription(self, subscription: Subscription, updates: dict) -> Subscription:
        """
        Update subscription fields.

        Args:
            subscription: Subscription object to update
            updates: Dictionary of fields to update (e.g., {"cancel_at_period_end": True})

        Returns:
            Updated Subscription object
        """
        for key, value in updates.items():
            if hasattr(subscription, key):
                setattr(subscription, key, value)

        await self.db.flush()
        await self.db.refresh(subscription)
        await self.db.refresh(subscription, ["plan"])
        return subscription

    async def count_by_status(self, status: SubscriptionStatus) -> int:
        result = await self.db.execute(
            select(func.count(Subscription.id)).where(Subscription.status == status.value)
        )
        return int(result.scalar_one())

    async def count_active_by_plan(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(SubscriptionPlan.name, func.count(Subscription.id))
            .join(Subscription, Subscription.plan_id == SubscriptionPlan.id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .group_by(SubscriptionPlan.name)
        )
        return {name: int(count) for name, count in result.all()}


class GatewayReferenceRepository:
    """Lookup table from external references to local subscriptions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_reference(self, reference: str) -> Optional[GatewayReference]:
        result = await self.db.execute(
            select(GatewayReference).where(GatewayReference.reference == reference)
        )
        return result.scalar_one_or_none()

    async def create_reference(
        self,
        reference: str,
        gateway: str,
        subscription_id: str,
        user_id: str,
        kind: ReferenceKind = ReferenceKind.SUBSCRIPTION,
        invoice_id: Optional[str] = None,
    ) -> GatewayReference:
        entry = GatewayReference(
            reference=reference,
            gateway=gateway,
            kind=kind.value,
            subscription_id=subscription_id,
            user_id=user_id,
            invoice_id=invoice_id,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry
