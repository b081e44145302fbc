"""
Stripe gateway adapter - recurring billing is delegated to Stripe and the local
subscription mirrors it through webhooks.

Plans whose price id starts with ``price_dev_`` never touch Stripe: the adapter
fabricates an ACTIVE ``sub_dev_`` subscription so the app works without real
credentials.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe

from config.settings import settings
from database_models import Gateway, Subscription, SubscriptionPlan, SubscriptionStatus, User
from services.payment_gateway import GatewayPlanChange, GatewaySubscription, WebhookEvent, WebhookKind
from services.plan_catalog import DEV_STRIPE_PRICE_PREFIX, serialize_features, deserialize_features
from utils.errors import GatewayError, InvalidInputError, WebhookSignatureError
from utils.shared_utils import timestamped_reference, to_money

logger = logging.getLogger(__name__)

DEV_SUBSCRIPTION_PREFIX = "sub_dev_"

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Bracket access that works on StripeObjects and plain dicts alike."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError, AttributeError):
        return default
    return default if value is None else value


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(stripe_subscription: Any) -> Any:
    items = _get(_get(stripe_subscription, "items"), "data", [])
    return items[0] if items else None


def _subscription_period(stripe_subscription: Any):
    """Period bounds live on the subscription in older API versions and on its items in newer ones."""
    start = _get(stripe_subscription, "current_period_start")
    end = _get(stripe_subscription, "current_period_end")
    if start is None or end is None:
        item = _first_item(stripe_subscription)
        start = _get(item, "current_period_start", start)
        end = _get(item, "current_period_end", end)
    return _from_epoch(start), _from_epoch(end)


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    subscription_id = _get(invoice, "subscription")
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else _get(subscription_id, "id")
    details = _get(_get(invoice, "parent"), "subscription_details")
    return _get(details, "subscription")


def _client_secret(latest_invoice: Any) -> Optional[str]:
    secret = _get(_get(latest_invoice, "confirmation_secret"), "client_secret")
    if secret:
        return secret
    return _get(_get(latest_invoice, "payment_intent"), "client_secret")


def is_dev_subscription(external_id: Optional[str]) -> bool:
    return bool(external_id and external_id.startswith(DEV_SUBSCRIPTION_PREFIX))


class StripeGateway:
    """
    Card-network implementation of the PaymentGateway protocol.
    Stripe SDK errors are wrapped in GatewayError with Stripe's message kept.
    """

    name = Gateway.STRIPE
    strict_duplicates = True
    collects_proration = True

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize the Stripe gateway.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

        # Initialize Stripe client
        if self.secret_key:
            stripe.api_key = self.secret_key
        else:
            logger.warning("STRIPE_SECRET_KEY is not set. Only development prices will work.")

    def _require_client(self) -> None:
        if not self.secret_key:
            raise GatewayError("Stripe not initialized. Please configure STRIPE_SECRET_KEY.")

    async def ensure_customer(self, user: User) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id

        self._require_client()
        try:
            customer = stripe.Customer.create(
                email=user.email,
                name=user.name,
                metadata={"userId": user.id},
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create Stripe customer for user {user.id}: {e}")
            raise GatewayError(e.user_message or str(e))

        user.stripe_customer_id = customer["id"]
        return user.stripe_customer_id

    async def create_subscription(self, user: User, plan: SubscriptionPlan) -> GatewaySubscription:
        if not plan.stripe_price_id:
            raise GatewayError("Stripe price ID not configured for this plan")

        if plan.stripe_price_id.startswith(DEV_STRIPE_PRICE_PREFIX):
            external_id = timestamped_reference(DEV_SUBSCRIPTION_PREFIX.rstrip("_"), user.id)
            logger.info(f"Created development subscription {external_id} for user {user.id}")
            return GatewaySubscription(
                external_id=external_id,
                status=SubscriptionStatus.ACTIVE,
                requires_payment=False,
                message="Development subscription created successfully",
            )

        self._require_client()
        customer_id = await self.ensure_customer(user)
        try:
            stripe_subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": plan.stripe_price_id}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice.confirmation_secret"],
                metadata={"userId": user.id, "planId": plan.id},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe subscription create failed for user {user.id}: {e}")
            raise GatewayError(e.user_message or str(e))

        period_start, period_end = _subscription_period(stripe_subscription)
        logger.info(f"Created Stripe subscription {stripe_subscription['id']} for user {user.id}")
        return GatewaySubscription(
            external_id=stripe_subscription["id"],
            status=SubscriptionStatus.INCOMPLETE,
            customer_id=customer_id,
            requires_payment=True,
            client_secret=_client_secret(_get(stripe_subscription, "latest_invoice")),
            current_period_start=period_start,
            current_period_end=period_end,
        )

    async def update_subscription(
        self,
        subscription: Subscription,
        user: User,
        new_plan: SubscriptionPlan,
        prorated_amount: Decimal,
    ) -> GatewayPlanChange:
        external_id = subscription.external_subscription_id
        if is_dev_subscription(external_id):
            return GatewayPlanChange(recreate=True)

        if not new_plan.stripe_price_id:
            raise GatewayError("Stripe price ID not configured for this plan")

        self._require_client()
        try:
            stripe_subscription = stripe.Subscription.retrieve(external_id)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                logger.warning(f"Stripe subscription {external_id} no longer exists; recreating")
                return GatewayPlanChange(recreate=True)
            raise GatewayError(e.user_message or str(e))
        except stripe.StripeError as e:
            raise GatewayError(e.user_message or str(e))

        try:
            if _get(stripe_subscription, "status") == "incomplete":
                stripe.Subscription.cancel(external_id)
                logger.info(f"Canceled incomplete Stripe subscription {external_id}; recreating")
                return GatewayPlanChange(recreate=True)

            item = _first_item(stripe_subscription)
            stripe.Subscription.modify(
                external_id,
                items=[{"id": _get(item, "id"), "price": new_plan.stripe_price_id}],
                proration_behavior="create_prorations",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe plan change failed for {external_id}: {e}")
            raise GatewayError(e.user_message or str(e))

        logger.info(f"Moved Stripe subscription {external_id} to {new_plan.name}")
        return GatewayPlanChange()

    async def cancel_subscription(self, subscription: Subscription) -> None:
        external_id = subscription.external_subscription_id
        if is_dev_subscription(external_id):
            return

        self._require_client()
        try:
            stripe.Subscription.modify(external_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            logger.error(f"Stripe cancel failed for {external_id}: {e}")
            raise GatewayError(e.user_message or str(e))

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
            raise WebhookSignatureError("Webhook secret not configured")

        stripe_signature = headers.get("stripe-signature")
        if not stripe_signature:
            raise WebhookSignatureError("Missing signature header")

        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"),
                stripe_signature,
                self.webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            event = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidInputError("Invalid payload format")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> WebhookEvent:
        """Normalize a verified Stripe event."""
        event_type = _get(event, "type", "")
        data = _get(_get(event, "data"), "object", {})

        if event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
            kind = (
                WebhookKind.PAYMENT_SUCCEEDED
                if event_type == "invoice.payment_succeeded"
                else WebhookKind.PAYMENT_FAILED
            )
            lines = _get(_get(data, "lines"), "data", [])
            period = _get(lines[0], "period") if lines else None
            return WebhookEvent(
                kind=kind,
                event_type=event_type,
                reference=_invoice_subscription_id(data),
                gateway_transaction_id=_get(data, "id"),
                amount=to_money(Decimal(_get(data, "amount_paid", 0)) / 100),
                currency=str(_get(data, "currency", "zar")).upper(),
                current_period_start=_from_epoch(_get(period, "start")),
                current_period_end=_from_epoch(_get(period, "end")),
                raw=event,
            )

        if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
            period_start, period_end = _subscription_period(data)
            deleted = event_type == "customer.subscription.deleted"
            return WebhookEvent(
                kind=WebhookKind.SUBSCRIPTION_DELETED if deleted else WebhookKind.SUBSCRIPTION_UPDATED,
                event_type=event_type,
                reference=_get(data, "id"),
                status=SubscriptionStatus.CANCELED if deleted else STRIPE_STATUS_MAP.get(_get(data, "status")),
                current_period_start=period_start,
                current_period_end=period_end,
                cancel_at_period_end=_get(data, "cancel_at_period_end"),
                raw=event,
            )

        return WebhookEvent(kind=WebhookKind.IGNORED, event_type=event_type, raw=event)

    def sync_product(self, plan: SubscriptionPlan) -> Dict[str, str]:
        """
        Create a Stripe Product and monthly ZAR Price for one plan.

        Returns:
            {"stripe_product_id", "stripe_price_id"} for the plan row
        """
        self._require_client()
        try:
            product = stripe.Product.create(
                name=f"Opian Lifestyle {plan.name}",
                description=plan.description,
                metadata={
                    "planName": plan.name,
                    "features": serialize_features(deserialize_features(plan.features)),
                },
            )
            price = stripe.Price.create(
                product=product["id"],
                unit_amount=int(to_money(plan.price) * 100),
                currency="zar",
                recurring={"interval": "month"},
                metadata={"planName": plan.name},
            )
        except stripe.StripeError as e:
            logger.error(f"Error creating Stripe product/price for {plan.name}: {e}")
            raise GatewayError(e.user_message or str(e))

        logger.info(f"Created Stripe product {product['id']} / price {price['id']} for {plan.name}")
        return {"stripe_product_id": product["id"], "stripe_price_id": price["id"]}
