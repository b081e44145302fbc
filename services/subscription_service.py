"""
Subscription Service - the subscription lifecycle, written once against the
PaymentGateway protocol.

States: (none) -> INCOMPLETE -> ACTIVE -> {PAST_DUE, CANCELED}, with
ACTIVE -> ACTIVE on plan change and PAST_DUE -> ACTIVE on a successful retry.

Each public operation commits its writes as one unit and rolls back on any
failure. Notifications are sent only after the commit and never fail the
operation.
"""

import json
import logging
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.extended_cover import ExtendedCoverRepository
from crud.ledger import InvoiceRepository, TransactionRepository
from crud.subscription import GatewayReferenceRepository, PlanRepository, SubscriptionRepository
from crud.user import UserRepository
from database_models import (
    Gateway,
    GatewayReference,
    Invoice,
    InvoiceStatus,
    ReferenceKind,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    TransactionStatus,
    User,
)
from models.subscription import ExtendedMemberRequest
from services.email_service import EmailService, notify
from services.extended_cover_service import cover_to_dict, member_to_cover_data
from services.payment_gateway import GatewaySubscription, PaymentGateway, PaymentRedirect, WebhookEvent, WebhookKind
from services.plan_catalog import plan_to_dict
from utils.errors import ConflictError, NotFoundError
from utils.shared_utils import add_one_month, ensure_utc, timestamped_reference, to_money, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    None: {SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE},
    SubscriptionStatus.INCOMPLETE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.CANCELED: set(),
}


def can_transition(current: Optional[SubscriptionStatus], target: SubscriptionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def calculate_proration(current_price: Decimal, new_price: Decimal) -> Decimal:
    """Flat price difference, floored at zero. Downgrades are never credited."""
    return to_money(max(Decimal("0"), Decimal(new_price) - Decimal(current_price)))


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _date(value) -> str:
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%d") if value else ""


def subscription_to_dict(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "userId": subscription.user_id,
        "planId": subscription.plan_id,
        "plan": plan_to_dict(subscription.plan) if subscription.plan else None,
        "gateway": subscription.gateway,
        "externalSubscriptionId": subscription.external_subscription_id,
        "status": subscription.status,
        "currentPeriodStart": _iso(subscription.current_period_start),
        "currentPeriodEnd": _iso(subscription.current_period_end),
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "canceledAt": _iso(subscription.canceled_at),
        "createdAt": _iso(subscription.created_at),
    }


class SubscriptionService:
    """
    Service class for the subscription lifecycle.
    Parameterized over whichever payment gateway adapter is configured.
    """

    def __init__(self, db: AsyncSession, gateway: PaymentGateway, email_service: Optional[EmailService] = None):
        """
        Initialize the subscription service.

        Args:
            db: AsyncSession instance for database operations
            gateway: Payment gateway adapter (Stripe or Adumo)
            email_service: Optional mail sender; defaults to a configured EmailService
        """
        self.db = db
        self.gateway = gateway
        self.email_service = email_service
        self.users = UserRepository(db)
        self.plans = PlanRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.references = GatewayReferenceRepository(db)
        self.invoices = InvoiceRepository(db)
        self.transactions = TransactionRepository(db)
        self.covers = ExtendedCoverRepository(db)
        self._outbox: List[Tuple[str, Dict[str, Any], str]] = []

    async def _run(self, operation: Callable[..., Awaitable[Any]], *args) -> Any:
        self._outbox = []
        try:
            result = await operation(*args)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            self._outbox = []
            raise

        outbox, self._outbox = self._outbox, []
        for template_name, data, to in outbox:
            await notify(template_name, data, to, self.email_service)
        return result

    def _queue_notification(self, template_name: str, data: Dict[str, Any], to: str) -> None:
        self._outbox.append((template_name, data, to))

    async def _require_user(self, user_id: str) -> User:
        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _require_plan(self, plan_name: str) -> SubscriptionPlan:
        plan = await self.plans.get_plan_by_name(plan_name)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    async def _require_live_subscription(self, user_id: str) -> Subscription:
        subscription = await self.subscriptions.get_current_subscription(user_id)
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED.value:
            raise NotFoundError("Subscription not found")
        return subscription

    def _transition(self, subscription: Subscription, target: SubscriptionStatus) -> bool:
        current = SubscriptionStatus(subscription.status)
        if not can_transition(current, target):
            logger.warning(
                f"Ignoring invalid transition {current.value} -> {target.value} for subscription {subscription.id}"
            )
            return False
        if current != target:
            logger.info(f"Subscription {subscription.id}: {current.value} -> {target.value}")
        subscription.status = target.value
        return True

    async def get_current(self, user_id: str) -> Optional[dict]:
        subscription = await self.subscriptions.get_current_subscription(user_id)
        return subscription_to_dict(subscription) if subscription else None

    async def create(self, user_id: str, plan_name: str) -> dict:
        """
        Subscribe a user to a plan.

        A user already on a different plan is moved to it (plan change). A user
        already on the same plan gets ConflictError from a strict gateway, or
        the existing subscription back from a lenient one.

        Raises:
            NotFoundError: Unknown user or plan
            ConflictError: Already subscribed to this plan (strict gateways)
            GatewayError: The provider refused
        """
        return await self._run(self._create, user_id, plan_name)

    async def update(self, user_id: str, new_plan_name: str) -> dict:
        """
        Move the current subscription to another plan.

        Upgrades write a pending invoice for max(0, new price - old price).

        Raises:
            NotFoundError: Unknown user, plan or no live subscription
            GatewayError: The provider refused
        """
        return await self._run(self._update, user_id, new_plan_name)

    async def cancel(self, user_id: str) -> dict:
        """
        Cancel at period end. Status and period bounds are left alone so access
        continues until current_period_end.
        """
        return await self._run(self._cancel, user_id)

    async def create_full(self, user_id: str, plan_id: str, members: List[ExtendedMemberRequest]) -> dict:
        """Create (or reuse) the subscription and attach extended cover members in one unit."""
        return await self._run(self._create_full, user_id, plan_id, members)

    async def handle_webhook(self, event: WebhookEvent) -> dict:
        """
        Apply a verified, normalized gateway webhook.

        Events are correlated only through the gateway reference table; unknown
        references and replayed transaction ids change nothing.
        """
        return await self._run(self._handle_webhook, event)

    async def _create(self, user_id: str, plan_name: str) -> dict:
        user = await self._require_user(user_id)
        plan = await self._require_plan(plan_name)
        existing = await self.subscriptions.get_current_subscription(user_id)

        if existing is not None and existing.status != SubscriptionStatus.CANCELED.value:
            if existing.plan_id == plan.id:
                if self.gateway.strict_duplicates:
                    raise ConflictError("You are already subscribed to this plan")
                logger.info(f"User {user_id} already holds {plan.name}; returning existing subscription")
                return {
                    "subscriptionId": existing.external_subscription_id,
                    "customerId": self._customer_id(user),
                    "status": existing.status,
                    "requiresPayment": False,
                    "message": "Subscription already exists for this plan",
                    "subscription": subscription_to_dict(existing),
                }
            return await self._update(user_id, plan_name)

        return await self._create_new(user, plan)

    def _customer_id(self, user: User) -> str:
        if self.gateway.name == Gateway.STRIPE:
            return user.stripe_customer_id or ""
        return user.adumo_customer_id or ""

    async def _create_new(self, user: User, plan: SubscriptionPlan) -> dict:
        result: GatewaySubscription = await self.gateway.create_subscription(user, plan)

        now = utc_now()
        period_start = result.current_period_start or now
        period_end = result.current_period_end or add_one_month(period_start)

        if not can_transition(None, result.status):
            raise ValueError(f"Gateway returned invalid initial status {result.status}")

        subscription = await self.subscriptions.create_subscription({
            "user_id": user.id,
            "plan_id": plan.id,
            "gateway": self.gateway.name.value,
            "external_subscription_id": result.external_id,
            "status": result.status.value,
            "current_period_start": period_start,
            "current_period_end": period_end,
        })
        logger.info(f"Subscription {subscription.id} for user {user.id}: NONE -> {result.status.value} ({plan.name})")

        # Optimistic activations are billed now; INCOMPLETE ones wait for the webhook
        invoice = None
        if result.status == SubscriptionStatus.ACTIVE:
            invoice = await self.invoices.create_invoice({
                "user_id": user.id,
                "subscription_id": subscription.id,
                "amount": to_money(plan.price),
                "currency": plan.currency,
                "status": InvoiceStatus.PAID.value,
                "description": f"{plan.name} Plan - Monthly Subscription",
                "paid_at": now,
            })
            if result.payment is not None:
                await self._record_redirect_payment(invoice, user, result.payment)

        await self.references.create_reference(
            result.external_id,
            self.gateway.name.value,
            subscription.id,
            user.id,
            invoice_id=invoice.id if invoice else None,
        )

        self._queue_notification("welcome", {
            "name": user.name,
            "planName": plan.name,
            "loginUrl": f"{settings.frontend_url}/auth",
        }, user.email)

        return {
            "subscriptionId": result.external_id,
            "customerId": result.customer_id or self._customer_id(user),
            "status": subscription.status,
            "requiresPayment": result.requires_payment,
            "clientSecret": result.client_secret,
            "paymentData": result.payment.to_dict() if result.payment else None,
            "message": result.message,
            "subscription": subscription_to_dict(subscription),
        }

    async def _update(self, user_id: str, new_plan_name: str) -> dict:
        user = await self._require_user(user_id)
        new_plan = await self._require_plan(new_plan_name)
        subscription = await self._require_live_subscription(user_id)
        old_plan = subscription.plan

        if old_plan.id == new_plan.id:
            return {
                "message": "Subscription is already on this plan",
                "proratedAmount": "0.00",
                "requiresPayment": False,
                "paymentData": None,
                "subscription": subscription_to_dict(subscription),
            }

        prorated_amount = calculate_proration(old_plan.price, new_plan.price)
        change = await self.gateway.update_subscription(subscription, user, new_plan, prorated_amount)

        if change.recreate:
            # Remote subscription unusable: retire the local row and start over
            self._transition(subscription, SubscriptionStatus.CANCELED)
            subscription.canceled_at = utc_now()
            await self.db.flush()
            result = await self._create_new(user, new_plan)
            result["message"] = "Subscription updated successfully"
            result["proratedAmount"] = "0.00"
            return result

        subscription.plan = new_plan
        await self.db.flush()

        if prorated_amount > 0:
            invoice = await self.invoices.create_invoice({
                "user_id": user.id,
                "subscription_id": subscription.id,
                "amount": prorated_amount,
                "currency": new_plan.currency,
                "status": InvoiceStatus.PENDING.value,
                "description": f"Plan change {old_plan.name} -> {new_plan.name}",
                "due_date": utc_now(),
            })
            if change.payment is not None:
                await self._record_redirect_payment(invoice, user, change.payment)
                payment_reference = change.payment.reference
            elif self.gateway.collects_proration:
                # Charged on the provider's next subscription invoice, which settles it
                payment_reference = timestamped_reference("pchg", user.id)
                await self._record_pending_payment(invoice, user, payment_reference, {
                    "subscription": subscription.external_subscription_id,
                    "plan": new_plan.name,
                })
            else:
                payment_reference = None
            if payment_reference is not None:
                await self.references.create_reference(
                    payment_reference,
                    self.gateway.name.value,
                    subscription.id,
                    user.id,
                    kind=ReferenceKind.PLAN_CHANGE,
                    invoice_id=invoice.id,
                )

        logger.info(f"Subscription {subscription.id} moved {old_plan.name} -> {new_plan.name} (prorated R{prorated_amount})")
        self._queue_notification("subscriptionChange", {
            "name": user.name,
            "oldPlan": old_plan.name,
            "newPlan": new_plan.name,
            "changeDate": _date(utc_now()),
            "nextBilling": _date(subscription.current_period_end),
        }, user.email)

        return {
            "message": "Subscription updated successfully",
            "proratedAmount": f"{prorated_amount:.2f}",
            "requiresPayment": change.payment is not None,
            "paymentData": change.payment.to_dict() if change.payment else None,
            "subscription": subscription_to_dict(subscription),
        }

    async def _record_redirect_payment(self, invoice: Invoice, user: User, payment: PaymentRedirect) -> None:
        # The signed token is short-lived and stays out of the ledger
        request_payload = {k: v for k, v in payment.form_data.items() if k != "Token"}
        await self._record_pending_payment(invoice, user, payment.reference, request_payload)

    async def _record_pending_payment(self, invoice: Invoice, user: User, reference: str, request_payload: dict) -> None:
        """PENDING transaction for a charge that a later webhook settles."""
        await self.transactions.create_transaction({
            "invoice_id": invoice.id,
            "user_id": user.id,
            "gateway": self.gateway.name.value,
            "merchant_reference": reference,
            "status": TransactionStatus.PENDING.value,
            "amount": invoice.amount,
            "currency": invoice.currency,
            "request_payload": json.dumps(request_payload),
        })

    async def _cancel(self, user_id: str) -> dict:
        user = await self._require_user(user_id)
        subscription = await self._require_live_subscription(user_id)

        await self.gateway.cancel_subscription(subscription)
        subscription = await self.subscriptions.update_subscription(subscription, {"cancel_at_period_end": True})
        logger.info(f"Subscription {subscription.id} set to cancel at period end")

        self._queue_notification("subscriptionChange", {
            "name": user.name,
            "oldPlan": subscription.plan.name,
            "newPlan": "Canceled",
            "changeDate": _date(utc_now()),
            "nextBilling": _date(subscription.current_period_end),
        }, user.email)

        return {
            "message": "Subscription canceled successfully",
            "subscription": subscription_to_dict(subscription),
        }

    async def _create_full(self, user_id: str, plan_id: str, members: List[ExtendedMemberRequest]) -> dict:
        plan = await self.plans.get_plan_by_id(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found")

        existing = await self.subscriptions.get_current_subscription(user_id)
        if (
            existing is not None
            and existing.status != SubscriptionStatus.CANCELED.value
            and existing.plan_id == plan.id
        ):
            # The form resubmits for the plan already held; keep it
            result = {
                "subscriptionId": existing.external_subscription_id,
                "status": existing.status,
                "requiresPayment": False,
                "message": "Subscription already exists for this plan",
                "subscription": subscription_to_dict(existing),
            }
        else:
            result = await self._create(user_id, plan.name)

        covers = []
        for member in members:
            cover = await self.covers.create_cover(member_to_cover_data(user_id, member))
            covers.append(cover_to_dict(cover))
        result["extendedCover"] = covers
        return result

    async def _handle_webhook(self, event: WebhookEvent) -> dict:
        if event.kind == WebhookKind.IGNORED:
            logger.info(f"Ignoring {self.gateway.name.value} webhook event {event.event_type}")
            return {"handled": False, "reason": "ignored event type"}

        reference = await self.references.get_by_reference(event.reference) if event.reference else None
        if reference is None:
            logger.warning(f"{self.gateway.name.value} webhook for unknown reference {event.reference!r}; no changes made")
            return {"handled": False, "reason": "unknown reference"}

        subscription = await self.subscriptions.get_subscription_by_id(reference.subscription_id)
        user = await self.users.get_user_by_id(reference.user_id)
        if subscription is None or user is None:
            logger.warning(f"Reference {reference.reference} points at missing records; no changes made")
            return {"handled": False, "reason": "unknown reference"}

        if event.kind == WebhookKind.PAYMENT_SUCCEEDED:
            return await self._apply_payment(event, reference, subscription, user)

        if event.kind == WebhookKind.PAYMENT_FAILED:
            return await self._apply_payment_failure(event, reference, subscription)

        if event.kind == WebhookKind.SUBSCRIPTION_DELETED:
            self._transition(subscription, SubscriptionStatus.CANCELED)
            subscription.canceled_at = utc_now()
            await self.db.flush()
            return {"handled": True, "status": subscription.status}

        # SUBSCRIPTION_UPDATED mirrors the provider's view
        if event.status is not None:
            self._transition(subscription, event.status)
        if event.current_period_start is not None:
            subscription.current_period_start = event.current_period_start
        if event.current_period_end is not None:
            subscription.current_period_end = event.current_period_end
        if event.cancel_at_period_end is not None:
            subscription.cancel_at_period_end = bool(event.cancel_at_period_end)
        await self.db.flush()
        return {"handled": True, "status": subscription.status}

    async def _apply_payment(
        self,
        event: WebhookEvent,
        reference: GatewayReference,
        subscription: Subscription,
        user: User,
    ) -> dict:
        if event.gateway_transaction_id:
            seen = await self.transactions.get_by_gateway_transaction_id(event.gateway_transaction_id)
            if seen is not None:
                logger.info(f"Duplicate webhook for transaction {event.gateway_transaction_id}; ignoring")
                return {"handled": False, "reason": "duplicate transaction"}

        response_payload = json.dumps(event.raw, default=str)

        prepared = await self.transactions.get_by_merchant_reference(reference.reference)
        retry_invoice = None
        if prepared is not None and prepared.status == TransactionStatus.FAILED.value:
            retry_invoice = await self.invoices.get_invoice_by_id(prepared.invoice_id)

        if prepared is not None and prepared.status == TransactionStatus.PENDING.value:
            # Settles a prepared redirect payment: first charge or plan-change difference
            invoice = await self.invoices.get_invoice_by_id(prepared.invoice_id)
            if invoice.status != InvoiceStatus.PAID.value:
                await self.invoices.mark_paid(invoice)
            await self.transactions.mark_succeeded(prepared, event.gateway_transaction_id, response_payload)
            amount = Decimal(prepared.amount)
        elif retry_invoice is not None and retry_invoice.status == InvoiceStatus.PENDING.value:
            # A retry after a declined attempt pays the invoice that attempt left open
            invoice = retry_invoice
            await self.invoices.mark_paid(invoice)
            amount = Decimal(invoice.amount)
            await self._record_transaction(invoice.id, user.id, event, reference.reference, response_payload, amount)
        elif reference.kind == ReferenceKind.PLAN_CHANGE.value:
            logger.info(f"Plan-change payment {reference.reference} already settled; ignoring")
            return {"handled": False, "reason": "already paid"}
        else:
            amount = event.amount if event.amount is not None else to_money(subscription.plan.price)
            settled = Decimal("0")
            if self.gateway.collects_proration:
                settled = await self._settle_collected_prorations(subscription, response_payload)
            invoice = await self.invoices.create_invoice({
                "user_id": user.id,
                "subscription_id": subscription.id,
                "amount": to_money(max(Decimal("0"), amount - settled)),
                "currency": event.currency,
                "status": InvoiceStatus.PAID.value,
                "description": f"{subscription.plan.name} Plan - Monthly Subscription",
                "paid_at": utc_now(),
            })
            await self._record_transaction(
                invoice.id, user.id, event, reference.reference, response_payload, Decimal(invoice.amount)
            )

        self._transition(subscription, SubscriptionStatus.ACTIVE)
        if event.current_period_start is not None:
            subscription.current_period_start = event.current_period_start
        if event.current_period_end is not None:
            subscription.current_period_end = event.current_period_end
        await self.db.flush()

        logger.info(f"Recorded R{amount} payment for subscription {subscription.id} ({reference.reference})")
        self._queue_notification("paymentReceipt", {
            "name": user.name,
            "planName": subscription.plan.name,
            "amount": f"R{amount:.2f}",
            "date": _date(utc_now()),
            "transactionId": event.gateway_transaction_id or reference.reference,
        }, user.email)
        return {"handled": True, "status": subscription.status, "invoiceId": invoice.id}

    async def _record_transaction(
        self,
        invoice_id: str,
        user_id: str,
        event: WebhookEvent,
        reference: str,
        response_payload: str,
        amount: Decimal,
    ) -> None:
        merchant_reference = f"{reference}:{event.gateway_transaction_id or uuid.uuid4().hex}"
        await self.transactions.create_transaction({
            "invoice_id": invoice_id,
            "user_id": user_id,
            "gateway": self.gateway.name.value,
            "merchant_reference": merchant_reference,
            "gateway_transaction_id": event.gateway_transaction_id,
            "status": TransactionStatus.SUCCESS.value,
            "amount": amount,
            "currency": event.currency,
            "response_payload": response_payload,
        })

    async def _settle_collected_prorations(self, subscription: Subscription, response_payload: str) -> Decimal:
        """
        Mark open plan-change differences paid by this subscription invoice.

        The provider adds prorations to the next subscription invoice, so its
        amount already covers them. Returns the total settled, which the caller
        leaves out of the cycle invoice.
        """
        settled = Decimal("0")
        for transaction in await self.transactions.list_pending_for_subscription(subscription.id):
            invoice = await self.invoices.get_invoice_by_id(transaction.invoice_id)
            await self.invoices.mark_paid(invoice)
            await self.transactions.mark_succeeded(transaction, None, response_payload)
            settled += Decimal(transaction.amount)
        if settled:
            logger.info(f"Settled R{settled} of plan-change charges for subscription {subscription.id}")
        return settled

    async def _apply_payment_failure(
        self,
        event: WebhookEvent,
        reference: GatewayReference,
        subscription: Subscription,
    ) -> dict:
        transaction = await self.transactions.get_by_merchant_reference(reference.reference)
        if transaction is not None and transaction.status == TransactionStatus.PENDING.value:
            transaction.status = TransactionStatus.FAILED.value
            transaction.response_payload = json.dumps(event.raw, default=str)
            invoice = await self.invoices.get_invoice_by_id(transaction.invoice_id)
            if invoice.status == InvoiceStatus.PAID.value:
                # Optimistically billed first charge: nothing was collected
                await self.invoices.mark_unpaid(invoice)
            await self.db.flush()

        if reference.kind == ReferenceKind.PLAN_CHANGE.value:
            logger.info(f"Plan-change payment {reference.reference} failed")
            return {"handled": True, "status": subscription.status}

        if subscription.status == SubscriptionStatus.ACTIVE.value:
            self._transition(subscription, SubscriptionStatus.PAST_DUE)
            await self.db.flush()
        else:
            logger.info(f"Payment failure for {subscription.status} subscription {subscription.id}; status kept")
        return {"handled": True, "status": subscription.status}
