"""
Payment gateway protocol.

The subscription lifecycle is written once against this interface; Stripe and
Adumo plug in behind it. Adapters talk to the provider and report what
happened. They never write subscription, invoice or transaction rows
themselves; the one exception is stamping the customer id on the User they
were handed.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

from database_models import Gateway, Subscription, SubscriptionPlan, SubscriptionStatus, User


@dataclass
class PaymentRedirect:
    """Hosted payment page form the client must auto-submit as a POST."""
    url: str
    form_data: Dict[str, str]
    reference: str
    token: str

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "formData": dict(self.form_data),
            "reference": self.reference,
            "token": self.token,
        }


@dataclass
class GatewaySubscription:
    """Outcome of creating a subscription at the provider."""
    external_id: str
    status: SubscriptionStatus
    customer_id: Optional[str] = None
    requires_payment: bool = False
    client_secret: Optional[str] = None
    payment: Optional[PaymentRedirect] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    message: str = "Subscription created successfully"


@dataclass
class GatewayPlanChange:
    """
    Outcome of moving a subscription to another plan.

    recreate means the remote subscription is unusable (incomplete, missing,
    development only); the caller cancels the local row and creates a fresh one.
    """
    recreate: bool = False
    payment: Optional[PaymentRedirect] = None


class WebhookKind(str, enum.Enum):
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_DELETED = "SUBSCRIPTION_DELETED"
    IGNORED = "IGNORED"


@dataclass
class WebhookEvent:
    """Provider webhook normalized into the fields the lifecycle needs."""
    kind: WebhookKind
    event_type: str
    reference: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "ZAR"
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """
    Protocol for payment gateway adapters.

    Implementations must handle:
    - Customer id minting (idempotent per user)
    - Subscription create / plan change / cancel at the provider
    - Webhook signature verification and parsing
    """

    name: Gateway
    # True: a second create for the plan already held is a conflict.
    # False: it returns the existing subscription unchanged.
    strict_duplicates: bool
    # True: plan-change differences are charged on the provider's next
    # subscription invoice rather than through a separate payment.
    collects_proration: bool

    async def ensure_customer(self, user: User) -> str:
        """
        Return the user's provider customer id, creating and storing it on the
        user if missing.

        Raises:
            GatewayError: If the provider refuses
        """
        ...

    async def create_subscription(self, user: User, plan: SubscriptionPlan) -> GatewaySubscription:
        ...

    async def update_subscription(
        self,
        subscription: Subscription,
        user: User,
        new_plan: SubscriptionPlan,
        prorated_amount: Decimal,
    ) -> GatewayPlanChange:
        ...

    async def cancel_subscription(self, subscription: Subscription) -> None:
        """Mark the remote subscription not to renew."""
        ...

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """
        Verify the webhook signature and normalize the event.

        Raises:
            WebhookSignatureError: If the signature is missing or invalid
        """
        ...
