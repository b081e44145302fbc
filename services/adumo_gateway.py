"""
Adumo Online virtual payment gateway adapter.

Adumo has no recurring billing: each billing event is a redirect to the hosted
payment page, confirmed later by a server-to-server webhook. Subscriptions are
therefore activated optimistically and the redirect form is handed back to the
caller.
"""
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

import jwt

from config.settings import settings
from database_models import Gateway, Subscription, SubscriptionPlan, SubscriptionStatus, User
from services.payment_gateway import (
    GatewayPlanChange,
    GatewaySubscription,
    PaymentRedirect,
    WebhookEvent,
    WebhookKind,
)
from utils.errors import GatewayError, InvalidInputError, WebhookSignatureError
from utils.security_utils import verify_payload_signature
from utils.shared_utils import timestamped_reference, to_money

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-adumo-signature"
TOKEN_TTL = timedelta(hours=1)

_SUCCESS_STATUSES = {"successful", "success", "approved"}
_FAILURE_STATUSES = {"failed", "declined", "error"}


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


class AdumoGateway:
    """Redirect-gateway implementation of the PaymentGateway protocol."""

    name = Gateway.ADUMO
    strict_duplicates = False
    collects_proration = False

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        application_id: Optional[str] = None,
        jwt_secret: Optional[str] = None,
        environment: Optional[str] = None,
        frontend_url: Optional[str] = None,
        verify_webhooks: Optional[bool] = None,
    ):
        self.merchant_id = merchant_id or settings.adumo_merchant_id
        self.application_id = application_id or settings.adumo_application_id
        self.jwt_secret = jwt_secret or settings.adumo_jwt_secret
        self.environment = environment or settings.adumo_environment
        self.frontend_url = (frontend_url or settings.frontend_url).rstrip("/")
        self.verify_webhooks = settings.adumo_verify_webhooks if verify_webhooks is None else verify_webhooks

    @property
    def payment_url(self) -> str:
        if self.environment == "production":
            return settings.adumo_prod_url
        return settings.adumo_test_url

    async def ensure_customer(self, user: User) -> str:
        if user.adumo_customer_id:
            return user.adumo_customer_id
        # Adumo has no customer API; the id is local only
        user.adumo_customer_id = timestamped_reference("cust", user.id)
        return user.adumo_customer_id

    def build_payment_redirect(
        self,
        user: User,
        amount: Decimal,
        description: str,
        reference: str,
    ) -> PaymentRedirect:
        """
        Prepare the hosted-page form for one payment.

        Raises:
            GatewayError: If ADUMO_JWT_SECRET is not configured
        """
        if not self.jwt_secret:
            raise GatewayError("ADUMO_JWT_SECRET is not set. Cannot prepare Adumo payment.")

        issued_at = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "merchantId": self.merchant_id,
                "applicationId": self.application_id,
                "timestamp": _timestamp_ms(),
                "exp": issued_at + TOKEN_TTL,
            },
            self.jwt_secret,
            algorithm="HS256",
        )

        name_parts = (user.name or "").split(" ")
        first_name = name_parts[0] or user.name
        last_name = " ".join(name_parts[1:])

        form_data = {
            "MerchantUID": self.merchant_id,
            "ApplicationUID": self.application_id,
            "TransactionReference": reference,
            "Amount": f"{to_money(amount):.2f}",
            "Currency": "ZAR",
            "Description": description,
            "CustomerFirstName": first_name,
            "CustomerLastName": last_name,
            "CustomerEmail": user.email,
            "ReturnURL": f"{self.frontend_url}/dashboard?payment=success&ref={reference}",
            "CancelURL": f"{self.frontend_url}/choose-plan?payment=canceled",
            "WebhookURL": f"{self.frontend_url}/api/webhooks/adumo",
            "Token": token,
        }
        return PaymentRedirect(url=self.payment_url, form_data=form_data, reference=reference, token=token)

    async def create_subscription(self, user: User, plan: SubscriptionPlan) -> GatewaySubscription:
        customer_id = await self.ensure_customer(user)
        reference = timestamped_reference("sub", user.id)
        payment = self.build_payment_redirect(
            user,
            Decimal(plan.price),
            f"{plan.name} Plan - Monthly Subscription",
            reference,
        )
        logger.info(f"Prepared Adumo subscription {reference} for user {user.id} on {plan.name}")
        return GatewaySubscription(
            external_id=reference,
            status=SubscriptionStatus.ACTIVE,
            customer_id=customer_id,
            requires_payment=True,
            payment=payment,
        )

    async def update_subscription(
        self,
        subscription: Subscription,
        user: User,
        new_plan: SubscriptionPlan,
        prorated_amount: Decimal,
    ) -> GatewayPlanChange:
        if prorated_amount <= 0:
            return GatewayPlanChange()

        reference = timestamped_reference("upg", user.id)
        payment = self.build_payment_redirect(
            user,
            prorated_amount,
            f"{new_plan.name} Plan - Upgrade Difference",
            reference,
        )
        logger.info(f"Prepared Adumo upgrade payment {reference} of R{prorated_amount} for user {user.id}")
        return GatewayPlanChange(payment=payment)

    async def cancel_subscription(self, subscription: Subscription) -> None:
        # Nothing recurs remotely; the next cycle is simply never billed
        logger.info(f"Adumo subscription {subscription.external_subscription_id} will not renew")

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        if self.verify_webhooks:
            if not self.jwt_secret:
                raise WebhookSignatureError("Adumo webhook secret not configured")
            signature = headers.get(SIGNATURE_HEADER)
            if not verify_payload_signature(body, signature, self.jwt_secret):
                raise WebhookSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidInputError("Invalid webhook payload")
        if not isinstance(payload, dict):
            raise InvalidInputError("Invalid webhook payload")

        status = str(payload.get("status", "")).lower()
        if status in _SUCCESS_STATUSES:
            kind = WebhookKind.PAYMENT_SUCCEEDED
        elif status in _FAILURE_STATUSES:
            kind = WebhookKind.PAYMENT_FAILED
        else:
            kind = WebhookKind.IGNORED

        amount = None
        if payload.get("amount") is not None:
            try:
                # Amounts arrive in cents
                amount = to_money(Decimal(str(payload["amount"])) / 100)
            except InvalidOperation:
                raise InvalidInputError("Invalid webhook amount")

        return WebhookEvent(
            kind=kind,
            event_type=status or "unknown",
            reference=payload.get("reference"),
            gateway_transaction_id=payload.get("transaction_id"),
            amount=amount,
            currency=str(payload.get("currency") or "ZAR").upper(),
            raw=payload,
        )
