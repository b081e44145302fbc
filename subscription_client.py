"""
Subscription actions for API consumers - one shared implementation of plan
selection, payment confirmation and cancellation on top of the REST endpoints.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx

logger = logging.getLogger(__name__)

AUTH_PATH = "/auth"
# Pages that legitimately answer 401 and must not bounce to the login page
AUTH_PAGES = ("/auth", "/verify-email", "/reset-password")


class SubscriptionClientError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class SubscriptionActions:
    """
    Plan selection, payment confirmation and cancellation.

    Args:
        http_client: httpx.AsyncClient pointed at the API (cookies or an
            Authorization header already configured)
        redirect: Called with a path when the user must be sent to the login
            page; defaults to logging only
        submit_payment: Called with paymentData ({url, formData, ...}) when the
            server asks for an off-site payment
        current_path: Returns the page the caller is on, used to skip the
            login redirect on auth pages
        redirect_cooldown: Seconds during which repeated 401s are ignored after
            a redirect was issued
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        redirect: Optional[Callable[[str], None]] = None,
        submit_payment: Optional[Callable[[Dict[str, Any]], None]] = None,
        current_path: Optional[Callable[[], str]] = None,
        redirect_cooldown: float = 1.0,
    ):
        self.http_client = http_client
        self.redirect = redirect
        self.submit_payment = submit_payment
        self.current_path = current_path
        self.redirect_cooldown = redirect_cooldown
        self._redirect_until = 0.0

    def _handle_unauthorized(self) -> None:
        now = time.monotonic()
        if now < self._redirect_until:
            return
        path = self.current_path() if self.current_path else ""
        if any(page in path for page in AUTH_PAGES):
            return

        self._redirect_until = now + self.redirect_cooldown
        logger.info("Session expired; redirecting to login")
        if self.redirect:
            self.redirect(AUTH_PATH)

    async def _request(self, method: str, url: str, json: Optional[dict] = None) -> Dict[str, Any]:
        response = await self.http_client.request(method, url, json=json)
        if response.status_code == 401:
            self._handle_unauthorized()
            raise SubscriptionClientError(401, "Authentication required")
        if response.is_error:
            try:
                message = response.json().get("detail", response.reason_phrase)
            except ValueError:
                message = response.text or response.reason_phrase
            raise SubscriptionClientError(response.status_code, message)
        return response.json()

    async def current_subscription(self) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", "/api/subscriptions/current")
        return data.get("subscription")

    async def select_plan(
        self,
        plan_name: str,
        plan_id: Optional[str] = None,
        extended_members: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Subscribe to or switch to a plan.

        With extended members the full form endpoint is used (it needs the plan
        id); otherwise create or update is chosen from the current
        subscription. When the server returns paymentData it is handed to
        submit_payment.
        """
        if extended_members:
            if not plan_id:
                raise ValueError("plan_id is required when adding extended members")
            result = await self._request("POST", "/api/subscriptions/create-full", json={
                "planId": plan_id,
                "extendedMembers": extended_members,
            })
        else:
            current = await self.current_subscription()
            live = current is not None and current.get("status") != "CANCELED"
            if live and (current.get("plan") or {}).get("name") == plan_name:
                return {"message": "Subscription is already on this plan", "requiresPayment": False, "subscription": current}
            endpoint = "/api/subscriptions/update" if live else "/api/subscriptions/create"
            result = await self._request("POST", endpoint, json={"planName": plan_name})

        payment = result.get("paymentData")
        if result.get("requiresPayment") and payment:
            logger.info(f"Payment required for {plan_name}; reference {payment.get('reference')}")
            if self.submit_payment:
                self.submit_payment(payment)
        return result

    async def confirm_payment(self, return_url: str) -> Dict[str, Any]:
        """
        Report the outcome after the payment page sends the user back.

        The ``payment`` query flag only says which button the user pressed; the
        subscription status returned is the server's.
        """
        query = parse_qs(urlparse(return_url).query)
        payment_flag = (query.get("payment") or [None])[0]
        reference = (query.get("ref") or [None])[0]

        subscription = await self.current_subscription()
        status = subscription.get("status") if subscription else None
        return {
            "paymentFlag": payment_flag,
            "reference": reference,
            "status": status,
            "active": status == "ACTIVE",
            "subscription": subscription,
        }

    async def cancel(self) -> Dict[str, Any]:
        return await self._request("POST", "/api/subscriptions/cancel")
