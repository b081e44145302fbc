"""
Tests for the shared subscription actions used by API consumers
"""
import json

import httpx
import pytest

from subscription_client import SubscriptionActions, SubscriptionClientError

PAYMENT_DATA = {
    "url": "https://staging-apiv3.adumoonline.com/product/checkout/v1/tokenizeAndPay",
    "formData": {"TransactionReference": "sub_u1_1"},
    "reference": "sub_u1_1",
}


class FakeApi:
    """Answers subscription endpoints from an in-memory current subscription."""

    def __init__(self, current=None):
        self.current = current
        self.requests = []
        self.responses = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if request.url.path in self.responses:
            status, payload = self.responses[request.url.path]
            return httpx.Response(status, json=payload)
        if request.url.path == "/api/subscriptions/current":
            return httpx.Response(200, json={"subscription": self.current})
        return httpx.Response(200, json={"requiresPayment": True, "paymentData": PAYMENT_DATA})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url="http://api.test")

    def paths(self):
        return [(method, path) for method, path, _ in self.requests]


@pytest.mark.asyncio
async def test_select_plan_creates_when_unsubscribed():
    api = FakeApi()
    submitted = []
    async with api.client() as http:
        actions = SubscriptionActions(http, submit_payment=submitted.append)
        result = await actions.select_plan("MOMENTUM")

    assert api.paths() == [("GET", "/api/subscriptions/current"), ("POST", "/api/subscriptions/create")]
    assert api.requests[-1][2] == {"planName": "MOMENTUM"}
    assert result["requiresPayment"] is True
    assert submitted == [PAYMENT_DATA]


@pytest.mark.asyncio
async def test_select_plan_updates_live_subscription():
    api = FakeApi(current={"status": "PAST_DUE", "plan": {"name": "OPPORTUNITY"}})
    async with api.client() as http:
        await SubscriptionActions(http).select_plan("PINNACLE")

    assert api.paths()[-1] == ("POST", "/api/subscriptions/update")
    assert api.requests[-1][2] == {"planName": "PINNACLE"}


@pytest.mark.asyncio
async def test_select_plan_after_cancellation_creates():
    api = FakeApi(current={"status": "CANCELED", "plan": {"name": "OPPORTUNITY"}})
    async with api.client() as http:
        await SubscriptionActions(http).select_plan("OPPORTUNITY")

    assert api.paths()[-1] == ("POST", "/api/subscriptions/create")


@pytest.mark.asyncio
async def test_select_same_plan_is_a_no_op():
    api = FakeApi(current={"status": "ACTIVE", "plan": {"name": "PROSPER"}})
    submitted = []
    async with api.client() as http:
        result = await SubscriptionActions(http, submit_payment=submitted.append).select_plan("PROSPER")

    assert api.paths() == [("GET", "/api/subscriptions/current")]
    assert result["message"] == "Subscription is already on this plan"
    assert submitted == []


@pytest.mark.asyncio
async def test_select_plan_with_extended_members():
    api = FakeApi()
    members = [{"firstName": "Lerato", "surname": "Mokoena", "relation": "SPOUSE", "coverAmount": 20000, "age": 40}]
    async with api.client() as http:
        actions = SubscriptionActions(http)
        with pytest.raises(ValueError):
            await actions.select_plan("PRESTIGE", extended_members=members)
        await actions.select_plan("PRESTIGE", plan_id="plan-4", extended_members=members)

    assert api.paths() == [("POST", "/api/subscriptions/create-full")]
    assert api.requests[0][2] == {"planId": "plan-4", "extendedMembers": members}


@pytest.mark.asyncio
async def test_server_errors_raise_with_detail():
    api = FakeApi()
    api.responses["/api/subscriptions/create"] = (409, {"detail": "You are already subscribed to this plan"})
    async with api.client() as http:
        with pytest.raises(SubscriptionClientError) as exc_info:
            await SubscriptionActions(http).select_plan("MOMENTUM")

    assert exc_info.value.status_code == 409
    assert exc_info.value.message == "You are already subscribed to this plan"


@pytest.mark.asyncio
async def test_unauthorized_redirects_once_per_cooldown():
    api = FakeApi()
    api.responses["/api/subscriptions/current"] = (401, {"detail": "Access token required"})
    redirects = []
    async with api.client() as http:
        actions = SubscriptionActions(http, redirect=redirects.append, current_path=lambda: "/dashboard", redirect_cooldown=60)
        for _ in range(3):
            with pytest.raises(SubscriptionClientError):
                await actions.current_subscription()

        # The guard belongs to the instance
        other = SubscriptionActions(http, redirect=redirects.append, current_path=lambda: "/dashboard")
        with pytest.raises(SubscriptionClientError):
            await other.current_subscription()

    assert redirects == ["/auth", "/auth"]


@pytest.mark.asyncio
async def test_unauthorized_redirects_again_after_cooldown():
    api = FakeApi()
    api.responses["/api/subscriptions/current"] = (401, {"detail": "Access token required"})
    redirects = []
    async with api.client() as http:
        actions = SubscriptionActions(http, redirect=redirects.append, redirect_cooldown=0)
        for _ in range(2):
            with pytest.raises(SubscriptionClientError):
                await actions.current_subscription()

    assert redirects == ["/auth", "/auth"]


@pytest.mark.asyncio
async def test_unauthorized_on_auth_pages_does_not_redirect():
    api = FakeApi()
    api.responses["/api/subscriptions/current"] = (401, {"detail": "Access token required"})
    redirects = []
    async with api.client() as http:
        for path in ("/auth", "/verify-email?token=abc", "/reset-password"):
            actions = SubscriptionActions(http, redirect=redirects.append, current_path=lambda path=path: path)
            with pytest.raises(SubscriptionClientError) as exc_info:
                await actions.current_subscription()
            assert exc_info.value.status_code == 401

    assert redirects == []


@pytest.mark.asyncio
async def test_confirm_payment_reports_server_status():
    api = FakeApi(current={"status": "ACTIVE", "plan": {"name": "MOMENTUM"}})
    async with api.client() as http:
        result = await SubscriptionActions(http).confirm_payment(
            "http://localhost:5000/dashboard?payment=success&ref=sub_u1_1"
        )

    assert result["paymentFlag"] == "success"
    assert result["reference"] == "sub_u1_1"
    assert result["status"] == "ACTIVE"
    assert result["active"] is True


@pytest.mark.asyncio
async def test_confirm_payment_without_subscription():
    api = FakeApi()
    async with api.client() as http:
        result = await SubscriptionActions(http).confirm_payment("http://localhost:5000/choose-plan?payment=canceled")

    assert result["paymentFlag"] == "canceled"
    assert result["reference"] is None
    assert result["active"] is False
    assert result["subscription"] is None


@pytest.mark.asyncio
async def test_cancel_posts():
    api = FakeApi()
    api.responses["/api/subscriptions/cancel"] = (200, {"message": "Subscription canceled successfully"})
    async with api.client() as http:
        result = await SubscriptionActions(http).cancel()

    assert api.paths() == [("POST", "/api/subscriptions/cancel")]
    assert result["message"] == "Subscription canceled successfully"
