"""
Webhook tests: signature checks, correlation through gateway references,
idempotency and the state changes each event drives
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import stripe

from crud.ledger import InvoiceRepository, TransactionRepository
from crud.subscription import PlanRepository, SubscriptionRepository
from services.subscription_service import SubscriptionService
from tests.conftest import (
    ADUMO_TEST_SECRET,
    STRIPE_TEST_WEBHOOK_SECRET,
    auth_headers,
    make_adumo_gateway,
    make_stripe_gateway,
)
from utils.security_utils import sign_payload


def adumo_request(payload: dict, secret: str = ADUMO_TEST_SECRET):
    body = json.dumps(payload).encode()
    return body, {"Content-Type": "application/json", "X-Adumo-Signature": sign_payload(body, secret)}


def stripe_request(event: dict, secret: str = STRIPE_TEST_WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return body, {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"}


async def subscribe_with_adumo(db, user, plan_name="OPPORTUNITY"):
    return await SubscriptionService(db, make_adumo_gateway()).create(user.id, plan_name)


@pytest.mark.asyncio
async def test_adumo_payment_settles_first_charge(client, test_db, member):
    """The first successful payment settles the prepared transaction without a second invoice."""
    created = await subscribe_with_adumo(test_db, member)
    reference = created["subscriptionId"]

    body, headers = adumo_request({
        "reference": reference,
        "transaction_id": "adumo_txn_1",
        "status": "successful",
        "amount": 35000,
        "currency": "ZAR",
    })
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["received"] is True
    assert response.json()["handled"] is True
    assert response.json()["status"] == "ACTIVE"

    test_db.expire_all()
    transaction = await TransactionRepository(test_db).get_by_merchant_reference(reference)
    assert transaction.status == "SUCCESS"
    assert transaction.gateway_transaction_id == "adumo_txn_1"
    assert "adumo_txn_1" in transaction.response_payload
    invoices = await InvoiceRepository(test_db).list_user_invoices(member.id)
    assert len(invoices) == 1

    # Replays of the same transaction change nothing
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["handled"] is False
    assert response.json()["reason"] == "duplicate transaction"
    assert len(await InvoiceRepository(test_db).list_user_invoices(member.id)) == 1


@pytest.mark.asyncio
async def test_adumo_failure_then_retry(client, test_db, member, admin):
    """A declined first charge reopens its invoice; the retry pays that same invoice."""
    created = await subscribe_with_adumo(test_db, member, "PROSPER")
    reference = created["subscriptionId"]

    body, headers = adumo_request({"reference": reference, "status": "declined", "transaction_id": "adumo_txn_f"})
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.json()["status"] == "PAST_DUE"

    test_db.expire_all()
    transaction = await TransactionRepository(test_db).get_by_merchant_reference(reference)
    assert transaction.status == "FAILED"
    invoices = await InvoiceRepository(test_db).list_user_invoices(member.id)
    assert [(invoice.status, invoice.amount) for invoice in invoices] == [("pending", Decimal("550.00"))]
    assert invoices[0].paid_at is None

    stats = (await client.get("/api/admin/stats", headers=auth_headers(admin))).json()["stats"]
    assert stats["totalRevenue"] == "0.00"
    assert stats["pendingRevenue"] == "550.00"

    body, headers = adumo_request({
        "reference": reference,
        "transaction_id": "adumo_txn_2",
        "status": "approved",
        "amount": 55000,
    })
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.json()["status"] == "ACTIVE"
    assert response.json()["invoiceId"] == invoices[0].id

    test_db.expire_all()
    invoices = await InvoiceRepository(test_db).list_user_invoices(member.id)
    assert [(invoice.status, invoice.amount) for invoice in invoices] == [("paid", Decimal("550.00"))]
    transactions = await TransactionRepository(test_db).list_user_transactions(member.id)
    assert sorted(t.status for t in transactions) == ["FAILED", "SUCCESS"]

    stats = (await client.get("/api/admin/stats", headers=auth_headers(admin))).json()["stats"]
    assert stats["totalRevenue"] == "550.00"
    assert stats["pendingRevenue"] == "0.00"

    # A replay of the approval is ignored
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.json()["reason"] == "duplicate transaction"


@pytest.mark.asyncio
async def test_adumo_plan_change_payment_marks_invoice_paid(client, test_db, member):
    service = SubscriptionService(test_db, make_adumo_gateway())
    await service.create(member.id, "OPPORTUNITY")
    upgrade = await service.update(member.id, "PINNACLE")
    upgrade_ref = upgrade["paymentData"]["reference"]

    body, headers = adumo_request({
        "reference": upgrade_ref,
        "transaction_id": "adumo_upg_1",
        "status": "successful",
        "amount": 47500,
    })
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.json()["handled"] is True

    test_db.expire_all()
    invoices = await InvoiceRepository(test_db).list_user_invoices(member.id)
    assert len(invoices) == 2
    assert all(invoice.status == "paid" for invoice in invoices)
    transaction = await TransactionRepository(test_db).get_by_merchant_reference(upgrade_ref)
    assert transaction.status == "SUCCESS"
    assert transaction.amount == Decimal("475.00")

    subscription = await SubscriptionRepository(test_db).get_current_subscription(member.id)
    assert subscription.plan.name == "PINNACLE"


@pytest.mark.asyncio
async def test_adumo_bad_signature_rejected(client, test_db, member):
    created = await subscribe_with_adumo(test_db, member)
    payload = {"reference": created["subscriptionId"], "status": "declined"}

    body, headers = adumo_request(payload, secret="wrong-secret")
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid webhook signature"

    response = await client.post("/api/webhooks/adumo", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 400

    test_db.expire_all()
    subscription = await SubscriptionRepository(test_db).get_current_subscription(member.id)
    assert subscription.status == "ACTIVE"


@pytest.mark.asyncio
async def test_adumo_unknown_reference_and_ignored_status(client):
    body, headers = adumo_request({"reference": "sub_nobody_1", "status": "successful", "transaction_id": "x1"})
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["handled"] is False
    assert response.json()["reason"] == "unknown reference"

    body, headers = adumo_request({"reference": "sub_nobody_1", "status": "pending"})
    response = await client.post("/api/webhooks/adumo", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["reason"] == "ignored event type"


@pytest.mark.asyncio
async def test_adumo_verification_disabled():
    from services.adumo_gateway import AdumoGateway
    from services.payment_gateway import WebhookKind

    gateway = AdumoGateway(jwt_secret=None, verify_webhooks=False)
    event = gateway.parse_webhook({}, json.dumps({"reference": "r1", "status": "SUCCESS", "amount": "12345"}).encode())
    assert event.kind == WebhookKind.PAYMENT_SUCCEEDED
    assert event.amount == Decimal("123.45")


@pytest.fixture
def live_stripe(monkeypatch, test_db):
    """Stripe SDK calls answered locally for a plan with a real price id."""
    monkeypatch.setattr(stripe.Customer, "create", MagicMock(return_value={"id": "cus_test_1"}))
    monkeypatch.setattr(stripe.Subscription, "create", MagicMock(return_value={
        "id": "sub_live_1",
        "status": "incomplete",
        "latest_invoice": {"id": "in_1", "confirmation_secret": {"client_secret": "pi_secret_1"}},
        "items": {"data": [{"id": "si_1", "current_period_start": 1717200000, "current_period_end": 1719792000}]},
    }))


async def subscribe_with_stripe(db, user):
    plan_repo = PlanRepository(db)
    plan = await plan_repo.get_plan_by_name("PRESTIGE")
    await plan_repo.update_plan(plan, {"stripe_price_id": "price_live_prestige"})
    await db.commit()
    return await SubscriptionService(db, make_stripe_gateway()).create(user.id, "PRESTIGE")


@pytest.mark.asyncio
async def test_stripe_create_starts_incomplete(test_db, member, live_stripe):
    result = await subscribe_with_stripe(test_db, member)

    assert result["status"] == "INCOMPLETE"
    assert result["requiresPayment"] is True
    assert result["clientSecret"] == "pi_secret_1"
    assert result["customerId"] == "cus_test_1"
    kwargs = stripe.Subscription.create.call_args.kwargs
    assert kwargs["payment_behavior"] == "default_incomplete"
    assert kwargs["items"] == [{"price": "price_live_prestige"}]

    # No invoice until Stripe confirms the payment
    assert await InvoiceRepository(test_db).list_user_invoices(member.id) == []


@pytest.mark.asyncio
async def test_stripe_invoice_paid_activates(client, test_db, member, live_stripe):
    await subscribe_with_stripe(test_db, member)

    event = {
        "id": "evt_1",
        "type": "invoice.payment_succeeded",
        "data": {"object": {
            "id": "in_1",
            "subscription": "sub_live_1",
            "amount_paid": 69500,
            "currency": "zar",
            "lines": {"data": [{"period": {"start": 1717200000, "end": 1719792000}}]},
        }},
    }
    body, headers = stripe_request(event)
    response = await client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["eventType"] == "invoice.payment_succeeded"
    assert response.json()["status"] == "ACTIVE"

    test_db.expire_all()
    invoices = await InvoiceRepository(test_db).list_user_invoices(member.id)
    assert len(invoices) == 1
    assert invoices[0].amount == Decimal("695.00")
    assert invoices[0].status == "paid"
    transaction = await TransactionRepository(test_db).get_by_gateway_transaction_id("in_1")
    assert transaction.status == "SUCCESS"
    assert transaction.gateway == "STRIPE"


@pytest.mark.asyncio
async def test_stripe_failure_and_deletion(client, test_db, member, live_stripe):
    await subscribe_with_stripe(test_db, member)

    paid = {"type": "invoice.payment_succeeded", "data": {"object": {
        "id": "in_1", "subscription": "sub_live_1", "amount_paid": 69500, "currency": "zar"}}}
    body, headers = stripe_request(paid)
    await client.post("/api/webhooks/stripe", content=body, headers=headers)

    failed = {"type": "invoice.payment_failed", "data": {"object": {
        "id": "in_2", "parent": {"subscription_details": {"subscription": "sub_live_1"}}, "amount_paid": 0}}}
    body, headers = stripe_request(failed)
    response = await client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert response.json()["status"] == "PAST_DUE"

    updated = {"type": "customer.subscription.updated", "data": {"object": {
        "id": "sub_live_1", "status": "active", "cancel_at_period_end": True,
        "items": {"data": [{"current_period_start": 1719792000, "current_period_end": 1722470400}]}}}}
    body, headers = stripe_request(updated)
    response = await client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert response.json()["status"] == "ACTIVE"

    test_db.expire_all()
    subscription = await SubscriptionRepository(test_db).get_current_subscription(member.id)
    assert subscription.cancel_at_period_end is True

    deleted = {"type": "customer.subscription.deleted", "data": {"object": {"id": "sub_live_1", "status": "canceled"}}}
    body, headers = stripe_request(deleted)
    response = await client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert response.json()["status"] == "CANCELED"


@pytest.mark.asyncio
async def test_stripe_upgrade_difference_settled_by_next_invoice(client, test_db, member, admin, live_stripe, monkeypatch):
    """Stripe bills the upgrade difference on the next subscription invoice, which settles it locally."""
    await subscribe_with_stripe(test_db, member)
    first = {"type": "invoice.payment_succeeded", "data": {"object": {
        "id": "in_1", "subscription": "sub_live_1", "amount_paid": 69500, "currency": "zar"}}}
    body, headers = stripe_request(first)
    await client.post("/api/webhooks/stripe", content=body, headers=headers)

    plan_repo = PlanRepository(test_db)
    await plan_repo.update_plan(await plan_repo.get_plan_by_name("PINNACLE"), {"stripe_price_id": "price_live_pinnacle"})
    await test_db.commit()
    monkeypatch.setattr(stripe.Subscription, "retrieve", MagicMock(return_value={
        "id": "sub_live_1", "status": "active", "items": {"data": [{"id": "si_1"}]}}))
    monkeypatch.setattr(stripe.Subscription, "modify", MagicMock(return_value={"id": "sub_live_1"}))

    test_db.expire_all()
    upgrade = await SubscriptionService(test_db, make_stripe_gateway()).update(member.id, "PINNACLE")
    assert upgrade["proratedAmount"] == "130.00"
    assert upgrade["requiresPayment"] is False

    stats = (await client.get("/api/admin/stats", headers=auth_headers(admin))).json()["stats"]
    assert stats["pendingRevenue"] == "130.00"

    # Next cycle: the new price plus the proration line
    renewal = {"type": "invoice.payment_succeeded", "data": {"object": {
        "id": "in_2", "subscription": "sub_live_1", "amount_paid": 95500, "currency": "zar"}}}
    body, headers = stripe_request(renewal)
    response = await client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert response.json()["status"] == "ACTIVE"

    test_db.expire_all()
    invoices = await InvoiceRepository(test_db).list_user_invoices(member.id)
    assert len(invoices) == 3
    assert all(invoice.status == "paid" for invoice in invoices)
    assert sorted(invoice.amount for invoice in invoices) == [Decimal("130.00"), Decimal("695.00"), Decimal("825.00")]
    transactions = await TransactionRepository(test_db).list_user_transactions(member.id)
    assert all(t.status == "SUCCESS" for t in transactions)

    stats = (await client.get("/api/admin/stats", headers=auth_headers(admin))).json()["stats"]
    assert stats["totalRevenue"] == "1650.00"
    assert stats["pendingRevenue"] == "0.00"


@pytest.mark.asyncio
async def test_stripe_bad_signature_rejected(client):
    body, headers = stripe_request({"type": "invoice.payment_succeeded", "data": {"object": {}}}, secret="whsec_wrong")
    response = await client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid webhook signature"

    response = await client.post("/api/webhooks/stripe", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Missing signature header"


@pytest.mark.asyncio
async def test_stripe_unhandled_event_type_ignored(client):
    body, headers = stripe_request({"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})
    response = await client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["handled"] is False
