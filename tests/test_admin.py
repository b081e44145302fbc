"""
Tests for the admin endpoints: users, revenue stats and Stripe catalog sync
"""
from unittest.mock import MagicMock

import pytest
import stripe

from crud.subscription import PlanRepository
from services.subscription_service import SubscriptionService
from tests.conftest import auth_headers, create_user, make_adumo_gateway


@pytest.mark.asyncio
async def test_admin_lists_users(client, member, admin):
    response = await client.get("/api/admin/users", headers=auth_headers(admin))
    assert response.status_code == 200
    emails = {user["email"] for user in response.json()["users"]}
    assert emails == {"member@example.com", "admin@example.com"}
    assert all("passwordHash" not in user and "password_hash" not in user for user in response.json()["users"])


@pytest.mark.asyncio
async def test_admin_routes_reject_members(client, member):
    for method, path in (("get", "/api/admin/users"), ("get", "/api/admin/stats"), ("post", "/api/admin/stripe/sync-products")):
        response = await getattr(client, method)(path, headers=auth_headers(member))
        assert response.status_code == 403
        assert response.json()["detail"] == "Admin access required"


@pytest.mark.asyncio
async def test_stats_empty(client, admin):
    response = await client.get("/api/admin/stats", headers=auth_headers(admin))
    stats = response.json()["stats"]
    assert stats["totalSubscribers"] == 0
    assert stats["totalRevenue"] == "0.00"
    assert stats["pendingRevenue"] == "0.00"
    assert stats["subscribersByPlan"] == {
        "OPPORTUNITY": 0, "MOMENTUM": 0, "PROSPER": 0, "PRESTIGE": 0, "PINNACLE": 0,
    }


@pytest.mark.asyncio
async def test_stats_after_activity(client, test_db, member, admin):
    """Paid and pending invoices are summed separately; only ACTIVE rows count as subscribers."""
    other = await create_user(test_db, email="other@example.com", name="Sipho Ndlovu")
    service = SubscriptionService(test_db, make_adumo_gateway())
    await service.create(member.id, "OPPORTUNITY")
    await service.create(other.id, "PROSPER")
    await service.update(member.id, "PINNACLE")

    response = await client.get("/api/admin/stats", headers=auth_headers(admin))
    stats = response.json()["stats"]
    assert stats["totalSubscribers"] == 2
    assert stats["totalRevenue"] == "900.00"
    assert stats["pendingRevenue"] == "475.00"
    assert stats["subscribersByPlan"]["PINNACLE"] == 1
    assert stats["subscribersByPlan"]["PROSPER"] == 1
    assert stats["subscribersByPlan"]["OPPORTUNITY"] == 0


@pytest.mark.asyncio
async def test_sync_stripe_products(client, test_db, admin, monkeypatch):
    product_create = MagicMock(side_effect=lambda **kwargs: {"id": f"prod_{kwargs['metadata']['planName'].lower()}"})
    price_create = MagicMock(side_effect=lambda **kwargs: {"id": f"price_{kwargs['metadata']['planName'].lower()}"})
    monkeypatch.setattr(stripe.Product, "create", product_create)
    monkeypatch.setattr(stripe.Price, "create", price_create)

    response = await client.post("/api/admin/stripe/sync-products", headers=auth_headers(admin))

    assert response.status_code == 200
    products = response.json()["products"]
    assert set(products) == {"OPPORTUNITY", "MOMENTUM", "PROSPER", "PRESTIGE", "PINNACLE"}
    assert products["PRESTIGE"] == {"stripe_product_id": "prod_prestige", "stripe_price_id": "price_prestige"}

    amounts = {call.kwargs["metadata"]["planName"]: call.kwargs["unit_amount"] for call in price_create.call_args_list}
    assert amounts["OPPORTUNITY"] == 35000
    assert amounts["PINNACLE"] == 82500
    assert all(call.kwargs["currency"] == "zar" for call in price_create.call_args_list)
    assert all(call.kwargs["recurring"] == {"interval": "month"} for call in price_create.call_args_list)

    test_db.expire_all()
    plan = await PlanRepository(test_db).get_plan_by_name("MOMENTUM")
    assert plan.stripe_price_id == "price_momentum"
    assert plan.stripe_product_id == "prod_momentum"


@pytest.mark.asyncio
async def test_sync_stripe_products_gateway_error(client, admin, monkeypatch):
    monkeypatch.setattr(stripe.Product, "create", MagicMock(side_effect=stripe.AuthenticationError("Invalid API Key provided")))

    response = await client.post("/api/admin/stripe/sync-products", headers=auth_headers(admin))
    assert response.status_code == 400
    assert "Invalid API Key" in response.json()["detail"]


@pytest.mark.asyncio
async def test_sync_stripe_products_keeps_plans_synced_before_a_failure(client, test_db, admin, monkeypatch):
    """Plans synced before a Stripe error keep their ids; a re-run only creates the rest."""
    created = []

    def create_product(**kwargs):
        name = kwargs["metadata"]["planName"]
        if name == "PROSPER" and "PROSPER" not in created:
            created.append(name)
            raise stripe.APIConnectionError("Network error communicating with Stripe")
        created.append(name)
        return {"id": f"prod_{name.lower()}"}

    product_create = MagicMock(side_effect=create_product)
    monkeypatch.setattr(stripe.Product, "create", product_create)
    monkeypatch.setattr(stripe.Price, "create", MagicMock(
        side_effect=lambda **kwargs: {"id": f"price_{kwargs['metadata']['planName'].lower()}"}
    ))

    response = await client.post("/api/admin/stripe/sync-products", headers=auth_headers(admin))
    assert response.status_code == 400

    test_db.expire_all()
    plan_repo = PlanRepository(test_db)
    assert (await plan_repo.get_plan_by_name("OPPORTUNITY")).stripe_price_id == "price_opportunity"
    assert (await plan_repo.get_plan_by_name("MOMENTUM")).stripe_product_id == "prod_momentum"
    assert (await plan_repo.get_plan_by_name("PROSPER")).stripe_price_id == "price_dev_prosper"

    product_create.reset_mock()
    response = await client.post("/api/admin/stripe/sync-products", headers=auth_headers(admin))
    assert response.status_code == 200
    assert set(response.json()["products"]) == {"PROSPER", "PRESTIGE", "PINNACLE"}
    assert set(response.json()["skipped"]) == {"OPPORTUNITY", "MOMENTUM"}
    assert [call.kwargs["metadata"]["planName"] for call in product_create.call_args_list] == [
        "PROSPER", "PRESTIGE", "PINNACLE",
    ]
