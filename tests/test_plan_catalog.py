"""
Tests for the seeded plan catalog and the public plans endpoint
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from crud.subscription import PlanRepository
from database_models import SubscriptionPlan
from services.plan_catalog import PLAN_CATALOG, deserialize_features, seed_plans


@pytest.mark.asyncio
async def test_seed_is_idempotent(test_db):
    """The fixture already seeded the catalog; seeding again inserts nothing."""
    assert await seed_plans(test_db) == 0

    count = await test_db.scalar(select(func.count()).select_from(SubscriptionPlan))
    assert count == 5


@pytest.mark.asyncio
async def test_seeded_prices_and_dev_ids(test_db):
    plan_repo = PlanRepository(test_db)
    prices = {plan.name: plan.price for plan in await plan_repo.list_active_plans()}
    assert prices == {
        "OPPORTUNITY": Decimal("350.00"),
        "MOMENTUM": Decimal("450.00"),
        "PROSPER": Decimal("550.00"),
        "PRESTIGE": Decimal("695.00"),
        "PINNACLE": Decimal("825.00"),
    }

    prosper = await plan_repo.get_plan_by_name("PROSPER")
    assert prosper.stripe_price_id == "price_dev_prosper"
    assert prosper.adumo_price_id == "adumo_dev_prosper_550"
    assert prosper.currency == "ZAR"
    assert prosper.interval == "month"


@pytest.mark.asyncio
async def test_seed_keeps_synced_ids(test_db):
    plan_repo = PlanRepository(test_db)
    plan = await plan_repo.get_plan_by_name("PINNACLE")
    await plan_repo.update_plan(plan, {"stripe_price_id": "price_live_123"})
    await test_db.commit()

    await seed_plans(test_db)
    plan = await plan_repo.get_plan_by_name("PINNACLE")
    assert plan.stripe_price_id == "price_live_123"


def test_catalog_feature_lists():
    by_name = {item["name"]: item for item in PLAN_CATALOG}
    assert len(by_name["OPPORTUNITY"]["features"]) == 15
    assert "Funeral Cover: R20,000" in by_name["PINNACLE"]["features"]
    assert "Accidental Death Cover: R100,000" in by_name["PINNACLE"]["features"]


def test_deserialize_features_is_tolerant():
    assert deserialize_features(None) == []
    assert deserialize_features("not json") == []
    assert deserialize_features('{"a": 1}') == []
    assert deserialize_features('["EMS Assist"]') == ["EMS Assist"]


@pytest.mark.asyncio
async def test_list_plans_endpoint(client):
    response = await client.get("/api/plans")

    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [plan["name"] for plan in plans] == ["OPPORTUNITY", "MOMENTUM", "PROSPER", "PRESTIGE", "PINNACLE"]
    assert plans[0]["price"] == "350.00"
    assert plans[0]["currency"] == "ZAR"
    assert "EMS Assist" in plans[0]["features"]
