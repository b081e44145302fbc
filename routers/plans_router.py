from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crud.subscription import PlanRepository
from database import get_db
from services.plan_catalog import plan_to_dict

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("")
async def list_plans(db: AsyncSession = Depends(get_db)):
    """Active plans, cheapest first. Public."""
    plans = await PlanRepository(db).list_active_plans()
    return {"plans": [plan_to_dict(plan) for plan in plans]}
