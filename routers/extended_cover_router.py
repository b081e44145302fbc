"""
Extended Cover Router - dependents attached to the signed-in user's plan
"""
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from database_models import Relation, User
from models.extended_cover import ExtendedCoverCreate, ExtendedCoverUpdate
from services.extended_cover_service import ExtendedCoverService, price_cover
from services.premium_service import get_available_cover_amounts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/extended-cover", tags=["extended-cover"])


@router.get("/options")
async def get_cover_options(age: Optional[int] = Query(default=None, ge=0, le=120)):
    """Cover amounts a member of the given age may choose."""
    return {"age": age, "coverAmounts": get_available_cover_amounts(age)}


@router.get("/quote")
async def get_premium_quote(
    age: int = Query(ge=0, le=120),
    relation: Relation = Query(),
    cover_amount: Decimal = Query(alias="coverAmount", ge=1000),
):
    premium = price_cover(age, relation.value, cover_amount)
    return {
        "age": age,
        "relation": relation.value,
        "coverAmount": f"{cover_amount:.2f}",
        "monthlyPremium": f"{premium:.2f}",
    }


@router.get("")
async def list_extended_cover(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return {"covers": await ExtendedCoverService(db).list_covers(current_user.id)}


@router.post("")
async def create_extended_cover(
    request: ExtendedCoverCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    cover = await ExtendedCoverService(db).create_cover(current_user.id, request)
    return {"cover": cover}


@router.put("/{cover_id}")
async def update_extended_cover(
    cover_id: str,
    request: ExtendedCoverUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Premium is recomputed when age, relation or cover amount change."""
    cover = await ExtendedCoverService(db).update_cover(current_user.id, cover_id, request)
    return {"cover": cover}


@router.delete("/{cover_id}")
async def delete_extended_cover(
    cover_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await ExtendedCoverService(db).delete_cover(current_user.id, cover_id)
    return {"message": "Extended cover deleted successfully"}
