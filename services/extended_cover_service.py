"""
Extended cover: dependents attached to a user's plan, each with a premium
recomputed whenever age, relation or cover amount change.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.extended_cover import ExtendedCoverRepository
from database_models import ExtendedCover
from models.extended_cover import ExtendedCoverCreate, ExtendedCoverUpdate
from models.subscription import ExtendedMemberRequest
from services.premium_service import age_from_id_number, calculate_premium
from utils.errors import InvalidInputError, NotFoundError
from utils.shared_utils import ensure_utc, to_money

logger = logging.getLogger(__name__)

PRICING_FIELDS = ("age", "relation", "cover_amount")


def cover_to_dict(cover: ExtendedCover) -> dict:
    created_at = ensure_utc(cover.created_at)
    return {
        "id": cover.id,
        "name": cover.name,
        "surname": cover.surname,
        "idNumber": cover.id_number,
        "dateOfBirth": cover.date_of_birth,
        "age": cover.age,
        "relation": cover.relation,
        "coverAmount": f"{Decimal(cover.cover_amount):.2f}",
        "monthlyPremium": f"{Decimal(cover.monthly_premium):.2f}",
        "isActive": cover.is_active,
        "createdAt": created_at.isoformat() if created_at else None,
    }


def price_cover(age: int, relation: str, cover_amount: Decimal) -> Decimal:
    """Monthly premium as charged: the exact premium rounded half-up to cents."""
    return to_money(calculate_premium(
        age,
        relation,
        cover_amount,
        fallback_to_default_rate=settings.premium_fallback_to_default_rate,
    ))


def member_to_cover_data(user_id: str, member: ExtendedMemberRequest) -> dict:
    """
    Row data for a dependent submitted with the full subscription form.

    The age comes from the ID number when it parses, otherwise from the
    explicit age field.

    Raises:
        InvalidInputError: If neither yields an age
    """
    age = age_from_id_number(member.id_number)
    if age is None:
        age = member.age
    if age is None:
        raise InvalidInputError(f"Cannot determine age for {member.first_name} {member.surname}")

    date_of_birth = None
    if member.id_number:
        date_of_birth = f"{member.id_number[0:2]}/{member.id_number[2:4]}/{member.id_number[4:6]}"

    return {
        "user_id": user_id,
        "name": member.first_name,
        "surname": member.surname,
        "id_number": member.id_number,
        "date_of_birth": date_of_birth,
        "age": age,
        "relation": member.relation.value,
        "cover_amount": to_money(member.cover_amount),
        "monthly_premium": price_cover(age, member.relation.value, member.cover_amount),
    }


class ExtendedCoverService:
    """Owner-scoped CRUD for extended cover."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.covers = ExtendedCoverRepository(db)

    async def list_covers(self, user_id: str) -> list:
        return [cover_to_dict(cover) for cover in await self.covers.list_active_for_user(user_id)]

    async def create_cover(self, user_id: str, request: ExtendedCoverCreate) -> dict:
        cover = await self.covers.create_cover({
            "user_id": user_id,
            "name": request.name,
            "surname": request.surname,
            "id_number": request.id_number,
            "date_of_birth": request.date_of_birth,
            "age": request.age,
            "relation": request.relation.value,
            "cover_amount": to_money(request.cover_amount),
            "monthly_premium": price_cover(request.age, request.relation.value, request.cover_amount),
        })
        logger.info(f"Added extended cover {cover.id} for user {user_id}")
        return cover_to_dict(cover)

    async def update_cover(self, user_id: str, cover_id: str, request: ExtendedCoverUpdate) -> dict:
        cover = await self._get_owned(user_id, cover_id)
        updates = request.model_dump(exclude_unset=True, exclude_none=True)
        if "relation" in updates:
            updates["relation"] = updates["relation"].value
        if "cover_amount" in updates:
            updates["cover_amount"] = to_money(updates["cover_amount"])

        if any(field in updates for field in PRICING_FIELDS):
            updates["monthly_premium"] = price_cover(
                updates.get("age", cover.age),
                updates.get("relation", cover.relation),
                updates.get("cover_amount", cover.cover_amount),
            )

        cover = await self.covers.update_cover(cover, updates)
        return cover_to_dict(cover)

    async def delete_cover(self, user_id: str, cover_id: str) -> None:
        cover = await self._get_owned(user_id, cover_id)
        await self.covers.deactivate_cover(cover)
        logger.info(f"Deactivated extended cover {cover_id} for user {user_id}")

    async def _get_owned(self, user_id: str, cover_id: str) -> ExtendedCover:
        cover: Optional[ExtendedCover] = await self.covers.get_for_user(cover_id, user_id)
        if cover is None:
            raise NotFoundError("Extended cover not found")
        return cover
