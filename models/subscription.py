"""
Subscription request models
"""
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from database_models import PlanName, Relation


class CamelModel(BaseModel):
    """Accepts camelCase on the wire and snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanChangeRequest(CamelModel):
    plan_name: PlanName


class ExtendedMemberRequest(CamelModel):
    first_name: str = Field(min_length=2)
    surname: str = Field(min_length=2)
    id_number: Optional[str] = Field(default=None, pattern=r"^\d{13}$")
    age: Optional[int] = Field(default=None, ge=0, le=120)
    relation: Relation
    cover_amount: Decimal = Field(ge=1000)


class FullSubscriptionRequest(CamelModel):
    plan_id: str
    extended_members: List[ExtendedMemberRequest] = Field(default_factory=list)
