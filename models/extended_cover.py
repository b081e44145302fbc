"""
Extended cover request models
"""
from decimal import Decimal
from typing import Optional
from pydantic import Field

from database_models import Relation
from models.subscription import CamelModel


class ExtendedCoverCreate(CamelModel):
    name: str = Field(min_length=2)
    surname: str = Field(min_length=2)
    id_number: Optional[str] = Field(default=None, pattern=r"^\d{13}$")
    date_of_birth: Optional[str] = Field(default=None, max_length=10)
    age: int = Field(ge=0, le=120)
    relation: Relation
    cover_amount: Decimal = Field(ge=1000)


class ExtendedCoverUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2)
    surname: Optional[str] = Field(default=None, min_length=2)
    id_number: Optional[str] = Field(default=None, pattern=r"^\d{13}$")
    date_of_birth: Optional[str] = Field(default=None, max_length=10)
    age: Optional[int] = Field(default=None, ge=0, le=120)
    relation: Optional[Relation] = None
    cover_amount: Optional[Decimal] = Field(default=None, ge=1000)
