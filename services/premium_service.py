"""
Premium calculator for extended cover dependents.

Rates are expressed per R1,000 of cover and looked up from fixed, inclusive,
non-overlapping age bands keyed by relation.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from database_models import Relation
from utils.errors import InvalidInputError

logger = logging.getLogger(__name__)

# (min_age, max_age, rate per 1000)
RateBand = Tuple[int, int, Decimal]

PREMIUM_RATE_TABLE: Dict[Relation, List[RateBand]] = {
    Relation.SPOUSE: [
        (18, 45, Decimal("2.55")),
        (46, 50, Decimal("2.95")),
        (51, 60, Decimal("3.55")),
        (61, 70, Decimal("3.55")),
    ],
    Relation.CHILD: [
        (0, 5, Decimal("1.95")),
        (6, 13, Decimal("2.05")),
        (14, 20, Decimal("2.25")),
    ],
    Relation.PARENT: [
        (18, 25, Decimal("2.48")),
        (26, 30, Decimal("3.88")),
        (31, 35, Decimal("4.72")),
        (36, 40, Decimal("5.48")),
        (41, 45, Decimal("5.64")),
        (46, 50, Decimal("6.44")),
        (51, 55, Decimal("6.44")),
        (56, 60, Decimal("8.94")),
        (61, 65, Decimal("13.12")),
        (66, 70, Decimal("20.08")),
        (71, 75, Decimal("21.84")),
    ],
    Relation.EXTENDED_FAMILY: [
        (18, 45, Decimal("2.55")),
        (46, 55, Decimal("3.55")),
        (56, 64, Decimal("4.55")),
    ],
}

# SPOUSE 18-45
DEFAULT_RATE = Decimal("2.55")

BASE_COVER_AMOUNTS = [10000, 15000, 20000, 25000, 30000]
EXTENDED_COVER_AMOUNTS = BASE_COVER_AMOUNTS + list(range(40000, 100001, 10000))
EXTENDED_COVER_MAX_AGE = 50


def find_rate(age: int, relation: Union[Relation, str]) -> Optional[Decimal]:
    """Rate multiplier for the band containing age, or None when no band matches."""
    for min_age, max_age, rate in PREMIUM_RATE_TABLE[Relation(relation)]:
        if min_age <= age <= max_age:
            return rate
    return None


def calculate_premium(
    age: int,
    relation: Union[Relation, str],
    cover_amount: Union[Decimal, int, float, str],
    fallback_to_default_rate: bool = True,
) -> Decimal:
    """
    Monthly premium for a dependent.

    premium = cover_amount / 1000 * rate, exact. Callers that store or bill
    the premium round it to cents with to_money().

    Ages outside every band for the relation are priced at DEFAULT_RATE while
    fallback_to_default_rate is on; with it off they raise InvalidInputError.

    Raises:
        InvalidInputError: Unknown relation, or out-of-band age without fallback
    """
    try:
        relation = Relation(relation)
    except ValueError:
        raise InvalidInputError(f"Unknown relation: {relation}")

    cover_per_1000 = Decimal(str(cover_amount)) / Decimal(1000)
    rate = find_rate(age, relation)
    if rate is None:
        if not fallback_to_default_rate:
            raise InvalidInputError(f"No premium band for {relation.value} aged {age}")
        logger.info(f"Age {age} outside {relation.value} bands; using default rate {DEFAULT_RATE}")
        rate = DEFAULT_RATE

    return cover_per_1000 * rate


def get_available_cover_amounts(age: Optional[int]) -> List[int]:
    """
    Permissible cover amounts in ascending order.

    Members under 50 may take up to R100,000; everyone else, including an
    unknown age, is capped at R30,000.
    """
    if age is not None and age < EXTENDED_COVER_MAX_AGE:
        return list(EXTENDED_COVER_AMOUNTS)
    return list(BASE_COVER_AMOUNTS)


def age_from_id_number(id_number: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """
    Derive an age from a 13-digit South African ID number (YYMMDD prefix).

    Two-digit years 00-22 are read as 2000s, everything else as 1900s.

    Returns:
        Age in whole years, or None for malformed numbers or ages outside 0-120
    """
    if not id_number or len(id_number) != 13 or not id_number.isdigit():
        return None

    year = int(id_number[0:2])
    month = int(id_number[2:4])
    day = int(id_number[4:6])
    full_year = 2000 + year if year <= 22 else 1900 + year

    try:
        birth_date = date(full_year, month, day)
    except ValueError:
        return None

    today = today or date.today()
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1

    if age < 0 or age > 120:
        return None
    return age
