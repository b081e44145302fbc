"""
Shared utility functions for routers and services
"""
import calendar
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def generate_token(num_bytes: int = 32) -> str:
    """Random hex token used for email verification and password resets."""
    return secrets.token_hex(num_bytes)


def add_one_month(value: datetime) -> datetime:
    """
    Advance a datetime by one calendar month.

    The day is clamped to the last day of the target month, so Jan 31 becomes
    Feb 28 (or Feb 29 in leap years).
    """
    month = value.month + 1
    year = value.year
    if month > 12:
        month = 1
        year += 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """Quantize an amount to cents using half-up rounding."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def timestamped_reference(prefix: str, owner_id: str) -> str:
    """
    External reference such as sub_<user>_<ms><hex>.

    The random tail keeps two references minted in the same millisecond apart.
    """
    return f"{prefix}_{owner_id}_{int(time.time() * 1000)}{secrets.token_hex(2)}"


def log_endpoint_event(endpoint: str, user_id: Optional[str] = None, result: str = "success", details: Optional[dict] = None):
    """Log endpoint execution to app.log"""
    logger.info(f"{endpoint} | user={user_id or 'none'} | {result} | {json.dumps(details or {}, default=str)}")
