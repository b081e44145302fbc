"""
Security utilities for credential and webhook validation
"""
import hashlib
import hmac
import re
from typing import Optional

MIN_PASSWORD_LENGTH = 8
MIN_NAME_LENGTH = 2

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_password_strength(password: str) -> None:
    """
    Validate password strength according to security requirements.

    Enforces a minimum length of 8 characters.

    Args:
        password: Password string to validate

    Raises:
        ValueError: If password does not meet strength requirements
    """
    if not password:
        raise ValueError("Password cannot be empty")

    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


def validate_email(email: str) -> str:
    """
    Normalize and validate an email address.

    Returns:
        The lowercased, stripped email

    Raises:
        ValueError: If the address is malformed
    """
    normalized = (email or "").strip().lower()
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("Invalid email address")
    return normalized


def sign_payload(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a raw request body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_payload_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Constant-time check of an HMAC-SHA256 signature header.

    Accepts either the bare hex digest or the ``sha256=<hex>`` form.
    """
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
