"""
Authentication utilities: Password hashing and JWT token management
"""

import jwt
from datetime import datetime, timedelta, timezone
from passlib.context import CryptContext
from typing import Optional
from config.settings import settings

# Password hashing context
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto"
)

# JWT configuration
ALGORITHM = "HS256"
ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


def hash_password(password: str) -> str:
    """Hash a password using argon2"""
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    return pwd_context.verify(password, password_hash)


def _require_secret() -> str:
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set. Cannot create JWT token.")
    return settings.jwt_secret_key


def create_jwt(user_id: str, email: str, role: str, token_type: str = ACCESS_TOKEN, expires_in: Optional[timedelta] = None) -> str:
    """Create a signed access or refresh token for a user"""
    secret = _require_secret()
    if expires_in is None:
        if token_type == REFRESH_TOKEN:
            expires_in = timedelta(days=settings.refresh_token_ttl_days)
        else:
            expires_in = timedelta(minutes=settings.access_token_ttl_minutes)

    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def create_token_pair(user_id: str, email: str, role: str) -> dict:
    return {
        "accessToken": create_jwt(user_id, email, role, ACCESS_TOKEN),
        "refreshToken": create_jwt(user_id, email, role, REFRESH_TOKEN),
    }


def decode_jwt(token: str, expected_type: str = ACCESS_TOKEN) -> Optional[dict]:
    """Decode a JWT token. Returns None if invalid, expired or of the wrong type."""
    secret = _require_secret()

    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None

    if payload.get("type") != expected_type:
        return None
    return payload


def create_expired_jwt(user_id: str, expired_seconds_ago: int = 1) -> str:
    """
    Create an expired access token for testing purposes.

    Args:
        user_id: User ID to include in token
        expired_seconds_ago: How many seconds ago the token should have expired (default: 1)

    Returns:
        Expired JWT token string

    Raises:
        ValueError: If JWT_SECRET_KEY is not set
    """
    return create_jwt(
        user_id,
        email="",
        role="USER",
        expires_in=timedelta(seconds=-expired_seconds_ago),
    )
