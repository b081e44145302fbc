"""
Authentication routes and dependencies
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import ACCESS_TOKEN, REFRESH_TOKEN, create_token_pair, decode_jwt, hash_password, verify_password
from config.settings import settings
from crud.user import UserRepository
from database import get_db
from database_models import User, UserRole
from services.email_service import notify
from utils.security_utils import MIN_NAME_LENGTH, validate_email, validate_password_strength
from utils.shared_utils import ensure_utc, generate_token, log_endpoint_event, utc_now

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


# Request models
class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = Field(min_length=MIN_NAME_LENGTH)


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenRequest(BaseModel):
    token: str


class PasswordResetRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    password: str


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = None


def user_to_dict(user: User) -> dict:
    """Public view of a user; hashes and one-time tokens never leave the server."""
    created_at = ensure_utc(user.created_at)
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "emailVerified": user.email_verified,
        "isActive": user.is_active,
        "createdAt": created_at.isoformat() if created_at else None,
    }


def _set_auth_cookies(response: JSONResponse, tokens: dict) -> None:
    response.set_cookie(
        key=ACCESS_COOKIE,
        value=tokens["accessToken"],
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=int(timedelta(minutes=settings.access_token_ttl_minutes).total_seconds()),
    )
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=tokens["refreshToken"],
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=int(timedelta(days=settings.refresh_token_ttl_days).total_seconds()),
    )


@auth_router.post("/register", status_code=201)
async def register(request: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create an unverified account and send the verification link"""
    try:
        email = validate_email(request.email)
        validate_password_strength(request.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    user_repo = UserRepository(db)
    if await user_repo.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="User with this email already exists")

    verification_token = generate_token()
    role = UserRole.ADMIN if email in settings.admin_emails else UserRole.USER
    user = await user_repo.create_user({
        "email": email,
        "password_hash": hash_password(request.password),
        "name": request.name.strip(),
        "role": role.value,
        "email_verified": False,
        "email_verification_token": verification_token,
    })
    await db.commit()
    log_endpoint_event("/api/auth/register", user_id=user.id)

    await notify("verifyEmail", {
        "name": user.name,
        "verifyUrl": f"{settings.frontend_url}/verify-email?token={verification_token}",
    }, user.email)

    return JSONResponse(
        status_code=201,
        content={
            "user": user_to_dict(user),
            "message": "Registration successful. Please check your email to verify your account.",
        },
    )


@auth_router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login and receive access/refresh tokens as httpOnly cookies"""
    user_repo = UserRepository(db)
    user = await user_repo.get_user_by_email(request.email.strip().lower())
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.email_verified:
        raise HTTPException(status_code=401, detail="Please verify your email before signing in")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    tokens = create_token_pair(user.id, user.email, user.role)
    log_endpoint_event("/api/auth/login", user_id=user.id)

    response = JSONResponse(content={"user": user_to_dict(user), "tokens": tokens})
    _set_auth_cookies(response, tokens)
    return response


@auth_router.post("/verify-email")
async def verify_email(request: TokenRequest, db: AsyncSession = Depends(get_db)):
    user_repo = UserRepository(db)
    user = await user_repo.get_user_by_verification_token(request.token)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired verification token")

    user = await user_repo.update_user(user, {
        "email_verified": True,
        "email_verification_token": None,
    })
    await db.commit()
    logger.info(f"User {user.id} verified their email")

    await notify("welcome", {
        "name": user.name,
        "loginUrl": f"{settings.frontend_url}/auth",
    }, user.email)

    return {"message": "Email verified successfully", "user": user_to_dict(user)}


@auth_router.post("/request-password-reset")
async def request_password_reset(request: PasswordResetRequest, db: AsyncSession = Depends(get_db)):
    user_repo = UserRepository(db)
    user = await user_repo.get_user_by_email(request.email.strip().lower())
    if not user:
        raise HTTPException(status_code=404, detail="No account found with that email")

    reset_token = generate_token()
    await user_repo.update_user(user, {
        "password_reset_token": reset_token,
        "password_reset_expires": utc_now() + timedelta(minutes=settings.password_reset_ttl_minutes),
    })
    await db.commit()
    log_endpoint_event("/api/auth/request-password-reset", user_id=user.id)

    await notify("passwordReset", {
        "name": user.name,
        "resetUrl": f"{settings.frontend_url}/reset-password?token={reset_token}",
    }, user.email)

    return {"message": "Password reset email sent"}


@auth_router.post("/reset-password")
async def reset_password(request: ResetPasswordRequest, db: AsyncSession = Depends(get_db)):
    try:
        validate_password_strength(request.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    user_repo = UserRepository(db)
    user = await user_repo.get_user_by_reset_token(request.token)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")

    user = await user_repo.update_user(user, {
        "password_hash": hash_password(request.password),
        "password_reset_token": None,
        "password_reset_expires": None,
    })
    await db.commit()
    log_endpoint_event("/api/auth/reset-password", user_id=user.id)

    return {"message": "Password reset successful", "user": user_to_dict(user)}


@auth_router.post("/refresh")
async def refresh(
    request: Optional[RefreshRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    db: AsyncSession = Depends(get_db)
):
    """Exchange a refresh token (cookie or body) for a new token pair"""
    token = refresh_cookie or (request.refreshToken if request else None)
    payload = decode_jwt(token, expected_type=REFRESH_TOKEN) if token else None
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    user = await UserRepository(db).get_user_by_id(payload.get("sub"))
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    tokens = create_token_pair(user.id, user.email, user.role)
    response = JSONResponse(content={"tokens": tokens})
    _set_auth_cookies(response, tokens)
    return response


@auth_router.post("/logout")
async def logout():
    """Logout and clear both auth cookies"""
    response = JSONResponse(content={"message": "Logged out successfully"})
    response.delete_cookie(ACCESS_COOKIE, httponly=True, secure=settings.cookie_secure, samesite="strict")
    response.delete_cookie(REFRESH_COOKIE, httponly=True, secure=settings.cookie_secure, samesite="strict")
    return response


# Dependency for protected routes
async def get_current_user(
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Check accessToken cookie first (httpOnly cookie set by login)
    2. Fallback to Authorization header (Bearer token) for API consumers
    3. Raise 401 if neither is found
    """
    token = None
    if access_cookie:
        token = access_cookie
    elif authorization and authorization.startswith("Bearer "):
        token = authorization.replace("Bearer ", "").strip()

    if not token:
        raise HTTPException(status_code=401, detail="Access token required")

    payload = decode_jwt(token, expected_type=ACCESS_TOKEN)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=403, detail="Invalid or expired token")

    user = await UserRepository(db).get_user_by_id(payload["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.ADMIN.value:
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user


@auth_router.get("/user")
async def get_user(current_user: User = Depends(get_current_user)):
    """Get current user information"""
    return user_to_dict(current_user)
