"""
Pytest configuration and fixtures for testing
"""
import os

# Settings are read at import time; configure before the app is imported
os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("ADUMO_JWT_SECRET", "test-adumo-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ADMIN_EMAILS", "admin@example.com")
os.environ["SENDGRID_API_KEY"] = ""
os.environ["SMTP_USER"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# One shared connection so every session sees the same in-memory database
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    future=True,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)

# Create test session factory
TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

TEST_PASSWORD = "Password123"
ADUMO_TEST_SECRET = "test-adumo-secret"
STRIPE_TEST_WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
async def test_db():
    """
    Fixture that provides an isolated, in-memory SQLite database connection for each test.

    This fixture:
    - Creates all tables and seeds the five plans before the test runs
    - Yields a clean AsyncSession for the test
    - Drops all tables after the test completes
    """
    async with test_engine.begin() as conn:
        # Import models to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    from services.plan_catalog import seed_plans

    async with TestAsyncSessionLocal() as session:
        await seed_plans(session)
        await session.commit()

    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# Override get_db dependency to use test database
async def override_get_db():
    """Override get_db to use test database"""
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def make_adumo_gateway():
    from services.adumo_gateway import AdumoGateway
    return AdumoGateway(jwt_secret=ADUMO_TEST_SECRET, verify_webhooks=True, frontend_url="http://localhost:5000")


def make_stripe_gateway():
    from services.stripe_gateway import StripeGateway
    return StripeGateway(secret_key="sk_test_dummy", webhook_secret=STRIPE_TEST_WEBHOOK_SECRET)


@pytest.fixture
def gateway_name():
    """Which adapter the subscription routes use; override in a module to switch."""
    return "adumo"


@pytest.fixture
async def client(test_db, gateway_name):
    """httpx AsyncClient over the ASGI app with the test database and gateways wired in"""
    from main import app
    from services.gateway_factory import get_adumo_gateway, get_payment_gateway, get_stripe_gateway

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_adumo_gateway] = make_adumo_gateway
    app.dependency_overrides[get_stripe_gateway] = make_stripe_gateway
    app.dependency_overrides[get_payment_gateway] = (
        make_stripe_gateway if gateway_name == "stripe" else make_adumo_gateway
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    # Cleanup: remove dependency overrides
    app.dependency_overrides.clear()


async def create_user(db, email="member@example.com", name="Thandi Mokoena", verified=True, role="USER", detach=True):
    """
    Insert a user directly, skipping the email round trip.

    The row is detached from the session by default so later rollbacks and
    expire_all() calls leave its attributes readable.
    """
    from auth_utils import hash_password
    from crud.user import UserRepository

    user = await UserRepository(db).create_user({
        "email": email,
        "password_hash": hash_password(TEST_PASSWORD),
        "name": name,
        "role": role,
        "email_verified": verified,
    })
    await db.commit()
    if detach:
        db.expunge(user)
    return user


def auth_headers(user) -> dict:
    from auth_utils import create_jwt
    return {"Authorization": f"Bearer {create_jwt(user.id, user.email, user.role)}"}


@pytest.fixture
async def member(test_db):
    return await create_user(test_db)


@pytest.fixture
async def admin(test_db):
    return await create_user(test_db, email="admin@example.com", name="Site Admin", role="ADMIN")
