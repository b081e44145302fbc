"""
Centralized configuration using Pydantic BaseSettings.
All environment variables are optional to prevent application startup failure;
operations that need a missing secret fail with a descriptive error instead.
"""

from typing import Annotated, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")
    access_token_ttl_minutes: int = Field(default=60 * 24, alias="ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = Field(default=7, alias="REFRESH_TOKEN_TTL_DAYS")
    password_reset_ttl_minutes: int = Field(default=60, alias="PASSWORD_RESET_TTL_MINUTES")
    cookie_secure: bool = Field(default=False, alias="COOKIE_SECURE")
    admin_emails: Annotated[List[str], NoDecode] = Field(default_factory=list, alias="ADMIN_EMAILS")

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./protection.db", alias="DATABASE_URL")

    # Frontend configuration
    frontend_url: str = Field(default="http://localhost:5000", alias="FRONTEND_URL")

    # Payment gateway selection
    payment_gateway: Literal["adumo", "stripe"] = Field(default="adumo", alias="PAYMENT_GATEWAY")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")

    # Adumo hosted payment page configuration
    # Identifier defaults are the public sandbox (non-3D Secure) credentials
    adumo_merchant_id: str = Field(default="9BA5008C-08EE-4286-A349-54AF91A621B0", alias="ADUMO_MERCHANT_ID")
    adumo_application_id: str = Field(default="904A34AF-0CE9-42B1-9C98-B69E6329D154", alias="ADUMO_APPLICATION_ID")
    adumo_jwt_secret: Optional[str] = Field(default=None, alias="ADUMO_JWT_SECRET")
    adumo_environment: Literal["test", "production"] = Field(default="test", alias="ADUMO_ENVIRONMENT")
    adumo_test_url: str = Field(
        default="https://staging-apiv3.adumoonline.com/product/payment/v1/initialisevirtual",
        alias="ADUMO_TEST_URL",
    )
    adumo_prod_url: str = Field(
        default="https://apiv3.adumoonline.com/product/payment/v1/initialisevirtual",
        alias="ADUMO_PROD_URL",
    )
    adumo_verify_webhooks: bool = Field(default=True, alias="ADUMO_VERIFY_WEBHOOKS")

    # Outbound mail
    smtp_host: str = Field(default="smtp.gmail.com", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, alias="SMTP_USER")
    smtp_pass: Optional[str] = Field(default=None, alias="SMTP_PASS")
    smtp_from: str = Field(default="noreply@lifeguard.co.za", alias="SMTP_FROM")
    sendgrid_api_key: Optional[str] = Field(default=None, alias="SENDGRID_API_KEY")

    # Extended cover pricing: ages outside every band fall back to the
    # SPOUSE 18-45 rate while this is on, and are rejected when it is off.
    premium_fallback_to_default_rate: bool = Field(default=True, alias="PREMIUM_FALLBACK_TO_DEFAULT_RATE")

    @field_validator("admin_emails", mode="before")
    @classmethod
    def parse_admin_emails(cls, value):
        """Support comma-separated admin emails from environment variables."""
        if isinstance(value, str):
            return [email.strip().lower() for email in value.split(",") if email.strip()]
        return [email.lower() for email in value or []]


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.env and settings.env.lower() == "production")
