"""
Opian Lifestyle protection plans - subscription backend
Plans, premiums, subscriptions via Adumo or Stripe, invoices and admin stats
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Import routers
from routers.webhooks_router import router as webhooks_router
from routers.plans_router import router as plans_router
from routers.subscriptions_router import router as subscriptions_router
from routers.invoices_router import router as invoices_router
from routers.extended_cover_router import router as extended_cover_router
from auth import auth_router
from admin_tools import admin_router
from database import init_db
from config.settings import settings, IS_PRODUCTION
from utils.errors import AppError

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Opian Lifestyle Protection Plans")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error"}
            )


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: CSP, HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # The hosted payment page is reached by a form POST from the SPA
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' 'unsafe-inline' https://js.stripe.com; "
            "style-src 'self' 'unsafe-inline'; "
            "connect-src 'self' https://api.stripe.com; "
            "frame-src https://js.stripe.com; "
            "img-src 'self' data: blob:; "
            "font-src 'self' data:; "
            "object-src 'none'; "
            "base-uri 'self'; "
            f"form-action 'self' {settings.adumo_test_url} {settings.adumo_prod_url};"
        )

        # Only set in production where HTTPS is guaranteed
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid data provided", "errors": jsonable_encoder(exc.errors())},
    )


# Initialize database on startup
@app.on_event("startup")
async def initialize_database():
    """Create all tables and seed the plan catalog."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


@app.on_event("startup")
async def check_payment_config():
    """Warn about missing gateway credentials (non-fatal)"""
    if settings.payment_gateway == "stripe":
        missing = [name for name, value in {
            "STRIPE_SECRET_KEY": settings.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        }.items() if not value]
    else:
        missing = [] if settings.adumo_jwt_secret else ["ADUMO_JWT_SECRET"]

    if missing:
        logger.warning(f"Payment gateway {settings.payment_gateway}: missing {', '.join(missing)}")
    else:
        logger.info(f"Payment gateway {settings.payment_gateway} configured")


@app.get("/api/health")
async def health():
    return {"status": "ok", "gateway": settings.payment_gateway}


@app.get("/api/config/adumo")
async def adumo_config():
    """Public merchant id used by the front end to label the payment page."""
    return {"merchantId": settings.adumo_merchant_id}


# Webhooks FIRST
app.include_router(webhooks_router)
app.include_router(auth_router)
app.include_router(plans_router)
app.include_router(subscriptions_router)
app.include_router(invoices_router)
app.include_router(extended_cover_router)
app.include_router(admin_router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
