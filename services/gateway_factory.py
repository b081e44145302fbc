"""
Gateway selection - route dependencies that hand out payment gateway adapters.
Tests override these through app.dependency_overrides.
"""
import logging

from config.settings import settings
from services.adumo_gateway import AdumoGateway
from services.payment_gateway import PaymentGateway
from services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()


def get_adumo_gateway() -> AdumoGateway:
    return AdumoGateway()


def get_payment_gateway() -> PaymentGateway:
    """The adapter named by PAYMENT_GATEWAY (adumo by default)."""
    if settings.payment_gateway == "stripe":
        return get_stripe_gateway()
    return get_adumo_gateway()
