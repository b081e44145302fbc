import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from database import Base
from utils.shared_utils import utc_now


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class PlanName(str, enum.Enum):
    """The five fixed plan tiers, cheapest first."""
    OPPORTUNITY = "OPPORTUNITY"
    MOMENTUM = "MOMENTUM"
    PROSPER = "PROSPER"
    PRESTIGE = "PRESTIGE"
    PINNACLE = "PINNACLE"


class SubscriptionStatus(str, enum.Enum):
    INCOMPLETE = "INCOMPLETE"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class InvoiceStatus(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Gateway(str, enum.Enum):
    ADUMO = "ADUMO"
    STRIPE = "STRIPE"


class Relation(str, enum.Enum):
    SPOUSE = "SPOUSE"
    CHILD = "CHILD"
    PARENT = "PARENT"
    EXTENDED_FAMILY = "EXTENDED_FAMILY"


class ReferenceKind(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    PLAN_CHANGE = "PLAN_CHANGE"


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    Registered account. Root aggregate that owns subscriptions, invoices,
    transactions and extended cover.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(Text, nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(String(10), default=UserRole.USER.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    email_verification_token = Column(String(255), nullable=True, index=True)
    password_reset_token = Column(String(255), nullable=True, index=True)
    password_reset_expires = Column(DateTime(timezone=True), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)
    adumo_customer_id = Column(String(255), nullable=True)
    phone_number = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class SubscriptionPlan(Base):
    """Catalog entry. Seeded at startup; only external ids are ever rewritten."""
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(20), unique=True, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="ZAR", nullable=False)
    interval = Column(String(20), default="month", nullable=False)
    description = Column(Text, nullable=True)
    features = Column(Text, nullable=True)  # JSON list
    stripe_product_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True)
    adumo_product_id = Column(String(255), nullable=True)
    adumo_price_id = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class Subscription(Base):
    """
    A user's subscription to one plan. Never deleted; the current row for a
    user is the most recently created one.
    """
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False)
    gateway = Column(String(10), nullable=False)
    external_subscription_id = Column(String(255), unique=True, nullable=True)
    status = Column(String(20), default=SubscriptionStatus.INCOMPLETE.value, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    plan = relationship("SubscriptionPlan", lazy="joined")


class Invoice(Base):
    """Billable event. Append-only apart from pending -> paid."""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="ZAR", nullable=False)
    status = Column(String(20), nullable=False)
    description = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class Transaction(Base):
    """Audit record of a gateway payment attempt against an invoice."""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    gateway = Column(String(10), nullable=False)
    merchant_reference = Column(String(255), unique=True, nullable=False)
    gateway_transaction_id = Column(String(255), unique=True, nullable=True)
    status = Column(String(10), default=TransactionStatus.PENDING.value, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="ZAR", nullable=False)
    request_payload = Column(Text, nullable=True)
    response_payload = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class ExtendedCover(Base):
    """Covered dependent with its own computed monthly premium."""
    __tablename__ = "extended_cover"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    surname = Column(String(255), nullable=False)
    id_number = Column(String(13), nullable=True)
    date_of_birth = Column(String(10), nullable=True)
    age = Column(Integer, nullable=False)
    relation = Column(String(20), nullable=False)
    cover_amount = Column(Numeric(10, 2), nullable=False)
    monthly_premium = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class GatewayReference(Base):
    """
    Maps an external reference (transaction reference, remote subscription id)
    to the local subscription it belongs to. Webhooks correlate only through
    this table.
    """
    __tablename__ = "gateway_references"

    id = Column(String(36), primary_key=True, default=_uuid)
    reference = Column(String(255), unique=True, nullable=False, index=True)
    gateway = Column(String(10), nullable=False)
    kind = Column(String(20), default=ReferenceKind.SUBSCRIPTION.value, nullable=False)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
