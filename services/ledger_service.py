"""
Invoice & transaction ledger: wire formats and the admin revenue statistics
derived from it.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.ledger import InvoiceRepository, TransactionRepository
from crud.subscription import SubscriptionRepository
from database_models import Invoice, InvoiceStatus, PlanName, SubscriptionStatus, Transaction
from utils.shared_utils import ensure_utc

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _money(value) -> str:
    return f"{Decimal(value):.2f}"


def invoice_to_dict(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "userId": invoice.user_id,
        "subscriptionId": invoice.subscription_id,
        "amount": _money(invoice.amount),
        "currency": invoice.currency,
        "status": invoice.status,
        "description": invoice.description,
        "paidAt": _iso(invoice.paid_at),
        "dueDate": _iso(invoice.due_date),
        "createdAt": _iso(invoice.created_at),
    }


def transaction_to_dict(transaction: Transaction) -> dict:
    """Raw gateway payloads stay server-side."""
    return {
        "id": transaction.id,
        "invoiceId": transaction.invoice_id,
        "gateway": transaction.gateway,
        "merchantReference": transaction.merchant_reference,
        "gatewayTransactionId": transaction.gateway_transaction_id,
        "status": transaction.status,
        "amount": _money(transaction.amount),
        "currency": transaction.currency,
        "createdAt": _iso(transaction.created_at),
    }


class LedgerService:
    """Read side of the ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.invoices = InvoiceRepository(db)
        self.transactions = TransactionRepository(db)
        self.subscriptions = SubscriptionRepository(db)

    async def list_invoices(self, user_id: str) -> list:
        return [invoice_to_dict(invoice) for invoice in await self.invoices.list_user_invoices(user_id)]

    async def list_transactions(self, user_id: str) -> list:
        return [transaction_to_dict(txn) for txn in await self.transactions.list_user_transactions(user_id)]

    async def get_stats(self) -> dict:
        """
        Subscriber count is the number of ACTIVE subscriptions; revenue is the
        sum of paid invoices.
        """
        by_plan = {plan.value: 0 for plan in PlanName}
        by_plan.update(await self.subscriptions.count_active_by_plan())
        total_revenue = await self.invoices.sum_by_status(InvoiceStatus.PAID)
        pending_revenue = await self.invoices.sum_by_status(InvoiceStatus.PENDING)
        return {
            "totalSubscribers": await self.subscriptions.count_by_status(SubscriptionStatus.ACTIVE),
            "totalRevenue": _money(total_revenue),
            "pendingRevenue": _money(pending_revenue),
            "subscribersByPlan": by_plan,
        }
