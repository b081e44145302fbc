"""
Invoice and transaction repositories.

Both tables are append-only. In-place changes are limited to settling a
pending row (paid/SUCCESS) and returning an optimistically paid invoice to
pending when its first charge is declined.
"""

from decimal import Decimal
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select
from database_models import Invoice, InvoiceStatus, Transaction, TransactionStatus
from utils.shared_utils import utc_now


class InvoiceRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_invoice(self, invoice_data: dict) -> Invoice:
        invoice = Invoice(**invoice_data)
        self.db.add(invoice)
        await self.db.flush()
        await self.db.refresh(invoice)
        return invoice

    async def get_invoice_by_id(self, invoice_id: str) -> Optional[Invoice]:
        result = await self.db.execute(select(Invoice).where(Invoice.id == invoice_id))
        return result.scalar_one_or_none()

    async def list_user_invoices(self, user_id: str) -> List[Invoice]:
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.user_id == user_id)
            .order_by(Invoice.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_subscription_invoices(self, subscription_id: str) -> List[Invoice]:
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.subscription_id == subscription_id)
            .order_by(Invoice.created_at)
        )
        return list(result.scalars().all())

    async def mark_paid(self, invoice: Invoice) -> Invoice:
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = utc_now()
        await self.db.flush()
        return invoice

    async def mark_unpaid(self, invoice: Invoice) -> Invoice:
        invoice.status = InvoiceStatus.PENDING.value
        invoice.paid_at = None
        await self.db.flush()
        return invoice

    async def sum_by_status(self, status: InvoiceStatus) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Invoice.amount), 0)).where(Invoice.status == status.value)
        )
        return Decimal(str(result.scalar_one()))


class TransactionRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_transaction(self, transaction_data: dict) -> Transaction:
        transaction = Transaction(**transaction_data)
        self.db.add(transaction)
        await self.db.flush()
        await self.db.refresh(transaction)
        return transaction

    async def get_by_gateway_transaction_id(self, gateway_transaction_id: str) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(Transaction.gateway_transaction_id == gateway_transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_merchant_reference(self, reference: str) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(Transaction.merchant_reference == reference)
        )
        return result.scalar_one_or_none()

    async def list_pending_for_subscription(self, subscription_id: str) -> List[Transaction]:
        """PENDING transactions on any of the subscription's invoices, oldest first."""
        result = await self.db.execute(
            select(Transaction)
            .join(Invoice, Invoice.id == Transaction.invoice_id)
            .where(Invoice.subscription_id == subscription_id)
            .where(Transaction.status == TransactionStatus.PENDING.value)
            .order_by(Transaction.created_at)
        )
        return list(result.scalars().all())

    async def list_user_transactions(self, user_id: str) -> List[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def mark_succeeded(
        self,
        transaction: Transaction,
        gateway_transaction_id: Optional[str],
        response_payload: Optional[str],
    ) -> Transaction:
        transaction.status = TransactionStatus.SUCCESS.value
        transaction.gateway_transaction_id = gateway_transaction_id
        transaction.response_payload = response_payload
        await self.db.flush()
        return transaction
