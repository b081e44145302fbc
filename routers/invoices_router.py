"""
Invoice & transaction history for the signed-in user
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from database_models import User
from services.ledger_service import LedgerService

router = APIRouter(prefix="/api", tags=["billing"])


@router.get("/invoices")
async def list_invoices(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Newest first."""
    return {"invoices": await LedgerService(db).list_invoices(current_user.id)}


@router.get("/transactions")
async def list_transactions(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return {"transactions": await LedgerService(db).list_transactions(current_user.id)}
