"""
Credits API routes: balance, deduction and transaction history
"""
import logging

from fastapi import APIRouter, Depends, Query
from schemas.credits import BalanceResponse, DeductRequest, DeductResponse, TransactionItem, TransactionListResponse
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import AuthenticatedUser, get_current_user
from core.database import get_db
from services.credit_service import credit_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Current credit balance. The first request for a new user creates the
    account with the welcome bonus.
    """
    credits = await credit_service.get_balance(db, current_user.id, current_user.email, current_user.full_name)
    return BalanceResponse(credits=credits)


@router.post("/deduct", response_model=DeductResponse)
async def deduct_credits(
    request: DeductRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Deduct credits atomically. Replaying a reference_id returns the original
    transaction without charging again.
    """
    mutation = await credit_service.deduct(
        db,
        current_user.id,
        request.amount,
        request.description,
        reference_id=request.reference_id,
        metadata=request.metadata,
    )
    return DeductResponse(credits=mutation.credits, transaction_id=mutation.transaction_id, duplicate=mutation.duplicate)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Transaction history, newest first"""
    transactions, total = await credit_service.list_transactions(db, current_user.id, limit=limit, offset=offset)
    return TransactionListResponse(
        transactions=[
            TransactionItem(
                id=t.id,
                type=t.type,
                amount=t.amount,
                balance_after=t.balance_after,
                description=t.description,
                reference_id=t.reference_id,
                metadata=t.transaction_metadata,
                created_at=t.created_at,
            )
            for t in transactions
        ],
        total_count=total,
        has_more=offset + len(transactions) < total,
    )
