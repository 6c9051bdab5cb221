"""
Pydantic schemas for Credits API endpoints
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    success: bool = True
    credits: int


class DeductRequest(BaseModel):
    """Deduct credits from the current user's account"""

    amount: int = Field(..., description="Positive number of credits to deduct")
    description: str = Field("", max_length=500)
    reference_id: Optional[str] = Field(None, max_length=255, description="Idempotency key for this deduction")
    metadata: Optional[Dict[str, Any]] = None


class DeductResponse(BaseModel):
    success: bool = True
    credits: int
    transaction_id: str
    duplicate: bool = False


class TransactionItem(BaseModel):
    id: str
    type: str
    amount: int
    balance_after: int
    description: str
    reference_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class TransactionListResponse(BaseModel):
    success: bool = True
    transactions: List[TransactionItem]
    total_count: int
    has_more: bool
