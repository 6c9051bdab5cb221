"""
Database module for RoomVibe
"""
from .models import Base, CreditTransaction, PaymentCustomer, Profile, TransactionType

__all__ = [
    "Base",
    "Profile",
    "CreditTransaction",
    "PaymentCustomer",
    "TransactionType",
]
