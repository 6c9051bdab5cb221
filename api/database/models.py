"""
Database models for the RoomVibe credit ledger
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship

Base = declarative_base()


class TransactionType(str, enum.Enum):
    PURCHASE = "purchase"
    DEDUCTION = "deduction"
    REFUND = "refund"
    BONUS = "bonus"


class Profile(Base):
    """Account balance, one row per authenticated user"""

    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_profiles_credits_non_negative"),)

    id = Column(String(36), primary_key=True)  # auth provider user id
    email = Column(String(255), nullable=True)
    full_name = Column(String(255), nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    transactions = relationship("CreditTransaction", back_populates="profile")

    def __repr__(self):
        return f"<Profile(id={self.id}, credits={self.credits})>"


class CreditTransaction(Base):
    """Append-only record of every balance change"""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        # NULL references are never equal, so only referenced operations are constrained
        UniqueConstraint("type", "reference_id", name="uq_credit_transactions_type_reference"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False, index=True)  # TransactionType value
    amount = Column(Integer, nullable=False)  # negative for deductions
    balance_after = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    reference_id = Column(String(255), nullable=True, index=True)
    transaction_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    profile = relationship("Profile", back_populates="transactions")

    def __repr__(self):
        return f"<CreditTransaction(id={self.id}, type={self.type}, amount={self.amount}, user_id={self.user_id})>"


class PaymentCustomer(Base):
    """Maps a user to their Stripe customer"""

    __tablename__ = "payment_customers"

    user_id = Column(String(36), ForeignKey("profiles.id"), primary_key=True)
    external_customer_id = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<PaymentCustomer(user_id={self.user_id}, external_customer_id={self.external_customer_id})>"
