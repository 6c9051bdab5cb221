"""
Credit ledger service

Single writer of profile balances and the credit transaction log. Every
mutation is one database transaction: a conditional UPDATE ... RETURNING on
the profile row (which takes the row lock) plus the transaction insert, both
committed together or not at all.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import CreditStoreUnavailable, InsufficientCredits, InvalidAmount, MissingDescription, ReferenceConflict
from database.models import CreditTransaction, Profile, TransactionType

logger = logging.getLogger(__name__)

T = TypeVar("T")

ADD_KINDS = (TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND)


@dataclass
class CreditMutation:
    """Outcome of a deduct/add call"""

    credits: int  # authoritative balance after the call
    transaction_id: str
    duplicate: bool = False  # True when the reference id had already been processed


def _validate_amount(amount: Any) -> int:
    # bool is an int subclass; True is not a credit amount
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount()
    return amount


class CreditService:
    """Atomic balance reads and mutations against the profiles table"""

    def __init__(self, max_retries: Optional[int] = None, retry_delay: Optional[float] = None):
        self.max_retries = max_retries if max_retries is not None else settings.credit_write_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.credit_write_retry_delay

    async def get_balance(
        self,
        db: AsyncSession,
        user_id: str,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> int:
        """
        Current balance for a user. The first call for a user creates the
        profile with the welcome bonus and records the bonus transaction.
        """
        return await self._with_retries(db, "balance", lambda: self._ensure_profile(db, user_id, email, full_name))

    async def deduct(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditMutation:
        """
        Atomically take `amount` credits from the account.

        Raises InsufficientCredits (balance untouched) when the account holds
        less than `amount`. A reference id that was already used for a
        deduction by this user returns the recorded transaction instead of
        charging again.
        """
        amount = _validate_amount(amount)
        if not description or not description.strip():
            raise MissingDescription()

        async def attempt() -> CreditMutation:
            await self._ensure_profile(db, user_id)

            existing = await self._find_duplicate(db, user_id, TransactionType.DEDUCTION, reference_id)
            if existing is not None:
                return existing

            new_balance = await self._apply_delta(db, user_id, -amount, minimum=amount)
            if new_balance is None:
                available = await self._read_balance(db, user_id)
                await db.rollback()
                logger.info(f"Insufficient credits for user {user_id}: required={amount}, available={available}")
                raise InsufficientCredits(required=amount, available=available or 0)

            return await self._record(
                db,
                user_id=user_id,
                kind=TransactionType.DEDUCTION,
                amount=-amount,
                balance_after=new_balance,
                description=description,
                reference_id=reference_id,
                metadata=metadata,
            )

        mutation = await self._with_retries(db, "deduct", attempt)
        if not mutation.duplicate:
            logger.info(f"Deducted {amount} credits from user {user_id}, balance={mutation.credits}")
        return mutation

    async def add(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        kind: TransactionType = TransactionType.PURCHASE,
        email: Optional[str] = None,
    ) -> CreditMutation:
        """
        Atomically credit the account. Idempotent on (kind, reference_id):
        a second call with a recorded reference succeeds without crediting.
        """
        amount = _validate_amount(amount)
        kind = TransactionType(kind)
        if kind not in ADD_KINDS:
            raise ValueError(f"Cannot add credits as {kind.value}")
        if not description or not description.strip():
            raise MissingDescription()

        async def attempt() -> CreditMutation:
            await self._ensure_profile(db, user_id, email)

            existing = await self._find_duplicate(db, user_id, kind, reference_id)
            if existing is not None:
                return existing

            new_balance = await self._apply_delta(db, user_id, amount)
            return await self._record(
                db,
                user_id=user_id,
                kind=kind,
                amount=amount,
                balance_after=new_balance,
                description=description,
                reference_id=reference_id,
                metadata=metadata,
            )

        mutation = await self._with_retries(db, "add", attempt)
        if mutation.duplicate:
            logger.info(f"{kind.value} {reference_id} already processed for user {user_id}")
        else:
            logger.info(f"Added {amount} credits ({kind.value}) to user {user_id}, balance={mutation.credits}")
        return mutation

    async def find_transaction(
        self, db: AsyncSession, reference_id: str, kind: TransactionType
    ) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction).where(
                CreditTransaction.reference_id == reference_id,
                CreditTransaction.type == TransactionType(kind).value,
            )
        )
        return result.scalar_one_or_none()

    async def list_transactions(
        self, db: AsyncSession, user_id: str, limit: int = 20, offset: int = 0
    ) -> Tuple[List[CreditTransaction], int]:
        """Newest first, with the total count for pagination"""

        async def query() -> Tuple[List[CreditTransaction], int]:
            total = await db.scalar(
                select(func.count()).select_from(CreditTransaction).where(CreditTransaction.user_id == user_id)
            )
            result = await db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total or 0

        return await self._with_retries(db, "history", query)

    # Internals

    async def _ensure_profile(
        self, db: AsyncSession, user_id: str, email: Optional[str] = None, full_name: Optional[str] = None
    ) -> int:
        credits = await self._read_balance(db, user_id)
        if credits is not None:
            return credits

        bonus = settings.welcome_bonus_credits
        db.add(Profile(id=user_id, email=email, full_name=full_name, credits=bonus))
        db.add(
            CreditTransaction(
                user_id=user_id,
                type=TransactionType.BONUS.value,
                amount=bonus,
                balance_after=bonus,
                description="Welcome bonus",
                reference_id=f"welcome-{user_id}",
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            # Another request created the profile first
            await db.rollback()
            credits = await self._read_balance(db, user_id)
            if credits is None:
                raise
            return credits

        logger.info(f"Created profile for user {user_id} with {bonus} welcome credits")
        return bonus

    async def _read_balance(self, db: AsyncSession, user_id: str) -> Optional[int]:
        result = await db.execute(select(Profile.credits).where(Profile.id == user_id))
        return result.scalar_one_or_none()

    async def _apply_delta(self, db: AsyncSession, user_id: str, delta: int, minimum: int = 0) -> Optional[int]:
        """
        Single conditional UPDATE; returns the new balance, or None when the
        account holds less than `minimum`.
        """
        stmt = (
            update(Profile)
            .where(Profile.id == user_id)
            .values(credits=Profile.credits + delta, updated_at=datetime.utcnow())
            .returning(Profile.credits)
            .execution_options(synchronize_session=False)
        )
        if minimum:
            stmt = stmt.where(Profile.credits >= minimum)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _record(
        self,
        db: AsyncSession,
        user_id: str,
        kind: TransactionType,
        amount: int,
        balance_after: int,
        description: str,
        reference_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> CreditMutation:
        transaction = CreditTransaction(
            user_id=user_id,
            type=kind.value,
            amount=amount,
            balance_after=balance_after,
            description=description.strip(),
            reference_id=reference_id,
            transaction_metadata=metadata,
        )
        db.add(transaction)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent call recorded the same reference first; our balance change is rolled back
            await db.rollback()
            existing = await self._find_duplicate(db, user_id, kind, reference_id)
            if existing is None:
                raise
            return existing

        return CreditMutation(credits=balance_after, transaction_id=transaction.id)

    async def _find_duplicate(
        self, db: AsyncSession, user_id: str, kind: TransactionType, reference_id: Optional[str]
    ) -> Optional[CreditMutation]:
        if not reference_id:
            return None

        existing = await self.find_transaction(db, reference_id, kind)
        if existing is None:
            return None
        if existing.user_id != user_id:
            logger.warning(f"Reference {reference_id} ({kind.value}) belongs to another user, rejecting for {user_id}")
            raise ReferenceConflict()

        credits = await self._read_balance(db, user_id)
        return CreditMutation(credits=credits, transaction_id=existing.id, duplicate=True)

    async def _with_retries(self, db: AsyncSession, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """
        Retry the atomic operation on transient store errors (lock timeouts,
        deadlocks, busy database) with exponential backoff.

        Every attempt leaves the session outside a transaction: reads and
        duplicate lookups are committed, any other error is rolled back.
        """
        delay = self.retry_delay
        for attempt in range(1, self.max_retries + 1):
            try:
                result = await func()
                await db.commit()
                return result
            except OperationalError as e:
                await db.rollback()
                if attempt >= self.max_retries:
                    logger.error(f"Credit {operation} failed after {attempt} attempts: {e}")
                    raise CreditStoreUnavailable() from e
                logger.warning(
                    f"Transient store error during credit {operation} "
                    f"(attempt {attempt}/{self.max_retries}): {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= 2
            except Exception:
                await db.rollback()
                raise
        raise CreditStoreUnavailable()


class AccountLedger:
    """Binds the credit service to one account for callers that only deduct"""

    def __init__(self, service: CreditService, db: AsyncSession, user_id: str):
        self.service = service
        self.db = db
        self.user_id = user_id

    async def deduct(
        self,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditMutation:
        return await self.service.deduct(self.db, self.user_id, amount, description, reference_id, metadata)


# Global instance
credit_service = CreditService()
