"""
Tests for the credit ledger service.

Runs against a real SQLite database so the conditional UPDATE, the unique
reference constraint and commit/rollback behave as they do in production.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import balance_of, transactions_of
from sqlalchemy.exc import OperationalError

from core.exceptions import CreditStoreUnavailable, InsufficientCredits, InvalidAmount, MissingDescription, ReferenceConflict
from database.models import TransactionType
from services.credit_service import AccountLedger, CreditService


@pytest.fixture
def service():
    return CreditService(max_retries=3, retry_delay=0.0)


class TestGetBalance:
    @pytest.mark.asyncio
    async def test_new_user_receives_welcome_bonus(self, service, db_session, session_factory):
        credits = await service.get_balance(db_session, "user-new", email="new@example.com")

        assert credits == 10
        transactions = await transactions_of(session_factory, "user-new")
        assert len(transactions) == 1
        bonus = transactions[0]
        assert bonus.type == TransactionType.BONUS.value
        assert bonus.amount == 10
        assert bonus.balance_after == 10

    @pytest.mark.asyncio
    async def test_bonus_is_granted_once(self, service, db_session, session_factory):
        await service.get_balance(db_session, "user-once")
        credits = await service.get_balance(db_session, "user-once")

        assert credits == 10
        assert len(await transactions_of(session_factory, "user-once")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_access_creates_one_profile(self, service, session_factory):
        async def first_access():
            async with session_factory() as session:
                return await service.get_balance(session, "user-race")

        results = await asyncio.gather(*(first_access() for _ in range(5)))

        assert results == [10] * 5
        assert len(await transactions_of(session_factory, "user-race", TransactionType.BONUS.value)) == 1


class TestDeduct:
    @pytest.mark.asyncio
    async def test_deduct_reduces_balance_and_records_transaction(self, service, db_session, session_factory):
        mutation = await service.deduct(db_session, "user-1", 3, "apply suggestion")

        assert mutation.credits == 7
        assert mutation.duplicate is False
        deductions = await transactions_of(session_factory, "user-1", TransactionType.DEDUCTION.value)
        assert len(deductions) == 1
        assert deductions[0].id == mutation.transaction_id
        assert deductions[0].amount == -3
        assert deductions[0].balance_after == 7

    @pytest.mark.asyncio
    async def test_balance_after_deduct_matches(self, service, db_session):
        before = await service.get_balance(db_session, "user-rt")
        await service.deduct(db_session, "user-rt", 4, "apply suggestion")

        assert await service.get_balance(db_session, "user-rt") == before - 4

    @pytest.mark.asyncio
    async def test_deduct_to_zero_then_insufficient(self, service, db_session, session_factory):
        await service.get_balance(db_session, "user-b")
        await service.deduct(db_session, "user-b", 5, "setup")

        mutation = await service.deduct(db_session, "user-b", 5, "apply suggestion")
        assert mutation.credits == 0

        with pytest.raises(InsufficientCredits) as exc_info:
            await service.deduct(db_session, "user-b", 1, "apply suggestion")
        assert exc_info.value.required == 1
        assert exc_info.value.available == 0
        assert exc_info.value.to_dict() == {
            "success": False,
            "error": "Insufficient credits",
            "credits": 0,
            "required": 1,
        }

    @pytest.mark.asyncio
    async def test_insufficient_leaves_ledger_untouched(self, service, db_session, session_factory):
        await service.get_balance(db_session, "user-poor")
        before = await transactions_of(session_factory, "user-poor")

        with pytest.raises(InsufficientCredits) as exc_info:
            await service.deduct(db_session, "user-poor", 11, "too much", reference_id="ref-too-much")

        assert exc_info.value.available == 10
        assert await balance_of(session_factory, "user-poor") == 10
        assert len(await transactions_of(session_factory, "user-poor")) == len(before)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 2.5, "5", True, None])
    async def test_invalid_amount(self, service, db_session, session_factory, amount):
        with pytest.raises(InvalidAmount) as exc_info:
            await service.deduct(db_session, "user-invalid", amount, "apply suggestion")
        assert exc_info.value.message == "Invalid credit amount"
        assert await balance_of(session_factory, "user-invalid") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("description", ["", "   "])
    async def test_description_required(self, service, db_session, description):
        with pytest.raises(MissingDescription):
            await service.deduct(db_session, "user-desc", 1, description)

    @pytest.mark.asyncio
    async def test_replayed_reference_is_not_charged_twice(self, service, db_session, session_factory):
        first = await service.deduct(db_session, "user-ref", 5, "apply suggestion", reference_id="apply-s1-1")
        second = await service.deduct(db_session, "user-ref", 5, "apply suggestion", reference_id="apply-s1-1")

        assert second.duplicate is True
        assert second.transaction_id == first.transaction_id
        assert second.credits == 5
        assert len(await transactions_of(session_factory, "user-ref", TransactionType.DEDUCTION.value)) == 1

    @pytest.mark.asyncio
    async def test_reference_of_another_user_is_rejected(self, service, db_session, session_factory):
        await service.deduct(db_session, "user-owner", 1, "apply suggestion", reference_id="shared-ref")

        with pytest.raises(ReferenceConflict):
            await service.deduct(db_session, "user-other", 1, "apply suggestion", reference_id="shared-ref")
        assert await balance_of(session_factory, "user-other") == 10

    @pytest.mark.asyncio
    async def test_metadata_is_stored(self, service, db_session, session_factory):
        await service.deduct(db_session, "user-meta", 2, "apply suggestion", metadata={"suggestion_id": "s-1"})

        deduction = (await transactions_of(session_factory, "user-meta", TransactionType.DEDUCTION.value))[0]
        assert deduction.transaction_metadata == {"suggestion_id": "s-1"}


class TestAdd:
    @pytest.mark.asyncio
    async def test_purchase_is_idempotent(self, service, db_session, session_factory):
        first = await service.add(db_session, "user-buy", 50, "Starter Pack", reference_id="cs_test_1")
        second = await service.add(db_session, "user-buy", 50, "Starter Pack", reference_id="cs_test_1")

        assert first.credits == 60
        assert first.duplicate is False
        assert second.duplicate is True
        assert second.transaction_id == first.transaction_id
        assert await balance_of(session_factory, "user-buy") == 60
        assert len(await transactions_of(session_factory, "user-buy", TransactionType.PURCHASE.value)) == 1

    @pytest.mark.asyncio
    async def test_same_reference_different_kind_is_separate(self, service, db_session, session_factory):
        await service.add(db_session, "user-kind", 5, "purchase", reference_id="ref-1")
        await service.add(db_session, "user-kind", 5, "refund", reference_id="ref-1", kind=TransactionType.REFUND)

        assert await balance_of(session_factory, "user-kind") == 20

    @pytest.mark.asyncio
    async def test_add_rejects_non_positive(self, service, db_session):
        with pytest.raises(InvalidAmount):
            await service.add(db_session, "user-zero", 0, "nothing", reference_id="ref-zero")

    @pytest.mark.asyncio
    async def test_add_rejects_deduction_kind(self, service, db_session):
        with pytest.raises(ValueError):
            await service.add(db_session, "user-kind2", 5, "wrong", reference_id="r", kind=TransactionType.DEDUCTION)

    @pytest.mark.asyncio
    async def test_balance_after_tracks_each_entry(self, service, db_session, session_factory):
        await service.add(db_session, "user-seq", 50, "purchase", reference_id="cs_a")
        await service.deduct(db_session, "user-seq", 5, "apply suggestion")
        await service.add(db_session, "user-seq", 5, "refund", reference_id="refund-1", kind=TransactionType.REFUND)

        transactions, total = await service.list_transactions(db_session, "user-seq")
        assert total == 4
        balances = sorted(t.balance_after for t in transactions)
        assert balances == [10, 55, 60, 60]


class TestSessionIsReleased:
    """A caller's session must not hold a transaction after any credit call"""

    @pytest.mark.asyncio
    async def test_after_plain_read(self, service, db_session):
        await service.get_balance(db_session, "user-idle")
        await service.get_balance(db_session, "user-idle")

        assert not db_session.in_transaction()

    @pytest.mark.asyncio
    async def test_after_duplicate_add(self, service, db_session, session_factory):
        await service.add(db_session, "user-idle-add", 50, "Starter Pack", reference_id="cs_idle")
        await service.add(db_session, "user-idle-add", 50, "Starter Pack", reference_id="cs_idle")

        assert not db_session.in_transaction()
        # Another session can take the write lock straight away
        assert await balance_of(session_factory, "user-idle-add") == 60

    @pytest.mark.asyncio
    async def test_after_reference_conflict(self, service, db_session):
        await service.deduct(db_session, "user-idle-a", 1, "apply suggestion", reference_id="idle-ref")

        with pytest.raises(ReferenceConflict):
            await service.deduct(db_session, "user-idle-b", 1, "apply suggestion", reference_id="idle-ref")

        assert not db_session.in_transaction()

    @pytest.mark.asyncio
    async def test_after_insufficient_credits(self, service, db_session):
        with pytest.raises(InsufficientCredits):
            await service.deduct(db_session, "user-idle-poor", 11, "too much")

        assert not db_session.in_transaction()

    @pytest.mark.asyncio
    async def test_after_history_read(self, service, db_session):
        await service.get_balance(db_session, "user-idle-hist")

        await service.list_transactions(db_session, "user-idle-hist")

        assert not db_session.in_transaction()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_deductions_never_overdraw(self, service, db_session, session_factory):
        await service.add(db_session, "user-conc", 5, "top up", reference_id="cs_conc")
        await service.deduct(db_session, "user-conc", 10, "drain to 5")
        assert await balance_of(session_factory, "user-conc") == 5

        async def deduct_one(i):
            async with session_factory() as session:
                try:
                    await service.deduct(session, "user-conc", 1, f"concurrent {i}")
                    return "ok"
                except InsufficientCredits:
                    return "insufficient"

        results = await asyncio.gather(*(deduct_one(i) for i in range(8)))

        assert results.count("ok") == 5
        assert results.count("insufficient") == 3
        assert await balance_of(session_factory, "user-conc") == 0
        deductions = await transactions_of(session_factory, "user-conc", TransactionType.DEDUCTION.value)
        assert len(deductions) == 6
        assert min(t.balance_after for t in deductions) == 0


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, service):
        db = AsyncMock()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("UPDATE profiles", {}, Exception("database is locked"))
            return "done"

        assert await service._with_retries(db, "deduct", flaky) == "done"
        assert len(calls) == 3
        assert db.rollback.await_count == 2
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_domain_error_is_rolled_back_not_retried(self, service):
        db = AsyncMock()
        calls = []

        async def conflict():
            calls.append(1)
            raise ReferenceConflict()

        with pytest.raises(ReferenceConflict):
            await service._with_retries(db, "deduct", conflict)
        assert len(calls) == 1
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_as_internal_error(self, service):
        db = AsyncMock()

        async def always_locked():
            raise OperationalError("UPDATE profiles", {}, Exception("deadlock detected"))

        with pytest.raises(CreditStoreUnavailable) as exc_info:
            await service._with_retries(db, "deduct", always_locked)
        assert exc_info.value.status_code == 500
        assert db.rollback.await_count == 3


class TestAccountLedger:
    @pytest.mark.asyncio
    async def test_deducts_from_bound_account(self, service, db_session, session_factory):
        ledger = AccountLedger(service, db_session, "user-ledger")

        receipt = await ledger.deduct(5, "Suggestion applied: Accent color", "apply-s-1", {"job_id": "j"})

        assert receipt.credits == 5
        assert await balance_of(session_factory, "user-ledger") == 5
