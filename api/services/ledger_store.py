"""
Client-side credit ledger

Single-owner state container mirroring the account balance held by the
credit endpoints. Deductions are applied optimistically and reverted when the
server rejects them.

Known limitation: only one rollback snapshot is kept. If a second deduction
starts while the first is still pending, the snapshot of the first is kept
and a failure of either restores the balance from before the first one.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import CreditOperationError, InsufficientCredits
from services.credit_service import CreditMutation

logger = logging.getLogger(__name__)

BALANCE_PATH = "/api/credits/balance"
DEDUCT_PATH = "/api/credits/deduct"


@dataclass
class LedgerState:
    credits: Optional[int] = None
    is_loading: bool = False
    error: Optional[str] = None
    last_updated: Optional[datetime] = None


Listener = Callable[[LedgerState], None]


class LedgerStore:
    def __init__(
        self,
        client: httpx.AsyncClient,
        cache_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.ledger_cache_ttl
        self.clock = clock
        self._state = LedgerState()
        self._fetched_at: Optional[float] = None
        self._snapshot: Optional[int] = None
        self._inflight: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    @property
    def state(self) -> LedgerState:
        return replace(self._state)

    @property
    def credits(self) -> Optional[int]:
        return self._state.credits

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns the function that removes it"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Actions

    async def fetch(self, force: bool = False) -> int:
        """
        Balance from the server, or from the cache while it is fresh.
        Concurrent callers share one request.
        """
        if not force and self._is_fresh():
            return self._state.credits

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch_balance())
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    async def refresh(self) -> int:
        return await self.fetch(force=True)

    async def deduct_local(
        self,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditMutation:
        """
        Optimistically subtract `amount`, then confirm with the server. The
        cached balance becomes the server's balance on success and goes back
        to the snapshot on any failure.
        """
        current = self._state.credits
        if current is None or current < amount:
            raise InsufficientCredits(required=amount, available=current or 0)

        if self._snapshot is None:
            self._snapshot = current
        self._set(credits=current - amount, error=None)

        payload: Dict[str, Any] = {"amount": amount, "description": description}
        if reference_id:
            payload["reference_id"] = reference_id
        if metadata:
            payload["metadata"] = metadata

        try:
            response = await self.client.post(DEDUCT_PATH, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Deduct request failed: {e}")
            self.rollback()
            self._set(error="Failed to deduct credits")
            raise CreditOperationError("deduct") from e

        data = _json_body(response)
        if response.status_code == 400 and data.get("required") is not None:
            self.rollback()
            error = InsufficientCredits(required=data["required"], available=data.get("credits"))
            self._set(error=error.message)
            raise error
        if response.status_code >= 400 or not data.get("success"):
            self.rollback()
            message = data.get("error") or "Failed to deduct credits"
            self._set(error=message)
            raise CreditOperationError("deduct", message)

        self._snapshot = None
        self._fetched_at = self.clock()
        self._set(credits=data["credits"], error=None, last_updated=datetime.utcnow())
        return CreditMutation(credits=data["credits"], transaction_id=data.get("transaction_id"))

    async def deduct(
        self,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditMutation:
        return await self.deduct_local(amount, description, reference_id, metadata)

    def rollback(self):
        """Restore the balance from before the pending optimistic deduction"""
        if self._snapshot is None:
            return
        credits = self._snapshot
        self._snapshot = None
        self._set(credits=credits)

    def has_enough_credits(self, amount: int) -> bool:
        return self._state.credits is not None and self._state.credits >= amount

    def can_apply_suggestion(self) -> bool:
        return self.has_enough_credits(settings.credit_cost_apply_suggestion)

    def can_analyze_image(self) -> bool:
        return self.has_enough_credits(settings.credit_cost_image_analysis)

    def reset(self):
        self._snapshot = None
        self._fetched_at = None
        self._set(credits=None, is_loading=False, error=None, last_updated=None)

    # Internals

    def _is_fresh(self) -> bool:
        return (
            self._state.credits is not None
            and self._fetched_at is not None
            and self.clock() - self._fetched_at < self.cache_ttl
        )

    async def _fetch_balance(self) -> int:
        self._set(is_loading=True, error=None)
        try:
            response = await self.client.get(BALANCE_PATH)
        except httpx.HTTPError as e:
            logger.warning(f"Balance request failed: {e}")
            self._set(is_loading=False, error="Failed to fetch credits")
            raise CreditOperationError("fetch") from e

        data = _json_body(response)
        if response.status_code >= 400 or not data.get("success"):
            message = data.get("error") or "Failed to fetch credits"
            self._set(is_loading=False, error=message)
            raise CreditOperationError("fetch", message)

        self._fetched_at = self.clock()
        self._set(credits=data["credits"], is_loading=False, error=None, last_updated=datetime.utcnow())
        return data["credits"]

    def _clear_inflight(self, task: asyncio.Task):
        if self._inflight is task:
            self._inflight = None

    def _set(self, **changes):
        self._state = replace(self._state, **changes)
        snapshot = self.state
        for listener in list(self._listeners):
            listener(snapshot)


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
