"""
Stripe payment service

Creates checkout sessions for credit packages and reconciles verified webhook
events into exactly one credit purchase per checkout session.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.credit_packages import get_credit_package
from core.auth import AuthenticatedUser
from core.config import settings
from core.exceptions import InvalidSignature, MalformedEvent, PackageMismatch, PaymentsNotConfigured, UnknownPackage
from database.models import PaymentCustomer, TransactionType
from services.credit_service import CreditService, credit_service

logger = logging.getLogger(__name__)

APP_TAG = "roomvibe"

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


@dataclass
class ReconciliationResult:
    event_type: str
    handled: bool = False
    duplicate: bool = False
    user_id: Optional[str] = None
    credits_added: int = 0
    balance: Optional[int] = None


@dataclass
class CheckoutSession:
    session_id: str
    checkout_url: Optional[str]


class PaymentService:
    """Stripe checkout and webhook reconciliation"""

    def __init__(self, credits: Optional[CreditService] = None):
        self.credits = credits or credit_service

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe signature over the raw body and parse the event.

        Fails closed: nothing downstream runs unless the signature checks out.
        """
        if not settings.stripe_webhook_secret:
            logger.error("Stripe webhook secret is not configured, rejecting event")
            raise InvalidSignature("Webhook secret not configured")
        if not signature:
            logger.warning("Webhook request without stripe-signature header")
            raise InvalidSignature("No signature provided")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            logger.warning(f"Webhook payload is not UTF-8: {e}")
            raise MalformedEvent("Invalid payload") from e

        try:
            # Signatures older than the tolerance window are rejected as replays
            stripe.WebhookSignature.verify_header(
                body, signature, settings.stripe_webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignature() from e

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.warning(f"Webhook payload is not valid JSON: {e}")
            raise MalformedEvent("Invalid payload") from e
        if not isinstance(event, dict) or "type" not in event:
            raise MalformedEvent("Invalid payload")
        return event

    async def handle_event(self, db: AsyncSession, event: Dict[str, Any]) -> ReconciliationResult:
        event_type = event.get("type", "")
        logger.info(f"Processing webhook event {event.get('id')} ({event_type})")

        data_object = (event.get("data") or {}).get("object") or {}

        if event_type == CHECKOUT_COMPLETED:
            return await self.reconcile_checkout_session(db, data_object)

        if event_type == PAYMENT_SUCCEEDED:
            logger.info(f"Payment succeeded: {data_object.get('id')}")
        elif event_type == PAYMENT_FAILED:
            logger.warning(f"Payment failed: {data_object.get('id')}")
        else:
            logger.info(f"Unhandled event type: {event_type}")
        return ReconciliationResult(event_type=event_type)

    async def reconcile_checkout_session(self, db: AsyncSession, session: Dict[str, Any]) -> ReconciliationResult:
        """Turn a completed checkout session into one purchase transaction"""
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        package_id = metadata.get("package_id")
        credits = _parse_credits(metadata.get("credits"))

        if not session_id or not user_id or not package_id or credits is None:
            logger.error(f"Checkout session {session_id} is missing required metadata: {metadata}")
            raise MalformedEvent()

        package = get_credit_package(package_id)
        if package is None or package.credits != credits:
            logger.error(
                f"Package verification failed for session {session_id}: package={package_id}, credits={credits}"
            )
            raise PackageMismatch()

        existing = await self.credits.find_transaction(db, session_id, TransactionType.PURCHASE)
        duplicate_owner = existing.user_id if existing is not None else None
        # Release the lookup's read transaction before the write path opens its own
        await db.commit()
        if duplicate_owner is not None:
            logger.info(f"Checkout session {session_id} already processed")
            return ReconciliationResult(
                event_type=CHECKOUT_COMPLETED, handled=True, duplicate=True, user_id=duplicate_owner
            )

        mutation = await self.credits.add(
            db,
            user_id=user_id,
            amount=credits,
            description=f"Purchased {package.name} ({credits} credits)",
            reference_id=session_id,
            kind=TransactionType.PURCHASE,
            email=(session.get("customer_details") or {}).get("email"),
            metadata={
                "stripe_session_id": session_id,
                "stripe_customer_id": session.get("customer"),
                "package_id": package_id,
                "amount_paid": session.get("amount_total"),
                "currency": session.get("currency"),
                "payment_status": session.get("payment_status"),
            },
        )
        logger.info(f"Credited {credits} credits to user {user_id} for session {session_id}")
        return ReconciliationResult(
            event_type=CHECKOUT_COMPLETED,
            handled=True,
            duplicate=mutation.duplicate,
            user_id=user_id,
            credits_added=0 if mutation.duplicate else credits,
            balance=mutation.credits,
        )

    async def get_or_create_customer(self, db: AsyncSession, user: AuthenticatedUser) -> str:
        """Stripe customer id for the user, created on first checkout"""
        result = await db.execute(select(PaymentCustomer).where(PaymentCustomer.user_id == user.id))
        mapping = result.scalar_one_or_none()
        customer_id = mapping.external_customer_id if mapping is not None else None
        # No transaction stays open across the Stripe call
        await db.commit()
        if customer_id is not None:
            return customer_id

        self._require_api_key()
        customer = await asyncio.to_thread(
            stripe.Customer.create,
            api_key=settings.stripe_secret_key,
            email=user.email or "",
            metadata={"user_id": user.id, "app": APP_TAG},
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user.id}")

        # The customer row references the profile
        await self.credits.get_balance(db, user.id, user.email, user.full_name)
        db.add(PaymentCustomer(user_id=user.id, external_customer_id=customer.id, email=user.email))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(f"Stripe customer mapping for user {user.id} already exists, reusing it")
            result = await db.execute(select(PaymentCustomer).where(PaymentCustomer.user_id == user.id))
            customer_id = result.scalar_one().external_customer_id
            await db.commit()
            return customer_id
        return customer.id

    async def create_checkout_session(
        self,
        db: AsyncSession,
        user: AuthenticatedUser,
        package_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSession:
        package = get_credit_package(package_id)
        if package is None:
            raise UnknownPackage()

        self._require_api_key()
        customer_id = await self.get_or_create_customer(db, user)

        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=settings.stripe_secret_key,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": settings.stripe_currency,
                        "product_data": {
                            "name": f"{package.name} credit package",
                            "description": f"{package.credits} credits for RoomVibe",
                            "metadata": {"package_id": package.id, "credits": str(package.credits)},
                        },
                        "unit_amount": package.unit_amount,
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=success_url
            or f"{settings.site_url}/buy-credits?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url or f"{settings.site_url}/buy-credits?canceled=true",
            metadata={
                "user_id": user.id,
                "package_id": package.id,
                "credits": str(package.credits),
                "app": APP_TAG,
            },
            allow_promotion_codes=True,
            billing_address_collection="auto",
            invoice_creation={"enabled": True},
        )
        logger.info(f"Checkout session {session.id} created for user {user.id}, package {package.id}")
        return CheckoutSession(session_id=session.id, checkout_url=session.url)

    def _require_api_key(self):
        if not settings.stripe_secret_key:
            raise PaymentsNotConfigured()


def _parse_credits(value: Any) -> Optional[int]:
    """Metadata values arrive as strings; only positive integers are valid"""
    if value is None or isinstance(value, bool):
        return None
    try:
        credits = int(str(value).strip())
    except ValueError:
        return None
    return credits if credits > 0 else None


# Global instance
payment_service = PaymentService()
