"""
Payments API routes: credit packages, Stripe checkout and webhooks
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from schemas.payments import CheckoutRequest, CheckoutResponse, CreditPackageSchema, PackagesResponse, WebhookResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.credit_packages import CREDIT_PACKAGES, credit_costs
from core.auth import AuthenticatedUser, get_current_user
from core.database import get_db
from services.payment_service import payment_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/packages", response_model=PackagesResponse)
async def list_packages():
    """Credit packages on sale and the credit cost of each action"""
    return PackagesResponse(
        packages=[
            CreditPackageSchema(
                id=p.id,
                name=p.name,
                credits=p.credits,
                price=p.price,
                currency=p.currency,
                popular=p.popular,
                savings=p.savings,
                price_per_credit=round(p.price_per_credit, 4),
            )
            for p in CREDIT_PACKAGES
        ],
        costs=credit_costs(),
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Start a Stripe checkout session for a credit package"""
    session = await payment_service.create_checkout_session(
        db,
        current_user,
        request.package_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return CheckoutResponse(checkout_url=session.checkout_url, session_id=session.session_id)


@router.post("/webhooks", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
):
    """
    Stripe webhook receiver. The signature is verified over the raw body
    before anything else happens. Verification and validation failures
    answer 400; processing failures answer 500 so Stripe redelivers.
    """
    payload = await request.body()
    event = payment_service.construct_event(payload, stripe_signature)
    await payment_service.handle_event(db, event)
    return WebhookResponse()


@router.get("/webhooks")
async def webhook_status():
    return {"message": "Webhook endpoint is active"}
