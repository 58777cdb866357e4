"""
Payment webhook endpoint.

Stripe redelivers events, so credits are granted with the checkout session
id as the ledger reference and a repeat delivery is a no-op.
"""

import logging
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db, TransactionType
from app.services.auth_service import get_or_create_user
from app.services.credit_service import CreditLedger, get_credit_ledger
from app.services import stripe_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    payload = await request.body()
    event = stripe_service.verify_webhook(payload, request.headers.get("stripe-signature", ""))
    if event is None:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_type = event.get("type")
    if event_type != "checkout.session.completed":
        logger.debug(f"Ignoring Stripe event {event_type}")
        return {"received": True}

    session = event.get("data", {}).get("object", {})
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id")
    try:
        credits = Decimal(str(metadata.get("credits")))
    except (InvalidOperation, ValueError):
        credits = Decimal("0")

    if not user_id or credits <= 0:
        logger.error(f"Checkout session {session.get('id')} is missing user_id/credits metadata")
        raise HTTPException(status_code=400, detail="Missing checkout metadata")

    await get_or_create_user(db, user_id, session.get("customer_email"))
    await ledger.earn(
        user_id,
        credits,
        type=TransactionType.PURCHASE,
        description=f"Purchased {int(credits):,} credits",
        metadata={"package_id": metadata.get("package_id"), "amount_total": session.get("amount_total")},
        reference=session.get("id"),
    )
    logger.info(f"Granted {credits} credits to user {user_id} for checkout {session.get('id')}")
    return {"received": True}
