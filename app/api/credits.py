"""Credit balance, history and package checkout endpoints"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.config import settings
from app.db import User
from app.schemas import (
    BalanceResponse, TransactionResponse, CreditsResponse,
    CreditPackageResponse, CheckoutRequest, CheckoutResponse,
)
from app.api.auth import get_current_user
from app.services.credit_service import CreditLedger, get_credit_ledger
from app.services.pricing import CREDIT_PACKAGES, get_credit_package, format_credits
from app.services import stripe_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("", response_model=CreditsResponse)
async def get_credits(
    current_user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Balance plus the most recent transactions"""
    balance = await ledger.get_or_create_balance(current_user.id)
    transactions = await ledger.history(current_user.id, limit=10)
    return CreditsResponse(
        balance=BalanceResponse.model_validate(balance),
        formatted=format_credits(balance.current),
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
    )


@router.get("/history", response_model=List[TransactionResponse])
async def get_history(
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    return await ledger.history(current_user.id, limit=limit)


@router.get("/packages", response_model=List[CreditPackageResponse])
async def list_packages():
    return list(CREDIT_PACKAGES)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    current_user: User = Depends(get_current_user),
):
    package = get_credit_package(body.package_id)
    if not package:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown credit package")

    success_url = body.success_url or f"{settings.app_base_url}/credits?checkout=success"
    cancel_url = body.cancel_url or f"{settings.app_base_url}/credits?checkout=cancelled"

    try:
        session = stripe_service.create_checkout_session(
            user_id=current_user.id,
            user_email=current_user.email,
            package=package,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except ValueError as e:
        logger.error(f"Checkout unavailable: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are not configured")

    logger.info(f"Checkout session {session['id']} created for user {current_user.id} ({package.id})")
    return CheckoutResponse(checkout_url=session["url"], session_id=session["id"])
