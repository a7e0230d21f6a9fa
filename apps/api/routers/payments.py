"""Payments router: card checkout, M-Pesa charges and synchronous verification."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.deps import get_payment_provider, get_reconciler
from routers.rate_limit import rate_limit
from services.errors import ValidationError, require_client_id
from services.orders import CHANNEL_CARD, CHANNEL_MOBILE_MONEY, create_order
from services.paystack import PaystackClient
from services.phone import normalize_kenyan_phone
from services.reconciler import ReconcileState, Reconciler

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    client_id: Optional[str] = None
    email: Optional[str] = None
    amount: Any = None
    credits: Any = None


class MobileChargeRequest(BaseModel):
    client_id: Optional[str] = None
    phone: Optional[str] = None
    amount: Any = None
    credits: Any = None
    email: Optional[str] = None


class VerifyRequest(BaseModel):
    reference: Optional[str] = None


def _callback_url() -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/paystack-return"


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("payments_checkout", limit=30, window_seconds=3600)),
    provider: PaystackClient = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Record a pending order, then initialize a hosted card checkout."""
    client_id = require_client_id(request.client_id)
    email = (request.email or "").strip()
    if not email:
        raise ValidationError("invalid_payload", "client_id and email required")
    amount = request.amount if request.amount not in (None, "") else settings.DEFAULT_CHECKOUT_AMOUNT_MINOR

    order = await create_order(
        db,
        client_id=client_id,
        requested_credits=request.credits,
        amount_minor_units=amount,
        channel=CHANNEL_CARD,
    )
    data = await provider.initialize_transaction(
        email=email,
        amount_minor_units=order.amount_minor_units,
        reference=order.provider_reference,
        callback_url=_callback_url(),
        metadata={"client_id": client_id, "credits": order.requested_credits},
    )
    return {
        "authorization_url": data.get("authorization_url"),
        "reference": data.get("reference") or order.provider_reference,
    }


@router.post("/mobile-charge")
async def start_mobile_charge(
    request: MobileChargeRequest,
    _rate_limit: None = Depends(rate_limit("payments_mobile_charge", limit=30, window_seconds=3600)),
    provider: PaystackClient = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    """Record a pending order, then push an M-Pesa STK prompt to the phone."""
    client_id = require_client_id(request.client_id)
    if not request.phone:
        raise ValidationError("missing_phone", "phone is required")
    if request.amount in (None, ""):
        raise ValidationError("missing_amount", "amount is required")
    phone = normalize_kenyan_phone(request.phone)
    if not phone:
        raise ValidationError(
            "invalid_phone_format",
            "Provide Kenyan phone as 07XXXXXXXX or 2547XXXXXXXX or +2547XXXXXXXX",
        )

    order = await create_order(
        db,
        client_id=client_id,
        requested_credits=request.credits,
        amount_minor_units=request.amount,
        channel=CHANNEL_MOBILE_MONEY,
        currency=settings.MOBILE_MONEY_CURRENCY,
    )
    body = await provider.charge_mobile_money(
        email=request.email or f"no-email-{client_id}@credits.invalid",
        amount_minor_units=order.amount_minor_units,
        reference=order.provider_reference,
        phone=phone,
    )
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return {
        "reference": order.provider_reference,
        "status": data.get("status"),
        "display_text": data.get("display_text") or body.get("message"),
        "provider_response": body,
    }


@router.post("/verify")
async def verify_payment(
    request: VerifyRequest,
    reconciler: Reconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
):
    """Re-verify a payment with the provider and credit it if the webhook has not."""
    reference = (request.reference or "").strip()
    if not reference:
        raise ValidationError("missing_reference", "reference is required")

    result = await reconciler.settle_reference(db, reference)
    if result.state == ReconcileState.ALREADY_PROCESSED:
        return {"ok": True, "note": "already_processed"}
    if result.state == ReconcileState.NEEDS_REVIEW:
        return {"ok": False, "note": "uncreditable"}
    if result.state == ReconcileState.CREDITED:
        return {
            "ok": True,
            "credited": {"new_balance": result.ledger.new_balance, "credits_added": result.credits_added},
        }
    return {
        "ok": False,
        "note": "not_successful",
        "verify": result.verification.raw if result.verification else None,
    }
