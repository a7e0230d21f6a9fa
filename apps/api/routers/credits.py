"""Client credits router: balance lookups and spends."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.rate_limit import rate_limit
from services.credits import get_credit_balance, get_credit_history, spend_credits
from services.errors import require_client_id

router = APIRouter()
logger = logging.getLogger(__name__)

limit_spends = rate_limit("credits_use", limit=600, window_seconds=60)


class CreditMutationRequest(BaseModel):
    client_id: Optional[str] = None
    amount: Any = None
    actor: Optional[str] = None
    reason: Optional[str] = None


@router.get("")
async def credits_balance(
    client_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Current balance and blocked flag for a client."""
    return await get_credit_balance(db, require_client_id(client_id))


@router.get("/history")
async def credits_history(
    client_id: Optional[str] = Query(default=None),
    limit: int = Query(default=30, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_history(db, require_client_id(client_id), limit=limit)


@router.post("/use")
async def use_credits(
    request: CreditMutationRequest,
    _rate_limit: None = Depends(limit_spends),
    db: AsyncSession = Depends(get_db),
):
    """Spend credits. No idempotency key: a retried request spends twice."""
    client_id = require_client_id(request.client_id)
    result = await spend_credits(
        db,
        client_id,
        request.amount,
        actor=request.actor,
        reason=request.reason,
    )
    return {"success": True, "new_balance": result.new_balance}
