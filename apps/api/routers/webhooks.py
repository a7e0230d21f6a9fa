"""Payment provider webhook router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.deps import get_reconciler
from services.reconciler import Reconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/payment")
async def payment_webhook(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
    x_paystack_signature: Optional[str] = Header(default=None, alias="x-paystack-signature"),
):
    """Provider-signed callback. The raw body is what gets verified."""
    raw_body = await request.body()
    outcome = await reconciler.handle_webhook(db, raw_body, x_paystack_signature)
    logger.info("Webhook handled: state=%s status=%s", outcome.state.value, outcome.http_status)
    return JSONResponse(status_code=outcome.http_status, content=outcome.body)
