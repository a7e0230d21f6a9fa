"""Admin router: header-secret authenticated grants and ledger maintenance."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker, get_db
from routers.credits import CreditMutationRequest
from routers.deps import get_reconciler, require_admin_key
from services.credits import SOURCE_ADMIN, check_ledger_integrity, grant_credits
from services.errors import require_client_id
from services.reconciler import Reconciler
from services.retry_queue import run_reconciliation_tick

router = APIRouter(dependencies=[Depends(require_admin_key)])
logger = logging.getLogger(__name__)


def get_session_maker():
    return async_session_maker


@router.post("/credits/add")
async def add_credits(
    request: CreditMutationRequest,
    db: AsyncSession = Depends(get_db),
):
    """Manual top-up sharing the ledger's grant contract."""
    client_id = require_client_id(request.client_id)
    result = await grant_credits(
        db,
        client_id,
        request.amount,
        actor=request.actor or "admin",
        reason=request.reason or "manual_topup",
        source=SOURCE_ADMIN,
    )
    return {"success": True, "new_balance": result.new_balance}


@router.get("/credits/integrity")
async def ledger_integrity(
    client_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    report = await check_ledger_integrity(db, require_client_id(client_id))
    return report.to_dict()


@router.post("/retry-queue/drain")
async def drain_retry_queue_now(
    reconciler: Reconciler = Depends(get_reconciler),
    session_maker=Depends(get_session_maker),
):
    """Run one drain + recovery pass immediately."""
    result = await run_reconciliation_tick(session_maker, reconciler)
    logger.info("Manual reconciliation tick: %s", result)
    return result
