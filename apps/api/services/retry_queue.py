"""Webhook retry queue: durable storage, draining and crash recovery."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.order import Order
from models.processed_event import ProcessedEvent
from models.webhook_retry import RetryQueueEntry
from services.orders import ORDER_PENDING
from services.store import upsert

if TYPE_CHECKING:
    from services.reconciler import Reconciler

logger = logging.getLogger(__name__)


async def enqueue(
    db: AsyncSession,
    *,
    event_id: str,
    event_name: Optional[str],
    reference: Optional[str],
    payload: Dict[str, Any],
    error: Optional[str] = None,
) -> None:
    """Upsert an entry by event id, replacing payload and timestamp, and commit."""
    now = datetime.now(timezone.utc)
    values = {
        "event_id": event_id,
        "event_name": event_name,
        "reference": reference,
        "payload": payload,
        "attempts": 1,
        "last_error": error,
        "last_attempt_at": now,
    }
    await upsert(
        db,
        RetryQueueEntry,
        values,
        ["event_id"],
        update_values={
            "event_name": event_name,
            "reference": reference,
            "payload": payload,
            "attempts": RetryQueueEntry.attempts + 1,
            "last_error": error,
            "last_attempt_at": now,
        },
    )
    await db.commit()


async def _touch(db: AsyncSession, event_id: str, error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {
        "attempts": RetryQueueEntry.attempts + 1,
        "last_attempt_at": datetime.now(timezone.utc),
    }
    if error is not None:
        values["last_error"] = error[:2000]
    await db.execute(update(RetryQueueEntry).where(RetryQueueEntry.event_id == event_id).values(**values))
    await db.commit()


async def drain_retry_queue(
    session_maker: async_sessionmaker,
    reconciler: "Reconciler",
    *,
    reference: Optional[str] = None,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """Re-attempt queued events; entries leave the queue only once settled."""
    from services.reconciler import WebhookEvent

    batch = max(int(limit or settings.RETRY_DRAIN_BATCH_SIZE), 1)
    async with session_maker() as db:
        query = select(RetryQueueEntry).order_by(RetryQueueEntry.created_at.asc()).limit(batch)
        if reference:
            query = query.where(RetryQueueEntry.reference == reference)
        result = await db.execute(query)
        events = [WebhookEvent.from_retry_entry(entry) for entry in result.scalars().all()]

    stats = {"scanned": len(events), "settled": 0, "pending": 0, "failed": 0}
    for event in events:
        async with session_maker() as db:
            try:
                outcome = await reconciler.resume_event(db, event)
            except Exception as exc:
                await db.rollback()
                logger.warning("Retry of event %s failed: %s", event.event_id, exc)
                await _touch(db, event.event_id, error=repr(exc))
                stats["failed"] += 1
                continue

            if outcome is None:
                await _touch(db, event.event_id)
                stats["pending"] += 1
                continue

            await db.execute(delete(RetryQueueEntry).where(RetryQueueEntry.event_id == event.event_id))
            await db.commit()
            stats["settled"] += 1
            logger.info("Retry of event %s settled as %s", event.event_id, outcome.state.value)

    return stats


async def recover_unsettled_events(
    session_maker: async_sessionmaker,
    reconciler: "Reconciler",
    *,
    window_hours: Optional[int] = None,
    unbounded: bool = False,
) -> Dict[str, int]:
    """
    Finish charge events whose dedup row committed but whose order was never credited.

    Periodic ticks only look back `RECOVERY_WINDOW_HOURS`; `unbounded=True` (the
    startup sweep) scans every unsettled charge event regardless of age.
    """
    from services.reconciler import CHARGE_SUCCESS, WebhookEvent

    hours = int(window_hours if window_hours is not None else settings.RECOVERY_WINDOW_HOURS)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max(hours, 1))
    async with session_maker() as db:
        query = (
            select(ProcessedEvent, Order)
            .join(Order, Order.provider_reference == ProcessedEvent.reference)
            .where(
                ProcessedEvent.event_name == CHARGE_SUCCESS,
                Order.webhook_processed.is_(False),
                Order.status == ORDER_PENDING,
            )
            .order_by(ProcessedEvent.created_at.asc())
        )
        if not unbounded:
            query = query.where(ProcessedEvent.created_at >= cutoff)
        result = await db.execute(query)
        pending = []
        seen_orders = set()
        for processed, order in result.all():
            if order.id in seen_orders:
                continue
            seen_orders.add(order.id)
            pending.append((WebhookEvent.from_processed(processed), order.provider_reference))

    stats = {"scanned": len(pending), "recovered": 0, "failed": 0}
    for event, reference in pending:
        async with session_maker() as db:
            try:
                outcome = await reconciler.resume_event(db, event)
            except Exception as exc:
                await db.rollback()
                logger.warning("Recovery of %s (event %s) failed: %s", reference, event.event_id, exc)
                stats["failed"] += 1
                continue
            if outcome is not None and outcome.terminal:
                stats["recovered"] += 1
    if stats["scanned"]:
        logger.info("Recovery sweep: %s", stats)
    return stats


async def run_reconciliation_tick(session_maker: async_sessionmaker, reconciler: "Reconciler") -> Dict[str, Any]:
    """One periodic pass: drain the retry queue, then sweep unsettled events."""
    drained = await drain_retry_queue(session_maker, reconciler)
    recovered = await recover_unsettled_events(session_maker, reconciler)
    return {"drained": drained, "recovered": recovered}


async def drain_retry_queue_job_async(reference: Optional[str] = None) -> Dict[str, int]:
    from config import require_paystack_secret
    from database import async_session_maker, engine
    from services.paystack import PaystackClient
    from services.reconciler import Reconciler

    provider = PaystackClient(require_paystack_secret())
    try:
        return await drain_retry_queue(async_session_maker, Reconciler(provider), reference=reference)
    finally:
        await provider.aclose()
        await engine.dispose()


def drain_retry_queue_job(reference: Optional[str] = None) -> Dict[str, int]:
    """RQ worker entrypoint for retry-queue drains."""
    return asyncio.run(drain_retry_queue_job_async(reference))
