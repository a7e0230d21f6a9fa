"""Order registry: pending purchase intents keyed by provider reference."""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.client import Client
from models.order import Order
from services.errors import StorageError, ValidationError, coerce_positive_int
from services.job_queue import enqueue_retry_drain
from services.store import insert_ignore

logger = logging.getLogger(__name__)

ORDER_PENDING = "pending"
ORDER_SUCCESS = "success"
ORDER_FAILED = "failed"
ORDER_UNCREDITABLE = "uncreditable"

CHANNEL_CARD = "card"
CHANNEL_MOBILE_MONEY = "mobile_money"


def generate_reference(prefix: str = "dc") -> str:
    """Millisecond timestamp plus 32 random bits."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _requested_credits(value: Any) -> int:
    if value is None or value == "":
        return 0
    if value == 0:
        return 0
    return coerce_positive_int(value, kind="invalid_credits")


async def create_order(
    db: AsyncSession,
    *,
    client_id: str,
    requested_credits: Any,
    amount_minor_units: Any,
    channel: str = CHANNEL_CARD,
    currency: Optional[str] = None,
) -> Order:
    """Insert a pending order and commit it before any provider call."""
    credits = _requested_credits(requested_credits)
    amount = coerce_positive_int(amount_minor_units)
    if channel not in (CHANNEL_CARD, CHANNEL_MOBILE_MONEY):
        raise ValidationError("invalid_channel", f"Unknown payment channel {channel!r}.")

    order = Order(
        client_id=client_id,
        requested_credits=credits,
        amount_minor_units=amount,
        currency=currency,
        channel=channel,
        provider_reference=generate_reference(),
        status=ORDER_PENDING,
        webhook_processed=False,
    )
    try:
        await insert_ignore(db, Client, {"client_id": client_id, "credits": 0, "blocked": False}, ["client_id"])
        db.add(order)
        await db.commit()
        await db.refresh(order)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Order insert failed for client %s", client_id)
        raise StorageError("db_insert_failed", "Order could not be recorded; payment was not started.") from exc

    logger.info(
        "Created %s order %s for %s (credits=%s amount=%s)",
        channel,
        order.provider_reference,
        client_id,
        credits,
        amount,
    )
    _schedule_retry_drain(order.provider_reference)
    return order


def _schedule_retry_drain(reference: str) -> None:
    """Ask the worker to replay any webhook that beat this order here."""
    try:
        enqueue_retry_drain(reference)
    except Exception as exc:
        logger.warning("Retry drain for %s not enqueued (periodic drain will cover it): %s", reference, exc)


async def find_by_reference(db: AsyncSession, reference: str) -> Optional[Order]:
    result = await db.execute(select(Order).where(Order.provider_reference == reference))
    return result.scalar_one_or_none()


async def mark_processed(db: AsyncSession, order_id: str) -> bool:
    """Flip webhook_processed false->true; False when another writer got there first.

    Does not commit: the caller commits it together with the credit.
    """
    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.webhook_processed.is_(False))
        .values(
            status=ORDER_SUCCESS,
            webhook_processed=True,
            processed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_failed(db: AsyncSession, order_id: str) -> None:
    await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.webhook_processed.is_(False), Order.status == ORDER_PENDING)
        .values(status=ORDER_FAILED)
        .execution_options(synchronize_session=False)
    )


async def mark_uncreditable(db: AsyncSession, order_id: str) -> None:
    """Park a paid order that maps to zero credits; it needs manual review, not retries."""
    await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.webhook_processed.is_(False), Order.status == ORDER_PENDING)
        .values(status=ORDER_UNCREDITABLE)
        .execution_options(synchronize_session=False)
    )
