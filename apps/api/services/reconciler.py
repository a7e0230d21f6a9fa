"""
Webhook reconciliation state machine.

A provider notification moves through:

    RECEIVED -> SIGNATURE_CHECKED -> DEDUPLICATED -> ORDER_RESOLVED -> VERIFIED -> CREDITED

with exits REJECTED (bad signature), ACKED_DUP (event id already processed),
QUEUED_RETRY (no order yet, or a failure after dedup) and ACKED_NOOP (provider
does not confirm success). NEEDS_REVIEW parks a paid order that maps to
zero credits. Once the ProcessedEvent row has committed, the
service owns completion: later failures become retry-queue entries and the
provider always gets a 2xx.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings, webhook_signing_secret
from models.order import Order
from models.payment_event import PaymentEvent
from models.processed_event import ProcessedEvent
from models.webhook_retry import RetryQueueEntry
from services import retry_queue
from services.credits import SOURCE_WEBHOOK, LedgerResult, apply_credit_delta
from services.errors import AuthError, ConflictError, LedgerError, NotFoundError, StorageError, ValidationError
from services.orders import (
    ORDER_UNCREDITABLE,
    find_by_reference,
    mark_failed,
    mark_processed,
    mark_uncreditable,
)
from services.paystack import VerificationResult

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"
SIGNATURE_HEADER = "x-paystack-signature"


class ReconcileState(str, Enum):
    REJECTED = "rejected"
    ACKED_DUP = "acked_dup"
    ACKED_IGNORED = "acked_ignored"
    UNROUTABLE = "unroutable"
    QUEUED_RETRY = "queued_retry"
    ALREADY_PROCESSED = "already_processed"
    ACKED_NOOP = "acked_noop"
    NEEDS_REVIEW = "needs_review"
    CREDITED = "credited"


class PaymentProvider(Protocol):
    async def verify_transaction(self, reference: str) -> VerificationResult: ...


@dataclass
class WebhookEvent:
    event_id: str
    event_name: str
    reference: Optional[str]
    status: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WebhookEvent":
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else {}

        event_name = str(payload.get("event") or payload.get("event_name") or "unknown")
        reference = (
            data.get("reference")
            or transaction.get("reference")
            or data.get("trxref")
            or payload.get("reference")
        )
        status = data.get("status") or transaction.get("status")

        event_id = payload.get("id") or payload.get("event_id")
        if not event_id:
            # No provider event id: derive one deterministically so redeliveries collide.
            transaction_id = data.get("id") or transaction.get("id")
            event_id = f"{event_name}:{transaction_id}" if transaction_id else f"{event_name}:{reference or 'no-ref'}"

        return cls(
            event_id=str(event_id),
            event_name=event_name,
            reference=str(reference) if reference else None,
            status=str(status) if status else None,
            payload=payload,
        )

    @classmethod
    def from_retry_entry(cls, entry: RetryQueueEntry) -> "WebhookEvent":
        payload = entry.payload if isinstance(entry.payload, dict) else {}
        event = cls.from_payload(payload)
        event.event_id = entry.event_id
        event.reference = entry.reference or event.reference
        return event

    @classmethod
    def from_processed(cls, row: ProcessedEvent) -> "WebhookEvent":
        return cls(
            event_id=row.event_id,
            event_name=row.event_name,
            reference=row.reference,
            status=row.status,
            payload=row.payload if isinstance(row.payload, dict) else {},
        )


@dataclass
class WebhookOutcome:
    state: ReconcileState
    http_status: int
    body: Dict[str, Any]


@dataclass
class SettleResult:
    state: ReconcileState
    order: Order
    credits_added: int = 0
    ledger: Optional[LedgerResult] = None
    verification: Optional[VerificationResult] = None

    @property
    def terminal(self) -> bool:
        return self.state in (
            ReconcileState.CREDITED,
            ReconcileState.ALREADY_PROCESSED,
            ReconcileState.ACKED_NOOP,
            ReconcileState.NEEDS_REVIEW,
        )


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Check the HMAC-SHA512 of the raw, unparsed body against the signature header."""
    if not secret:
        logger.error("Webhook signing secret is not configured; rejecting webhook")
        raise AuthError("invalid_signature", "Webhook signature could not be verified.")
    if not signature:
        raise AuthError("invalid_signature", "Missing webhook signature.")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise AuthError("invalid_signature", "Webhook signature mismatch.")


def credits_for(order: Order, verification: Optional[VerificationResult], minor_units_per_credit: int) -> int:
    """Order's requested credits, else the paid amount in whole credits (half-up)."""
    requested = int(order.requested_credits or 0)
    if requested > 0:
        return requested
    amount = None
    if verification is not None and verification.amount_minor_units is not None:
        amount = verification.amount_minor_units
    if amount is None:
        amount = int(order.amount_minor_units or 0)
    divisor = max(int(minor_units_per_credit), 1)
    return max((int(amount) + divisor // 2) // divisor, 0)


class Reconciler:
    """Applies provider payment notifications to the ledger exactly once."""

    def __init__(
        self,
        provider: PaymentProvider,
        signing_secret: Optional[str] = None,
        minor_units_per_credit: Optional[int] = None,
    ):
        self.provider = provider
        self.signing_secret = signing_secret if signing_secret is not None else webhook_signing_secret()
        self.minor_units_per_credit = minor_units_per_credit or settings.MINOR_UNITS_PER_CREDIT

    async def handle_webhook(self, db: AsyncSession, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Run one signed notification through the state machine."""
        verify_signature(raw_body, signature, self.signing_secret)

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ValidationError("invalid_payload", "Webhook body is not valid JSON.") from exc
        if not isinstance(payload, dict):
            raise ValidationError("invalid_payload", "Webhook body must be a JSON object.")

        event = WebhookEvent.from_payload(payload)
        if not event.reference:
            logger.warning("Webhook %s (%s) has no reference; recorded for manual inspection: %s",
                           event.event_id, event.event_name, raw_body[:2000])
            await self._record_unroutable(db, event)
            return WebhookOutcome(ReconcileState.UNROUTABLE, 200, {"ok": True, "message": "unroutable_logged"})

        try:
            await self._record_processed(db, event)
        except ConflictError:
            logger.info("Duplicate webhook event %s; skipping", event.event_id)
            return WebhookOutcome(ReconcileState.ACKED_DUP, 200, {"ok": True, "message": "duplicate"})

        if event.event_name != CHARGE_SUCCESS:
            logger.info("Ignoring webhook event %s (%s)", event.event_id, event.event_name)
            return WebhookOutcome(
                ReconcileState.ACKED_IGNORED, 200, {"ok": True, "ignored": True, "event": event.event_name}
            )

        # Dedup has committed: from here on failures are queued, never bounced to the provider.
        try:
            order = await find_by_reference(db, event.reference)
            if order is None:
                logger.warning("No order for reference %s yet; queueing event %s", event.reference, event.event_id)
                await self._queue(db, event, None)
                return WebhookOutcome(ReconcileState.QUEUED_RETRY, 202, {"ok": True, "queued": True})
            result = await self.settle_order(db, order, event=event)
        except Exception as exc:
            logger.exception("Webhook event %s failed after dedup; queueing for retry", event.event_id)
            await db.rollback()
            await self._queue(db, event, exc)
            return WebhookOutcome(ReconcileState.QUEUED_RETRY, 202, {"ok": True, "queued": True})

        return self._webhook_outcome(result)

    async def settle_reference(self, db: AsyncSession, reference: str) -> SettleResult:
        """Synchronous verification path: resolve the order and run steps 6-8."""
        order = await find_by_reference(db, reference)
        if order is None:
            raise NotFoundError("order_not_found", f"No order for reference {reference}.")
        return await self.settle_order(db, order, trigger="verify")

    async def resume_event(self, db: AsyncSession, event: WebhookEvent) -> Optional[SettleResult]:
        """Retry a queued event; None while its order still does not exist."""
        if not event.reference:
            return None
        order = await find_by_reference(db, event.reference)
        if order is None:
            return None
        return await self.settle_order(db, order, event=event, trigger="retry")

    async def settle_order(
        self,
        db: AsyncSession,
        order: Order,
        *,
        event: Optional[WebhookEvent] = None,
        trigger: str = "webhook",
    ) -> SettleResult:
        """Short-circuit, verify with the provider, then credit atomically."""
        if order.webhook_processed:
            logger.info("Order %s already processed; nothing to do", order.provider_reference)
            return SettleResult(ReconcileState.ALREADY_PROCESSED, order)
        if order.status == ORDER_UNCREDITABLE:
            logger.info("Order %s is parked for manual review; not re-verifying", order.provider_reference)
            return SettleResult(ReconcileState.NEEDS_REVIEW, order)

        verification = await self.provider.verify_transaction(order.provider_reference)
        if not verification.successful:
            if verification.definitively_failed:
                await mark_failed(db, order.id)
                await self._commit(db)
            logger.info(
                "Provider reports %s for %s; not crediting", verification.status, order.provider_reference
            )
            return SettleResult(ReconcileState.ACKED_NOOP, order, verification=verification)

        credits = credits_for(order, verification, self.minor_units_per_credit)
        if credits <= 0:
            logger.error(
                "Order %s verified successful but maps to zero credits (amount=%s); needs manual review",
                order.provider_reference,
                verification.amount_minor_units,
            )
            await mark_uncreditable(db, order.id)
            db.add(self._payment_event(order, event, verification, outcome="uncreditable"))
            await self._commit(db)
            await db.refresh(order)
            return SettleResult(ReconcileState.NEEDS_REVIEW, order, verification=verification)

        try:
            if not await mark_processed(db, order.id):
                await db.rollback()
                logger.info("Order %s was credited concurrently; skipping", order.provider_reference)
                await db.refresh(order)
                return SettleResult(ReconcileState.ALREADY_PROCESSED, order, verification=verification)

            ledger = await apply_credit_delta(
                db,
                order.client_id,
                credits,
                source=SOURCE_WEBHOOK,
                actor="paystack",
                reason="payment",
                order_id=order.id,
                reference=order.provider_reference,
                processed_event_id=event.event_id if event else None,
                meta={"trigger": trigger, "channel": order.channel, "raw": event.payload if event else None},
                create_missing=True,
            )
            outcome = "credited" if trigger != "verify" else "verify_credited"
            db.add(self._payment_event(order, event, verification, outcome=outcome))
            await db.execute(delete(RetryQueueEntry).where(RetryQueueEntry.reference == order.provider_reference))
            await db.commit()
        except LedgerError:
            await db.rollback()
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            raise StorageError("storage_error", "Credit could not be committed.") from exc

        await db.refresh(order)
        logger.info(
            "Credited %s credits to %s for order %s (trigger=%s balance=%s)",
            credits,
            order.client_id,
            order.provider_reference,
            trigger,
            ledger.new_balance,
        )
        return SettleResult(ReconcileState.CREDITED, order, credits, ledger, verification)

    @staticmethod
    def _webhook_outcome(result: SettleResult) -> WebhookOutcome:
        if result.state == ReconcileState.CREDITED:
            return WebhookOutcome(result.state, 200, {"ok": True, "credited": result.credits_added})
        if result.state == ReconcileState.ALREADY_PROCESSED:
            return WebhookOutcome(result.state, 200, {"ok": True, "message": "already_processed"})
        if result.state == ReconcileState.NEEDS_REVIEW:
            return WebhookOutcome(result.state, 200, {"ok": True, "message": "uncreditable"})
        status = result.verification.status if result.verification else None
        return WebhookOutcome(result.state, 200, {"ok": True, "message": "not_successful", "status": status})

    @staticmethod
    def _payment_event(
        order: Order,
        event: Optional[WebhookEvent],
        verification: Optional[VerificationResult],
        outcome: str,
    ) -> PaymentEvent:
        return PaymentEvent(
            event_id=event.event_id if event else None,
            order_id=order.id,
            reference=order.provider_reference,
            event_name=event.event_name if event else None,
            status=verification.status if verification else (event.status if event else None),
            outcome=outcome,
            payload=event.payload if event else None,
            verification=verification.raw if verification else None,
        )

    @staticmethod
    async def _commit(db: AsyncSession) -> None:
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise StorageError("storage_error", "Reconciliation state could not be committed.") from exc

    async def _record_processed(self, db: AsyncSession, event: WebhookEvent) -> None:
        db.add(
            ProcessedEvent(
                event_id=event.event_id,
                event_name=event.event_name,
                reference=event.reference,
                status=event.status,
                payload=event.payload,
            )
        )
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise ConflictError("duplicate", f"Event {event.event_id} already processed.") from exc
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Could not record webhook event %s", event.event_id)
            raise StorageError("storage_error", "Webhook event could not be recorded.") from exc

    async def _record_unroutable(self, db: AsyncSession, event: WebhookEvent) -> None:
        existing = await db.execute(
            select(PaymentEvent.id)
            .where(PaymentEvent.event_id == event.event_id, PaymentEvent.outcome == "unroutable")
            .limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info("Unroutable event %s already recorded; not writing again", event.event_id)
            return
        db.add(
            PaymentEvent(
                event_id=event.event_id,
                event_name=event.event_name,
                status=event.status,
                outcome="unroutable",
                payload=event.payload,
            )
        )
        await self._commit(db)

    async def _queue(self, db: AsyncSession, event: WebhookEvent, error: Optional[BaseException]) -> None:
        try:
            await retry_queue.enqueue(
                db,
                event_id=event.event_id,
                event_name=event.event_name,
                reference=event.reference,
                payload=event.payload,
                error=repr(error) if error else None,
            )
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(
                "Event %s could not be queued for retry; recovery sweep must complete reference %s",
                event.event_id,
                event.reference,
            )
