"""Credit ledger: atomic balance mutations with an append-only audit log."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.client import Client
from models.credit_log import CreditLogEntry
from services.errors import InsufficientFunds, LedgerError, NotFoundError, StorageError, coerce_positive_int
from services.store import insert_ignore

logger = logging.getLogger(__name__)

SOURCE_WEBHOOK = "webhook"
SOURCE_ADMIN = "admin"
SOURCE_SPEND = "spend"
LEDGER_SOURCES = (SOURCE_WEBHOOK, SOURCE_ADMIN, SOURCE_SPEND)


@dataclass
class LedgerResult:
    """Outcome of one balance mutation."""

    client_id: str
    delta: int
    balance_before: int
    new_balance: int
    log_id: str

    def to_dict(self) -> Dict[str, int]:
        return {"new_balance": self.new_balance}


@dataclass
class IntegrityReport:
    client_id: str
    balance: int
    ledger_sum: int
    entries_checked: int
    problems: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "ok": self.ok,
            "balance": self.balance,
            "ledger_sum": self.ledger_sum,
            "entries_checked": self.entries_checked,
            "problems": list(self.problems),
        }


async def _current_credits(db: AsyncSession, client_id: str) -> Optional[int]:
    result = await db.execute(select(Client.credits).where(Client.client_id == client_id))
    value = result.scalar_one_or_none()
    return None if value is None else int(value)


async def apply_credit_delta(
    db: AsyncSession,
    client_id: str,
    delta: int,
    *,
    source: str,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    order_id: Optional[str] = None,
    reference: Optional[str] = None,
    processed_event_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    create_missing: bool = False,
) -> LedgerResult:
    """Apply a signed balance change and its audit row without committing.

    The balance moves through a single conditional UPDATE so concurrent writers
    serialize on the client row. Debits only match while credits >= amount.
    The caller owns the transaction.
    """
    if source not in LEDGER_SOURCES:
        raise ValueError(f"Unknown ledger source: {source}")
    if delta == 0:
        raise ValueError("delta must be non-zero")

    if create_missing and delta > 0:
        await insert_ignore(db, Client, {"client_id": client_id, "credits": 0, "blocked": False}, ["client_id"])

    stmt = (
        update(Client)
        .where(Client.client_id == client_id)
        .values(credits=Client.credits + delta)
        .returning(Client.credits)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(Client.credits >= -delta)

    result = await db.execute(stmt)
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        available = await _current_credits(db, client_id)
        if available is None:
            raise NotFoundError("customer_not_found", f"Client {client_id} not found.")
        raise InsufficientFunds(
            "insufficient_funds",
            f"Insufficient credits. Required: {-delta}, available: {available}.",
            balance=available,
        )

    new_balance = int(new_balance)
    entry = CreditLogEntry(
        client_id=client_id,
        order_id=order_id,
        delta=int(delta),
        balance_before=new_balance - int(delta),
        balance_after=new_balance,
        source=source,
        actor=actor,
        reason=reason,
        reference=reference,
        processed_event_id=processed_event_id,
        meta=meta,
    )
    db.add(entry)
    await db.flush()
    return LedgerResult(
        client_id=client_id,
        delta=int(delta),
        balance_before=entry.balance_before,
        new_balance=new_balance,
        log_id=entry.id,
    )


async def _commit_mutation(db: AsyncSession, client_id: str, delta: int, **kwargs: Any) -> LedgerResult:
    try:
        result = await apply_credit_delta(db, client_id, delta, **kwargs)
        await db.commit()
    except LedgerError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Ledger write failed for client %s", client_id)
        raise StorageError("storage_error", "Ledger write could not be committed.") from exc
    return result


async def grant_credits(
    db: AsyncSession,
    client_id: str,
    amount: Any,
    *,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    source: str = SOURCE_ADMIN,
    reference: Optional[str] = None,
) -> LedgerResult:
    """Increment a client's balance; unknown clients are created at zero first."""
    credits = coerce_positive_int(amount)
    result = await _commit_mutation(
        db,
        client_id,
        credits,
        source=source,
        actor=actor or source,
        reason=reason or "manual_topup",
        reference=reference,
        create_missing=True,
    )
    logger.info(
        "Granted %s credits to %s (source=%s balance=%s)", credits, client_id, source, result.new_balance
    )
    return result


async def spend_credits(
    db: AsyncSession,
    client_id: str,
    amount: Any,
    *,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> LedgerResult:
    """Decrement a client's balance; never lets it go negative."""
    credits = coerce_positive_int(amount)
    try:
        result = await _commit_mutation(
            db,
            client_id,
            -credits,
            source=SOURCE_SPEND,
            actor=actor or "client",
            reason=reason or "spend",
        )
    except InsufficientFunds:
        logger.info("Spend of %s rejected for %s: insufficient credits", credits, client_id)
        raise
    return result


async def get_credit_balance(db: AsyncSession, client_id: str) -> Dict[str, Any]:
    result = await db.execute(select(Client).where(Client.client_id == client_id))
    client = result.scalar_one_or_none()
    if client is None:
        raise NotFoundError("customer_not_found", f"Client {client_id} not found.")
    return {"credits": int(client.credits or 0), "blocked": bool(client.blocked)}


def _serialize_entry(entry: CreditLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "order_id": entry.order_id,
        "delta": entry.delta,
        "balance_before": entry.balance_before,
        "balance_after": entry.balance_after,
        "source": entry.source,
        "actor": entry.actor,
        "reason": entry.reason,
        "reference": entry.reference,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def _ordered_entries(db: AsyncSession, client_id: str, newest_first: bool, limit: Optional[int] = None):
    order_by = (
        (CreditLogEntry.created_at.desc(), CreditLogEntry.balance_after.desc())
        if newest_first
        else (CreditLogEntry.created_at.asc(), CreditLogEntry.balance_before.asc())
    )
    query = select(CreditLogEntry).where(CreditLogEntry.client_id == client_id).order_by(*order_by)
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


async def get_credit_history(db: AsyncSession, client_id: str, limit: int = 30) -> Dict[str, Any]:
    balance = await get_credit_balance(db, client_id)
    entries = await _ordered_entries(db, client_id, newest_first=True, limit=max(1, min(int(limit), 200)))
    return {
        "client_id": client_id,
        "credits": balance["credits"],
        "entries": [_serialize_entry(entry) for entry in entries],
    }


async def check_ledger_integrity(db: AsyncSession, client_id: str) -> IntegrityReport:
    """Replay the audit log against the stored balance."""
    credits = await _current_credits(db, client_id)
    if credits is None:
        raise NotFoundError("customer_not_found", f"Client {client_id} not found.")

    entries = await _ordered_entries(db, client_id, newest_first=False)
    report = IntegrityReport(client_id=client_id, balance=credits, ledger_sum=0, entries_checked=len(entries))
    expected_before = 0
    for entry in entries:
        if entry.balance_after - entry.balance_before != entry.delta:
            report.problems.append(f"entry {entry.id}: balance_after - balance_before != delta")
        if entry.balance_before != expected_before:
            report.problems.append(
                f"entry {entry.id}: balance_before {entry.balance_before} does not follow {expected_before}"
            )
        if entry.balance_after < 0:
            report.problems.append(f"entry {entry.id}: negative balance_after")
        report.ledger_sum += entry.delta
        expected_before = entry.balance_after

    if report.ledger_sum != credits:
        report.problems.append(f"stored balance {credits} != ledger sum {report.ledger_sum}")
    if report.problems:
        logger.error("Ledger integrity check failed for %s: %s", client_id, "; ".join(report.problems))
    return report
