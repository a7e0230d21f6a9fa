"""Dialect-aware insert helpers used where plain ORM inserts are not enough."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def _insert_for(db: AsyncSession, model: Any):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect!r}")


async def insert_ignore(
    db: AsyncSession,
    model: Any,
    values: Dict[str, Any],
    index_elements: Iterable[str],
) -> None:
    """INSERT ... ON CONFLICT DO NOTHING inside the session's transaction."""
    stmt = _insert_for(db, model).values(**values).on_conflict_do_nothing(
        index_elements=list(index_elements)
    )
    await db.execute(stmt)


async def upsert(
    db: AsyncSession,
    model: Any,
    values: Dict[str, Any],
    index_elements: Iterable[str],
    update_values: Optional[Dict[str, Any]] = None,
) -> None:
    """INSERT ... ON CONFLICT DO UPDATE inside the session's transaction."""
    stmt = _insert_for(db, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_=update_values if update_values is not None else values,
    )
    await db.execute(stmt)
