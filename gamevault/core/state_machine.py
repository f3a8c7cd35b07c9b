"""Status-guarded writes against the ledger of record.

Every transition in the escrow core is a compare-and-swap on the status
column: ``UPDATE ... WHERE id = :id AND status IN (:expected)``. A guard that
matches no row means somebody else moved the entity first (or it never
existed), and the caller gets a typed error instead of a silent overwrite.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.core.exceptions import InvalidStateTransition, NotFound, StorageError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_values(expected: Any) -> list[str]:
    if isinstance(expected, str):
        return [str(expected)]
    return sorted(str(s) for s in expected)


@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit everything done inside the block, or none of it.

    Driver and pool failures surface as ``StorageError``; business errors
    propagate unchanged after the rollback.
    """
    try:
        yield db
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Ledger write failed, rolled back: %s", exc)
        raise StorageError(f"Ledger unavailable: {exc.__class__.__name__}") from exc
    except BaseException:
        await db.rollback()
        raise


async def fetch(db: AsyncSession, statement):
    """Execute a statement, surfacing driver failures as ``StorageError``.

    Reads issued outside ``atomic()`` go through here as well as the guarded
    writes, so a broken ledger always reaches the caller as one error type.
    """
    try:
        return await db.execute(statement)
    except SQLAlchemyError as exc:
        logger.warning("Ledger read failed: %s", exc)
        raise StorageError(f"Ledger unavailable: {exc.__class__.__name__}") from exc


async def load(db: AsyncSession, model, entity_id: str, *, entity: str | None = None):
    """Fetch one row fresh from the database or raise ``NotFound``."""
    result = await fetch(
        db,
        select(model)
        .where(model.id == entity_id)
        .execution_options(populate_existing=True),
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFound(entity or model.__name__, entity_id)
    return row


async def guarded_update(
    db: AsyncSession,
    model,
    entity_id: str,
    expected: Any,
    values: dict[str, Any],
    *,
    entity: str | None = None,
    extra_where: Iterable[Any] = (),
    now: datetime | None = None,
) -> None:
    """Apply ``values`` only if the row's status is one of ``expected``.

    ``extra_where`` narrows the guard further. When it is what failed, the
    raised ``InvalidStateTransition`` carries a ``current`` status that is
    itself one of ``expected``.
    """
    name = entity or model.__name__
    allowed = _status_values(expected)
    values = {k: (str(v) if k == "status" else v) for k, v in values.items()}
    values.setdefault("updated_at", now or utcnow())

    result = await fetch(
        db,
        update(model)
        .where(model.id == entity_id, model.status.in_(allowed), *extra_where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    current = (
        await fetch(db, select(model.status).where(model.id == entity_id))
    ).scalar_one_or_none()
    if current is None:
        raise NotFound(name, entity_id)
    raise InvalidStateTransition(name, entity_id, current, allowed)


APPEND_ATTEMPTS = 3


async def guarded_append(
    db: AsyncSession,
    model,
    entity_id: str,
    expected: Any,
    field: str,
    items: list,
    *,
    entity: str | None = None,
):
    """Append ``items`` to a JSON list column and commit.

    The write is guarded on ``updated_at`` as well as the status, so an
    append that raced another writer re-reads the row and tries again
    instead of overwriting the other writer's items.
    """
    name = entity or model.__name__
    allowed = _status_values(expected)
    for _ in range(APPEND_ATTEMPTS):
        row = await load(db, model, entity_id, entity=name)
        if row.status not in allowed:
            raise InvalidStateTransition(name, entity_id, row.status, allowed)
        stamp = row.updated_at
        current_items = list(getattr(row, field) or [])
        try:
            async with atomic(db):
                await guarded_update(
                    db, model, entity_id, allowed,
                    {field: current_items + list(items)},
                    entity=name,
                    extra_where=[model.updated_at == stamp],
                )
        except InvalidStateTransition as exc:
            if exc.current in allowed:
                logger.info("%s %s changed during append, retrying", name, entity_id)
                continue
            raise
        return await load(db, model, entity_id, entity=name)
    raise StorageError(f"{name} {entity_id} kept changing, {field} not updated")


async def bulk_guarded_update(
    db: AsyncSession,
    model,
    expected: Any,
    timestamp_column,
    cutoff: datetime,
    values: dict[str, Any],
    *,
    extra_where: Iterable[Any] = (),
    now: datetime | None = None,
) -> list[str]:
    """Sweep variant: one ``UPDATE ... WHERE status IN (...) AND ts < cutoff``.

    Returns the ids of the rows that moved so callers can mirror the change
    onto related entities inside the same transaction.
    """
    values = {k: (str(v) if k == "status" else v) for k, v in values.items()}
    values.setdefault("updated_at", now or utcnow())
    result = await fetch(
        db,
        update(model)
        .where(
            model.status.in_(_status_values(expected)),
            timestamp_column.isnot(None),
            timestamp_column < cutoff,
            *extra_where,
        )
        .values(**values)
        .returning(model.id)
        .execution_options(synchronize_session=False)
    )
    return [row[0] for row in result.all()]


async def bulk_update_ids(
    db: AsyncSession,
    model,
    column,
    ids: Iterable[str],
    expected: Any,
    values: dict[str, Any],
    *,
    now: datetime | None = None,
) -> list[str]:
    """Guarded update of every row whose ``column`` is in ``ids``."""
    ids = list(ids)
    if not ids:
        return []
    values = {k: (str(v) if k == "status" else v) for k, v in values.items()}
    values.setdefault("updated_at", now or utcnow())
    result = await fetch(
        db,
        update(model)
        .where(column.in_(ids), model.status.in_(_status_values(expected)))
        .values(**values)
        .returning(model.id)
        .execution_options(synchronize_session=False)
    )
    return [row[0] for row in result.all()]
