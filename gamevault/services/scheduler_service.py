"""Periodic janitor: the time-driven transitions of the escrow workflow.

Every step is one guarded bulk update keyed on ``status AND timestamp <
cutoff``, so a step that races a user action simply does not match that row,
and re-running a step after a failure is harmless.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gamevault.config import settings
from gamevault.core.exceptions import StorageError
from gamevault.services import (
    dispute_service,
    escrow_service,
    listing_service,
    purchase_service,
    sale_service,
)

logger = logging.getLogger(__name__)

SweepStep = Callable[[AsyncSession, datetime], Awaitable[list[str]]]

RETRY_BASE_DELAY_SECONDS = 0.5


@dataclass
class SweepReport:
    started_at: datetime
    counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "counts": dict(self.counts),
            "errors": dict(self.errors),
        }


async def _auto_release(db: AsyncSession, now: datetime) -> list[str]:
    return await escrow_service.auto_release_escrows(db, now=now)


async def _cancel_purchases(db: AsyncSession, now: datetime) -> list[str]:
    return await purchase_service.cancel_expired_purchases(db, now=now)


async def _cancel_sales(db: AsyncSession, now: datetime) -> list[str]:
    return await sale_service.cancel_expired_sales(db, now=now)


async def _expire_listings(db: AsyncSession, now: datetime) -> list[str]:
    return await listing_service.expire_listings(db, now=now)


async def _escalate_disputes(db: AsyncSession, now: datetime) -> list[str]:
    return await dispute_service.escalate_overdue_disputes(db, now=now)


def sweep_steps() -> list[tuple[str, SweepStep]]:
    steps: list[tuple[str, SweepStep]] = [
        ("auto_released_escrows", _auto_release),
        ("cancelled_purchases", _cancel_purchases),
        ("cancelled_sales", _cancel_sales),
        ("expired_listings", _expire_listings),
    ]
    if settings.dispute_escalation_enabled:
        steps.append(("escalated_disputes", _escalate_disputes))
    return steps


async def _run_step(
    session_factory: async_sessionmaker,
    name: str,
    step: SweepStep,
    now: datetime,
    max_retries: int,
) -> list[str]:
    attempt = 0
    while True:
        try:
            async with session_factory() as db:
                return await step(db, now)
        except StorageError:
            attempt += 1
            if attempt > max_retries:
                raise
            delay = RETRY_BASE_DELAY_SECONDS * 2 ** (attempt - 1)
            logger.warning(
                "Sweep step %s hit a storage error, retry %d/%d in %.1fs",
                name, attempt, max_retries, delay,
            )
            await asyncio.sleep(delay)


async def run_sweep(
    session_factory: async_sessionmaker,
    now: datetime | None = None,
    *,
    max_retries: int | None = None,
    steps: list[tuple[str, SweepStep]] | None = None,
) -> SweepReport:
    """One pass over every sweep step, each in its own session.

    A failing step is recorded in the report and does not stop the others.
    """
    now = now or datetime.now(timezone.utc)
    retries = settings.sweep_max_retries if max_retries is None else max_retries
    report = SweepReport(started_at=now)

    for name, step in steps if steps is not None else sweep_steps():
        try:
            ids = await _run_step(session_factory, name, step, now, retries)
            report.counts[name] = len(ids)
        except Exception as exc:
            logger.exception("Sweep step %s failed", name)
            report.errors[name] = f"{exc.__class__.__name__}: {exc}"

    report.finished_at = datetime.now(timezone.utc)
    logger.info("Sweep finished: counts=%s errors=%s", report.counts, list(report.errors))
    return report


async def sweep_loop(
    session_factory: async_sessionmaker,
    interval: float | None = None,
    *,
    initial_delay: float = 30,
) -> None:
    """Run ``run_sweep`` forever. Cancel the task to stop it."""
    interval = settings.sweep_interval_seconds if interval is None else interval
    await asyncio.sleep(initial_delay)  # Let startup traffic settle first
    while True:
        try:
            await run_sweep(session_factory)
        except Exception:
            logger.exception("Background task error")
        await asyncio.sleep(interval)
