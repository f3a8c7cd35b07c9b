"""One real-world event, three ledgers.

Purchase, Escrow and Sale are three views of the same exchange. Instead of
letting callers move each one separately (and in whatever order), every
event the exchange can go through is listed once in ``WORKFLOW`` together
with the guarded transition it implies for each entity. ``apply_event``
performs all of them inside the caller's transaction; if any guard fails the
whole unit of work rolls back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.core.exceptions import StorageError
from gamevault.core.state_machine import fetch, guarded_update, load
from gamevault.models.enums import EscrowStatus, PurchaseStatus, SaleStatus
from gamevault.models.escrow import Escrow
from gamevault.models.purchase import Purchase
from gamevault.models.sale import Sale
from gamevault.services import sale_service

logger = logging.getLogger(__name__)


class WorkflowEvent(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    ACCOUNT_DELIVERED = "account_delivered"
    BUYER_CONFIRMED = "buyer_confirmed"
    FUNDS_RELEASED = "funds_released"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED_RELEASE = "dispute_resolved_release"
    DISPUTE_RESOLVED_REFUND = "dispute_resolved_refund"
    DISPUTE_WITHDRAWN_FUNDED = "dispute_withdrawn_funded"
    DISPUTE_WITHDRAWN_DELIVERED = "dispute_withdrawn_delivered"
    ADMIN_REFUND = "admin_refund"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    allowed: frozenset
    to: Any
    stamp: str | None = None


@dataclass(frozen=True)
class Fanout:
    escrow: Step | None = None
    purchase: Step | None = None
    sale: Step | None = None


def _step(allowed, to, stamp=None) -> Step:
    return Step(frozenset(allowed), to, stamp)


E, P, S = EscrowStatus, PurchaseStatus, SaleStatus

WORKFLOW: dict[WorkflowEvent, Fanout] = {
    # The Sale does not exist yet; it is created by this event.
    WorkflowEvent.PAYMENT_CONFIRMED: Fanout(
        escrow=_step({E.PENDING}, E.FUNDED, "funds_held_at"),
        purchase=_step({P.PENDING}, P.PAID, "paid_at"),
    ),
    WorkflowEvent.ACCOUNT_DELIVERED: Fanout(
        escrow=_step({E.FUNDED}, E.DELIVERED, "account_delivered_at"),
        purchase=_step({P.PAID}, P.DELIVERED, "delivered_at"),
        sale=_step({S.PENDING}, S.DELIVERED, "delivered_at"),
    ),
    WorkflowEvent.BUYER_CONFIRMED: Fanout(
        escrow=_step({E.DELIVERED}, E.CONFIRMED, "buyer_confirmed_at"),
    ),
    WorkflowEvent.FUNDS_RELEASED: Fanout(
        escrow=_step({E.CONFIRMED}, E.RELEASED, "released_at"),
        purchase=_step({P.DELIVERED}, P.COMPLETED, "completed_at"),
        sale=_step({S.DELIVERED}, S.COMPLETED, "completed_at"),
    ),
    WorkflowEvent.DISPUTE_OPENED: Fanout(
        escrow=_step({E.FUNDED, E.DELIVERED}, E.DISPUTED, "dispute_started_at"),
        purchase=_step({P.PAID, P.DELIVERED}, P.DISPUTED),
        sale=_step({S.PENDING, S.DELIVERED}, S.DISPUTED),
    ),
    WorkflowEvent.DISPUTE_RESOLVED_RELEASE: Fanout(
        escrow=_step({E.DISPUTED}, E.RELEASED, "resolved_at"),
        purchase=_step({P.DISPUTED}, P.COMPLETED, "completed_at"),
        sale=_step({S.DISPUTED}, S.COMPLETED, "completed_at"),
    ),
    WorkflowEvent.DISPUTE_RESOLVED_REFUND: Fanout(
        escrow=_step({E.DISPUTED}, E.REFUNDED, "resolved_at"),
        purchase=_step({P.DISPUTED}, P.REFUNDED, "refunded_at"),
        sale=_step({S.DISPUTED}, S.REFUNDED, "refunded_at"),
    ),
    WorkflowEvent.DISPUTE_WITHDRAWN_FUNDED: Fanout(
        escrow=_step({E.DISPUTED}, E.FUNDED),
        purchase=_step({P.DISPUTED}, P.PAID),
        sale=_step({S.DISPUTED}, S.PENDING),
    ),
    WorkflowEvent.DISPUTE_WITHDRAWN_DELIVERED: Fanout(
        escrow=_step({E.DISPUTED}, E.DELIVERED),
        purchase=_step({P.DISPUTED}, P.DELIVERED),
        sale=_step({S.DISPUTED}, S.DELIVERED),
    ),
    WorkflowEvent.ADMIN_REFUND: Fanout(
        escrow=_step({E.FUNDED, E.DELIVERED, E.CONFIRMED}, E.REFUNDED, "resolved_at"),
        purchase=_step({P.PAID, P.DELIVERED}, P.REFUNDED, "refunded_at"),
        sale=_step({S.PENDING, S.DELIVERED}, S.REFUNDED, "refunded_at"),
    ),
    WorkflowEvent.CANCELLED: Fanout(
        escrow=_step({E.PENDING}, E.CANCELLED, "cancelled_at"),
        purchase=_step({P.PENDING}, P.CANCELLED, "cancelled_at"),
        sale=_step({S.PENDING}, S.CANCELLED, "cancelled_at"),
    ),
}


@dataclass
class WorkflowResult:
    event: WorkflowEvent
    purchase: Purchase
    escrow: Escrow
    sale: Sale | None


async def _escrow_for(db: AsyncSession, purchase_id: str) -> Escrow:
    result = await fetch(
        db,
        select(Escrow)
        .where(Escrow.purchase_id == purchase_id)
        .execution_options(populate_existing=True)
    )
    escrow = result.scalar_one_or_none()
    if escrow is None:
        # Created atomically with the purchase; a missing row is ledger damage.
        raise StorageError(f"Ledger damage: purchase {purchase_id} has no escrow")
    return escrow


def _values(step: Step, extra: dict | None, now: datetime) -> dict:
    values = {"status": step.to}
    if step.stamp:
        values[step.stamp] = now
    if extra:
        values.update(extra)
    return values


async def apply_event(
    db: AsyncSession,
    purchase_id: str,
    event: WorkflowEvent,
    *,
    escrow_values: dict | None = None,
    purchase_values: dict | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """Fan one event out to Escrow, Purchase and Sale. Does not commit.

    The escrow guard runs first: it is the record that owns the money, so
    its current status is what an ``InvalidStateTransition`` reports.
    """
    now = now or datetime.now(timezone.utc)
    fanout = WORKFLOW[event]

    escrow = await _escrow_for(db, purchase_id)
    if fanout.escrow:
        await guarded_update(
            db, Escrow, escrow.id, fanout.escrow.allowed,
            _values(fanout.escrow, escrow_values, now), now=now,
        )
    if fanout.purchase:
        await guarded_update(
            db, Purchase, purchase_id, fanout.purchase.allowed,
            _values(fanout.purchase, purchase_values, now), now=now,
        )

    sale = await sale_service.get_sale_by_purchase(db, purchase_id)
    if event is WorkflowEvent.PAYMENT_CONFIRMED:
        purchase = await load(db, Purchase, purchase_id)
        sale = await sale_service.create_sale(db, purchase, now=now)
    elif fanout.sale and sale is not None:
        await guarded_update(
            db, Sale, sale.id, fanout.sale.allowed,
            _values(fanout.sale, None, now), now=now,
        )

    purchase = await load(db, Purchase, purchase_id)
    escrow = await load(db, Escrow, escrow.id)
    if sale is not None:
        sale = await load(db, Sale, sale.id)

    logger.info(
        "Workflow %s applied to purchase %s: purchase=%s escrow=%s sale=%s",
        event.value, purchase_id, purchase.status, escrow.status,
        sale.status if sale is not None else None,
    )
    return WorkflowResult(event=event, purchase=purchase, escrow=escrow, sale=sale)
