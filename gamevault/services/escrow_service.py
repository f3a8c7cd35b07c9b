"""Escrow engine: holds the buyer's funds from payment until release or refund.

State machine (see ``WORKFLOW`` in workflow_service for the exact guards):

    pending -> funded -> delivered -> confirmed -> released
    funded | delivered -> disputed -> released | refunded
    pending -> cancelled

released, refunded and cancelled are terminal. The amount is written once
when the escrow is created and is never part of any later update.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.config import settings
from gamevault.core import notifications
from gamevault.core.exceptions import Unauthorized, ValidationError
from gamevault.core.state_machine import (
    atomic,
    bulk_guarded_update,
    bulk_update_ids,
    fetch,
    load,
)
from gamevault.models.enums import EscrowStatus, PurchaseStatus, SaleStatus
from gamevault.models.escrow import Escrow
from gamevault.models.purchase import Purchase
from gamevault.models.sale import Sale
from gamevault.schemas.queries import EscrowQuery, Page, PageQuery, build_query
from gamevault.services.listing_service import ListingGateway, default_gateway
from gamevault.services.workflow_service import WorkflowEvent, WorkflowResult, apply_event

logger = logging.getLogger(__name__)

_RESOLUTIONS = {
    "release": WorkflowEvent.DISPUTE_RESOLVED_RELEASE,
    "refund": WorkflowEvent.DISPUTE_RESOLVED_REFUND,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_party(escrow: Escrow, user_id: str, role: str) -> None:
    owner = escrow.buyer_id if role == "buyer" else escrow.seller_id
    if user_id != owner:
        raise Unauthorized(f"Not the {role} for escrow {escrow.id}")


async def get_escrow(db: AsyncSession, escrow_id: str) -> Escrow:
    return await load(db, Escrow, escrow_id)


async def get_escrow_by_purchase(db: AsyncSession, purchase_id: str) -> Escrow | None:
    result = await fetch(
        db,
        select(Escrow)
        .where(Escrow.purchase_id == purchase_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def new_escrow(purchase: Purchase) -> Escrow:
    """Build the PENDING escrow that travels with a new purchase."""
    return Escrow(
        purchase_id=purchase.id,
        listing_id=purchase.listing_id,
        buyer_id=purchase.buyer_id,
        seller_id=purchase.seller_id,
        amount=purchase.amount,
        currency=purchase.currency,
        status=EscrowStatus.PENDING.value,
    )


async def fund(
    db: AsyncSession,
    escrow_id: str,
    payment_proof: dict | None = None,
    *,
    payment_id: str | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """PENDING -> FUNDED. The purchase becomes PAID and its Sale is recorded."""
    escrow = await get_escrow(db, escrow_id)
    purchase_values = {"payment_id": payment_id} if payment_id else None
    async with atomic(db):
        result = await apply_event(
            db,
            escrow.purchase_id,
            WorkflowEvent.PAYMENT_CONFIRMED,
            escrow_values={"payment_proof": payment_proof},
            purchase_values=purchase_values,
            now=now,
        )

    logger.info("Escrow %s funded: %s %s", escrow_id, result.escrow.amount, result.escrow.currency)
    notifications.notify(
        "escrow.funded",
        result.escrow.seller_id,
        escrow_id,
        {"amount": str(result.escrow.amount), "currency": result.escrow.currency},
    )
    return result


async def mark_delivered(
    db: AsyncSession,
    escrow_id: str,
    seller_id: str,
    delivery_proof: dict | None = None,
    seller_notes: str | None = None,
    *,
    now: datetime | None = None,
) -> WorkflowResult:
    """FUNDED -> DELIVERED: the seller has handed over the account."""
    escrow = await get_escrow(db, escrow_id)
    _require_party(escrow, seller_id, "seller")
    async with atomic(db):
        result = await apply_event(
            db,
            escrow.purchase_id,
            WorkflowEvent.ACCOUNT_DELIVERED,
            escrow_values={"delivery_proof": delivery_proof, "seller_notes": seller_notes},
            now=now,
        )

    notifications.notify("escrow.delivered", escrow.buyer_id, escrow_id)
    return result


async def confirm_delivery(
    db: AsyncSession,
    escrow_id: str,
    buyer_id: str,
    buyer_notes: str | None = None,
    *,
    now: datetime | None = None,
) -> WorkflowResult:
    """DELIVERED -> CONFIRMED. Funds release after the auto-release window."""
    escrow = await get_escrow(db, escrow_id)
    _require_party(escrow, buyer_id, "buyer")
    async with atomic(db):
        result = await apply_event(
            db,
            escrow.purchase_id,
            WorkflowEvent.BUYER_CONFIRMED,
            escrow_values={"buyer_notes": buyer_notes},
            now=now,
        )

    notifications.notify("escrow.confirmed", escrow.seller_id, escrow_id)
    return result


async def release(
    db: AsyncSession,
    escrow_id: str,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """CONFIRMED -> RELEASED: pay the seller, complete the purchase and sale."""
    escrow = await get_escrow(db, escrow_id)
    gateway = default_gateway(db, listings)
    async with atomic(db):
        result = await apply_event(
            db, escrow.purchase_id, WorkflowEvent.FUNDS_RELEASED, now=now
        )
        await gateway.mark_sold(escrow.listing_id)

    _notify_released(result)
    return result


async def refund(
    db: AsyncSession,
    escrow_id: str,
    admin_notes: str | None = None,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """Administrative refund of an undisputed, funded escrow.

    A disputed escrow is refunded through the dispute verdict instead, so the
    dispute record cannot be left open behind a settled escrow.
    """
    escrow = await get_escrow(db, escrow_id)
    gateway = default_gateway(db, listings)
    async with atomic(db):
        result = await apply_event(
            db,
            escrow.purchase_id,
            WorkflowEvent.ADMIN_REFUND,
            escrow_values={"admin_notes": admin_notes},
            now=now,
        )
        await gateway.release(escrow.listing_id)

    _notify_refunded(result)
    return result


async def cancel(
    db: AsyncSession,
    escrow_id: str,
    reason: str | None = None,
    *,
    user_id: str | None = None,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """PENDING -> CANCELLED, before any money moved. Unwinds the listing hold."""
    escrow = await get_escrow(db, escrow_id)
    if user_id is not None and user_id not in (escrow.buyer_id, escrow.seller_id):
        raise Unauthorized(f"Not a party to escrow {escrow_id}")
    gateway = default_gateway(db, listings)
    async with atomic(db):
        result = await apply_event(
            db,
            escrow.purchase_id,
            WorkflowEvent.CANCELLED,
            escrow_values={"cancel_reason": reason},
            now=now,
        )
        await gateway.release(escrow.listing_id)

    for party in (escrow.buyer_id, escrow.seller_id):
        notifications.notify(
            "purchase.cancelled", party, escrow.purchase_id, {"reason": reason}
        )
    return result


async def initiate_dispute(
    db: AsyncSession,
    escrow: Escrow,
    reason: str,
    initiated_by: str,
    *,
    now: datetime | None = None,
) -> WorkflowResult:
    """FUNDED | DELIVERED -> DISPUTED. Runs inside the dispute's transaction.

    Only the dispute resolver calls this, together with inserting the
    Dispute row, so an escrow is never DISPUTED without a dispute record.
    """
    if initiated_by not in ("buyer", "seller"):
        raise ValidationError("initiated_by must be 'buyer' or 'seller'")
    notes_field = "buyer_notes" if initiated_by == "buyer" else "seller_notes"
    return await apply_event(
        db,
        escrow.purchase_id,
        WorkflowEvent.DISPUTE_OPENED,
        escrow_values={notes_field: reason},
        now=now,
    )


async def resolve_dispute(
    db: AsyncSession,
    escrow: Escrow,
    resolution: str,
    admin_notes: str | None = None,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """DISPUTED -> RELEASED | REFUNDED. Runs inside the verdict's transaction."""
    if resolution not in _RESOLUTIONS:
        raise ValidationError("resolution must be 'release' or 'refund'")
    now = now or _utcnow()
    values = {"admin_notes": admin_notes}
    if resolution == "release":
        values["released_at"] = now
    result = await apply_event(
        db, escrow.purchase_id, _RESOLUTIONS[resolution], escrow_values=values, now=now
    )

    gateway = default_gateway(db, listings)
    if resolution == "release":
        await gateway.mark_sold(escrow.listing_id)
    else:
        await gateway.release(escrow.listing_id)
    return result


async def withdraw_dispute(
    db: AsyncSession,
    escrow: Escrow,
    restore_to: str,
    *,
    now: datetime | None = None,
) -> WorkflowResult:
    """DISPUTED -> the status held before the dispute. Runs inside the caller's transaction."""
    event = (
        WorkflowEvent.DISPUTE_WITHDRAWN_DELIVERED
        if restore_to == EscrowStatus.DELIVERED
        else WorkflowEvent.DISPUTE_WITHDRAWN_FUNDED
    )
    return await apply_event(db, escrow.purchase_id, event, now=now)


def _notify_released(result: WorkflowResult) -> None:
    escrow = result.escrow
    data = {"amount": str(escrow.amount), "currency": escrow.currency}
    if result.sale is not None:
        data["net_amount"] = str(result.sale.net_amount)
    notifications.notify("escrow.released", escrow.seller_id, escrow.id, data)


def _notify_refunded(result: WorkflowResult) -> None:
    escrow = result.escrow
    notifications.notify(
        "escrow.refunded",
        escrow.buyer_id,
        escrow.id,
        {"amount": str(escrow.amount), "currency": escrow.currency},
    )


def notify_settlement(result: WorkflowResult) -> None:
    """Emit the payout or refund notice for a settled escrow."""
    if result.escrow.status == EscrowStatus.RELEASED:
        _notify_released(result)
    elif result.escrow.status == EscrowStatus.REFUNDED:
        _notify_refunded(result)


async def list_user_escrows(
    db: AsyncSession, user_id: str, role: str, query=None, **options
) -> Page:
    if role not in ("buyer", "seller"):
        raise ValidationError("role must be 'buyer' or 'seller'")
    query = build_query(EscrowQuery, query, **options)
    where = [Escrow.buyer_id == user_id if role == "buyer" else Escrow.seller_id == user_id]
    if query.status:
        where.append(Escrow.status == query.status.value)

    total = (await fetch(db, select(func.count(Escrow.id)).where(*where))).scalar() or 0
    result = await fetch(
        db,
        select(Escrow)
        .where(*where)
        .order_by(Escrow.created_at.desc())
        .offset(query.offset)
        .limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def list_disputed_escrows(db: AsyncSession, query=None, **options) -> Page:
    """Escrows currently held by a dispute, longest-waiting first."""
    query = build_query(PageQuery, query, **options)
    where = Escrow.status == EscrowStatus.DISPUTED.value
    total = (await fetch(db, select(func.count(Escrow.id)).where(where))).scalar() or 0
    result = await fetch(
        db,
        select(Escrow)
        .where(where)
        .order_by(Escrow.dispute_started_at.asc())
        .offset(query.offset)
        .limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def auto_release_escrows(
    db: AsyncSession,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Release every escrow CONFIRMED longer than the auto-release window.

    One guarded bulk update moves the escrows; the mirrored Purchase and Sale
    completions and the listing hand-off run in the same transaction, keyed
    on the ids the escrow update actually moved.
    """
    now = now or _utcnow()
    cutoff = now - timedelta(hours=settings.escrow_auto_release_hours)
    gateway = default_gateway(db, listings)

    async with atomic(db):
        released_ids = await bulk_guarded_update(
            db,
            Escrow,
            EscrowStatus.CONFIRMED,
            Escrow.buyer_confirmed_at,
            cutoff,
            {"status": EscrowStatus.RELEASED, "released_at": now},
            now=now,
        )
        if released_ids:
            rows = (
                await fetch(
                    db,
                    select(Escrow.purchase_id, Escrow.listing_id).where(
                        Escrow.id.in_(released_ids)
                    )
                )
            ).all()
            purchase_ids = [row.purchase_id for row in rows]
            await bulk_update_ids(
                db, Purchase, Purchase.id, purchase_ids, PurchaseStatus.DELIVERED,
                {"status": PurchaseStatus.COMPLETED, "completed_at": now}, now=now,
            )
            await bulk_update_ids(
                db, Sale, Sale.purchase_id, purchase_ids, SaleStatus.DELIVERED,
                {"status": SaleStatus.COMPLETED, "completed_at": now}, now=now,
            )
            for row in rows:
                await gateway.mark_sold(row.listing_id)

    if released_ids:
        result = await fetch(
            db,
            select(Escrow, Sale)
            .outerjoin(Sale, Sale.purchase_id == Escrow.purchase_id)
            .where(Escrow.id.in_(released_ids))
        )
        for escrow, sale in result.all():
            data = {"amount": str(escrow.amount), "currency": escrow.currency, "auto": True}
            if sale is not None:
                data["net_amount"] = str(sale.net_amount)
            notifications.notify("escrow.released", escrow.seller_id, escrow.id, data)
        logger.info("Auto-released %d confirmed escrows", len(released_ids))
    return released_ids


async def cancel_escrows_for_purchases(
    db: AsyncSession, purchase_ids: list[str], reason: str, *, now: datetime | None = None
) -> list[str]:
    """Mirror a bulk purchase cancellation onto the PENDING escrows. No commit."""
    return await bulk_update_ids(
        db, Escrow, Escrow.purchase_id, purchase_ids, EscrowStatus.PENDING,
        {"status": EscrowStatus.CANCELLED, "cancelled_at": now or _utcnow(), "cancel_reason": reason},
        now=now,
    )


async def get_escrow_stats(db: AsyncSession, user_id: str | None = None) -> dict:
    where = []
    if user_id:
        where.append(or_(Escrow.buyer_id == user_id, Escrow.seller_id == user_id))
    result = await fetch(
        db,
        select(Escrow.status, func.count(Escrow.id), func.coalesce(func.sum(Escrow.amount), 0))
        .where(*where)
        .group_by(Escrow.status)
    )
    by_status = {status: {"count": count, "amount": amount} for status, count, amount in result.all()}
    held = [EscrowStatus.FUNDED, EscrowStatus.DELIVERED, EscrowStatus.CONFIRMED, EscrowStatus.DISPUTED]
    return {
        "by_status": by_status,
        "funds_held": sum((by_status.get(s.value, {}).get("amount", 0) for s in held), 0),
        "awaiting_release": by_status.get(EscrowStatus.CONFIRMED.value, {}).get("count", 0),
    }
