"""Purchase coordinator: turns a listing selection into a purchase + escrow pair.

The purchase-side ``mark_*`` operations are the buyer's view of the escrow
workflow; each one is a single workflow event, so Purchase, Escrow and Sale
never drift apart.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.config import settings
from gamevault.core import notifications
from gamevault.core.exceptions import (
    ListingUnavailable,
    StorageError,
    Unauthorized,
    ValidationError,
)
from gamevault.core.state_machine import atomic, bulk_guarded_update, fetch, load
from gamevault.models.enums import PurchaseStatus
from gamevault.models.escrow import Escrow
from gamevault.models.purchase import Purchase
from gamevault.schemas.queries import Page, PageQuery, PurchaseQuery, build_query
from gamevault.services import dispute_service, escrow_service
from gamevault.services.listing_service import ListingGateway, default_gateway
from gamevault.services.workflow_service import WorkflowResult

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    try:
        quantized = value.quantize(Decimal(settings.currency_quantum), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if quantized != value:
        raise ValidationError(
            f"Amount {amount!r} is finer than the currency unit {settings.currency_quantum}"
        )
    if quantized <= 0:
        raise ValidationError("Amount must be positive")
    return quantized


async def get_purchase(db: AsyncSession, purchase_id: str) -> Purchase:
    return await load(db, Purchase, purchase_id)


async def _escrow_id(db: AsyncSession, purchase_id: str) -> str:
    escrow = await escrow_service.get_escrow_by_purchase(db, purchase_id)
    if escrow is None:
        # Raises NotFound for an unknown purchase id.
        await get_purchase(db, purchase_id)
        raise StorageError(f"Ledger damage: purchase {purchase_id} has no escrow")
    return escrow.id


async def create_purchase(
    db: AsyncSession,
    buyer_id: str,
    listing_id: str,
    amount,
    currency: str | None = None,
    payment_method: str | None = None,
    *,
    listings: ListingGateway | None = None,
) -> tuple[Purchase, Escrow]:
    """Reserve the listing and persist Purchase + Escrow, both PENDING, atomically."""
    amount = _parse_amount(amount)
    currency = (currency or settings.default_currency).upper()
    gateway = default_gateway(db, listings)

    if not await gateway.is_purchasable(listing_id):
        raise ListingUnavailable(listing_id)
    seller_id = await gateway.get_seller_id(listing_id)
    if seller_id is None:
        raise ListingUnavailable(listing_id)
    if seller_id == buyer_id:
        raise ValidationError("Cannot purchase your own listing")

    async with atomic(db):
        # The reservation is the guard: a concurrent buyer loses here.
        await gateway.reserve(listing_id)
        purchase = Purchase(
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            status=PurchaseStatus.PENDING.value,
        )
        db.add(purchase)
        await db.flush()
        escrow = escrow_service.new_escrow(purchase)
        db.add(escrow)
        await db.flush()

    logger.info(
        "Purchase %s created: buyer=%s listing=%s amount=%s %s",
        purchase.id, buyer_id, listing_id, amount, currency,
    )
    notifications.notify(
        "purchase.created",
        seller_id,
        purchase.id,
        {"listing_id": listing_id, "amount": str(amount), "currency": currency},
    )
    return purchase, escrow


async def mark_paid(
    db: AsyncSession,
    purchase_id: str,
    payment_id: str,
    *,
    buyer_id: str | None = None,
    payment_proof: dict | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """PENDING -> PAID, escrow FUNDED and Sale created, in one transaction.

    A second call for the same purchase fails ``InvalidStateTransition`` at
    the status guard before any Sale is written.
    """
    if not payment_id:
        raise ValidationError("payment_id is required")
    purchase = await get_purchase(db, purchase_id)
    if buyer_id is not None and buyer_id != purchase.buyer_id:
        raise Unauthorized(f"Not the buyer for purchase {purchase_id}")
    escrow_id = await _escrow_id(db, purchase_id)
    return await escrow_service.fund(
        db, escrow_id, payment_proof, payment_id=payment_id, now=now
    )


async def mark_delivered(
    db: AsyncSession,
    purchase_id: str,
    seller_id: str,
    delivery_proof: dict | None = None,
    seller_notes: str | None = None,
    *,
    now: datetime | None = None,
) -> WorkflowResult:
    escrow_id = await _escrow_id(db, purchase_id)
    return await escrow_service.mark_delivered(
        db, escrow_id, seller_id, delivery_proof, seller_notes, now=now
    )


async def confirm_delivery(
    db: AsyncSession,
    purchase_id: str,
    buyer_id: str,
    buyer_notes: str | None = None,
    *,
    now: datetime | None = None,
) -> WorkflowResult:
    escrow_id = await _escrow_id(db, purchase_id)
    return await escrow_service.confirm_delivery(db, escrow_id, buyer_id, buyer_notes, now=now)


async def mark_completed(
    db: AsyncSession,
    purchase_id: str,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """Release a confirmed escrow now instead of waiting for the sweep."""
    escrow_id = await _escrow_id(db, purchase_id)
    return await escrow_service.release(db, escrow_id, listings=listings, now=now)


async def mark_disputed(
    db: AsyncSession,
    purchase_id: str,
    initiator_id: str,
    reason: str,
    description: str = "",
    **kwargs,
):
    """Open a dispute on the purchase. Returns the new Dispute."""
    return await dispute_service.create_dispute(
        db, purchase_id, initiator_id, reason, description, **kwargs
    )


async def mark_refunded(
    db: AsyncSession,
    purchase_id: str,
    admin_notes: str | None = None,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    escrow_id = await _escrow_id(db, purchase_id)
    return await escrow_service.refund(db, escrow_id, admin_notes, listings=listings, now=now)


async def mark_cancelled(
    db: AsyncSession,
    purchase_id: str,
    reason: str | None = None,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """System-initiated cancellation of an unpaid purchase."""
    escrow_id = await _escrow_id(db, purchase_id)
    return await escrow_service.cancel(db, escrow_id, reason, listings=listings, now=now)


async def cancel_purchase(
    db: AsyncSession,
    purchase_id: str,
    user_id: str,
    reason: str | None = None,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> WorkflowResult:
    """Buyer or seller abort before payment."""
    purchase = await get_purchase(db, purchase_id)
    if user_id not in (purchase.buyer_id, purchase.seller_id):
        raise Unauthorized(f"Not a party to purchase {purchase_id}")
    escrow_id = await _escrow_id(db, purchase_id)
    return await escrow_service.cancel(
        db, escrow_id, reason, user_id=user_id, listings=listings, now=now
    )


def _with_status(condition, query: PurchaseQuery) -> list:
    where = [condition]
    if query.status:
        where.append(Purchase.status == query.status.value)
    return where


async def _list_purchases(
    db: AsyncSession, where: list, query: PageQuery, *, oldest_first: bool = False
) -> Page:
    order = Purchase.purchased_at.asc() if oldest_first else Purchase.purchased_at.desc()
    total = (await fetch(db, select(func.count(Purchase.id)).where(*where))).scalar() or 0
    result = await fetch(
        db,
        select(Purchase)
        .where(*where)
        .order_by(order)
        .offset(query.offset)
        .limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def list_buyer_purchases(db: AsyncSession, buyer_id: str, query=None, **options) -> Page:
    query = build_query(PurchaseQuery, query, **options)
    return await _list_purchases(db, _with_status(Purchase.buyer_id == buyer_id, query), query)


async def list_seller_purchases(db: AsyncSession, seller_id: str, query=None, **options) -> Page:
    query = build_query(PurchaseQuery, query, **options)
    return await _list_purchases(db, _with_status(Purchase.seller_id == seller_id, query), query)


async def list_listing_purchases(db: AsyncSession, listing_id: str, query=None, **options) -> Page:
    """Every purchase attempt on one listing, newest first."""
    query = build_query(PurchaseQuery, query, **options)
    return await _list_purchases(db, _with_status(Purchase.listing_id == listing_id, query), query)


async def list_pending_purchases(db: AsyncSession, query=None, **options) -> Page:
    """Admin queue of unpaid purchases, oldest first."""
    query = build_query(PageQuery, query, **options)
    return await _list_purchases(
        db, [Purchase.status == PurchaseStatus.PENDING.value], query, oldest_first=True
    )


async def list_disputed_purchases(db: AsyncSession, query=None, **options) -> Page:
    """Admin queue of purchases under dispute, oldest first."""
    query = build_query(PageQuery, query, **options)
    return await _list_purchases(
        db, [Purchase.status == PurchaseStatus.DISPUTED.value], query, oldest_first=True
    )


async def get_purchase_stats(db: AsyncSession, user_id: str | None = None) -> dict:
    where = []
    if user_id:
        where.append(or_(Purchase.buyer_id == user_id, Purchase.seller_id == user_id))
    result = await fetch(
        db,
        select(Purchase.status, func.count(Purchase.id)).where(*where).group_by(Purchase.status)
    )
    counts = {status: count for status, count in result.all()}
    spent = (
        await fetch(
            db,
            select(func.coalesce(func.sum(Purchase.amount), 0)).where(
                *where, Purchase.status == PurchaseStatus.COMPLETED.value
            )
        )
    ).scalar()
    return {
        "total_purchases": sum(counts.values()),
        "by_status": {s.value: counts.get(s.value, 0) for s in PurchaseStatus},
        "completed_volume": Decimal(str(spent)).quantize(Decimal(settings.currency_quantum)),
    }


async def cancel_expired_purchases(
    db: AsyncSession,
    *,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Cancel purchases left unpaid past ``purchase_expiry_hours``.

    The purchase sweep, the escrow mirror and the listing hand-back commit
    together.
    """
    now = now or _utcnow()
    cutoff = now - timedelta(hours=settings.purchase_expiry_hours)
    gateway = default_gateway(db, listings)
    reason = "Payment not received in time"

    async with atomic(db):
        cancelled = await bulk_guarded_update(
            db,
            Purchase,
            PurchaseStatus.PENDING,
            Purchase.purchased_at,
            cutoff,
            {"status": PurchaseStatus.CANCELLED, "cancelled_at": now},
            now=now,
        )
        if cancelled:
            await escrow_service.cancel_escrows_for_purchases(db, cancelled, reason, now=now)
            rows = (
                await fetch(
                    db,
                    select(Purchase.listing_id).where(Purchase.id.in_(cancelled))
                )
            ).scalars().all()
            for listing_id in rows:
                await gateway.release(listing_id)

    if cancelled:
        result = await fetch(
            db,
            select(Purchase.id, Purchase.buyer_id, Purchase.seller_id).where(
                Purchase.id.in_(cancelled)
            )
        )
        for purchase_id, buyer, seller in result.all():
            for party in (buyer, seller):
                notifications.notify(
                    "purchase.cancelled", party, purchase_id, {"reason": reason, "auto": True}
                )
        logger.info("Cancelled %d unpaid purchases", len(cancelled))
    return cancelled
