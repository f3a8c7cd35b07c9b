"""Sale ledger: the seller-side finance record of a paid purchase.

A Sale freezes the commission rate in force when the purchase was paid, so
"how much does the seller net" never depends on today's rate. Its status is
only ever written by the workflow dispatcher, in the same transaction as the
matching Purchase and Escrow transitions.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.config import settings
from gamevault.core import notifications
from gamevault.core.exceptions import ValidationError
from gamevault.core.state_machine import atomic, bulk_guarded_update, fetch, load
from gamevault.models.enums import PurchaseStatus, SaleStatus
from gamevault.models.purchase import Purchase
from gamevault.models.sale import Sale
from gamevault.schemas.queries import (
    Page,
    PageQuery,
    SaleQuery,
    Timeframe,
    build_query,
    timeframe_start,
)

logger = logging.getLogger(__name__)

# A pending sale is stale only while its purchase never got paid.
_UNPAID = [PurchaseStatus.PENDING.value, PurchaseStatus.CANCELLED.value]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_money(value) -> Decimal:
    quantum = Decimal(settings.currency_quantum)
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


def compute_commission(amount, rate) -> tuple[Decimal, Decimal]:
    """Split ``amount`` into ``(commission, net_amount)``.

    Commission is rounded half-up to the currency quantum and the net is the
    exact remainder, so the two always add back to ``amount``.
    """
    amount_d = _to_money(amount)
    rate_d = Decimal(str(rate))
    if not Decimal("0") <= rate_d < Decimal("1"):
        raise ValidationError(f"Commission rate must be in [0, 1), got {rate}")
    commission = _to_money(amount_d * rate_d)
    net_amount = amount_d - commission
    return commission, net_amount


async def create_sale(
    db: AsyncSession,
    purchase: Purchase,
    *,
    rate: float | None = None,
    now: datetime | None = None,
) -> Sale:
    """Add the Sale for a just-paid purchase. Runs inside the caller's transaction."""
    rate = settings.commission_rate if rate is None else rate
    commission, net_amount = compute_commission(purchase.amount, rate)
    sale = Sale(
        purchase_id=purchase.id,
        seller_id=purchase.seller_id,
        buyer_id=purchase.buyer_id,
        listing_id=purchase.listing_id,
        amount=_to_money(purchase.amount),
        currency=purchase.currency,
        commission_rate=Decimal(str(rate)),
        commission=commission,
        net_amount=net_amount,
        status=SaleStatus.PENDING.value,
        sold_at=now or _utcnow(),
    )
    db.add(sale)
    await db.flush()
    logger.info(
        "Sale %s recorded for purchase %s: amount=%s commission=%s net=%s",
        sale.id, purchase.id, sale.amount, commission, net_amount,
    )
    return sale


async def get_sale(db: AsyncSession, sale_id: str) -> Sale:
    return await load(db, Sale, sale_id)


async def get_sale_by_purchase(db: AsyncSession, purchase_id: str) -> Sale | None:
    result = await fetch(
        db,
        select(Sale)
        .where(Sale.purchase_id == purchase_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _with_status(condition, query: SaleQuery) -> list:
    where = [condition]
    if query.status:
        where.append(Sale.status == query.status.value)
    return where


async def _list_sales(
    db: AsyncSession, where: list, query: PageQuery, *, oldest_first: bool = False
) -> Page:
    order = Sale.sold_at.asc() if oldest_first else Sale.sold_at.desc()
    total = (
        await fetch(db, select(func.count(Sale.id)).where(*where))
    ).scalar() or 0
    result = await fetch(
        db,
        select(Sale)
        .where(*where)
        .order_by(order)
        .offset(query.offset)
        .limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def list_seller_sales(db: AsyncSession, seller_id: str, query=None, **options) -> Page:
    query = build_query(SaleQuery, query, **options)
    return await _list_sales(db, _with_status(Sale.seller_id == seller_id, query), query)


async def list_buyer_sales(db: AsyncSession, buyer_id: str, query=None, **options) -> Page:
    query = build_query(SaleQuery, query, **options)
    return await _list_sales(db, _with_status(Sale.buyer_id == buyer_id, query), query)


async def list_listing_sales(db: AsyncSession, listing_id: str, query=None, **options) -> Page:
    query = build_query(SaleQuery, query, **options)
    return await _list_sales(db, _with_status(Sale.listing_id == listing_id, query), query)


async def list_pending_sales(db: AsyncSession, query=None, **options) -> Page:
    """Admin queue, oldest first."""
    query = build_query(PageQuery, query, **options)
    return await _list_sales(
        db, [Sale.status == SaleStatus.PENDING.value], query, oldest_first=True
    )


async def list_disputed_sales(db: AsyncSession, query=None, **options) -> Page:
    """Admin queue, oldest first."""
    query = build_query(PageQuery, query, **options)
    return await _list_sales(
        db, [Sale.status == SaleStatus.DISPUTED.value], query, oldest_first=True
    )


async def get_top_selling_listings(
    db: AsyncSession,
    timeframe: Timeframe = "month",
    limit: int = 10,
    now: datetime | None = None,
) -> list[dict]:
    """Listings ranked by delivered or completed sales inside the window."""
    since = timeframe_start(timeframe, now or _utcnow())
    sale_count = func.count(Sale.id)
    result = await fetch(
        db,
        select(Sale.listing_id, sale_count, func.coalesce(func.sum(Sale.amount), 0))
        .where(
            Sale.status.in_([SaleStatus.COMPLETED.value, SaleStatus.DELIVERED.value]),
            Sale.sold_at >= since,
        )
        .group_by(Sale.listing_id)
        .order_by(sale_count.desc(), Sale.listing_id)
        .limit(limit)
    )
    return [
        {"listing_id": listing_id, "total_sales": count, "total_revenue": _to_money(revenue)}
        for listing_id, count, revenue in result.all()
    ]


async def get_sale_stats(db: AsyncSession, seller_id: str | None = None) -> dict:
    """Counts plus revenue totals over delivered and completed sales."""
    where = [Sale.seller_id == seller_id] if seller_id else []

    counts_result = await fetch(
        db,
        select(Sale.status, func.count(Sale.id)).where(*where).group_by(Sale.status)
    )
    counts = {status: count for status, count in counts_result.all()}

    earned = [SaleStatus.COMPLETED.value, SaleStatus.DELIVERED.value]
    revenue = (
        await fetch(
            db,
            select(
                func.coalesce(func.sum(Sale.amount), 0),
                func.coalesce(func.sum(Sale.commission), 0),
                func.coalesce(func.sum(Sale.net_amount), 0),
                func.count(Sale.id),
            ).where(*where, Sale.status.in_(earned))
        )
    ).one()
    total_revenue = _to_money(revenue[0])
    earned_count = revenue[3] or 0

    return {
        "total_sales": sum(counts.values()),
        "completed_sales": counts.get(SaleStatus.COMPLETED.value, 0),
        "pending_sales": counts.get(SaleStatus.PENDING.value, 0),
        "disputed_sales": counts.get(SaleStatus.DISPUTED.value, 0),
        "refunded_sales": counts.get(SaleStatus.REFUNDED.value, 0),
        "total_revenue": total_revenue,
        "total_commission": _to_money(revenue[1]),
        "net_revenue": _to_money(revenue[2]),
        "average_order_value": (
            _to_money(total_revenue / earned_count) if earned_count else Decimal("0.00")
        ),
    }


async def cancel_expired_sales(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Cancel sales left PENDING longer than ``sale_expiry_hours``.

    Payment gating creates a Sale only once the purchase is paid, so in a
    healthy ledger this finds nothing; it cleans up after interrupted writes.
    """
    now = now or _utcnow()
    cutoff = now - timedelta(hours=settings.sale_expiry_hours)
    async with atomic(db):
        cancelled = await bulk_guarded_update(
            db,
            Sale,
            SaleStatus.PENDING,
            Sale.sold_at,
            cutoff,
            {"status": SaleStatus.CANCELLED, "cancelled_at": now},
            extra_where=[
                Sale.purchase_id.in_(
                    select(Purchase.id).where(Purchase.status.in_(_UNPAID))
                )
            ],
            now=now,
        )

    if cancelled:
        result = await fetch(
            db,
            select(Sale.id, Sale.seller_id).where(Sale.id.in_(cancelled))
        )
        for sale_id, seller_id in result.all():
            notifications.notify("sale.cancelled", seller_id, sale_id)
        logger.info("Cancelled %d stale pending sales", len(cancelled))
    return cancelled
