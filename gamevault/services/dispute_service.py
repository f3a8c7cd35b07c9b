"""Dispute resolver: arbitration of a purchase between buyer and seller.

    open -> in_review -> resolved
    open | in_review -> closed   (withdrawn, no verdict)

Opening a dispute freezes the escrow in DISPUTED; the verdict or the
closure is what moves it on again. Admin queues are ordered by priority
(high first) and then age (oldest first).
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.config import settings
from gamevault.core import notifications
from gamevault.core.exceptions import (
    DuplicateDispute,
    InvalidStateTransition,
    Unauthorized,
    ValidationError,
)
from gamevault.core.state_machine import (
    atomic,
    bulk_guarded_update,
    fetch,
    guarded_append,
    guarded_update,
    load,
)
from gamevault.models.dispute import Dispute
from gamevault.models.enums import (
    ACTIVE_DISPUTE_STATUSES,
    PRIORITY_RANK,
    DisputePriority,
    DisputeStatus,
    EscrowStatus,
    FavoredParty,
)
from gamevault.models.purchase import Purchase
from gamevault.schemas.queries import AdminDisputeQuery, DisputeQuery, Page, build_query
from gamevault.services import escrow_service
from gamevault.services.listing_service import ListingGateway

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_DISPUTE_STATUSES]
_PRIORITY_ORDER = case(
    {p.value: rank for p, rank in PRIORITY_RANK.items()},
    value=Dispute.priority,
    else_=0,
)
_FUND_DISPOSITIONS = ("release", "refund")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _priority(value) -> DisputePriority:
    try:
        return DisputePriority(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown priority: {value!r}") from exc


def _queue_order(query):
    return query.order_by(_PRIORITY_ORDER.desc(), Dispute.created_at.asc())


async def get_dispute(db: AsyncSession, dispute_id: str) -> Dispute:
    return await load(db, Dispute, dispute_id)


async def get_active_dispute(db: AsyncSession, purchase_id: str) -> Dispute | None:
    result = await fetch(
        db,
        select(Dispute)
        .where(Dispute.purchase_id == purchase_id, Dispute.status.in_(_ACTIVE))
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def create_dispute(
    db: AsyncSession,
    purchase_id: str,
    initiator_id: str,
    reason: str,
    description: str = "",
    priority=DisputePriority.MEDIUM,
    evidence: list | None = None,
    *,
    now: datetime | None = None,
) -> Dispute:
    """Open a dispute and move the escrow (with purchase and sale) to DISPUTED."""
    if not reason or not reason.strip():
        raise ValidationError("A dispute needs a reason")
    priority = _priority(priority)
    now = now or _utcnow()

    purchase = await load(db, Purchase, purchase_id)
    if initiator_id == purchase.buyer_id:
        initiated_by, respondent_id = "buyer", purchase.seller_id
    elif initiator_id == purchase.seller_id:
        initiated_by, respondent_id = "seller", purchase.buyer_id
    else:
        raise Unauthorized(f"Not a party to purchase {purchase_id}")

    existing = await get_active_dispute(db, purchase_id)
    if existing is not None:
        raise DuplicateDispute(purchase_id, existing.id)

    escrow = await escrow_service.get_escrow_by_purchase(db, purchase_id)
    try:
        async with atomic(db):
            result = await escrow_service.initiate_dispute(
                db, escrow, reason, initiated_by, now=now
            )
            # A delivery stamp means the escrow was DELIVERED when the dispute opened.
            before = (
                EscrowStatus.DELIVERED
                if result.escrow.account_delivered_at is not None
                else EscrowStatus.FUNDED
            )
            dispute = Dispute(
                purchase_id=purchase_id,
                initiator_id=initiator_id,
                respondent_id=respondent_id,
                reason=reason.strip(),
                description=description or "",
                evidence=list(evidence or []),
                status=DisputeStatus.OPEN.value,
                priority=priority.value,
                escrow_status_before=before.value,
                created_at=now,
            )
            db.add(dispute)
            await db.flush()
    except InvalidStateTransition as exc:
        # Lost the race against another dispute on the same escrow.
        if exc.current == EscrowStatus.DISPUTED:
            raise DuplicateDispute(purchase_id) from exc
        raise

    logger.info(
        "Dispute %s opened on purchase %s by %s (%s)",
        dispute.id, purchase_id, initiated_by, priority.value,
    )
    notifications.notify(
        "dispute.created",
        respondent_id,
        dispute.id,
        {"purchase_id": purchase_id, "reason": dispute.reason},
    )
    return dispute


async def assign_to_admin(
    db: AsyncSession, dispute_id: str, admin_id: str, *, now: datetime | None = None
) -> Dispute:
    """OPEN -> IN_REVIEW."""
    now = now or _utcnow()
    async with atomic(db):
        await guarded_update(
            db, Dispute, dispute_id, DisputeStatus.OPEN,
            {"status": DisputeStatus.IN_REVIEW, "admin_id": admin_id, "reviewed_at": now},
            now=now,
        )
    logger.info("Dispute %s assigned to admin %s", dispute_id, admin_id)
    return await get_dispute(db, dispute_id)


def _fund_disposition(
    dispute: Dispute, buyer_id: str, favored: FavoredParty, fund_disposition: str | None
) -> str:
    if favored is FavoredParty.NEUTRAL:
        if fund_disposition not in _FUND_DISPOSITIONS:
            raise ValidationError(
                "A neutral verdict must say whether funds are released or refunded"
            )
        return fund_disposition
    favored_id = dispute.initiator_id if favored is FavoredParty.INITIATOR else dispute.respondent_id
    return "refund" if favored_id == buyer_id else "release"


async def resolve_dispute(
    db: AsyncSession,
    dispute_id: str,
    resolution: str,
    admin_id: str,
    favored_party,
    *,
    fund_disposition: str | None = None,
    listings: ListingGateway | None = None,
    now: datetime | None = None,
) -> Dispute:
    """IN_REVIEW -> RESOLVED and settle the escrow in one transaction.

    Favoring the buyer refunds; favoring the seller releases. A neutral
    verdict has to name the fund movement explicitly.
    """
    if not resolution or not resolution.strip():
        raise ValidationError("A resolution text is required")
    try:
        favored = FavoredParty(favored_party)
    except ValueError as exc:
        raise ValidationError(f"Unknown favored party: {favored_party!r}") from exc
    now = now or _utcnow()

    dispute = await get_dispute(db, dispute_id)
    if dispute.admin_id is not None and dispute.admin_id != admin_id:
        raise Unauthorized(f"Dispute {dispute_id} is assigned to another admin")
    escrow = await escrow_service.get_escrow_by_purchase(db, dispute.purchase_id)
    disposition = _fund_disposition(dispute, escrow.buyer_id, favored, fund_disposition)

    async with atomic(db):
        await guarded_update(
            db, Dispute, dispute_id, DisputeStatus.IN_REVIEW,
            {
                "status": DisputeStatus.RESOLVED,
                "resolution": resolution.strip(),
                "favored_party": favored.value,
                "admin_id": admin_id,
                "resolved_at": now,
            },
            now=now,
        )
        settled = await escrow_service.resolve_dispute(
            db, escrow, disposition, resolution.strip(), listings=listings, now=now
        )

    logger.info(
        "Dispute %s resolved by %s: favored=%s funds=%s",
        dispute_id, admin_id, favored.value, disposition,
    )
    for party in (dispute.initiator_id, dispute.respondent_id):
        notifications.notify(
            "dispute.resolved",
            party,
            dispute_id,
            {"favored_party": favored.value, "funds": disposition},
        )
    escrow_service.notify_settlement(settled)
    return await get_dispute(db, dispute_id)


async def close_dispute(
    db: AsyncSession,
    dispute_id: str,
    admin_id: str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> Dispute:
    """Close without a verdict and hand the escrow back to where it was."""
    now = now or _utcnow()
    dispute = await get_dispute(db, dispute_id)
    if dispute.admin_id is not None and dispute.admin_id != admin_id:
        raise Unauthorized(f"Dispute {dispute_id} is assigned to another admin")
    escrow = await escrow_service.get_escrow_by_purchase(db, dispute.purchase_id)

    async with atomic(db):
        await guarded_update(
            db, Dispute, dispute_id, _ACTIVE,
            {
                "status": DisputeStatus.CLOSED,
                "admin_id": dispute.admin_id or admin_id,
                "resolution": reason,
                "closed_at": now,
            },
            now=now,
        )
        await escrow_service.withdraw_dispute(
            db, escrow, dispute.escrow_status_before or EscrowStatus.FUNDED.value, now=now
        )

    logger.info("Dispute %s closed by %s", dispute_id, admin_id)
    for party in (dispute.initiator_id, dispute.respondent_id):
        notifications.notify("dispute.closed", party, dispute_id, {"reason": reason})
    return await get_dispute(db, dispute_id)


async def add_evidence(
    db: AsyncSession,
    dispute_id: str,
    user_id: str,
    evidence: list | str,
) -> Dispute:
    """Append evidence references while the dispute is still open."""
    items = [evidence] if isinstance(evidence, str) else list(evidence)
    if not items:
        raise ValidationError("No evidence given")
    dispute = await get_dispute(db, dispute_id)
    if user_id not in (dispute.initiator_id, dispute.respondent_id):
        raise Unauthorized(f"Not a party to dispute {dispute_id}")

    return await guarded_append(db, Dispute, dispute_id, _ACTIVE, "evidence", items)


async def escalate_dispute(
    db: AsyncSession, dispute_id: str, new_priority, *, now: datetime | None = None
) -> Dispute:
    """Change the priority of an open dispute. Status is left alone."""
    priority = _priority(new_priority)
    async with atomic(db):
        await guarded_update(
            db, Dispute, dispute_id, _ACTIVE, {"priority": priority.value}, now=now
        )
    logger.info("Dispute %s priority set to %s", dispute_id, priority.value)
    return await get_dispute(db, dispute_id)


async def get_overdue_disputes(
    db: AsyncSession,
    hours_overdue: int | None = None,
    limit: int = 20,
    now: datetime | None = None,
) -> list[Dispute]:
    hours = settings.dispute_overdue_hours if hours_overdue is None else hours_overdue
    cutoff = (now or _utcnow()) - timedelta(hours=hours)
    result = await fetch(
        db,
        _queue_order(
            select(Dispute).where(Dispute.status.in_(_ACTIVE), Dispute.created_at < cutoff)
        ).limit(limit)
    )
    return list(result.scalars().all())


async def escalate_overdue_disputes(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Raise every overdue open dispute to HIGH in one guarded update."""
    now = now or _utcnow()
    cutoff = now - timedelta(hours=settings.dispute_overdue_hours)
    async with atomic(db):
        escalated = await bulk_guarded_update(
            db,
            Dispute,
            _ACTIVE,
            Dispute.created_at,
            cutoff,
            {"priority": DisputePriority.HIGH.value},
            extra_where=[Dispute.priority != DisputePriority.HIGH.value],
            now=now,
        )
    if escalated:
        logger.info("Escalated %d overdue disputes to high priority", len(escalated))
    return escalated


async def list_user_disputes(db: AsyncSession, user_id: str, query=None, **options) -> Page:
    query = build_query(DisputeQuery, query, **options)
    if query.as_initiator and not query.as_respondent:
        where = [Dispute.initiator_id == user_id]
    elif query.as_respondent and not query.as_initiator:
        where = [Dispute.respondent_id == user_id]
    else:
        where = [or_(Dispute.initiator_id == user_id, Dispute.respondent_id == user_id)]
    if query.status:
        where.append(Dispute.status == query.status.value)

    total = (await fetch(db, select(func.count(Dispute.id)).where(*where))).scalar() or 0
    result = await fetch(
        db,
        select(Dispute)
        .where(*where)
        .order_by(Dispute.created_at.desc())
        .offset(query.offset)
        .limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def list_admin_disputes(db: AsyncSession, query=None, **options) -> Page:
    query = build_query(AdminDisputeQuery, query, **options)
    where = []
    if query.unassigned:
        where.append(Dispute.admin_id.is_(None))
    elif query.admin_id:
        where.append(Dispute.admin_id == query.admin_id)
    if query.status:
        where.append(Dispute.status == query.status.value)
    if query.priority:
        where.append(Dispute.priority == query.priority.value)

    total = (await fetch(db, select(func.count(Dispute.id)).where(*where))).scalar() or 0
    result = await fetch(
        db,
        _queue_order(select(Dispute).where(*where)).offset(query.offset).limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def get_dispute_stats(db: AsyncSession, admin_id: str | None = None) -> dict:
    where = [Dispute.admin_id == admin_id] if admin_id else []

    by_status = dict(
        (await fetch(
            db,
            select(Dispute.status, func.count(Dispute.id)).where(*where).group_by(Dispute.status)
        )).all()
    )
    by_priority = dict(
        (await fetch(
            db,
            select(Dispute.priority, func.count(Dispute.id))
            .where(*where, Dispute.status.in_(_ACTIVE))
            .group_by(Dispute.priority)
        )).all()
    )
    resolved = (
        await fetch(
            db,
            select(Dispute.created_at, Dispute.resolved_at).where(
                *where, Dispute.resolved_at.isnot(None)
            )
        )
    ).all()
    hours = [(r - c).total_seconds() / 3600 for c, r in resolved]

    return {
        "total": sum(by_status.values()),
        "by_status": {s.value: by_status.get(s.value, 0) for s in DisputeStatus},
        "open_by_priority": {p.value: by_priority.get(p.value, 0) for p in DisputePriority},
        "average_resolution_hours": round(sum(hours) / len(hours), 2) if hours else None,
    }
