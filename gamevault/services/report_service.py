"""Report triage: abuse reports against a user or a listing.

    pending -> under_review -> resolved | dismissed

Same queue discipline as disputes (unassigned + status filter, oldest
first) but no money is involved, so nothing outside the report moves.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.core import notifications
from gamevault.core.exceptions import Unauthorized, ValidationError
from gamevault.core.state_machine import (
    atomic,
    fetch,
    guarded_append,
    guarded_update,
    load,
)
from gamevault.models.enums import ReportStatus
from gamevault.models.report import Report
from gamevault.schemas.queries import (
    AdminReportQuery,
    Page,
    ReportQuery,
    Timeframe,
    build_query,
    timeframe_start,
)

logger = logging.getLogger(__name__)

_OPEN = [ReportStatus.PENDING.value, ReportStatus.UNDER_REVIEW.value]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def get_report(db: AsyncSession, report_id: str) -> Report:
    return await load(db, Report, report_id)


async def create_report(
    db: AsyncSession,
    reporter_id: str,
    reason: str,
    description: str = "",
    *,
    reported_user_id: str | None = None,
    reported_listing_id: str | None = None,
    evidence: list | None = None,
) -> Report:
    if (reported_user_id is None) == (reported_listing_id is None):
        raise ValidationError("A report targets exactly one user or one listing")
    if reported_user_id is not None and reported_user_id == reporter_id:
        raise ValidationError("Cannot report yourself")
    if not reason or not reason.strip():
        raise ValidationError("A report needs a reason")

    async with atomic(db):
        report = Report(
            reporter_id=reporter_id,
            reported_user_id=reported_user_id,
            reported_listing_id=reported_listing_id,
            reason=reason.strip(),
            description=description or "",
            evidence=list(evidence or []),
            status=ReportStatus.PENDING.value,
        )
        db.add(report)
        await db.flush()

    logger.info(
        "Report %s filed by %s against %s",
        report.id, reporter_id,
        f"user {reported_user_id}" if reported_user_id else f"listing {reported_listing_id}",
    )
    return report


async def assign_to_admin(
    db: AsyncSession, report_id: str, admin_id: str, *, now: datetime | None = None
) -> Report:
    """PENDING -> UNDER_REVIEW."""
    now = now or _utcnow()
    async with atomic(db):
        await guarded_update(
            db, Report, report_id, ReportStatus.PENDING,
            {"status": ReportStatus.UNDER_REVIEW, "admin_id": admin_id, "reviewed_at": now},
            now=now,
        )
    return await get_report(db, report_id)


async def _close(
    db: AsyncSession,
    report_id: str,
    admin_id: str,
    values: dict,
    event_type: str,
    now: datetime,
) -> Report:
    report = await get_report(db, report_id)
    if report.admin_id is not None and report.admin_id != admin_id:
        raise Unauthorized(f"Report {report_id} is assigned to another admin")

    async with atomic(db):
        await guarded_update(
            db, Report, report_id, ReportStatus.UNDER_REVIEW,
            {**values, "admin_id": admin_id}, now=now,
        )

    report = await get_report(db, report_id)
    logger.info("Report %s %s by %s", report_id, report.status, admin_id)
    notifications.notify(
        event_type, report.reporter_id, report_id, {"resolution": report.resolution}
    )
    return report


async def resolve_report(
    db: AsyncSession,
    report_id: str,
    admin_id: str,
    resolution: str,
    action_taken: str | None = None,
    *,
    now: datetime | None = None,
) -> Report:
    """UNDER_REVIEW -> RESOLVED, with the action taken against the target."""
    if not resolution or not resolution.strip():
        raise ValidationError("A resolution text is required")
    now = now or _utcnow()
    values = {
        "status": ReportStatus.RESOLVED,
        "resolution": resolution.strip(),
        "action_taken": action_taken,
        "resolved_at": now,
    }
    return await _close(db, report_id, admin_id, values, "report.resolved", now)


async def dismiss_report(
    db: AsyncSession,
    report_id: str,
    admin_id: str,
    reason: str,
    *,
    now: datetime | None = None,
) -> Report:
    """UNDER_REVIEW -> DISMISSED: no action against the target."""
    if not reason or not reason.strip():
        raise ValidationError("A dismissal reason is required")
    now = now or _utcnow()
    values = {
        "status": ReportStatus.DISMISSED,
        "resolution": reason.strip(),
        "dismissed_at": now,
    }
    return await _close(db, report_id, admin_id, values, "report.dismissed", now)


async def add_evidence(
    db: AsyncSession,
    report_id: str,
    user_id: str,
    evidence: list | str,
) -> Report:
    items = [evidence] if isinstance(evidence, str) else list(evidence)
    if not items:
        raise ValidationError("No evidence given")
    report = await get_report(db, report_id)
    if user_id != report.reporter_id:
        raise Unauthorized(f"Only the reporter can add evidence to report {report_id}")

    return await guarded_append(db, Report, report_id, _OPEN, "evidence", items)


async def list_user_reports(db: AsyncSession, reporter_id: str, query=None, **options) -> Page:
    query = build_query(ReportQuery, query, **options)
    where = [Report.reporter_id == reporter_id]
    if query.status:
        where.append(Report.status == query.status.value)

    total = (await fetch(db, select(func.count(Report.id)).where(*where))).scalar() or 0
    result = await fetch(
        db,
        select(Report)
        .where(*where)
        .order_by(Report.created_at.desc())
        .offset(query.offset)
        .limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def list_admin_reports(db: AsyncSession, query=None, **options) -> Page:
    """Admin queue, oldest first."""
    query = build_query(AdminReportQuery, query, **options)
    where = []
    if query.unassigned:
        where.append(Report.admin_id.is_(None))
    elif query.admin_id:
        where.append(Report.admin_id == query.admin_id)
    if query.status:
        where.append(Report.status == query.status.value)
    if query.reason:
        where.append(Report.reason == query.reason)

    total = (await fetch(db, select(func.count(Report.id)).where(*where))).scalar() or 0
    result = await fetch(
        db,
        select(Report)
        .where(*where)
        .order_by(Report.created_at.asc())
        .offset(query.offset)
        .limit(query.limit)
    )
    return Page(items=list(result.scalars().all()), total=total, page=query.page, limit=query.limit)


async def get_report_stats(db: AsyncSession, admin_id: str | None = None) -> dict:
    where = [Report.admin_id == admin_id] if admin_id else []

    by_status = dict(
        (await fetch(
            db,
            select(Report.status, func.count(Report.id)).where(*where).group_by(Report.status)
        )).all()
    )
    by_reason = dict(
        (await fetch(
            db,
            select(Report.reason, func.count(Report.id)).where(*where).group_by(Report.reason)
        )).all()
    )
    handled = (
        await fetch(
            db,
            select(Report.created_at, func.coalesce(Report.resolved_at, Report.dismissed_at))
            .where(*where, Report.status.in_([
                ReportStatus.RESOLVED.value, ReportStatus.DISMISSED.value,
            ]))
        )
    ).all()
    hours = [(done - created).total_seconds() / 3600 for created, done in handled if done]

    return {
        "total": sum(by_status.values()),
        "by_status": {s.value: by_status.get(s.value, 0) for s in ReportStatus},
        "by_reason": by_reason,
        "average_handling_hours": round(sum(hours) / len(hours), 2) if hours else None,
    }


async def _frequently_reported(
    db: AsyncSession, column, timeframe: Timeframe, limit: int, now: datetime | None
) -> list[dict]:
    since = timeframe_start(timeframe, now or _utcnow())

    counts = (
        await fetch(
            db,
            select(column, func.count(Report.id).label("report_count"))
            .where(column.isnot(None), Report.created_at >= since)
            .group_by(column)
            .order_by(func.count(Report.id).desc(), column)
            .limit(limit)
        )
    ).all()
    if not counts:
        return []

    target_ids = [row[0] for row in counts]
    reasons: dict[str, set] = {target: set() for target in target_ids}
    rows = await fetch(
        db,
        select(column, Report.reason)
        .where(column.in_(target_ids), Report.created_at >= since)
        .distinct()
    )
    for target, reason in rows.all():
        reasons[target].add(reason)

    return [
        {"id": target, "report_count": count, "reasons": sorted(reasons[target])}
        for target, count in counts
    ]


async def get_frequently_reported_users(
    db: AsyncSession, timeframe: Timeframe = "week", limit: int = 10, now: datetime | None = None
) -> list[dict]:
    return await _frequently_reported(db, Report.reported_user_id, timeframe, limit, now)


async def get_frequently_reported_listings(
    db: AsyncSession, timeframe: Timeframe = "week", limit: int = 10, now: datetime | None = None
) -> list[dict]:
    return await _frequently_reported(db, Report.reported_listing_id, timeframe, limit, now)
