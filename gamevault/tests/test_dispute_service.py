"""Dispute resolver: opening, arbitration, withdrawal and the admin queue."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.core.exceptions import (
    DuplicateDispute,
    InvalidStateTransition,
    Unauthorized,
    ValidationError,
)
from gamevault.core import state_machine
from gamevault.core.notifications import drain_notifications
from gamevault.models.dispute import Dispute
from gamevault.models.listing import GameListing
from gamevault.services import dispute_service, escrow_service, purchase_service, sale_service


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _states(db: AsyncSession, purchase_id: str) -> tuple[str, str, str | None]:
    purchase = await purchase_service.get_purchase(db, purchase_id)
    escrow = await escrow_service.get_escrow_by_purchase(db, purchase_id)
    sale = await sale_service.get_sale_by_purchase(db, purchase_id)
    return purchase.status, escrow.status, sale.status if sale else None


# ---------------------------------------------------------------------------
# Scenario: buyer disputes a delivered account and wins a refund
# ---------------------------------------------------------------------------

async def test_buyer_dispute_resolved_as_refund(db: AsyncSession, make_delivered, sink):
    purchase, escrow = await make_delivered()

    dispute = await dispute_service.create_dispute(
        db, purchase.id, purchase.buyer_id, "item mismatch", "Account has no skins",
    )
    assert dispute.status == "open"
    assert dispute.respondent_id == purchase.seller_id
    assert dispute.escrow_status_before == "delivered"
    assert await _states(db, purchase.id) == ("disputed", "disputed", "disputed")
    escrow = await escrow_service.get_escrow(db, escrow.id)
    assert escrow.buyer_notes == "item mismatch"
    assert escrow.dispute_started_at is not None

    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")
    resolved = await dispute_service.resolve_dispute(
        db, dispute.id, "Seller could not prove delivery", "admin-1", "initiator",
    )

    assert resolved.status == "resolved"
    assert resolved.favored_party == "initiator"
    assert resolved.resolved_at is not None
    assert await _states(db, purchase.id) == ("refunded", "refunded", "refunded")
    escrow = await escrow_service.get_escrow(db, escrow.id)
    assert escrow.resolved_at is not None
    assert escrow.admin_notes == "Seller could not prove delivery"
    listing = await db.get(GameListing, purchase.listing_id, populate_existing=True)
    assert listing.status == "active"

    await drain_notifications()
    assert sink.for_type("dispute.created")[0].user_id == purchase.seller_id
    assert {e.user_id for e in sink.for_type("dispute.resolved")} == {
        purchase.buyer_id, purchase.seller_id,
    }
    assert sink.for_type("escrow.refunded")[0].user_id == purchase.buyer_id


async def test_seller_favored_releases_funds(db: AsyncSession, make_delivered, sink):
    purchase, _ = await make_delivered()
    dispute = await dispute_service.create_dispute(
        db, purchase.id, purchase.buyer_id, "not_received",
    )
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")

    await dispute_service.resolve_dispute(
        db, dispute.id, "Login logs show the buyer signed in", "admin-1", "respondent",
    )

    assert await _states(db, purchase.id) == ("completed", "released", "completed")
    escrow = await escrow_service.get_escrow_by_purchase(db, purchase.id)
    assert escrow.released_at is not None
    listing = await db.get(GameListing, purchase.listing_id, populate_existing=True)
    assert listing.status == "sold"

    await drain_notifications()
    assert sink.for_type("escrow.released")[0].user_id == purchase.seller_id


async def test_seller_initiated_dispute_favoring_initiator_releases(
    db: AsyncSession, make_funded,
):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(
        db, purchase.id, purchase.seller_id, "buyer_unresponsive",
    )
    assert dispute.respondent_id == purchase.buyer_id
    assert dispute.escrow_status_before == "funded"
    escrow = await escrow_service.get_escrow_by_purchase(db, purchase.id)
    assert escrow.seller_notes == "buyer_unresponsive"

    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")
    await dispute_service.resolve_dispute(db, dispute.id, "Seller is right", "admin-1", "initiator")

    assert (await _states(db, purchase.id))[1] == "released"


# ---------------------------------------------------------------------------
# Neutral verdicts
# ---------------------------------------------------------------------------

async def test_neutral_verdict_requires_fund_disposition(db: AsyncSession, make_delivered):
    purchase, _ = await make_delivered()
    purchase_id = purchase.id
    dispute = await dispute_service.create_dispute(db, purchase_id, purchase.buyer_id, "unclear")
    dispute_id = dispute.id
    await dispute_service.assign_to_admin(db, dispute_id, "admin-1")

    with pytest.raises(ValidationError):
        await dispute_service.resolve_dispute(db, dispute_id, "Both at fault", "admin-1", "neutral")

    dispute = await dispute_service.get_dispute(db, dispute_id)
    assert dispute.status == "in_review"
    assert (await _states(db, purchase_id))[1] == "disputed"


async def test_neutral_verdict_with_refund(db: AsyncSession, make_delivered):
    purchase, _ = await make_delivered()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "unclear")
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")

    resolved = await dispute_service.resolve_dispute(
        db, dispute.id, "Both at fault, buyer refunded", "admin-1", "neutral",
        fund_disposition="refund",
    )

    assert resolved.favored_party == "neutral"
    assert (await _states(db, purchase.id))[1] == "refunded"


# ---------------------------------------------------------------------------
# One active dispute per purchase
# ---------------------------------------------------------------------------

async def test_second_open_dispute_rejected(db: AsyncSession, make_delivered):
    purchase, _ = await make_delivered()
    purchase_id, buyer_id, seller_id = purchase.id, purchase.buyer_id, purchase.seller_id
    first = await dispute_service.create_dispute(db, purchase_id, buyer_id, "mismatch")

    with pytest.raises(DuplicateDispute) as exc_info:
        await dispute_service.create_dispute(db, purchase_id, seller_id, "counter-claim")

    assert exc_info.value.dispute_id == first.id
    assert exc_info.value.status_code == 409
    count = (
        await db.execute(select(func.count(Dispute.id)).where(Dispute.purchase_id == purchase_id))
    ).scalar()
    assert count == 1


async def test_escrow_already_disputed_reports_duplicate(db: AsyncSession, make_delivered):
    purchase, _ = await make_delivered()
    purchase_id, buyer_id = purchase.id, purchase.buyer_id
    first = await dispute_service.create_dispute(db, purchase_id, buyer_id, "mismatch")
    # Simulate the check-then-write race: the first dispute is invisible to the check.
    await db.execute(update(Dispute).where(Dispute.id == first.id).values(status="closed"))
    await db.commit()

    with pytest.raises(DuplicateDispute):
        await dispute_service.create_dispute(db, purchase_id, buyer_id, "again")


async def test_new_dispute_allowed_after_closure(db: AsyncSession, make_delivered):
    purchase, _ = await make_delivered()
    first = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "mismatch")
    await dispute_service.close_dispute(db, first.id, "admin-1", "Buyer withdrew")

    second = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "still wrong")

    assert second.status == "open"
    assert second.id != first.id


# ---------------------------------------------------------------------------
# Guards and validation
# ---------------------------------------------------------------------------

async def test_cannot_dispute_unpaid_purchase(db: AsyncSession, make_purchase):
    purchase, _ = await make_purchase()

    with pytest.raises(InvalidStateTransition):
        await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")


async def test_outsider_cannot_dispute(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()

    with pytest.raises(Unauthorized):
        await dispute_service.create_dispute(db, purchase.id, "stranger", "scam")


async def test_dispute_needs_reason(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()

    with pytest.raises(ValidationError):
        await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "  ")


async def test_dispute_rejects_unknown_priority(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()

    with pytest.raises(ValidationError):
        await dispute_service.create_dispute(
            db, purchase.id, purchase.buyer_id, "scam", priority="urgent",
        )


async def test_resolve_requires_review(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")

    with pytest.raises(InvalidStateTransition):
        await dispute_service.resolve_dispute(db, dispute.id, "Refund", "admin-1", "initiator")


async def test_resolve_requires_text(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")

    with pytest.raises(ValidationError):
        await dispute_service.resolve_dispute(db, dispute.id, "", "admin-1", "initiator")


async def test_only_assigned_admin_resolves(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")

    with pytest.raises(Unauthorized):
        await dispute_service.resolve_dispute(db, dispute.id, "Refund", "admin-2", "initiator")


async def test_assign_twice_fails(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")

    with pytest.raises(InvalidStateTransition):
        await dispute_service.assign_to_admin(db, dispute.id, "admin-2")


# ---------------------------------------------------------------------------
# Closure restores the escrow
# ---------------------------------------------------------------------------

async def test_close_restores_delivered_escrow(db: AsyncSession, make_delivered, sink):
    purchase, _ = await make_delivered()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "oops")

    closed = await dispute_service.close_dispute(db, dispute.id, "admin-1", "Opened by mistake")

    assert closed.status == "closed"
    assert closed.closed_at is not None
    assert closed.resolution == "Opened by mistake"
    assert await _states(db, purchase.id) == ("delivered", "delivered", "delivered")

    await drain_notifications()
    assert len(sink.for_type("dispute.closed")) == 2


async def test_close_restores_funded_escrow(db: AsyncSession, make_funded):
    purchase, escrow = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.seller_id, "oops")
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")

    await dispute_service.close_dispute(db, dispute.id, "admin-1")

    assert await _states(db, purchase.id) == ("paid", "funded", "pending")
    # The workflow continues normally afterwards.
    result = await escrow_service.mark_delivered(db, escrow.id, escrow.seller_id)
    assert result.escrow.status == "delivered"


async def test_close_resolved_dispute_fails(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")
    await dispute_service.resolve_dispute(db, dispute.id, "Refund", "admin-1", "initiator")

    with pytest.raises(InvalidStateTransition):
        await dispute_service.close_dispute(db, dispute.id, "admin-1")


async def test_other_admin_cannot_close(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")
    await dispute_service.assign_to_admin(db, dispute.id, "admin-1")

    with pytest.raises(Unauthorized):
        await dispute_service.close_dispute(db, dispute.id, "admin-2", "Not my call")

    assert (await dispute_service.get_dispute(db, dispute.id)).status == "in_review"
    assert await _states(db, purchase.id) == ("disputed", "disputed", "disputed")


# ---------------------------------------------------------------------------
# Evidence and priority
# ---------------------------------------------------------------------------

async def test_parties_add_evidence(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(
        db, purchase.id, purchase.buyer_id, "scam", evidence=["img://1"],
    )

    await dispute_service.add_evidence(db, dispute.id, purchase.buyer_id, "img://2")
    updated = await dispute_service.add_evidence(
        db, dispute.id, purchase.seller_id, ["log://a", "log://b"],
    )

    assert updated.evidence == ["img://1", "img://2", "log://a", "log://b"]


async def test_outsider_cannot_add_evidence(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(db, purchase.id, purchase.buyer_id, "scam")

    with pytest.raises(Unauthorized):
        await dispute_service.add_evidence(db, dispute.id, "stranger", "img://x")


async def test_concurrent_evidence_is_not_lost(db: AsyncSession, make_funded, monkeypatch):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(
        db, purchase.id, purchase.buyer_id, "scam", evidence=["img://1"],
    )
    dispute_id, buyer_id = dispute.id, purchase.buyer_id
    real_load = state_machine.load
    raced = []

    async def load_then_race(session, model, entity_id, **kwargs):
        row = await real_load(session, model, entity_id, **kwargs)
        if model is Dispute and not raced:
            raced.append(entity_id)
            # The seller appends between this read and the guarded write.
            await session.execute(
                update(Dispute)
                .where(Dispute.id == entity_id)
                .values(
                    evidence=["img://1", "log://seller"],
                    updated_at=_utcnow() + timedelta(seconds=1),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return row

    monkeypatch.setattr(state_machine, "load", load_then_race)

    updated = await dispute_service.add_evidence(db, dispute_id, buyer_id, "img://2")

    assert raced == [dispute_id]
    assert updated.evidence == ["img://1", "log://seller", "img://2"]


async def test_escalate_changes_priority_only(db: AsyncSession, make_funded):
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(
        db, purchase.id, purchase.buyer_id, "scam", priority="low",
    )

    escalated = await dispute_service.escalate_dispute(db, dispute.id, "high")

    assert escalated.priority == "high"
    assert escalated.status == "open"


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

async def _dispute_aged(db, make_funded, hours: int, priority: str) -> str:
    purchase, _ = await make_funded()
    dispute = await dispute_service.create_dispute(
        db, purchase.id, purchase.buyer_id, "scam", priority=priority,
        now=_utcnow() - timedelta(hours=hours),
    )
    return dispute.id


async def test_overdue_queue_ordering(db: AsyncSession, make_funded):
    old_low = await _dispute_aged(db, make_funded, 100, "low")
    old_high = await _dispute_aged(db, make_funded, 60, "high")
    older_high = await _dispute_aged(db, make_funded, 90, "high")
    medium = await _dispute_aged(db, make_funded, 72, "medium")
    await _dispute_aged(db, make_funded, 2, "high")  # not overdue yet

    overdue = await dispute_service.get_overdue_disputes(db, hours_overdue=48)

    assert [d.id for d in overdue] == [older_high, old_high, medium, old_low]


async def test_admin_queue_filters(db: AsyncSession, make_funded):
    assigned = await _dispute_aged(db, make_funded, 5, "low")
    waiting = await _dispute_aged(db, make_funded, 3, "high")
    await dispute_service.assign_to_admin(db, assigned, "admin-1")

    unassigned = await dispute_service.list_admin_disputes(db, unassigned=True)
    assert [d.id for d in unassigned.items] == [waiting]

    mine = await dispute_service.list_admin_disputes(db, admin_id="admin-1")
    assert [d.id for d in mine.items] == [assigned]

    in_review = await dispute_service.list_admin_disputes(db, status="in_review")
    assert in_review.total == 1

    with pytest.raises(ValidationError):
        await dispute_service.list_admin_disputes(db, unassigned=True, admin_id="admin-1")


async def test_user_disputes_by_side(db: AsyncSession, make_funded):
    purchase, _ = await make_funded(buyer_id="user-u")
    await dispute_service.create_dispute(db, purchase.id, "user-u", "scam")
    other, _ = await make_funded(seller_id="user-u")
    await dispute_service.create_dispute(db, other.id, other.buyer_id, "scam")

    both = await dispute_service.list_user_disputes(db, "user-u")
    assert both.total == 2
    as_initiator = await dispute_service.list_user_disputes(db, "user-u", as_initiator=True)
    assert as_initiator.total == 1
    as_respondent = await dispute_service.list_user_disputes(db, "user-u", as_respondent=True)
    assert as_respondent.items[0].respondent_id == "user-u"


async def test_dispute_stats(db: AsyncSession, make_funded):
    first = await _dispute_aged(db, make_funded, 10, "high")
    await _dispute_aged(db, make_funded, 1, "low")
    await dispute_service.assign_to_admin(db, first, "admin-1")
    await dispute_service.resolve_dispute(db, first, "Refunded", "admin-1", "initiator")

    stats = await dispute_service.get_dispute_stats(db)

    assert stats["total"] == 2
    assert stats["by_status"]["resolved"] == 1
    assert stats["by_status"]["open"] == 1
    assert stats["open_by_priority"] == {"low": 1, "medium": 0, "high": 0}
    assert stats["average_resolution_hours"] == pytest.approx(10, abs=0.1)
