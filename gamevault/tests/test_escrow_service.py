"""Escrow engine: the state graph, party checks and terminal immutability."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.core.exceptions import InvalidStateTransition, NotFound, Unauthorized
from gamevault.core.notifications import drain_notifications
from gamevault.models.escrow import Escrow
from gamevault.models.listing import GameListing
from gamevault.services import escrow_service, sale_service


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

async def test_new_purchase_has_pending_escrow(db: AsyncSession, make_purchase):
    purchase, escrow = await make_purchase(amount="100.00")

    assert escrow.status == "pending"
    assert escrow.purchase_id == purchase.id
    assert escrow.amount == Decimal("100.00")
    assert escrow.buyer_id == purchase.buyer_id
    assert escrow.seller_id == purchase.seller_id


async def test_fund_moves_escrow_to_funded(db: AsyncSession, make_purchase, sink):
    _, escrow = await make_purchase()

    result = await escrow_service.fund(db, escrow.id, {"gateway": "test", "ref": "abc"})

    assert result.escrow.status == "funded"
    assert result.escrow.funds_held_at is not None
    assert result.escrow.payment_proof == {"gateway": "test", "ref": "abc"}
    assert result.purchase.status == "paid"
    assert result.sale is not None and result.sale.status == "pending"

    await drain_notifications()
    assert sink.types() == ["purchase.created", "escrow.funded"]
    assert sink.for_type("escrow.funded")[0].user_id == escrow.seller_id


async def test_full_happy_path(db: AsyncSession, make_funded, sink):
    purchase, escrow = await make_funded()

    delivered = await escrow_service.mark_delivered(
        db, escrow.id, escrow.seller_id, {"screenshot": "s3://proof"}, "Sent via chat",
    )
    assert delivered.escrow.status == "delivered"
    assert delivered.escrow.delivery_proof == {"screenshot": "s3://proof"}
    assert delivered.escrow.seller_notes == "Sent via chat"
    assert delivered.purchase.status == "delivered"
    assert delivered.sale.status == "delivered"

    confirmed = await escrow_service.confirm_delivery(db, escrow.id, escrow.buyer_id, "All good")
    assert confirmed.escrow.status == "confirmed"
    assert confirmed.escrow.buyer_notes == "All good"
    assert confirmed.escrow.buyer_confirmed_at is not None
    # Confirmation is acceptance, but the money has not moved yet.
    assert confirmed.purchase.status == "delivered"
    assert confirmed.sale.status == "delivered"

    released = await escrow_service.release(db, escrow.id)
    assert released.escrow.status == "released"
    assert released.escrow.released_at is not None
    assert released.purchase.status == "completed"
    assert released.sale.status == "completed"

    listing = await db.get(GameListing, purchase.listing_id, populate_existing=True)
    assert listing.status == "sold"

    await drain_notifications()
    payout = sink.for_type("escrow.released")
    assert len(payout) == 1
    assert payout[0].user_id == escrow.seller_id
    assert payout[0].data["net_amount"] == "90.00"


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

async def test_deliver_requires_funding(db: AsyncSession, make_purchase):
    _, escrow = await make_purchase()

    with pytest.raises(InvalidStateTransition) as exc_info:
        await escrow_service.mark_delivered(db, escrow.id, escrow.seller_id)

    assert exc_info.value.current == "pending"
    assert exc_info.value.status_code == 409


async def test_confirm_requires_delivery(db: AsyncSession, make_funded):
    _, escrow = await make_funded()

    with pytest.raises(InvalidStateTransition):
        await escrow_service.confirm_delivery(db, escrow.id, escrow.buyer_id)


async def test_release_requires_confirmation(db: AsyncSession, make_delivered):
    _, escrow = await make_delivered()
    escrow_id = escrow.id  # the failed call rolls back and expires loaded rows

    with pytest.raises(InvalidStateTransition):
        await escrow_service.release(db, escrow_id)

    escrow = await escrow_service.get_escrow(db, escrow_id)
    assert escrow.status == "delivered"


async def test_only_seller_can_mark_delivered(db: AsyncSession, make_funded):
    _, escrow = await make_funded()

    with pytest.raises(Unauthorized):
        await escrow_service.mark_delivered(db, escrow.id, escrow.buyer_id)


async def test_only_buyer_can_confirm(db: AsyncSession, make_delivered):
    _, escrow = await make_delivered()

    with pytest.raises(Unauthorized):
        await escrow_service.confirm_delivery(db, escrow.id, escrow.seller_id)


async def test_outsider_cannot_cancel(db: AsyncSession, make_purchase):
    _, escrow = await make_purchase()

    with pytest.raises(Unauthorized):
        await escrow_service.cancel(db, escrow.id, "changed my mind", user_id="stranger")


async def test_unknown_escrow_is_not_found(db: AsyncSession):
    with pytest.raises(NotFound) as exc_info:
        await escrow_service.get_escrow(db, "missing-id")
    assert exc_info.value.status_code == 404


# ---------------------------------------------------------------------------
# Terminal immutability
# ---------------------------------------------------------------------------

async def _released(db, make_delivered):
    _, escrow = await make_delivered()
    await escrow_service.confirm_delivery(db, escrow.id, escrow.buyer_id)
    await escrow_service.release(db, escrow.id)
    return await escrow_service.get_escrow(db, escrow.id)


async def _refunded(db, make_delivered):
    _, escrow = await make_delivered()
    await escrow_service.refund(db, escrow.id, "Seller unreachable")
    return await escrow_service.get_escrow(db, escrow.id)


TERMINAL_ATTEMPTS = {
    "fund": lambda db, e: escrow_service.fund(db, e.id),
    "mark_delivered": lambda db, e: escrow_service.mark_delivered(db, e.id, e.seller_id),
    "confirm_delivery": lambda db, e: escrow_service.confirm_delivery(db, e.id, e.buyer_id),
    "release": lambda db, e: escrow_service.release(db, e.id),
    "refund": lambda db, e: escrow_service.refund(db, e.id),
    "cancel": lambda db, e: escrow_service.cancel(db, e.id, "too late"),
    "initiate_dispute": lambda db, e: escrow_service.initiate_dispute(db, e, "late", "buyer"),
    "resolve_dispute": lambda db, e: escrow_service.resolve_dispute(db, e, "refund"),
}


@pytest.mark.parametrize("terminal", ["released", "refunded"])
async def test_terminal_escrow_rejects_every_transition(
    db: AsyncSession, make_delivered, terminal,
):
    maker = _released if terminal == "released" else _refunded
    escrow = await maker(db, make_delivered)
    escrow_id, amount = escrow.id, escrow.amount
    assert escrow.status == terminal

    for name, attempt in TERMINAL_ATTEMPTS.items():
        current = await escrow_service.get_escrow(db, escrow_id)
        with pytest.raises(InvalidStateTransition):
            await attempt(db, current)
        await db.rollback()

    escrow = await escrow_service.get_escrow(db, escrow_id)
    assert escrow.status == terminal
    assert escrow.amount == amount


async def test_cancelled_escrow_rejects_every_transition(db: AsyncSession, make_purchase):
    _, escrow = await make_purchase()
    escrow_id = escrow.id
    await escrow_service.cancel(db, escrow_id, "Buyer backed out", user_id=escrow.buyer_id)
    escrow = await escrow_service.get_escrow(db, escrow_id)
    assert escrow.status == "cancelled"
    assert escrow.cancel_reason == "Buyer backed out"

    for name in ("fund", "cancel", "refund", "initiate_dispute"):
        current = await escrow_service.get_escrow(db, escrow_id)
        with pytest.raises(InvalidStateTransition):
            await TERMINAL_ATTEMPTS[name](db, current)
        await db.rollback()

    escrow = await escrow_service.get_escrow(db, escrow_id)
    assert escrow.status == "cancelled"
    assert escrow.amount == Decimal("100.00")


# ---------------------------------------------------------------------------
# Disputes at the escrow level
# ---------------------------------------------------------------------------

async def test_confirmed_escrow_cannot_be_disputed(db: AsyncSession, make_delivered):
    _, escrow = await make_delivered()
    await escrow_service.confirm_delivery(db, escrow.id, escrow.buyer_id)
    escrow = await escrow_service.get_escrow(db, escrow.id)

    with pytest.raises(InvalidStateTransition) as exc_info:
        await escrow_service.initiate_dispute(db, escrow, "changed my mind", "buyer")
    await db.rollback()

    assert exc_info.value.current == "confirmed"


async def test_admin_refund_releases_listing(db: AsyncSession, make_funded, sink):
    purchase, escrow = await make_funded()

    result = await escrow_service.refund(db, escrow.id, "Fraud check failed")

    assert result.escrow.status == "refunded"
    assert result.escrow.admin_notes == "Fraud check failed"
    assert result.purchase.status == "refunded"
    assert result.sale.status == "refunded"
    listing = await db.get(GameListing, purchase.listing_id, populate_existing=True)
    assert listing.status == "active"

    await drain_notifications()
    refunded = sink.for_type("escrow.refunded")
    assert [e.user_id for e in refunded] == [escrow.buyer_id]


# ---------------------------------------------------------------------------
# Auto-release sweep
# ---------------------------------------------------------------------------

async def test_auto_release_only_after_window(db: AsyncSession, make_delivered, sink):
    purchase, escrow = await make_delivered()
    await escrow_service.confirm_delivery(db, escrow.id, escrow.buyer_id)

    assert await escrow_service.auto_release_escrows(db, now=_utcnow() + timedelta(hours=1)) == []

    released = await escrow_service.auto_release_escrows(
        db, now=_utcnow() + timedelta(hours=25)
    )
    assert released == [escrow.id]

    escrow = await escrow_service.get_escrow(db, escrow.id)
    assert escrow.status == "released"
    sale = await sale_service.get_sale_by_purchase(db, purchase.id)
    assert sale.status == "completed"
    listing = await db.get(GameListing, purchase.listing_id, populate_existing=True)
    assert listing.status == "sold"

    await drain_notifications()
    assert sink.for_type("escrow.released")[0].data["auto"] is True


async def test_auto_release_skips_unconfirmed(db: AsyncSession, make_delivered):
    _, escrow = await make_delivered()

    assert await escrow_service.auto_release_escrows(
        db, now=_utcnow() + timedelta(days=30)
    ) == []
    escrow = await escrow_service.get_escrow(db, escrow.id)
    assert escrow.status == "delivered"


async def test_auto_release_does_not_touch_escrow_moved_meanwhile(
    db: AsyncSession, make_delivered,
):
    _, escrow = await make_delivered()
    await escrow_service.confirm_delivery(db, escrow.id, escrow.buyer_id)
    # An admin refunds just before the sweep runs.
    await escrow_service.refund(db, escrow.id, "Chargeback")

    assert await escrow_service.auto_release_escrows(
        db, now=_utcnow() + timedelta(hours=25)
    ) == []
    escrow = await escrow_service.get_escrow(db, escrow.id)
    assert escrow.status == "refunded"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def test_list_user_escrows_by_role_and_status(db: AsyncSession, make_purchase, make_funded):
    buyer = "buyer-lister"
    await make_purchase(buyer_id=buyer)
    await make_funded(buyer_id=buyer)

    page = await escrow_service.list_user_escrows(db, buyer, "buyer")
    assert page.total == 2
    assert page.total_pages == 1

    funded = await escrow_service.list_user_escrows(db, buyer, "buyer", status="funded")
    assert funded.total == 1
    assert funded.items[0].status == "funded"

    as_seller = await escrow_service.list_user_escrows(db, buyer, "seller")
    assert as_seller.total == 0


async def test_list_disputed_escrows_oldest_first(db: AsyncSession, make_funded):
    _, first = await make_funded()
    _, second = await make_funded()
    await db.execute(
        update(Escrow).where(Escrow.id == first.id).values(
            status="disputed", dispute_started_at=_utcnow() - timedelta(hours=5),
        )
    )
    await db.execute(
        update(Escrow).where(Escrow.id == second.id).values(
            status="disputed", dispute_started_at=_utcnow() - timedelta(hours=1),
        )
    )
    await db.commit()

    page = await escrow_service.list_disputed_escrows(db)
    assert [e.id for e in page.items] == [first.id, second.id]


async def test_escrow_stats_funds_held(db: AsyncSession, make_purchase, make_funded):
    await make_purchase(amount="40.00")
    await make_funded(amount="60.00")

    stats = await escrow_service.get_escrow_stats(db)

    assert stats["by_status"]["pending"]["count"] == 1
    assert Decimal(str(stats["funds_held"])) == Decimal("60.00")
    assert stats["awaiting_release"] == 0
