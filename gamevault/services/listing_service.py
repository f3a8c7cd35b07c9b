"""Listing collaborator: the purchase workflow's view of the catalog.

Catalog CRUD lives elsewhere. The escrow core only needs to know whether a
listing can be bought and to move its reservation along with the purchase.
"""

import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gamevault.core import notifications
from gamevault.core.exceptions import ListingUnavailable
from gamevault.core.state_machine import atomic, bulk_guarded_update, fetch
from gamevault.models.enums import ListingStatus
from gamevault.models.listing import GameListing

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ListingGateway(Protocol):
    async def is_purchasable(self, listing_id: str) -> bool: ...

    async def get_seller_id(self, listing_id: str) -> str | None: ...

    async def reserve(self, listing_id: str) -> None: ...

    async def release(self, listing_id: str) -> None: ...

    async def mark_sold(self, listing_id: str) -> None: ...


class SqlListingGateway:
    """Gateway over the ``game_listings`` table, sharing the caller's session.

    Writes join the caller's transaction so a reservation commits or rolls
    back together with the purchase that took it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _status(self, listing_id: str) -> str | None:
        result = await fetch(
            self.db,
            select(GameListing.status).where(GameListing.id == listing_id)
        )
        return result.scalar_one_or_none()

    async def is_purchasable(self, listing_id: str) -> bool:
        return await self._status(listing_id) == ListingStatus.ACTIVE

    async def get_seller_id(self, listing_id: str) -> str | None:
        result = await fetch(
            self.db,
            select(GameListing.seller_id).where(GameListing.id == listing_id)
        )
        return result.scalar_one_or_none()

    async def reserve(self, listing_id: str) -> None:
        result = await fetch(
            self.db,
            update(GameListing)
            .where(
                GameListing.id == listing_id,
                GameListing.status == ListingStatus.ACTIVE.value,
            )
            .values(status=ListingStatus.RESERVED.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ListingUnavailable(listing_id)

    async def release(self, listing_id: str) -> None:
        # No-op unless still reserved: a listing sold or pulled meanwhile stays put.
        await fetch(
            self.db,
            update(GameListing)
            .where(
                GameListing.id == listing_id,
                GameListing.status == ListingStatus.RESERVED.value,
            )
            .values(status=ListingStatus.ACTIVE.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )

    async def mark_sold(self, listing_id: str) -> None:
        await fetch(
            self.db,
            update(GameListing)
            .where(
                GameListing.id == listing_id,
                GameListing.status.in_(
                    [ListingStatus.ACTIVE.value, ListingStatus.RESERVED.value]
                ),
            )
            .values(status=ListingStatus.SOLD.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )


def default_gateway(db: AsyncSession, listings: ListingGateway | None) -> ListingGateway:
    return listings if listings is not None else SqlListingGateway(db)


async def expire_listings(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Move every ACTIVE listing past its ``expires_at`` to EXPIRED."""
    now = now or _utcnow()
    async with atomic(db):
        expired_ids = await bulk_guarded_update(
            db,
            GameListing,
            ListingStatus.ACTIVE,
            GameListing.expires_at,
            now,
            {"status": ListingStatus.EXPIRED},
            now=now,
        )

    if expired_ids:
        result = await fetch(
            db,
            select(GameListing.id, GameListing.seller_id).where(
                GameListing.id.in_(expired_ids)
            )
        )
        for listing_id, seller_id in result.all():
            notifications.notify("listing.expired", seller_id, listing_id)
        logger.info("Expired %d listings", len(expired_ids))
    return expired_ids
