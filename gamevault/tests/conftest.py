"""Shared test fixtures for the escrow workflow test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions, which is what
the scheduler tests rely on).
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from gamevault.core import notifications
from gamevault.database import Database


# ---------------------------------------------------------------------------
# In-memory SQLite test database (shared via StaticPool)
# ---------------------------------------------------------------------------

@pytest.fixture
async def database():
    """Create all tables before each test, drop after."""
    database = Database(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await database.create_all()
    yield database
    await notifications.drain_notifications()
    await database.drop_all()
    await database.dispose()


@pytest.fixture
async def db(database: Database):
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with database.session() as session:
        yield session


@pytest.fixture
def session_factory(database: Database):
    return database.session_factory


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class RecordingSink:
    def __init__(self):
        self.events = []

    async def notify(self, event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def for_type(self, event_type: str) -> list:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture(autouse=True)
def sink():
    """Record every notification; restore the logging sink afterwards."""
    recorder = RecordingSink()
    notifications.configure_notification_sink(recorder)
    yield recorder
    notifications.configure_notification_sink(None)


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def make_listing(db: AsyncSession):
    """Factory fixture: create a GameListing owned by ``seller_id``."""
    from gamevault.models.listing import GameListing

    async def _make(seller_id: str = None, price="100.00", status: str = "active", **kwargs):
        listing = GameListing(
            id=_new_id(),
            seller_id=seller_id or f"seller-{_new_id()[:8]}",
            title=kwargs.pop("title", "Level 80 account, all heroes unlocked"),
            price=Decimal(str(price)),
            currency=kwargs.pop("currency", "USD"),
            status=status,
            **kwargs,
        )
        db.add(listing)
        await db.commit()
        await db.refresh(listing)
        return listing

    return _make


@pytest.fixture
def make_purchase(db: AsyncSession, make_listing):
    """Factory fixture: a PENDING purchase + escrow on a fresh listing."""
    from gamevault.services import purchase_service

    async def _make(amount="100.00", buyer_id: str = None, seller_id: str = None):
        listing = await make_listing(seller_id=seller_id, price=amount)
        return await purchase_service.create_purchase(
            db, buyer_id or f"buyer-{_new_id()[:8]}", listing.id, amount, "USD",
        )

    return _make


@pytest.fixture
def make_funded(db: AsyncSession, make_purchase):
    """Factory fixture: a paid purchase with a FUNDED escrow and a PENDING sale."""
    from gamevault.services import purchase_service

    async def _make(**kwargs):
        purchase, _ = await make_purchase(**kwargs)
        result = await purchase_service.mark_paid(db, purchase.id, f"pay_{_new_id()[:8]}")
        return result.purchase, result.escrow

    return _make


@pytest.fixture
def make_delivered(db: AsyncSession, make_funded):
    """Factory fixture: account handed over, escrow DELIVERED."""
    from gamevault.services import escrow_service

    async def _make(**kwargs):
        purchase, escrow = await make_funded(**kwargs)
        result = await escrow_service.mark_delivered(
            db, escrow.id, escrow.seller_id, {"login": "handed-over"}, "Credentials sent",
        )
        return result.purchase, result.escrow

    return _make
