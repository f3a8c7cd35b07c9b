import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Numeric, String

from gamevault.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class GameListing(Base):
    """The slice of a catalog listing the purchase workflow needs to gate on."""

    __tablename__ = "game_listings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    seller_id = Column(String(36), nullable=False)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="USD")

    # active -> reserved -> sold, reserved -> active (purchase unwound),
    # active -> expired | inactive
    status = Column(String(20), nullable=False, default="active")
    expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_game_listings_seller", "seller_id"),
        Index("idx_game_listings_status", "status"),
        Index("idx_game_listings_expires", "expires_at"),
    )
