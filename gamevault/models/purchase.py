import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import relationship

from gamevault.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Purchase(Base):
    __tablename__ = "purchases"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    buyer_id = Column(String(36), nullable=False)
    seller_id = Column(String(36), nullable=False)
    listing_id = Column(String(36), ForeignKey("game_listings.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="USD")
    payment_method = Column(String(30))
    payment_id = Column(String(128))  # opaque id handed over by the payment gateway

    # State machine: pending -> paid -> delivered -> completed
    #                (or: cancelled, disputed -> completed | refunded)
    status = Column(String(20), nullable=False, default="pending")

    purchased_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    paid_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    escrow = relationship("Escrow", back_populates="purchase", uselist=False, lazy="selectin")
    sale = relationship("Sale", back_populates="purchase", uselist=False, lazy="selectin")

    __table_args__ = (
        Index("idx_purchases_buyer", "buyer_id"),
        Index("idx_purchases_seller", "seller_id"),
        Index("idx_purchases_listing", "listing_id"),
        Index("idx_purchases_status", "status"),
    )
