import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import relationship

from gamevault.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Escrow(Base):
    __tablename__ = "escrows"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    purchase_id = Column(String(36), ForeignKey("purchases.id"), nullable=False, unique=True)
    listing_id = Column(String(36), nullable=False)
    buyer_id = Column(String(36), nullable=False)
    seller_id = Column(String(36), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)  # written once, at creation
    currency = Column(String(10), nullable=False, default="USD")

    # State machine: pending -> funded -> delivered -> confirmed -> released
    #                funded | delivered -> disputed -> released | refunded
    #                pending -> cancelled
    status = Column(String(20), nullable=False, default="pending")

    payment_proof = Column(JSON)
    delivery_proof = Column(JSON)  # opaque: credentials handover receipt, screenshots
    buyer_notes = Column(Text)
    seller_notes = Column(Text)
    admin_notes = Column(Text)
    cancel_reason = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    funds_held_at = Column(DateTime(timezone=True))
    account_delivered_at = Column(DateTime(timezone=True))
    buyer_confirmed_at = Column(DateTime(timezone=True))
    dispute_started_at = Column(DateTime(timezone=True))
    released_at = Column(DateTime(timezone=True))
    resolved_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    purchase = relationship("Purchase", back_populates="escrow", lazy="selectin")

    __table_args__ = (
        Index("idx_escrows_buyer", "buyer_id"),
        Index("idx_escrows_seller", "seller_id"),
        Index("idx_escrows_status", "status"),
        Index("idx_escrows_confirmed", "status", "buyer_confirmed_at"),
    )
