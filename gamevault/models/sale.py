import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import relationship

from gamevault.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Sale(Base):
    __tablename__ = "sales"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    purchase_id = Column(String(36), ForeignKey("purchases.id"), nullable=False, unique=True)
    seller_id = Column(String(36), nullable=False)
    buyer_id = Column(String(36), nullable=False)
    listing_id = Column(String(36), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="USD")

    # Frozen at creation: commission + net_amount == amount
    commission_rate = Column(Numeric(5, 4), nullable=False)
    commission = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), nullable=False, default="pending")

    sold_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    delivered_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    purchase = relationship("Purchase", back_populates="sale", lazy="selectin")

    __table_args__ = (
        Index("idx_sales_seller", "seller_id"),
        Index("idx_sales_buyer", "buyer_id"),
        Index("idx_sales_status", "status"),
    )
