import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, String, Text

from gamevault.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Dispute(Base):
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    purchase_id = Column(String(36), ForeignKey("purchases.id"), nullable=False)
    initiator_id = Column(String(36), nullable=False)
    respondent_id = Column(String(36), nullable=False)
    reason = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    evidence = Column(JSON, nullable=False, default=list)  # opaque references

    # open -> in_review -> resolved, open | in_review -> closed
    status = Column(String(20), nullable=False, default="open")
    priority = Column(String(10), nullable=False, default="medium")  # low | medium | high
    admin_id = Column(String(36))
    resolution = Column(Text)
    favored_party = Column(String(20))  # initiator | respondent | neutral
    escrow_status_before = Column(String(20))  # restored if the dispute is closed

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_at = Column(DateTime(timezone=True))
    resolved_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_disputes_purchase", "purchase_id"),
        Index("idx_disputes_status", "status"),
        Index("idx_disputes_admin", "admin_id"),
        Index("idx_disputes_created", "created_at"),
    )
