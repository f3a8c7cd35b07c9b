import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, String, Text

from gamevault.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Report(Base):
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reporter_id = Column(String(36), nullable=False)
    reported_user_id = Column(String(36))
    reported_listing_id = Column(String(36))
    reason = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    evidence = Column(JSON, nullable=False, default=list)

    # pending -> under_review -> resolved | dismissed
    status = Column(String(20), nullable=False, default="pending")
    admin_id = Column(String(36))
    resolution = Column(Text)
    action_taken = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_at = Column(DateTime(timezone=True))
    resolved_at = Column(DateTime(timezone=True))
    dismissed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(reported_user_id IS NULL) <> (reported_listing_id IS NULL)",
            name="ck_reports_single_target",
        ),
        Index("idx_reports_status", "status"),
        Index("idx_reports_user", "reported_user_id"),
        Index("idx_reports_listing", "reported_listing_id"),
        Index("idx_reports_created", "created_at"),
    )
