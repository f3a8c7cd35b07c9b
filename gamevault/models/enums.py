"""Status and classification values stored in the string status columns."""

from enum import Enum


class _Choice(str, Enum):
    def __str__(self) -> str:
        return self.value


class ListingStatus(_Choice):
    ACTIVE = "active"
    RESERVED = "reserved"  # held by an unpaid or in-flight purchase
    SOLD = "sold"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class PurchaseStatus(_Choice):
    PENDING = "pending"
    PAID = "paid"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class EscrowStatus(_Choice):
    PENDING = "pending"
    FUNDED = "funded"
    DELIVERED = "delivered"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class SaleStatus(_Choice):
    PENDING = "pending"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class DisputeStatus(_Choice):
    OPEN = "open"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputePriority(_Choice):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FavoredParty(_Choice):
    INITIATOR = "initiator"
    RESPONDENT = "respondent"
    NEUTRAL = "neutral"


class ReportStatus(_Choice):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


TERMINAL_PURCHASE_STATUSES = frozenset({
    PurchaseStatus.COMPLETED,
    PurchaseStatus.REFUNDED,
    PurchaseStatus.CANCELLED,
})
TERMINAL_ESCROW_STATUSES = frozenset({
    EscrowStatus.RELEASED,
    EscrowStatus.REFUNDED,
    EscrowStatus.CANCELLED,
})
ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.IN_REVIEW})

# Numeric rank so queues can sort "priority desc" independent of the stored text.
PRIORITY_RANK = {
    DisputePriority.LOW: 1,
    DisputePriority.MEDIUM: 2,
    DisputePriority.HIGH: 3,
}
