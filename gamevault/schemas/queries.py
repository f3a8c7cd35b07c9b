"""Typed option sets for the read-side list operations.

Each list operation takes one of these instead of a loose filter dict, so a
bad page number or an unknown status is rejected before any SQL is built.
"""

import math
from datetime import datetime, timedelta
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic import ValidationError as PydanticValidationError

from gamevault.core.exceptions import ValidationError
from gamevault.models.enums import (
    DisputePriority,
    DisputeStatus,
    EscrowStatus,
    PurchaseStatus,
    ReportStatus,
    SaleStatus,
)

T = TypeVar("T")
Q = TypeVar("Q", bound="PageQuery")


class PageQuery(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class PurchaseQuery(PageQuery):
    status: PurchaseStatus | None = None


class SaleQuery(PageQuery):
    status: SaleStatus | None = None


class EscrowQuery(PageQuery):
    status: EscrowStatus | None = None


class DisputeQuery(PageQuery):
    status: DisputeStatus | None = None
    as_initiator: bool = False
    as_respondent: bool = False


class AdminDisputeQuery(PageQuery):
    admin_id: str | None = None
    status: DisputeStatus | None = None
    priority: DisputePriority | None = None
    unassigned: bool = False

    @model_validator(mode="after")
    def _unassigned_excludes_admin(self):
        if self.unassigned and self.admin_id:
            raise ValueError("unassigned and admin_id are mutually exclusive")
        return self


class ReportQuery(PageQuery):
    status: ReportStatus | None = None


class AdminReportQuery(PageQuery):
    admin_id: str | None = None
    status: ReportStatus | None = None
    reason: str | None = None
    unassigned: bool = False

    @model_validator(mode="after")
    def _unassigned_excludes_admin(self):
        if self.unassigned and self.admin_id:
            raise ValueError("unassigned and admin_id are mutually exclusive")
        return self


Timeframe = Literal["day", "week", "month", "year"]

# Rolling windows ending at "now"; a month is 30 days.
TIMEFRAMES: dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


def timeframe_start(timeframe: Timeframe, now: datetime) -> datetime:
    if timeframe not in TIMEFRAMES:
        raise ValidationError(f"Unknown timeframe: {timeframe!r}")
    return now - TIMEFRAMES[timeframe]


class Page(BaseModel, Generic[T]):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: list[T]
    total: int
    page: int
    limit: int

    @computed_field
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


def build_query(model: type[Q], query: Q | dict | None = None, **options) -> Q:
    """Coerce caller input into ``model``; invalid input raises ``ValidationError``."""
    if isinstance(query, model):
        if options:
            query = query.model_dump() | options
        else:
            return query
    elif query is None:
        query = options
    else:
        query = dict(query) | options
    try:
        return model.model_validate(query)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "query"
        raise ValidationError(f"Invalid {loc}: {first.get('msg')}") from exc
