"""Interfaces of the business services the assistant consumes.

The assistant never writes business data. It reads orders, invoices,
analytics snapshots and the catalog through these protocols, so tests can
pass in-memory fakes and the application can plug in the Postgres-backed
implementations from `store.py`.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from .errors import ExecutionError

logger = logging.getLogger(__name__)

# Names reported in AnswerEnvelope.data_sources
PROFIT_REPORT = "profit_report"
REVENUE_DAILY = "revenue_daily"
INVENTORY_SNAPSHOT = "inventory_snapshot"
CATEGORY_SHARE = "category_share"

DEFAULT_WINDOW_DAYS = 30


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @classmethod
    def resolve(
        cls,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> "DateRange":
        """Fill in a missing bound (default: the last 30 days) and order the bounds."""
        now = now or datetime.now(timezone.utc)
        end = end or now
        start = start or end - timedelta(days=DEFAULT_WINDOW_DAYS)
        if end < start:
            start, end = end, start
        return cls(start=start, end=end)

    @property
    def days(self) -> float:
        return round((self.end - self.start).total_seconds() / 86400, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fromUtc": self.start.isoformat(),
            "toUtc": self.end.isoformat(),
            "days": self.days,
        }


@dataclass(frozen=True)
class SnapshotFlags:
    include_inventory_snapshot: bool = True
    include_category_share: bool = True


@dataclass(frozen=True)
class DatasetSnapshot:
    """Pre-aggregated, read-only dataset handed to the model."""
    data: Dict[str, Any]
    data_sources: List[str] = field(default_factory=list)


class OrderLookup(Protocol):
    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Order header, lines and status, or None when it does not exist."""
        ...


class CustomerOrderSearch(Protocol):
    async def search_orders(self, customer_identifier: str) -> Dict[str, Any]:
        """Orders of the customer matching an id, email, phone or name."""
        ...


class InvoiceLookup(Protocol):
    async def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        ...


class AnalyticsSnapshot(Protocol):
    async def snapshot(self, date_range: DateRange, flags: SnapshotFlags) -> DatasetSnapshot:
        ...


class BookCatalogSearch(Protocol):
    async def search(self, query: str) -> Optional[str]:
        """Retrieval-augmented answer about the catalog, or None if unavailable."""
        ...


class IsbnRegistry(Protocol):
    async def exists(self, isbn: str) -> bool:
        ...


async def load_snapshot(
    source: AnalyticsSnapshot,
    date_range: DateRange,
    flags: SnapshotFlags
) -> DatasetSnapshot:
    """Fetch the snapshot; a failing source degrades to the timeframe alone."""
    try:
        return await source.snapshot(date_range, flags)
    except ExecutionError as e:
        logger.warning("Analytics snapshot unavailable: %s", e.message)
        return DatasetSnapshot(data={"timeframe": date_range.to_dict()}, data_sources=[])
