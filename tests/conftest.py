"""Pytest fixtures and in-memory fakes.

Nothing here touches the network or a real database: the LLM backend is a
MockProvider and Postgres is a FakeConnection that answers statements from a
responder callable.
"""
import asyncio
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psycopg
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from bookstore_assistant.collaborators import DatasetSnapshot, DateRange, SnapshotFlags  # noqa: E402
from bookstore_assistant.enrichment import BookMetadata  # noqa: E402
from bookstore_assistant.llm.gateway import LlmGateway  # noqa: E402
from bookstore_assistant.llm.providers.mock import MockProvider  # noqa: E402
from bookstore_assistant.rate_gate import RateGate  # noqa: E402
from bookstore_assistant.tools.sql import SqlExecutor  # noqa: E402

# responder(statement, params) -> list of row dicts, or raise
Responder = Callable[[str, Any], List[Dict[str, Any]]]


class FakeCursor:
    """Async cursor returning rows in the order the responder gives them."""

    def __init__(self, conn: "FakeConnection"):
        self._conn = conn
        self._rows: List[tuple] = []
        self.description = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement: str, params: Any = None) -> None:
        self._conn.statements.append(statement)
        self._conn.params.append(params)
        if statement.startswith("SET "):
            self.description = None
            self._rows = []
            return
        rows = self._conn.responder(statement, params)
        if rows:
            columns = list(rows[0].keys())
            self.description = [(c,) for c in columns]
            self._rows = [tuple(r.get(c) for c in columns) for r in rows]
        else:
            self.description = [("result",)]
            self._rows = []

    async def fetchmany(self, size: int) -> List[tuple]:
        self._conn.fetch_sizes.append(size)
        batch, self._rows = self._rows[:size], self._rows[size:]
        self._conn.rows_fetched += len(batch)
        return batch

    async def fetchone(self):
        batch = await self.fetchmany(1)
        return batch[0] if batch else None


class FakeConnection:
    """Minimal stand-in for psycopg.AsyncConnection."""

    def __init__(self, responder: Optional[Responder] = None):
        self.responder = responder or (lambda statement, params: [])
        self.statements: List[str] = []
        self.params: List[Any] = []
        self.fetch_sizes: List[int] = []
        self.rows_fetched = 0
        self.transactions = 0
        self.closed = False

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    async def close(self) -> None:
        self.closed = True

    @property
    def queries(self) -> List[str]:
        """Statements other than the SET TRANSACTION / SET LOCAL preamble."""
        return [s for s in self.statements if not s.startswith("SET ")]


class FakeDatabase:
    """Connection factory handing out FakeConnections sharing one responder."""

    def __init__(self, responder: Optional[Responder] = None):
        self.responder = responder
        self.connections: List[FakeConnection] = []

    async def connect(self) -> FakeConnection:
        conn = FakeConnection(self.responder)
        self.connections.append(conn)
        return conn

    @property
    def queries(self) -> List[str]:
        return [q for conn in self.connections for q in conn.queries]


class RefusingDatabase:
    """Connection factory whose server is down."""

    def __init__(self, message: str = "connection refused"):
        self.message = message
        self.attempts = 0

    async def connect(self) -> FakeConnection:
        self.attempts += 1
        raise psycopg.OperationalError(self.message)


class FakePool:
    """Stand-in for psycopg_pool.AsyncConnectionPool over a FakeDatabase."""

    def __init__(self, db: Optional[FakeDatabase] = None, max_size: int = 4, error: Optional[Exception] = None):
        self.db = db or FakeDatabase()
        self.max_size = max_size
        self.error = error
        self.opened = 0
        self.closed = False
        self.borrowed = 0
        self.returned = 0

    async def open(self) -> None:
        self.opened += 1

    async def close(self) -> None:
        self.closed = True

    @asynccontextmanager
    async def connection(self):
        if self.error is not None:
            raise self.error
        conn = await self.db.connect()
        self.borrowed += 1
        try:
            yield conn
        finally:
            self.returned += 1


class FakeSnapshotSource:
    def __init__(self, data: Optional[Dict[str, Any]] = None, sources: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.data = data if data is not None else {
            "profitReport": {"summary": {"ordersCount": 12, "revenue": 1500000.0, "costOfGoods": 900000.0, "profit": 600000.0}},
            "categoryShare": {"total": 40, "items": [{"category": "Fiction", "count": 18, "percent": 45.0}]},
        }
        self.sources = sources if sources is not None else ["profit_report", "category_share"]
        self.error = error
        self.calls: List[tuple] = []

    async def snapshot(self, date_range: DateRange, flags: SnapshotFlags) -> DatasetSnapshot:
        self.calls.append((date_range, flags))
        if self.error is not None:
            raise self.error
        return DatasetSnapshot(data={"timeframe": date_range.to_dict(), **self.data}, data_sources=list(self.sources))


class FakeStore:
    """Orders, customers, invoices and ISBNs held in dicts."""

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {
            "1024": {"order_id": 1024, "status": "Delivered", "total_amount": 250000.0, "lines": []},
        }
        self.invoices: Dict[str, Dict[str, Any]] = {
            "77": {"invoice_id": 77, "order_id": 1024, "total_amount": 275000.0, "tax_amount": 25000.0},
        }
        self.isbns = set()
        self.order_calls: List[str] = []
        self.isbn_checks: List[str] = []

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        self.order_calls.append(order_id)
        return self.orders.get(order_id)

    async def search_orders(self, customer_identifier: str) -> Dict[str, Any]:
        if customer_identifier == "an@example.com":
            return {"customers": [{"customer_id": 5}], "orders": [self.orders["1024"]]}
        return {"customers": [], "orders": []}

    async def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        return self.invoices.get(invoice_id)

    async def exists(self, isbn: str) -> bool:
        self.isbn_checks.append(isbn)
        return isbn in self.isbns


class FakeCatalog:
    def __init__(self, answer: Optional[str] = "We have 3 copies of Dune in stock."):
        self.answer = answer
        self.queries: List[str] = []

    async def search(self, query: str) -> Optional[str]:
        self.queries.append(query)
        return self.answer


class ProbeFetcher:
    """Metadata fetcher that counts concurrent fetches."""

    def __init__(self, delay: float = 0.02, fail_titles=()):
        self.delay = delay
        self.fail_titles = set(fail_titles)
        self.in_flight = 0
        self.peak = 0
        self.titles: List[str] = []

    async def fetch(self, title: str) -> BookMetadata:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.titles.append(title)
        try:
            await asyncio.sleep(self.delay)
            if title in self.fail_titles:
                raise RuntimeError("search failed")
            return BookMetadata.model_validate({"title": title, "description": f"About {title}"})
        finally:
            self.in_flight -= 1


class RecordingSleep:
    """Replaces asyncio.sleep in the gateway so retries are instant."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_gateway(provider: MockProvider, capacity: int = 3, max_attempts: int = 3, sleep: Optional[RecordingSleep] = None) -> LlmGateway:
    return LlmGateway(
        provider,
        RateGate(capacity),
        max_attempts=max_attempts,
        retry_base_delay=0.5,
        sleep=sleep or RecordingSleep(),
    )


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def executor(fake_db: FakeDatabase) -> SqlExecutor:
    return SqlExecutor(connection_factory=fake_db.connect, statement_timeout_ms=60_000)


@pytest.fixture
def snapshot_source() -> FakeSnapshotSource:
    return FakeSnapshotSource()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()
