"""Postgres-backed implementations of the collaborator protocols.

All statements are fixed, parameterized and read-only; they run through the
same SqlExecutor (read-only transaction, statement timeout, row cap) as
model-written SQL. "Sold" and revenue figures count Delivered orders only.
"""
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .collaborators import (
    CATEGORY_SHARE,
    INVENTORY_SNAPSHOT,
    PROFIT_REPORT,
    REVENUE_DAILY,
    BookCatalogSearch,
    DatasetSnapshot,
    DateRange,
    SnapshotFlags,
)
from .errors import SqlExecutionError
from .llm.gateway import LlmGateway
from .normalizer import extract_answer_field
from .tools.sql import SqlExecutor

logger = logging.getLogger(__name__)

DELIVERED = 2
ORDER_STATUS_LABELS = {
    0: "PendingConfirmation",
    1: "Confirmed",
    2: "Delivered",
    3: "Cancelled",
}

ORDER_SQL = """
SELECT o.order_id, o.customer_id, o.placed_at, o.status, o.delivery_date,
       o.receiver_name, o.receiver_phone, o.shipping_address, o.note
FROM "order" o
WHERE o.order_id = %s
"""

ORDER_LINES_SQL = """
SELECT ol.isbn, b.title, ol.qty, ol.unit_price, ol.qty * ol.unit_price AS line_total
FROM order_line ol
LEFT JOIN book b ON b.isbn = ol.isbn
WHERE ol.order_id = %s
ORDER BY ol.order_line_id
"""

CUSTOMER_SQL = """
SELECT c.customer_id, c.first_name, c.last_name, c.email, c.phone
FROM customer c
WHERE c.customer_id::text = %s
   OR lower(c.email) = lower(%s)
   OR c.phone = %s
   OR (c.first_name || ' ' || c.last_name) ILIKE %s
ORDER BY c.customer_id
"""

CUSTOMER_ORDERS_SQL = """
SELECT o.order_id, o.customer_id, o.placed_at, o.status,
       COUNT(ol.order_line_id) AS items,
       COALESCE(SUM(ol.qty * ol.unit_price), 0) AS total_amount
FROM "order" o
LEFT JOIN order_line ol ON ol.order_id = o.order_id
WHERE o.customer_id = ANY(%s)
GROUP BY o.order_id, o.customer_id, o.placed_at, o.status
ORDER BY o.placed_at DESC
"""

INVOICE_SQL = """
SELECT i.invoice_id, i.order_id, i.created_at, i.total_amount, i.tax_amount,
       i.total_amount - i.tax_amount AS sub_total, o.status AS order_status
FROM invoice i
JOIN "order" o ON o.order_id = i.order_id
WHERE i.invoice_id = %s
"""

ISBN_EXISTS_SQL = "SELECT 1 AS hit FROM book WHERE isbn = %s"

PROFIT_SUMMARY_SQL = """
SELECT COUNT(DISTINCT o.order_id) AS orders_count,
       COALESCE(SUM(ol.qty * ol.unit_price), 0) AS revenue,
       COALESCE(SUM(ol.qty * b.average_price), 0) AS cost_of_goods
FROM "order" o
JOIN order_line ol ON ol.order_id = o.order_id
JOIN book b ON b.isbn = ol.isbn
WHERE o.status = 2 AND o.placed_at BETWEEN %s AND %s
"""

TOP_ITEMS_SQL = """
SELECT ol.isbn, b.title,
       SUM(ol.qty) AS qty_sold,
       SUM(ol.qty * ol.unit_price) AS revenue,
       SUM(ol.qty * (ol.unit_price - b.average_price)) AS profit,
       CASE WHEN SUM(ol.qty * ol.unit_price) = 0 THEN 0
            ELSE ROUND(100 * SUM(ol.qty * (ol.unit_price - b.average_price)) / SUM(ol.qty * ol.unit_price), 2)
       END AS margin_pct,
       (SELECT ROUND(AVG(r.stars), 2) FROM rating r WHERE r.isbn = ol.isbn) AS avg_stars,
       (SELECT COUNT(*) FROM rating r WHERE r.isbn = ol.isbn) AS rating_count
FROM "order" o
JOIN order_line ol ON ol.order_id = o.order_id
JOIN book b ON b.isbn = ol.isbn
WHERE o.status = 2 AND o.placed_at BETWEEN %s AND %s
GROUP BY ol.isbn, b.title
ORDER BY {order_by} DESC
"""

REVENUE_DAILY_SQL = """
SELECT date_trunc('day', o.placed_at)::date AS day,
       SUM(ol.qty * ol.unit_price) AS revenue
FROM "order" o
JOIN order_line ol ON ol.order_id = o.order_id
WHERE o.status = 2 AND o.placed_at BETWEEN %s AND %s
GROUP BY 1
ORDER BY 1 DESC
"""

INVENTORY_SQL = """
SELECT b.isbn, b.title, c.name AS category, b.stock AS quantity_on_hand,
       b.average_price, ROUND(b.average_price * b.stock, 2) AS inventory_value
FROM book b
LEFT JOIN category c ON c.category_id = b.category_id
WHERE b.status
ORDER BY b.stock DESC, b.average_price DESC
"""

CATEGORY_SHARE_SQL = """
SELECT c.name AS category, COUNT(b.isbn) AS count,
       ROUND(100.0 * COUNT(b.isbn) / NULLIF(SUM(COUNT(b.isbn)) OVER (), 0), 2) AS percent,
       SUM(COUNT(b.isbn)) OVER () AS total
FROM category c
LEFT JOIN book b ON b.category_id = c.category_id
GROUP BY c.name
ORDER BY count DESC
"""

CATALOG_SQL = """
SELECT b.isbn, b.title, c.name AS category, p.name AS publisher, b.publish_year,
       b.page_count, b.stock, b.average_price,
       (SELECT string_agg(a.first_name || ' ' || a.last_name, ', ')
          FROM author_book ab JOIN author a ON a.author_id = ab.author_id
         WHERE ab.isbn = b.isbn) AS authors,
       (SELECT ROUND(AVG(r.stars), 2) FROM rating r WHERE r.isbn = b.isbn) AS avg_stars
FROM book b
LEFT JOIN category c ON c.category_id = b.category_id
LEFT JOIN publisher p ON p.publisher_id = b.publisher_id
WHERE b.status
  AND (b.title ILIKE ANY(%s) OR c.name ILIKE ANY(%s) OR b.isbn = %s
       OR EXISTS (SELECT 1 FROM author_book ab JOIN author a ON a.author_id = ab.author_id
                   WHERE ab.isbn = b.isbn AND (a.first_name || ' ' || a.last_name) ILIKE ANY(%s)))
ORDER BY b.stock DESC
"""

AI_DOCUMENTS_SQL = """
SELECT d.id, d.ref_type, d.ref_id, d.content, d.embedding_json, d.updated_at
FROM ai_documents d
WHERE d.ref_type = ANY(%s)
ORDER BY d.id
"""

# Customer-facing searches never see order, customer or purchasing documents
CATALOG_REF_TYPES = ("book", "category", "inventory", "sales_insight")

CATALOG_SYSTEM_PROMPT = """You are the book advisor of an online bookstore.
Answer the customer's question using only the catalog entries provided (title, authors,
category, price, stock, rating). If nothing matches, say so and suggest a related search.
Answer in the language of the question.
Respond with JSON only: {"answer": "..."}"""


def _label_status(row: Dict[str, Any]) -> Dict[str, Any]:
    status = row.get("status")
    if isinstance(status, int):
        row = {**row, "status": ORDER_STATUS_LABELS.get(status, str(status))}
    return row


class PostgresStore:
    """Order, customer, invoice, ISBN and analytics lookups over Postgres."""

    def __init__(self, executor: SqlExecutor, row_cap: int = 50):
        self._executor = executor
        self._row_cap = row_cap

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        if not order_id.isdigit():
            return None
        async with self._executor.connection() as conn:
            rows = await self._executor.execute(ORDER_SQL, 1, connection=conn, params=(int(order_id),))
            if not rows:
                return None
            lines = await self._executor.execute(
                ORDER_LINES_SQL, self._row_cap, connection=conn, params=(int(order_id),)
            )
        order = _label_status(rows[0])
        order["lines"] = lines
        order["total_amount"] = round(sum(float(line.get("line_total") or 0) for line in lines), 2)
        return order

    async def search_orders(self, customer_identifier: str) -> Dict[str, Any]:
        identifier = customer_identifier.strip()
        if not identifier:
            return {"customers": [], "orders": []}
        async with self._executor.connection() as conn:
            customers = await self._executor.execute(
                CUSTOMER_SQL, 5, connection=conn,
                params=(identifier, identifier, identifier, f"%{identifier}%"),
            )
            orders: List[Dict[str, Any]] = []
            if customers:
                ids = [c["customer_id"] for c in customers]
                orders = await self._executor.execute(
                    CUSTOMER_ORDERS_SQL, self._row_cap, connection=conn, params=(ids,)
                )
        return {"customers": customers, "orders": [_label_status(o) for o in orders]}

    async def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        if not invoice_id.isdigit():
            return None
        rows = await self._executor.execute(INVOICE_SQL, 1, params=(int(invoice_id),))
        if not rows:
            return None
        invoice = rows[0]
        status = invoice.get("order_status")
        if isinstance(status, int):
            invoice["order_status"] = ORDER_STATUS_LABELS.get(status, str(status))
        return invoice

    async def exists(self, isbn: str) -> bool:
        rows = await self._executor.execute(ISBN_EXISTS_SQL, 1, params=(isbn,))
        return bool(rows)

    async def snapshot(self, date_range: DateRange, flags: SnapshotFlags) -> DatasetSnapshot:
        """Build the analytics snapshot; each section is fetched independently."""
        window = (date_range.start, date_range.end)
        data: Dict[str, Any] = {
            "timeframe": date_range.to_dict(),
            "profitReport": None,
            "revenueReport": None,
            "inventorySnapshot": None,
            "categoryShare": None,
        }
        sources: List[str] = []

        async with self._executor.connection() as conn:
            try:
                summary = await self._executor.execute(PROFIT_SUMMARY_SQL, 1, connection=conn, params=window)
                top_sold = await self._executor.execute(
                    TOP_ITEMS_SQL.format(order_by="qty_sold"), 10, connection=conn, params=window
                )
                top_margin = await self._executor.execute(
                    TOP_ITEMS_SQL.format(order_by="margin_pct"), 10, connection=conn, params=window
                )
                head = summary[0] if summary else {}
                revenue = float(head.get("revenue") or 0)
                cogs = float(head.get("cost_of_goods") or 0)
                data["profitReport"] = {
                    "summary": {
                        "ordersCount": head.get("orders_count", 0),
                        "revenue": revenue,
                        "costOfGoods": cogs,
                        "profit": round(revenue - cogs, 2),
                    },
                    "topSoldItems": top_sold,
                    "topMarginItems": top_margin,
                }
                sources.append(PROFIT_REPORT)
            except SqlExecutionError as e:
                logger.warning("Snapshot: profit report unavailable: %s", e.message)

            try:
                daily = await self._executor.execute(REVENUE_DAILY_SQL, 30, connection=conn, params=window)
                daily.reverse()
                data["revenueReport"] = {
                    "totalRevenue": round(sum(float(d.get("revenue") or 0) for d in daily), 2),
                    "last30Days": daily,
                }
                sources.append(REVENUE_DAILY)
            except SqlExecutionError as e:
                logger.warning("Snapshot: daily revenue unavailable: %s", e.message)

            if flags.include_inventory_snapshot:
                try:
                    skus = await self._executor.execute(INVENTORY_SQL, 20, connection=conn)
                    data["inventorySnapshot"] = {
                        "date": date_range.end.date().isoformat(),
                        "topSkus": skus,
                    }
                    sources.append(INVENTORY_SNAPSHOT)
                except SqlExecutionError as e:
                    logger.warning("Snapshot: inventory unavailable: %s", e.message)

            if flags.include_category_share:
                try:
                    items = await self._executor.execute(CATEGORY_SHARE_SQL, 10, connection=conn)
                    data["categoryShare"] = {
                        "total": items[0].get("total", 0) if items else 0,
                        "items": [
                            {"category": i["category"], "count": i["count"], "percent": i["percent"]}
                            for i in items
                        ],
                    }
                    sources.append(CATEGORY_SHARE)
                except SqlExecutionError as e:
                    logger.warning("Snapshot: category share unavailable: %s", e.message)

        return DatasetSnapshot(data=data, data_sources=sources)


class CatalogSearch:
    """Retrieval-augmented book search: catalog rows in, model answer out."""

    def __init__(self, gateway: LlmGateway, executor: SqlExecutor, max_books: int = 20):
        self._gateway = gateway
        self._executor = executor
        self._max_books = max_books

    async def search(self, query: str) -> Optional[str]:
        query = (query or "").strip()
        if not query:
            return None

        terms = [t for t in re.split(r"\W+", query) if len(t) >= 3][:5]
        patterns = [f"%{query}%"] + [f"%{t}%" for t in terms]
        try:
            books = await self._executor.execute(
                CATALOG_SQL, self._max_books, params=(patterns, patterns, query, patterns)
            )
        except SqlExecutionError as e:
            logger.warning("Catalog retrieval failed: %s", e.message)
            return None

        payload = {"question": query, "catalog": books}
        text = await self._gateway.generate(
            CATALOG_SYSTEM_PROMPT,
            json.dumps(payload, ensure_ascii=False, default=str),
            temperature=0.3,
            response_mime_type="application/json",
        )
        if text is None:
            return None
        answer = extract_answer_field(text)
        return answer or None


KNOWLEDGE_SYSTEM_PROMPT = """You are the book advisor of an online bookstore.
Answer only from the DOCUMENTS provided, most similar first. If they do not cover
the question, say that the store has no information about it yet.
Quote ISBNs, titles, prices and stock when relevant. Use bullet points for lists.
Answer in the language of the question.
Respond with JSON only: {"answer": "..."}"""

PROMPT_CONTENT_CHARS = 3000


@dataclass(frozen=True)
class ScoredDocument:
    ref_type: str
    ref_id: str
    content: str
    similarity: float
    updated_at: Optional[str] = None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 for empty, mismatched or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _parse_vector(raw: Any) -> Optional[List[float]]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, list) or not raw:
        return None
    try:
        return [float(v) for v in raw]
    except (TypeError, ValueError):
        return None


class KnowledgeBaseSearch:
    """Embedding-ranked search over the `ai_documents` index.

    The question is embedded, every indexed document of the allowed kinds is
    scored by cosine similarity, and those at or above `threshold` (best
    first, at most `top_k`) go to the model. When nothing qualifies, or the
    index cannot be read, the `fallback` search answers instead.
    """

    def __init__(
        self,
        gateway: LlmGateway,
        executor: SqlExecutor,
        fallback: Optional[BookCatalogSearch] = None,
        threshold: float = 0.1,
        top_k: int = 8,
        max_documents: int = 5000,
        ref_types: Sequence[str] = CATALOG_REF_TYPES
    ):
        self._gateway = gateway
        self._executor = executor
        self._fallback = fallback
        self._threshold = threshold
        self._top_k = max(1, min(15, top_k))
        self._max_documents = max_documents
        self._ref_types = list(ref_types)

    async def search(self, query: str) -> Optional[str]:
        query = (query or "").strip()
        if not query:
            return None

        documents = await self.rank(query)
        if not documents:
            if self._fallback is not None:
                return await self._fallback.search(query)
            return None

        payload = {
            "question": query,
            "documents": [
                {
                    "rank": index + 1,
                    "refType": doc.ref_type,
                    "refId": doc.ref_id,
                    "similarity": round(doc.similarity, 4),
                    "updatedAt": doc.updated_at,
                    "content": doc.content[:PROMPT_CONTENT_CHARS],
                }
                for index, doc in enumerate(documents)
            ],
        }
        text = await self._gateway.generate(
            KNOWLEDGE_SYSTEM_PROMPT,
            json.dumps(payload, ensure_ascii=False, default=str),
            temperature=0.3,
            response_mime_type="application/json",
        )
        if text is None:
            return None
        return extract_answer_field(text) or None

    async def rank(self, query: str) -> List[ScoredDocument]:
        """Indexed documents similar enough to `query`, best first."""
        vector = await self._gateway.embed(query)
        if vector is None:
            return []

        try:
            rows = await self._executor.execute(
                AI_DOCUMENTS_SQL, self._max_documents, params=(self._ref_types,)
            )
        except SqlExecutionError as e:
            logger.warning("Knowledge index unavailable: %s", e.message)
            return []

        scored: List[ScoredDocument] = []
        skipped = 0
        for row in rows:
            embedding = _parse_vector(row.get("embedding_json"))
            if embedding is None or len(embedding) != len(vector):
                skipped += 1
                continue
            similarity = cosine_similarity(vector, embedding)
            if math.isnan(similarity) or similarity < self._threshold:
                continue
            scored.append(ScoredDocument(
                ref_type=str(row.get("ref_type") or ""),
                ref_id=str(row.get("ref_id") or ""),
                content=row.get("content") or "",
                similarity=similarity,
                updated_at=row.get("updated_at"),
            ))

        scored.sort(key=lambda doc: (-doc.similarity, doc.ref_type))
        logger.info(
            "Knowledge search: %d documents, %d skipped, %d matched (>= %.2f)",
            len(rows), skipped, len(scored), self._threshold,
        )
        return scored[:self._top_k]
