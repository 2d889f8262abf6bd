"""Book recommendations: catalog candidates ranked by the model.

Candidates are active books matching the customer's request (title, ISBN,
category, publisher or author), topped up from the rest of the catalog when
too few match. Each carries its Delivered sales of the last 90 days. The
model picks and explains the best ones; without a usable answer the best
sellers among the candidates are returned instead.
"""
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import SqlExecutionError, ValidationError
from .llm.gateway import LlmGateway
from .normalizer import parse_json_object
from .tools.sql import SqlExecutor

logger = logging.getLogger(__name__)

MIN_RESULTS = 3
MAX_RESULTS = 20
MATCHED_CANDIDATES = 120
BACKUP_CANDIDATES = 150
SALES_WINDOW_DAYS = 90

FALLBACK_SUMMARY = (
    "The AI service could not be reached; these are the best sellers of the last 90 days."
)

_BOOK_COLUMNS = """
SELECT b.isbn, b.title, c.name AS category, p.name AS publisher, b.publish_year,
       b.average_price, b.stock,
       (SELECT string_agg(a.first_name || ' ' || a.last_name, ', ')
          FROM author_book ab JOIN author a ON a.author_id = ab.author_id
         WHERE ab.isbn = b.isbn) AS authors
FROM book b
LEFT JOIN category c ON c.category_id = b.category_id
LEFT JOIN publisher p ON p.publisher_id = b.publisher_id
"""

MATCHING_BOOKS_SQL = _BOOK_COLUMNS + """
WHERE b.status
  AND (b.title ILIKE %s OR b.isbn ILIKE %s OR c.name ILIKE %s OR p.name ILIKE %s
       OR EXISTS (SELECT 1 FROM author_book ab JOIN author a ON a.author_id = ab.author_id
                   WHERE ab.isbn = b.isbn AND (a.first_name || ' ' || a.last_name) ILIKE %s))
ORDER BY b.isbn
"""

OTHER_BOOKS_SQL = _BOOK_COLUMNS + """
WHERE b.status AND NOT (b.isbn = ANY(%s))
ORDER BY b.isbn
"""

SALES_SQL = """
SELECT ol.isbn, SUM(ol.qty) AS qty
FROM order_line ol
JOIN "order" o ON o.order_id = ol.order_id
WHERE o.status = 2 AND o.placed_at >= %s
GROUP BY ol.isbn
"""

RECOMMENDATION_SYSTEM_PROMPT = """You are the book advisor of an online bookstore.
Tasks:
- Read the customer's request and the list of candidate books.
- Pick at most maxResults books that fit best.
- For each, write a short summary (2-4 sentences) and why it fits (1-2 sentences).
- Prefer best sellers (high totalSold90d), matching topics, recent publication years
  and suitable prices.
Write in the language of the request.

Respond ONLY with valid JSON:
{
  "recommendations": [
    {"isbn": "...", "aiSummary": "summary and assessment", "aiReason": "why it fits", "score": 0-100}
  ],
  "overallSummary": "overall summary, at most 3 sentences"
}"""


class RecommendedBook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    isbn: str
    title: str
    category: Optional[str] = None
    publisher: Optional[str] = None
    publish_year: Optional[int] = Field(default=None, alias="publishYear")
    average_price: Optional[float] = Field(default=None, alias="averagePrice")
    authors: List[str] = Field(default_factory=list)
    total_sold_90d: int = Field(default=0, alias="totalSold90d")
    ai_summary: Optional[str] = Field(default=None, alias="aiSummary")
    ai_reason: Optional[str] = Field(default=None, alias="aiReason")


class BookRecommendations(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    books: List[RecommendedBook] = Field(default_factory=list)
    summary: Optional[str] = None
    used_ai: bool = Field(default=True, alias="usedAi")


def clamp_max_results(value: Optional[int]) -> int:
    return max(MIN_RESULTS, min(MAX_RESULTS, value if value is not None else 12))


def _to_book(row: Dict[str, Any], sold: Dict[str, int]) -> RecommendedBook:
    authors = row.get("authors") or ""
    return RecommendedBook(
        isbn=str(row["isbn"]),
        title=row.get("title") or "",
        category=row.get("category"),
        publisher=row.get("publisher"),
        publish_year=row.get("publish_year"),
        average_price=row.get("average_price"),
        authors=[a.strip() for a in authors.split(",") if a.strip()],
        total_sold_90d=sold.get(str(row["isbn"]), 0),
    )


def _best_sellers(candidates: List[RecommendedBook], limit: int) -> List[RecommendedBook]:
    return sorted(candidates, key=lambda b: b.total_sold_90d, reverse=True)[:limit]


def pick_recommendations(
    text: str,
    candidates: List[RecommendedBook],
    limit: int
) -> Optional[BookRecommendations]:
    """Map the model's picks onto known candidates, best score first.

    Returns None when the answer holds no usable pick.
    """
    data = parse_json_object(text)
    if data is None:
        logger.warning("Recommendation response was not JSON")
        return None

    by_isbn = {book.isbn: book for book in candidates}
    picks = []
    for item in data.get("recommendations") or []:
        if not isinstance(item, dict) or not isinstance(item.get("isbn"), str):
            continue
        score = item.get("score")
        picks.append((score if isinstance(score, (int, float)) else 0, item))
    picks.sort(key=lambda pair: pair[0], reverse=True)

    books = []
    for _, item in picks[:limit]:
        book = by_isbn.get(item["isbn"].strip())
        if book is None:
            continue
        books.append(book.model_copy(update={
            "ai_summary": item.get("aiSummary") if isinstance(item.get("aiSummary"), str) else None,
            "ai_reason": item.get("aiReason") if isinstance(item.get("aiReason"), str) else None,
        }))
    if not books:
        return None

    summary = data.get("overallSummary")
    return BookRecommendations(books=books, summary=summary if isinstance(summary, str) else None)


class RecommendationService:
    """Recommends books for a free-text request."""

    def __init__(self, gateway: LlmGateway, executor: SqlExecutor):
        self._gateway = gateway
        self._executor = executor

    async def recommend(self, prompt: str, max_results: Optional[int] = 12) -> Optional[BookRecommendations]:
        """Return recommendations, or None when the catalog cannot be read.

        Raises:
            ValidationError: If the request is blank
        """
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationError("Prompt is required", details={"field": "prompt"})
        limit = clamp_max_results(max_results)

        try:
            candidates = await self._load_candidates(prompt, limit)
        except SqlExecutionError as e:
            logger.warning("Recommendation candidates unavailable: %s", e.message)
            return None
        if not candidates:
            return BookRecommendations(books=[], summary=None, used_ai=False)

        payload = {
            "type": "book_recommendation",
            "userRequest": prompt,
            "maxResults": limit,
            "candidates": [
                book.model_dump(by_alias=True, exclude={"ai_summary", "ai_reason"})
                for book in candidates
            ],
        }
        text = await self._gateway.generate(
            RECOMMENDATION_SYSTEM_PROMPT,
            json.dumps(payload, ensure_ascii=False, default=str),
            temperature=0.4,
            response_mime_type="application/json",
        )
        if text is None:
            return BookRecommendations(
                books=_best_sellers(candidates, limit), summary=FALLBACK_SUMMARY, used_ai=False
            )

        picked = pick_recommendations(text, candidates, limit)
        if picked is None:
            return BookRecommendations(books=_best_sellers(candidates, limit), summary=None, used_ai=False)
        return picked

    async def _load_candidates(self, prompt: str, limit: int) -> List[RecommendedBook]:
        pattern = f"%{prompt}%"
        since = datetime.now(timezone.utc) - timedelta(days=SALES_WINDOW_DAYS)
        async with self._executor.connection() as conn:
            rows = await self._executor.execute(
                MATCHING_BOOKS_SQL, MATCHED_CANDIDATES, connection=conn,
                params=(pattern, pattern, pattern, pattern, pattern),
            )
            if len(rows) < limit:
                rows += await self._executor.execute(
                    OTHER_BOOKS_SQL, BACKUP_CANDIDATES, connection=conn,
                    params=([str(r["isbn"]) for r in rows],),
                )
            sales = await self._executor.execute(
                SALES_SQL, 10_000, connection=conn, params=(since,)
            )

        sold = {str(s["isbn"]): int(s.get("qty") or 0) for s in sales}
        return [_to_book(row, sold) for row in rows]
