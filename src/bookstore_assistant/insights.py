"""Admin insights: restocking and category suggestions from sales data."""
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .collaborators import AnalyticsSnapshot, DateRange, SnapshotFlags, load_snapshot
from .enrichment import BookSuggestion, EnrichmentPool
from .llm.gateway import LlmGateway
from .normalizer import parse_json_object
from .sql_planner import language_label

logger = logging.getLogger(__name__)

UNPARSEABLE_PREFIX = "Could not parse the AI response as JSON. Raw content:\n"

INSIGHTS_SYSTEM_PROMPT = """You are the sales analyst of a bookstore.
Input: best-selling books, profit figures and customer rating statistics.
Tasks:
- Identify the best-selling items and series.
- Suggest the categories to prioritise when restocking.
- Suggest books to restock (already stocked and at risk of running out) or to add
  (missing segments or topics).
- Summarise the main points of customer feedback (strengths and weaknesses) and
  suggest service or quality improvements.
Write in {language_label}.

Respond ONLY with valid JSON:
{{
  "overview": "overall sales summary",
  "recommendedCategories": ["...", "..."],
  "bookSuggestions": [
    {{"isbn": "or empty for a new book", "title": "...", "category": "...", "reason": "..."}}
  ],
  "customerFeedbackSummary": "main feedback points and improvement ideas"
}}"""


class AdminInsights(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    overview: str = ""
    recommended_categories: List[str] = Field(default_factory=list, alias="recommendedCategories")
    book_suggestions: List[BookSuggestion] = Field(default_factory=list, alias="bookSuggestions")
    customer_feedback_summary: str = Field(default="", alias="customerFeedbackSummary")
    data_sources: List[str] = Field(default_factory=list, alias="dataSources")


def _parse_suggestion(item: Any) -> Optional[BookSuggestion]:
    if not isinstance(item, dict):
        return None
    try:
        suggestion = BookSuggestion.model_validate(item)
    except ValidationError:
        # Keep the identifying fields when enrichment fields are malformed
        suggestion = BookSuggestion.model_validate(
            {key: item.get(key) for key in ("isbn", "title", "category", "reason") if isinstance(item.get(key), str)}
        )
    return suggestion if suggestion.title else None


def parse_insights(text: str) -> AdminInsights:
    """Read the model's JSON; on failure the raw text goes into the overview."""
    data = parse_json_object(text)
    if data is None:
        logger.warning("Admin insights response was not JSON")
        return AdminInsights(overview=UNPARSEABLE_PREFIX + text)

    overview = data.get("overview")
    categories = data.get("recommendedCategories")
    suggestions = data.get("bookSuggestions")
    feedback = data.get("customerFeedbackSummary")

    return AdminInsights(
        overview=overview if isinstance(overview, str) else "",
        recommended_categories=[
            c.strip() for c in categories if isinstance(c, str) and c.strip()
        ] if isinstance(categories, list) else [],
        book_suggestions=[
            s for s in (_parse_suggestion(item) for item in suggestions) if s is not None
        ] if isinstance(suggestions, list) else [],
        customer_feedback_summary=feedback if isinstance(feedback, str) else "",
    )


class InsightsService:
    """Builds restocking insights and enriches the suggested books."""

    def __init__(
        self,
        gateway: LlmGateway,
        snapshot_source: AnalyticsSnapshot,
        enrichment_pool: EnrichmentPool
    ):
        self._gateway = gateway
        self._snapshot_source = snapshot_source
        self._pool = enrichment_pool

    async def get_admin_insights(
        self,
        date_range: Optional[DateRange] = None,
        language: str = "vi",
        flags: Optional[SnapshotFlags] = None
    ) -> Optional[AdminInsights]:
        """Return insights, or None when the model is unavailable."""
        date_range = date_range or DateRange.resolve()
        flags = flags or SnapshotFlags()
        snapshot = await load_snapshot(self._snapshot_source, date_range, flags)

        payload: Dict[str, Any] = {
            "type": "admin_assistant",
            "language": (language or "vi").strip().lower() or "vi",
            "period": {"from": date_range.start.isoformat(), "to": date_range.end.isoformat()},
            **snapshot.data,
        }
        text = await self._gateway.generate(
            INSIGHTS_SYSTEM_PROMPT.format(language_label=language_label(language)),
            json.dumps(payload, ensure_ascii=False, default=str),
        )
        if text is None:
            return None

        insights = parse_insights(text)
        if insights.book_suggestions:
            enriched = await self._pool.enrich(insights.book_suggestions)
            insights = insights.model_copy(update={"book_suggestions": enriched})
        return insights.model_copy(update={"data_sources": list(snapshot.data_sources)})
