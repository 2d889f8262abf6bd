"""Analytics planner - plan, execute, synthesize for admin data chat.

The model answers from a pre-aggregated dataset snapshot. When the snapshot
is not enough it may propose up to two supplemental read-only queries; the
deterministic validator decides whether they run.

Architecture:
    Question + conversation window + dataset snapshot + schema
         ↓
    Plan        (model → SqlPlan, at most 2 steps, empty on any failure)
         ↓
    Execute     (SqlSafetyValidator → SqlExecutor, row cap 25, bad steps dropped)
         ↓
    Synthesize  (model → StructuredAnswer JSON, never reveals SQL or aliases)
         ↓
    Render      (Normalizer → plain text + markdown, raw text on failure)

Safety:
- Model-written SQL goes through the same validator as every other statement
- A rejected step never reaches the executor
- One failing step never aborts the plan
"""
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .collaborators import (
    AnalyticsSnapshot,
    DatasetSnapshot,
    DateRange,
    SnapshotFlags,
    load_snapshot,
)
from .errors import PlannerError, SqlExecutionError, SqlSafetyError
from .llm.gateway import LlmGateway
from .normalizer import RenderedAnswer, parse_json_object, render_answer
from .schemas import AnswerEnvelope, ChatTurn, trim_conversation
from .schemas_sql import SqlExecutionResult, SqlPlan
from .schemas_sql_planner import MAX_PLAN_STEPS, PlanDraft
from .tools.sql import SqlExecutor

logger = logging.getLogger(__name__)

DEFAULT_ROW_CAP = 25

APOLOGY = (
    "Sorry, I could not put together an answer from the available data right now. "
    "Please try again or rephrase your question."
)

# Static schema descriptor shared with the model
DB_SCHEMA_DESCRIPTION = """
PostgreSQL schema (read-only):

1. book
   - isbn: varchar (primary key)
   - title: varchar
   - page_count: integer
   - average_price: numeric(12,2) - average purchase price
   - publish_year: integer
   - category_id: bigint -> category.category_id
   - publisher_id: bigint -> publisher.publisher_id
   - stock: integer - quantity on hand
   - status: boolean - true when the book is on sale
   - created_at, updated_at: timestamp

2. category
   - category_id: bigint (primary key)
   - name: varchar
   - description: text

3. publisher
   - publisher_id: bigint (primary key)
   - name: varchar

4. author / author_book
   - author(author_id, first_name, last_name)
   - author_book(author_id, isbn)

5. customer
   - customer_id: bigint (primary key)
   - first_name, last_name, email, phone, address: varchar
   - created_at: timestamp

6. "order" (quote the name)
   - order_id: bigint (primary key)
   - customer_id: bigint -> customer.customer_id
   - placed_at: timestamp
   - status: integer - 0 PendingConfirmation, 1 Confirmed, 2 Delivered, 3 Cancelled
   - delivery_date: date
   - receiver_name, receiver_phone, shipping_address: varchar

7. order_line
   - order_line_id: bigint (primary key)
   - order_id: bigint -> "order".order_id
   - isbn: varchar -> book.isbn
   - qty: integer
   - unit_price: numeric(12,2)

8. invoice
   - invoice_id: bigint (primary key)
   - order_id: bigint -> "order".order_id
   - total_amount, tax_amount: numeric(14,2)
   - created_at: timestamp

9. rating
   - rating_id: bigint (primary key)
   - customer_id, isbn, stars (1-5), comment, created_at

Revenue and "sold" figures count Delivered orders (status = 2) only.
"""

PLAN_SYSTEM_PROMPT = """You are the data planner of a bookstore back-office assistant.
You receive the admin's question, the recent conversation, a JSON dataset that is
already aggregated, and the database schema.

Decide whether the dataset already answers the question. If it does not, propose
at most 2 read-only PostgreSQL queries that fetch the missing facts.

RULES (CRITICAL):
1. Each query is a single SELECT (or WITH ... SELECT) statement without a semicolon
2. Never INSERT, UPDATE, DELETE, DROP, CREATE, ALTER, TRUNCATE or MERGE
3. Use only tables and columns from the schema
4. Return zero steps when the dataset is enough

Respond with JSON only:
{"summary": "what you need to find out", "steps": [{"alias": "short_name", "description": "what it returns", "sql": "SELECT ..."}]}
"""

SYNTHESIS_SYSTEM_PROMPT = """You are the real-time data assistant of the bookstore administrators.
Answer the question using only the dataset and the query results you are given; never guess.
Mention the key figures (revenue, profit, stock...) when relevant and suggest concrete
next actions. If data is missing, say so and suggest the next step.

Never reveal SQL text, table or column names, or internal step names in the answer.
Answer in {language_label}, at most 4 short paragraphs or bullets.

Respond with JSON only:
{{"overview": "...", "metrics": [{{"label": "...", "value": "...", "note": "..."}}],
 "insights": ["..."], "recommendedActions": ["..."], "sources": ["..."]}}
"""


def language_label(language: Optional[str]) -> str:
    code = (language or "vi").strip().lower() or "vi"
    if code == "vi":
        return "Vietnamese"
    if code == "en":
        return "English"
    return f"the requested language ({code})"


class AnalyticsPlanner:
    """Plan → execute → synthesize loop over the analytics snapshot.

    Example:
        >>> planner = AnalyticsPlanner(gateway, executor, snapshot_source)
        >>> envelope = await planner.plan_and_answer("Which category sold best?")
        >>> print(envelope.markdown)
    """

    def __init__(
        self,
        gateway: LlmGateway,
        executor: SqlExecutor,
        snapshot_source: AnalyticsSnapshot,
        row_cap: int = DEFAULT_ROW_CAP,
        conversation_window: int = 12,
        schema_description: str = DB_SCHEMA_DESCRIPTION
    ):
        """Initialize the planner.

        Args:
            gateway: LLM gateway used for the plan and synthesis calls
            executor: SQL executor for supplemental steps
            snapshot_source: Provider of the pre-aggregated dataset
            row_cap: Maximum rows per supplemental step (default: 25)
            conversation_window: Turns of history kept (default: 12)
            schema_description: Schema descriptor shown to the model
        """
        self._gateway = gateway
        self._executor = executor
        self._snapshot_source = snapshot_source
        self._row_cap = row_cap
        self._window = conversation_window
        self._schema = schema_description

    async def plan_and_answer(
        self,
        question: str,
        date_range: Optional[DateRange] = None,
        flags: Optional[SnapshotFlags] = None,
        recent_turns: Optional[List[ChatTurn]] = None,
        language: str = "vi",
        connection: Any = None
    ) -> AnswerEnvelope:
        """Answer an analytical question.

        Args:
            question: The admin's question
            date_range: Snapshot window (default: last 30 days)
            flags: Which optional snapshot sections to include
            recent_turns: Conversation history, trimmed to the window
            language: Answer language code (default: "vi")
            connection: Optional borrowed connection for supplemental steps

        Returns:
            AnswerEnvelope; an apology when no answer could be produced
        """
        date_range = date_range or DateRange.resolve()
        flags = flags or SnapshotFlags()
        conversation = trim_conversation(recent_turns, self._window)

        snapshot = await load_snapshot(self._snapshot_source, date_range, flags)
        plan = await self.plan(question, conversation, snapshot)
        results = await self.execute_plan(plan, connection=connection)
        answer_text = await self.synthesize(question, conversation, snapshot, plan, results, language)

        if not answer_text or not answer_text.strip():
            rendered = RenderedAnswer(plain_text=APOLOGY, markdown=APOLOGY)
        else:
            rendered = render_answer(answer_text)

        return AnswerEnvelope(
            answer=rendered.plain_text,
            plain_text=rendered.plain_text,
            markdown=rendered.markdown,
            data_sources=list(snapshot.data_sources),
        )

    async def plan(
        self,
        question: str,
        conversation: List[ChatTurn],
        snapshot: DatasetSnapshot
    ) -> SqlPlan:
        """Ask the model for supplemental steps. Any failure yields an empty plan."""
        payload = {
            "question": question,
            "conversation": [turn.model_dump() for turn in conversation],
            "dataset": snapshot.data,
            "schema": self._schema,
            "maxSteps": MAX_PLAN_STEPS,
        }
        text = await self._gateway.generate(
            PLAN_SYSTEM_PROMPT,
            _to_json(payload),
            temperature=0.3,
            response_mime_type="application/json",
        )
        if text is None:
            logger.warning("Planner got no response; continuing without supplemental queries")
            return SqlPlan.empty()

        data = parse_json_object(text)
        if data is None:
            error = PlannerError("Planner response was not a JSON object", details={"chars": len(text)})
            logger.warning("Continuing with an empty plan: %s", error.to_dict())
            return SqlPlan.empty()

        try:
            plan = PlanDraft.model_validate(data).to_plan(MAX_PLAN_STEPS)
        except ValidationError as e:
            error = PlannerError("Planner response did not match the plan shape", details={"errors": e.error_count()})
            logger.warning("Continuing with an empty plan: %s", error.to_dict())
            return SqlPlan.empty()

        logger.info("Planner proposed %d step(s): %s", len(plan.steps), plan.summary)
        return plan

    async def execute_plan(self, plan: SqlPlan, connection: Any = None) -> List[SqlExecutionResult]:
        """Run each step; rejected or failing steps are logged and skipped."""
        results: List[SqlExecutionResult] = []
        for step in plan.steps:
            try:
                result = await self._executor.run_step(step, self._row_cap, connection=connection)
            except SqlSafetyError as e:
                logger.warning("Rejected plan step %s: %s", step.alias, e.message)
                continue
            except SqlExecutionError as e:
                logger.warning("Plan step %s failed: %s", step.alias, e.message)
                continue
            results.append(result)
        return results

    async def synthesize(
        self,
        question: str,
        conversation: List[ChatTurn],
        snapshot: DatasetSnapshot,
        plan: SqlPlan,
        results: List[SqlExecutionResult],
        language: str = "vi"
    ) -> Optional[str]:
        """Ask the model for the final answer; aliases and SQL are withheld."""
        payload = {
            "question": question,
            "conversation": [turn.model_dump() for turn in conversation],
            "dataset": snapshot.data,
            "schema": self._schema,
            "planSummary": plan.summary,
            "supplementalData": [
                {"description": r.description, "rows": r.rows, "rowCount": r.row_count}
                for r in results
            ],
            "expectedOutput": {
                "sections": ["overview", "metrics", "insights", "recommendedActions"],
                "mentionDataSources": True,
                "dataSources": list(snapshot.data_sources),
            },
        }
        system_prompt = SYNTHESIS_SYSTEM_PROMPT.format(language_label=language_label(language))
        return await self._gateway.generate(
            system_prompt,
            _to_json(payload),
            response_mime_type="application/json",
        )


def _to_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)
