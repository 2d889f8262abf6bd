"""Single-question text-to-SQL answering.

    question
       ↓
    model writes one SELECT (or the sentinel INVALID)
       ↓
    SqlSafetyValidator → SqlExecutor (row cap 1..200, default 50)
       ↓
    table preview → model answers from the data
       ↓
    AnswerEnvelope

Every failure before the final answer (sentinel, blank output, unsafe
statement, execution error) becomes a clarifying question instead.
"""
import logging
from typing import Any, Dict, List, Optional

from .clarification import ClarificationService
from .errors import SqlExecutionError, SqlSafetyError
from .llm.gateway import LlmGateway
from .normalizer import render_answer, strip_wrapper
from .schemas import AnswerEnvelope, ChatTurn, trim_conversation
from .sql_planner import DB_SCHEMA_DESCRIPTION
from .tools.sql import SqlExecutor, SqlSafetyValidator

logger = logging.getLogger(__name__)

OUT_OF_DOMAIN_SENTINEL = "INVALID"
DEFAULT_MAX_ROWS = 50
MAX_ROWS_LIMIT = 200
NO_DATA_TEXT = "RESULT: no matching records were found."
NO_ANSWER_TEXT = "Sorry, I cannot give an answer to that yet."
DATA_SOURCE = "sql_query"

SQL_SYSTEM_PROMPT = """You are a PostgreSQL expert for an online bookstore.
Turn the user's question into exactly ONE SELECT statement based on this schema:
{schema}

REQUIREMENTS:
1. Return only the SQL text (no ``` fences, no explanation, no semicolon).
2. Never use UPDATE, DELETE, INSERT, DROP or any other statement that changes data.
3. If the question cannot be answered from this database, return the single word: INVALID
4. For questions about time, prefer NOW() or CURRENT_DATE."""

ANSWER_SYSTEM_PROMPT = (
    "You are a data assistant. Answer briefly and clearly from the query result below, "
    "in the language of the question. Do not mention SQL, tables or columns."
)


def clamp_rows(max_rows: Optional[int], default: int = DEFAULT_MAX_ROWS) -> int:
    value = default if max_rows is None else max_rows
    return max(1, min(MAX_ROWS_LIMIT, value))


def format_value(value: Any) -> str:
    """Format one cell for the table preview."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float):
        text = f"{value:.2f}".rstrip("0").rstrip(".")
        return "0" if text in ("", "-0") else text
    return str(value).strip()


def build_table_preview(rows: List[Dict[str, Any]]) -> str:
    """Render rows as a `col | col` table with a dashed rule under the header."""
    if not rows:
        return NO_DATA_TEXT
    header = list(rows[0].keys())
    lines = [" | ".join(header), "-" * 80]
    for row in rows:
        lines.append(" | ".join(format_value(row.get(column)) for column in header))
    return "\n".join(lines) + "\n"


class TextToSqlService:
    """Answers one question by generating, validating and running a query."""

    def __init__(
        self,
        gateway: LlmGateway,
        executor: SqlExecutor,
        clarifier: ClarificationService,
        validator: Optional[SqlSafetyValidator] = None,
        default_max_rows: int = DEFAULT_MAX_ROWS,
        conversation_window: int = 12,
        schema_description: str = DB_SCHEMA_DESCRIPTION
    ):
        self._gateway = gateway
        self._executor = executor
        self._clarifier = clarifier
        self._validator = validator or SqlSafetyValidator()
        self._default_max_rows = default_max_rows
        self._window = conversation_window
        self._schema = schema_description

    async def ask_question(
        self,
        question: str,
        recent_turns: Optional[List[ChatTurn]] = None,
        max_rows: Optional[int] = None,
        connection: Any = None
    ) -> AnswerEnvelope:
        question = (question or "").strip()
        conversation = trim_conversation(recent_turns, self._window)

        statement = await self.generate_sql(question, conversation)
        if not statement:
            return await self._clarify(question, "blank SQL generation")
        if statement.upper() == OUT_OF_DOMAIN_SENTINEL:
            return await self._clarify(question, "out-of-domain question")

        try:
            safe_statement = self._validator.validate(statement)
        except SqlSafetyError as e:
            logger.warning("Generated SQL rejected: %s", e.message)
            return await self._clarify(question, "unsafe SQL")

        row_cap = clamp_rows(max_rows, self._default_max_rows)
        try:
            rows = await self._executor.execute(safe_statement, row_cap, connection=connection)
        except SqlExecutionError as e:
            logger.warning("Generated SQL failed: %s", e.message)
            return await self._clarify(question, "execution failure")

        preview = build_table_preview(rows)
        answer = await self._gateway.generate(
            ANSWER_SYSTEM_PROMPT,
            f"Question: {question}\nData:\n{preview}",
        )
        if not answer or not answer.strip():
            answer = NO_ANSWER_TEXT

        rendered = render_answer(answer)
        return AnswerEnvelope(
            answer=rendered.plain_text,
            plain_text=rendered.plain_text,
            markdown=rendered.markdown,
            data_sources=[DATA_SOURCE],
        )

    async def generate_sql(self, question: str, conversation: List[ChatTurn]) -> str:
        """Ask the model for one statement; returns "" when it gives nothing."""
        history = "\n".join(f"{turn.role}: {turn.content}" for turn in conversation)
        user_payload = f"Conversation so far:\n{history}\n\nQuestion: {question}" if history else question
        text = await self._gateway.generate(
            SQL_SYSTEM_PROMPT.format(schema=self._schema),
            user_payload,
            temperature=0.3,
        )
        return strip_wrapper(text).strip()

    async def _clarify(self, question: str, reason: str) -> AnswerEnvelope:
        clarification = await self._clarifier.clarify(question, reason=reason)
        return AnswerEnvelope(
            answer=clarification,
            plain_text=clarification,
            markdown=clarification,
            data_sources=[],
            needs_clarification=True,
        )
