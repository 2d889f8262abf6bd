"""Turn generation or execution failures into a clarifying question."""
import logging
from typing import Optional

from .llm.gateway import LlmGateway
from .normalizer import strip_wrapper

logger = logging.getLogger(__name__)

STATIC_CLARIFICATION = (
    "Could you tell me a bit more about what you would like to know, "
    "for example which books, orders or time period you mean?"
)

CLARIFICATION_SYSTEM_PROMPT = """You help customers and staff of an online bookstore.
The previous question could not be answered as asked. Reply with ONE short, friendly
clarifying question that helps the user rephrase it (which book, order, customer or
time period they mean).
Do not mention databases, queries, schemas, tables, code or errors.
Reply in the same language as the question."""


class ClarificationService:
    """Asks the model for a clarifying question, with a static fallback."""

    def __init__(self, gateway: LlmGateway, fallback: str = STATIC_CLARIFICATION):
        self._gateway = gateway
        self._fallback = fallback

    async def clarify(self, question: str, reason: Optional[str] = None) -> str:
        """Return a clarifying question for `question`. Never raises.

        `reason` is only logged; it never reaches the prompt.
        """
        if reason:
            logger.info("Asking for clarification (%s)", reason)
        text = await self._gateway.generate(
            CLARIFICATION_SYSTEM_PROMPT,
            f"Question: {question}",
            temperature=0.3,
        )
        cleaned = strip_wrapper(text).strip()
        if not cleaned:
            return self._fallback
        return cleaned
