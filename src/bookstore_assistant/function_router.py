"""Function-call router - hybrid tool use with retrieval fallback.

Two-call protocol:

    question + tool declarations ──► model
         │
         ├─ functionCall(name, args) ──► ToolRegistry → handler → JSON text
         │                                     │
         │      question, name, args, result ──► model ──► final answer
         │
         ├─ plain text ──► used unmodified
         │
         └─ no response ──► BookCatalogSearch (RAG) ──► answer | apology

Unknown tool names and failing lookups become machine-readable error
payloads that are handed back to the model; nothing here raises except a
ConfigurationError.
"""
import json
import logging
from typing import Any, Optional

from prometheus_client import Counter

from .collaborators import BookCatalogSearch
from .errors import BusinessLookupError, ConfigurationError
from .llm.extract import extract_first_text, extract_function_call
from .llm.gateway import LlmGateway
from .llm.schemas import FunctionCallIntent
from .schemas import ToolChatResult
from .tools.base import ToolRegistry

logger = logging.getLogger(__name__)

TOOL_CALLS = Counter("assistant_tool_calls_total", "Function calls dispatched by tool and outcome", ["tool", "outcome"])

UNKNOWN_FUNCTION_PAYLOAD = '{"error":"Unknown function"}'
DEFAULT_WARN_CHARS = 30_000

UNAVAILABLE_ANSWER = (
    "Sorry, the assistant cannot answer right now. Please try again in a moment."
)

TOOL_SYSTEM_PROMPT = """You are the assistant of an online bookstore.
Use the available functions to look up orders, customer orders, invoices and books
whenever the question needs real data; never invent order, invoice or price details.
If no function is needed, answer directly. Answer in the language of the question,
briefly and politely."""


class FunctionCallRouter:
    """Routes model-declared function calls to registered business tools.

    Example:
        >>> router = FunctionCallRouter(gateway, ToolRegistry(build_business_tools(...)), catalog)
        >>> result = await router.chat_with_tools("Where is my order 1024?")
        >>> result.method_used
        'function_calling'
    """

    def __init__(
        self,
        gateway: LlmGateway,
        registry: ToolRegistry,
        catalog: BookCatalogSearch,
        warn_chars: int = DEFAULT_WARN_CHARS,
        system_prompt: str = TOOL_SYSTEM_PROMPT
    ):
        """Initialize the router.

        Args:
            gateway: LLM gateway for both legs of the protocol
            registry: Tools the model may call
            catalog: Retrieval-augmented search used as fallback
            warn_chars: Result size that triggers a context-size warning
            system_prompt: System instruction for both calls
        """
        self._gateway = gateway
        self._registry = registry
        self._catalog = catalog
        self._warn_chars = warn_chars
        self._system_prompt = system_prompt

    async def chat_with_tools(self, question: str) -> ToolChatResult:
        """Answer a question, calling at most one business tool."""
        response = await self._gateway.generate_with_tools(
            self._system_prompt,
            question,
            self._registry.declarations(),
        )
        if response is None:
            return await self._fallback(question)

        intent = extract_function_call(response)
        if intent is not None and intent.name:
            result = await self.dispatch(intent)
            answer = await self._gateway.send_function_result(
                self._system_prompt,
                question,
                intent.name,
                intent.args,
                result,
            )
            if answer is None:
                logger.warning("No answer after calling %s; falling back to catalog search", intent.name)
                return await self._fallback(question, function_called=intent.name)
            return ToolChatResult(answer=answer, method_used="function_calling", function_called=intent.name)

        text = extract_first_text(response)
        if text is not None:
            return ToolChatResult(answer=text, method_used="direct")

        return await self._fallback(question)

    async def dispatch(self, intent: FunctionCallIntent) -> str:
        """Run the tool named by `intent` and return its result as JSON text."""
        tool = self._registry.get(intent.name)
        if tool is None:
            TOOL_CALLS.labels(tool="unknown", outcome="unknown").inc()
            logger.warning("Model requested unknown function %r", intent.name)
            return UNKNOWN_FUNCTION_PAYLOAD

        args = dict(intent.args)
        for name in tool.required:
            if args.get(name) is None:
                args[name] = ""

        try:
            result: Any = await tool.handler(args)
            TOOL_CALLS.labels(tool=tool.name, outcome="success").inc()
        except ConfigurationError:
            raise
        except Exception as e:
            TOOL_CALLS.labels(tool=tool.name, outcome="error").inc()
            error = BusinessLookupError(f"{tool.name} failed: {e}", details={"function": tool.name})
            logger.exception("Lookup failed: %s", error.to_dict())
            result = {"error": "Lookup failed", "function": tool.name}

        text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
        if len(text) > self._warn_chars:
            logger.warning(
                "Result of %s is %d chars (threshold %d); it may not fit the model context",
                tool.name, len(text), self._warn_chars
            )
        return text

    async def _fallback(self, question: str, function_called: Optional[str] = None) -> ToolChatResult:
        try:
            answer = await self._catalog.search(question)
        except ConfigurationError:
            raise
        except Exception:
            logger.exception("Catalog search fallback failed")
            answer = None

        if answer and answer.strip():
            return ToolChatResult(answer=answer, method_used="rag_fallback", function_called=function_called)
        return ToolChatResult(answer=UNAVAILABLE_ANSWER, method_used="unavailable", function_called=function_called)

    @property
    def registry(self) -> ToolRegistry:
        return self._registry
