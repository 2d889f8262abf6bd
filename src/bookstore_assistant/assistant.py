"""DataAssistant - the single entry point callers use.

Wires the shared RateGate, the LLM gateway, the SQL executor and the
services built on them, and exposes the upstream operations:

    ask_question       - single question → one validated SELECT → answer
    chat_with_tools    - customer question → at most one business tool → answer
    plan_and_answer    - admin question → snapshot + up to 2 queries → answer
    get_admin_insights - snapshot → restocking insights, enriched suggestions
    answer_by_voice    - recorded question → spoken answer
    recommend_books    - free-text request → ranked catalog picks
"""
import logging
from typing import List, Optional

from .clarification import ClarificationService
from .collaborators import (
    AnalyticsSnapshot,
    BookCatalogSearch,
    CustomerOrderSearch,
    DateRange,
    InvoiceLookup,
    IsbnRegistry,
    OrderLookup,
    SnapshotFlags,
)
from .config import Settings
from .db import DatabaseConfig, create_pool
from .enrichment import BookMetadataFetcher, EnrichmentPool
from .function_router import FunctionCallRouter
from .insights import AdminInsights, InsightsService
from .llm.base import LLMProvider
from .llm.gateway import LlmGateway
from .llm.providers.gemini import GeminiProvider
from .rate_gate import RateGate
from .schemas import AnswerEnvelope, ChatTurn, ToolChatResult
from .sql_planner import AnalyticsPlanner
from .recommendations import BookRecommendations, RecommendationService
from .store import CatalogSearch, KnowledgeBaseSearch, PostgresStore
from .text_to_sql import TextToSqlService
from .tools.base import ToolRegistry
from .tools.business import build_business_tools
from .tools.sql import SqlExecutor, SqlSafetyValidator
from .voice import VoiceAnswer, VoiceAssistant

logger = logging.getLogger(__name__)


class DataAssistant:
    """Facade over the planner, text-to-SQL, tool router, insights and voice services.

    Collaborators default to the Postgres-backed store; tests pass fakes.

    Example:
        >>> assistant = DataAssistant.from_settings(Settings.from_env())
        >>> envelope = await assistant.ask_question("How many books are out of stock?")
        >>> print(envelope.plain_text)
    """

    def __init__(
        self,
        gateway: LlmGateway,
        executor: SqlExecutor,
        settings: Optional[Settings] = None,
        orders: Optional[OrderLookup] = None,
        customer_orders: Optional[CustomerOrderSearch] = None,
        invoices: Optional[InvoiceLookup] = None,
        snapshot_source: Optional[AnalyticsSnapshot] = None,
        catalog: Optional[BookCatalogSearch] = None,
        isbn_registry: Optional[IsbnRegistry] = None
    ):
        self._settings = settings or Settings()
        self._gateway = gateway
        self._executor = executor

        store = None
        if None in (orders, customer_orders, invoices, snapshot_source, isbn_registry):
            store = PostgresStore(executor)
        orders = orders or store
        customer_orders = customer_orders or store
        invoices = invoices or store
        snapshot_source = snapshot_source or store
        isbn_registry = isbn_registry or store

        s = self._settings
        catalog = catalog or KnowledgeBaseSearch(
            gateway,
            executor,
            fallback=CatalogSearch(gateway, executor),
            threshold=s.knowledge_similarity_threshold,
            top_k=s.knowledge_top_k,
        )

        self.clarifier = ClarificationService(gateway)
        self.text_to_sql = TextToSqlService(
            gateway,
            executor,
            self.clarifier,
            default_max_rows=s.text_to_sql_max_rows,
            conversation_window=s.conversation_window,
        )
        self.planner = AnalyticsPlanner(
            gateway,
            executor,
            snapshot_source,
            row_cap=s.sql_row_cap,
            conversation_window=s.conversation_window,
        )
        self.registry = ToolRegistry(build_business_tools(orders, customer_orders, invoices, catalog))
        self.function_router = FunctionCallRouter(
            gateway,
            self.registry,
            catalog,
            warn_chars=s.function_result_warn_chars,
        )
        self.insights = InsightsService(
            gateway,
            snapshot_source,
            EnrichmentPool(BookMetadataFetcher(gateway), isbn_registry),
        )
        self.voice = VoiceAssistant(
            gateway,
            snapshot_source,
            voice_name=s.gemini_voice,
            voice_model=s.gemini_voice_model,
        )
        self.recommendations = RecommendationService(gateway, executor)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: Optional[LLMProvider] = None,
        rate_gate: Optional[RateGate] = None
    ) -> "DataAssistant":
        """Build the application container.

        Raises:
            ConfigurationError: If no provider is given and GEMINI_API_KEY is unset
        """
        if provider is None:
            provider = GeminiProvider(
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                base_url=settings.gemini_base_url,
                timeout=settings.llm_timeout_seconds,
                embedding_model=settings.gemini_embedding_model,
            )
        gateway = LlmGateway(
            provider,
            rate_gate or RateGate(settings.llm_max_concurrency),
            max_attempts=settings.llm_max_attempts,
            retry_base_delay=settings.llm_retry_base_delay,
        )
        db_config = DatabaseConfig(settings.database_url)
        executor = SqlExecutor(
            pool_factory=lambda: create_pool(
                db_config,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            ),
            statement_timeout_ms=settings.sql_statement_timeout_ms,
            validator=SqlSafetyValidator(),
        )
        logger.info(
            "Data assistant ready (model=%s, concurrency=%d)",
            gateway.model_name,
            settings.llm_max_concurrency,
        )
        return cls(gateway, executor, settings=settings)

    @property
    def gateway(self) -> LlmGateway:
        return self._gateway

    async def ask_question(
        self,
        question: str,
        recent_turns: Optional[List[ChatTurn]] = None
    ) -> AnswerEnvelope:
        return await self.text_to_sql.ask_question(question, recent_turns)

    async def chat_with_tools(self, question: str) -> ToolChatResult:
        return await self.function_router.chat_with_tools(question)

    async def plan_and_answer(
        self,
        question: str,
        date_range: Optional[DateRange] = None,
        flags: Optional[SnapshotFlags] = None,
        recent_turns: Optional[List[ChatTurn]] = None,
        language: str = "vi"
    ) -> AnswerEnvelope:
        return await self.planner.plan_and_answer(
            question, date_range, flags, recent_turns, language=language
        )

    async def get_admin_insights(
        self,
        date_range: Optional[DateRange] = None,
        language: str = "vi",
        flags: Optional[SnapshotFlags] = None
    ) -> Optional[AdminInsights]:
        return await self.insights.get_admin_insights(date_range, language, flags)

    async def answer_by_voice(
        self,
        audio_base64: str,
        mime_type: Optional[str] = None,
        date_range: Optional[DateRange] = None,
        flags: Optional[SnapshotFlags] = None,
        language: str = "vi"
    ) -> VoiceAnswer:
        return await self.voice.answer_by_voice(audio_base64, mime_type, date_range, flags, language)

    async def recommend_books(self, prompt: str, max_results: Optional[int] = 12) -> Optional[BookRecommendations]:
        return await self.recommendations.recommend(prompt, max_results)

    async def aclose(self) -> None:
        """Release the provider's HTTP client and the database pool."""
        await self._gateway.provider.aclose()
        await self._executor.aclose()
