import os
from typing import Optional

from pydantic import BaseModel


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


class Settings(BaseModel):
    service_name: str = "bookstore-assistant"
    environment: str = "dev"

    # Gemini backend
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_voice: str = "Zephyr"
    gemini_voice_model: Optional[str] = None   # model override for audio replies
    gemini_embedding_model: str = "text-embedding-004"

    # LLM gateway
    llm_max_concurrency: int = 3
    llm_max_attempts: int = 3
    llm_retry_base_delay: float = 0.5     # seconds, doubled per attempt
    llm_timeout_seconds: float = 60.0

    # SQL
    sql_row_cap: int = 25                 # rows per supplemental plan step
    text_to_sql_max_rows: int = 50        # rows for single-question text-to-SQL
    sql_statement_timeout_seconds: int = 60
    database_url: Optional[str] = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10

    # Conversation / tools
    conversation_window: int = 12
    function_result_warn_chars: int = 30_000

    # Knowledge search over ai_documents
    knowledge_similarity_threshold: float = 0.1
    knowledge_top_k: int = 8

    @property
    def sql_statement_timeout_ms(self) -> int:
        """Convert seconds to the milliseconds Postgres expects."""
        return self.sql_statement_timeout_seconds * 1000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, keeping defaults for unset ones."""
        return cls(
            environment=os.getenv("ENVIRONMENT", "dev"),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL") or cls.model_fields["gemini_model"].default,
            gemini_base_url=(os.getenv("GEMINI_BASE_URL") or cls.model_fields["gemini_base_url"].default).rstrip("/"),
            gemini_voice=os.getenv("GEMINI_VOICE") or cls.model_fields["gemini_voice"].default,
            gemini_voice_model=os.getenv("GEMINI_VOICE_MODEL") or None,
            gemini_embedding_model=os.getenv("GEMINI_EMBEDDING_MODEL") or cls.model_fields["gemini_embedding_model"].default,
            llm_max_concurrency=_env_int("LLM_MAX_CONCURRENCY", 3),
            llm_max_attempts=_env_int("LLM_MAX_ATTEMPTS", 3),
            llm_retry_base_delay=_env_float("LLM_RETRY_BASE_DELAY", 0.5),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 60.0),
            sql_row_cap=_env_int("SQL_ROW_CAP", 25),
            text_to_sql_max_rows=_env_int("TEXT_TO_SQL_MAX_ROWS", 50),
            sql_statement_timeout_seconds=_env_int("SQL_STATEMENT_TIMEOUT_SECONDS", 60),
            database_url=os.getenv("DATABASE_URL") or None,
            db_pool_min_size=_env_int("DB_POOL_MIN_SIZE", 1),
            db_pool_max_size=_env_int("DB_POOL_MAX_SIZE", 10),
            conversation_window=_env_int("CONVERSATION_WINDOW", 12),
            function_result_warn_chars=_env_int("FUNCTION_RESULT_WARN_CHARS", 30_000),
            knowledge_similarity_threshold=_env_float("KNOWLEDGE_SIMILARITY_THRESHOLD", 0.1),
            knowledge_top_k=_env_int("KNOWLEDGE_TOP_K", 8),
        )


settings = Settings.from_env()
