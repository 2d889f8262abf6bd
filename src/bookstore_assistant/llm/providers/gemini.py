"""Gemini generateContent and embedContent provider.

Talks to `{base_url}/v1beta/models/{model}:generateContent?key=...` (and
`:embedContent` for embeddings) over an `httpx.AsyncClient`. Cancelling the
awaiting task cancels the in-flight HTTP request.
"""
import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..base import (
    LLMProvider,
    LLMTimeoutError,
    LLMTransportError,
    ProviderResponse,
    RequestOverrides,
)
from ...errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_EMBEDDING_MODEL = "text-embedding-004"


class GeminiProvider(LLMProvider):
    """Google Gemini REST provider.

    Requires an API key (GEMINI_API_KEY). The key travels as a query
    parameter, so request URLs are never logged.

    Example:
        >>> provider = GeminiProvider(api_key="...")
        >>> response = await provider.post_generate_content(request.to_payload())
        >>> response.status_code
        200
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        embedding_model: Optional[str] = None
    ):
        """Initialize Gemini provider.

        Args:
            api_key: API key for the Generative Language API
            model: Default model (default: gemini-2.5-flash)
            base_url: API root (default: https://generativelanguage.googleapis.com)
            timeout: Per-request timeout in seconds (default: 60.0)
            client: Optional pre-built AsyncClient (owned by the caller)
            embedding_model: Model for embedContent (default: text-embedding-004)

        Raises:
            ConfigurationError: If the API key is missing
        """
        if not api_key or not api_key.strip():
            raise ConfigurationError(
                "GEMINI_API_KEY is not configured",
                details={"variable": "GEMINI_API_KEY"}
            )
        self._api_key = api_key.strip()
        self._model = model or DEFAULT_MODEL
        self._embedding_model = embedding_model or DEFAULT_EMBEDDING_MODEL
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def post_generate_content(
        self,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides] = None
    ) -> ProviderResponse:
        model = (overrides and overrides.model) or self._model
        return await self._post(model, "generateContent", payload, overrides)

    async def post_embed_content(
        self,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides] = None
    ) -> ProviderResponse:
        # overrides.model names a generation model; embeddings keep their own
        return await self._post(self._embedding_model, "embedContent", payload, overrides)

    async def _post(
        self,
        model: str,
        method: str,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides]
    ) -> ProviderResponse:
        base_url = ((overrides and overrides.base_url) or self._base_url).rstrip("/")
        api_key = (overrides and overrides.api_key) or self._api_key

        url = f"{base_url}/v1beta/models/{model}:{method}"
        logger.debug("Calling Gemini %s model=%s", method, model)

        try:
            response = await self._client.post(
                url,
                params={"key": api_key},
                content=json.dumps(payload, ensure_ascii=False),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(
                f"Gemini request exceeded timeout of {self._timeout}s: {type(e).__name__}",
                timeout_seconds=self._timeout
            )
        except httpx.RequestError as e:
            # str(e) can embed the URL (and therefore the key); keep only the type
            raise LLMTransportError(
                f"Gemini request failed: {type(e).__name__}",
                details={"model": model}
            )

        return ProviderResponse(status_code=response.status_code, body=response.text)

    @property
    def model_name(self) -> str:
        """Return the Gemini model being used."""
        return self._model

    @property
    def embedding_model(self) -> str:
        return self._embedding_model

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
