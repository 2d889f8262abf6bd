"""Base classes for LLM provider abstraction.

A provider only knows how to deliver one generateContent payload to a
backend and hand back the HTTP status and body. Admission control, retries,
failure classification and response parsing all live in the gateway, so
every provider gets them for free.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import ProviderError, TimeoutError as StructuredTimeoutError


@dataclass(frozen=True)
class LLMUsage:
    """Token usage reported by the backend.

    Attributes:
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        total_tokens: Total tokens used (input + output)
    """
    input_tokens: int
    output_tokens: int
    total_tokens: int

    @classmethod
    def from_response(cls, response: Any) -> Optional["LLMUsage"]:
        """Read `usageMetadata` from a generateContent response, if present."""
        if not isinstance(response, dict):
            return None
        meta = response.get("usageMetadata")
        if not isinstance(meta, dict):
            return None
        input_tokens = int(meta.get("promptTokenCount") or 0)
        output_tokens = int(meta.get("candidatesTokenCount") or 0)
        total = int(meta.get("totalTokenCount") or input_tokens + output_tokens)
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)


@dataclass(frozen=True)
class RequestOverrides:
    """Per-call replacements for the provider defaults."""
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None


@dataclass(frozen=True)
class ProviderResponse:
    """Raw HTTP outcome of one provider call."""
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Parse the body as JSON.

        Raises:
            ValueError: If the body is not valid JSON
        """
        return json.loads(self.body)


class LLMTimeoutError(StructuredTimeoutError):
    """Raised when a provider request exceeds its timeout.

    Retryable: the gateway treats it like any other transient failure.
    """

    def __init__(self, message: str, timeout_seconds: Optional[float] = None):
        details = {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message=message,
            retryable=True,
            details=details
        )


class LLMTransportError(ProviderError):
    """Network-level failure talking to the provider. Retryable."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, retryable=True, details=details)


class LLMProvider(ABC):
    """Abstract base class for generateContent backends.

    Key requirements:
    - Return the HTTP status and body untouched; never interpret them
    - Raise LLMTimeoutError / LLMTransportError for transport failures
    - Let asyncio.CancelledError propagate
    - Never log API keys or full request URLs
    """

    @abstractmethod
    async def post_generate_content(
        self,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides] = None
    ) -> ProviderResponse:
        """Send one generateContent request.

        Args:
            payload: Wire-format request body
            overrides: Optional model/base URL/API key replacements

        Returns:
            ProviderResponse with status code and raw body

        Raises:
            LLMTimeoutError: If the request exceeds the provider timeout
            LLMTransportError: For connection-level failures
        """
        pass

    async def post_embed_content(
        self,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides] = None
    ) -> ProviderResponse:
        """Send one embedContent request.

        Backends without embeddings keep this default, which the gateway
        treats as a rejected call.
        """
        raise ProviderError(
            f"{type(self).__name__} does not support embeddings",
            retryable=False
        )

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the default model identifier, e.g. "gemini-2.5-flash"."""
        pass

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None
