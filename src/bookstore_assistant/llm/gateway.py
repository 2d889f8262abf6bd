"""LLM Gateway - the single choke point for generative-AI calls.

Every call to the backend goes through `LlmGateway`:

    caller
      ↓
    generate / generate_with_tools / send_function_result / generate_raw / embed
      ↓
    RateGate.slot()            (bounded concurrency, released on every path)
      ↓
    LLMProvider.post_generate_content | post_embed_content
      ↓
    classify_failure → tenacity retry with backoff (transient) | give up (fatal)
      ↓
    response dict | None

Callers never see provider exceptions. A missing answer is always None,
which they turn into a clarifying question, an apology or a fallback.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from prometheus_client import Counter
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .base import LLMProvider, LLMUsage, ProviderResponse, RequestOverrides
from .extract import extract_first_text
from .schemas import (
    Content,
    FunctionCallPart,
    FunctionResponseBody,
    FunctionResponsePart,
    GenerateContentRequest,
    GenerationConfig,
    Part,
    SystemInstruction,
)
from ..errors import CredentialError, ProviderError, QuotaExceededError, StructuredError
from ..rate_gate import RateGate

logger = logging.getLogger(__name__)

LLM_CALLS = Counter("assistant_llm_calls_total", "LLM backend calls by outcome", ["outcome"])
LLM_TOKENS = Counter("assistant_llm_tokens_total", "LLM tokens consumed", ["direction"])

# Substrings the backend uses for credential failures. Rate limiting sometimes
# shows up with the same text, which is why quota/rate wins over these.
CREDENTIAL_MARKERS = ("api key expired", "api_key_invalid")
QUOTA_MARKERS = ("quota", "rate")

ProviderCall = Callable[[Dict[str, Any], Optional[RequestOverrides]], Awaitable[ProviderResponse]]


class FailureKind(Enum):
    """How the gateway reacts to a failed call."""
    CREDENTIAL = "credential"   # fatal, never retried
    TRANSIENT = "transient"     # retried with backoff
    REJECTED = "rejected"       # not retried, degrades to None


def classify_failure(status_code: int, body: str) -> FailureKind:
    """Classify a non-2xx response from status code and body text.

    Args:
        status_code: HTTP status returned by the backend
        body: Raw response body

    Returns:
        FailureKind for the response
    """
    lowered = (body or "").lower()
    mentions_quota = any(marker in lowered for marker in QUOTA_MARKERS)

    if any(marker in lowered for marker in CREDENTIAL_MARKERS):
        if mentions_quota or status_code == 429:
            return FailureKind.TRANSIENT
        return FailureKind.CREDENTIAL

    if status_code == 429:
        return FailureKind.TRANSIENT
    if status_code == 400 and "quota" in lowered:
        return FailureKind.TRANSIENT
    if status_code >= 500:
        return FailureKind.TRANSIENT
    return FailureKind.REJECTED


def error_for_response(response: ProviderResponse) -> StructuredError:
    """Turn a failed provider response into the matching structured error."""
    kind = classify_failure(response.status_code, response.body)
    details = {"status_code": response.status_code}
    if kind is FailureKind.CREDENTIAL:
        return CredentialError("Gemini API key is expired or invalid", details=details)
    if kind is FailureKind.TRANSIENT and response.status_code < 500:
        return QuotaExceededError(
            f"Gemini rate limit or quota exceeded (HTTP {response.status_code})",
            details=details
        )
    if kind is FailureKind.TRANSIENT:
        return ProviderError(
            f"Gemini server error (HTTP {response.status_code})",
            retryable=True,
            details=details
        )
    return ProviderError(
        f"Gemini rejected the request (HTTP {response.status_code})",
        retryable=False,
        details=details
    )


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, StructuredError) and error.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception()
    LLM_CALLS.labels(outcome="retried").inc()
    logger.warning(
        "Gemini transient failure, retrying in %.2fs (attempt %d): %s",
        retry_state.next_action.sleep,
        retry_state.attempt_number,
        getattr(error, "message", error),
    )


class LlmGateway:
    """Bounded, retrying client for the generative-AI backend.

    Example:
        >>> gateway = LlmGateway(GeminiProvider(api_key), RateGate(3))
        >>> text = await gateway.generate("You are a helpful assistant.", "Hi")
        >>> if text is None:
        ...     ...  # backend unavailable: use a fallback
    """

    def __init__(
        self,
        provider: LLMProvider,
        rate_gate: RateGate,
        max_attempts: int = 3,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """Initialize the gateway.

        Args:
            provider: Backend provider delivering payloads
            rate_gate: Process-wide admission gate shared by all callers
            max_attempts: Attempts for transient failures (default: 3)
            retry_base_delay: First backoff delay in seconds, doubled per retry
            sleep: Awaitable sleep used between retries (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._provider = provider
        self._gate = rate_gate
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    async def generate(
        self,
        system_prompt: str,
        user_payload: str,
        tool_config: Optional[Dict[str, Any]] = None,
        temperature: float = 0.7,
        response_mime_type: Optional[str] = None
    ) -> Optional[str]:
        """System prompt + one user turn, returning the first text part or None."""
        request = GenerateContentRequest.single_turn(
            system_prompt,
            user_payload,
            temperature=temperature,
            tools=[tool_config] if tool_config is not None else None,
            response_mime_type=response_mime_type,
        )
        response = await self.generate_raw(request)
        return extract_first_text(response)

    async def generate_with_tools(
        self,
        system_prompt: str,
        user_payload: str,
        tool_config: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """First leg of function calling: the raw response may hold a functionCall."""
        request = GenerateContentRequest.single_turn(
            system_prompt,
            user_payload,
            temperature=0.3,
            tools=[tool_config],
        )
        return await self.generate_raw(request)

    async def send_function_result(
        self,
        system_prompt: str,
        question: str,
        function_name: str,
        function_args: Dict[str, Any],
        function_result: str
    ) -> Optional[str]:
        """Second leg of function calling: replay the call with its result."""
        request = GenerateContentRequest(
            system_instruction=SystemInstruction(parts=[Part(text=system_prompt)]),
            contents=[
                Content(role="user", parts=[Part(text=question)]),
                Content(
                    role="model",
                    parts=[Part(function_call=FunctionCallPart(name=function_name, args=function_args))],
                ),
                Content(
                    role="function",
                    parts=[
                        Part(
                            function_response=FunctionResponsePart(
                                name=function_name,
                                response=FunctionResponseBody(content=function_result),
                            )
                        )
                    ],
                ),
            ],
            generation_config=GenerationConfig(temperature=0.3),
        )
        response = await self.generate_raw(request)
        return extract_first_text(response)

    async def generate_raw(
        self,
        payload: Union[GenerateContentRequest, Dict[str, Any]],
        overrides: Optional[RequestOverrides] = None
    ) -> Optional[Dict[str, Any]]:
        """Send a payload and return the parsed response dict, or None.

        Credential failures return None immediately. Transient failures are
        retried up to `max_attempts` times with exponential backoff and then
        return None. Cancellation propagates to the caller.
        """
        if isinstance(payload, GenerateContentRequest):
            payload = payload.to_payload()

        data = await self._with_retries(self._provider.post_generate_content, payload, overrides)
        if data is not None:
            usage = LLMUsage.from_response(data)
            if usage is not None:
                LLM_TOKENS.labels(direction="input").inc(usage.input_tokens)
                LLM_TOKENS.labels(direction="output").inc(usage.output_tokens)
        return data

    async def embed(self, text: Optional[str]) -> Optional[List[float]]:
        """Embedding vector for `text`, or None when it cannot be produced.

        Goes through the same gate, retry policy and failure handling as
        generateContent calls.
        """
        if not text or not text.strip():
            return None
        payload = {"content": {"parts": [{"text": text.strip()}]}}
        data = await self._with_retries(self._provider.post_embed_content, payload, None)
        if data is None:
            return None

        embedding = data.get("embedding")
        values = embedding.get("values") if isinstance(embedding, dict) else None
        if not isinstance(values, list):
            logger.warning("Gemini embedding response carried no values")
            return None
        vector = [
            float(v) for v in values
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        ]
        return vector or None

    async def _with_retries(
        self,
        post: ProviderCall,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides]
    ) -> Optional[Dict[str, Any]]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_base_delay),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    data = await self._send_once(post, payload, overrides)
        except CredentialError as e:
            LLM_CALLS.labels(outcome="credential").inc()
            logger.error(
                "Gemini credentials rejected; update GEMINI_API_KEY. %s", e.message
            )
            return None
        except StructuredError as e:
            if e.retryable:
                LLM_CALLS.labels(outcome="exhausted").inc()
                logger.warning(
                    "Gemini call gave up after %d attempts: %s", self._max_attempts, e.message
                )
            else:
                LLM_CALLS.labels(outcome="rejected").inc()
                logger.warning("Gemini call failed without retry: %s", e.message)
            return None
        except Exception:
            LLM_CALLS.labels(outcome="error").inc()
            logger.exception("Unexpected error calling Gemini")
            return None

        LLM_CALLS.labels(outcome="success").inc()
        return data

    async def _send_once(
        self,
        post: ProviderCall,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides]
    ) -> Dict[str, Any]:
        """One attempt: hold a gate slot only for the network call itself."""
        async with self._gate.slot():
            response = await post(payload, overrides)

        if not response.ok:
            raise error_for_response(response)

        try:
            data = response.json()
        except ValueError:
            raise ProviderError("Gemini returned a non-JSON body", retryable=False)
        if not isinstance(data, dict):
            raise ProviderError("Gemini returned an unexpected JSON shape", retryable=False)
        return data

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def rate_gate(self) -> RateGate:
        return self._gate
