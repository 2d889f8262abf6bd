"""Mock LLM provider for testing.

Returns scripted responses without making network calls. Used to exercise
the gateway, planner, router and enrichment pool deterministically.
"""
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

from ..base import LLMProvider, ProviderResponse, RequestOverrides

Scripted = Union[Dict[str, Any], ProviderResponse, BaseException]
Embedded = Union[List[float], ProviderResponse, BaseException]


def text_response(text: str) -> Dict[str, Any]:
    """Build a generateContent response holding one text part."""
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def function_call_response(name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a generateContent response requesting one function call."""
    return {
        "candidates": [
            {"content": {"role": "model", "parts": [{"functionCall": {"name": name, "args": args or {}}}]}}
        ]
    }


class MockProvider(LLMProvider):
    """Mock provider returning scripted responses.

    Each scripted item is one of:
    - dict: returned as HTTP 200 with the dict as JSON body
    - ProviderResponse: returned as-is (use for 429/401/500 bodies)
    - exception instance: raised from the call

    Items are consumed in order; once exhausted the last item repeats. A
    `responder` callable, when given, is used instead and receives the
    payload.

    Example:
        >>> provider = MockProvider(responses=[text_response("hello")])
        >>> response = await provider.post_generate_content({})
        >>> response.status_code
        200
    """

    def __init__(
        self,
        responses: Optional[List[Scripted]] = None,
        responder: Optional[Callable[[Dict[str, Any]], Scripted]] = None,
        delay: float = 0.0,
        embedder: Optional[Callable[[str], Embedded]] = None
    ):
        """Initialize mock provider.

        Args:
            responses: Ordered scripted responses
            responder: Optional callable choosing a response per payload
            delay: Seconds to sleep inside each call (to observe concurrency)
            embedder: Callable mapping text to a vector (or a failure) for embedContent
        """
        self._responses = list(responses or [])
        self._responder = responder
        self._delay = delay
        self._index = 0
        self._embedder = embedder or (lambda text: [])
        self.embed_calls: List[Dict[str, Any]] = []
        self.calls: List[Dict[str, Any]] = []
        self.overrides_seen: List[Optional[RequestOverrides]] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def post_generate_content(
        self,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides] = None
    ) -> ProviderResponse:
        self.calls.append(payload)
        self.overrides_seen.append(overrides)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            item = self._next(payload)
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, ProviderResponse):
                return item
            return ProviderResponse(status_code=200, body=json.dumps(item))
        finally:
            self.in_flight -= 1

    async def post_embed_content(
        self,
        payload: Dict[str, Any],
        overrides: Optional[RequestOverrides] = None
    ) -> ProviderResponse:
        self.embed_calls.append(payload)
        parts = payload.get("content", {}).get("parts") or [{}]
        item = self._embedder(parts[0].get("text", ""))
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ProviderResponse):
            return item
        return ProviderResponse(status_code=200, body=json.dumps({"embedding": {"values": list(item)}}))

    def _next(self, payload: Dict[str, Any]) -> Scripted:
        if self._responder is not None:
            return self._responder(payload)
        if not self._responses:
            return {"candidates": []}
        item = self._responses[min(self._index, len(self._responses) - 1)]
        self._index += 1
        return item

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def model_name(self) -> str:
        """Return mock model identifier."""
        return "mock-gemini"
