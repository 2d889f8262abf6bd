"""LLM abstraction layer: providers, wire schemas and the gateway."""
from .base import LLMProvider, LLMUsage, RequestOverrides, ProviderResponse
from .gateway import LlmGateway, FailureKind, classify_failure
from .schemas import GenerateContentRequest, FunctionCallIntent, InlineBinary

__all__ = [
    "LLMProvider",
    "LLMUsage",
    "RequestOverrides",
    "ProviderResponse",
    "LlmGateway",
    "FailureKind",
    "classify_failure",
    "GenerateContentRequest",
    "FunctionCallIntent",
    "InlineBinary",
]
