"""LLM provider implementations."""
from .mock import MockProvider, text_response, function_call_response
from .gemini import GeminiProvider

__all__ = ["MockProvider", "GeminiProvider", "text_response", "function_call_response"]
