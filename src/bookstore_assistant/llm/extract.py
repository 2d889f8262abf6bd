"""Walk loosely shaped generateContent responses.

Responses are `{"candidates": [{"content": {"parts": [...]}}]}` but any level
may be missing, empty or of the wrong type. Every function here returns None
on absent structure instead of raising; callers treat None as "no answer".
"""
from typing import Any, Dict, Iterator, Optional

from .schemas import FunctionCallIntent, InlineBinary


def iter_parts(response: Any) -> Iterator[Dict[str, Any]]:
    """Yield every dict part of every candidate, in order."""
    if not isinstance(response, dict):
        return
    candidates = response.get("candidates")
    if not isinstance(candidates, list):
        return
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        if not isinstance(content, dict):
            continue
        parts = content.get("parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if isinstance(part, dict):
                yield part


def extract_first_text(response: Any) -> Optional[str]:
    """Return the first non-blank text part, or None."""
    for part in iter_parts(response):
        text = part.get("text")
        if isinstance(text, str) and text.strip():
            return text
    return None


def extract_inline_binary(response: Any) -> Optional[InlineBinary]:
    """Return the first inline binary part (data + declared mime type), or None.

    Accepts both `inlineData`/`mimeType` and `inline_data`/`mime_type`.
    """
    for part in iter_parts(response):
        inline = part.get("inlineData") or part.get("inline_data")
        if not isinstance(inline, dict):
            continue
        data = inline.get("data")
        if not isinstance(data, str) or not data:
            continue
        mime_type = inline.get("mimeType") or inline.get("mime_type")
        return InlineBinary(data=data, mime_type=mime_type if isinstance(mime_type, str) else None)
    return None


def extract_function_call(response: Any) -> Optional[FunctionCallIntent]:
    """Return the first functionCall part as an intent, or None."""
    for part in iter_parts(response):
        call = part.get("functionCall")
        if not isinstance(call, dict):
            continue
        name = call.get("name")
        args = call.get("args")
        return FunctionCallIntent(
            name=name if isinstance(name, str) else "",
            args=args if isinstance(args, dict) else {},
        )
    return None


def extract_transcript(response: Any) -> Optional[str]:
    """Return the output audio transcription attached to a candidate, if any."""
    if not isinstance(response, dict):
        return None
    candidates = response.get("candidates")
    if not isinstance(candidates, list):
        return None
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        metadata = candidate.get("metadata")
        if not isinstance(metadata, dict):
            continue
        transcription = metadata.get("outputAudioTranscription")
        if isinstance(transcription, dict) and isinstance(transcription.get("text"), str):
            return transcription["text"]
    return None
