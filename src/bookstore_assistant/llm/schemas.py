"""Typed request structures for the Gemini generateContent API.

Each model serializes to the exact wire field names the backend expects
(camelCase, plus the snake_case `inline_data` form used for audio input).
Always dump with `to_payload()` so aliases are used and unset fields are
omitted.

Responses are not modelled here. The backend returns loosely shaped JSON and
callers must tolerate missing or mistyped fields, so responses stay plain
dicts and are walked by `llm.extract`.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize with wire field names, dropping unset fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class InlineData(_WireModel):
    mime_type: str = Field(..., alias="mime_type")
    data: str


class FunctionCallPart(_WireModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class FunctionResponseBody(_WireModel):
    content: str


class FunctionResponsePart(_WireModel):
    name: str
    response: FunctionResponseBody


class Part(_WireModel):
    text: Optional[str] = None
    inline_data: Optional[InlineData] = Field(default=None, alias="inline_data")
    function_call: Optional[FunctionCallPart] = Field(default=None, alias="functionCall")
    function_response: Optional[FunctionResponsePart] = Field(default=None, alias="functionResponse")


class Content(_WireModel):
    role: Literal["user", "model", "function"] = "user"
    parts: List[Part]


class SystemInstruction(_WireModel):
    parts: List[Part]


class PrebuiltVoiceConfig(_WireModel):
    voice_name: str = Field(..., alias="voiceName")


class VoiceConfig(_WireModel):
    prebuilt_voice_config: PrebuiltVoiceConfig = Field(..., alias="prebuiltVoiceConfig")


class SpeechConfig(_WireModel):
    voice_config: VoiceConfig = Field(..., alias="voiceConfig")


class GenerationConfig(_WireModel):
    temperature: Optional[float] = None
    candidate_count: Optional[int] = Field(default=None, alias="candidateCount")
    response_mime_type: Optional[str] = Field(default=None, alias="responseMimeType")
    speech_config: Optional[SpeechConfig] = Field(default=None, alias="speechConfig")


class GenerateContentRequest(_WireModel):
    """Body of `POST /v1beta/models/{model}:generateContent`.

    `tools` is kept as raw dicts: function declarations come from the tool
    registry and search grounding is just `{"googleSearch": {}}`.
    """
    system_instruction: Optional[SystemInstruction] = Field(default=None, alias="systemInstruction")
    contents: List[Content]
    tools: Optional[List[Dict[str, Any]]] = None
    response_modalities: Optional[List[str]] = Field(default=None, alias="responseModalities")
    generation_config: Optional[GenerationConfig] = Field(default=None, alias="generationConfig")

    @classmethod
    def single_turn(
        cls,
        system_prompt: str,
        user_payload: str,
        temperature: float = 0.7,
        tools: Optional[List[Dict[str, Any]]] = None,
        response_mime_type: Optional[str] = None,
    ) -> "GenerateContentRequest":
        """System instruction plus one user text turn, the most common shape."""
        return cls(
            system_instruction=SystemInstruction(parts=[Part(text=system_prompt)]),
            contents=[Content(role="user", parts=[Part(text=user_payload)])],
            tools=tools,
            generation_config=GenerationConfig(
                temperature=temperature,
                response_mime_type=response_mime_type,
            ),
        )


class FunctionCallIntent(BaseModel):
    """A model-declared function call parsed out of a response."""
    model_config = ConfigDict(frozen=True)

    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class InlineBinary(BaseModel):
    """Inline binary part returned by the backend (e.g. synthesized audio)."""
    model_config = ConfigDict(frozen=True)

    data: str
    mime_type: Optional[str] = None
