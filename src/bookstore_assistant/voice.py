"""Voice data assistant: spoken question in, spoken answer out."""
import json
import logging
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .collaborators import (
    AnalyticsSnapshot,
    DatasetSnapshot,
    DateRange,
    SnapshotFlags,
    load_snapshot,
)
from .llm.base import RequestOverrides
from .llm.extract import extract_first_text, extract_inline_binary, extract_transcript
from .llm.gateway import LlmGateway
from .llm.schemas import (
    Content,
    GenerateContentRequest,
    GenerationConfig,
    InlineData,
    Part,
    PrebuiltVoiceConfig,
    SpeechConfig,
    SystemInstruction,
    VoiceConfig,
)
from .sql_planner import language_label

logger = logging.getLogger(__name__)

DEFAULT_VOICE = "Zephyr"
DEFAULT_INPUT_MIME = "audio/webm"
DEFAULT_OUTPUT_MIME = "audio/wav"

VOICE_SYSTEM_PROMPT = """You are the voice data assistant of the bookstore administrators.
- Understand the admin's spoken question and answer from the dataset JSON you are given.
- Prefer exact figures (revenue, profit, stock on hand).
- Suggest a concrete next action after answering.
- Keep the answer short and clear, in {language_label}."""

VOICE_EXPECTATIONS = [
    "Answer from the real data (profitReport, revenueReport, inventorySnapshot, categoryShare).",
    "If data is missing, say so and suggest the next step.",
    "Speak for at most 45 seconds, in a confident, professional tone.",
]


class VoiceAnswer(BaseModel):
    status: Literal["ok", "unavailable", "missing_audio"]
    transcript: Optional[str] = None
    answer_text: Optional[str] = None
    audio_base64: Optional[str] = None
    audio_mime_type: Optional[str] = None
    data_sources: List[str] = Field(default_factory=list)


class VoiceAssistant:
    """Sends recorded audio plus the dataset snapshot, returns synthesized speech."""

    def __init__(
        self,
        gateway: LlmGateway,
        snapshot_source: AnalyticsSnapshot,
        voice_name: str = DEFAULT_VOICE,
        voice_model: Optional[str] = None
    ):
        self._gateway = gateway
        self._snapshot_source = snapshot_source
        self._voice_name = voice_name or DEFAULT_VOICE
        self._overrides = RequestOverrides(model=voice_model) if voice_model else None

    def build_request(
        self,
        audio_base64: str,
        mime_type: Optional[str],
        snapshot: DatasetSnapshot,
        language: str
    ) -> GenerateContentRequest:
        context = {
            "dataset": snapshot.data,
            "language": language,
            "expectations": VOICE_EXPECTATIONS,
        }
        return GenerateContentRequest(
            system_instruction=SystemInstruction(
                parts=[Part(text=VOICE_SYSTEM_PROMPT.format(language_label=language_label(language)))]
            ),
            contents=[
                Content(
                    role="user",
                    parts=[
                        Part(inline_data=InlineData(mime_type=mime_type or DEFAULT_INPUT_MIME, data=audio_base64)),
                        Part(text=json.dumps(context, ensure_ascii=False, default=str)),
                    ],
                )
            ],
            response_modalities=["AUDIO"],
            generation_config=GenerationConfig(
                temperature=0.35,
                candidate_count=1,
                speech_config=SpeechConfig(
                    voice_config=VoiceConfig(
                        prebuilt_voice_config=PrebuiltVoiceConfig(voice_name=self._voice_name)
                    )
                ),
            ),
        )

    async def answer_by_voice(
        self,
        audio_base64: str,
        mime_type: Optional[str] = None,
        date_range: Optional[DateRange] = None,
        flags: Optional[SnapshotFlags] = None,
        language: str = "vi"
    ) -> VoiceAnswer:
        """Answer a recorded question. Missing audio in the reply is a soft failure."""
        language = (language or "vi").strip().lower() or "vi"
        date_range = date_range or DateRange.resolve()
        flags = flags or SnapshotFlags()
        snapshot = await load_snapshot(self._snapshot_source, date_range, flags)

        request = self.build_request(audio_base64, mime_type, snapshot, language)
        response = await self._gateway.generate_raw(request, overrides=self._overrides)
        data_sources = list(snapshot.data_sources)
        if response is None:
            return VoiceAnswer(status="unavailable", data_sources=data_sources)

        answer_text = extract_first_text(response)
        transcript = extract_transcript(response) or answer_text
        audio = extract_inline_binary(response)

        if audio is None:
            logger.warning("Voice response carried no audio data")
            return VoiceAnswer(
                status="missing_audio",
                transcript=transcript,
                answer_text=answer_text,
                data_sources=data_sources,
            )

        return VoiceAnswer(
            status="ok",
            transcript=transcript,
            answer_text=answer_text,
            audio_base64=audio.data,
            audio_mime_type=audio.mime_type or DEFAULT_OUTPUT_MIME,
            data_sources=data_sources,
        )
