from datetime import datetime
from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

MethodUsed = Literal["function_calling", "direct", "rag_fallback", "unavailable"]


class ChatTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str = "user"
    content: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _lower_role(cls, v: Any) -> str:
        text = (v or "user") if isinstance(v, str) or v is None else str(v)
        return text.strip().lower() or "user"

    @field_validator("content", mode="before")
    @classmethod
    def _strip_content(cls, v: Any) -> str:
        if v is None:
            return ""
        return (v if isinstance(v, str) else str(v)).strip()


def trim_conversation(turns: Optional[List[ChatTurn]], window: int = 12) -> List[ChatTurn]:
    """Keep the last `window` turns, then drop the blank ones."""
    if not turns:
        return []
    recent = list(turns)[-window:] if window > 0 else []
    return [turn for turn in recent if turn.content]


class AnswerEnvelope(BaseModel):
    answer: str
    plain_text: str
    markdown: str
    data_sources: List[str] = Field(default_factory=list)
    needs_clarification: bool = False


class ToolChatResult(BaseModel):
    answer: str
    method_used: MethodUsed
    function_called: Optional[str] = None


# HTTP request/response models

class ApiResponse(BaseModel):
    success: bool
    message: str
    data: Any = None
    code: Optional[str] = None


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=4000)
    recent_turns: List[ChatTurn] = Field(default_factory=list)


class ChatToolsRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=4000)


class SnapshotRequest(BaseModel):
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    include_inventory_snapshot: bool = True
    include_category_share: bool = True
    language: str = "vi"


class AdminChatRequest(SnapshotRequest):
    messages: List[ChatTurn] = Field(..., min_length=1)

    def split_question(self) -> Tuple[Optional[str], List[ChatTurn]]:
        """The latest user turn's text and the turns before it.

        The question is None when no user turn exists or the latest one is blank.
        """
        for index in range(len(self.messages) - 1, -1, -1):
            turn = self.messages[index]
            if turn.role == "user":
                return (turn.content or "").strip() or None, list(self.messages[:index])
        return None, []


class AdminInsightsRequest(SnapshotRequest):
    pass


class AdminVoiceRequest(SnapshotRequest):
    audio_base64: str = Field(..., min_length=1)
    mime_type: Optional[str] = None


class RecommendBooksRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)
    max_results: int = 12
