"""Response normalizer for model output.

Model answers arrive as JSON objects, JSON wrapped in fenced code blocks,
JSON buried in prose, or plain prose. Every call site funnels text through
`normalize()` and switches on the returned variant instead of re-parsing:

    StructuredJson  - a JSON object was found and parsed
    PlainText       - no JSON object, the text itself is the answer
    Unparseable     - blank output, or something that looked like JSON but
                      would not parse

`render_answer()` builds the plain-text and markdown renderings shown to
users and never raises.
"""
import json
import logging
import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:[\w+.-]*[ \t]*\r?\n)?(.*?)```$", re.DOTALL)
_CLOSING_NEWLINE_RE = re.compile(r"\r?\n\Z")
_OPEN_FENCE_RE = re.compile(r"^```[\w+.-]*[ \t]*\n?")
_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
_FENCE_LINE_RE = re.compile(r"^\s*```.*$\n?", re.MULTILINE)


class StructuredJson(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["structured_json"] = "structured_json"
    data: Dict[str, Any]
    raw: str


class PlainText(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["plain_text"] = "plain_text"
    text: str


class Unparseable(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unparseable"] = "unparseable"
    raw: str


NormalizedOutput = Union[StructuredJson, PlainText, Unparseable]


def strip_wrapper(text: Optional[str]) -> str:
    """Remove a fenced-code wrapper (```json, ```sql, bare ```) around text.

    Only the fence lines go: the body keeps its own indentation and trailing
    whitespace. Text without a fence is returned trimmed. A fence that was
    opened but never closed (truncated output) is removed as well.
    """
    if not text:
        return ""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return _CLOSING_NEWLINE_RE.sub("", match.group(1), count=1)
    if stripped.startswith("```"):
        stripped = _OPEN_FENCE_RE.sub("", stripped, count=1)
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def extract_json_object(text: Optional[str]) -> Optional[str]:
    """Find the JSON object embedded in text.

    Returns the whole trimmed text when it already is `{...}`, otherwise the
    substring from the first `{` to the last `}`, otherwise None. The result
    is not guaranteed to parse.
    """
    if not text:
        return None
    trimmed = text.strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed
    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start == -1 or end <= start:
        return None
    return trimmed[start:end + 1]


def normalize(text: Optional[str]) -> NormalizedOutput:
    """Classify model output into one of the NormalizedOutput variants."""
    raw = text or ""
    unwrapped = strip_wrapper(raw).strip()
    if not unwrapped:
        return Unparseable(raw=raw)

    candidate = extract_json_object(unwrapped)
    if candidate is not None:
        try:
            data = json.loads(candidate)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return StructuredJson(data=data, raw=raw)

    if unwrapped.startswith("{"):
        return Unparseable(raw=raw)
    return PlainText(text=unwrapped)


def parse_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Shortcut: the parsed object when `normalize` finds one, else None."""
    result = normalize(text)
    if isinstance(result, StructuredJson):
        return result.data
    return None


class MetricItem(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    label: str = ""
    value: str = ""
    note: Optional[str] = None

    @field_validator("label", "value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)

    @field_validator("note", mode="before")
    @classmethod
    def _stringify_note(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        return str(v)


def _as_text_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        items = []
        for item in value:
            if item is None:
                continue
            if isinstance(item, str):
                text = item
            elif isinstance(item, dict):
                text = item.get("text") or item.get("title") or json.dumps(item, ensure_ascii=False)
            else:
                text = str(item)
            if text.strip():
                items.append(text)
        return items
    return [str(value)]


class StructuredAnswer(BaseModel):
    """Answer shape requested from the model for analytical questions."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    overview: Optional[str] = None
    metrics: List[Union[MetricItem, str]] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list, alias="recommendedActions")
    sql_examples: List[str] = Field(default_factory=list, alias="sqlExamples")
    sources: List[str] = Field(default_factory=list)

    @field_validator("overview", mode="before")
    @classmethod
    def _overview_text(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, list):
            return "\n".join(str(item) for item in v)
        return str(v)

    @field_validator("metrics", mode="before")
    @classmethod
    def _metrics_list(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if isinstance(v, dict):
            # {"Revenue": "12M", ...}
            return [{"label": key, "value": value} for key, value in v.items()]
        if isinstance(v, list):
            return [item if isinstance(item, (dict, str)) else str(item) for item in v]
        return [str(v)]

    @field_validator("insights", "recommended_actions", "sql_examples", "sources", mode="before")
    @classmethod
    def _text_lists(cls, v: Any) -> List[str]:
        return _as_text_list(v)

    def is_empty(self) -> bool:
        return not (
            (self.overview or "").strip()
            or self.metrics
            or self.insights
            or self.recommended_actions
            or self.sql_examples
            or self.sources
        )


class RenderedAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    plain_text: str
    markdown: str


def render_markdown(answer: StructuredAnswer) -> str:
    """Build a markdown document from a structured answer."""
    sections: List[str] = []

    if answer.overview and answer.overview.strip():
        sections.append(answer.overview.strip())

    if answer.metrics:
        lines = ["### Key metrics"]
        for metric in answer.metrics:
            if isinstance(metric, str):
                lines.append(f"- {metric}")
                continue
            line = f"- **{metric.label}**: {metric.value}" if metric.label else f"- {metric.value}"
            if metric.note:
                line += f" ({metric.note})"
            lines.append(line)
        sections.append("\n".join(lines))

    if answer.insights:
        sections.append("\n".join(["### Insights"] + [f"- {item}" for item in answer.insights]))

    if answer.recommended_actions:
        lines = ["### Recommended actions"]
        lines.extend(f"{i}. {item}" for i, item in enumerate(answer.recommended_actions, start=1))
        sections.append("\n".join(lines))

    if answer.sql_examples:
        lines = ["### Query examples"]
        for example in answer.sql_examples:
            lines.extend(["```sql", strip_wrapper(example), "```"])
        sections.append("\n".join(lines))

    if answer.sources:
        sections.append("\n".join(["### Sources"] + [f"- {item}" for item in answer.sources]))

    return "\n\n".join(sections)


def markdown_to_plain(markdown: Optional[str]) -> str:
    """Reduce markdown to plain text.

    Drops bold markers, code fences and images, replaces links with their
    label and removes heading markers.
    """
    if not markdown:
        return ""
    text = _FENCE_LINE_RE.sub("", markdown)
    text = _IMAGE_RE.sub("", text)
    text = _LINK_RE.sub(r"\1", text)
    text = text.replace("**", "").replace("__", "")
    text = _HEADING_RE.sub("", text)
    return text.strip()


def render_answer(text: Optional[str]) -> RenderedAnswer:
    """Render model output as (plain text, markdown). Never raises.

    A structured JSON answer is rendered section by section; free text is
    passed through as markdown. Anything that fails to parse or render falls
    back to the raw text for both renderings.
    """
    raw = (text or "").strip()
    try:
        result = normalize(raw)
        if isinstance(result, StructuredJson):
            answer = StructuredAnswer.model_validate(result.data)
            if not answer.is_empty():
                markdown = render_markdown(answer)
                return RenderedAnswer(plain_text=markdown_to_plain(markdown), markdown=markdown)
            field = extract_answer_field(raw)
            if field != raw:
                return RenderedAnswer(plain_text=markdown_to_plain(field), markdown=field)
        elif isinstance(result, PlainText):
            return RenderedAnswer(plain_text=markdown_to_plain(result.text), markdown=result.text)
    except (ValueError, TypeError) as e:
        logger.debug("Falling back to raw answer text: %s", e)
    return RenderedAnswer(plain_text=raw, markdown=raw)


def extract_answer_field(text: Optional[str]) -> str:
    """Pick the answer out of a JSON reply: `answer`, `text`, then `content`.

    `content` may itself be an object holding `text`. Anything else returns
    the raw text trimmed.
    """
    raw = (text or "").strip()
    data = parse_json_object(raw)
    if data is None:
        return raw

    for key in ("answer", "text"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    content = data.get("content")
    if isinstance(content, str) and content.strip():
        return content.strip()
    if isinstance(content, dict):
        nested = content.get("text")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()

    return raw
