import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from .assistant import DataAssistant
from .collaborators import DateRange, SnapshotFlags
from .config import settings
from .db import DatabaseConfig, check_connection
from .errors import ConfigurationError, ValidationError
from .logging import correlation_id_middleware, logger, setup_logging
from .schemas import (
    AdminChatRequest,
    AdminInsightsRequest,
    AdminVoiceRequest,
    ApiResponse,
    AskRequest,
    ChatToolsRequest,
    RecommendBooksRequest,
    SnapshotRequest,
)

setup_logging()
app = FastAPI(title="Bookstore Data Assistant", version="0.1.0")
app.middleware("http")(correlation_id_middleware)

REQS = Counter("assistant_requests_total", "Total requests", ["operation"])
LAT = Histogram("assistant_request_duration_ms", "Request duration in ms", ["operation"])

SERVICE_UNAVAILABLE = "The AI assistant is temporarily unavailable. Please try again later."

_assistant: Optional[DataAssistant] = None


def get_assistant() -> DataAssistant:
    """Build the container on first use, so a missing key surfaces per request."""
    global _assistant
    if _assistant is None:
        _assistant = DataAssistant.from_settings(settings)
    return _assistant


def _date_range(req: SnapshotRequest) -> DateRange:
    return DateRange.resolve(req.from_date, req.to_date)


def _flags(req: SnapshotRequest) -> SnapshotFlags:
    return SnapshotFlags(
        include_inventory_snapshot=req.include_inventory_snapshot,
        include_category_share=req.include_category_share,
    )


def _observe(operation: str, started: float) -> None:
    REQS.labels(operation=operation).inc()
    LAT.labels(operation=operation).observe((time.perf_counter() - started) * 1000)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    logger.error("Configuration error (correlation_id=%s): %s", correlation_id, exc.message)
    body = ApiResponse(
        success=False,
        message="The service is not configured correctly.",
        code="configuration_error",
    )
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    body = ApiResponse(success=False, message=exc.message, code="validation_error")
    return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))


@app.on_event("shutdown")
async def shutdown():
    if _assistant is not None:
        await _assistant.aclose()


@app.get("/health")
async def health():
    try:
        database = "ok" if await check_connection(DatabaseConfig(settings.database_url)) else "unreachable"
    except ConfigurationError:
        database = "not_configured"
    return {"status": "ok", "database": database}


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/ai/ask", response_model=ApiResponse)
async def ask(req: AskRequest):
    started = time.perf_counter()
    envelope = await get_assistant().ask_question(req.question, req.recent_turns)
    _observe("ask", started)
    return ApiResponse(success=True, message="OK", data=envelope.model_dump())


@app.post("/ai/chat-tools", response_model=ApiResponse)
async def chat_tools(req: ChatToolsRequest):
    started = time.perf_counter()
    result = await get_assistant().chat_with_tools(req.question)
    _observe("chat_tools", started)
    return ApiResponse(success=True, message="OK", data=result.model_dump())


@app.post("/ai/admin-chat", response_model=ApiResponse)
async def admin_chat(req: AdminChatRequest):
    started = time.perf_counter()
    question, history = req.split_question()
    if question is None:
        _observe("admin_chat", started)
        return ApiResponse(
            success=False,
            message="The conversation has no question from the user.",
            code="missing_question",
        )
    envelope = await get_assistant().plan_and_answer(
        question,
        _date_range(req),
        _flags(req),
        history,
        language=req.language,
    )
    _observe("admin_chat", started)
    return ApiResponse(success=True, message="OK", data=envelope.model_dump())


@app.post("/ai/admin-assistant", response_model=ApiResponse)
async def admin_assistant(req: AdminInsightsRequest):
    started = time.perf_counter()
    insights = await get_assistant().get_admin_insights(_date_range(req), req.language, _flags(req))
    _observe("admin_assistant", started)
    if insights is None:
        return ApiResponse(success=False, message=SERVICE_UNAVAILABLE, code="ai_unavailable")
    return ApiResponse(success=True, message="OK", data=insights.model_dump(by_alias=True))


@app.post("/ai/admin-voice", response_model=ApiResponse)
async def admin_voice(req: AdminVoiceRequest):
    started = time.perf_counter()
    answer = await get_assistant().answer_by_voice(
        req.audio_base64,
        req.mime_type,
        _date_range(req),
        _flags(req),
        req.language,
    )
    _observe("admin_voice", started)
    if answer.status == "unavailable":
        return ApiResponse(success=False, message=SERVICE_UNAVAILABLE, code="ai_unavailable")
    if answer.status == "missing_audio":
        return ApiResponse(
            success=False,
            message="The AI did not return audio for this question.",
            data=answer.model_dump(),
            code="missing_audio",
        )
    return ApiResponse(success=True, message="OK", data=answer.model_dump())


@app.post("/ai/recommend-books", response_model=ApiResponse)
async def recommend_books(req: RecommendBooksRequest):
    started = time.perf_counter()
    result = await get_assistant().recommend_books(req.prompt, req.max_results)
    _observe("recommend_books", started)
    if result is None:
        return ApiResponse(
            success=False,
            message="The book catalog is temporarily unavailable.",
            code="catalog_unavailable",
        )
    return ApiResponse(success=True, message="OK", data=result.model_dump(by_alias=True))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("bookstore_assistant.main:app", host="127.0.0.1", port=8000, reload=True)
