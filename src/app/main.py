from __future__ import annotations

"""FastAPI application entrypoint for the immigration-law RAG service."""

import asyncio
import hashlib
import logging
import time
import uuid

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from src.app.dependencies import get_orchestrator
from src.app.metrics import metrics_middleware, metrics_response
from src.app.schemas import (
    AnswerRequestModel,
    AnswerResponse,
    CitationModel,
    CorpusStatsResponse,
    ErrorResponse,
    SearchHitModel,
    SearchResponse,
)
from src.app.settings import settings
from src.rag.embeddings import EmbeddingError
from src.rag.events import MEDIA_TYPE
from src.rag.llm import LLMError
from src.rag.orchestrator import AnswerOrchestrator
from src.rag.transport import stream_plan
from src.rag.types import (
    AnswerRequest,
    ConfigurationError,
    ConversationTurn,
    CorpusUnavailable,
    RAGError,
)

DISCONNECT_POLL_SECONDS = 0.25

logger = logging.getLogger(__name__)

app = FastAPI(title="Extranjería RAG Agent", version="0.1.0")

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    499: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _status_for(exc: RAGError) -> int:
    """Map domain errors onto HTTP statuses."""
    if isinstance(exc, CorpusUnavailable):
        return 503
    if isinstance(exc, ConfigurationError):
        return 500
    if isinstance(exc, (EmbeddingError, LLMError)):
        return 502
    return 500


def _client_ip(http_request: Request) -> str | None:
    forwarded = http_request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = http_request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return http_request.client.host if http_request.client else None


def _to_answer_request(body: AnswerRequestModel, http_request: Request) -> AnswerRequest:
    """Apply defaults and attach request context."""
    return AnswerRequest(
        question=body.question,
        top_k=body.top_k if body.top_k is not None else settings.top_k,
        min_score=body.min_score if body.min_score is not None else settings.min_score,
        kb_only=body.kb_only,
        history=[
            ConversationTurn(role=turn.role, content=turn.content)
            for turn in body.conversation_history
        ],
        request_id=getattr(http_request.state, "request_id", "") or str(uuid.uuid4()),
        session_id=body.session_id or http_request.headers.get("x-session-id"),
        user_agent=http_request.headers.get("user-agent"),
        client_ip=_client_ip(http_request),
    )


def _log_received(endpoint: str, request: AnswerRequest) -> None:
    logger.info(
        "query_received",
        extra={
            "request_id": request.request_id,
            "endpoint": endpoint,
            "question_length": len(request.question),
            "question_hash": hashlib.sha256(request.question.encode("utf-8")).hexdigest(),
            "top_k": request.top_k,
            "min_score": request.min_score,
            "kb_only": request.kb_only,
            "history_turns": len(request.history),
        },
    )


async def _watch_disconnect(http_request: Request, cancel: asyncio.Event) -> None:
    """Set `cancel` once the client drops the connection."""
    while not cancel.is_set():
        if await http_request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _log_failure(event: str, request: AnswerRequest, exc: Exception) -> None:
    logger.warning(
        event,
        extra={"request_id": request.request_id, "error": type(exc).__name__},
    )


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed input as a 400 with a readable message."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "")
    else:
        message = "Invalid request"
    return _error(400, message or "Invalid request")


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    """Surface missing provider configuration, including failures while wiring dependencies."""
    logger.error(
        "configuration_error",
        extra={
            "request_id": getattr(request.state, "request_id", ""),
            "path": request.url.path,
            "error": str(exc),
        },
    )
    return _error(500, str(exc) or type(exc).__name__)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler so clients always receive the error envelope."""
    logger.exception(
        "unhandled_error",
        extra={"request_id": getattr(request.state, "request_id", ""), "path": request.url.path},
    )
    return _error(500, "Internal server error")


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, str]:
    """Simple health probe for uptime checks."""
    return {"status": "ok"}


@app.get("/stats/corpus", response_model=CorpusStatsResponse, responses=_ERROR_RESPONSES)
async def corpus_stats(orchestrator: AnswerOrchestrator = Depends(get_orchestrator)):
    """Load the corpus if needed and report its shape."""
    try:
        await orchestrator.store.load()
    except CorpusUnavailable as exc:
        logger.warning("corpus_stats_unavailable", extra={"error": str(exc)[:200]})
        return _error(503, str(exc))
    return CorpusStatsResponse(**orchestrator.store.stats())


@app.post("/rag/answer", response_model=AnswerResponse, responses=_ERROR_RESPONSES)
async def rag_answer(
    body: AnswerRequestModel,
    http_request: Request,
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
):
    """Answer a question in a single response."""
    request = _to_answer_request(body, http_request)
    _log_received("answer", request)
    try:
        result = await orchestrator.answer(request)
    except RAGError as exc:
        _log_failure("answer_failed", request, exc)
        return _error(_status_for(exc), str(exc))
    return AnswerResponse(
        question=request.question,
        answer=result.answer,
        citations=[CitationModel.model_validate(item) for item in result.citations],
        route=result.route.value,
        request_id=result.request_id,
        runtime_ms=result.runtime_ms,
    )


@app.post("/rag/stream", responses=_ERROR_RESPONSES)
async def rag_stream(
    body: AnswerRequestModel,
    http_request: Request,
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
):
    """Stream the answer as newline-delimited JSON events.

    Retrieval runs before the response starts so the routing headers reflect
    the path actually taken. A client that disconnects during retrieval
    cancels the pending embedding and web calls.
    """
    request = _to_answer_request(body, http_request)
    _log_received("stream", request)
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(http_request, cancel))
    try:
        plan = await orchestrator.prepare(request, cancel)
    except RAGError as exc:
        _log_failure("stream_prepare_failed", request, exc)
        return _error(_status_for(exc), str(exc))
    finally:
        watcher.cancel()
    if plan.cancelled:
        return _error(499, "Client closed request")
    headers = {
        "Cache-Control": "no-store, no-transform",
        "X-Accel-Buffering": "no",
        "Access-Control-Expose-Headers": (
            "X-Request-ID, X-RAG-Top-Score, X-RAG-TopK, X-RAG-Min-Score, X-Route, X-Domain"
        ),
        "X-RAG-Top-Score": str(plan.top_score),
        "X-RAG-TopK": str(request.top_k),
        "X-RAG-Min-Score": str(request.min_score),
        "X-Route": plan.route.value,
        "X-Domain": "in" if plan.in_domain else "out",
    }
    return StreamingResponse(stream_plan(orchestrator, plan), media_type=MEDIA_TYPE, headers=headers)


@app.post("/rag/search", response_model=SearchResponse, responses=_ERROR_RESPONSES)
async def rag_search(
    body: AnswerRequestModel,
    http_request: Request,
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
):
    """Return ranked, enriched corpus hits without generating an answer."""
    started = time.monotonic()
    request = _to_answer_request(body, http_request)
    _log_received("search", request)
    try:
        hits = await orchestrator.search(request)
    except RAGError as exc:
        _log_failure("search_failed", request, exc)
        return _error(_status_for(exc), str(exc))
    return SearchResponse(
        hits=[
            SearchHitModel(
                id=hit.id,
                score=hit.score,
                file=hit.source_file,
                start=hit.range_start,
                end=hit.range_end,
                excerpt=hit.excerpt,
                rel_path=hit.locator,
            )
            for hit in hits
        ],
        request_id=request.request_id,
        runtime_ms=int((time.monotonic() - started) * 1000),
    )
