from __future__ import annotations

"""Request lifecycle for grounded answers.

Each request moves through ``ADMITTED_CHECK -> RETRIEVE -> ASSEMBLE_CONTEXT ->
GENERATE -> STREAM_DELTAS -> DONE``; ``OUT_OF_DOMAIN`` and ``ERROR`` are the
other terminal states. :meth:`AnswerOrchestrator.prepare` runs everything up
to generation so that route, top score and domain decision are known before a
stream starts; :meth:`AnswerOrchestrator.answer` and
:meth:`AnswerOrchestrator.stream` then produce the text.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Sequence, TypeVar

from src.metadata.sessions import (
    SessionLogStore,
    SessionRecord,
    hash_client_ip,
    schedule_session_log,
)
from src.rag.citations import build_citations
from src.rag.context import ContextAssembler
from src.rag.domain import DomainGate
from src.rag.embeddings import EmbeddingProvider
from src.rag.events import (
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    InitEvent,
    MetaEvent,
    MetricsEvent,
    SourcesEvent,
)
from src.rag.guardrails import GUIDANCE_MESSAGE, OUT_OF_DOMAIN_MESSAGE, require_context
from src.rag.llm import ChatProvider, LLMConfigError, build_messages, build_system_prompt
from src.rag.metrics import LLM_LATENCY, ROUTE_COUNT, STREAM_CANCELLED, TOP_SCORE
from src.rag.rewriter import NoopRewriter, QueryRewriter
from src.rag.transport import StreamChannel
from src.rag.types import (
    AnswerRequest,
    DimensionMismatch,
    EnrichedHit,
    RAGError,
    RankedHit,
    RequestCancelled,
    SourceBoost,
)
from src.rag.web import WebFallbackClient, is_volatile
from src.vectorstore.corpus import CorpusStore
from src.vectorstore.ranker import rank

logger = logging.getLogger(__name__)

T = TypeVar("T")


class State(str, Enum):
    ADMITTED_CHECK = "ADMITTED_CHECK"
    RETRIEVE = "RETRIEVE"
    ASSEMBLE_CONTEXT = "ASSEMBLE_CONTEXT"
    GENERATE = "GENERATE"
    STREAM_DELTAS = "STREAM_DELTAS"
    DONE = "DONE"
    OUT_OF_DOMAIN = "OUT_OF_DOMAIN"
    ERROR = "ERROR"


class Route(str, Enum):
    KB_ONLY = "KB_ONLY"
    KB_EMPTY = "KB_EMPTY"
    WEB_FALLBACK = "WEB_FALLBACK"
    GUIDANCE = "GUIDANCE"
    OUT_OF_DOMAIN = "OUT_OF_DOMAIN"
    ERROR = "ERROR"


@dataclass
class AnswerPlan:
    """Everything known about a request before generation starts."""
    request: AnswerRequest
    started: float
    rewritten: str = ""
    in_domain: bool = False
    domain_reason: str = ""
    state: State = State.ADMITTED_CHECK
    route: Route = Route.KB_EMPTY
    ranked: list[RankedHit] = field(default_factory=list)
    hits: list[EnrichedHit] = field(default_factory=list)
    web_attempted: bool = False
    messages: list[dict[str, str]] | None = None
    fixed_message: str | None = None
    error: RAGError | None = None
    cancelled: bool = False

    @property
    def top_score(self) -> float:
        return self.ranked[0].score if self.ranked else 0.0

    @property
    def top_scores(self) -> list[float]:
        return [hit.score for hit in self.ranked]

    @property
    def requires_generation(self) -> bool:
        return self.messages is not None

    def citations(self) -> list[dict[str, object]]:
        return [citation.to_dict() for citation in build_citations(self.hits)]

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


@dataclass(frozen=True)
class AnswerResult:
    """Single-shot answer with its provenance."""
    answer: str
    citations: list[dict[str, object]]
    route: Route
    request_id: str
    runtime_ms: int
    plan: AnswerPlan


_DONE_FROM = frozenset({State.GENERATE, State.STREAM_DELTAS, State.DONE})


def _mark_done(plan: AnswerPlan) -> None:
    # OUT_OF_DOMAIN and ERROR are terminal.
    if plan.state in _DONE_FROM:
        plan.state = State.DONE


async def _unless_cancelled(
    operation: Callable[[], Awaitable[T]], cancel: asyncio.Event | None
) -> T:
    """Await `operation`, abandoning it as soon as `cancel` is set."""
    if cancel is None:
        return await operation()
    if cancel.is_set():
        raise RequestCancelled("Request cancelled")
    task = asyncio.ensure_future(operation())
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait([task])
    if task.cancelled():
        raise RequestCancelled("Request cancelled")
    return task.result()


def _error_message(exc: Exception) -> str:
    if isinstance(exc, RAGError):
        return str(exc) or type(exc).__name__
    return type(exc).__name__


@dataclass
class AnswerOrchestrator:
    """Coordinates gate, retrieval, context, web fallback and generation."""
    store: CorpusStore
    embedder: EmbeddingProvider
    assembler: ContextAssembler
    gate: DomainGate = field(default_factory=DomainGate)
    chat: ChatProvider | None = None
    web: WebFallbackClient | None = None
    rewriter: QueryRewriter = field(default_factory=NoopRewriter)
    boosts: Sequence[SourceBoost] = ()
    system_prompt: str = field(default_factory=build_system_prompt)
    web_confidence_threshold: float = 0.70
    web_max_results: int = 4
    history_turns: int = 8
    session_log: SessionLogStore | None = None

    async def prepare(
        self, request: AnswerRequest, cancel: asyncio.Event | None = None
    ) -> AnswerPlan:
        """Run gate, retrieval and context assembly; no generation.

        Raises `CorpusUnavailable` and `EmbeddingError`; a dimension mismatch
        is recorded on the plan instead so that a stream can report it. When
        `cancel` is set mid-way, pending I/O is abandoned and the plan comes
        back with `cancelled` set.
        """
        plan = AnswerPlan(request=request, started=time.monotonic())
        try:
            await self._prepare(plan, cancel)
        except RequestCancelled:
            plan.cancelled = True
            logger.info(
                "prepare_cancelled",
                extra={"request_id": request.request_id, "state": plan.state.value},
            )
        return plan

    async def _prepare(self, plan: AnswerPlan, cancel: asyncio.Event | None) -> None:
        request = plan.request
        plan.rewritten = await self.rewriter.rewrite(request.question, request.history)
        decision = self.gate.evaluate(request.question, plan.rewritten, request.history)
        plan.in_domain = decision.admitted
        plan.domain_reason = decision.reason
        logger.info(
            "domain_gate_decision",
            extra={
                "request_id": request.request_id,
                "admitted": decision.admitted,
                "reason": decision.reason,
                "history_turns": len(request.history),
            },
        )
        if not decision.admitted:
            plan.state = State.OUT_OF_DOMAIN
            plan.route = Route.OUT_OF_DOMAIN
            plan.fixed_message = OUT_OF_DOMAIN_MESSAGE
            return

        plan.state = State.RETRIEVE
        try:
            plan.ranked = await self._retrieve(request, plan.rewritten, cancel)
        except DimensionMismatch as exc:
            logger.error(
                "embedding_dimension_mismatch",
                extra={
                    "request_id": request.request_id,
                    "expected": exc.expected,
                    "actual": exc.actual,
                },
            )
            plan.state = State.ERROR
            plan.route = Route.ERROR
            plan.error = exc
            return
        if plan.ranked:
            TOP_SCORE.observe(plan.top_score)

        plan.state = State.ASSEMBLE_CONTEXT
        local_hits = await self.assembler.assemble(plan.ranked, cancel)
        if cancel is not None and cancel.is_set():
            raise RequestCancelled("Request cancelled")
        web_hits: list[EnrichedHit] = []
        if self._needs_web(plan):
            plan.web_attempted = True
            web = self.web
            results = await _unless_cancelled(
                lambda: web.fallback(plan.rewritten, self.web_max_results),  # type: ignore[union-attr]
                cancel,
            )
            web_hits = self.assembler.assemble_from_web(results)
            logger.info(
                "web_fallback_complete",
                extra={"request_id": request.request_id, "results": len(web_hits)},
            )
        plan.hits = local_hits + web_hits

        guard = require_context(plan.hits)
        if not guard.allowed:
            plan.route = Route.KB_EMPTY if request.kb_only else Route.GUIDANCE
            plan.fixed_message = GUIDANCE_MESSAGE
            plan.state = State.DONE
        else:
            plan.route = Route.WEB_FALLBACK if any(hit.is_web for hit in plan.hits) else Route.KB_ONLY
            plan.messages = build_messages(
                request.question,
                plan.hits,
                request.history,
                system_prompt=self.system_prompt,
                history_turns=self.history_turns,
            )
            plan.state = State.GENERATE
        logger.info(
            "retrieval_complete",
            extra={
                "request_id": request.request_id,
                "route": plan.route.value,
                "ranked": len(plan.ranked),
                "hits": len(plan.hits),
                "top_score": round(plan.top_score, 4),
                "web_attempted": plan.web_attempted,
                "guard": guard.reason,
            },
        )

    async def search(self, request: AnswerRequest) -> list[EnrichedHit]:
        """Rank and enrich local hits without gating or generation."""
        rewritten = await self.rewriter.rewrite(request.question, request.history)
        ranked = await self._retrieve(request, rewritten)
        return await self.assembler.assemble(ranked)

    async def answer(self, request: AnswerRequest) -> AnswerResult:
        """Prepare and generate the full answer in one call."""
        plan = await self.prepare(request)
        return await self.complete(plan)

    async def complete(self, plan: AnswerPlan) -> AnswerResult:
        """Generate a single-shot answer for a prepared plan."""
        if plan.cancelled:
            raise RequestCancelled("Request cancelled")
        if plan.error is not None:
            raise plan.error
        if plan.messages is None:
            text = plan.fixed_message or ""
        else:
            chat = self._require_chat()
            started = time.monotonic()
            text = await chat.complete(plan.messages)
            LLM_LATENCY.labels("answer").observe(time.monotonic() - started)
        _mark_done(plan)
        runtime_ms = plan.elapsed_ms()
        ROUTE_COUNT.labels(plan.route.value, "answer").inc()
        self._finish(plan, text, runtime_ms)
        return AnswerResult(
            answer=text,
            citations=plan.citations(),
            route=plan.route,
            request_id=plan.request.request_id,
            runtime_ms=runtime_ms,
            plan=plan,
        )

    async def stream(self, plan: AnswerPlan, channel: StreamChannel) -> None:
        """Emit the plan as ordered stream events into `channel`."""
        request = plan.request
        parts: list[str] = []
        try:
            await channel.send(InitEvent())
            await channel.send(
                MetaEvent(
                    request_id=request.request_id,
                    top_k=request.top_k,
                    min_score=request.min_score,
                    kb_only=request.kb_only,
                    question=request.question,
                    rewritten=plan.rewritten,
                    route=plan.route.value,
                    in_domain=plan.in_domain,
                    top_score=plan.top_score,
                )
            )
            if plan.error is not None:
                await channel.send(ErrorEvent(request.request_id, _error_message(plan.error)))
            else:
                await channel.send(SourcesEvent(plan.citations()))
                try:
                    await self._relay(plan, channel, parts)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning(
                        "stream_generation_failed",
                        extra={"request_id": request.request_id, "error": _error_message(exc)},
                    )
                    plan.state = State.ERROR
                    await channel.send(ErrorEvent(request.request_id, _error_message(exc)))
            if channel.cancelled:
                self._cancelled(plan, channel)
                return
            runtime_ms = plan.elapsed_ms()
            await channel.send(
                MetricsEvent(
                    request_id=request.request_id,
                    runtime_ms=runtime_ms,
                    route=plan.route.value,
                    top_score=plan.top_score,
                )
            )
            await channel.send(DoneEvent())
            _mark_done(plan)
            ROUTE_COUNT.labels(plan.route.value, "stream").inc()
            self._finish(plan, "".join(parts), runtime_ms)
        except asyncio.CancelledError:
            self._cancelled(plan, channel)
            raise
        finally:
            channel.close()

    async def _relay(self, plan: AnswerPlan, channel: StreamChannel, parts: list[str]) -> None:
        if plan.messages is None:
            text = plan.fixed_message or ""
            parts.append(text)
            await channel.send(DeltaEvent(text))
            return
        if channel.cancelled:
            return
        chat = self._require_chat()
        plan.state = State.STREAM_DELTAS
        started = time.monotonic()
        deltas = chat.stream(plan.messages)
        try:
            async for delta in deltas:
                if channel.cancelled:
                    break
                parts.append(delta)
                if not await channel.send(DeltaEvent(delta)):
                    break
        finally:
            aclose = getattr(deltas, "aclose", None)
            if aclose is not None:
                await aclose()
            LLM_LATENCY.labels("stream").observe(time.monotonic() - started)

    async def _retrieve(
        self, request: AnswerRequest, query: str, cancel: asyncio.Event | None = None
    ) -> list[RankedHit]:
        corpus = await _unless_cancelled(self.store.load, cancel)
        vector = await _unless_cancelled(
            lambda: self.embedder.embed(query or request.question), cancel
        )
        return rank(vector, corpus, request.top_k, request.min_score, self.boosts)

    def _needs_web(self, plan: AnswerPlan) -> bool:
        if plan.request.kb_only or self.web is None:
            return False
        if not plan.ranked or plan.top_score < self.web_confidence_threshold:
            return True
        return is_volatile(plan.request.question)

    def _require_chat(self) -> ChatProvider:
        if self.chat is None:
            raise LLMConfigError("No chat provider configured")
        return self.chat

    def _cancelled(self, plan: AnswerPlan, channel: StreamChannel) -> None:
        STREAM_CANCELLED.inc()
        logger.info(
            "stream_cancelled",
            extra={
                "request_id": plan.request.request_id,
                "state": plan.state.value,
                "dropped": channel.dropped,
            },
        )

    def _finish(self, plan: AnswerPlan, answer: str, runtime_ms: int) -> None:
        request = plan.request
        logger.info(
            "query_completed",
            extra={
                "request_id": request.request_id,
                "route": plan.route.value,
                "in_domain": plan.in_domain,
                "answer_length": len(answer),
                "sources": len(plan.hits),
                "runtime_ms": runtime_ms,
            },
        )
        if self.session_log is None:
            return
        record = SessionRecord(
            session_id=request.session_id or str(uuid.uuid4()),
            request_id=request.request_id,
            question=request.question,
            answer=answer,
            route=plan.route.value,
            history=[{"role": turn.role, "content": turn.content} for turn in request.history],
            metadata={
                "topK": request.top_k,
                "minScore": request.min_score,
                "kbOnly": request.kb_only,
                "route": plan.route.value,
                "topScores": plan.top_scores,
                "topScore": plan.top_score,
                "responseTimeMs": runtime_ms,
                "model": getattr(self.chat, "model", None),
                "rewrittenQuery": plan.rewritten,
                "inDomain": plan.in_domain,
                "sources": [
                    {
                        "id": hit.id,
                        "score": hit.score,
                        "file": hit.source_file,
                        "snippet": hit.excerpt[:200],
                    }
                    for hit in plan.hits[:5]
                ],
            },
            user_agent=request.user_agent,
            ip_hash=hash_client_ip(request.client_ip),
        )
        schedule_session_log(self.session_log, record)
