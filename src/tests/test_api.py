from __future__ import annotations

import asyncio
import dataclasses

import httpx
import pytest
from starlette.requests import Request

from src.app import dependencies
from src.app.dependencies import get_orchestrator, reset_orchestrator_cache
from src.app.main import app
from src.app.settings import settings
from src.rag.events import DeltaEvent, MetaEvent, decode_event
from src.rag.guardrails import OUT_OF_DOMAIN_MESSAGE
from src.rag.orchestrator import AnswerOrchestrator
from src.tests.fakes import ScriptedChat, build_orchestrator
from src.vectorstore.corpus import CorpusStore

pytestmark = pytest.mark.anyio

ARRAIGO_QUESTION = "¿Qué documentos necesito para el arraigo social?"


def get_client(orchestrator: AnswerOrchestrator | None = None) -> httpx.AsyncClient:
    reset_orchestrator_cache()
    app.dependency_overrides.clear()
    override = orchestrator or build_orchestrator()
    app.dependency_overrides[get_orchestrator] = lambda: override
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.fixture(autouse=True)
def _clear_overrides():
    yield
    app.dependency_overrides.clear()


async def test_health_endpoint() -> None:
    async with get_client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["x-request-id"]


async def test_answer_endpoint_returns_grounded_answer() -> None:
    async with get_client() as client:
        response = await client.post(
            "/rag/answer",
            json={"question": ARRAIGO_QUESTION, "topK": 4, "kbOnly": True},
            headers={"X-Request-ID": "req-api-1"},
        )
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["answer"] == "Necesitas pasaporte y antecedentes."
    assert payload["route"] == "KB_ONLY"
    assert payload["requestId"] == "req-api-1"
    assert payload["citations"][0]["id"] == "arraigo"
    assert payload["citations"][0]["relPath"] == "kb-text/Normativa/arraigo.txt"


async def test_answer_endpoint_accepts_conversation_history() -> None:
    chat = ScriptedChat()
    async with get_client(build_orchestrator(chat=chat)) as client:
        response = await client.post(
            "/rag/answer",
            json={
                "question": "¿y cuánto tarda?",
                "conversationHistory": [
                    {"role": "user", "content": "Requisitos del arraigo social"},
                    {"role": "assistant", "content": "Tres años de permanencia."},
                ],
            },
        )
    assert response.status_code == 200
    assert response.json()["route"] == "KB_ONLY"
    roles = [message["role"] for message in chat.completions[0]]
    assert roles == ["system", "user", "assistant", "user"]


async def test_answer_endpoint_out_of_domain() -> None:
    async with get_client() as client:
        response = await client.post("/rag/answer", json={"question": "Best pizza recipe?"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["route"] == "OUT_OF_DOMAIN"
    assert payload["answer"] == OUT_OF_DOMAIN_MESSAGE
    assert payload["citations"] == []


@pytest.mark.parametrize(
    "body",
    [
        {"question": "   "},
        {"question": ARRAIGO_QUESTION, "topK": 0},
        {"question": ARRAIGO_QUESTION, "minScore": 1.5},
        {},
    ],
)
async def test_answer_endpoint_rejects_invalid_input(body: dict[str, object]) -> None:
    async with get_client() as client:
        response = await client.post("/rag/answer", json=body)
    assert response.status_code == 400
    payload = response.json()
    assert payload["ok"] is False
    assert payload["error"]


async def test_answer_endpoint_maps_llm_failure_to_502() -> None:
    async with get_client(build_orchestrator(chat=ScriptedChat(fail_after=0))) as client:
        response = await client.post("/rag/answer", json={"question": ARRAIGO_QUESTION})
    assert response.status_code == 502
    assert response.json() == {"ok": False, "error": "upstream unavailable"}


async def test_missing_corpus_returns_503() -> None:
    orchestrator = build_orchestrator()
    orchestrator.store = CorpusStore(path="/nonexistent/embeddings.json")
    async with get_client(orchestrator) as client:
        answer = await client.post("/rag/answer", json={"question": ARRAIGO_QUESTION})
        stream = await client.post("/rag/stream", json={"question": ARRAIGO_QUESTION})
        stats = await client.get("/stats/corpus")
    assert answer.status_code == 503
    assert answer.json()["ok"] is False
    assert stream.status_code == 503
    assert stats.status_code == 503


async def test_missing_provider_key_is_reported_as_configuration_error(monkeypatch) -> None:
    monkeypatch.setattr(
        dependencies,
        "settings",
        dataclasses.replace(settings, embedding_provider="openai", openai_api_key=None),
    )
    reset_orchestrator_cache()
    app.dependency_overrides.clear()
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/rag/answer", json={"question": ARRAIGO_QUESTION})
    finally:
        reset_orchestrator_cache()
    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "Missing OPENAI_API_KEY"}


async def test_stream_client_disconnect_abandons_web_lookup(monkeypatch) -> None:
    class HangingWeb:
        def __init__(self) -> None:
            self.calls: list[str] = []
            self.abandoned = False

        async def fallback(self, question: str, max_results: int = 4):
            self.calls.append(question)
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.abandoned = True
                raise

    chat = ScriptedChat()
    web = HangingWeb()

    async def disconnected(self) -> bool:
        return bool(web.calls)

    monkeypatch.setattr(Request, "is_disconnected", disconnected)
    orchestrator = build_orchestrator(vector=[0.0, 0.0, 1.0], chat=chat, web=web)

    async with get_client(orchestrator) as client:
        response = await asyncio.wait_for(
            client.post("/rag/stream", json={"question": ARRAIGO_QUESTION, "kbOnly": False}),
            timeout=5,
        )

    assert response.status_code == 499
    assert response.json() == {"ok": False, "error": "Client closed request"}
    assert web.calls
    assert web.abandoned
    assert chat.streams == []


async def test_stream_endpoint_emits_ndjson_events() -> None:
    async with get_client() as client:
        response = await client.post(
            "/rag/stream",
            json={"question": ARRAIGO_QUESTION, "topK": 5, "minScore": 0.4},
            headers={"X-Request-ID": "req-stream"},
        )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.headers["x-route"] == "KB_ONLY"
    assert response.headers["x-domain"] == "in"
    assert response.headers["x-rag-topk"] == "5"
    assert response.headers["x-rag-min-score"] == "0.4"
    assert float(response.headers["x-rag-top-score"]) > 0.9
    assert "no-store" in response.headers["cache-control"]

    events = [decode_event(line) for line in response.text.splitlines() if line.strip()]
    kinds = [event.kind for event in events]
    assert kinds[:3] == ["init", "meta", "sources"]
    assert kinds[-2:] == ["metrics", "done"]
    meta = events[1]
    assert isinstance(meta, MetaEvent)
    assert meta.request_id == "req-stream"
    text = "".join(event.text for event in events if isinstance(event, DeltaEvent))
    assert text == "Necesitas pasaporte y antecedentes."


async def test_stream_endpoint_reports_out_of_domain_in_headers() -> None:
    async with get_client() as client:
        response = await client.post("/rag/stream", json={"question": "Best pizza recipe?"})
    assert response.status_code == 200
    assert response.headers["x-route"] == "OUT_OF_DOMAIN"
    assert response.headers["x-domain"] == "out"


async def test_search_endpoint_returns_enriched_hits() -> None:
    async with get_client() as client:
        response = await client.post("/rag/search", json={"question": ARRAIGO_QUESTION})
    assert response.status_code == 200
    payload = response.json()
    assert [hit["id"] for hit in payload["hits"]] == ["arraigo"]
    assert payload["hits"][0]["excerpt"].startswith("Arraigo social. Documentos necesarios:")
    assert payload["hits"][0]["relPath"] == "kb-text/Normativa/arraigo.txt"


async def test_corpus_stats_endpoint() -> None:
    async with get_client() as client:
        response = await client.get("/stats/corpus")
    assert response.status_code == 200
    assert response.json() == {
        "loaded": True,
        "entries": 2,
        "dimension": 3,
        "model": "test-embed",
        "files": 2,
    }


async def test_metrics_endpoint_exposes_request_counters() -> None:
    async with get_client() as client:
        await client.get("/health")
        response = await client.get("/metrics")
    assert response.status_code == 200
    assert "extranjeria_http_requests_total" in response.text
