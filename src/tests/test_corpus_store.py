from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from src.rag.types import CorpusUnavailable
from src.vectorstore.corpus import CorpusStore, parse_corpus

pytestmark = pytest.mark.anyio


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "model": "text-embedding-3-small",
        "dims": 3,
        "items": [
            {"id": "a", "file": "Normativa/a.pdf", "start": 0, "end": 120, "embedding": [1, 0, 0]},
            {"file": "Normativa/b.pdf", "start": 10, "end": 40, "embedding": [0, 1, 0]},
        ],
    }
    payload.update(overrides)
    return payload


def test_parse_corpus_builds_entries() -> None:
    corpus = parse_corpus(_payload())

    assert corpus.dimension == 3
    assert corpus.model == "text-embedding-3-small"
    assert [entry.id for entry in corpus.entries] == ["a", "Normativa/b.pdf#10-40"]
    assert corpus.entries[0].embedding == (1.0, 0.0, 0.0)


@pytest.mark.parametrize(
    "overrides",
    [
        {"items": None},
        {"dims": "3"},
        {"dims": True},
        {"items": []},
        {"items": [{"file": "x.pdf", "start": 0, "end": 1, "embedding": [1, 0]}]},
        {"items": [{"file": "x.pdf", "start": 9, "end": 1, "embedding": [1, 0, 0]}]},
        {"items": [{"file": "x.pdf", "start": 0, "end": 1, "embedding": [1, "a", 0]}]},
        {"items": [{"file": "x.pdf", "start": 0, "end": 1, "embedding": [1, float("nan"), 0]}]},
        {"items": [{"file": "x.pdf", "start": 0, "end": 1, "embedding": [float("inf"), 0, 0]}]},
    ],
)
def test_parse_corpus_rejects_malformed_payloads(overrides: dict[str, object]) -> None:
    with pytest.raises(CorpusUnavailable):
        parse_corpus(_payload(**overrides))


def test_parse_corpus_rejects_non_object() -> None:
    with pytest.raises(CorpusUnavailable):
        parse_corpus([1, 2, 3])


async def test_load_reads_local_file_once(tmp_path) -> None:
    path = tmp_path / "embeddings.json"
    path.write_text(json.dumps(_payload()), encoding="utf-8")
    store = CorpusStore(path=str(path))

    first = await store.load()
    path.write_text(json.dumps(_payload(dims=2, items=[])), encoding="utf-8")
    second = await store.load()

    assert first is second
    assert store.loaded
    assert store.stats() == {
        "loaded": True,
        "entries": 2,
        "dimension": 3,
        "model": "text-embedding-3-small",
        "files": 2,
    }


async def test_concurrent_loads_share_one_corpus(tmp_path) -> None:
    path = tmp_path / "embeddings.json"
    path.write_text(json.dumps(_payload()), encoding="utf-8")
    store = CorpusStore(path=str(path))

    results = await asyncio.gather(*(store.load() for _ in range(5)))

    assert all(result is results[0] for result in results)


async def test_missing_source_raises(tmp_path) -> None:
    store = CorpusStore(path=str(tmp_path / "absent.json"))

    with pytest.raises(CorpusUnavailable):
        await store.load()
    assert not store.loaded


async def test_reset_drops_memo(tmp_path) -> None:
    path = tmp_path / "embeddings.json"
    path.write_text(json.dumps(_payload()), encoding="utf-8")
    store = CorpusStore(path=str(path))
    first = await store.load()

    store.reset()
    second = await store.load()

    assert first is not second
    assert first == second


async def test_remote_fetch_disables_caching(monkeypatch) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_payload())

    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)
    store = CorpusStore(url="https://cdn.test/embeddings.json")

    corpus = await store.load()

    assert len(corpus.entries) == 2
    assert seen[0].headers["cache-control"] == "no-cache"
    assert store.stats()["files"] == 2


async def test_remote_fetch_failure_is_unavailable(monkeypatch) -> None:
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(lambda request: httpx.Response(404))
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)

    with pytest.raises(CorpusUnavailable):
        await CorpusStore(url="https://cdn.test/embeddings.json").load()


async def test_nan_literal_in_corpus_file_is_rejected(tmp_path) -> None:
    path = tmp_path / "embeddings.json"
    path.write_text(
        '{"model": "m", "dims": 3, "items": [{"file": "a.pdf", "start": 0, "end": 4, "embedding": [NaN, 0, 0]}]}',
        encoding="utf-8",
    )

    with pytest.raises(CorpusUnavailable, match="non-finite"):
        await CorpusStore(path=str(path)).load()
