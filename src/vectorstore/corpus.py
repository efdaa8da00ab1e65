from __future__ import annotations

"""Process-wide store for the pre-embedded corpus."""

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from src.rag.retry import RetryPolicy
from src.rag.types import Corpus, CorpusEntry, CorpusUnavailable

logger = logging.getLogger(__name__)


def parse_corpus(payload: Any) -> Corpus:
    """Validate a raw `{model, dims, items}` payload and build a Corpus."""
    if not isinstance(payload, dict):
        raise CorpusUnavailable("Bad embeddings payload: expected an object")
    items = payload.get("items")
    if not isinstance(items, list):
        raise CorpusUnavailable("Bad embeddings payload: missing items")
    dims = payload.get("dims")
    if isinstance(dims, bool) or not isinstance(dims, (int, float)) or not math.isfinite(dims):
        raise CorpusUnavailable("Bad embeddings payload: dims must be numeric")
    dimension = int(dims)
    if not items:
        raise CorpusUnavailable("Bad embeddings payload: empty item set")
    entries: list[CorpusEntry] = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise CorpusUnavailable(f"Bad corpus item at index {idx}")
        embedding = item.get("embedding")
        if not isinstance(embedding, list) or len(embedding) != dimension:
            raise CorpusUnavailable(
                f"Corpus item {idx} has dimension "
                f"{len(embedding) if isinstance(embedding, list) else 'n/a'}, expected {dimension}"
            )
        source_file = str(item.get("file") or "")
        try:
            start = int(item.get("start", 0))
            end = int(item.get("end", start))
            vector = tuple(float(value) for value in embedding)
        except (TypeError, ValueError) as exc:
            raise CorpusUnavailable(f"Corpus item {idx} is not numeric") from exc
        if not all(math.isfinite(value) for value in vector):
            raise CorpusUnavailable(f"Corpus item {idx} has a non-finite embedding value")
        if start > end:
            raise CorpusUnavailable(f"Corpus item {idx} has start > end")
        entry_id = str(item.get("id") or f"{source_file}#{start}-{end}")
        entries.append(
            CorpusEntry(
                id=entry_id,
                source_file=source_file,
                range_start=start,
                range_end=end,
                embedding=vector,
            )
        )
    return Corpus(
        model=str(payload.get("model") or "unknown"),
        dimension=dimension,
        entries=tuple(entries),
    )


@dataclass
class CorpusStore:
    """Load the corpus once and hand out the same instance afterwards.

    The local file wins when present; otherwise the corpus is fetched over
    HTTP with caching disabled so that a redeployed corpus is picked up on the
    next process start.
    """
    path: str | None = None
    url: str | None = None
    timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=3))
    _corpus: Corpus | None = field(default=None, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @classmethod
    def from_corpus(cls, corpus: Corpus) -> "CorpusStore":
        """Build a store preloaded with an in-memory corpus."""
        store = cls()
        store._corpus = corpus
        return store

    @property
    def loaded(self) -> bool:
        return self._corpus is not None

    async def load(self) -> Corpus:
        """Return the memoized corpus, reading it on first use."""
        if self._corpus is not None:
            return self._corpus
        async with self._lock:
            if self._corpus is None:
                payload = await self._read_payload()
                corpus = parse_corpus(payload)
                logger.info(
                    "corpus_loaded",
                    extra={
                        "entries": len(corpus.entries),
                        "dimension": corpus.dimension,
                        "model": corpus.model,
                    },
                )
                self._corpus = corpus
        return self._corpus

    def reset(self) -> None:
        """Drop the memoized corpus."""
        self._corpus = None

    def stats(self) -> dict[str, int | str | bool]:
        """Return basic stats for the loaded corpus."""
        if self._corpus is None:
            return {"loaded": False, "entries": 0, "dimension": 0, "model": "", "files": 0}
        return {
            "loaded": True,
            "entries": len(self._corpus.entries),
            "dimension": self._corpus.dimension,
            "model": self._corpus.model,
            "files": len({entry.source_file for entry in self._corpus.entries}),
        }

    async def _read_payload(self) -> Any:
        if self.path:
            local = Path(self.path)
            if local.is_file():
                try:
                    raw = await asyncio.to_thread(local.read_text, encoding="utf-8")
                    return json.loads(raw)
                except (OSError, json.JSONDecodeError) as exc:
                    logger.warning(
                        "corpus_local_read_failed",
                        extra={"path": str(local), "detail": type(exc).__name__},
                    )
        if not self.url:
            raise CorpusUnavailable("No corpus source available (local file missing, no URL)")
        return await self._fetch_remote(self.url)

    async def _fetch_remote(self, url: str) -> Any:
        async def _request() -> Any:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    url, headers={"Cache-Control": "no-cache", "Pragma": "no-cache"}
                )
                response.raise_for_status()
                return response.json()

        try:
            return await self.retry.run(_request, label="corpus_fetch")
        except (httpx.HTTPError, ValueError) as exc:
            raise CorpusUnavailable(f"Failed to load {url}: {exc}") from exc
