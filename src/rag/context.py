from __future__ import annotations

"""Materialize ranked hits into bounded text excerpts."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence
from urllib.parse import quote

import httpx

from src.rag.retry import RetryPolicy
from src.rag.types import EnrichedHit, RankedHit, WebHit

logger = logging.getLogger(__name__)

SIDECAR_PREFIX = "kb-text"
_PDF_SUFFIX = re.compile(r"\.pdf$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def sidecar_path(source_file: str) -> str | None:
    """Map a corpus source file to its plain-text sidecar path."""
    name = (source_file or "").strip()
    if not name:
        return None
    return f"{SIDECAR_PREFIX}/{_PDF_SUFFIX.sub('.txt', name)}"


def slice_excerpt(text: str, start: int, end: int, max_chars: int) -> str:
    """Slice `[start, end)` clamped to the text, collapse whitespace, truncate."""
    length = len(text)
    lo = min(max(0, start), length)
    hi = min(max(lo, end), length)
    return _WHITESPACE.sub(" ", text[lo:hi]).strip()[:max_chars]


class SourceTextResolver(Protocol):
    """Returns the full plain text of a source document."""

    async def resolve(self, rel_path: str) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class FileSystemSourceResolver:
    """Reads sidecar text files below a root directory."""
    root: str

    async def resolve(self, rel_path: str) -> str:
        path = Path(self.root) / rel_path
        return await asyncio.to_thread(path.read_text, encoding="utf-8")


@dataclass(frozen=True)
class HttpSourceResolver:
    """Fetches sidecar text files from a static file host."""
    base_url: str
    timeout: float = 15.0
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=2))

    async def resolve(self, rel_path: str) -> str:
        url = f"{self.base_url.rstrip('/')}/{quote(rel_path)}"

        async def _request() -> str:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers={"Cache-Control": "no-cache"})
                response.raise_for_status()
                return response.text

        return await self.retry.run(_request, label="source_text")


@dataclass
class ContextAssembler:
    """Turns ranked hits or web results into grounded excerpts."""
    resolver: SourceTextResolver
    excerpt_max_chars: int = 3000
    web_excerpt_max_chars: int = 1200

    async def assemble(
        self,
        hits: Sequence[RankedHit],
        cancel: asyncio.Event | None = None,
    ) -> list[EnrichedHit]:
        """Resolve each distinct source once and slice every hit's range.

        A failed resolution leaves that hit with an empty excerpt. Returns an
        empty list when `cancel` is already set.
        """
        if not hits or (cancel is not None and cancel.is_set()):
            return []
        paths = {hit.source_file: sidecar_path(hit.source_file) for hit in hits}
        distinct = sorted({path for path in paths.values() if path})
        texts = await asyncio.gather(
            *(self._resolve(path) for path in distinct)
        )
        by_path = dict(zip(distinct, texts))
        enriched: list[EnrichedHit] = []
        for hit in hits:
            rel_path = paths[hit.source_file]
            text = by_path.get(rel_path) if rel_path else None
            excerpt = (
                slice_excerpt(text, hit.range_start, hit.range_end, self.excerpt_max_chars)
                if text
                else ""
            )
            enriched.append(
                EnrichedHit(
                    id=hit.id,
                    score=hit.score,
                    excerpt=excerpt,
                    source_file=hit.source_file,
                    range_start=hit.range_start,
                    range_end=hit.range_end,
                    locator=rel_path,
                )
            )
        return enriched

    def assemble_from_web(self, results: Sequence[WebHit]) -> list[EnrichedHit]:
        """Wrap web results as score-zero hits carrying their URL."""
        enriched: list[EnrichedHit] = []
        for result in results:
            if not result.url:
                continue
            enriched.append(
                EnrichedHit(
                    id=f"web#{len(enriched)}",
                    score=0.0,
                    excerpt=_WHITESPACE.sub(" ", result.snippet or "").strip()[
                        : self.web_excerpt_max_chars
                    ],
                    url=result.url,
                )
            )
        return enriched

    async def _resolve(self, rel_path: str) -> str | None:
        try:
            return await self.resolver.resolve(rel_path)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "source_text_unavailable",
                extra={"rel_path": rel_path, "detail": type(exc).__name__},
            )
            return None
