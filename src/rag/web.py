from __future__ import annotations

"""Live web search used when the corpus lacks usable evidence."""

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

import httpx

from src.rag.domain import fold_text
from src.rag.retry import RetryPolicy
from src.rag.types import WebHit

logger = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"

DEFAULT_AUTHORITATIVE_DOMAINS: tuple[str, ...] = (
    "boe.es",
    "exteriores.gob.es",
    "inclusion.gob.es",
    "sepe.es",
    "europa.eu",
)

_VOLATILE = re.compile(
    r"\b(tasas?|formularios?|convocatorias?|actualizad[oa]s?|vigentes?|ultim[oa]s?|estudiantes?"
    r"|plazos? actual(es)?|20\d\d)\b"
)


def is_volatile(text: str) -> bool:
    """Flag topics likely to be stale in a static corpus."""
    return bool(_VOLATILE.search(fold_text(text)))


@dataclass
class WebFallbackClient:
    """Tavily search client that reports failures as an empty result."""
    api_key: str | None
    url: str = TAVILY_URL
    timeout: float = 15.0
    search_depth: str = "basic"
    authoritative_domains: tuple[str, ...] = DEFAULT_AUTHORITATIVE_DOMAINS
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=2))

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        max_results: int = 4,
        include_domains: Sequence[str] | None = None,
    ) -> list[WebHit]:
        """Run one search; never raises."""
        if not self.api_key:
            logger.warning("web_search_disabled", extra={"reason": "missing_api_key"})
            return []
        payload: dict[str, object] = {
            "api_key": self.api_key,
            "query": query,
            "max_results": max(1, min(max_results, 10)),
            "search_depth": self.search_depth,
            "include_answer": False,
            "include_images": False,
        }
        if include_domains:
            payload["include_domains"] = list(include_domains)

        async def _request() -> object:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                return response.json()

        try:
            data = await self.retry.run(_request, label="web_search")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("web_search_failed", extra={"detail": type(exc).__name__})
            return []
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            logger.warning("web_search_failed", extra={"detail": "malformed_payload"})
            return []
        hits: list[WebHit] = []
        for item in results[:max_results]:
            if not isinstance(item, dict):
                continue
            url = str(item.get("url") or "").strip()
            if not url:
                continue
            title = item.get("title")
            hits.append(
                WebHit(
                    url=url,
                    snippet=str(item.get("content") or title or ""),
                    title=str(title) if title else None,
                )
            )
        return hits

    async def fallback(self, question: str, max_results: int = 4) -> list[WebHit]:
        """Try a general query, then one restricted to authoritative domains."""
        if not self.enabled:
            logger.warning("web_search_disabled", extra={"reason": "missing_api_key"})
            return []
        primary = f"{question} España"
        hits = await self.search(primary, max_results)
        if hits:
            return hits
        logger.info("web_fallback_retry", extra={"domains": len(self.authoritative_domains)})
        hits = await self.search(
            primary, max_results, include_domains=self.authoritative_domains
        )
        if not hits:
            logger.info("web_fallback_empty")
        return hits
