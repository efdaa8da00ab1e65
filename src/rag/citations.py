from __future__ import annotations

"""Citation helpers for attaching sources to answers."""

from dataclasses import dataclass
from typing import Sequence

from src.rag.types import EnrichedHit

SNIPPET_CHARS = 300


@dataclass(frozen=True)
class Citation:
    """Client-facing reference to a single excerpt."""
    id: str
    score: float
    file: str | None
    start: int | None
    end: int | None
    snippet: str
    rel_path: str | None
    url: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "score": self.score,
            "file": self.file,
            "start": self.start,
            "end": self.end,
            "snippet": self.snippet,
            "relPath": self.rel_path,
            "url": self.url,
        }


def to_citation(hit: EnrichedHit) -> Citation:
    """Shape an enriched hit into a citation with a bounded snippet."""
    return Citation(
        id=hit.id,
        score=hit.score,
        file=hit.source_file,
        start=hit.range_start,
        end=hit.range_end,
        snippet=hit.excerpt[:SNIPPET_CHARS],
        rel_path=hit.locator,
        url=hit.url,
    )


def build_citations(hits: Sequence[EnrichedHit]) -> list[Citation]:
    """Build citations in grounding order."""
    return [to_citation(hit) for hit in hits]
