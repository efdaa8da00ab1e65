from __future__ import annotations

"""Core data types for the corpus, retrieval and grounding context."""

from dataclasses import dataclass, field
from typing import Literal


class RAGError(RuntimeError):
    """Base error for request-level failures."""
    pass


class ConfigurationError(RAGError):
    """Raised when an external provider is missing credentials or settings."""
    pass


class CorpusUnavailable(RAGError):
    """Raised when the embedded corpus cannot be loaded or is malformed."""
    pass


class RequestCancelled(RAGError):
    """Raised when the caller went away before the work finished."""
    pass


class DimensionMismatch(RAGError):
    """Raised when a query vector does not match the corpus dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Embedding dim mismatch. KB={expected}, q={actual}")
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class CorpusEntry:
    """Pre-embedded chunk pointing at a range of a source document."""
    id: str
    source_file: str
    range_start: int
    range_end: int
    embedding: tuple[float, ...]


@dataclass(frozen=True)
class Corpus:
    """Loaded corpus generation: every entry shares `dimension`."""
    model: str
    dimension: int
    entries: tuple[CorpusEntry, ...]


@dataclass(frozen=True)
class RankedHit:
    """Corpus entry scored against a query."""
    id: str
    score: float
    source_file: str
    range_start: int
    range_end: int


@dataclass(frozen=True)
class WebHit:
    """Search provider result."""
    url: str
    snippet: str
    title: str | None = None


@dataclass(frozen=True)
class EnrichedHit:
    """Hit materialized into an excerpt with local or web provenance."""
    id: str
    score: float
    excerpt: str
    source_file: str | None = None
    range_start: int | None = None
    range_end: int | None = None
    locator: str | None = None
    url: str | None = None

    @property
    def is_web(self) -> bool:
        return self.url is not None


@dataclass(frozen=True)
class ConversationTurn:
    """Single prior message in a client session."""
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class SourceBoost:
    """Additive score boost for entries whose source file contains `pattern`."""
    pattern: str
    boost: float


@dataclass
class AnswerRequest:
    """Normalized inbound question with retrieval options."""
    question: str
    top_k: int = 8
    min_score: float = 0.30
    kb_only: bool = True
    history: list[ConversationTurn] = field(default_factory=list)
    request_id: str = ""
    session_id: str | None = None
    user_agent: str | None = None
    client_ip: str | None = None
