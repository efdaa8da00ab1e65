from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversationTurnModel(CamelModel):
    role: Literal["user", "assistant"]
    content: str


class AnswerRequestModel(CamelModel):
    question: str = Field(min_length=1)
    top_k: int | None = Field(default=None, ge=1, le=50)
    min_score: float | None = Field(default=None, ge=0.0, le=1.0)
    kb_only: bool = True
    conversation_history: list[ConversationTurnModel] = Field(default_factory=list)
    session_id: str | None = None

    @field_validator("question")
    @classmethod
    def _strip_question(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("question must not be blank")
        return value


class CitationModel(CamelModel):
    id: str
    score: float
    file: str | None = None
    start: int | None = None
    end: int | None = None
    snippet: str
    rel_path: str | None = None
    url: str | None = None


class AnswerResponse(CamelModel):
    ok: bool = True
    question: str
    answer: str
    citations: list[CitationModel]
    route: str
    request_id: str
    runtime_ms: int


class SearchHitModel(CamelModel):
    id: str
    score: float
    file: str | None = None
    start: int | None = None
    end: int | None = None
    excerpt: str
    rel_path: str | None = None


class SearchResponse(CamelModel):
    ok: bool = True
    hits: list[SearchHitModel]
    request_id: str
    runtime_ms: int


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str


class CorpusStatsResponse(CamelModel):
    loaded: bool
    entries: int
    dimension: int
    model: str
    files: int
