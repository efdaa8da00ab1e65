from __future__ import annotations

"""Query rewriting helpers for retrieval optimization."""

import re
from dataclasses import dataclass
from typing import Sequence

from src.rag.domain import fold_text
from src.rag.types import ConversationTurn


class QueryRewriter:
    """Base class for query rewriters."""
    async def rewrite(self, query: str, history: Sequence[ConversationTurn] | None = None) -> str:
        """Return a rewritten query or the original if unchanged."""
        raise NotImplementedError


@dataclass(frozen=True)
class NoopRewriter(QueryRewriter):
    """Rewriter that returns the input unchanged."""
    async def rewrite(self, query: str, history: Sequence[ConversationTurn] | None = None) -> str:
        """Return the input query without modification."""
        return query


_EXPANSIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\b(nieto|nieta|nietos|nietas) de (espanol(es)?|espanola(s)?)\b"),
        "descendiente de españoles por LMD (Ley 20/2022) y art. 20 CC",
    ),
    (
        re.compile(r"\b(opta(r)?|solicita(r)?|tramita(r)?)( la)? nacionalidad espanola\b"),
        "nacionalidad española por opción",
    ),
    (re.compile(r"\bley de memoria( democratica)?\b"), "Ley 20/2022 de Memoria Democrática"),
    (re.compile(r"\blmd\b"), "Ley 20/2022 de Memoria Democrática"),
    (re.compile(r"\bmodelo(s)?\s*ex-?0?3\b"), "Modelos EX-03"),
)

_VAGUE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(que pasa|y si|mientras|durante|cuando|puedo|debo|tengo que|necesito)"),
    re.compile(
        r"\b(la solicitud|el plazo|ese plazo|esos documentos|ese tramite|la renovacion|el proceso)\b"
    ),
    re.compile(r"^(si|no|vale|ok|gracias|pero|entonces|ah)\b"),
)

# Ordered from most to least specific; the first match wins.
_TOPIC_KEYWORDS: tuple[str, ...] = (
    "homologación de título", "homologación título", "homologación",
    "convalidación de título", "reconocimiento de título",
    "arraigo social", "arraigo laboral", "arraigo familiar", "arraigo",
    "renovación TIE", "renovación de tarjeta", "renovación",
    "nacionalidad española", "nacionalidad por residencia", "nacionalidad por opción",
    "nacionalidad",
    "reagrupación familiar", "familiar comunitario", "residencia comunitaria",
    "Ley de Memoria Democrática", "Ley de Memoria", "memoria democrática",
    "Ley de Nietos", "nietos",
    "autorización de residencia para emprendedores", "emprendedores",
    "visado de estudiante", "visado",
    "permiso de trabajo", "autorización de residencia", "TIE", "tarjeta",
)

_EMPHASIZED_TOPICS: tuple[str, ...] = (
    "homologación", "convalidación", "reconocimiento de título",
    "arraigo social", "arraigo laboral", "arraigo familiar",
    "Ley de Memoria", "memoria democrática", "Ley de Nietos",
)


def rewrite_es(query: str) -> str:
    """Append canonical legal terms and retrieval anchors to a Spanish query."""
    text = (query or "").strip()
    folded = fold_text(text)
    additions = [replacement for pattern, replacement in _EXPANSIONS if pattern.search(folded)]
    anchors: list[str] = []
    if re.search(r"\bnacionalidad\b", folded):
        anchors.extend(["Código Civil art. 20", "BOE Ley 20/2022"])
    if re.search(r"\bnieto", folded):
        anchors.extend(["descendientes de españoles", "acreditación filiación/abuelos"])
    rewritten = text
    for addition in additions:
        rewritten += f"; {addition}"
    if anchors:
        rewritten += "; " + "; ".join(anchors)
    return rewritten


def expand_follow_up(
    question: str,
    history: Sequence[ConversationTurn] | None,
    window: int = 4,
) -> str:
    """Prefix a vague follow-up with the topic of the previous exchange."""
    if not history:
        return question
    folded = fold_text(question)
    if not any(pattern.search(folded) for pattern in _VAGUE_PATTERNS):
        return question
    recent = list(history)[-window:] if window > 0 else list(history)
    last_user = next((turn for turn in reversed(recent) if turn.role == "user"), None)
    if last_user is None:
        return question
    last_assistant = next((turn for turn in reversed(recent) if turn.role == "assistant"), None)
    pieces = [last_user.content[:100]]
    if last_assistant is not None:
        pieces.append(last_assistant.content[:150])
    topic_context = " ".join(piece for piece in pieces if piece)
    folded_context = fold_text(topic_context)
    main_topic = next(
        (keyword for keyword in _TOPIC_KEYWORDS if fold_text(keyword) in folded_context), ""
    )
    if not main_topic:
        return f"{topic_context} - {question}"
    if any(fold_text(topic) in fold_text(main_topic) for topic in _EMPHASIZED_TOPICS):
        # Repeating the topic weights it more heavily in the query embedding.
        return f"{main_topic} {main_topic} {topic_context} - {question}"
    return f"{main_topic} {topic_context} - {question}"


@dataclass(frozen=True)
class SpanishLegalRewriter(QueryRewriter):
    """Rule-based rewriter: follow-up expansion, then legal term expansion."""
    history_window: int = 4

    async def rewrite(self, query: str, history: Sequence[ConversationTurn] | None = None) -> str:
        """Rewrite a query using conversation context and synonym tables."""
        if not query.strip():
            return query
        expanded = expand_follow_up(query, history, window=self.history_window)
        return rewrite_es(expanded)


def build_rewriter(enabled: bool, history_window: int = 4) -> QueryRewriter:
    """Factory for query rewriters based on settings."""
    if not enabled:
        return NoopRewriter()
    return SpanishLegalRewriter(history_window=history_window)
