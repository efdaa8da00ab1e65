from __future__ import annotations

"""Rule-based admission gate for the Spanish immigration domain.

Rules are evaluated in a fixed precedence order:

1. ``exclusions``: markers of other jurisdictions' immigration systems found
   in the question or its rewrite reject immediately.
2. History carry-over: when the recent turns match an indicator and the
   question is not a topic change, the question is admitted as a follow-up.
3. ``indicators`` / ``follow_up_patterns`` found in the question or rewrite
   admit it.
4. Anything else is rejected.

Keyword syntax: entries match whole words or phrases after lowercasing and
accent folding; a trailing ``*`` turns the entry into a word prefix
(``residenc*`` matches ``residencia`` and ``residencias``). Patterns are
regular expressions applied to the folded text.
"""

import json
import logging
import re
import unicodedata
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Sequence

from src.rag.types import ConversationTurn

logger = logging.getLogger(__name__)


def fold_text(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = stripped.replace("‑", "-").replace("‐", "-")
    stripped = re.sub(r"[¿¡]", "", stripped)
    return re.sub(r"\s+", " ", stripped).strip().lower()


@dataclass(frozen=True)
class DomainRules:
    """Declarative rule table consumed by :class:`DomainGate`."""
    exclusions: tuple[str, ...] = ()
    indicators: tuple[str, ...] = ()
    follow_up_patterns: tuple[str, ...] = ()
    topic_change_patterns: tuple[str, ...] = ()
    history_window: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "DomainRules":
        """Build rules from a mapping, falling back to defaults per key."""
        values: dict[str, object] = {}
        for item in fields(cls):
            if item.name not in data:
                values[item.name] = getattr(DEFAULT_RULES, item.name)
                continue
            raw = data[item.name]
            if item.name == "history_window":
                values[item.name] = int(raw)  # type: ignore[arg-type]
            elif isinstance(raw, list) and all(isinstance(value, str) for value in raw):
                values[item.name] = tuple(raw)
            else:
                raise ValueError(f"Domain rule '{item.name}' must be a list of strings")
        return cls(**values)  # type: ignore[arg-type]


DEFAULT_RULES = DomainRules(
    exclusions=(
        "h-1b", "h1b", "h1-b", "h 1b",
        "uscis", "green card", "social security number usa",
        "b1/b2", "f-1 visa usa", "j-1 visa usa",
        "united states immigration", "us immigration",
        "canadian immigration", "canada immigration",
        "australian immigration", "australia immigration",
        "portug*", "nacionalidad portuguesa",
    ),
    indicators=(
        # greetings and request words
        "hola", "buenos dias", "buenas tardes", "buenas noches", "ayuda",
        "necesito", "quiero", "puedo", "gracias", "por favor", "informacion",
        # immigration vocabulary
        "inmigr*", "migrac*", "migrant*", "extranjer*", "visa*", "visado*",
        "pasaporte*", "permiso*", "autorizac*", "residen*", "nacionalidad*",
        "ciudadan*", "refugi*", "asilo", "asilad*", "estudiante*", "trabajo",
        "familia*", "matrimonio", "hijo*", "hija*", "padre*", "madre*",
        "esposa", "esposo", "conyuge*", "pareja", "viud*",
        "documento*", "formulario*", "solicitud*", "tramite*", "procedimiento*",
        "requisito*", "plazo*", "duracion",
        "comunicac*", "notific*", "fallec*", "defuncion", "presentac*",
        "inscrip*", "inscribir",
        # Spanish economic and administrative references
        "iprem", "i.p.r.e.m", "indicador publico", "salario minimo", "smi",
        "empadron*", "padron", "tasa*", "precio publico",
        "espana", "espanol*", "nie", "tie", "boe", "ministerio", "sede electronica",
        "modelo ex*", "arraigo*", "reagrupac*", "tarjeta comunitaria",
        "regimen comunitario", "cita previa", "consulado*", "oficina de extranjeria",
        # nationality laws
        "ley de memoria", "memoria democratica", "memoria historica",
        "ley de nietos", "nieto*", "nieta*", "bisnieto*",
        # English equivalents
        "immigrat*", "residence", "residency", "nationality", "citizenship",
        "work permit", "consulate", "spain", "spanish",
        # countries of origin frequently asking about Spain
        "venezuela", "colombia", "ecuador", "peru", "argentina", "mexico",
        "bolivia", "chile", "uruguay", "paraguay", "cuba", "nicaragua", "honduras",
    ),
    follow_up_patterns=(
        r"^(y|si|como|donde|cuando|que|por|para|con|sin|sobre)\b",
        r"\b(cuanto|cuanta|cuantos|cuantas|precio|costo|valor)\b",
        r"^(hago|realizo|efectuo|presento)\b",
    ),
    topic_change_patterns=(
        r"^(ahora|otra pregunta|cambiando de tema|hablemos de|quiero preguntar sobre|nueva consulta)",
    ),
)


def load_rules(path: str | None) -> DomainRules:
    """Load a rule table from JSON, or return the defaults when unset."""
    if not path:
        return DEFAULT_RULES
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Domain rules file must contain a JSON object")
    return DomainRules.from_dict(data)


def _compile_keywords(keywords: Sequence[str]) -> re.Pattern[str] | None:
    parts: list[str] = []
    for keyword in keywords:
        folded = fold_text(keyword)
        if not folded:
            continue
        if folded.endswith("*"):
            parts.append(rf"(?<!\w){re.escape(folded[:-1])}\w*")
        else:
            parts.append(rf"(?<!\w){re.escape(folded)}(?!\w)")
    if not parts:
        return None
    return re.compile("|".join(parts))


def _compile_patterns(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    return [re.compile(pattern) for pattern in patterns]


@dataclass(frozen=True)
class GateDecision:
    """Admission outcome and the rule that produced it."""
    admitted: bool
    reason: str


@dataclass
class DomainGate:
    """Pure evaluator over a :class:`DomainRules` table."""
    rules: DomainRules = DEFAULT_RULES
    _exclusions: re.Pattern[str] | None = field(init=False, repr=False)
    _indicators: re.Pattern[str] | None = field(init=False, repr=False)
    _follow_ups: list[re.Pattern[str]] = field(init=False, repr=False)
    _topic_changes: list[re.Pattern[str]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._exclusions = _compile_keywords(self.rules.exclusions)
        self._indicators = _compile_keywords(self.rules.indicators)
        self._follow_ups = _compile_patterns(self.rules.follow_up_patterns)
        self._topic_changes = _compile_patterns(self.rules.topic_change_patterns)

    def is_admitted(
        self,
        question: str,
        rewritten: str | None = None,
        history: Sequence[ConversationTurn] | None = None,
    ) -> bool:
        return self.evaluate(question, rewritten, history).admitted

    def evaluate(
        self,
        question: str,
        rewritten: str | None = None,
        history: Sequence[ConversationTurn] | None = None,
    ) -> GateDecision:
        texts = [fold_text(question), fold_text(rewritten or "")]
        texts = [text for text in texts if text]
        if self._exclusions and any(self._exclusions.search(text) for text in texts):
            return GateDecision(admitted=False, reason="excluded")
        if history and self.rules.history_window > 0:
            recent = list(history)[-self.rules.history_window :]
            history_text = fold_text(" ".join(turn.content for turn in recent))
            if self._matches_domain(history_text) and not self._is_topic_change(texts):
                return GateDecision(admitted=True, reason="history")
        if any(self._matches_domain(text) for text in texts):
            return GateDecision(admitted=True, reason="keyword")
        return GateDecision(admitted=False, reason="no_match")

    def _matches_domain(self, text: str) -> bool:
        if not text:
            return False
        if self._indicators and self._indicators.search(text):
            return True
        return any(pattern.search(text) for pattern in self._follow_ups)

    def _is_topic_change(self, texts: list[str]) -> bool:
        return any(pattern.search(text) for pattern in self._topic_changes for text in texts)
