from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from src.rag.types import EnrichedHit


OUT_OF_DOMAIN_MESSAGE = (
    "Parece que su consulta no está relacionada con temas de Inmigración y Residencia "
    "en España. Esta IA se especializa únicamente en Inmigración, Residencia y "
    "Nacionalidad española. Si considera que esto es un error, por favor reformule su "
    "pregunta con más detalles específicos sobre inmigración."
)

GUIDANCE_MESSAGE = (
    "No he encontrado información suficiente en la documentación disponible para "
    "responder con precisión. Indica el contexto específico de tu consulta (tipo de "
    "trámite, organismo competente, situación administrativa o año) para poder afinar "
    "la respuesta."
)


@dataclass(frozen=True)
class GuardrailResult:
    allowed: bool
    reason: str


def require_context(hits: Sequence[EnrichedHit]) -> GuardrailResult:
    if not hits:
        return GuardrailResult(allowed=False, reason="no_context")
    if all(not hit.excerpt.strip() for hit in hits):
        return GuardrailResult(allowed=False, reason="empty_context")
    return GuardrailResult(allowed=True, reason="ok")
