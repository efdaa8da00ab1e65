from __future__ import annotations

"""Chat providers and prompt assembly for grounded answers."""

from dataclasses import dataclass, field
import json
import logging
from typing import AsyncIterator, Protocol, Sequence

import httpx

from src.rag.retry import NO_RETRY, RetryPolicy
from src.rag.types import ConfigurationError, ConversationTurn, EnrichedHit, RAGError


class LLMError(RAGError):
    """Raised when LLM requests fail or responses are invalid."""
    pass


class LLMConfigError(ConfigurationError):
    """Raised when the chat provider is misconfigured."""
    pass


logger = logging.getLogger(__name__)

HISTORY_TURNS = 8

_SYSTEM_PROMPT = (
    "Eres un asistente legal especializado en Derecho de Inmigración Español. "
    "Sigue estas reglas estrictamente:\n\n"
    "CONVERSACIÓN:\n"
    "- Si existe historial previo, identifica el tema principal (arraigo social, "
    "renovación TIE, nacionalidad...) y mantenlo en las preguntas de seguimiento.\n"
    "- Las preguntas cortas o con referencias vagas (\"ese plazo\", \"la solicitud\") "
    "son seguimientos del tema previo.\n"
    "- Ignora fragmentos de contexto que traten un tema distinto al de la conversación.\n"
    "- Solo cambia de tema si el usuario lo pide explícitamente.\n\n"
    "RESPUESTA:\n"
    "1. Usa SOLO la información de los fragmentos de contexto y del historial.\n"
    "2. Si la información no está en el contexto, indícalo claramente en lugar de inventar.\n"
    "3. Cita los documentos concretos (ej: \"Según BOE-A-2022-xxx...\").\n"
    "4. NUNCA inventes números de leyes, decretos, fechas ni cantidades que no aparezcan "
    "textualmente en el contexto.\n"
    "5. Cuando el contexto contenga listas de requisitos o documentos, reprodúcelas completas.\n"
    "6. Si faltan datos actualizados (tasas, plazos vigentes), indica: \"La información "
    "específica sobre [tema] requiere verificación actualizada\".\n"
    "7. Al mencionar un acrónimo por primera vez, da su significado completo "
    "(ej: \"TIE (Tarjeta de Identidad de Extranjero)\").\n"
    "8. Usa un lenguaje profesional pero accesible, en español."
)


def build_system_prompt(referral: str | None = None) -> str:
    """Return the system prompt, optionally naming a referral contact."""
    if not referral:
        return _SYSTEM_PROMPT
    return (
        f"{_SYSTEM_PROMPT}\n\n"
        "RECOMENDACIONES:\n"
        "- Cuando la consulta requiera asesoramiento personalizado, sugiere: "
        f"\"Para obtener asesoramiento personalizado y actualizado sobre su caso particular, "
        f"le recomendamos contactar con {referral}\".\n"
        "- No uses referencias genéricas a \"un especialista\" o \"un abogado\"."
    )


def hit_locator(hit: EnrichedHit) -> str:
    """Describe where an excerpt came from."""
    if hit.url:
        return hit.url
    if hit.locator:
        return hit.locator
    return f"{hit.source_file or ''} [{hit.range_start}-{hit.range_end}]"


def build_context_block(hits: Sequence[EnrichedHit]) -> str:
    """Number and join excerpts into the grounding block."""
    blocks = [
        f"#{idx} {hit_locator(hit)}\n{hit.excerpt}" for idx, hit in enumerate(hits, start=1)
    ]
    return "\n\n---\n\n".join(blocks)


def build_messages(
    question: str,
    hits: Sequence[EnrichedHit],
    history: Sequence[ConversationTurn] | None = None,
    system_prompt: str = _SYSTEM_PROMPT,
    history_turns: int = HISTORY_TURNS,
) -> list[dict[str, str]]:
    """Assemble system prompt, recent history and the grounded question."""
    messages = [{"role": "system", "content": system_prompt}]
    recent = list(history or [])[-history_turns:] if history_turns > 0 else []
    for turn in recent:
        content = turn.content.strip()
        if not content:
            continue
        messages.append({"role": turn.role, "content": content})
    messages.append(
        {
            "role": "user",
            "content": (
                f"Pregunta: {question}\n\n"
                "Contexto (fragmentos de documentos oficiales):\n"
                f"{build_context_block(hits)}"
            ),
        }
    )
    return messages


class ChatProvider(Protocol):
    """Protocol for chat completion providers."""
    model: str

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Return the full completion text."""
        raise NotImplementedError

    def stream(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        """Yield completion text increments."""
        raise NotImplementedError


@dataclass(frozen=True)
class OpenAIChatClient:
    """Chat provider backed by OpenAI chat completions."""
    api_key: str
    base_url: str
    model: str
    temperature: float = 0.3
    max_tokens: int = 2500
    timeout: float = 60.0
    retry: RetryPolicy = field(default=NO_RETRY)

    def _payload(self, messages: list[dict[str, str]], stream: bool) -> dict[str, object]:
        return {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Generate an answer in a single request."""
        async def _request() -> dict[str, object]:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=self._payload(messages, stream=False),
                    headers=self._headers(),
                )
                response.raise_for_status()
                return response.json()

        try:
            data = await self.retry.run(_request, label="llm")
        except (httpx.HTTPError, ValueError) as exc:
            raise LLMError(str(exc)) from exc
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Invalid OpenAI response")
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise LLMError("Invalid OpenAI response content")
        return content.strip()

    async def stream(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        """Relay content deltas from the server-sent event stream."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=self._payload(messages, stream=True),
                    headers=self._headers(),
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise LLMError(body[:500] or f"LLM error {response.status_code}")
                    async for line in response.aiter_lines():
                        delta = parse_sse_delta(line)
                        if delta:
                            yield delta
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc


def parse_sse_delta(line: str) -> str | None:
    """Extract the content delta from one `data:` line, if any."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("llm_stream_unparsed_line")
        return None
    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices:
        return None
    delta = (choices[0].get("delta") or {}).get("content")
    return delta if isinstance(delta, str) else None


@dataclass(frozen=True)
class OllamaChatClient:
    """Chat provider backed by Ollama chat API."""
    base_url: str
    model: str
    temperature: float = 0.3
    max_tokens: int = 2500
    timeout: float = 60.0

    def _payload(self, messages: list[dict[str, str]], stream: bool) -> dict[str, object]:
        return {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Generate an answer using Ollama."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/chat", json=self._payload(messages, stream=False)
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LLMError(str(exc)) from exc
        message = data.get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise LLMError("Invalid LLM response")
        return content.strip()

    async def stream(self, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        """Relay content from Ollama's newline-delimited JSON stream."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/api/chat", json=self._payload(messages, stream=True)
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise LLMError(body[:500] or f"LLM error {response.status_code}")
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        content = (data.get("message") or {}).get("content")
                        if content:
                            yield content
                        if data.get("done"):
                            break
        except httpx.HTTPError as exc:
            raise LLMError(str(exc)) from exc


def build_chat_client(
    provider: str,
    *,
    api_key_openai: str | None,
    openai_base_url: str,
    openai_model: str | None,
    ollama_base_url: str,
    ollama_model: str,
    temperature: float,
    max_tokens: int,
    timeout: float,
) -> OpenAIChatClient | OllamaChatClient:
    """Factory for chat providers based on provider name."""
    normalized = provider.strip().lower()
    if normalized == "openai":
        if not api_key_openai:
            raise LLMConfigError("OPENAI_API_KEY is required for OpenAI provider")
        if not openai_model:
            raise LLMConfigError("OPENAI_CHAT_MODEL is required for OpenAI provider")
        return OpenAIChatClient(
            api_key=api_key_openai,
            base_url=openai_base_url.rstrip("/"),
            model=openai_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    if normalized == "ollama":
        return OllamaChatClient(
            base_url=ollama_base_url.rstrip("/"),
            model=ollama_model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise LLMConfigError(f"Unsupported LLM provider: {provider}")
