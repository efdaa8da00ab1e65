from __future__ import annotations

"""Embedding providers for query vectors."""

import hashlib
import math
import re
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from src.rag.retry import RetryPolicy
from src.rag.types import ConfigurationError, RAGError

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbeddingError(RAGError):
    """Raised when embeddings fail or are invalid."""
    pass


class EmbeddingConfigError(ConfigurationError):
    """Raised when embedding configuration is invalid."""
    pass


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""
    dimension: int

    async def embed(self, text: str) -> list[float]:
        """Return an embedding vector for the provided text."""
        raise NotImplementedError


def validate_vector(vector: list[float]) -> list[float]:
    """Reject non-numeric or non-finite embedding values."""
    cleaned: list[float] = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EmbeddingError("Embedding contains a non-numeric value")
        if not math.isfinite(value):
            raise EmbeddingError("Embedding contains a non-finite value")
        cleaned.append(float(value))
    return cleaned


@dataclass
class HashEmbedder:
    """Deterministic hash-based embedder for testing or offline use."""
    dimension: int = 256

    async def embed(self, text: str) -> list[float]:
        """Embed text using token hashing and L2 normalization."""
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        """Synchronous variant, handy for building test corpora."""
        tokens = _TOKEN_RE.findall(text.lower())
        vector = [0.0] * self.dimension
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dimension
            vector[idx] += 1.0
        return validate_vector(self._l2_normalize(vector))

    def _l2_normalize(self, vector: list[float]) -> list[float]:
        """Normalize vector magnitude to 1.0."""
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0.0:
            return vector
        return [value / norm for value in vector]


@dataclass
class OpenAIEmbedder:
    """Embedding provider using the OpenAI embeddings API."""
    api_key: str
    model: str
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 30.0
    dimension: int = 0
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=3))

    def __post_init__(self) -> None:
        """Validate OpenAI configuration."""
        if not self.api_key:
            raise EmbeddingConfigError("Missing OPENAI_API_KEY")
        if not self.model:
            raise EmbeddingConfigError("OPENAI_EMBED_MODEL is required for OpenAIEmbedder")
        self.base_url = self.base_url.rstrip("/")

    async def embed(self, text: str) -> list[float]:
        """Embed text using the OpenAI embeddings API."""
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload = {"model": self.model, "input": text}

        async def _request() -> dict[str, object]:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/embeddings", json=payload, headers=headers
                )
                response.raise_for_status()
                return response.json()

        try:
            data = await self.retry.run(_request, label="embedding")
        except httpx.HTTPStatusError as exc:
            raise EmbeddingError(
                f"Embedding failed: {exc.response.status_code} {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingError(f"Embedding failed: {exc}") from exc
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise EmbeddingError("Invalid embedding response shape")
        vector = rows[0].get("embedding")
        if not isinstance(vector, list):
            raise EmbeddingError("Invalid embedding response shape")
        cleaned = validate_vector(vector)
        self.dimension = len(cleaned)
        return cleaned
