from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from src.rag.types import SourceBoost

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    corpus_path: str = os.getenv("RAG_CORPUS_PATH", "public/embeddings.json")
    corpus_url: str | None = os.getenv("RAG_CORPUS_URL")
    corpus_timeout: float = float(os.getenv("RAG_CORPUS_TIMEOUT", "30"))
    source_text_dir: str = os.getenv("RAG_SOURCE_TEXT_DIR", "public")
    source_text_base_url: str | None = os.getenv("RAG_SOURCE_TEXT_BASE_URL")
    top_k: int = int(os.getenv("RAG_TOP_K", "8"))
    min_score: float = float(os.getenv("RAG_MIN_SCORE", "0.30"))
    excerpt_max_chars: int = int(os.getenv("RAG_EXCERPT_MAX_CHARS", "3000"))
    web_excerpt_max_chars: int = int(os.getenv("RAG_WEB_EXCERPT_MAX_CHARS", "1200"))
    history_turns: int = int(os.getenv("RAG_HISTORY_TURNS", "8"))
    domain_rules_path: str | None = os.getenv("RAG_DOMAIN_RULES_PATH")
    query_rewriter_enabled: bool = _flag("RAG_QUERY_REWRITER", "true")
    source_boosts_raw: str = os.getenv("RAG_SOURCE_BOOSTS", "")
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "hash")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "256"))
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_embedding_model: str = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    openai_chat_model: str = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
    llm_provider: str = os.getenv("RAG_LLM_PROVIDER", "openai")
    llm_temperature: float = float(os.getenv("RAG_LLM_TEMPERATURE", "0.3"))
    llm_max_tokens: int = int(os.getenv("RAG_LLM_MAX_TOKENS", "2500"))
    llm_timeout: float = float(os.getenv("RAG_LLM_TIMEOUT", "60"))
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1")
    referral_contact: str | None = os.getenv("RAG_REFERRAL_CONTACT")
    tavily_api_key: str | None = os.getenv("TAVILY_API_KEY")
    tavily_url: str = os.getenv("TAVILY_URL", "https://api.tavily.com/search")
    web_domains_raw: str = os.getenv("RAG_WEB_DOMAINS", "")
    web_confidence_threshold: float = float(os.getenv("RAG_WEB_CONFIDENCE_THRESHOLD", "0.70"))
    web_max_results: int = int(os.getenv("RAG_WEB_MAX_RESULTS", "4"))
    api_timeout: float = float(os.getenv("RAG_API_TIMEOUT", "15"))
    metrics_enabled: bool = _flag("RAG_METRICS_ENABLED", "true")
    log_level: str = os.getenv("RAG_LOG_LEVEL", "INFO")
    session_log_uri: str | None = os.getenv("RAG_SESSION_LOG_URI")

    @property
    def source_boosts(self) -> tuple[SourceBoost, ...]:
        raw = os.getenv("RAG_SOURCE_BOOSTS", self.source_boosts_raw).strip()
        boosts: list[SourceBoost] = []
        if not raw:
            return ()
        for part in raw.split(","):
            part = part.strip()
            if not part or "=" not in part:
                continue
            key, value = part.rsplit("=", 1)
            key = key.strip().lower()
            value = value.strip()
            if not key or not value:
                continue
            try:
                boosts.append(SourceBoost(pattern=key, boost=float(value)))
            except ValueError:
                continue
        return tuple(boosts)

    @property
    def web_domains(self) -> tuple[str, ...]:
        raw = os.getenv("RAG_WEB_DOMAINS", self.web_domains_raw)
        return tuple(value.strip().lower() for value in raw.split(",") if value.strip())


settings = Settings()
