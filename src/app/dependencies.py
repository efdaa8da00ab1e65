from __future__ import annotations

import logging
from functools import lru_cache

from src.app.settings import settings
from src.metadata.sessions import SessionLogStore
from src.rag.context import (
    ContextAssembler,
    FileSystemSourceResolver,
    HttpSourceResolver,
    SourceTextResolver,
)
from src.rag.domain import DomainGate, load_rules
from src.rag.embeddings import EmbeddingConfigError, EmbeddingProvider, HashEmbedder, OpenAIEmbedder
from src.rag.llm import ChatProvider, LLMConfigError, build_chat_client, build_system_prompt
from src.rag.orchestrator import AnswerOrchestrator
from src.rag.rewriter import build_rewriter
from src.rag.web import DEFAULT_AUTHORITATIVE_DOMAINS, WebFallbackClient
from src.vectorstore.corpus import CorpusStore

logger = logging.getLogger(__name__)


@lru_cache
def get_corpus_store() -> CorpusStore:
    return CorpusStore(
        path=settings.corpus_path,
        url=settings.corpus_url,
        timeout=settings.corpus_timeout,
    )


@lru_cache
def get_domain_gate() -> DomainGate:
    return DomainGate(load_rules(settings.domain_rules_path))


@lru_cache
def get_session_log() -> SessionLogStore | None:
    if not settings.session_log_uri:
        return None
    return SessionLogStore(settings.session_log_uri)


@lru_cache
def get_orchestrator() -> AnswerOrchestrator:
    return AnswerOrchestrator(
        store=get_corpus_store(),
        embedder=build_embedder(),
        assembler=ContextAssembler(
            resolver=build_source_resolver(),
            excerpt_max_chars=settings.excerpt_max_chars,
            web_excerpt_max_chars=settings.web_excerpt_max_chars,
        ),
        gate=get_domain_gate(),
        chat=build_chat(),
        web=build_web_client(),
        rewriter=build_rewriter(
            settings.query_rewriter_enabled,
            history_window=get_domain_gate().rules.history_window,
        ),
        boosts=settings.source_boosts,
        system_prompt=build_system_prompt(settings.referral_contact),
        web_confidence_threshold=settings.web_confidence_threshold,
        web_max_results=settings.web_max_results,
        history_turns=settings.history_turns,
        session_log=get_session_log(),
    )


def reset_orchestrator_cache() -> None:
    get_orchestrator.cache_clear()
    get_corpus_store.cache_clear()
    get_domain_gate.cache_clear()
    get_session_log.cache_clear()


def build_embedder() -> EmbeddingProvider:
    provider = settings.embedding_provider.lower().strip()
    if provider == "hash":
        return HashEmbedder(dimension=settings.embedding_dimension)
    if provider == "openai":
        return OpenAIEmbedder(
            api_key=settings.openai_api_key or "",
            model=settings.openai_embedding_model,
            base_url=settings.openai_base_url,
            timeout=settings.api_timeout,
        )
    raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")


def build_chat() -> ChatProvider | None:
    try:
        return build_chat_client(
            settings.llm_provider,
            api_key_openai=settings.openai_api_key,
            openai_base_url=settings.openai_base_url,
            openai_model=settings.openai_chat_model,
            ollama_base_url=settings.ollama_base_url,
            ollama_model=settings.ollama_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout,
        )
    except LLMConfigError as exc:
        # Generation then raises LLMConfigError per request.
        logger.warning("chat_provider_unconfigured", extra={"detail": str(exc)})
        return None


def build_source_resolver() -> SourceTextResolver:
    if settings.source_text_base_url:
        return HttpSourceResolver(base_url=settings.source_text_base_url, timeout=settings.api_timeout)
    return FileSystemSourceResolver(root=settings.source_text_dir)


def build_web_client() -> WebFallbackClient:
    return WebFallbackClient(
        api_key=settings.tavily_api_key,
        url=settings.tavily_url,
        timeout=settings.api_timeout,
        authoritative_domains=settings.web_domains or DEFAULT_AUTHORITATIVE_DOMAINS,
    )
