from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("TAVILY_API_KEY", None)
os.environ.pop("RAG_SESSION_LOG_URI", None)
os.environ.setdefault("EMBEDDING_PROVIDER", "hash")
os.environ.setdefault("EMBEDDING_DIMENSION", "3")
os.environ.setdefault("RAG_LLM_PROVIDER", "openai")
os.environ.setdefault("RAG_CORPUS_PATH", str(PROJECT_ROOT / "missing-embeddings.json"))
os.environ.setdefault("RAG_METRICS_ENABLED", "true")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
