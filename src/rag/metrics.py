from __future__ import annotations

from prometheus_client import Counter, Histogram

ROUTE_COUNT = Counter(
    "rag_route_total",
    "Answered requests by evidence route",
    ["route", "mode"],
)
TOP_SCORE = Histogram(
    "rag_top_score",
    "Best corpus similarity score per admitted request",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)
LLM_LATENCY = Histogram(
    "rag_llm_duration_seconds",
    "Answer generation duration in seconds",
    ["mode"],
)
STREAM_CANCELLED = Counter(
    "rag_stream_cancelled_total",
    "Streams stopped because the consumer went away",
)
