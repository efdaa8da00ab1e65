from __future__ import annotations

"""Stream event types and their newline-delimited JSON encoding."""

import json
from dataclasses import dataclass, field
from typing import ClassVar, Final, Union

LINE_SEP: Final[str] = "\n"
MEDIA_TYPE: Final[str] = "application/x-ndjson"


@dataclass(frozen=True)
class InitEvent:
    kind: ClassVar[str] = "init"


@dataclass(frozen=True)
class MetaEvent:
    request_id: str
    top_k: int
    min_score: float
    kb_only: bool
    question: str
    rewritten: str
    route: str
    in_domain: bool
    top_score: float
    kind: ClassVar[str] = "meta"


@dataclass(frozen=True)
class SourcesEvent:
    citations: list[dict[str, object]] = field(default_factory=list)
    kind: ClassVar[str] = "sources"


@dataclass(frozen=True)
class DeltaEvent:
    text: str
    kind: ClassVar[str] = "delta"


@dataclass(frozen=True)
class ErrorEvent:
    request_id: str
    message: str
    kind: ClassVar[str] = "error"


@dataclass(frozen=True)
class MetricsEvent:
    request_id: str
    runtime_ms: int
    route: str
    top_score: float
    kind: ClassVar[str] = "metrics"


@dataclass(frozen=True)
class DoneEvent:
    kind: ClassVar[str] = "done"


StreamEvent = Union[
    InitEvent, MetaEvent, SourcesEvent, DeltaEvent, ErrorEvent, MetricsEvent, DoneEvent
]


def event_to_dict(event: StreamEvent) -> dict[str, object]:
    """Return the wire record for an event."""
    if isinstance(event, InitEvent):
        return {"event": "init", "ok": True}
    if isinstance(event, MetaEvent):
        return {
            "event": "meta",
            "reqId": event.request_id,
            "topK": event.top_k,
            "minScore": event.min_score,
            "kbOnly": event.kb_only,
            "q_original": event.question,
            "q_rewritten": event.rewritten,
            "route": event.route,
            "domain": "in" if event.in_domain else "out",
            "topScore": event.top_score,
        }
    if isinstance(event, SourcesEvent):
        return {"event": "sources", "citations": event.citations}
    if isinstance(event, DeltaEvent):
        return {"delta": event.text}
    if isinstance(event, ErrorEvent):
        return {"event": "error", "reqId": event.request_id, "error": event.message}
    if isinstance(event, MetricsEvent):
        return {
            "event": "metrics",
            "reqId": event.request_id,
            "runtime_ms": event.runtime_ms,
            "route": event.route,
            "topScore": event.top_score,
        }
    if isinstance(event, DoneEvent):
        return {"done": True}
    raise TypeError(f"Unsupported stream event: {type(event).__name__}")


def encode_event(event: StreamEvent) -> bytes:
    """Encode one event as a single NDJSON record."""
    payload = json.dumps(event_to_dict(event), ensure_ascii=False, separators=(",", ":"))
    return (payload + LINE_SEP).encode("utf-8")


def decode_event(line: bytes | str) -> StreamEvent:
    """Parse one NDJSON record back into an event."""
    text = line.decode("utf-8") if isinstance(line, bytes) else line
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Stream record must be a JSON object")
    if data.get("done") is True:
        return DoneEvent()
    if "delta" in data:
        return DeltaEvent(text=str(data["delta"]))
    kind = data.get("event")
    if kind == "init":
        return InitEvent()
    if kind == "meta":
        return MetaEvent(
            request_id=str(data.get("reqId", "")),
            top_k=int(data.get("topK", 0)),
            min_score=float(data.get("minScore", 0.0)),
            kb_only=bool(data.get("kbOnly", False)),
            question=str(data.get("q_original", "")),
            rewritten=str(data.get("q_rewritten", "")),
            route=str(data.get("route", "")),
            in_domain=data.get("domain") == "in",
            top_score=float(data.get("topScore", 0.0)),
        )
    if kind == "sources":
        citations = data.get("citations") or []
        return SourcesEvent(citations=list(citations))
    if kind == "error":
        return ErrorEvent(request_id=str(data.get("reqId", "")), message=str(data.get("error", "")))
    if kind == "metrics":
        return MetricsEvent(
            request_id=str(data.get("reqId", "")),
            runtime_ms=int(data.get("runtime_ms", 0)),
            route=str(data.get("route", "")),
            top_score=float(data.get("topScore", 0.0)),
        )
    raise ValueError(f"Unknown stream record: {text.strip()[:80]}")
