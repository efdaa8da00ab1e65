from __future__ import annotations

"""Chat session summaries persisted after each answered request."""

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task[None]] = set()


class SessionLogError(RuntimeError):
    """Raised when session log storage fails."""
    pass


@dataclass(frozen=True)
class SessionRecord:
    """Summary of one question/answer exchange."""
    session_id: str
    request_id: str
    question: str
    answer: str
    route: str
    history: list[dict[str, str]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    user_agent: str | None = None
    ip_hash: str | None = None


class SessionLogStore:
    """Persist session summaries to a SQL database."""
    def __init__(self, connection_uri: str) -> None:
        """Initialize the session store and ensure tables exist."""
        try:
            self._engine = create_engine(connection_uri)
        except (SQLAlchemyError, ValueError) as exc:
            raise SessionLogError(f"Invalid session log URI: {exc}") from exc
        self._metadata = MetaData()
        self._table = Table(
            "chat_sessions",
            self._metadata,
            Column("id", String(36), primary_key=True),
            Column("session_id", String(64), nullable=False),
            Column("request_id", String(64), nullable=False),
            Column("question", Text, nullable=False),
            Column("answer", Text, nullable=False),
            Column("route", String(32), nullable=False),
            Column("history", Text, nullable=True),
            Column("metadata", Text, nullable=True),
            Column("user_agent", Text, nullable=True),
            Column("ip_hash", String(16), nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        self._metadata.create_all(self._engine)

    def record(self, record: SessionRecord) -> None:
        """Insert a session summary row."""
        payload = {
            "id": str(uuid.uuid4()),
            "session_id": record.session_id,
            "request_id": record.request_id,
            "question": record.question,
            "answer": record.answer,
            "route": record.route,
            "history": json.dumps(record.history, ensure_ascii=False),
            "metadata": json.dumps(record.metadata, ensure_ascii=False, default=str),
            "user_agent": record.user_agent,
            "ip_hash": record.ip_hash,
            "created_at": datetime.now(timezone.utc),
        }
        with self._engine.begin() as conn:
            conn.execute(self._table.insert().values(**payload))


def hash_client_ip(ip: str | None) -> str:
    """Hash a client address into a short token."""
    digest = hashlib.sha256((ip or "unknown").encode("utf-8")).hexdigest()
    return digest[:16]


async def _write(store: SessionLogStore, record: SessionRecord) -> None:
    try:
        await asyncio.to_thread(store.record, record)
    except Exception as exc:
        logger.warning(
            "session_log_failed",
            extra={"request_id": record.request_id, "detail": str(exc)[:200]},
        )


def schedule_session_log(
    store: SessionLogStore | None, record: SessionRecord
) -> asyncio.Task[None] | None:
    """Write the record in the background; failures are logged only."""
    if store is None:
        return None
    task = asyncio.create_task(_write(store, record))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
