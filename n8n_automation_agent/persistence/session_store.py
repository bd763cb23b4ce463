"""Conversation session records: upsert by id, read most recent per user.

Record shape (one row per session):

  id                TEXT PRIMARY KEY
  user_id           TEXT
  title             TEXT
  messages          JSONB     serialized Message list
  status            TEXT      conversation mode at last write
  workflow_summary  JSONB     scope, workflow summary, last deployment
  created_at        TIMESTAMPTZ
  updated_at        TIMESTAMPTZ   set by Postgres on every upsert

Two implementations share the SessionStore interface: InMemorySessionStore
for development and tests, PostgresSessionStore (psycopg 3, async) for
deployments that set POSTGRES_DSN.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import psycopg

logger = logging.getLogger("n8n_automation_agent.persistence.session_store")


class SessionStore(ABC):
    @abstractmethod
    async def upsert(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def recent(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent sessions for a user, newest first."""
        ...

    @abstractmethod
    async def get(self, session_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    async def setup(self) -> None:
        return None

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def upsert(self, record: dict[str, Any]) -> None:
        self._records[record["id"]] = json.loads(json.dumps(record, default=str))

    async def recent(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        rows = [r for r in self._records.values() if r["user_id"] == user_id]
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return rows[:limit]

    async def get(self, session_id: str) -> dict[str, Any] | None:
        return self._records.get(session_id)

    async def delete(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------

_DDL_TABLE = """
CREATE TABLE IF NOT EXISTS conversation_sessions (
    id               TEXT        PRIMARY KEY,
    user_id          TEXT        NOT NULL,
    title            TEXT        NOT NULL,
    messages         JSONB       NOT NULL DEFAULT '[]'::jsonb,
    status           TEXT        NOT NULL,
    workflow_summary JSONB,
    created_at       TIMESTAMPTZ NOT NULL,
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_DDL_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_conversation_sessions_user_created "
    "ON conversation_sessions (user_id, created_at DESC)"
)

_UPSERT = """
INSERT INTO conversation_sessions
    (id, user_id, title, messages, status, workflow_summary, created_at)
VALUES (%s, %s, %s, %s::jsonb, %s, %s::jsonb, %s)
ON CONFLICT (id) DO UPDATE SET
    title = EXCLUDED.title,
    messages = EXCLUDED.messages,
    status = EXCLUDED.status,
    workflow_summary = EXCLUDED.workflow_summary,
    updated_at = now()
"""

_COLUMNS = "id, user_id, title, messages, status, workflow_summary, created_at"

_SELECT_RECENT = f"""
SELECT {_COLUMNS}
FROM conversation_sessions
WHERE user_id = %s
ORDER BY created_at DESC
LIMIT %s
"""

_SELECT_ONE = f"SELECT {_COLUMNS} FROM conversation_sessions WHERE id = %s"

_DELETE = "DELETE FROM conversation_sessions WHERE id = %s"


def _row_to_record(row: tuple) -> dict[str, Any]:
    sid, user_id, title, messages, status, summary, created_at = row
    return {
        "id": sid,
        "user_id": user_id,
        "title": title,
        "messages": messages if isinstance(messages, list) else json.loads(messages or "[]"),
        "status": status,
        "workflow_summary": summary if (summary is None or isinstance(summary, dict)) else json.loads(summary),
        "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
    }


class PostgresSessionStore(SessionStore):
    """Session records in Postgres.

    Writes run on the persistence debounce, never on the request path, so
    a failed write is logged and the in-memory session stays authoritative.

    Args:
        dsn: Postgres connection string (e.g. from POSTGRES_DSN env var).
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn: Any = None

    async def setup(self) -> None:
        """Open the connection and create the table if absent. Raises on failure."""
        conn = await psycopg.AsyncConnection.connect(self._dsn, autocommit=False)
        async with conn.cursor() as cur:
            await cur.execute(_DDL_TABLE)
            await cur.execute(_DDL_INDEX)
        await conn.commit()
        self._conn = conn
        logger.info("PostgresSessionStore ready")

    async def close(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            except Exception as exc:
                logger.debug("PostgresSessionStore close error (ignored): %s", exc)
            finally:
                self._conn = None

    def _require_conn(self) -> Any:
        if self._conn is None:
            raise RuntimeError("PostgresSessionStore.setup() has not been awaited")
        return self._conn

    async def upsert(self, record: dict[str, Any]) -> None:
        conn = self._require_conn()
        try:
            async with conn.cursor() as cur:
                await cur.execute(_UPSERT, (
                    record["id"],
                    record["user_id"],
                    record.get("title") or "",
                    json.dumps(record.get("messages") or [], default=str),
                    record.get("status") or "",
                    json.dumps(record.get("workflow_summary"), default=str),
                    record.get("created_at"),
                ))
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    async def recent(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute(_SELECT_RECENT, (user_id, limit))
            rows = await cur.fetchall()
        await conn.commit()
        return [_row_to_record(r) for r in rows]

    async def get(self, session_id: str) -> dict[str, Any] | None:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute(_SELECT_ONE, (session_id,))
            row = await cur.fetchone()
        await conn.commit()
        return _row_to_record(row) if row else None

    async def delete(self, session_id: str) -> bool:
        conn = self._require_conn()
        async with conn.cursor() as cur:
            await cur.execute(_DELETE, (session_id,))
            deleted = cur.rowcount > 0
        await conn.commit()
        return deleted
