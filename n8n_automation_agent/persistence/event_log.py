"""Session event log: Postgres-backed record of Coordinator events.

Subscribed to the EventBus with subscribe_all(event_log.record). Inserts
are fire-and-forget: errors are logged and never raised, so a failing
event log never blocks workflow creation.

Table schema:

  session_id   TEXT          conversation session id
  seq          BIGINT        nanosecond epoch (monotonically increasing, unique)
  ts           TIMESTAMPTZ   set by Postgres DEFAULT now()
  event_type   TEXT          phase_change | agent_message | task_completed
  phase        TEXT NULL     new phase (phase_change only)
  agent_id     TEXT NULL     reporting agent
  summary      TEXT NULL     ≤300 char human-readable description
  payload_json JSONB         the event's to_dict()

Usage:

    event_log = EventLog(dsn=os.environ["POSTGRES_DSN"])
    await event_log.setup()
    bus.subscribe_all(event_log.record)
    ...
    await event_log.close()
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import psycopg

from n8n_automation_agent.agent.events import (
    AgentMessageEvent,
    Event,
    PhaseChangeEvent,
    TaskCompletedEvent,
)

logger = logging.getLogger("n8n_automation_agent.persistence.event_log")

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_DDL_TABLE = """
CREATE TABLE IF NOT EXISTS session_events (
    session_id   TEXT        NOT NULL,
    seq          BIGINT      NOT NULL,
    ts           TIMESTAMPTZ NOT NULL DEFAULT now(),
    event_type   TEXT        NOT NULL,
    phase        TEXT,
    agent_id     TEXT,
    summary      TEXT,
    payload_json JSONB,
    PRIMARY KEY (session_id, seq)
)
"""

_DDL_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_session_events_session_id "
    "ON session_events (session_id)"
)

# ---------------------------------------------------------------------------
# DML
# ---------------------------------------------------------------------------

_INSERT = """
INSERT INTO session_events
    (session_id, seq, event_type, phase, agent_id, summary, payload_json)
VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
ON CONFLICT (session_id, seq) DO NOTHING
"""

_SELECT = """
SELECT seq, ts, event_type, phase, agent_id, summary, payload_json
FROM session_events
WHERE session_id = %s AND seq > %s
ORDER BY seq
LIMIT %s
"""


def summarize(event: Event) -> tuple[str | None, str | None, str]:
    """(phase, agent_id, summary) columns for one event."""
    if isinstance(event, PhaseChangeEvent):
        previous = event.previous_phase.value if event.previous_phase else "start"
        text = f"{previous} -> {event.new_phase.value} ({event.progress}%)"
        if event.error_category:
            text += f" [{event.error_category.value}]"
        return event.new_phase.value, event.agent_id, text
    if isinstance(event, AgentMessageEvent):
        state = event.state
        return None, event.from_agent, f"{state.status.value}: {state.current_task or ''}".strip()
    if isinstance(event, TaskCompletedEvent):
        ok = "succeeded" if event.result.get("success") else "failed"
        return None, event.agent_id, f"task {event.task_id} {ok}"
    return None, None, ""


# ---------------------------------------------------------------------------
# EventLog
# ---------------------------------------------------------------------------


class EventLog:
    """Writes Coordinator events to the session_events Postgres table.

    Args:
        dsn: Postgres connection string (e.g. from POSTGRES_DSN env var).
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn: Any = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Open connection and create session_events table if absent."""
        try:
            conn = await psycopg.AsyncConnection.connect(self._dsn, autocommit=False)
            async with conn.cursor() as cur:
                await cur.execute(_DDL_TABLE)
                await cur.execute(_DDL_INDEX)
            await conn.commit()
            self._conn = conn
            logger.info("EventLog ready (Postgres)")
        except Exception as exc:
            logger.error("EventLog: failed to connect to Postgres (%s); event log disabled.", exc)
            self._conn = None

    async def close(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            except Exception as exc:
                logger.debug("EventLog close error (ignored): %s", exc)
            finally:
                self._conn = None

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def record(self, event: Event) -> None:
        """EventBus handler. Errors are logged and suppressed."""
        if self._conn is None:
            return

        # Nanosecond epoch gives a monotonically increasing BIGINT that is
        # unique within a session without a DB round-trip.
        seq = time.time_ns()
        phase, agent_id, summary = summarize(event)
        if len(summary) > 300:
            summary = summary[:297] + "..."

        try:
            async with self._conn.cursor() as cur:
                await cur.execute(
                    _INSERT,
                    (event.session_id, seq, event.type, phase, agent_id, summary,
                     json.dumps(event.to_dict(), default=str)),
                )
            await self._conn.commit()
        except Exception as exc:
            logger.error("EventLog: insert failed [%s/%s]: %s", event.session_id, event.type, exc)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_events(self, session_id: str, after_seq: int = 0, limit: int = 100) -> list[dict[str, Any]]:
        """Return events for session_id with seq > after_seq, ordered by seq.

        Returns an empty list if the event log is unavailable.
        """
        if self._conn is None:
            return []
        try:
            async with self._conn.cursor() as cur:
                await cur.execute(_SELECT, (session_id, after_seq, limit))
                cols = [d.name for d in cur.description]
                rows = await cur.fetchall()
            return [dict(zip(cols, row)) for row in rows]
        except Exception as exc:
            logger.error("EventLog.get_events failed: %s", exc)
            return []
