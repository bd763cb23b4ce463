"""Persistence layer: conversation session records and the event log.

Exports:
  SessionStore              upsert / recent / get / delete interface
  InMemorySessionStore      process-local store (default, tests)
  PostgresSessionStore      psycopg-backed store used when POSTGRES_DSN is set
  DebouncedPersister        coalesces session writes
  EventLog(dsn)             session_events insert/query helper
"""

from n8n_automation_agent.persistence.debounce import DebouncedPersister
from n8n_automation_agent.persistence.event_log import EventLog
from n8n_automation_agent.persistence.session_store import (
    InMemorySessionStore,
    PostgresSessionStore,
    SessionStore,
)

__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "PostgresSessionStore",
    "DebouncedPersister",
    "EventLog",
]
