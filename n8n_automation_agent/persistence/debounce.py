"""Debounced session writes.

Every mutation of a session calls schedule(); only the last call within
the debounce window reaches the store. The record is built at write time,
so the store always receives the latest state. Write failures are logged
and never raised into the dialogue.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from n8n_automation_agent.persistence.session_store import SessionStore

logger = logging.getLogger("n8n_automation_agent.persistence.debounce")

RecordFactory = Callable[[], dict[str, Any]]


class DebouncedPersister:
    def __init__(self, store: SessionStore, delay: float = 1.0) -> None:
        self._store = store
        self._delay = delay
        self._timers: dict[str, asyncio.Task] = {}
        self._pending: dict[str, RecordFactory] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    def schedule(self, session_id: str, make_record: RecordFactory) -> None:
        self._pending[session_id] = make_record
        timer = self._timers.pop(session_id, None)
        if timer is not None and not timer.done():
            timer.cancel()
        self._timers[session_id] = asyncio.create_task(self._write_later(session_id))

    async def _write_later(self, session_id: str) -> None:
        await asyncio.sleep(self._delay)
        self._timers.pop(session_id, None)
        await self._write(session_id)

    async def _write(self, session_id: str) -> None:
        make_record = self._pending.pop(session_id, None)
        if make_record is None:
            return
        try:
            await self._store.upsert(make_record())
            logger.debug("Persisted session %s", session_id)
        except Exception:
            logger.exception("Failed to persist session %s", session_id)

    def discard(self, session_id: str) -> None:
        """Drop a pending write (the session is being deleted)."""
        self._pending.pop(session_id, None)
        timer = self._timers.pop(session_id, None)
        if timer is not None and not timer.done():
            timer.cancel()

    async def flush(self, session_id: str | None = None) -> None:
        """Write pending records now instead of waiting for the debounce."""
        ids = [session_id] if session_id else list(self._pending)
        for sid in ids:
            timer = self._timers.pop(sid, None)
            if timer is not None and not timer.done():
                timer.cancel()
            await self._write(sid)

    async def aclose(self) -> None:
        await self.flush()
