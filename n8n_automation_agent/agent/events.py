"""Coordinator events and the subscription registry that delivers them.

Three event kinds form a closed union; each carries only its own fields:

  phase_change    PhaseChangeEvent
  agent_message   AgentMessageEvent   (payload = {"state": AgentState})
  task_completed  TaskCompletedEvent

EventBus is an explicit, injectable observer list. publish() awaits every
handler in subscription order. A handler that raises is logged and the
next handler still runs.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Literal, Union

from n8n_automation_agent.agent.models import AgentState, Phase
from n8n_automation_agent.errors import ErrorCategory

logger = logging.getLogger("n8n_automation_agent.agent.events")

EventType = Literal["phase_change", "agent_message", "task_completed"]
EVENT_TYPES: tuple[str, ...] = ("phase_change", "agent_message", "task_completed")


@dataclass(frozen=True)
class PhaseChangeEvent:
    type: ClassVar[str] = "phase_change"

    session_id: str
    previous_phase: Phase | None
    new_phase: Phase
    progress: int
    agent_id: str | None = None
    error_category: ErrorCategory | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "previousPhase": self.previous_phase.value if self.previous_phase else None,
            "newPhase": self.new_phase.value,
            "progress": self.progress,
            "agentId": self.agent_id,
            "errorCategory": self.error_category.value if self.error_category else None,
        }


@dataclass(frozen=True)
class AgentMessageEvent:
    type: ClassVar[str] = "agent_message"

    session_id: str
    from_agent: str
    state: AgentState

    @property
    def payload(self) -> dict[str, AgentState]:
        return {"state": self.state}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "fromAgent": self.from_agent,
            "payload": {"state": self.state.to_dict()},
        }


@dataclass(frozen=True)
class TaskCompletedEvent:
    type: ClassVar[str] = "task_completed"

    session_id: str
    agent_id: str
    task_id: str
    result: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "agentId": self.agent_id,
            "taskId": self.task_id,
            "result": self.result,
        }


Event = Union[PhaseChangeEvent, AgentMessageEvent, TaskCompletedEvent]
Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> Handler:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type!r}. Valid: {', '.join(EVENT_TYPES)}")
        self._handlers[event_type].append(handler)
        return handler

    def unsubscribe(self, event_type: str, handler: Handler) -> bool:
        handlers = self._handlers.get(event_type, [])
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        return True

    def subscribe_all(self, handler: Handler) -> Handler:
        for event_type in EVENT_TYPES:
            self.subscribe(event_type, handler)
        return handler

    def unsubscribe_all(self, handler: Handler) -> None:
        for event_type in EVENT_TYPES:
            self.unsubscribe(event_type, handler)

    async def publish(self, event: Event) -> None:
        # Snapshot so a handler that unsubscribes mid-delivery does not skip its neighbour.
        for handler in list(self._handlers.get(event.type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event.type)
