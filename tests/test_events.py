"""EventBus delivery rules and event wire shapes."""

from __future__ import annotations

import logging

import pytest

from n8n_automation_agent.agent.events import (
    EVENT_TYPES,
    AgentMessageEvent,
    EventBus,
    PhaseChangeEvent,
    TaskCompletedEvent,
)
from n8n_automation_agent.agent.models import AgentState, AgentStatus, Phase
from n8n_automation_agent.errors import ErrorCategory


def _phase_event(**kw) -> PhaseChangeEvent:
    defaults = dict(session_id="s1", previous_phase=None, new_phase=Phase.UNDERSTANDING, progress=10)
    defaults.update(kw)
    return PhaseChangeEvent(**defaults)


class TestSubscription:
    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            EventBus().subscribe("phase_changed", lambda e: None)

    def test_unsubscribe_unknown_handler(self):
        assert EventBus().unsubscribe("phase_change", lambda e: None) is False

    @pytest.mark.asyncio
    async def test_subscribe_all_receives_every_type(self):
        bus = EventBus()
        seen: list[str] = []
        bus.subscribe_all(lambda e: seen.append(e.type))
        await bus.publish(_phase_event())
        await bus.publish(AgentMessageEvent(session_id="s1", from_agent="orchestrator", state=AgentState("orchestrator")))
        await bus.publish(TaskCompletedEvent(session_id="s1", agent_id="deployment", task_id="t1"))
        assert seen == list(EVENT_TYPES)


class TestPublish:
    @pytest.mark.asyncio
    async def test_handlers_run_in_subscription_order(self):
        bus = EventBus()
        order: list[str] = []

        async def first(event):
            order.append("first")

        def second(event):
            order.append("second")

        bus.subscribe("phase_change", first)
        bus.subscribe("phase_change", second)
        await bus.publish(_phase_event())
        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_the_next(self, caplog):
        bus = EventBus()
        delivered: list[PhaseChangeEvent] = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe("phase_change", broken)
        bus.subscribe("phase_change", delivered.append)
        with caplog.at_level(logging.ERROR, logger="n8n_automation_agent.agent.events"):
            await bus.publish(_phase_event())
        assert len(delivered) == 1
        assert "subscriber bug" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe_during_delivery_keeps_neighbour(self):
        bus = EventBus()
        seen: list[str] = []

        def once(event):
            seen.append("once")
            bus.unsubscribe("phase_change", once)

        bus.subscribe("phase_change", once)
        bus.subscribe("phase_change", lambda e: seen.append("other"))
        await bus.publish(_phase_event())
        await bus.publish(_phase_event())
        assert seen == ["once", "other", "other"]

    @pytest.mark.asyncio
    async def test_other_types_not_delivered(self):
        bus = EventBus()
        seen: list = []
        bus.subscribe("task_completed", seen.append)
        await bus.publish(_phase_event())
        assert seen == []


class TestWireShape:
    def test_phase_change(self):
        d = _phase_event(
            previous_phase=Phase.DESIGNING,
            new_phase=Phase.FAILED,
            progress=45,
            agent_id="workflow-designer",
            error_category=ErrorCategory.VALIDATION,
        ).to_dict()
        assert d == {
            "type": "phase_change",
            "sessionId": "s1",
            "previousPhase": "designing",
            "newPhase": "failed",
            "progress": 45,
            "agentId": "workflow-designer",
            "errorCategory": "validation",
        }

    def test_agent_message_payload_carries_state(self):
        state = AgentState("deployment", status=AgentStatus.WORKING, progress=80)
        event = AgentMessageEvent(session_id="s1", from_agent="deployment", state=state)
        assert event.payload == {"state": state}
        assert event.to_dict()["payload"]["state"]["status"] == "working"
