"""Agent Coordinator end-to-end tests.

The n8n client and the reasoning engine are mocks; everything between them
(the orchestrator, the state machines, the LangGraph pipeline, the designer
draft, the deployment agent, the event bus and the session store) is real.

Verifies:
  1.  form submission → Slack runs every phase and ends completed
  2.  events for a run are all published before request_creation returns
  3.  missing Slack scope pauses creation and returns the gate output
  4.  granting and refreshing permissions unblocks creation
  5.  a failed smoke test rolls back, fails the testing phase, returns to scoping
  6.  after a failure the scope is kept and a retry publishes a new attempt
  7.  a second call while one is in flight raises SessionBusyError
  8.  deleting a session mid-run cancels it and removes the unverified workflow
  9.  starting a new session supersedes the old one
  10. a crashing LLM call during scoping emits a failed phase and keeps the session usable
  11. sessions are isolated per user and require a user id
  12. session records reach the store
  13. an engine error on create explains the engine, not a test run
  14. an infeasible design mid-run leaves no in-progress phase on the session
  15. deleting a session while create is in flight removes the workflow by name
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from n8n_automation_agent.agent.coordinator import AgentCoordinator
from n8n_automation_agent.agent.deployment import DeploymentAgent
from n8n_automation_agent.agent.designer import WorkflowDesignerAgent
from n8n_automation_agent.agent.events import PhaseChangeEvent, TaskCompletedEvent
from n8n_automation_agent.agent.models import (
    ConversationMode,
    PermissionState,
    Phase,
)
from n8n_automation_agent.agent.orchestrator import OrchestratorAgent
from n8n_automation_agent.agent.permissions import OAUTH_SCOPES, InMemoryGrantStore, PermissionGate
from n8n_automation_agent.client import N8nSettings
from n8n_automation_agent.errors import (
    ErrorCategory,
    SessionBusyError,
    SessionNotFoundError,
    UnauthenticatedError,
    WorkflowEngineError,
)
from n8n_automation_agent.persistence import InMemorySessionStore
from n8n_automation_agent.reasoning import EngineResponse

FORM_TO_SLACK = {"trigger": "new form submission", "actions": ["notify"], "output": "Slack message"}
SLACK_WRITE = OAUTH_SCOPES["slack"]["chat_write"]

PASSING_RUN = {
    "id": "exec-1",
    "data": {"resultData": {"runData": {"Slack": [{"data": {"main": [[{"json": {"ok": True}}]]}}]}}},
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class Harness:
    def __init__(
        self,
        grant_slack: bool = True,
        store: InMemorySessionStore | None = None,
        designer_engine: MagicMock | None = None,
    ) -> None:
        self.engine = MagicMock()
        self.engine.complete = AsyncMock(return_value=EngineResponse(content=json.dumps(FORM_TO_SLACK)))

        self.client = MagicMock()
        self.client.settings = N8nSettings(api_key="k")
        self.client.create_workflow = AsyncMock(return_value={"id": "wf-1"})
        self.client.find_workflows = AsyncMock(return_value=[])
        self.client.execute_workflow = AsyncMock(return_value=PASSING_RUN)
        self.client.delete_workflow = AsyncMock(return_value=True)

        self.grants = InMemoryGrantStore()
        if grant_slack:
            self.grants.grant("u1", "slack", [SLACK_WRITE])

        self.coordinator = AgentCoordinator(
            orchestrator=OrchestratorAgent(self.engine, PermissionGate(self.grants)),
            designer=WorkflowDesignerAgent(designer_engine),
            deployment=DeploymentAgent(self.client, retry_delay=0),
            store=store,
            persist_debounce=0,
        )
        self.events: list = []
        self.coordinator.bus.subscribe_all(self.events.append)

    async def scoped_session(self, user_id: str = "u1") -> str:
        """Open a session and describe the form → Slack automation in one turn."""
        reply = await self.coordinator.start_session(user_id)
        reply = await self.coordinator.submit(
            reply.session_id, "When a new form is submitted, notify the team in Slack", user_id,
        )
        assert reply.mode is ConversationMode.VALIDATING
        return reply.session_id

    def phase_changes(self) -> list[PhaseChangeEvent]:
        """Phase transitions only, without same-phase progress ticks."""
        return [
            e for e in self.events
            if isinstance(e, PhaseChangeEvent) and e.previous_phase is not e.new_phase
        ]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestCreation:
    @pytest.mark.asyncio
    async def test_form_to_slack_completes(self):
        h = Harness()
        sid = await h.scoped_session()

        reply = await h.coordinator.request_creation(sid, "u1")

        assert reply.mode is ConversationMode.COMPLETED
        assert reply.deployment.success
        assert reply.deployment.workflow_id == "wf-1"
        assert reply.deployment.trigger_url.startswith("http://localhost:5678/webhook/")
        assert reply.phase.phase is Phase.COMPLETED
        assert reply.phase.progress == 100
        assert [e.new_phase for e in h.phase_changes()] == [
            Phase.UNDERSTANDING,
            Phase.DESIGNING,
            Phase.BUILDING,
            Phase.DEPLOYING,
            Phase.TESTING,
            Phase.COMPLETED,
        ]
        session = h.coordinator.get_session(sid, "u1")
        assert session.last_spec is not None
        assert set(reply.deployment.phase_durations_ms) == {
            "understanding", "designing", "building", "deploying", "testing",
        }

    @pytest.mark.asyncio
    async def test_events_published_before_return(self):
        h = Harness()
        sid = await h.scoped_session()
        before = len(h.events)
        await h.coordinator.request_creation(sid, "u1")

        run_events = h.events[before:]
        completed = [e for e in run_events if isinstance(e, TaskCompletedEvent)]
        assert len(completed) == 1
        assert completed[0].result["success"] is True
        # Progress never decreases across the run.
        progress = [e.progress for e in run_events if isinstance(e, PhaseChangeEvent)]
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_create_before_scope_complete_asks_next_question(self):
        h = Harness()
        reply = await h.coordinator.start_session("u1")
        reply = await h.coordinator.request_creation(reply.session_id, "u1")
        assert reply.mode is ConversationMode.GREETING
        assert reply.message.content.startswith("Let's finish describing the automation first.")
        h.client.create_workflow.assert_not_awaited()


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class TestPermissions:
    @pytest.mark.asyncio
    async def test_missing_scope_pauses_creation(self):
        h = Harness(grant_slack=False)
        sid = await h.scoped_session()

        reply = await h.coordinator.request_creation(sid, "u1")

        assert reply.mode is ConversationMode.VALIDATING
        assert reply.permissions["oauthServices"] == [["slack", [SLACK_WRITE]]]
        assert reply.dialogue.permission_state is PermissionState.MISSING
        assert not reply.dialogue.can_proceed
        h.client.create_workflow.assert_not_awaited()
        assert h.phase_changes() == []

    @pytest.mark.asyncio
    async def test_grant_then_refresh_unblocks(self):
        h = Harness(grant_slack=False)
        sid = await h.scoped_session()
        await h.coordinator.request_creation(sid, "u1")

        h.grants.grant("u1", "slack", [SLACK_WRITE])
        refreshed = await h.coordinator.refresh_permissions(sid, "u1")
        assert refreshed.permissions is None
        assert refreshed.dialogue.permission_state is PermissionState.GRANTED

        reply = await h.coordinator.request_creation(sid, "u1")
        assert reply.mode is ConversationMode.COMPLETED


# ---------------------------------------------------------------------------
# Failure and retry
# ---------------------------------------------------------------------------


class TestFailure:
    @pytest.mark.asyncio
    async def test_smoke_test_failure_rolls_back(self):
        h = Harness()
        h.client.execute_workflow.return_value = {"id": "exec-2", "data": {"resultData": {"runData": {}}}}
        sid = await h.scoped_session()

        reply = await h.coordinator.request_creation(sid, "u1")

        assert reply.mode is ConversationMode.SCOPING
        assert reply.message.is_error
        assert not reply.deployment.success
        h.client.delete_workflow.assert_awaited_once_with("wf-1")
        failed = h.phase_changes()[-1]
        assert failed.previous_phase is Phase.TESTING
        assert failed.new_phase is Phase.FAILED
        assert failed.agent_id == "deployment"
        assert failed.error_category is ErrorCategory.RUNTIME
        completed = [e for e in h.events if isinstance(e, TaskCompletedEvent)]
        assert completed[-1].result["error_category"] == "runtime"

    @pytest.mark.asyncio
    async def test_retry_after_failure_keeps_scope_and_uses_new_attempt(self):
        h = Harness()
        h.client.execute_workflow.return_value = {"id": "exec-2", "data": {"resultData": {"runData": {}}}}
        sid = await h.scoped_session()
        await h.coordinator.request_creation(sid, "u1")
        first_name = h.client.create_workflow.await_args.args[0]["name"]

        session = h.coordinator.get_session(sid, "u1")
        assert session.scope.to_dict()["trigger"] == "new form submission"

        h.engine.complete.return_value = EngineResponse(content="{}")
        h.client.execute_workflow.return_value = PASSING_RUN
        reply = await h.coordinator.submit(sid, "Let's try that again", "u1")
        assert reply.mode is ConversationMode.VALIDATING

        reply = await h.coordinator.request_creation(sid, "u1")
        assert reply.mode is ConversationMode.COMPLETED
        second_name = h.client.create_workflow.await_args.args[0]["name"]
        assert second_name != first_name

    @pytest.mark.asyncio
    async def test_engine_error_on_create_explains_the_engine(self):
        h = Harness()
        h.client.create_workflow.side_effect = WorkflowEngineError("n8n failed", status_code=502)
        sid = await h.scoped_session()

        reply = await h.coordinator.request_creation(sid, "u1")

        assert reply.mode is ConversationMode.SCOPING
        assert reply.message.is_error
        assert reply.message.content.startswith("The workflow engine had a problem")
        assert "test run failed" not in reply.message.content
        h.client.delete_workflow.assert_not_awaited()
        assert h.phase_changes()[-1].error_category is ErrorCategory.RUNTIME

    @pytest.mark.asyncio
    async def test_infeasible_design_leaves_no_phase_behind(self):
        designer_engine = MagicMock()
        designer_engine.complete = AsyncMock(
            return_value=EngineResponse(content='{"infeasible": "no node can send a fax"}'),
        )
        h = Harness(designer_engine=designer_engine)
        sid = await h.scoped_session()

        reply = await h.coordinator.request_creation(sid, "u1")

        assert reply.mode is ConversationMode.SCOPING
        assert not reply.message.is_error
        assert reply.phase is None
        assert reply.message.phase is None
        assert h.coordinator.get_session(sid, "u1").phase is None
        assert Phase.FAILED not in [e.new_phase for e in h.phase_changes()]
        h.client.create_workflow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_crash_during_scoping(self):
        h = Harness()
        reply = await h.coordinator.start_session("u1")
        sid = reply.session_id
        h.engine.complete.side_effect = RuntimeError("provider exploded")

        reply = await h.coordinator.submit(sid, "Automate my invoices please", "u1")

        assert reply.message.is_error
        assert reply.mode is ConversationMode.SCOPING
        failed = [e for e in h.events if isinstance(e, PhaseChangeEvent) and e.new_phase is Phase.FAILED]
        assert failed[-1].previous_phase is None
        assert failed[-1].error_category is ErrorCategory.INTERNAL
        assert not h.coordinator.is_busy(sid)


# ---------------------------------------------------------------------------
# Concurrency and lifecycle
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_call_is_rejected(self):
        h = Harness()
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_create(payload):
            started.set()
            await release.wait()
            return {"id": "wf-1"}

        h.client.create_workflow.side_effect = slow_create
        sid = await h.scoped_session()

        task = asyncio.create_task(h.coordinator.request_creation(sid, "u1"))
        await started.wait()
        assert h.coordinator.is_busy(sid)
        with pytest.raises(SessionBusyError):
            await h.coordinator.submit(sid, "are you done yet?", "u1")

        release.set()
        reply = await task
        assert reply.mode is ConversationMode.COMPLETED
        assert not h.coordinator.is_busy(sid)

    @pytest.mark.asyncio
    async def test_delete_mid_run_cancels_and_rolls_back(self):
        h = Harness()
        started = asyncio.Event()

        async def hanging_execute(workflow_id):
            started.set()
            await asyncio.Event().wait()

        h.client.execute_workflow.side_effect = hanging_execute
        sid = await h.scoped_session()

        task = asyncio.create_task(h.coordinator.request_creation(sid, "u1"))
        await started.wait()
        await h.coordinator.delete_session(sid, "u1")
        reply = await task

        h.client.delete_workflow.assert_awaited_once_with("wf-1")
        assert reply.mode is ConversationMode.SCOPING
        assert reply.phase.phase is Phase.FAILED
        assert reply.phase.error_category is ErrorCategory.CANCELLED
        with pytest.raises(SessionNotFoundError):
            h.coordinator.get_session(sid, "u1")

    @pytest.mark.asyncio
    async def test_delete_during_create_removes_workflow_by_name(self):
        """The create call never answers; cleanup finds the workflow by its attempt name."""
        h = Harness()
        started = asyncio.Event()
        pending: dict = {}

        async def hanging_create(payload):
            pending["name"] = payload["name"]
            started.set()
            await asyncio.Event().wait()

        h.client.create_workflow.side_effect = hanging_create
        h.client.find_workflows.return_value = [{"id": "wf-9"}]
        sid = await h.scoped_session()

        task = asyncio.create_task(h.coordinator.request_creation(sid, "u1"))
        await started.wait()
        await h.coordinator.delete_session(sid, "u1")
        reply = await task

        h.client.find_workflows.assert_awaited_once_with(pending["name"])
        h.client.delete_workflow.assert_awaited_once_with("wf-9")
        assert reply.phase.error_category is ErrorCategory.CANCELLED

    @pytest.mark.asyncio
    async def test_new_session_supersedes_old(self):
        h = Harness()
        old = await h.scoped_session()
        new = (await h.coordinator.start_session("u1")).session_id
        assert new != old
        with pytest.raises(SessionNotFoundError):
            await h.coordinator.submit(old, "hello?", "u1")
        assert h.coordinator.get_session(new, "u1").mode is ConversationMode.GREETING


class TestIsolation:
    @pytest.mark.asyncio
    async def test_user_id_required(self):
        with pytest.raises(UnauthenticatedError):
            await Harness().coordinator.start_session("")

    @pytest.mark.asyncio
    async def test_other_users_session_is_not_found(self):
        h = Harness()
        sid = await h.scoped_session("u1")
        with pytest.raises(SessionNotFoundError):
            h.coordinator.get_session(sid, "u2")
        with pytest.raises(SessionNotFoundError):
            await h.coordinator.request_creation(sid, "u2")

    @pytest.mark.asyncio
    async def test_sessions_for_different_users_coexist(self):
        h = Harness()
        a = await h.scoped_session("u1")
        b = (await h.coordinator.start_session("u2")).session_id
        assert h.coordinator.get_session(a, "u1").mode is ConversationMode.VALIDATING
        assert h.coordinator.get_session(b, "u2").mode is ConversationMode.GREETING


class TestPersistence:
    @pytest.mark.asyncio
    async def test_records_reach_store(self):
        store = InMemorySessionStore()
        h = Harness(store=store)
        sid = await h.scoped_session()
        await h.coordinator.request_creation(sid, "u1")

        sessions = await h.coordinator.list_sessions("u1")
        assert [s["id"] for s in sessions] == [sid]
        record = sessions[0]
        assert record["status"] == "completed"
        assert record["title"] == "When a new form is submitted, notify the team in Slack"
        assert record["workflow_summary"]["deployment"]["workflow_id"] == "wf-1"
        await h.coordinator.aclose()

    @pytest.mark.asyncio
    async def test_delete_removes_record(self):
        store = InMemorySessionStore()
        h = Harness(store=store)
        sid = await h.scoped_session()
        await h.coordinator.list_sessions("u1")
        assert await store.get(sid) is not None

        await h.coordinator.delete_session(sid, "u1")
        assert await store.get(sid) is None
