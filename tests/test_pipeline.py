"""Creation pipeline graph.

Verifies:
  1. a clean run enters every phase in order, once each
  2. the final state carries spec, publish result, smoke test and per-phase timings
  3. missing permissions stop the run in understanding with PermissionRequiredError
  4. an incomplete scope stops the run in understanding with ValidationError
  5. a smoke-test failure propagates the original SmokeTestFailedError
  6. a run with no reporter in config uses the null reporter
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from n8n_automation_agent.agent.deployment import DeploymentAgent
from n8n_automation_agent.agent.designer import WorkflowDesignerAgent
from n8n_automation_agent.agent.models import (
    DEPLOYMENT_ID,
    DESIGNER_ID,
    ORCHESTRATOR_ID,
    PermissionRequirement,
    PermissionStatus,
    Phase,
    ScopeData,
)
from n8n_automation_agent.agent.pipeline import build_pipeline
from n8n_automation_agent.client import N8nSettings
from n8n_automation_agent.errors import PermissionRequiredError, SmokeTestFailedError, ValidationError

GRANTED = PermissionStatus(requirements=(PermissionRequirement("slack", ("chat:write",)),))


class RecordingReporter:
    def __init__(self) -> None:
        self.entered: list[tuple[Phase, str]] = []
        self.progress_calls: list[tuple[str, int]] = []
        self.states: list = []

    async def enter(self, phase, agent_id):
        self.entered.append((phase, agent_id))

    async def progress(self, agent_id, progress):
        self.progress_calls.append((agent_id, progress))

    async def agent_state(self, state):
        self.states.append(state)


def _client(execution: dict | None = None) -> MagicMock:
    client = MagicMock()
    client.settings = N8nSettings(api_key="k")
    client.create_workflow = AsyncMock(return_value={"id": "wf-1"})
    client.find_workflows = AsyncMock(return_value=[])
    client.delete_workflow = AsyncMock(return_value=True)
    client.execute_workflow = AsyncMock(return_value=execution if execution is not None else {
        "id": "exec-1",
        "data": {"resultData": {"runData": {"Slack": [{"data": {"main": [[{"json": {"ok": True}}]]}}]}}},
    })
    return client


def _graph(client):
    return build_pipeline(WorkflowDesignerAgent(), DeploymentAgent(client, retry_delay=0))


def _state(**overrides) -> dict:
    state = {
        "session_id": "s1",
        "user_id": "u1",
        "scope": ScopeData(trigger="new form submission", actions=["notify"], output="Slack message"),
        "permission_status": GRANTED,
    }
    state.update(overrides)
    return state


@pytest.mark.asyncio
async def test_clean_run_enters_phases_in_order():
    reporter = RecordingReporter()
    final = await _graph(_client()).ainvoke(_state(), config={"configurable": {"reporter": reporter}})

    assert reporter.entered == [
        (Phase.UNDERSTANDING, ORCHESTRATOR_ID),
        (Phase.DESIGNING, DESIGNER_ID),
        (Phase.BUILDING, DESIGNER_ID),
        (Phase.DEPLOYING, DEPLOYMENT_ID),
        (Phase.TESTING, DEPLOYMENT_ID),
    ]
    assert final["publish"].workflow_id == "wf-1"
    assert final["smoke_test"].passed
    assert [n.type for n in final["spec"].nodes] == ["n8n-nodes-base.webhook", "n8n-nodes-base.slack"]
    assert set(final["phase_durations"]) == {"understanding", "designing", "building", "deploying", "testing"}


@pytest.mark.asyncio
async def test_progress_reports_stay_within_their_phase():
    reporter = RecordingReporter()
    await _graph(_client()).ainvoke(_state(), config={"configurable": {"reporter": reporter}})
    assert (DESIGNER_ID, 70) in reporter.progress_calls
    assert (DEPLOYMENT_ID, 85) in reporter.progress_calls


@pytest.mark.asyncio
async def test_missing_permissions_stop_in_understanding():
    reporter = RecordingReporter()
    missing = PermissionStatus(requirements=(PermissionRequirement("slack", ("chat:write",), ("chat:write",)),))
    client = _client()
    with pytest.raises(PermissionRequiredError) as exc:
        await _graph(client).ainvoke(
            _state(permission_status=missing), config={"configurable": {"reporter": reporter}},
        )
    assert exc.value.gate_output["oauthServices"] == [["slack", ["chat:write"]]]
    assert reporter.entered == [(Phase.UNDERSTANDING, ORCHESTRATOR_ID)]
    client.create_workflow.assert_not_awaited()


@pytest.mark.asyncio
async def test_incomplete_scope_stops_in_understanding():
    with pytest.raises(ValidationError):
        await _graph(_client()).ainvoke(_state(scope=ScopeData(trigger="webhook")))


@pytest.mark.asyncio
async def test_smoke_test_failure_propagates():
    client = _client(execution={"id": "exec-2", "data": {"resultData": {"runData": {}}}})
    reporter = RecordingReporter()
    with pytest.raises(SmokeTestFailedError):
        await _graph(client).ainvoke(_state(), config={"configurable": {"reporter": reporter}})
    assert reporter.entered[-1] == (Phase.TESTING, DEPLOYMENT_ID)
    client.delete_workflow.assert_awaited_once_with("wf-1")
