"""Creation pipeline as a LangGraph StateGraph.

    START → understanding → designing → building → deploying → testing → END

Each node is wrapped so that entering it announces the phase through the
run's PhaseReporter (taken from config["configurable"]["reporter"]) and its
duration is recorded with MetricsCollector. A node that raises aborts the
run; ainvoke() re-raises the original exception to the Coordinator, which
owns the failed transition. The terminal completed phase is also entered
by the Coordinator, once the run has returned.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from n8n_automation_agent.agent.deployment import DeploymentAgent
from n8n_automation_agent.agent.designer import WorkflowDesignerAgent
from n8n_automation_agent.agent.metrics import MetricsCollector
from n8n_automation_agent.agent.models import (
    DEPLOYMENT_ID,
    DESIGNER_ID,
    ORCHESTRATOR_ID,
    AgentState,
    AgentStatus,
    Phase,
)
from n8n_automation_agent.agent.phases import NullReporter, PhaseReporter
from n8n_automation_agent.agent.state import PipelineState
from n8n_automation_agent.errors import PermissionRequiredError, ValidationError

logger = logging.getLogger("n8n_automation_agent.agent.pipeline")

NodeFn = Callable[[PipelineState, PhaseReporter], Awaitable[dict[str, Any]]]

# Which agent owns each pipeline phase.
PHASE_AGENTS: dict[Phase, str] = {
    Phase.UNDERSTANDING: ORCHESTRATOR_ID,
    Phase.DESIGNING: DESIGNER_ID,
    Phase.BUILDING: DESIGNER_ID,
    Phase.DEPLOYING: DEPLOYMENT_ID,
    Phase.TESTING: DEPLOYMENT_ID,
    Phase.COMPLETED: ORCHESTRATOR_ID,
}


def _reporter_from(config: RunnableConfig | None) -> PhaseReporter:
    return ((config or {}).get("configurable") or {}).get("reporter") or NullReporter()


def _phase_node(phase: Phase, fn: NodeFn):
    agent_id = PHASE_AGENTS[phase]

    async def node(state: PipelineState, config: RunnableConfig) -> dict[str, Any]:
        reporter = _reporter_from(config)
        await reporter.enter(phase, agent_id)
        collector = MetricsCollector(phase.value)
        try:
            async with collector:
                update = await fn(state, reporter)
        finally:
            if collector.result is not None:
                logger.debug(
                    "[%s] %s finished in %.0f ms (failed=%s)",
                    state.get("session_id"), phase.value, collector.result.duration_ms, collector.result.failed,
                )
        update = dict(update or {})
        update["phase_durations"] = {phase.value: collector.result.duration_ms}
        return update

    node.__name__ = phase.value
    return node


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_understanding_node():
    async def understanding(state: PipelineState, reporter: PhaseReporter) -> dict:
        """Re-check the preconditions of a creation attempt."""
        scope = state["scope"]
        await reporter.agent_state(AgentState(
            agent_id=ORCHESTRATOR_ID,
            status=AgentStatus.WORKING,
            progress=10,
            current_task="Confirming requirements",
        ))
        if not scope.complete:
            raise ValidationError(
                "Requirements are incomplete", detail={"missing": scope.missing_fields()}
            )
        status = state.get("permission_status")
        if status is None or not status.granted:
            raise PermissionRequiredError(
                "Permissions must be granted before publishing",
                gate_output=status.gate_output() if status else None,
            )
        await reporter.agent_state(AgentState(
            agent_id=ORCHESTRATOR_ID,
            status=AgentStatus.WAITING,
            progress=100,
            current_task="Handed off to the workflow designer",
        ))
        return {}

    return understanding


def _make_designing_node(designer: WorkflowDesignerAgent):
    async def designing(state: PipelineState, reporter: PhaseReporter) -> dict:
        spec = await designer.design(state["scope"], reporter=reporter)
        return {"spec": spec}

    return designing


def _make_building_node(designer: WorkflowDesignerAgent):
    async def building(state: PipelineState, reporter: PhaseReporter) -> dict:
        await reporter.agent_state(AgentState(
            agent_id=DESIGNER_ID,
            status=AgentStatus.WORKING,
            progress=60,
            current_task="Validating workflow structure",
        ))
        designer.validate(state["spec"], state["scope"])
        await reporter.progress(DESIGNER_ID, 70)
        return {}

    return building


def _make_deploying_node(deployment: DeploymentAgent):
    async def deploying(state: PipelineState, reporter: PhaseReporter) -> dict:
        published = await deployment.publish(state["spec"], session_id=state.get("session_id"), reporter=reporter)
        return {"publish": published}

    return deploying


def _make_testing_node(deployment: DeploymentAgent):
    async def testing(state: PipelineState, reporter: PhaseReporter) -> dict:
        result = await deployment.verify(
            state["publish"].workflow_id,
            state["spec"],
            session_id=state.get("session_id"),
            reporter=reporter,
        )
        return {"smoke_test": result}

    return testing


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


def build_pipeline(designer: WorkflowDesignerAgent, deployment: DeploymentAgent):
    """Construct and compile the creation pipeline graph.

    The graph holds no checkpointer: a failed or cancelled attempt is never
    resumed, the next attempt starts again at understanding.

    Returns:
        Compiled LangGraph graph; run it with
        ``await graph.ainvoke(state, config={"configurable": {"reporter": r}})``.
    """
    builder = StateGraph(PipelineState)

    builder.add_node(Phase.UNDERSTANDING.value, _phase_node(Phase.UNDERSTANDING, _make_understanding_node()))
    builder.add_node(Phase.DESIGNING.value, _phase_node(Phase.DESIGNING, _make_designing_node(designer)))
    builder.add_node(Phase.BUILDING.value, _phase_node(Phase.BUILDING, _make_building_node(designer)))
    builder.add_node(Phase.DEPLOYING.value, _phase_node(Phase.DEPLOYING, _make_deploying_node(deployment)))
    builder.add_node(Phase.TESTING.value, _phase_node(Phase.TESTING, _make_testing_node(deployment)))

    builder.add_edge(START, Phase.UNDERSTANDING.value)
    builder.add_edge(Phase.UNDERSTANDING.value, Phase.DESIGNING.value)
    builder.add_edge(Phase.DESIGNING.value, Phase.BUILDING.value)
    builder.add_edge(Phase.BUILDING.value, Phase.DEPLOYING.value)
    builder.add_edge(Phase.DEPLOYING.value, Phase.TESTING.value)
    builder.add_edge(Phase.TESTING.value, END)

    return builder.compile()
