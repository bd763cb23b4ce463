"""State schema for the creation pipeline graph.

PipelineState is the shared memory passed between the pipeline's LangGraph
nodes. Each node receives the full state and returns a partial dict with
only the keys it wants to update.

phase_durations uses a merge reducer so every node can add its own timing
entry; all other fields are last-writer-wins.
"""

from __future__ import annotations

from typing import Annotated, TypedDict

from n8n_automation_agent.agent.models import (
    PermissionStatus,
    PublishResult,
    ScopeData,
    SmokeTestResult,
    WorkflowSpec,
)


def _merge_durations(existing: dict[str, float] | None, incoming: dict[str, float] | None) -> dict[str, float]:
    """Merge per-phase timings. LangGraph calls this on every {"phase_durations": {...}} update."""
    if not incoming:
        return existing or {}
    merged = dict(existing or {})
    merged.update(incoming)
    return merged


class PipelineState(TypedDict, total=False):
    """One creation attempt.

    Inputs (set by the Coordinator before ainvoke):
        session_id, user_id, scope, permission_status

    Outputs (set by nodes):
        spec         WorkflowSpec produced by the designer (designing)
        publish      PublishResult from the deployment agent (deploying)
        smoke_test   SmokeTestResult of the verification run (testing)
    """

    session_id: str
    user_id: str
    scope: ScopeData
    permission_status: PermissionStatus
    spec: WorkflowSpec
    publish: PublishResult
    smoke_test: SmokeTestResult
    phase_durations: Annotated[dict[str, float], _merge_durations]
