"""Deployment Agent: publish, smoke-test and roll back workflows on n8n.

publish()     POST /workflows without the read-only "active" field. A
              TransientNetworkError is retried once after a fixed delay;
              before the retry the engine is searched for a workflow with
              the spec's (attempt-unique) name, and an existing one is
              adopted instead of creating a duplicate. ValidationError is
              never retried.
smoke_test()  POST /workflows/{id}/execute and check the terminal node's
              run data for its expected output keys.
verify()      smoke_test() plus automatic rollback when it fails.
rollback()    DELETE /workflows/{id}; a missing workflow is not an error.
abandon()     Cancellation cleanup for a session: removes any workflow that
              was published but not yet verified.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from n8n_automation_agent.agent import catalog
from n8n_automation_agent.agent.models import (
    DEPLOYMENT_ID,
    AgentState,
    AgentStatus,
    PublishResult,
    SmokeTestResult,
    WorkflowSpec,
    utcnow,
)
from n8n_automation_agent.agent.phases import NullReporter, PhaseReporter
from n8n_automation_agent.client import N8nClient
from n8n_automation_agent.errors import (
    AgentError,
    SmokeTestFailedError,
    TransientNetworkError,
    ValidationError,
)

logger = logging.getLogger("n8n_automation_agent.agent.deployment")

_HISTORY_LIMIT = 50


class DeploymentAgent:
    agent_id = DEPLOYMENT_ID

    def __init__(
        self,
        client: N8nClient,
        retry_delay: float | None = None,
        keep_on_failure: bool = False,
    ) -> None:
        self._client = client
        self._retry_delay = client.settings.publish_retry_delay if retry_delay is None else retry_delay
        self._keep_on_failure = keep_on_failure
        # session_id -> workflow id published but not yet verified
        self._unverified: dict[str, str] = {}
        # session_id -> name of a create call that may still be in flight
        self._publishing: dict[str, str] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=_HISTORY_LIMIT)

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    def _record(self, action: str, workflow_id: str | None, success: bool, message: str = "") -> None:
        self._history.append({
            "action": action,
            "workflow_id": workflow_id,
            "success": success,
            "message": message,
            "timestamp": utcnow().isoformat(),
        })

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(
        self,
        spec: WorkflowSpec,
        session_id: str | None = None,
        reporter: PhaseReporter | None = None,
    ) -> PublishResult:
        reporter = reporter or NullReporter()
        await reporter.agent_state(AgentState(
            agent_id=self.agent_id,
            status=AgentStatus.WORKING,
            progress=80,
            current_task="Publishing workflow",
            metadata={"name": spec.name},
        ))
        payload = spec.to_n8n_payload()
        if session_id:
            self._publishing[session_id] = spec.name
        try:
            adopted = False
            try:
                created = await self._client.create_workflow(payload)
            except TransientNetworkError as first:
                logger.warning("Publish of %r failed (%s); retrying in %.1fs", spec.name, first, self._retry_delay)
                await asyncio.sleep(self._retry_delay)
                try:
                    existing = await self._client.find_workflows(spec.name)
                except (TransientNetworkError, ValidationError) as lookup_error:
                    logger.warning("Lookup of %r before retry failed (%s); creating again", spec.name, lookup_error)
                    existing = []
                if existing:
                    created, adopted = existing[0], True
                    logger.info("Adopting workflow %s created by the lost first attempt", created.get("id"))
                else:
                    created = await self._client.create_workflow(payload)
        except AgentError as e:
            if session_id:
                self._publishing.pop(session_id, None)
            self._record("publish", None, False, str(e))
            raise
        # A cancelled create leaves the name registered so abandon() can find it.
        if session_id:
            self._publishing.pop(session_id, None)

        workflow_id = str(created["id"])
        if session_id:
            self._unverified[session_id] = workflow_id
        result = PublishResult(workflow_id=workflow_id, trigger_url=self.trigger_url(spec), adopted=adopted)
        self._record("publish", workflow_id, True, "adopted" if adopted else "created")
        await reporter.progress(self.agent_id, 85)
        return result

    def trigger_url(self, spec: WorkflowSpec) -> str | None:
        """Public URL of a webhook-triggered workflow."""
        entries = spec.entry_points()
        if not entries or entries[0].type != "n8n-nodes-base.webhook":
            return None
        path = entries[0].parameters.get("path")
        if not path:
            return None
        return f"{self._client.settings.webhook_url_root}/webhook/{path}"

    # ------------------------------------------------------------------
    # Smoke test
    # ------------------------------------------------------------------

    async def smoke_test(self, workflow_id: str, spec: WorkflowSpec) -> SmokeTestResult:
        terminals = spec.terminal_nodes()
        terminal = terminals[-1] if terminals else None
        try:
            execution = await self._client.execute_workflow(workflow_id)
        except AgentError as e:
            return SmokeTestResult(
                passed=False,
                diagnostics=(f"Test execution could not be started: {e}",),
                terminal_node=terminal.name if terminal else None,
            )
        return _inspect_execution(execution, spec, terminal)

    async def verify(
        self,
        workflow_id: str,
        spec: WorkflowSpec,
        session_id: str | None = None,
        reporter: PhaseReporter | None = None,
    ) -> SmokeTestResult:
        """Smoke-test a fresh workflow; roll it back and raise if the test fails."""
        reporter = reporter or NullReporter()
        await reporter.agent_state(AgentState(
            agent_id=self.agent_id,
            status=AgentStatus.WORKING,
            progress=90,
            current_task="Running test execution",
            metadata={"workflow_id": workflow_id},
        ))
        result = await self.smoke_test(workflow_id, spec)
        self._record("smoke_test", workflow_id, result.passed, "; ".join(result.diagnostics))
        if result.passed:
            if session_id:
                self._unverified.pop(session_id, None)
            await reporter.agent_state(AgentState(
                agent_id=self.agent_id,
                status=AgentStatus.COMPLETED,
                progress=100,
                current_task="Workflow deployed",
                metadata={"workflow_id": workflow_id},
            ))
            return result

        logger.warning("Smoke test failed for %s: %s", workflow_id, "; ".join(result.diagnostics))
        if not self._keep_on_failure:
            await self.rollback(workflow_id)
        if session_id:
            self._unverified.pop(session_id, None)
        raise SmokeTestFailedError(
            "Test execution failed: " + "; ".join(result.diagnostics),
            detail=result.to_dict(),
        )

    async def fetch_spec(self, workflow_id: str) -> WorkflowSpec | None:
        """Read a published workflow back from the engine."""
        payload = await self._client.get_workflow(workflow_id)
        return WorkflowSpec.from_n8n(payload) if payload else None

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, workflow_id: str) -> bool:
        """Delete a workflow. Returns False when it was already gone."""
        deleted = await self._client.delete_workflow(workflow_id)
        self._record("rollback", workflow_id, True, "deleted" if deleted else "already deleted")
        return deleted

    async def abandon(self, session_id: str) -> None:
        """Remove anything a cancelled run left on the engine. Never raises."""
        workflow_id = self._unverified.pop(session_id, None)
        pending_name = self._publishing.pop(session_id, None)
        try:
            if workflow_id:
                logger.info("Rolling back unverified workflow %s for cancelled session %s", workflow_id, session_id)
                await self.rollback(workflow_id)
            elif pending_name:
                for wf in await self._client.find_workflows(pending_name):
                    logger.info("Rolling back workflow %s from interrupted publish", wf.get("id"))
                    await self.rollback(str(wf["id"]))
        except AgentError as e:
            logger.error("Cleanup after cancellation failed for session %s: %s", session_id, e)


def _inspect_execution(execution: dict[str, Any], spec: WorkflowSpec, terminal) -> SmokeTestResult:
    raw_id = execution.get("id") or execution.get("executionId")
    execution_id = str(raw_id) if raw_id is not None else None
    data = execution.get("data") if isinstance(execution.get("data"), dict) else execution
    result_data = data.get("resultData") or {}
    run_data: dict[str, Any] = result_data.get("runData") or {}
    diagnostics: list[str] = []

    error = result_data.get("error")
    if error:
        diagnostics.append(f"Execution error: {error.get('message', error) if isinstance(error, dict) else error}")
    if terminal is None:
        diagnostics.append("Workflow has no terminal node")
        return SmokeTestResult(passed=False, diagnostics=tuple(diagnostics), execution_id=execution_id)

    runs = run_data.get(terminal.name) or []
    if not runs:
        diagnostics.append(f"Terminal node {terminal.name!r} did not run")
        return SmokeTestResult(
            passed=False, diagnostics=tuple(diagnostics), execution_id=execution_id, terminal_node=terminal.name,
        )

    last = runs[-1]
    if last.get("error"):
        err = last["error"]
        diagnostics.append(f"{terminal.name}: {err.get('message', err) if isinstance(err, dict) else err}")

    items = [
        item.get("json", {})
        for slot in ((last.get("data") or {}).get("main") or [])
        for item in (slot or [])
        if isinstance(item, dict)
    ]
    keys = sorted({k for item in items for k in item})
    if not items:
        diagnostics.append(f"Terminal node {terminal.name!r} produced no output items")

    node_type = catalog.get(terminal.type)
    expected = node_type.output_keys if node_type else ()
    missing = [k for k in expected if k not in keys]
    if missing:
        diagnostics.append(f"Terminal node {terminal.name!r} output is missing keys: {', '.join(missing)}")

    return SmokeTestResult(
        passed=not diagnostics,
        diagnostics=tuple(diagnostics),
        execution_id=execution_id,
        terminal_node=terminal.name,
        output_keys=tuple(keys),
    )
