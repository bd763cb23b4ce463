"""Agent Coordinator: the single entry point for every session operation.

Owns the live ConversationSession records, routes each user action to the
Orchestrator or the creation pipeline, and turns every phase or agent
state change into an event on the EventBus before the triggering call
returns.

Concurrency rules:
  - One operation at a time per session. A second call while one is in
    flight raises SessionBusyError; it is never queued.
  - One active session per user. start_session() supersedes the previous
    one: its in-flight creation is cancelled and any workflow it published
    but had not verified is removed from the engine.
  - Session records are written through a DebouncedPersister; the
    in-memory session is authoritative.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from n8n_automation_agent.agent.conversation import derive_dialogue_state, is_substantive
from n8n_automation_agent.agent.deployment import DeploymentAgent
from n8n_automation_agent.agent.designer import WorkflowDesignerAgent
from n8n_automation_agent.agent.events import (
    AgentMessageEvent,
    EventBus,
    Handler,
    PhaseChangeEvent,
    TaskCompletedEvent,
)
from n8n_automation_agent.agent.models import (
    DEPLOYMENT_ID,
    ORCHESTRATOR_ID,
    AgentState,
    AssistantReply,
    ConversationMode,
    ConversationSession,
    DeploymentResult,
    Message,
    Phase,
    PermissionCheckResult,
    Role,
)
from n8n_automation_agent.agent.orchestrator import OrchestratorAgent
from n8n_automation_agent.agent.permissions import GrantStore, InMemoryGrantStore, PermissionGate
from n8n_automation_agent.agent.phases import PhaseStateMachine, PhaseTransition
from n8n_automation_agent.agent.pipeline import PHASE_AGENTS, build_pipeline
from n8n_automation_agent.client import N8nClient, N8nSettings
from n8n_automation_agent.errors import (
    AgentError,
    ErrorCategory,
    PermissionRequiredError,
    SessionBusyError,
    SessionNotFoundError,
    UnauthenticatedError,
    ValidationError,
    categorize,
    explain,
)
from n8n_automation_agent.persistence.debounce import DebouncedPersister
from n8n_automation_agent.persistence.session_store import SessionStore
from n8n_automation_agent.reasoning import ReasoningSettings, create_engine

logger = logging.getLogger("n8n_automation_agent.agent.coordinator")

_TITLE_MAX = 60

_PAUSE_CATEGORIES = (ErrorCategory.INFEASIBLE, ErrorCategory.PERMISSION)


@dataclass
class _Runtime:
    """Coordinator-private bookkeeping for one live session."""

    session: ConversationSession
    phases: PhaseStateMachine | None = None
    task: asyncio.Task | None = None
    busy: bool = False
    cancel_requested: bool = False
    current_agent: str | None = None
    closed: bool = False
    persist: bool = True


class _SessionReporter:
    """PhaseReporter bound to one session; every call becomes an event."""

    def __init__(self, coordinator: AgentCoordinator, runtime: _Runtime) -> None:
        self._coordinator = coordinator
        self._runtime = runtime

    async def enter(self, phase: Phase, agent_id: str) -> None:
        rt = self._runtime
        if rt.phases is None:
            rt.phases = PhaseStateMachine()
        rt.current_agent = agent_id
        transition = rt.phases.advance(phase, agent_id)
        await self._coordinator._emit_phase(rt, transition)

    async def progress(self, agent_id: str, progress: int) -> None:
        rt = self._runtime
        if rt.phases is None:
            return
        try:
            rt.phases.report_progress(progress)
        except ValidationError as e:
            logger.warning("[%s] Ignoring progress report from %s: %s", rt.session.id, agent_id, e)
            return
        current = rt.phases.phase
        await self._coordinator._emit_phase(
            rt, PhaseTransition(previous=current, current=current, progress=progress, agent_id=agent_id)
        )

    async def agent_state(self, state: AgentState) -> None:
        rt = self._runtime
        rt.session.agent_states[state.agent_id] = state
        if rt.phases is not None and rt.phases.phase is not None and not rt.phases.phase.is_terminal:
            rt.phases.record_agent(state)
            rt.session.phase = rt.phases.snapshot()
        await self._coordinator.bus.publish(
            AgentMessageEvent(session_id=rt.session.id, from_agent=state.agent_id, state=state)
        )


def _session_title(text: str) -> str:
    title = " ".join(text.split())
    if len(title) > _TITLE_MAX:
        title = title[: _TITLE_MAX - 3].rstrip() + "..."
    return title or "New automation"


class AgentCoordinator:
    def __init__(
        self,
        orchestrator: OrchestratorAgent,
        designer: WorkflowDesignerAgent,
        deployment: DeploymentAgent,
        bus: EventBus | None = None,
        store: SessionStore | None = None,
        persist_debounce: float = 1.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._designer = designer
        self._deployment = deployment
        self._bus = bus or EventBus()
        self._persister = DebouncedPersister(store, persist_debounce) if store is not None else None
        self._pipeline = build_pipeline(designer, deployment)
        self._sessions: dict[str, _Runtime] = {}
        self._active_by_user: dict[str, str] = {}

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> SessionStore | None:
        return self._persister.store if self._persister else None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, event_type: str, handler: Handler) -> Handler:
        return self._bus.subscribe(event_type, handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> bool:
        return self._bus.unsubscribe(event_type, handler)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str, is_returning: bool = False) -> AssistantReply:
        """Open a new session for a user, superseding any session they already have."""
        if not user_id or not user_id.strip():
            raise UnauthenticatedError("A user identity is required to start a session")

        previous_id = self._active_by_user.get(user_id)
        if previous_id and previous_id in self._sessions:
            logger.info("Session %s superseded for user %s", previous_id, user_id)
            await self._close_runtime(self._sessions[previous_id], reason="superseded")

        session = ConversationSession(user_id=user_id)
        rt = _Runtime(session=session)
        self._sessions[session.id] = rt
        self._active_by_user[user_id] = session.id

        greeting = self._orchestrator.greet(is_returning)
        self._append(rt, greeting)
        logger.info("Session %s started for user %s (returning=%s)", session.id, user_id, is_returning)
        return self._reply(rt, greeting)

    def get_session(self, session_id: str, user_id: str | None = None) -> ConversationSession:
        return self._runtime(session_id, user_id).session

    def is_busy(self, session_id: str) -> bool:
        rt = self._sessions.get(session_id)
        return bool(rt and rt.busy)

    async def list_sessions(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent persisted sessions for a user, newest first."""
        if not user_id:
            raise UnauthenticatedError("A user identity is required to list sessions")
        if self._persister is None:
            live = [rt.session.to_record() for rt in self._sessions.values() if rt.session.user_id == user_id]
            live.sort(key=lambda r: r["created_at"], reverse=True)
            return live[:limit]
        await self._persister.flush()
        return await self._persister.store.recent(user_id, limit)

    async def delete_session(self, session_id: str, user_id: str | None = None) -> None:
        rt = self._runtime(session_id, user_id)
        rt.persist = False
        await self._close_runtime(rt, reason="deleted")
        if self._persister is not None:
            self._persister.discard(session_id)
            try:
                await self._persister.store.delete(session_id)
            except Exception:
                logger.exception("Failed to delete persisted session %s", session_id)
        logger.info("Session %s deleted", session_id)

    async def aclose(self) -> None:
        """Cancel in-flight work and flush pending writes."""
        for rt in list(self._sessions.values()):
            await self._close_runtime(rt, reason="shutdown")
        if self._persister is not None:
            await self._persister.aclose()

    # ------------------------------------------------------------------
    # Dialogue operations
    # ------------------------------------------------------------------

    async def submit(self, session_id: str, text: str, user_id: str | None = None) -> AssistantReply:
        """Handle one user message."""
        rt = self._runtime(session_id, user_id)
        with self._claim(rt):
            s = rt.session
            self._append(rt, Message(role=Role.USER, content=text))

            if s.mode is ConversationMode.CREATING:
                return await self._run_creation(rt)

            try:
                result = await self._orchestrator.converse(
                    text,
                    s.messages[:-1],
                    s.scope,
                    s.mode,
                    permission_status=s.permission_status,
                    reporter=_SessionReporter(self, rt),
                )
            except Exception as exc:
                return await self._fail_dialogue(rt, exc)

            if result.scope.to_dict() != s.scope.to_dict():
                s.permission_status = None
            s.scope = result.scope
            s.mode = result.mode
            if s.title == "New automation" and is_substantive(text):
                s.title = _session_title(text)
            self._append(rt, result.reply)
            return self._reply(rt, result.reply)

    async def modify_requirements(self, session_id: str, user_id: str | None = None) -> AssistantReply:
        rt = self._runtime(session_id, user_id)
        with self._claim(rt):
            s = rt.session
            try:
                result = self._orchestrator.modify_requirements(s.mode, s.scope)
            except ValidationError:
                reply = self._orchestrator.not_ready(s.scope)
                self._append(rt, reply)
                return self._reply(rt, reply)
            s.mode = result.mode
            self._append(rt, result.reply)
            return self._reply(rt, result.reply)

    async def refresh_permissions(self, session_id: str, user_id: str | None = None) -> AssistantReply:
        """Re-evaluate the Permission Gate, e.g. after the user granted consent."""
        rt = self._runtime(session_id, user_id)
        with self._claim(rt):
            s = rt.session
            try:
                result = await self._orchestrator.check_permissions(s.user_id, s.scope)
            except Exception as exc:
                return await self._fail_dialogue(rt, exc)
            s.permission_status = result.status
            self._append(rt, result.reply)
            return self._reply(rt, result.reply, permissions=None if result.status.granted else result.gate_output)

    async def request_creation(self, session_id: str, user_id: str | None = None) -> AssistantReply:
        """Check permissions and, when granted, run the creation pipeline to completion."""
        rt = self._runtime(session_id, user_id)
        with self._claim(rt):
            s = rt.session
            if s.mode is ConversationMode.CREATING:
                return await self._run_creation(rt)
            try:
                outcome = await self._orchestrator.request_creation(s.user_id, s.scope, s.mode)
            except ValidationError:
                reply = self._orchestrator.not_ready(s.scope)
                self._append(rt, reply)
                return self._reply(rt, reply)
            except Exception as exc:
                return await self._fail_dialogue(rt, exc)

            s.permission_status = outcome.status
            if isinstance(outcome, PermissionCheckResult):
                self._append(rt, outcome.reply)
                return self._reply(rt, outcome.reply, permissions=outcome.gate_output)

            s.mode = ConversationMode.CREATING
            self._append(rt, Message(
                role=Role.ASSISTANT,
                content="Great! I'm creating your workflow now.",
                agent_id=ORCHESTRATOR_ID,
            ))
            return await self._run_creation(rt, task_id=outcome.task_id)

    # ------------------------------------------------------------------
    # Creation pipeline
    # ------------------------------------------------------------------

    async def _run_creation(self, rt: _Runtime, task_id: str | None = None) -> AssistantReply:
        s = rt.session
        task_id = task_id or f"{s.id}-{len(s.messages)}"
        rt.phases = PhaseStateMachine()
        rt.current_agent = None
        rt.cancel_requested = False
        reporter = _SessionReporter(self, rt)
        state = {
            "session_id": s.id,
            "user_id": s.user_id,
            "scope": s.scope.copy(),
            "permission_status": s.permission_status,
        }
        logger.info("[%s] Creation task %s started", s.id, task_id)
        task = asyncio.create_task(
            self._pipeline.ainvoke(state, config={"configurable": {"reporter": reporter, "thread_id": s.id}})
        )
        rt.task = task
        try:
            final = await task
        except asyncio.CancelledError:
            await self._deployment.abandon(s.id)
            if not rt.cancel_requested:
                raise
            return await self._cancelled(rt, task_id)
        except Exception as exc:
            await self._deployment.abandon(s.id)
            return await self._fail_creation(rt, exc, task_id)
        finally:
            rt.task = None

        spec = final["spec"]
        published = final["publish"]
        await reporter.enter(Phase.COMPLETED, ORCHESTRATOR_ID)
        result = DeploymentResult(
            success=True,
            workflow_id=published.workflow_id,
            trigger_url=published.trigger_url,
            message=f"'{spec.name}' passed its test run.",
            smoke_test=final.get("smoke_test"),
            phase_durations_ms=dict(final.get("phase_durations") or {}),
        )
        s.last_spec = spec
        s.last_deployment = result
        await self._bus.publish(TaskCompletedEvent(
            session_id=s.id, agent_id=DEPLOYMENT_ID, task_id=task_id, result=result.to_dict(),
        ))
        s.mode, reply = self._orchestrator.creation_succeeded(s.mode, result)
        reply = self._with_phase(rt, reply)
        self._append(rt, reply)
        logger.info("[%s] Creation task %s completed: workflow %s", s.id, task_id, result.workflow_id)
        return self._reply(rt, reply, deployment=result)

    async def _fail_creation(self, rt: _Runtime, exc: BaseException, task_id: str) -> AssistantReply:
        s = rt.session
        category = categorize(exc)
        if isinstance(exc, AgentError):
            logger.warning("[%s] Creation task %s failed (%s): %s", s.id, task_id, category.value, exc)
        else:
            logger.exception("[%s] Creation task %s crashed", s.id, task_id, exc_info=exc)

        agent_id = rt.current_agent
        if agent_id is None:
            phase = rt.phases.phase if rt.phases else None
            agent_id = PHASE_AGENTS.get(phase, ORCHESTRATOR_ID)
        # An infeasible design or missing grant sends the user back to the dialogue without failing the phase.
        if category in _PAUSE_CATEGORIES:
            rt.phases = None
            s.phase = None
        else:
            await self._mark_failed(rt, agent_id, category)
        result = DeploymentResult(success=False, message=str(exc))
        s.last_deployment = result
        await self._bus.publish(TaskCompletedEvent(
            session_id=s.id,
            agent_id=agent_id,
            task_id=task_id,
            result={**result.to_dict(), "error_category": category.value},
        ))
        s.mode, reply = self._orchestrator.creation_failed(
            s.mode, category, detail=str(exc), explanation=explain(exc),
        )
        reply = self._with_phase(rt, reply)
        self._append(rt, reply)
        permissions = exc.gate_output if isinstance(exc, PermissionRequiredError) else None
        return self._reply(rt, reply, permissions=permissions, deployment=result)

    async def _cancelled(self, rt: _Runtime, task_id: str) -> AssistantReply:
        s = rt.session
        logger.info("[%s] Creation task %s cancelled", s.id, task_id)
        await self._mark_failed(rt, rt.current_agent or ORCHESTRATOR_ID, ErrorCategory.CANCELLED)
        s.mode, reply = self._orchestrator.creation_failed(s.mode, ErrorCategory.CANCELLED)
        reply = self._with_phase(rt, reply)
        self._append(rt, reply)
        return self._reply(rt, reply)

    async def _fail_dialogue(self, rt: _Runtime, exc: BaseException) -> AssistantReply:
        """A dialogue-time agent failure: failed event plus an error message, mode back to scoping."""
        s = rt.session
        category = categorize(exc)
        if isinstance(exc, AgentError):
            logger.warning("[%s] Orchestrator failed (%s): %s", s.id, category.value, exc)
        else:
            logger.exception("[%s] Orchestrator crashed", s.id, exc_info=exc)
        await self._bus.publish(PhaseChangeEvent(
            session_id=s.id,
            previous_phase=None,
            new_phase=Phase.FAILED,
            progress=0,
            agent_id=ORCHESTRATOR_ID,
            error_category=category,
        ))
        s.mode, reply = self._orchestrator.creation_failed(
            s.mode, category, detail=str(exc), explanation=explain(exc),
        )
        self._append(rt, reply)
        return self._reply(rt, reply)

    async def _mark_failed(self, rt: _Runtime, agent_id: str, category: ErrorCategory) -> None:
        if rt.phases is None:
            rt.phases = PhaseStateMachine()
        if rt.phases.phase is not None and rt.phases.phase.is_terminal:
            return
        transition = rt.phases.fail(agent_id, category)
        await self._emit_phase(rt, transition)

    async def _emit_phase(self, rt: _Runtime, transition: PhaseTransition) -> None:
        s = rt.session
        s.phase = rt.phases.snapshot()
        await self._bus.publish(PhaseChangeEvent(
            session_id=s.id,
            previous_phase=transition.previous,
            new_phase=transition.current,
            progress=transition.progress,
            agent_id=transition.agent_id,
            error_category=transition.error_category,
        ))
        self._schedule_persist(rt)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _runtime(self, session_id: str, user_id: str | None = None) -> _Runtime:
        rt = self._sessions.get(session_id)
        # Another user's session is reported as missing.
        if rt is None or (user_id is not None and rt.session.user_id != user_id):
            raise SessionNotFoundError(f"Session {session_id!r} not found")
        return rt

    @contextlib.contextmanager
    def _claim(self, rt: _Runtime):
        if rt.busy:
            raise SessionBusyError(f"Session {rt.session.id} is already processing a request")
        if rt.closed:
            raise SessionNotFoundError(f"Session {rt.session.id!r} not found")
        rt.busy = True
        try:
            yield rt
        finally:
            rt.busy = False

    async def _close_runtime(self, rt: _Runtime, reason: str) -> None:
        """Cancel in-flight work, remove the session from memory, keep its record."""
        s = rt.session
        rt.closed = True
        task = rt.task
        if task is not None and not task.done():
            logger.info("[%s] Cancelling in-flight creation (%s)", s.id, reason)
            rt.cancel_requested = True
            task.cancel()
            await asyncio.wait({task})
        await self._deployment.abandon(s.id)
        self._sessions.pop(s.id, None)
        if self._active_by_user.get(s.user_id) == s.id:
            del self._active_by_user[s.user_id]
        if self._persister is not None and rt.persist:
            self._schedule_persist(rt)
            await self._persister.flush(s.id)

    def _with_phase(self, rt: _Runtime, message: Message) -> Message:
        if rt.phases is None or rt.phases.phase is None:
            return message
        return Message(
            role=message.role,
            content=message.content,
            timestamp=message.timestamp,
            agent_id=message.agent_id,
            phase=rt.phases.snapshot(),
            suggestions=message.suggestions,
            is_error=message.is_error,
        )

    def _append(self, rt: _Runtime, message: Message) -> None:
        rt.session.messages.append(message)
        self._schedule_persist(rt)

    def _schedule_persist(self, rt: _Runtime) -> None:
        if self._persister is not None and rt.persist:
            self._persister.schedule(rt.session.id, rt.session.to_record)

    def _reply(
        self,
        rt: _Runtime,
        message: Message,
        permissions: dict[str, list] | None = None,
        deployment: DeploymentResult | None = None,
    ) -> AssistantReply:
        s = rt.session
        return AssistantReply(
            session_id=s.id,
            message=message,
            mode=s.mode,
            dialogue=derive_dialogue_state(s.scope, s.permission_status),
            phase=s.phase,
            permissions=permissions,
            deployment=deployment,
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_coordinator(
    n8n_settings: N8nSettings,
    reasoning_settings: ReasoningSettings,
    grants: GrantStore | None = None,
    store: SessionStore | None = None,
    bus: EventBus | None = None,
    persist_debounce: float = 1.0,
) -> tuple[AgentCoordinator, N8nClient]:
    """Create the full agent stack from settings objects.

    Returns:
        (coordinator, n8n_client)
        The client is returned separately so it can be closed on shutdown.

    Example:
        from n8n_automation_agent.client import N8nSettings
        from n8n_automation_agent.reasoning import ReasoningSettings
        from n8n_automation_agent.agent import create_coordinator

        coordinator, client = create_coordinator(
            N8nSettings.from_env(),
            ReasoningSettings.from_env(),
        )
        try:
            reply = await coordinator.start_session("user-1")
            reply = await coordinator.submit(reply.session_id, "Email me a daily summary")
        finally:
            await coordinator.aclose()
            await client.close()
    """
    engine = create_engine(reasoning_settings)
    client = N8nClient(n8n_settings)
    gate = PermissionGate(grants or InMemoryGrantStore())
    coordinator = AgentCoordinator(
        orchestrator=OrchestratorAgent(engine, gate, temperature=min(reasoning_settings.temperature, 0.1)),
        designer=WorkflowDesignerAgent(engine, temperature=reasoning_settings.temperature),
        deployment=DeploymentAgent(client),
        bus=bus,
        store=store,
        persist_debounce=persist_debounce,
    )
    return coordinator, client
