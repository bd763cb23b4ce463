"""Data model shared by the Coordinator and the three agents.

Value objects are frozen dataclasses: a Message, an AgentState or a
WorkflowSpec is never edited after it is handed to another component.
ConversationSession and ScopeData are the two mutable records; the first
is owned by the Coordinator, the second is only changed by the
Orchestrator's ScopeTracker.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from n8n_automation_agent.errors import ErrorCategory, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationMode(str, Enum):
    GREETING = "greeting"
    SCOPING = "scoping"
    VALIDATING = "validating"
    CREATING = "creating"
    COMPLETED = "completed"


class Phase(str, Enum):
    UNDERSTANDING = "understanding"
    DESIGNING = "designing"
    BUILDING = "building"
    DEPLOYING = "deploying"
    TESTING = "testing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: str | Phase) -> Phase:
        """Strict parse. Unknown values are an error, never coerced."""
        if isinstance(value, Phase):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown phase: {value!r}") from None

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED)


# Linear order of the creation pipeline; FAILED sits outside it.
PHASE_ORDER: tuple[Phase, ...] = (
    Phase.UNDERSTANDING,
    Phase.DESIGNING,
    Phase.BUILDING,
    Phase.DEPLOYING,
    Phase.TESTING,
    Phase.COMPLETED,
)

PHASE_PROGRESS: dict[Phase, int] = {
    Phase.UNDERSTANDING: 10,
    Phase.DESIGNING: 30,
    Phase.BUILDING: 60,
    Phase.DEPLOYING: 80,
    Phase.TESTING: 90,
    Phase.COMPLETED: 100,
}


class AgentStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    WORKING = "working"
    WAITING = "waiting"
    ERROR = "error"
    COMPLETED = "completed"


ORCHESTRATOR_ID = "orchestrator"
DESIGNER_ID = "workflow-designer"
DEPLOYMENT_ID = "deployment"


# ---------------------------------------------------------------------------
# Agent and phase snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentState:
    """One agent's status for one session. Replaced wholesale on every update."""

    agent_id: str
    status: AgentStatus = AgentStatus.IDLE
    progress: int = 0
    current_task: str | None = None
    updated_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "progress": self.progress,
            "current_task": self.current_task,
            "updated_at": self.updated_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class PhaseSnapshot:
    phase: Phase
    progress: int
    agents: dict[str, AgentState] = field(default_factory=dict)
    error_category: ErrorCategory | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "progress": self.progress,
            "agents": {k: v.to_dict() for k, v in self.agents.items()},
            "error_category": self.error_category.value if self.error_category else None,
        }


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """One transcript entry. Immutable once appended."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    agent_id: str | None = None
    phase: PhaseSnapshot | None = None
    suggestions: tuple[str, ...] = ()
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "agent_id": self.agent_id,
            "phase": self.phase.to_dict() if self.phase else None,
            "suggestions": list(self.suggestions),
            "is_error": self.is_error,
        }


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------


@dataclass
class ScopeData:
    """Structured requirements accumulated from the dialogue."""

    trigger: str = ""
    actions: list[str] = field(default_factory=list)
    output: str = ""
    data_sources: list[str] = field(default_factory=list)
    conditions: list[str] = field(default_factory=list)
    frequency: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.trigger.strip()) and bool(self.actions) and bool(self.output.strip())

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        if not self.trigger.strip():
            missing.append("trigger")
        if not self.actions:
            missing.append("actions")
        if not self.output.strip():
            missing.append("output")
        return missing

    def copy(self) -> ScopeData:
        return replace(
            self,
            actions=list(self.actions),
            data_sources=list(self.data_sources),
            conditions=list(self.conditions),
        )

    def text(self) -> str:
        """All scope fields joined, lowercased; used for keyword matching."""
        parts = [self.trigger, *self.actions, self.output, *self.data_sources, *self.conditions, self.frequency]
        return " ".join(p for p in parts if p).lower()

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "actions": list(self.actions),
            "output": self.output,
            "dataSources": list(self.data_sources),
            "conditions": list(self.conditions),
            "frequency": self.frequency,
            "complete": self.complete,
        }


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionRequirement:
    service: str
    required_scopes: tuple[str, ...]
    missing_scopes: tuple[str, ...] = ()

    @property
    def satisfied(self) -> bool:
        return not self.missing_scopes


@dataclass(frozen=True)
class PermissionStatus:
    requirements: tuple[PermissionRequirement, ...] = ()
    centralized_apis: tuple[str, ...] = ()

    @property
    def granted(self) -> bool:
        return all(r.satisfied for r in self.requirements)

    def gate_output(self) -> dict[str, list]:
        """Payload handed to the consent UI: only services still missing scopes."""
        return {
            "oauthServices": [
                [r.service, list(r.missing_scopes)] for r in self.requirements if not r.satisfied
            ],
            "centralizedAPIs": list(self.centralized_apis),
        }


class ScopeStatus(str, Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"


class PermissionState(str, Enum):
    NOT_EVALUATED = "not_evaluated"
    MISSING = "missing"
    GRANTED = "granted"


@dataclass(frozen=True)
class DialogueState:
    """Derived dialogue flags; every field is always present."""

    scope_status: ScopeStatus
    permission_state: PermissionState
    missing_fields: tuple[str, ...]
    can_proceed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_status": self.scope_status.value,
            "permission_state": self.permission_state.value,
            "missing_fields": list(self.missing_fields),
            "can_proceed": self.can_proceed,
        }


# ---------------------------------------------------------------------------
# Workflow specification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowNode:
    id: str
    name: str
    type: str
    type_version: float = 1
    position: tuple[int, int] = (240, 300)
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_n8n(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "typeVersion": self.type_version,
            "position": list(self.position),
            "parameters": dict(self.parameters),
        }


@dataclass(frozen=True)
class Connection:
    target: str
    input_index: int = 0


@dataclass(frozen=True)
class WorkflowSpec:
    """An n8n-native node graph. Never mutated; a retry builds a new one."""

    name: str
    nodes: tuple[WorkflowNode, ...]
    connections: dict[str, tuple[Connection, ...]] = field(default_factory=dict)
    attempt_id: str = field(default_factory=lambda: uuid4().hex[:8])

    def node_names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def node_by_name(self, name: str) -> WorkflowNode | None:
        return next((n for n in self.nodes if n.name == name), None)

    def entry_points(self) -> list[WorkflowNode]:
        """Nodes with no incoming connection."""
        targets = {c.target for conns in self.connections.values() for c in conns}
        return [n for n in self.nodes if n.name not in targets]

    def terminal_nodes(self) -> list[WorkflowNode]:
        """Nodes with no outgoing connection."""
        return [n for n in self.nodes if not self.connections.get(n.name)]

    def to_n8n_payload(self) -> dict[str, Any]:
        """REST body for POST /workflows. "active" is deliberately absent."""
        return {
            "name": self.name,
            "nodes": [n.to_n8n() for n in self.nodes],
            "connections": {
                source: {
                    "main": [[
                        {"node": c.target, "type": "main", "index": c.input_index}
                        for c in conns
                    ]]
                }
                for source, conns in self.connections.items()
                if conns
            },
            "settings": {"executionOrder": "v1"},
        }

    @classmethod
    def from_n8n(cls, payload: dict[str, Any]) -> WorkflowSpec:
        """Rebuild a spec from a workflow fetched back from n8n."""
        nodes = tuple(
            WorkflowNode(
                id=str(n.get("id") or n.get("name")),
                name=n["name"],
                type=n["type"],
                type_version=n.get("typeVersion", 1),
                position=tuple(n.get("position") or (0, 0)),
                parameters=dict(n.get("parameters") or {}),
            )
            for n in payload.get("nodes", [])
        )
        connections: dict[str, tuple[Connection, ...]] = {}
        for source, outputs in (payload.get("connections") or {}).items():
            flat = [
                Connection(target=c["node"], input_index=c.get("index", 0))
                for slot in outputs.get("main", [])
                for c in (slot or [])
            ]
            if flat:
                connections[source] = tuple(flat)
        return cls(name=payload.get("name", ""), nodes=nodes, connections=connections)

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "node_count": len(self.nodes),
            "nodes": [{"name": n.name, "type": n.type} for n in self.nodes],
            "trigger": self.entry_points()[0].type if self.entry_points() else None,
            "terminal_nodes": [n.name for n in self.terminal_nodes()],
        }


# ---------------------------------------------------------------------------
# Deployment results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SmokeTestResult:
    passed: bool
    diagnostics: tuple[str, ...] = ()
    execution_id: str | None = None
    terminal_node: str | None = None
    output_keys: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "diagnostics": list(self.diagnostics),
            "execution_id": self.execution_id,
            "terminal_node": self.terminal_node,
            "output_keys": list(self.output_keys),
        }


@dataclass(frozen=True)
class PublishResult:
    workflow_id: str
    trigger_url: str | None = None
    adopted: bool = False


@dataclass(frozen=True)
class DeploymentResult:
    success: bool
    workflow_id: str | None = None
    trigger_url: str | None = None
    message: str = ""
    smoke_test: SmokeTestResult | None = None
    phase_durations_ms: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "workflow_id": self.workflow_id,
            "trigger_url": self.trigger_url,
            "message": self.message,
            "smoke_test": self.smoke_test.to_dict() if self.smoke_test else None,
            "phase_durations_ms": dict(self.phase_durations_ms),
        }


# ---------------------------------------------------------------------------
# Agent results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConverseResult:
    reply: Message
    mode: ConversationMode
    scope: ScopeData
    can_proceed: bool


@dataclass(frozen=True)
class PermissionCheckResult:
    """Creation is paused until the listed scopes are granted."""

    status: PermissionStatus
    reply: Message

    @property
    def gate_output(self) -> dict[str, list]:
        return self.status.gate_output()


@dataclass(frozen=True)
class CreationStarted:
    status: PermissionStatus
    task_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(frozen=True)
class AssistantReply:
    """What the Coordinator returns to its caller after every operation."""

    session_id: str
    message: Message
    mode: ConversationMode
    dialogue: DialogueState
    phase: PhaseSnapshot | None = None
    permissions: dict[str, list] | None = None
    deployment: DeploymentResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message": self.message.to_dict(),
            "mode": self.mode.value,
            "dialogue": self.dialogue.to_dict(),
            "phase": self.phase.to_dict() if self.phase else None,
            "permissions": self.permissions,
            "deployment": self.deployment.to_dict() if self.deployment else None,
        }


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class ConversationSession:
    """The live dialogue record. Owned by the Coordinator."""

    user_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    title: str = "New automation"
    messages: list[Message] = field(default_factory=list)
    mode: ConversationMode = ConversationMode.GREETING
    scope: ScopeData = field(default_factory=ScopeData)
    permission_status: PermissionStatus | None = None
    created_at: datetime = field(default_factory=utcnow)
    phase: PhaseSnapshot | None = None
    agent_states: dict[str, AgentState] = field(default_factory=dict)
    last_deployment: DeploymentResult | None = None
    last_spec: WorkflowSpec | None = None

    def to_record(self) -> dict[str, Any]:
        """Row shape for the session store."""
        summary: dict[str, Any] = {"scope": self.scope.to_dict()}
        if self.last_spec is not None:
            summary["workflow"] = self.last_spec.summary()
        if self.last_deployment is not None:
            summary["deployment"] = self.last_deployment.to_dict()
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "status": self.mode.value,
            "workflow_summary": summary,
            "created_at": self.created_at.isoformat(),
        }
