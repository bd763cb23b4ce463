"""Multi-agent workflow automation assistant.

Entry points:
    create_coordinator(n8n_settings, reasoning_settings, ...) → (AgentCoordinator, N8nClient)
    AgentCoordinator   session operations, event subscription

Agents:
    OrchestratorAgent         scoping dialogue, permission checks, user-facing replies
    WorkflowDesignerAgent     ScopeData → WorkflowSpec
    DeploymentAgent           publish, smoke test, rollback on n8n

Supporting pieces:
    ConversationStateMachine, PhaseStateMachine   legal mode / phase transitions
    PermissionGate, InMemoryGrantStore            required OAuth scopes
    EventBus and the three event types            phase_change, agent_message, task_completed
    build_pipeline                                LangGraph creation pipeline
"""

from n8n_automation_agent.agent.conversation import ConversationStateMachine, derive_dialogue_state
from n8n_automation_agent.agent.coordinator import AgentCoordinator, create_coordinator
from n8n_automation_agent.agent.deployment import DeploymentAgent
from n8n_automation_agent.agent.designer import WorkflowDesignerAgent
from n8n_automation_agent.agent.events import (
    AgentMessageEvent,
    EventBus,
    PhaseChangeEvent,
    TaskCompletedEvent,
)
from n8n_automation_agent.agent.models import (
    AssistantReply,
    ConversationMode,
    ConversationSession,
    Message,
    Phase,
    ScopeData,
    WorkflowSpec,
)
from n8n_automation_agent.agent.orchestrator import OrchestratorAgent
from n8n_automation_agent.agent.permissions import GrantStore, InMemoryGrantStore, PermissionGate
from n8n_automation_agent.agent.phases import PhaseStateMachine
from n8n_automation_agent.agent.pipeline import build_pipeline

__all__ = [
    # Entry points
    "AgentCoordinator",
    "create_coordinator",
    "build_pipeline",
    # Agents
    "OrchestratorAgent",
    "WorkflowDesignerAgent",
    "DeploymentAgent",
    # State machines
    "ConversationStateMachine",
    "PhaseStateMachine",
    "derive_dialogue_state",
    # Permissions
    "PermissionGate",
    "GrantStore",
    "InMemoryGrantStore",
    # Events
    "EventBus",
    "PhaseChangeEvent",
    "AgentMessageEvent",
    "TaskCompletedEvent",
    # Data model
    "AssistantReply",
    "ConversationMode",
    "ConversationSession",
    "Message",
    "Phase",
    "ScopeData",
    "WorkflowSpec",
]
