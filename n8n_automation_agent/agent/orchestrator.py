"""Orchestrator Agent: the one agent the user talks to.

It owns the scoping dialogue. Each turn, the LLM extracts requirement
fields from the user's text (with recent history as context), the
ScopeTracker folds them into ScopeData, and the ConversationStateMachine
decides the new mode. The Orchestrator builds every transcript Message;
the Coordinator only appends what it returns.
"""

from __future__ import annotations

import json
import logging

from n8n_automation_agent.agent.conversation import ConversationStateMachine, is_substantive
from n8n_automation_agent.agent.models import (
    ORCHESTRATOR_ID,
    AgentState,
    AgentStatus,
    ConversationMode,
    ConverseResult,
    CreationStarted,
    DeploymentResult,
    Message,
    PermissionCheckResult,
    PermissionStatus,
    Role,
    ScopeData,
)
from n8n_automation_agent.agent.permissions import PermissionGate
from n8n_automation_agent.agent.phases import NullReporter, PhaseReporter
from n8n_automation_agent.agent.scope import ScopeTracker
from n8n_automation_agent.errors import ErrorCategory, user_message
from n8n_automation_agent.reasoning import Message as LLMMessage
from n8n_automation_agent.reasoning import ReasoningEngine, parse_json_reply

logger = logging.getLogger("n8n_automation_agent.agent.orchestrator")

NEW_USER_GREETING = (
    "Hi! I'm your workflow automation assistant. I can help you connect apps "
    "and automate repetitive tasks. What would you like to automate today?"
)
RETURNING_USER_GREETING = "Welcome back! Ready to create another automation?"

SUGGESTIONS: tuple[str, ...] = (
    "Send Slack notifications for new form submissions",
    "Sync Google Sheets with a database",
    "Process emails automatically",
    "Generate reports from multiple sources",
    "Update CRM when deals close",
    "Backup files to cloud storage",
)

CREATE_ACTION = "Create Workflow"
MODIFY_ACTION = "Modify Requirements"
RETRY_ACTION = "Try again"

# Number of prior transcript turns sent to the LLM as extraction context.
_HISTORY_WINDOW = 10

_EXTRACT_SYSTEM = """\
You extract automation requirements from a conversation with a user who wants
to build a workflow automation.

Read the latest user message in the context of the conversation and the
requirements gathered so far. Reply with ONLY a JSON object with these keys
(omit a key or use null when the user has not said anything about it):

{
  "trigger": "what starts the workflow (event, schedule, webhook, new email, manual)",
  "dataSources": ["systems the workflow reads from"],
  "actions": ["each distinct step the workflow performs, in order"],
  "conditions": ["filters or branching rules"],
  "output": "where the results go (Slack, email, database, file, spreadsheet, API)",
  "frequency": "how often it runs, if scheduled"
}

Only report information the user actually gave. Do not invent values.
"""


class OrchestratorAgent:
    agent_id = ORCHESTRATOR_ID

    def __init__(self, engine: ReasoningEngine, gate: PermissionGate, temperature: float = 0.1) -> None:
        self._engine = engine
        self._gate = gate
        self._temperature = temperature

    # ------------------------------------------------------------------
    # Greeting
    # ------------------------------------------------------------------

    def greet(self, is_returning: bool = False) -> Message:
        """Opening message for a new session. Pure function of the returning flag."""
        return Message(
            role=Role.ASSISTANT,
            content=RETURNING_USER_GREETING if is_returning else NEW_USER_GREETING,
            agent_id=self.agent_id,
            suggestions=SUGGESTIONS[:4],
        )

    # ------------------------------------------------------------------
    # Scoping dialogue
    # ------------------------------------------------------------------

    async def converse(
        self,
        text: str,
        history: list[Message],
        scope: ScopeData,
        mode: ConversationMode,
        permission_status: PermissionStatus | None = None,
        reporter: PhaseReporter | None = None,
    ) -> ConverseResult:
        """Process one user turn and return the reply, new mode and new scope.

        The scope passed in is never modified; a copy is returned.
        """
        reporter = reporter or NullReporter()
        machine = ConversationStateMachine(mode)
        if machine.mode is ConversationMode.COMPLETED and is_substantive(text):
            scope = ScopeData()
            permission_status = None
        machine.on_user_message(text)

        if machine.mode is ConversationMode.COMPLETED:
            return ConverseResult(
                reply=Message(
                    role=Role.ASSISTANT,
                    content="Glad I could help! Is there anything else you'd like to automate?",
                    agent_id=self.agent_id,
                    suggestions=SUGGESTIONS[:4],
                ),
                mode=machine.mode,
                scope=scope.copy(),
                can_proceed=False,
            )

        if machine.mode is ConversationMode.GREETING:
            return ConverseResult(
                reply=Message(
                    role=Role.ASSISTANT,
                    content="Hello! Tell me what you'd like to automate, or pick one of these ideas.",
                    agent_id=self.agent_id,
                    suggestions=SUGGESTIONS[:4],
                ),
                mode=machine.mode,
                scope=scope.copy(),
                can_proceed=False,
            )

        await reporter.agent_state(AgentState(
            agent_id=self.agent_id,
            status=AgentStatus.THINKING,
            progress=0,
            current_task="Understanding your requirements",
        ))
        tracker = ScopeTracker(scope)
        extracted = await self._extract(text, history, tracker.scope)
        if extracted is None:
            logger.warning("Scope extraction returned no usable JSON; scope unchanged")
        tracker.apply(extracted, user_text=text)
        new_mode = machine.on_scope_updated(tracker.scope)

        can_proceed = tracker.complete and (permission_status is None or permission_status.granted)
        if tracker.complete:
            reply = Message(
                role=Role.ASSISTANT,
                content=(
                    "Here's what I understood:\n"
                    f"{tracker.summary()}\n\n"
                    "Shall I create this workflow, or would you like to change anything?"
                ),
                agent_id=self.agent_id,
                suggestions=(CREATE_ACTION, MODIFY_ACTION),
            )
        else:
            reply = Message(
                role=Role.ASSISTANT,
                content=tracker.next_question() or "",
                agent_id=self.agent_id,
            )

        await reporter.agent_state(AgentState(
            agent_id=self.agent_id,
            status=AgentStatus.WAITING,
            progress=100 if tracker.complete else 50,
            current_task="Waiting for confirmation" if tracker.complete else "Gathering requirements",
            metadata={"missing_fields": tracker.scope.missing_fields()},
        ))
        return ConverseResult(reply=reply, mode=new_mode, scope=tracker.scope, can_proceed=can_proceed)

    async def _extract(self, text: str, history: list[Message], scope: ScopeData) -> dict | None:
        messages = [
            LLMMessage(role=m.role.value, content=m.content)
            for m in history[-_HISTORY_WINDOW:]
            if m.role in (Role.USER, Role.ASSISTANT)
        ]
        # Providers expect the conversation to open with a user turn.
        while messages and messages[0].role == "assistant":
            messages.pop(0)
        messages.append(LLMMessage(
            role="user",
            content=(
                f"Requirements gathered so far:\n{json.dumps(scope.to_dict(), indent=2)}\n\n"
                f"Latest user message:\n{text}"
            ),
        ))
        response = await self._engine.complete(messages, system=_EXTRACT_SYSTEM, temperature=self._temperature)
        return parse_json_reply(response.content)

    # ------------------------------------------------------------------
    # Explicit user actions
    # ------------------------------------------------------------------

    def modify_requirements(self, mode: ConversationMode, scope: ScopeData) -> ConverseResult:
        """validating → scoping, keeping everything gathered so far."""
        machine = ConversationStateMachine(mode)
        new_mode = machine.modify()
        return ConverseResult(
            reply=Message(
                role=Role.ASSISTANT,
                content=(
                    "Sure, let's adjust it. Here's what I have so far:\n"
                    f"{ScopeTracker(scope).summary()}\n\n"
                    "What would you like to change?"
                ),
                agent_id=self.agent_id,
            ),
            mode=new_mode,
            scope=scope.copy(),
            can_proceed=False,
        )

    async def request_creation(
        self,
        user_id: str,
        scope: ScopeData,
        mode: ConversationMode,
    ) -> PermissionCheckResult | CreationStarted:
        """Check permissions and, when they are all granted, move to creating.

        Missing scopes are not an error: a PermissionCheckResult is returned
        and the mode stays at validating.
        """
        ConversationStateMachine(mode).check_ready(scope)
        result = await self.check_permissions(user_id, scope)
        if not result.status.granted:
            return result
        ConversationStateMachine(mode).create(scope, result.status)
        return CreationStarted(status=result.status)

    async def check_permissions(self, user_id: str, scope: ScopeData) -> PermissionCheckResult:
        """Evaluate the Permission Gate and phrase the outcome for the user."""
        status = await self._gate.evaluate(user_id, scope)
        if status.granted:
            content = "All required services are connected."
            if scope.complete:
                content += " Ready to create your workflow whenever you are."
            return PermissionCheckResult(
                status=status,
                reply=Message(
                    role=Role.ASSISTANT,
                    content=content,
                    agent_id=self.agent_id,
                    suggestions=(CREATE_ACTION,) if scope.complete else (),
                ),
            )
        missing = ", ".join(
            f"{r.service} ({len(r.missing_scopes)} scope{'s' if len(r.missing_scopes) != 1 else ''})"
            for r in status.requirements
            if not r.satisfied
        )
        return PermissionCheckResult(
            status=status,
            reply=Message(
                role=Role.ASSISTANT,
                content=(
                    f"Before I can build this I need access to: {missing}. "
                    "Please connect these services, then ask me to create the workflow again."
                ),
                agent_id=self.agent_id,
            ),
        )

    def not_ready(self, scope: ScopeData) -> Message:
        """Reply to a create request that arrives before requirements are confirmed."""
        tracker = ScopeTracker(scope)
        question = tracker.next_question()
        content = "Let's finish describing the automation first."
        if question:
            content += f" {question}"
        return Message(role=Role.ASSISTANT, content=content, agent_id=self.agent_id)

    # ------------------------------------------------------------------
    # Creation outcomes
    # ------------------------------------------------------------------

    def creation_succeeded(self, mode: ConversationMode, result: DeploymentResult) -> tuple[ConversationMode, Message]:
        new_mode = ConversationStateMachine(mode).on_deployed()
        lines = [f"Your workflow is live! {result.message}".strip()]
        if result.workflow_id:
            lines.append(f"Workflow ID: {result.workflow_id}")
        if result.trigger_url:
            lines.append(f"Trigger URL: {result.trigger_url}")
        return new_mode, Message(role=Role.ASSISTANT, content="\n".join(lines), agent_id=self.agent_id)

    def creation_failed(
        self,
        mode: ConversationMode,
        category: ErrorCategory,
        detail: str | None = None,
        explanation: str | None = None,
    ) -> tuple[ConversationMode, Message]:
        """Any failure sends the dialogue back to scoping with an explanation."""
        new_mode = ConversationStateMachine(mode).on_failure()
        content = explanation or user_message(category)
        if detail and category in (ErrorCategory.VALIDATION, ErrorCategory.INFEASIBLE, ErrorCategory.RUNTIME):
            content = f"{content}\n\nDetails: {detail}"
        # A design the catalog cannot express is a clarification request, not an error.
        is_error = category is not ErrorCategory.INFEASIBLE
        return new_mode, Message(
            role=Role.ASSISTANT,
            content=content,
            agent_id=self.agent_id,
            suggestions=(RETRY_ACTION,) if is_error else (),
            is_error=is_error,
        )
