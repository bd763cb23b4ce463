"""Error taxonomy for the automation agent.

Every error raised by an agent or collaborator derives from AgentError and
carries an ErrorCategory. The Coordinator uses the category to pick the
phase failure label and the plain-language message shown to the user.

    TransientNetworkError    network         retried once by publish
    ValidationError          validation      never retried
    PermissionRequiredError  permission      a pause, routed to the Permission Gate
    DesignError              infeasible      routed back to scoping
    UnauthenticatedError     authentication  fatal for the current call only
    SmokeTestFailedError     runtime
    WorkflowEngineError      runtime
    SessionBusyError         busy
    SessionNotFoundError     not_found
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    PERMISSION = "permission"
    INFEASIBLE = "infeasible"
    AUTHENTICATION = "authentication"
    RUNTIME = "runtime"
    BUSY = "busy"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class AgentError(Exception):
    """Base class for every error the agents raise on purpose."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    # Overrides the category message when the class knows the likely cause better.
    user_text: str | None = None

    def __init__(self, message: str, *, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class TransientNetworkError(AgentError):
    """Connection reset or timeout talking to a collaborator. Retryable."""

    category = ErrorCategory.NETWORK


class ValidationError(AgentError):
    """A malformed spec, request, or state transition. Not retryable."""

    category = ErrorCategory.VALIDATION


class PermissionRequiredError(AgentError):
    """Scopes are missing. A normal pause state, never a pipeline failure."""

    category = ErrorCategory.PERMISSION

    def __init__(self, message: str, *, gate_output: dict | None = None) -> None:
        super().__init__(message, detail=gate_output)
        self.gate_output = gate_output or {"oauthServices": [], "centralizedAPIs": []}


class DesignError(AgentError):
    """The designer could not produce a workflow for the scope."""

    category = ErrorCategory.INFEASIBLE

    def __init__(self, message: str, *, reason: str = "infeasible", detail: Any = None) -> None:
        super().__init__(message, detail=detail)
        self.reason = reason


class InfeasibleRequestError(DesignError):
    """The scope cannot be mapped onto the available node taxonomy."""

    def __init__(self, message: str, *, detail: Any = None) -> None:
        super().__init__(message, reason="infeasible", detail=detail)


class UnauthenticatedError(AgentError):
    category = ErrorCategory.AUTHENTICATION


class SmokeTestFailedError(AgentError):
    """The test execution ran but the terminal node produced no usable output."""

    category = ErrorCategory.RUNTIME


class WorkflowEngineError(AgentError):
    """The workflow engine answered with a 5xx or an unreadable body."""

    category = ErrorCategory.RUNTIME
    user_text = (
        "The workflow engine had a problem handling the request, so nothing was "
        "tested or left running. Please try again in a moment."
    )

    def __init__(self, message: str, *, status_code: int | None = None, detail: Any = None) -> None:
        super().__init__(message, detail=detail)
        self.status_code = status_code


class SessionBusyError(AgentError):
    category = ErrorCategory.BUSY


class SessionNotFoundError(AgentError):
    category = ErrorCategory.NOT_FOUND


# ---------------------------------------------------------------------------
# User-facing messages
# ---------------------------------------------------------------------------

_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: (
        "I couldn't reach the workflow engine. Please check your connection "
        "and try again in a moment."
    ),
    ErrorCategory.VALIDATION: (
        "The workflow configuration was rejected. Let's review the requirements "
        "and try again."
    ),
    ErrorCategory.PERMISSION: (
        "I need access to a few connected services before I can build this. "
        "Please grant the requested permissions."
    ),
    ErrorCategory.INFEASIBLE: (
        "I couldn't map this automation onto the available building blocks. "
        "Could you describe the trigger, actions, or output a little differently?"
    ),
    ErrorCategory.AUTHENTICATION: "Your session has expired. Please sign in again.",
    ErrorCategory.RUNTIME: (
        "The workflow was created but its test run failed, so I removed it. "
        "Would you like to adjust the requirements and retry?"
    ),
    ErrorCategory.BUSY: "I'm still working on your previous request. One moment please.",
    ErrorCategory.NOT_FOUND: "I couldn't find that conversation.",
    ErrorCategory.CANCELLED: "Workflow creation was cancelled.",
    ErrorCategory.INTERNAL: (
        "Something unexpected went wrong. Your requirements are saved, "
        "so you can retry whenever you're ready."
    ),
}


def user_message(category: ErrorCategory) -> str:
    """Plain-language explanation for a failure category."""
    return _USER_MESSAGES.get(category, _USER_MESSAGES[ErrorCategory.INTERNAL])


def categorize(exc: BaseException) -> ErrorCategory:
    """Return the category of an exception; unexpected ones are INTERNAL."""
    if isinstance(exc, AgentError):
        return exc.category
    return ErrorCategory.INTERNAL


def explain(exc: BaseException) -> str:
    """Plain-language explanation for a specific failure."""
    if isinstance(exc, AgentError) and exc.user_text:
        return exc.user_text
    return user_message(categorize(exc))
