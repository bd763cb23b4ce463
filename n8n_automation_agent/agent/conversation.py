"""Conversation State Machine and the derived DialogueState.

    greeting ──first substantive message──▶ scoping
    scoping ──scope complete──▶ validating
    validating ──modify──▶ scoping            (scope preserved)
    validating ──create + granted──▶ creating
    creating ──deployment succeeded──▶ completed
    creating ──failure──▶ scoping             (scope preserved)
    completed ──new request──▶ scoping

The mode is only ever changed through these methods. Each one checks the
source mode and raises ValidationError on an illegal transition.
"""

from __future__ import annotations

import logging
import re

from n8n_automation_agent.agent.models import (
    ConversationMode,
    DialogueState,
    PermissionState,
    PermissionStatus,
    ScopeData,
    ScopeStatus,
)
from n8n_automation_agent.errors import ValidationError

logger = logging.getLogger("n8n_automation_agent.agent.conversation")

_GREETING_ONLY = re.compile(
    r"^\s*(hi|hello|hey|good morning|good afternoon|good evening)\b[\s!.,]*(there)?[\s!.,]*$",
    re.IGNORECASE,
)

_ACKNOWLEDGMENTS = frozenset({"ok", "okay", "sure", "yes", "thanks", "thank you", "cool", "great"})


def is_substantive(text: str) -> bool:
    """False for bare greetings and one-word acknowledgments."""
    stripped = (text or "").strip()
    if not stripped:
        return False
    if _GREETING_ONLY.match(stripped):
        return False
    return stripped.lower().rstrip("!.") not in _ACKNOWLEDGMENTS


def derive_dialogue_state(scope: ScopeData, permission_status: PermissionStatus | None) -> DialogueState:
    """Single source of the dialogue flags shown to callers."""
    if permission_status is None:
        permission_state = PermissionState.NOT_EVALUATED
    elif permission_status.granted:
        permission_state = PermissionState.GRANTED
    else:
        permission_state = PermissionState.MISSING
    complete = scope.complete
    return DialogueState(
        scope_status=ScopeStatus.COMPLETE if complete else ScopeStatus.INCOMPLETE,
        permission_state=permission_state,
        missing_fields=tuple(scope.missing_fields()),
        can_proceed=complete and permission_state is not PermissionState.MISSING,
    )


class ConversationStateMachine:
    def __init__(self, mode: ConversationMode = ConversationMode.GREETING) -> None:
        self._mode = mode

    @property
    def mode(self) -> ConversationMode:
        return self._mode

    def _move(self, target: ConversationMode, allowed_from: tuple[ConversationMode, ...]) -> ConversationMode:
        if self._mode not in allowed_from:
            raise ValidationError(
                f"Illegal conversation transition {self._mode.value} -> {target.value}"
            )
        if self._mode is not target:
            logger.debug("Conversation mode %s -> %s", self._mode.value, target.value)
        self._mode = target
        return target

    def on_user_message(self, text: str) -> ConversationMode:
        """Leave greeting on the first substantive message."""
        if self._mode is ConversationMode.GREETING and is_substantive(text):
            return self._move(ConversationMode.SCOPING, (ConversationMode.GREETING,))
        if self._mode is ConversationMode.COMPLETED and is_substantive(text):
            return self._move(ConversationMode.SCOPING, (ConversationMode.COMPLETED,))
        return self._mode

    def on_scope_updated(self, scope: ScopeData) -> ConversationMode:
        if self._mode is ConversationMode.SCOPING and scope.complete:
            return self._move(ConversationMode.VALIDATING, (ConversationMode.SCOPING,))
        if self._mode is ConversationMode.VALIDATING and not scope.complete:
            return self._move(ConversationMode.SCOPING, (ConversationMode.VALIDATING,))
        return self._mode

    def modify(self) -> ConversationMode:
        return self._move(ConversationMode.SCOPING, (ConversationMode.VALIDATING,))

    def check_ready(self, scope: ScopeData) -> None:
        """Raise unless a create request is acceptable in the current mode."""
        if self._mode is not ConversationMode.VALIDATING:
            raise ValidationError(
                f"Illegal conversation transition {self._mode.value} -> creating"
            )
        if not scope.complete:
            raise ValidationError("Cannot create a workflow from an incomplete scope")

    def create(self, scope: ScopeData, permission_status: PermissionStatus | None) -> ConversationMode:
        self.check_ready(scope)
        if permission_status is None or not permission_status.granted:
            raise ValidationError("Cannot create a workflow before permissions are granted")
        return self._move(ConversationMode.CREATING, (ConversationMode.VALIDATING,))

    def on_deployed(self) -> ConversationMode:
        return self._move(ConversationMode.COMPLETED, (ConversationMode.CREATING,))

    def on_failure(self) -> ConversationMode:
        """Any unrecoverable failure rolls the dialogue back to scoping."""
        return self._move(ConversationMode.SCOPING, tuple(ConversationMode))
