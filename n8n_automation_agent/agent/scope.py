"""Scope Tracker: folds LLM-extracted fields into ScopeData.

Merge rules for a field supplied in more than one turn:
  - trigger, output, frequency   overwrite
  - dataSources, conditions      append (deduplicated)
  - actions                      append, unless the user's text asks to
                                 replace ("instead", "replace"), in which
                                 case the new list overwrites the old one

The replace cue is a best-effort keyword match, not a guarantee.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from n8n_automation_agent.agent.models import ScopeData

logger = logging.getLogger("n8n_automation_agent.agent.scope")

_REPLACE_CUE = re.compile(r"\b(instead|replace|replacing|rather than)\b", re.IGNORECASE)

SCOPING_QUESTIONS: dict[str, str] = {
    "trigger": (
        "What triggers this workflow? For example: a new form submission, "
        "a scheduled time, webhook, or manual trigger?"
    ),
    "actions": "What actions should the workflow perform? (send emails, update databases, create files, etc.)",
    "output": "Where should the results go? (Email, Slack, database, file)",
}


def wants_replacement(user_text: str) -> bool:
    return bool(_REPLACE_CUE.search(user_text or ""))


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(v).strip() for v in value if str(v).strip())
    return str(value).strip()


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _append_unique(existing: list[str], incoming: list[str]) -> list[str]:
    seen = {v.lower() for v in existing}
    merged = list(existing)
    for item in incoming:
        if item.lower() not in seen:
            merged.append(item)
            seen.add(item.lower())
    return merged


class ScopeTracker:
    """Accumulates scope across turns. Owned by the Orchestrator."""

    def __init__(self, scope: ScopeData | None = None) -> None:
        self._scope = scope.copy() if scope else ScopeData()

    @property
    def scope(self) -> ScopeData:
        return self._scope

    def apply(self, extracted: dict[str, Any] | None, user_text: str = "") -> ScopeData:
        """Merge one turn's extraction and return the updated scope."""
        if not extracted:
            return self._scope
        s = self._scope

        trigger = _as_text(extracted.get("trigger"))
        if trigger:
            s.trigger = trigger
        output = _as_text(extracted.get("output"))
        if output:
            s.output = output
        frequency = _as_text(extracted.get("frequency"))
        if frequency:
            s.frequency = frequency

        actions = _as_list(extracted.get("actions"))
        if actions:
            if s.actions and wants_replacement(user_text):
                logger.debug("Replacing actions %r with %r", s.actions, actions)
                s.actions = actions
            else:
                s.actions = _append_unique(s.actions, actions)

        s.data_sources = _append_unique(s.data_sources, _as_list(extracted.get("dataSources")))
        s.conditions = _append_unique(s.conditions, _as_list(extracted.get("conditions")))
        return s

    @property
    def complete(self) -> bool:
        return self._scope.complete

    def next_question(self) -> str | None:
        missing = self._scope.missing_fields()
        if not missing:
            return None
        return SCOPING_QUESTIONS[missing[0]]

    def summary(self) -> str:
        s = self._scope
        lines = [
            f"- Trigger: {s.trigger}",
            "- Actions: " + "; ".join(s.actions),
            f"- Output: {s.output}",
        ]
        if s.data_sources:
            lines.append("- Data sources: " + ", ".join(s.data_sources))
        if s.conditions:
            lines.append("- Conditions: " + "; ".join(s.conditions))
        if s.frequency:
            lines.append(f"- Frequency: {s.frequency}")
        return "\n".join(lines)
