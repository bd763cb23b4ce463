"""Permission Gate: required third-party scopes for a scope description.

detect_requirements() maps scope text onto OAuth services and the
centralized APIs the platform brokers. PermissionGate.evaluate() compares
the required scopes with what the grant store says the user has granted
and returns a PermissionStatus. Granting itself happens out-of-band in
the consent flow; this module never stores credentials.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections import defaultdict

from n8n_automation_agent.agent.models import PermissionRequirement, PermissionStatus, ScopeData

logger = logging.getLogger("n8n_automation_agent.agent.permissions")

_GOOGLE = "https://www.googleapis.com/auth/"

OAUTH_SCOPES: dict[str, dict[str, str]] = {
    "google": {
        "gmail_read": _GOOGLE + "gmail.readonly",
        "gmail_send": _GOOGLE + "gmail.send",
        "drive_read": _GOOGLE + "drive.readonly",
        "drive_write": _GOOGLE + "drive.file",
        "calendar_read": _GOOGLE + "calendar.readonly",
        "calendar_write": _GOOGLE + "calendar.events",
        "sheets_read": _GOOGLE + "spreadsheets.readonly",
        "sheets_write": _GOOGLE + "spreadsheets",
    },
    "microsoft": {
        "mail_read": "Mail.Read",
        "mail_send": "Mail.Send",
        "files_read": "Files.Read",
        "files_write": "Files.ReadWrite",
        "calendar_read": "Calendars.Read",
        "calendar_write": "Calendars.ReadWrite",
    },
    "dropbox": {
        "files_read": "files.metadata.read",
        "files_write": "files.content.write",
        "sharing": "sharing.write",
    },
    "slack": {
        "chat_write": "chat:write",
    },
}


def _has(text: str, *words: str) -> bool:
    return any(re.search(rf"\b{re.escape(w)}", text) for w in words)


# (predicate, service, scope keys). Evaluated against lowercased scope text.
_OAUTH_RULES: list[tuple] = [
    (lambda t: _has(t, "gmail", "email", "e-mail", "inbox") and _has(t, "read", "check", "receive", "incoming", "new email"),
     "google", ("gmail_read",)),
    (lambda t: _has(t, "gmail", "email", "e-mail") and _has(t, "send", "reply", "forward"),
     "google", ("gmail_send",)),
    (lambda t: "google drive" in t,
     "google", ("drive_read", "drive_write")),
    (lambda t: _has(t, "google sheet", "spreadsheet"),
     "google", ("sheets_read",)),
    (lambda t: _has(t, "google sheet", "spreadsheet") and _has(t, "update", "write", "add", "append", "sync"),
     "google", ("sheets_write",)),
    (lambda t: _has(t, "calendar"),
     "google", ("calendar_read",)),
    (lambda t: _has(t, "outlook"),
     "microsoft", ("mail_read", "mail_send")),
    (lambda t: _has(t, "onedrive"),
     "microsoft", ("files_write",)),
    (lambda t: _has(t, "dropbox"),
     "dropbox", ("files_write",)),
    (lambda t: _has(t, "slack"),
     "slack", ("chat_write",)),
]

_CENTRALIZED_RULES: list[tuple] = [
    (lambda t: _has(t, "whatsapp"), "whatsapp"),
    (lambda t: _has(t, "openai", "gpt", "summar", "ai ", "classify with ai"), "openai"),
    (lambda t: _has(t, "twilio", "sms", "text message"), "twilio"),
    (lambda t: _has(t, "sendgrid"), "sendgrid"),
    (lambda t: _has(t, "stripe", "payment"), "stripe"),
]


def detect_requirements(scope: ScopeData) -> tuple[dict[str, list[str]], list[str]]:
    """Return ({service: [required scopes]}, [centralized api names]) for a scope."""
    text = scope.text() + " "
    services: dict[str, list[str]] = defaultdict(list)
    for predicate, service, keys in _OAUTH_RULES:
        if predicate(text):
            for key in keys:
                url = OAUTH_SCOPES[service][key]
                if url not in services[service]:
                    services[service].append(url)
    apis = [name for predicate, name in _CENTRALIZED_RULES if predicate(text)]
    return dict(services), apis


# ---------------------------------------------------------------------------
# Grant store (credential collaborator interface)
# ---------------------------------------------------------------------------


class GrantStore(ABC):
    """Read side of the OAuth/credential collaborator."""

    @abstractmethod
    async def granted_scopes(self, user_id: str, service: str) -> set[str]:
        ...


class InMemoryGrantStore(GrantStore):
    """Grant store for development, tests, and the CLI."""

    def __init__(self, grants: dict[str, dict[str, set[str]]] | None = None) -> None:
        self._grants: dict[str, dict[str, set[str]]] = grants or {}

    def grant(self, user_id: str, service: str, scopes: list[str] | set[str]) -> None:
        self._grants.setdefault(user_id, {}).setdefault(service, set()).update(scopes)

    def revoke(self, user_id: str, service: str) -> None:
        self._grants.get(user_id, {}).pop(service, None)

    async def granted_scopes(self, user_id: str, service: str) -> set[str]:
        return set(self._grants.get(user_id, {}).get(service, set()))


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class PermissionGate:
    def __init__(self, grants: GrantStore) -> None:
        self._grants = grants

    async def evaluate(self, user_id: str, scope: ScopeData) -> PermissionStatus:
        required, apis = detect_requirements(scope)
        requirements: list[PermissionRequirement] = []
        for service, scopes in required.items():
            have = await self._grants.granted_scopes(user_id, service)
            missing = tuple(s for s in scopes if s not in have)
            requirements.append(
                PermissionRequirement(service=service, required_scopes=tuple(scopes), missing_scopes=missing)
            )
        status = PermissionStatus(requirements=tuple(requirements), centralized_apis=tuple(apis))
        logger.info(
            "Permission check for %s: %d service(s), granted=%s",
            user_id, len(requirements), status.granted,
        )
        return status
