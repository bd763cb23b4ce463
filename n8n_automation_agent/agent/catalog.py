"""The n8n node taxonomy the designer is allowed to use.

Each NodeType carries its n8n type tag, role in the graph, keywords used
for the deterministic draft, default parameters, and the output keys the
smoke test expects on the node's run data (empty means "any output item").
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

TRIGGER = "trigger"
ACTION = "action"
OUTPUT = "output"
LOGIC = "logic"


@dataclass(frozen=True)
class NodeType:
    type: str
    display_name: str
    role: str
    keywords: tuple[str, ...] = ()
    type_version: float = 1
    defaults: dict[str, Any] = field(default_factory=dict)
    output_keys: tuple[str, ...] = ()
    # Regular expressions matched in addition to the literal keywords.
    patterns: tuple[str, ...] = ()

    @property
    def is_trigger(self) -> bool:
        return self.role == TRIGGER

    def matches(self, text: str) -> bool:
        if any(re.search(rf"\b{re.escape(k)}", text) for k in self.keywords):
            return True
        return any(re.search(p, text) for p in self.patterns)


_BASE = "n8n-nodes-base."

NODE_TYPES: tuple[NodeType, ...] = (
    # Triggers, in matching priority order
    NodeType(
        _BASE + "emailReadImap", "Email Trigger", TRIGGER,
        keywords=("new email", "email arrives", "incoming email", "inbox", "receive email"),
        type_version=2,
        defaults={"mailbox": "INBOX", "postProcessAction": "read"},
    ),
    NodeType(
        _BASE + "scheduleTrigger", "Schedule Trigger", TRIGGER,
        keywords=("schedule", "daily", "hourly", "weekly", "monthly", "cron", "each morning"),
        patterns=(
            r"\bevery (\d+|other|day|hour|week|month|minute|morning|evening|night|weekday|"
            r"monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
        ),
        type_version=1.1,
        defaults={"rule": {"interval": [{"field": "hours", "hoursInterval": 1}]}},
    ),
    NodeType(
        _BASE + "webhook", "Webhook", TRIGGER,
        keywords=("webhook", "form", "submission", "http request", "api call", "event", "signup", "order"),
        type_version=2,
        defaults={"httpMethod": "POST", "path": "automation", "responseMode": "onReceived"},
    ),
    NodeType(
        _BASE + "manualTrigger", "Manual Trigger", TRIGGER,
        keywords=("manual", "on demand", "button", "click"),
    ),
    # Logic and processing
    NodeType(
        _BASE + "if", "IF", LOGIC,
        keywords=("if ", "only when", "only if", "when the", "condition", "greater than", "contains"),
        type_version=2,
        defaults={"conditions": {}},
    ),
    NodeType(
        _BASE + "code", "Code", ACTION,
        keywords=("transform", "format", "process", "calculate", "parse", "summar", "filter", "extract", "clean"),
        type_version=2,
        defaults={"jsCode": "return items;"},
    ),
    NodeType(
        _BASE + "httpRequest", "HTTP Request", ACTION,
        keywords=("api", "http", "fetch", "crm", "request", "call ", "webhook url", "rest"),
        type_version=4.2,
        defaults={"method": "GET", "url": "https://example.com"},
    ),
    # Outputs
    NodeType(
        _BASE + "slack", "Slack", OUTPUT,
        keywords=("slack",),
        type_version=2,
        defaults={"resource": "message", "operation": "post", "select": "channel", "text": "={{ JSON.stringify($json) }}"},
    ),
    NodeType(
        _BASE + "emailSend", "Send Email", OUTPUT,
        keywords=("email", "e-mail", "mail", "notify by email", "gmail", "outlook"),
        type_version=2.1,
        defaults={"subject": "Automated Notification", "emailFormat": "text", "text": "={{ JSON.stringify($json) }}"},
    ),
    NodeType(
        _BASE + "googleSheets", "Google Sheets", OUTPUT,
        keywords=("google sheet", "spreadsheet", "sheet"),
        type_version=4,
        defaults={"operation": "append"},
    ),
    NodeType(
        _BASE + "postgres", "Postgres", OUTPUT,
        keywords=("database", "postgres", "sql", "db ", "table", "record"),
        type_version=2.4,
        defaults={"operation": "insert", "table": "automation_events"},
    ),
    NodeType(
        _BASE + "writeBinaryFile", "Write File", OUTPUT,
        keywords=("file", "save", "backup", "disk", "csv", "export"),
        defaults={"fileName": "/tmp/automation-output.json"},
        output_keys=("fileName",),
    ),
)

_BY_TYPE: dict[str, NodeType] = {nt.type: nt for nt in NODE_TYPES}


def get(node_type: str) -> NodeType | None:
    return _BY_TYPE.get(node_type)


def is_known(node_type: str) -> bool:
    return node_type in _BY_TYPE


def known_types() -> list[str]:
    return [nt.type for nt in NODE_TYPES]


def match_trigger(text: str) -> NodeType | None:
    text = f"{text.lower()} "
    return next((nt for nt in NODE_TYPES if nt.is_trigger and nt.matches(text)), None)


def match_output(text: str) -> NodeType | None:
    text = f" {text.lower()} "
    return next((nt for nt in NODE_TYPES if nt.role == OUTPUT and nt.matches(text)), None)


def match_action(text: str) -> NodeType | None:
    """Actions may map onto processing nodes or onto output-style nodes."""
    text = f" {text.lower()} "
    for role in (ACTION, OUTPUT):
        found = next((nt for nt in NODE_TYPES if nt.role == role and nt.matches(text)), None)
        if found:
            return found
    return None


def describe() -> str:
    """Catalog listing for the designer prompt."""
    return "\n".join(f"- {nt.type} ({nt.role}): {nt.display_name}" for nt in NODE_TYPES)
