"""HTTP surface: identity header, API key and error-category status mapping.

The lifespan is not entered (TestClient is used without a context manager),
so app.state is populated by hand with a mocked coordinator and client.
"""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from n8n_automation_agent.agent.conversation import derive_dialogue_state
from n8n_automation_agent.agent.models import AssistantReply, ConversationMode, Message, Role, ScopeData
from n8n_automation_agent.agent.permissions import InMemoryGrantStore
from n8n_automation_agent.api import app
from n8n_automation_agent.errors import (
    SessionBusyError,
    SessionNotFoundError,
    TransientNetworkError,
    ValidationError,
)

HEADERS = {"X-User-Id": "u1"}


def _reply(text: str = "Hi!", mode: ConversationMode = ConversationMode.GREETING) -> AssistantReply:
    return AssistantReply(
        session_id="s1",
        message=Message(role=Role.ASSISTANT, content=text),
        mode=mode,
        dialogue=derive_dialogue_state(ScopeData(), None),
    )


@pytest.fixture
def coordinator():
    coord = MagicMock()
    coord.start_session = AsyncMock(return_value=_reply())
    coord.submit = AsyncMock(return_value=_reply("What should it do?", ConversationMode.SCOPING))
    coord.request_creation = AsyncMock(return_value=_reply())
    coord.delete_session = AsyncMock()
    coord.list_sessions = AsyncMock(return_value=[])
    return coord


@pytest.fixture
def api(coordinator):
    client = MagicMock()
    client.health = AsyncMock(return_value={"status": "ok"})
    app.state.coordinator = coordinator
    app.state.client = client
    app.state.grants = InMemoryGrantStore()
    with patch.dict(os.environ, {"AGENT_API_KEY": ""}):
        yield TestClient(app)


# ---------------------------------------------------------------------------
# Identity and auth
# ---------------------------------------------------------------------------


class TestAuth:
    def test_health_needs_no_user(self, api):
        resp = api.get("/health")
        assert resp.status_code == 200
        assert resp.json()["n8n"] == "ok"

    def test_health_reports_unreachable_n8n(self, api):
        app.state.client.health = AsyncMock(return_value={"error": "connection refused"})
        assert api.get("/health").json()["n8n"] == "unreachable"

    def test_missing_user_header_is_401(self, api, coordinator):
        resp = api.post("/sessions/s1/messages", json={"text": "hello"})
        assert resp.status_code == 401
        assert resp.json()["category"] == "authentication"
        coordinator.submit.assert_not_awaited()

    def test_api_key_enforced_when_set(self, api):
        with patch.dict(os.environ, {"AGENT_API_KEY": "secret"}):
            assert api.get("/health").status_code == 401
            ok = api.get("/health", headers={"Authorization": "Bearer secret"})
            assert ok.status_code == 200


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


class TestRoutes:
    def test_start_session(self, api, coordinator):
        resp = api.post("/sessions", json={"is_returning": True}, headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["message"]["content"] == "Hi!"
        coordinator.start_session.assert_awaited_once_with("u1", is_returning=True)

    def test_message_forwards_user(self, api, coordinator):
        resp = api.post("/sessions/s1/messages", json={"text": "post to Slack"}, headers=HEADERS)
        assert resp.json()["mode"] == "scoping"
        coordinator.submit.assert_awaited_once_with("s1", "post to Slack", user_id="u1")

    def test_empty_message_rejected(self, api):
        assert api.post("/sessions/s1/messages", json={"text": ""}, headers=HEADERS).status_code == 422

    def test_grant_recorded(self, api):
        resp = api.post("/grants", json={"service": "slack", "scopes": ["chat:write"]}, headers=HEADERS)
        assert resp.json() == {"service": "slack", "scopes": ["chat:write"]}
        assert app.state.grants._grants["u1"]["slack"] == {"chat:write"}

    def test_delete(self, api, coordinator):
        resp = api.delete("/sessions/s1", headers=HEADERS)
        assert resp.json() == {"deleted": True, "session_id": "s1"}
        coordinator.delete_session.assert_awaited_once_with("s1", user_id="u1")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    @pytest.mark.parametrize("exc, status, category", [
        (SessionBusyError("busy"), 409, "busy"),
        (SessionNotFoundError("gone"), 404, "not_found"),
        (ValidationError("not ready"), 422, "validation"),
        (TransientNetworkError("timeout"), 503, "network"),
    ])
    def test_status_by_category(self, api, coordinator, exc, status, category):
        coordinator.request_creation = AsyncMock(side_effect=exc)
        resp = api.post("/sessions/s1/create", headers=HEADERS)
        assert resp.status_code == status
        body = resp.json()
        assert body["category"] == category
        assert body["message"]

    def test_unknown_session_view_is_404(self, api, coordinator):
        coordinator.get_session = MagicMock(side_effect=SessionNotFoundError("Unknown session s9"))
        assert api.get("/sessions/s9", headers=HEADERS).status_code == 404
