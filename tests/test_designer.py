"""Workflow Designer tests.

Verifies:
  Deterministic draft
  1.  form submission → Slack message drafts Webhook → Slack
  2.  "notify" adds no node when the output node already realizes it
  3.  conditions insert an IF node after the trigger
  4.  two actions of the same type get unique node names
  5.  webhook path and workflow name carry the attempt id
  6.  an unreachable output raises InfeasibleRequestError
  7.  an unknown trigger raises InfeasibleRequestError

  LLM design
  8.  a well-formed reply is used as-is (after normalization)
  9.  {"infeasible": ...} raises InfeasibleRequestError
  10. unknown node types raise InfeasibleRequestError
  11. an unparseable reply falls back to the draft
  12. a reply without a trigger entry point falls back to the draft
  13. incomplete scope is a ValidationError before any LLM call

  validate()
  14. draft output passes
  15. hard-coded credentials are rejected
  16. unsupported node types are rejected
  17. two entry points are rejected
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from n8n_automation_agent.agent.designer import WorkflowDesignerAgent
from n8n_automation_agent.agent.models import DESIGNER_ID, ScopeData, WorkflowNode, WorkflowSpec
from n8n_automation_agent.errors import InfeasibleRequestError, ValidationError
from n8n_automation_agent.reasoning import EngineResponse

WEBHOOK = "n8n-nodes-base.webhook"
SLACK = "n8n-nodes-base.slack"
CODE = "n8n-nodes-base.code"


def _scope_a() -> ScopeData:
    return ScopeData(trigger="new form submission", actions=["notify"], output="Slack message")


def _engine(reply: str | None) -> MagicMock:
    engine = MagicMock()
    engine.complete = AsyncMock(return_value=EngineResponse(content=reply))
    return engine


def _fenced(obj: dict) -> str:
    return "Here is the design:\n```json\n" + json.dumps(obj) + "\n```"


def _reporter() -> MagicMock:
    reporter = MagicMock()
    reporter.enter = AsyncMock()
    reporter.progress = AsyncMock()
    reporter.agent_state = AsyncMock()
    return reporter


# ---------------------------------------------------------------------------
# Deterministic draft
# ---------------------------------------------------------------------------


class TestDraft:
    def test_form_to_slack(self):
        spec = WorkflowDesignerAgent().draft(_scope_a())
        assert [n.type for n in spec.nodes] == [WEBHOOK, SLACK]
        assert spec.connections["Webhook"][0].target == "Slack"
        assert [n.name for n in spec.entry_points()] == ["Webhook"]
        assert [n.name for n in spec.terminal_nodes()] == ["Slack"]

    @pytest.mark.parametrize("trigger, expected", [
        ("every time a new order is placed", WEBHOOK),
        ("every 15 minutes", "n8n-nodes-base.scheduleTrigger"),
        ("every monday morning", "n8n-nodes-base.scheduleTrigger"),
    ])
    def test_every_means_schedule_only_for_intervals(self, trigger, expected):
        scope = ScopeData(trigger=trigger, actions=["notify"], output="Slack message")
        spec = WorkflowDesignerAgent().draft(scope)
        assert spec.entry_points()[0].type == expected

    def test_attempt_id_in_name_and_webhook_path(self):
        spec = WorkflowDesignerAgent().draft(_scope_a())
        assert spec.name.endswith(f"[{spec.attempt_id}]")
        path = spec.node_by_name("Webhook").parameters["path"]
        assert path.endswith(f"-{spec.attempt_id}")

    def test_each_draft_is_a_new_attempt(self):
        designer = WorkflowDesignerAgent()
        assert designer.draft(_scope_a()).attempt_id != designer.draft(_scope_a()).attempt_id

    def test_conditions_add_if_node(self):
        scope = ScopeData(
            trigger="new email arrives",
            actions=["summarize the email"],
            output="Slack",
            conditions=["only from the CEO"],
        )
        spec = WorkflowDesignerAgent().draft(scope)
        assert [n.type for n in spec.nodes] == [
            "n8n-nodes-base.emailReadImap",
            "n8n-nodes-base.if",
            CODE,
            SLACK,
        ]

    def test_duplicate_node_types_get_unique_names(self):
        scope = ScopeData(trigger="webhook", actions=["transform data", "format the result"], output="Slack")
        spec = WorkflowDesignerAgent().draft(scope)
        assert spec.node_names() == ["Webhook", "Code", "Code 2", "Slack"]

    def test_unreachable_output_is_infeasible(self):
        scope = ScopeData(trigger="webhook", actions=["notify"], output="carrier pigeon")
        with pytest.raises(InfeasibleRequestError) as exc:
            WorkflowDesignerAgent().draft(scope)
        assert exc.value.detail == {"field": "output"}

    def test_unknown_trigger_is_infeasible(self):
        scope = ScopeData(trigger="when the moon is full", actions=["notify"], output="Slack")
        with pytest.raises(InfeasibleRequestError):
            WorkflowDesignerAgent().draft(scope)


# ---------------------------------------------------------------------------
# LLM design
# ---------------------------------------------------------------------------


class TestDesignWithLLM:
    @pytest.mark.asyncio
    async def test_well_formed_reply_used(self):
        engine = _engine(_fenced({
            "name": "Form to Slack",
            "nodes": [
                {"name": "On form", "type": WEBHOOK},
                {"name": "Tell team", "type": SLACK, "parameters": {"text": "New submission"}},
            ],
            "connections": {"On form": [{"node": "Tell team", "index": 0}]},
        }))
        reporter = _reporter()
        spec = await WorkflowDesignerAgent(engine).design(_scope_a(), reporter)

        assert spec.name.startswith("Form to Slack [")
        assert spec.node_names() == ["On form", "Tell team"]
        # Catalog defaults are merged under the LLM's parameters.
        tell = spec.node_by_name("Tell team")
        assert tell.parameters["text"] == "New submission"
        assert tell.parameters["operation"] == "post"
        reporter.progress.assert_awaited_once_with(DESIGNER_ID, 50)
        assert reporter.agent_state.await_count == 2

    @pytest.mark.asyncio
    async def test_infeasible_reply(self):
        engine = _engine('```json\n{"infeasible": "There is no fax node"}\n```')
        with pytest.raises(InfeasibleRequestError, match="fax"):
            await WorkflowDesignerAgent(engine).design(_scope_a())

    @pytest.mark.asyncio
    async def test_unknown_node_type_is_infeasible(self):
        engine = _engine(_fenced({
            "name": "x",
            "nodes": [{"name": "Fax", "type": "n8n-nodes-base.fax"}],
            "connections": {},
        }))
        with pytest.raises(InfeasibleRequestError) as exc:
            await WorkflowDesignerAgent(engine).design(_scope_a())
        assert exc.value.detail == {"unknown_types": ["n8n-nodes-base.fax"]}

    @pytest.mark.asyncio
    async def test_unparseable_reply_falls_back_to_draft(self):
        spec = await WorkflowDesignerAgent(_engine("Sorry, I can't help with that.")).design(_scope_a())
        assert [n.type for n in spec.nodes] == [WEBHOOK, SLACK]

    @pytest.mark.asyncio
    async def test_wrong_shape_falls_back_to_draft(self):
        engine = _engine(_fenced({
            "name": "No trigger",
            "nodes": [{"name": "Only Slack", "type": SLACK}],
            "connections": {},
        }))
        spec = await WorkflowDesignerAgent(engine).design(_scope_a())
        assert spec.node_names() == ["Webhook", "Slack"]

    @pytest.mark.asyncio
    async def test_incomplete_scope(self):
        engine = _engine("{}")
        with pytest.raises(ValidationError):
            await WorkflowDesignerAgent(engine).design(ScopeData(trigger="webhook"))
        engine.complete.assert_not_awaited()


# ---------------------------------------------------------------------------
# validate()
# ---------------------------------------------------------------------------


class TestValidate:
    def test_draft_passes(self):
        designer = WorkflowDesignerAgent()
        spec = designer.draft(_scope_a())
        assert designer.validate(spec, _scope_a()) is spec

    def test_hard_coded_credentials_rejected(self):
        designer = WorkflowDesignerAgent()
        spec = designer.enhance({
            "name": "Leaky",
            "nodes": [
                {"name": "Webhook", "type": WEBHOOK},
                {"name": "Slack", "type": SLACK, "parameters": {"api_key": "abcdefgh123"}},
            ],
            "connections": {"Webhook": [{"node": "Slack"}]},
        })
        with pytest.raises(ValidationError, match="hard-coded credentials"):
            designer.validate(spec)

    def test_unsupported_node_type_rejected(self):
        spec = WorkflowSpec(
            name="Odd",
            nodes=(
                WorkflowNode(id="1", name="Webhook", type=WEBHOOK),
                WorkflowNode(id="2", name="Fax", type="n8n-nodes-base.fax"),
            ),
            connections={},
        )
        with pytest.raises(ValidationError) as exc:
            WorkflowDesignerAgent().validate(spec)
        assert any("unsupported type" in p for p in exc.value.detail)

    def test_two_entry_points_rejected(self):
        designer = WorkflowDesignerAgent()
        spec = designer.enhance({
            "name": "Twins",
            "nodes": [
                {"name": "Webhook", "type": WEBHOOK},
                {"name": "Schedule", "type": "n8n-nodes-base.scheduleTrigger"},
                {"name": "Slack", "type": SLACK},
            ],
            "connections": {
                "Webhook": [{"node": "Slack"}],
                "Schedule": [{"node": "Slack"}],
            },
        })
        with pytest.raises(ValidationError, match="exactly one entry point"):
            designer.validate(spec)
