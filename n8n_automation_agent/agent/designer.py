"""Workflow Designer Agent: ScopeData → n8n-native WorkflowSpec.

design() asks the LLM for a node graph restricted to the catalog in
catalog.py. The reply is normalized by enhance() (ids, names, positions,
default parameters, dangling connections dropped) and checked for shape:
exactly one trigger entry point and a terminal node that realizes the
requested output. When the reply cannot be parsed, or has the wrong
shape, a deterministic draft is built from the catalog instead. When
neither path can express the scope, InfeasibleRequestError is raised.

validate() is the building-phase check run on the final spec.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any
from uuid import uuid4

from n8n_automation_agent.agent import catalog
from n8n_automation_agent.agent.models import (
    DESIGNER_ID,
    AgentState,
    AgentStatus,
    Connection,
    ScopeData,
    WorkflowNode,
    WorkflowSpec,
)
from n8n_automation_agent.agent.phases import NullReporter, PhaseReporter
from n8n_automation_agent.errors import InfeasibleRequestError, ValidationError
from n8n_automation_agent.reasoning import Message as LLMMessage
from n8n_automation_agent.reasoning import ReasoningEngine, parse_json_reply

logger = logging.getLogger("n8n_automation_agent.agent.designer")

_X_START, _X_STEP, _Y = 240, 220, 300

_SECRET_PATTERNS = re.compile(
    r"(sk-[A-Za-z0-9]{20,}"
    r"|xox[abprs]-[A-Za-z0-9-]{10,}"
    r"|AKIA[0-9A-Z]{16}"
    r"|(?i:\b(?:password|passwd|api[_-]?key|secret|access[_-]?token)\b\s*[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9_\-]{8,}))"
)

_DESIGN_SYSTEM = """\
You design n8n workflows. Given structured requirements, reply with ONE fenced
```json block containing:

{{
  "name": "short human-readable workflow name",
  "nodes": [
    {{"name": "unique node name", "type": "<node type>", "parameters": {{...}}}}
  ],
  "connections": {{
    "<source node name>": [{{"node": "<target node name>", "index": 0}}]
  }}
}}

Rules:
- Use ONLY these node types:
{catalog}
- Exactly one trigger node, and it must be the only node with no incoming connection.
- The last node must deliver the requested output.
- Never put credentials, passwords or API keys in parameters.

If the requirements cannot be built with these node types, reply instead with:
```json
{{"infeasible": "<one sentence explaining what is missing>"}}
```
"""


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:40] or "automation"


def _title_from_scope(scope: ScopeData) -> str:
    first_action = scope.actions[0] if scope.actions else "automation"
    return f"{first_action.strip().capitalize()} on {scope.trigger.strip()}"[:60]


class WorkflowDesignerAgent:
    agent_id = DESIGNER_ID

    def __init__(self, engine: ReasoningEngine | None = None, temperature: float = 0.2) -> None:
        self._engine = engine
        self._temperature = temperature

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def design(self, scope: ScopeData, reporter: PhaseReporter | None = None) -> WorkflowSpec:
        reporter = reporter or NullReporter()
        if not scope.complete:
            raise ValidationError(
                "Cannot design a workflow from an incomplete scope",
                detail={"missing": scope.missing_fields()},
            )
        await reporter.agent_state(AgentState(
            agent_id=self.agent_id,
            status=AgentStatus.THINKING,
            progress=35,
            current_task="Designing workflow",
        ))

        spec: WorkflowSpec | None = None
        if self._engine is not None:
            spec = await self._design_with_llm(scope)
            await reporter.progress(self.agent_id, 50)
        if spec is None:
            spec = self.draft(scope)

        await reporter.agent_state(AgentState(
            agent_id=self.agent_id,
            status=AgentStatus.COMPLETED,
            progress=100,
            current_task="Design ready",
            metadata={"nodes": len(spec.nodes), "name": spec.name},
        ))
        logger.info("Designed workflow %r with %d nodes", spec.name, len(spec.nodes))
        return spec

    async def _design_with_llm(self, scope: ScopeData) -> WorkflowSpec | None:
        response = await self._engine.complete(
            [LLMMessage(role="user", content=json.dumps(scope.to_dict(), indent=2))],
            system=_DESIGN_SYSTEM.format(catalog=catalog.describe()),
            temperature=self._temperature,
        )
        parsed = parse_json_reply(response.content)
        if parsed is None:
            logger.warning("Designer reply was not JSON; using catalog draft")
            return None
        if parsed.get("infeasible"):
            raise InfeasibleRequestError(str(parsed["infeasible"]), detail=scope.to_dict())

        unknown = sorted({
            str(n.get("type")) for n in parsed.get("nodes", [])
            if isinstance(n, dict) and not catalog.is_known(str(n.get("type")))
        })
        if unknown:
            raise InfeasibleRequestError(
                f"The design needs node types that are not available: {', '.join(unknown)}",
                detail={"unknown_types": unknown},
            )
        try:
            spec = self.enhance(parsed, scope)
        except ValidationError as e:
            logger.warning("Designer reply could not be normalized (%s); using catalog draft", e)
            return None
        problems = self._shape_problems(spec, scope)
        if problems:
            logger.warning("Designer reply has the wrong shape (%s); using catalog draft", "; ".join(problems))
            return None
        return spec

    # ------------------------------------------------------------------
    # Deterministic draft
    # ------------------------------------------------------------------

    def draft(self, scope: ScopeData) -> WorkflowSpec:
        """Linear trigger → [condition] → actions → output graph from the catalog."""
        trigger = catalog.match_trigger(f"{scope.trigger} {scope.frequency}")
        if trigger is None:
            raise InfeasibleRequestError(
                f"No available trigger matches {scope.trigger!r}",
                detail={"field": "trigger"},
            )
        output = catalog.match_output(scope.output)
        if output is None:
            raise InfeasibleRequestError(
                f"No available node can deliver {scope.output!r}",
                detail={"field": "output"},
            )

        chain: list[catalog.NodeType] = [trigger]
        if scope.conditions:
            chain.append(catalog.get("n8n-nodes-base.if"))
        for action in scope.actions:
            node_type = catalog.match_action(action)
            # Actions the output node already realizes ("notify", "post to Slack") add no node.
            if node_type is None or node_type.type == output.type:
                continue
            chain.append(node_type)
        chain.append(output)

        raw_nodes: list[dict[str, Any]] = [{"type": nt.type, "name": nt.display_name} for nt in chain]
        names = _unique_names([n["name"] for n in raw_nodes])
        for node, name in zip(raw_nodes, names):
            node["name"] = name
        connections = {
            names[i]: [{"node": names[i + 1], "index": 0}] for i in range(len(names) - 1)
        }
        return self.enhance({"name": _title_from_scope(scope), "nodes": raw_nodes, "connections": connections}, scope)

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def enhance(self, raw: dict[str, Any], scope: ScopeData | None = None) -> WorkflowSpec:
        """Turn a loosely shaped design into a complete WorkflowSpec."""
        raw_nodes = [n for n in raw.get("nodes", []) if isinstance(n, dict) and n.get("type")]
        if not raw_nodes:
            raise ValidationError("Design contains no nodes")

        attempt_id = uuid4().hex[:8]
        base_name = str(raw.get("name") or (_title_from_scope(scope) if scope else "Automation")).strip()
        name = f"{base_name} [{attempt_id}]"

        names = _unique_names([str(n.get("name") or _default_name(n["type"])) for n in raw_nodes])
        nodes: list[WorkflowNode] = []
        for index, (rn, node_name) in enumerate(zip(raw_nodes, names)):
            node_type = catalog.get(rn["type"])
            params = dict(node_type.defaults) if node_type else {}
            params.update(rn.get("parameters") or {})
            if rn["type"] == "n8n-nodes-base.webhook":
                params["path"] = f"{_slug(base_name)}-{attempt_id}"
            nodes.append(WorkflowNode(
                id=str(rn.get("id") or uuid4()),
                name=node_name,
                type=rn["type"],
                type_version=rn.get("typeVersion") or (node_type.type_version if node_type else 1),
                position=(_X_START + index * _X_STEP, _Y),
                parameters=params,
            ))

        # The raw names may have been deduplicated; map the first use of each.
        rename = {}
        for rn, node_name in zip(raw_nodes, names):
            rename.setdefault(str(rn.get("name") or node_name), node_name)
        known = {n.name for n in nodes}
        connections: dict[str, tuple[Connection, ...]] = {}
        for source, targets in (raw.get("connections") or {}).items():
            src = rename.get(source, source)
            if src not in known:
                logger.debug("Dropping connection from unknown node %r", source)
                continue
            kept = tuple(
                Connection(target=rename.get(t["node"], t["node"]), input_index=int(t.get("index", 0)))
                for t in _flatten_targets(targets)
                if rename.get(t["node"], t["node"]) in known
            )
            if kept:
                connections[src] = kept

        return WorkflowSpec(name=name, nodes=tuple(nodes), connections=connections, attempt_id=attempt_id)

    # ------------------------------------------------------------------
    # Validation (building phase)
    # ------------------------------------------------------------------

    def _shape_problems(self, spec: WorkflowSpec, scope: ScopeData | None) -> list[str]:
        problems: list[str] = []
        entries = spec.entry_points()
        if len(entries) != 1:
            problems.append(f"expected exactly one entry point, found {len(entries)}")
        elif not (catalog.get(entries[0].type) and catalog.get(entries[0].type).is_trigger):
            problems.append(f"entry point {entries[0].name!r} is not a trigger")
        triggers = [n for n in spec.nodes if catalog.get(n.type) and catalog.get(n.type).is_trigger]
        if len(triggers) != 1:
            problems.append(f"expected exactly one trigger node, found {len(triggers)}")

        terminals = spec.terminal_nodes()
        if not terminals:
            problems.append("workflow has no terminal node")
        elif scope is not None:
            wanted = catalog.match_output(scope.output)
            if wanted is not None and not any(t.type == wanted.type for t in terminals):
                problems.append(f"no terminal node delivers the output via {wanted.type}")
        return problems

    def validate(self, spec: WorkflowSpec, scope: ScopeData | None = None) -> WorkflowSpec:
        """Structural checks before publishing. Raises ValidationError listing every problem."""
        problems = self._shape_problems(spec, scope)
        if not spec.name.strip():
            problems.append("workflow name is required")

        names = spec.node_names()
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            problems.append(f"duplicate node names: {', '.join(duplicates)}")
        for node in spec.nodes:
            if not catalog.is_known(node.type):
                problems.append(f"node {node.name!r} has unsupported type {node.type}")
        for source, conns in spec.connections.items():
            if source not in names:
                problems.append(f"connection from unknown node {source!r}")
            for c in conns:
                if c.target not in names:
                    problems.append(f"connection from {source!r} to unknown node {c.target!r}")

        if _SECRET_PATTERNS.search(json.dumps([n.parameters for n in spec.nodes])):
            problems.append("hard-coded credentials found in node parameters; use n8n credentials instead")

        if problems:
            raise ValidationError("Workflow failed validation: " + "; ".join(problems), detail=problems)
        return spec


def _default_name(node_type: str) -> str:
    known = catalog.get(node_type)
    return known.display_name if known else node_type.rsplit(".", 1)[-1]


def _unique_names(names: list[str]) -> list[str]:
    seen: dict[str, int] = {}
    result: list[str] = []
    for name in names:
        if name in seen:
            seen[name] += 1
            result.append(f"{name} {seen[name]}")
        else:
            seen[name] = 1
            result.append(name)
    return result


def _flatten_targets(targets: Any) -> list[dict[str, Any]]:
    """Accept both the flat [{node, index}] form and n8n's {"main": [[...]]} form."""
    if isinstance(targets, dict):
        targets = [t for slot in targets.get("main", []) for t in (slot or [])]
    return [t for t in (targets or []) if isinstance(t, dict) and t.get("node")]
