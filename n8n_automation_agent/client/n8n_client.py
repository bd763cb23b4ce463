"""Async n8n public REST API client using httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from n8n_automation_agent.client.config import N8nSettings
from n8n_automation_agent.errors import (
    TransientNetworkError,
    ValidationError,
    WorkflowEngineError,
)

logger = logging.getLogger("n8n_automation_agent.client")

# n8n rejects these on create; "active" is server-assigned and read-only.
_READ_ONLY_WORKFLOW_FIELDS = ("active", "id", "createdAt", "updatedAt", "versionId", "tags")

_TRANSIENT_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
    httpx.TimeoutException,
)


class N8nClient:
    """Thin async wrapper around the n8n workflow endpoints the agents use.

    Errors are raised from the taxonomy in errors.py rather than returned:
    connection resets and timeouts become TransientNetworkError, 4xx become
    ValidationError, and 5xx become WorkflowEngineError.
    """

    def __init__(self, settings: N8nSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
            transport=transport,
        )

    @property
    def settings(self) -> N8nSettings:
        return self._settings

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        params: dict | None = None,
        allow_404: bool = False,
    ) -> Any:
        try:
            r = await self._client.request(method, path, json=payload, params=params)
        except _TRANSIENT_ERRORS as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e

        if r.status_code == 404 and allow_404:
            logger.debug("%s %s -> 404 (tolerated)", method, path)
            return None
        try:
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("%s %s -> %s", method, path, status)
            detail = _error_detail(e.response)
            if status < 500:
                raise ValidationError(
                    f"n8n rejected {method} {path} (HTTP {status}): {detail}",
                    detail={"status_code": status, "body": detail},
                ) from e
            raise WorkflowEngineError(
                f"n8n failed on {method} {path} (HTTP {status})",
                status_code=status,
                detail=detail,
            ) from e

        if not r.content or not r.text.strip():
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise WorkflowEngineError(
                f"n8n returned a non-JSON body for {method} {path}",
                status_code=r.status_code,
                detail=r.text[:300],
            ) from e

    # ==================================================================
    # SYSTEM
    # ==================================================================

    async def health(self) -> dict:
        """Probe GET /healthz. Never raises; returns {"status": ...} or {"error": ...}."""
        try:
            r = await self._client.get(self._settings.health_url)
            r.raise_for_status()
            body = r.json() if r.text.strip() else {}
            return {"status": body.get("status", "ok")}
        except Exception as e:
            return {"error": str(e)}

    # ==================================================================
    # WORKFLOWS
    # ==================================================================

    async def create_workflow(self, payload: dict[str, Any]) -> dict:
        """POST /workflows. Returns the created workflow including its server-assigned id."""
        body = {k: v for k, v in payload.items() if k not in _READ_ONLY_WORKFLOW_FIELDS}
        body.setdefault("settings", {"executionOrder": "v1"})
        result = await self._request("POST", "/workflows", body)
        if not isinstance(result, dict) or not result.get("id"):
            raise WorkflowEngineError("n8n did not return an id for the created workflow", detail=result)
        logger.info("Created workflow %s (%s)", result["id"], body.get("name"))
        return result

    async def get_workflow(self, workflow_id: str) -> dict | None:
        """GET /workflows/{id}. Returns None when the workflow does not exist."""
        return await self._request("GET", f"/workflows/{workflow_id}", allow_404=True)

    async def find_workflows(self, name: str) -> list[dict]:
        """Return workflows whose name matches exactly.

        Older n8n releases ignore the name filter, so results are filtered
        client-side as well.
        """
        result = await self._request("GET", "/workflows", params={"name": name, "limit": 250})
        items = result.get("data", []) if isinstance(result, dict) else []
        return [wf for wf in items if wf.get("name") == name]

    async def execute_workflow(self, workflow_id: str) -> dict:
        """POST /workflows/{id}/execute with an empty body."""
        result = await self._request("POST", f"/workflows/{workflow_id}/execute", {})
        return result if isinstance(result, dict) else {}

    async def delete_workflow(self, workflow_id: str) -> bool:
        """DELETE /workflows/{id}. Returns False when the workflow was already gone."""
        result = await self._request("DELETE", f"/workflows/{workflow_id}", allow_404=True)
        if result is None:
            logger.info("Workflow %s already deleted", workflow_id)
            return False
        logger.info("Deleted workflow %s", workflow_id)
        return True


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(body, dict):
        return str(body.get("message") or body)[:300]
    return str(body)[:300]
