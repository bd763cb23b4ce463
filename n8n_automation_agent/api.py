"""FastAPI service for the n8n workflow automation assistant.

Wraps the AgentCoordinator in an HTTP API. A client drives one chat:

  POST /sessions                          → greeting (new or returning user)
  POST /sessions/{id}/messages            → scoping dialogue, one turn per call
  POST /sessions/{id}/create              → permission check, then the creation
                                            pipeline runs to completed or failed
  POST /sessions/{id}/modify              → back to scoping from validating
  POST /sessions/{id}/permissions/refresh → re-check grants after consent
  GET  /sessions/{id}/events              → live phase / agent events (SSE)

The caller's identity comes from the X-User-Id header. Every route is
behind the optional AGENT_API_KEY bearer token.
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from n8n_automation_agent.agent.conversation import derive_dialogue_state
from n8n_automation_agent.agent.events import EVENT_TYPES, Event
from n8n_automation_agent.agent.models import ConversationSession
from n8n_automation_agent.errors import AgentError, ErrorCategory, UnauthenticatedError, explain

logger = logging.getLogger("n8n_automation_agent.api")

_SSE_KEEPALIVE_SECONDS = 15.0
_SSE_QUEUE_SIZE = 256

# ---------------------------------------------------------------------------
# API key authentication (optional, enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY env var.

    If AGENT_API_KEY is not set, all requests are allowed (open dev mode).
    If set, every request must carry 'Authorization: Bearer <key>'.
    """
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """The authenticated user's id, as forwarded by the auth proxy."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError("Missing X-User-Id header")
    return x_user_id.strip()


# ---------------------------------------------------------------------------
# Lifespan: build the coordinator once at startup, close everything on shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: initialize the agent on startup, clean up on shutdown."""
    from dotenv import load_dotenv

    load_dotenv()

    from n8n_automation_agent.agent import InMemoryGrantStore, create_coordinator
    from n8n_automation_agent.agent.events import EventBus
    from n8n_automation_agent.client import N8nSettings
    from n8n_automation_agent.persistence import EventLog, InMemorySessionStore, PostgresSessionStore
    from n8n_automation_agent.reasoning import ReasoningSettings

    n8n_settings = N8nSettings.from_env()
    reasoning_settings = ReasoningSettings.from_env()

    postgres_dsn = os.getenv("POSTGRES_DSN")
    bus = EventBus()
    event_log = None
    if postgres_dsn:
        store = PostgresSessionStore(postgres_dsn)
        await store.setup()
        event_log = EventLog(dsn=postgres_dsn)
        await event_log.setup()
        bus.subscribe_all(event_log.record)
    else:
        store = InMemorySessionStore()

    logger.info(
        "Starting n8n Automation Agent | n8n: %s | Engine: %s | Persistence: %s",
        n8n_settings.api_endpoint,
        reasoning_settings.provider,
        "postgres" if postgres_dsn else "memory",
    )

    grants = InMemoryGrantStore()
    coordinator, client = create_coordinator(
        n8n_settings,
        reasoning_settings,
        grants=grants,
        store=store,
        bus=bus,
        persist_debounce=float(os.getenv("PERSIST_DEBOUNCE_SECONDS", "1.0")),
    )

    app.state.coordinator = coordinator
    app.state.client = client
    app.state.grants = grants
    app.state.event_log = event_log

    yield

    await coordinator.aclose()
    await client.close()
    await store.close()
    if event_log is not None:
        await event_log.close()

    logger.info("Shutting down n8n Automation Agent")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


_rate_limit = os.getenv("RATE_LIMIT_SESSIONS_PER_MIN", "10")
limiter = Limiter(key_func=get_remote_address, default_limits=[f"{_rate_limit}/minute"])

app = FastAPI(
    title="n8n Automation Agent API",
    description=(
        "Conversational assistant that turns a plain-language description of an "
        "automation into a tested, published n8n workflow."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:3001,http://localhost:3000").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.BUSY: 409,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.NETWORK: 503,
}


@app.exception_handler(AgentError)
async def _agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    status = _STATUS_BY_CATEGORY.get(exc.category, 500)
    if status >= 500:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={
            "detail": str(exc),
            "category": exc.category.value,
            "message": explain(exc),
        },
    )


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class StartSessionRequest(BaseModel):
    """Request body for POST /sessions."""

    is_returning: bool = Field(
        False,
        description="True when the user has chatted before; selects the returning-user greeting.",
    )


class MessageRequest(BaseModel):
    """Request body for POST /sessions/{id}/messages."""

    text: str = Field(
        ...,
        min_length=1,
        description="The user's chat message.",
        examples=["When I get a new email, summarize it and post it to Slack"],
    )


class GrantRequest(BaseModel):
    """Request body for POST /grants (development grant store)."""

    service: str = Field(..., description="OAuth service name, e.g. 'google' or 'slack'.")
    scopes: list[str] = Field(..., description="Scopes the user has consented to.")


class SessionSummary(BaseModel):
    """One entry in GET /sessions."""

    id: str
    title: str
    status: str
    created_at: str
    message_count: int = Field(0, description="Number of messages in the transcript.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_coordinator(request: Request):
    return request.app.state.coordinator


def _session_view(session: ConversationSession, busy: bool) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "mode": session.mode.value,
        "created_at": session.created_at.isoformat(),
        "busy": busy,
        "scope": session.scope.to_dict(),
        "dialogue": derive_dialogue_state(session.scope, session.permission_status).to_dict(),
        "permissions": session.permission_status.gate_output() if session.permission_status else None,
        "phase": session.phase.to_dict() if session.phase else None,
        "agents": {k: v.to_dict() for k, v in session.agent_states.items()},
        "messages": [m.to_dict() for m in session.messages],
        "workflow": session.last_spec.summary() if session.last_spec else None,
        "deployment": session.last_deployment.to_dict() if session.last_deployment else None,
    }


def _format_event_as_sse(event: Event) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.to_dict(), default=str)}\n\n"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"], dependencies=[Depends(_verify_api_key)])
async def health(request: Request) -> dict:
    """Health check. Verifies the API and the n8n connection are both up."""
    result = await request.app.state.client.health()
    n8n_ok = "error" not in result
    return {
        "api": "ok",
        "n8n": "ok" if n8n_ok else "unreachable",
        "n8n_detail": result,
    }


@app.post("/sessions", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{os.getenv('RATE_LIMIT_SESSIONS_PER_MIN', '10')}/minute")
async def create_session(
    request: Request,
    body: StartSessionRequest,
    user_id: str = Depends(_user_id),
) -> dict:
    """Start a new chat. Any session the user already has is superseded."""
    reply = await _get_coordinator(request).start_session(user_id, is_returning=body.is_returning)
    return reply.to_dict()


@app.get("/sessions", response_model=list[SessionSummary], tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def list_sessions(
    request: Request,
    limit: int = 20,
    user_id: str = Depends(_user_id),
) -> list[SessionSummary]:
    """The user's most recent sessions, newest first."""
    records = await _get_coordinator(request).list_sessions(user_id, limit=max(1, min(limit, 100)))
    return [
        SessionSummary(
            id=r["id"],
            title=r.get("title") or "",
            status=r.get("status") or "",
            created_at=str(r.get("created_at") or ""),
            message_count=len(r.get("messages") or []),
        )
        for r in records
    ]


@app.get("/sessions/{session_id}", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def get_session(session_id: str, request: Request, user_id: str = Depends(_user_id)) -> dict:
    """Live view of a session: mode, scope, phase, agents and transcript."""
    coordinator = _get_coordinator(request)
    session = coordinator.get_session(session_id, user_id)
    return _session_view(session, coordinator.is_busy(session_id))


@app.post("/sessions/{session_id}/messages", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def post_message(
    session_id: str,
    body: MessageRequest,
    request: Request,
    user_id: str = Depends(_user_id),
) -> dict:
    """Send one user message and return the assistant's reply."""
    reply = await _get_coordinator(request).submit(session_id, body.text, user_id=user_id)
    return reply.to_dict()


@app.post("/sessions/{session_id}/create", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def create_workflow(session_id: str, request: Request, user_id: str = Depends(_user_id)) -> dict:
    """The "Create Workflow" action.

    Returns the permission request when scopes are missing; otherwise runs
    the creation pipeline and returns the deployment outcome.
    """
    reply = await _get_coordinator(request).request_creation(session_id, user_id=user_id)
    return reply.to_dict()


@app.post("/sessions/{session_id}/modify", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def modify_requirements(session_id: str, request: Request, user_id: str = Depends(_user_id)) -> dict:
    """The "Modify Requirements" action."""
    reply = await _get_coordinator(request).modify_requirements(session_id, user_id=user_id)
    return reply.to_dict()


@app.post("/sessions/{session_id}/permissions/refresh", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def refresh_permissions(session_id: str, request: Request, user_id: str = Depends(_user_id)) -> dict:
    """Re-evaluate permissions after the user completed a consent flow."""
    reply = await _get_coordinator(request).refresh_permissions(session_id, user_id=user_id)
    return reply.to_dict()


@app.delete("/sessions/{session_id}", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def delete_session(session_id: str, request: Request, user_id: str = Depends(_user_id)) -> dict:
    """Delete a session. An in-flight creation is cancelled and rolled back."""
    await _get_coordinator(request).delete_session(session_id, user_id=user_id)
    return {"deleted": True, "session_id": session_id}


@app.post("/grants", tags=["permissions"], dependencies=[Depends(_verify_api_key)])
async def record_grant(body: GrantRequest, request: Request, user_id: str = Depends(_user_id)) -> dict:
    """Record scopes the user granted (development grant store)."""
    request.app.state.grants.grant(user_id, body.service, body.scopes)
    logger.info("Recorded grant for user %s: %s (%d scopes)", user_id, body.service, len(body.scopes))
    return {"service": body.service, "scopes": sorted(body.scopes)}


@app.get("/sessions/{session_id}/events", tags=["sessions"], dependencies=[Depends(_verify_api_key)])
async def stream_session_events(
    session_id: str,
    request: Request,
    user_id: str = Depends(_user_id),
) -> StreamingResponse:
    """Stream Coordinator events for a session as Server-Sent Events.

    SSE event types emitted:

      event: phase_change
      data: {"type":"phase_change","sessionId":"...","previousPhase":"designing",
             "newPhase":"building","progress":60,"agentId":"workflow-designer",...}

      event: agent_message
      data: {"type":"agent_message","sessionId":"...","fromAgent":"deployment",
             "payload":{"state":{...}}}

      event: task_completed
      data: {"type":"task_completed","sessionId":"...","agentId":"deployment",
             "taskId":"...","result":{...}}

    The stream stays open until the client disconnects; a keepalive
    comment is sent when no event arrives for a while.
    """
    coordinator = _get_coordinator(request)
    coordinator.get_session(session_id, user_id)

    queue: asyncio.Queue = asyncio.Queue(maxsize=_SSE_QUEUE_SIZE)

    def _enqueue(event: Event) -> None:
        if event.session_id != session_id:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("SSE queue full for session %s; dropping %s event", session_id, event.type)

    for event_type in EVENT_TYPES:
        coordinator.subscribe(event_type, _enqueue)

    async def event_stream():
        yield ": connected\n\n"
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _format_event_as_sse(event)
        finally:
            for event_type in EVENT_TYPES:
                coordinator.unsubscribe(event_type, _enqueue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import sys

    import uvicorn

    # Windows: psycopg async requires SelectorEventLoop (not the default ProactorEventLoop)
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "n8n_automation_agent.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
