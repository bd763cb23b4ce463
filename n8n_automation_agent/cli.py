"""Interactive CLI for the n8n Automation Agent.

Runs the whole chat (scoping, permission check, creation pipeline)
directly in the terminal; no HTTP server required.

Usage:
    n8n-agent chat
    n8n-agent chat --user alice --returning
    n8n-agent serve --port 8000

Chat commands:
    /create   create the workflow from the confirmed requirements
    /modify   go back and change the requirements
    /grant    grant the permissions the last create request asked for
    /new      start a new chat
    /quit     exit
"""

from __future__ import annotations

import asyncio
import logging
import sys
from argparse import ArgumentParser

_COMMANDS = "/create  /modify  /grant  /new  /quit"


# ---------------------------------------------------------------------------
# Core interactive chat runner
# ---------------------------------------------------------------------------


async def _run_chat(user_id: str, is_returning: bool = False) -> None:
    """Run an interactive chat session against the configured n8n instance."""
    from dotenv import load_dotenv

    load_dotenv()

    from n8n_automation_agent.agent.events import PhaseChangeEvent

    coordinator, client, grants = create_coordinator_from_env()

    def _on_phase(event: PhaseChangeEvent) -> None:
        if event.previous_phase is event.new_phase:
            return
        line = f"  [{event.progress:3d}%] {event.new_phase.value}"
        if event.agent_id:
            line += f" ({event.agent_id})"
        if event.error_category:
            line += f" - {event.error_category.value}"
        print(line)

    coordinator.subscribe("phase_change", _on_phase)

    print(f"\nCommands: {_COMMANDS}")
    print("-" * 60)

    pending_permissions: dict | None = None
    try:
        reply = await coordinator.start_session(user_id, is_returning=is_returning)
        _print_reply(reply)
        session_id = reply.session_id

        while True:
            text = _prompt("\nyou> ")
            if not text:
                continue
            command = text.lower()
            if command in ("/quit", "/exit"):
                break
            if command == "/new":
                reply = await coordinator.start_session(user_id, is_returning=True)
                session_id = reply.session_id
            elif command == "/create":
                reply = await coordinator.request_creation(session_id)
            elif command == "/modify":
                reply = await coordinator.modify_requirements(session_id)
            elif command == "/grant":
                if not pending_permissions:
                    print("Nothing to grant. Use /create first.")
                    continue
                for service, scopes in pending_permissions.get("oauthServices", []):
                    grants.grant(user_id, service, scopes)
                    print(f"  granted {service}: {', '.join(scopes)}")
                reply = await coordinator.refresh_permissions(session_id)
            else:
                reply = await coordinator.submit(session_id, text)

            if reply.permissions is not None:
                pending_permissions = reply.permissions
            elif reply.dialogue.permission_state.value == "granted":
                pending_permissions = None
            _print_reply(reply)

    except KeyboardInterrupt:
        print("\n\nInterrupted.")
    finally:
        await coordinator.aclose()
        await client.close()


def _print_reply(reply) -> None:
    message = reply.message
    prefix = "error> " if message.is_error else "agent> "
    print(f"\n{prefix}{message.content}")
    if message.suggestions:
        print("       " + " | ".join(message.suggestions))
    if reply.permissions and reply.permissions.get("oauthServices"):
        for service, scopes in reply.permissions["oauthServices"]:
            print(f"       needs {service}: {', '.join(scopes)}")
        print("       (type /grant to simulate consent)")
    if reply.deployment and reply.deployment.phase_durations_ms:
        timings = ", ".join(f"{k} {v:.0f}ms" for k, v in reply.deployment.phase_durations_ms.items())
        print(f"       timings: {timings}")


def _prompt(label: str) -> str:
    """Read a line from stdin, stripping whitespace. Exits on EOF."""
    try:
        return input(label).strip()
    except EOFError:
        print("\n(EOF received, exiting)")
        sys.exit(0)


def create_coordinator_from_env():
    """Create a coordinator, client and grant store using environment variables.

    Sessions are kept in memory; they live as long as the CLI process.
    For persistent sessions, use the HTTP server (n8n-agent serve).
    """
    from n8n_automation_agent.agent import InMemoryGrantStore, create_coordinator
    from n8n_automation_agent.client import N8nSettings
    from n8n_automation_agent.persistence import InMemorySessionStore
    from n8n_automation_agent.reasoning import ReasoningSettings

    grants = InMemoryGrantStore()
    coordinator, client = create_coordinator(
        N8nSettings.from_env(),
        ReasoningSettings.from_env(),
        grants=grants,
        store=InMemorySessionStore(),
    )
    return coordinator, client, grants


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    parser = ArgumentParser(
        prog="n8n-agent",
        description="n8n Automation Agent: describe an automation, get a tested n8n workflow",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    chat_p = sub.add_parser("chat", help="Chat with the agent in the terminal")
    chat_p.add_argument("--user", default="cli-user", help="User id for the session (default: cli-user)")
    chat_p.add_argument("--returning", action="store_true", help="Greet as a returning user")
    chat_p.add_argument("-v", "--verbose", action="store_true", help="Show agent logs")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.add_argument("--reload", action="store_true")

    args = parser.parse_args()

    if args.command == "chat":
        logging.basicConfig(
            level=logging.INFO if args.verbose else logging.WARNING,
            format="%(levelname)s: %(message)s",
        )
        asyncio.run(_run_chat(args.user, args.returning))
    elif args.command == "serve":
        from n8n_automation_agent.api import serve

        serve(host=args.host, port=args.port, reload=args.reload)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
