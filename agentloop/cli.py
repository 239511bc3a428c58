"""CLI for AgentLoop - chat with a local tool-calling agent."""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from agentloop import __version__
from agentloop.config import Settings
from agentloop.parser import format_arguments
from agentloop.permissions import PermissionGate
from agentloop.schemas import LoopOutcome, ToolCall

LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]
EXIT_COMMANDS = {"/exit", "/quit"}


def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _gate(settings: Settings) -> PermissionGate:
    return PermissionGate(
        db_path=settings.permissions_db_path,
        audit_capacity=settings.AUDIT_CAPACITY,
        persist_approvals=settings.PERSIST_APPROVALS,
    )


def _echo_token(piece: str) -> None:
    click.echo(piece, nl=False)


def _make_approver(auto_approve: bool):
    async def approve(call: ToolCall) -> bool:
        if auto_approve:
            return True
        click.echo()
        question = f"Allow {call.name}({format_arguments(call.arguments)})?"
        return await asyncio.to_thread(click.confirm, question, default=False)

    return approve


def _report(outcome: LoopOutcome) -> None:
    click.echo()
    if not outcome.ok:
        click.echo(f"[{outcome.status.value}] {outcome.error}", err=True)


@click.group()
@click.version_option(version=__version__, prog_name="agentloop")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level (defaults to AGENTLOOP_LOG_LEVEL)",
)
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """AgentLoop - a local tool-calling agent on top of Ollama.

    Messages are answered by a local model that can call tools (read and
    write files, run commands, fetch URLs) after asking for permission.
    """
    settings = Settings()
    _init_logging(log_level or settings.LOG_LEVEL)
    ctx.obj = settings


@main.command()
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Approve every tool call without asking")
@click.pass_obj
def chat(settings: Settings, auto_approve: bool) -> None:
    """Start an interactive chat session.

    \b
    Type /clear to start over and /exit to quit.
    """
    from agentloop.services import build_services

    async def repl() -> None:
        services = build_services(settings)
        approve = _make_approver(auto_approve)
        try:
            while True:
                try:
                    text = await asyncio.to_thread(click.prompt, "You", prompt_suffix="> ")
                except (EOFError, click.Abort):
                    click.echo()
                    break
                text = text.strip()
                if not text:
                    continue
                if text in EXIT_COMMANDS:
                    break
                if text == "/clear":
                    await services.session.clear()
                    click.echo("Conversation cleared.")
                    continue
                outcome = await services.session.submit(text, on_token=_echo_token, approve=approve)
                _report(outcome)
        finally:
            await services.aclose()

    asyncio.run(repl())


@main.command()
@click.argument("message")
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Approve every tool call without asking")
@click.pass_obj
def ask(settings: Settings, message: str, auto_approve: bool) -> None:
    """Answer a single MESSAGE and exit.

    \b
    Example:
        agentloop ask "how many images are in ~/Pictures?"
    """
    from agentloop.services import build_services

    async def run() -> LoopOutcome:
        services = build_services(settings)
        try:
            return await services.session.submit(message, on_token=_echo_token, approve=_make_approver(auto_approve))
        finally:
            await services.aclose()

    outcome = asyncio.run(run())
    _report(outcome)
    if not outcome.ok:
        sys.exit(1)


@main.command()
@click.option("--port", default=None, type=int, help="Port to run the API on")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.pass_obj
def serve(settings: Settings, port: int | None, host: str | None, reload: bool) -> None:
    """Start the AgentLoop HTTP API server."""
    import uvicorn

    host = host or settings.API_HOST
    port = port or settings.API_PORT
    click.echo(f"Starting AgentLoop API on {host}:{port}")
    uvicorn.run(
        "agentloop.broker:app",
        host=host,
        port=port,
        reload=reload,
    )


@main.command()
@click.pass_obj
def tools(settings: Settings) -> None:
    """List the available tools."""
    from agentloop.capabilities import default_registry

    for capability in default_registry(settings):
        flags = []
        if capability.requires_permission:
            flags.append("needs approval")
        if capability.cacheable:
            flags.append("approval cached")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"{capability.name}{suffix}")
        click.echo(f"    {capability.description}")
        click.echo(f"    {capability.usage_template}")


@main.command()
@click.argument("message")
@click.pass_obj
def route(settings: Settings, message: str) -> None:
    """Show which model and path MESSAGE would be routed to."""
    from agentloop.router import ModelRouter

    router = ModelRouter(settings)
    click.echo(f"Model: {router.select(message)}")
    path = "agent loop" if not settings.CHAT_ROUTING or router.needs_tools(message) else "chat"
    click.echo(f"Path: {path}")


@main.group()
def permissions() -> None:
    """Manage stored tool permissions."""
    pass


@permissions.command("list")
@click.pass_obj
def permissions_list(settings: Settings) -> None:
    """List persistent permissions."""
    scopes = _gate(settings).scopes()
    if not scopes:
        click.echo("No stored permissions.")
        return
    for scope in scopes:
        paths = ", ".join(scope.allowed_path_prefixes) if scope.allowed_path_prefixes is not None else "all paths"
        expires = scope.expires_at.isoformat() if scope.expires_at else "never"
        click.echo(f"  - {scope.tool_name}: {paths} (expires: {expires})")


@permissions.command("grant")
@click.argument("tool_name")
@click.option("--path", "paths", multiple=True, help="Restrict to this path prefix (repeatable)")
@click.option("--ttl", type=float, default=None, help="Lifetime in seconds")
@click.pass_obj
def permissions_grant(settings: Settings, tool_name: str, paths: tuple[str, ...], ttl: float | None) -> None:
    """Grant TOOL_NAME persistently.

    \b
    Example:
        agentloop permissions grant read_file --path ~/Documents
    """
    scope = _gate(settings).grant(
        tool_name,
        allowed_path_prefixes=list(paths) or None,
        ttl=ttl,
        session_only=False,
    )
    click.echo(f"Granted {scope.tool_name}")


@permissions.command("revoke")
@click.argument("tool_name")
@click.pass_obj
def permissions_revoke(settings: Settings, tool_name: str) -> None:
    """Revoke the permission for TOOL_NAME."""
    if _gate(settings).revoke(tool_name):
        click.echo(f"Revoked {tool_name}")
    else:
        click.echo(f"No permission stored for {tool_name}")


@permissions.command("clear")
@click.confirmation_option(prompt="Are you sure you want to remove all stored permissions?")
@click.pass_obj
def permissions_clear(settings: Settings) -> None:
    """Remove all stored permissions."""
    _gate(settings).clear()
    click.echo("All permissions cleared.")


@main.command()
@click.option("--limit", "-n", default=20, help="Number of entries to show")
@click.pass_obj
def audit(settings: Settings, limit: int) -> None:
    """Show recent approvals and denials."""
    entries = _gate(settings).audit_entries(limit=limit)
    if not entries:
        click.echo("Audit log is empty.")
        return
    for entry in entries:
        verdict = "approved" if entry.approved else "denied"
        click.echo(f"{entry.timestamp.isoformat()}  {verdict:<8}  {entry.tool_name}({format_arguments(entry.arguments)})")


if __name__ == "__main__":
    main()
