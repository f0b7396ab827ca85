"""
ctxkeep.cli — Command-line interface for ctxkeep.

Usage:
    ctxkeep hook                   Handle a host lifecycle event (JSON on stdin)
    ctxkeep status                 Show whether this project has saved context
    ctxkeep show                   Print the saved context as markdown
    ctxkeep save -s ID -m TEXT     Save context for a session
    ctxkeep load [--scope S]       Resolve and print context (auto/local/remote)
    ctxkeep clear [--remote]       Delete saved context
    ctxkeep locations              Preview local and remote copies
    ctxkeep replay                 Page the replay back to an older stopping point
    ctxkeep mcp                    Start the MCP server (stdio transport)
    ctxkeep serve                  Start the remote context store on localhost:8787
    ctxkeep remote status|push|pull
    ctxkeep config get|set
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from ctxkeep.core.errors import ContextError, NotFound
from ctxkeep.core.models import PROJECT_CONFIG_KEYS, GlobalConfig, KeeperConfig, OperationResponse, Source

console = Console()
err_console = Console(stderr=True)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s — %(message)s"


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")


def _get_config(path: str | None = None) -> KeeperConfig:
    try:
        return KeeperConfig.for_project(Path(path) if path else None)
    except ContextError as exc:
        console.print(f"[red]✗[/red] {exc.message}")
        sys.exit(1)


def _get_engine(path: str | None = None):
    from ctxkeep.operations.engine import ContextEngine
    engine = ContextEngine(_get_config(path))
    click.get_current_context().call_on_close(engine.close)
    return engine


def _report(resp: OperationResponse, markdown: bool = False) -> None:
    """Print an operation's outcome and exit non-zero on failure."""
    if not resp.success:
        console.print(f"[red]✗[/red] {resp.message}")
        sys.exit(1)
    if markdown:
        console.print(Markdown(resp.message))
    else:
        console.print(f"[green]✓[/green] {resp.message}")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """ctxkeep — persistent working context for coding assistants."""
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# hook
# ---------------------------------------------------------------------------

@main.command()
def hook() -> None:
    """Handle a lifecycle event from the host (hook JSON on stdin)."""
    from ctxkeep.operations.hooks import HookHandler, parse_hook_input

    # stdout is read back by the host; logging from basicConfig goes to stderr
    try:
        hook_input = parse_hook_input(sys.stdin.read())
    except ContextError as exc:
        err_console.print(f"[red]✗[/red] {exc.message}")
        sys.exit(1)

    result = HookHandler().handle(hook_input)
    if result.output:
        click.echo(result.output)
    if result.error:
        err_console.print(f"[yellow]![/yellow] {result.error}")


# ---------------------------------------------------------------------------
# status / show
# ---------------------------------------------------------------------------

@main.command()
@click.option("--path", default=None, help="Project root (default: discovered from CWD).")
def status(path: str | None) -> None:
    """Show whether this project has saved context."""
    engine = _get_engine(path)
    resp = engine.status()
    if not resp.success:
        _report(resp)

    table = Table(title="ctxkeep Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Project", str(engine.project_dir))
    for key, value in resp.detail.items():
        if isinstance(value, dict):
            value = value.get("message", json.dumps(value))
        table.add_row(key.replace("_", " ").title(), str(value))
    console.print(table)


@main.command()
@click.option("--path", default=None, help="Project root.")
def show(path: str | None) -> None:
    """Print the saved local context as markdown."""
    from ctxkeep.operations.engine import format_context

    engine = _get_engine(path)
    try:
        record = engine.local.load()
    except NotFound:
        console.print("[yellow]No saved context.[/yellow]")
        return
    except ContextError as exc:
        console.print(f"[red]✗[/red] {exc.message}")
        sys.exit(1)
    console.print(Markdown(format_context(record)))


# ---------------------------------------------------------------------------
# save / load / clear
# ---------------------------------------------------------------------------

@main.command()
@click.option("-s", "--session", "session_id", required=True, help="Session ID.")
@click.option("-m", "--summary", required=True, help="Summary of the work so far.")
@click.option("-f", "--file", "key_files", multiple=True, help="Key file (repeatable).")
@click.option("-t", "--task", "active_tasks", multiple=True, help="Active task (repeatable).")
@click.option("--transcript", default=None, type=click.Path(dir_okay=False), help="Session transcript (JSONL).")
@click.option("--remote/--no-remote", "save_remote", default=False, help="Also save to the remote store.")
@click.option("--path", default=None, help="Project root.")
def save(
    session_id: str,
    summary: str,
    key_files: tuple[str, ...],
    active_tasks: tuple[str, ...],
    transcript: str | None,
    save_remote: bool,
    path: str | None,
) -> None:
    """Save context for a session."""
    engine = _get_engine(path)
    resp = engine.save(
        session_id=session_id,
        summary=summary,
        key_files=list(key_files) or None,
        active_tasks=list(active_tasks) or None,
        transcript_path=transcript,
        save_remote=save_remote,
    )
    _report(resp)
    if resp.detail.get("replay_tokens"):
        console.print(f"  Replay: ~{resp.detail['replay_tokens']} tokens")


@main.command()
@click.option("--scope", type=click.Choice(["auto", "local", "remote"]), default="auto", show_default=True)
@click.option("--path", default=None, help="Project root.")
def load(scope: str, path: str | None) -> None:
    """Resolve the context to restore and print it."""
    _report(_get_engine(path).load(scope=scope), markdown=True)


@main.command()
@click.option("--remote", "include_remote", is_flag=True, help="Also delete the remote copy.")
@click.option("--path", default=None, help="Project root.")
@click.confirmation_option(prompt="Delete the saved context?")
def clear(include_remote: bool, path: str | None) -> None:
    """Delete the saved context."""
    _report(_get_engine(path).clear(include_remote=include_remote))


@main.command()
@click.option("--path", default=None, help="Project root.")
def locations(path: str | None) -> None:
    """Preview every stored copy of this project's context."""
    _report(_get_engine(path).list_locations(), markdown=True)


@main.command()
@click.option("--stop", "stop_point_index", type=int, default=None, help="Stopping point to anchor at.")
@click.option("--max-tokens", type=int, default=None, help="Token budget for the window.")
@click.option("--path", default=None, help="Project root.")
def replay(stop_point_index: int | None, max_tokens: int | None, path: str | None) -> None:
    """Replay earlier conversation, one stopping point further back."""
    resp = _get_engine(path).load_more(stop_point_index=stop_point_index, max_tokens=max_tokens)
    _report(resp, markdown=True)
    if resp.detail.get("has_more"):
        console.print("[dim]More history is available: run `ctxkeep replay` again.[/dim]")


# ---------------------------------------------------------------------------
# mcp / serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--path", default=None, help="Project root.")
def mcp(path: str | None) -> None:
    """Start the MCP server on stdin/stdout."""
    from ctxkeep.mcp_server import run_mcp_stdio, setup_stderr_logging

    setup_stderr_logging()
    run_mcp_stdio(Path(path) if path else None)


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind host.")
@click.option("--port", default=8787, type=int, help="Bind port.")
@click.option("--reload", "do_reload", is_flag=True, help="Enable auto-reload for development.")
def serve(host: str, port: int, do_reload: bool) -> None:
    """Start the remote context store server."""
    import uvicorn

    console.print(f"[bold green]Starting ctxkeep store[/] on {host}:{port}")
    uvicorn.run(
        "ctxkeep.server:app_from_env",
        factory=True,
        host=host,
        port=port,
        reload=do_reload,
        log_level="info",
    )


# ---------------------------------------------------------------------------
# remote
# ---------------------------------------------------------------------------

@main.group()
def remote() -> None:
    """Work with the remote context store."""


def _remote_engine(path: str | None):
    engine = _get_engine(path)
    if engine.remote is None:
        console.print("[red]✗[/red] Remote storage is not configured "
                      "(set remote_url with `ctxkeep config set remote_url URL`).")
        sys.exit(1)
    return engine


@remote.command("status")
@click.option("--path", default=None, help="Project root.")
def remote_status(path: str | None) -> None:
    """Check the remote store and this project's copy."""
    engine = _remote_engine(path)
    healthy = engine.remote.health_check()
    console.print(f"Remote: [bold]{engine.config.remote_url}[/bold] "
                  + ("[green]reachable[/green]" if healthy else "[red]unreachable[/red]"))
    if not healthy:
        sys.exit(1)
    resp = engine.remote_summary()
    if resp.success:
        console.print(f"  Session: {resp.detail.get('session_id')}")
        console.print(f"  Summary: {resp.message[:200]}")
    else:
        console.print(f"  [dim]{resp.message}[/dim]")


@remote.command("push")
@click.option("--path", default=None, help="Project root.")
def remote_push(path: str | None) -> None:
    """Upload the local context to the remote store."""
    engine = _remote_engine(path)
    try:
        record = engine.local.load()
        engine.resolver.save(record, engine.project_dir, save_local=False, save_remote=True)
    except ContextError as exc:
        console.print(f"[red]✗[/red] {exc.message}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Pushed session {record.session_id}")


@remote.command("pull")
@click.option("--path", default=None, help="Project root.")
def remote_pull(path: str | None) -> None:
    """Replace the local context with the remote copy."""
    engine = _remote_engine(path)
    resolution = engine.resolver.resolve(engine.project_dir, force_source=Source.REMOTE)
    if resolution.context is None:
        console.print("[yellow]No remote context for this project.[/yellow]")
        sys.exit(1)
    try:
        engine.local.save(resolution.context)
    except ContextError as exc:
        console.print(f"[red]✗[/red] {exc.message}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Pulled session {resolution.context.session_id}")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------

@main.group()
def config() -> None:
    """Read and write settings."""


@config.command("get")
@click.argument("key", required=False)
@click.option("--path", default=None, help="Project root.")
def config_get(key: str | None, path: str | None) -> None:
    """Show effective settings (or one KEY)."""
    cfg = _get_config(path)
    keys = [key] if key else list(PROJECT_CONFIG_KEYS)
    for k in keys:
        if k not in PROJECT_CONFIG_KEYS:
            console.print(f"[red]✗[/red] Unknown key: {k}")
            sys.exit(1)
        value = getattr(cfg, k)
        if k == "api_key" and value:
            value = value[:4] + "…"
        console.print(f"{k} = {value}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--global", "is_global", is_flag=True, help="Write the user-level config instead.")
@click.option("--path", default=None, help="Project root.")
def config_set(key: str, value: str, is_global: bool, path: str | None) -> None:
    """Set KEY to VALUE in the project (or global) config."""
    parsed: object = value
    if value.lower() in ("true", "false"):
        parsed = value.lower() == "true"

    if is_global:
        if key not in GlobalConfig.model_fields:
            console.print(f"[red]✗[/red] Not a global setting: {key}")
            sys.exit(1)
        gc = GlobalConfig.load().model_copy(update={key: parsed})
        written = GlobalConfig.model_validate(gc.model_dump()).save()
    else:
        try:
            root = Path(path) if path else None
            written = KeeperConfig.locate(root).save_project_config(**{key: parsed})
        except ContextError as exc:
            console.print(f"[red]✗[/red] {exc.message}")
            sys.exit(1)
    console.print(f"[green]✓[/green] {key} written to [bold]{written}[/bold]")


if __name__ == "__main__":
    main()
