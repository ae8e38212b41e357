"""KaliGuard CLI Entry Point.

Local command-line access to the execution pipeline, the history store and
the task scheduler. Every command builds the services from configuration,
does its work and flushes state before exiting; `serve` keeps the scheduler
running until interrupted.
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import structlog
import typer

from kaliguard.core.config import Settings, create_settings
from kaliguard.core.exceptions import ConfigurationError, KaliGuardError
from kaliguard.core.logconfig import configure_logging
from kaliguard.service import KaliGuard

log = structlog.get_logger()

T = TypeVar("T")

# Main app
app = typer.Typer(
    name="kaliguard",
    help="KaliGuard - Security-mediated execution of Kali tools",
    no_args_is_help=True,
)

history_app = typer.Typer(help="Execution history commands", no_args_is_help=True)
app.add_typer(history_app, name="history")

tasks_app = typer.Typer(help="Scheduled task commands", no_args_is_help=True)
app.add_typer(tasks_app, name="tasks")


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _parse_arguments(pairs: Optional[List[str]]) -> dict[str, str]:
    """Parse repeated ``key=value`` options."""
    arguments: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'")
        arguments[key] = value
    return arguments


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj


def _run(
    ctx: typer.Context,
    work: Callable[[KaliGuard], Awaitable[T]],
    run_scheduler: bool = False,
) -> T:
    """Start the services, run work, and flush state on the way out."""

    async def _main() -> T:
        guard = KaliGuard.from_settings(_settings(ctx))
        await guard.start(run_scheduler=run_scheduler)
        try:
            return await work(guard)
        finally:
            await guard.shutdown()

    try:
        return asyncio.run(_main())
    except (KaliGuardError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
) -> None:
    """KaliGuard CLI."""
    if config is not None and not config.exists():
        typer.echo(f"Error: Config file '{config}' not found", err=True)
        raise typer.Exit(code=1)
    try:
        settings = create_settings(system_config_path=config)
    except ConfigurationError as e:
        typer.echo(f"Error loading config: {e}", err=True)
        raise typer.Exit(code=1)

    configure_logging(settings.logging)
    if config is not None:
        log.info("config_loaded", path=str(config))
    ctx.obj = settings


@app.command("tools")
def list_tools(ctx: typer.Context) -> None:
    """List the tool catalog."""

    async def work(guard: KaliGuard) -> list[dict[str, Any]]:
        return guard.list_tools()

    _echo_json(_run(ctx, work))


@app.command("run")
def run_tool(
    ctx: typer.Context,
    tool: str = typer.Argument(..., help="Tool name"),
    arg: Optional[List[str]] = typer.Option(None, "--arg", "-a", help="Tool argument as key=value"),
    identity: str = typer.Option("cli", "--identity", "-i", help="Caller identity"),
    role: Optional[List[str]] = typer.Option(None, "--role", "-r", help="Caller role"),
) -> None:
    """Execute a tool through the pipeline."""
    arguments = _parse_arguments(arg)

    async def work(guard: KaliGuard) -> dict[str, Any]:
        response = await guard.execute(tool, arguments, identity=identity, roles=role or ())
        return response.to_dict()

    result = _run(ctx, work)
    _echo_json(result)
    if result["isError"]:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# History
# ----------------------------------------------------------------------


@history_app.command("list")
def history_list(
    ctx: typer.Context,
    identity: Optional[str] = typer.Option(None, "--identity", "-i"),
    limit: int = typer.Option(100, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """List history entries, newest first."""

    async def work(guard: KaliGuard) -> list[dict[str, Any]]:
        return [e.to_dict() for e in guard.history.list(identity, limit=limit, offset=offset)]

    _echo_json(_run(ctx, work))


@history_app.command("search")
def history_search(
    ctx: typer.Context,
    query: str = typer.Argument(...),
    identity: Optional[str] = typer.Option(None, "--identity", "-i"),
    limit: int = typer.Option(50, "--limit", "-n"),
) -> None:
    """Search command text, tool name and output."""

    async def work(guard: KaliGuard) -> list[dict[str, Any]]:
        return [e.to_dict() for e in guard.history.search(query, identity, limit=limit)]

    _echo_json(_run(ctx, work))


@history_app.command("show")
def history_show(ctx: typer.Context, entry_id: str = typer.Argument(...)) -> None:
    """Show one history entry."""

    async def work(guard: KaliGuard) -> Optional[dict[str, Any]]:
        entry = guard.history.get(entry_id)
        return entry.to_dict() if entry else None

    entry = _run(ctx, work)
    if entry is None:
        typer.echo(f"Error: Command not found in history: {entry_id}", err=True)
        raise typer.Exit(code=1)
    _echo_json(entry)


@history_app.command("replay")
def history_replay(
    ctx: typer.Context,
    entry_id: str = typer.Argument(...),
    identity: str = typer.Option("cli", "--identity", "-i"),
    role: Optional[List[str]] = typer.Option(None, "--role", "-r"),
) -> None:
    """Re-execute a past entry under a new identity."""

    async def work(guard: KaliGuard) -> dict[str, Any]:
        entry = await guard.history.replay(entry_id, identity, roles=role or ())
        return entry.to_dict()

    _echo_json(_run(ctx, work))


@history_app.command("clear")
def history_clear(
    ctx: typer.Context,
    identity: Optional[str] = typer.Option(None, "--identity", "-i"),
) -> None:
    """Clear all history, or one identity's entries."""

    async def work(guard: KaliGuard) -> int:
        return await guard.history.clear(identity)

    removed = _run(ctx, work)
    typer.echo(f"Removed {removed} entries")


# ----------------------------------------------------------------------
# Scheduled tasks
# ----------------------------------------------------------------------


@tasks_app.command("list")
def tasks_list(
    ctx: typer.Context,
    identity: Optional[str] = typer.Option(None, "--identity", "-i"),
) -> None:
    """List scheduled tasks by next run."""

    async def work(guard: KaliGuard) -> list[dict[str, Any]]:
        return [t.to_dict() for t in guard.scheduler.list_tasks(identity)]

    _echo_json(_run(ctx, work))


@tasks_app.command("create")
def tasks_create(
    ctx: typer.Context,
    name: str = typer.Argument(...),
    cron: str = typer.Argument(..., help="Crontab expression, e.g. '0 * * * *'"),
    tool: str = typer.Argument(...),
    arg: Optional[List[str]] = typer.Option(None, "--arg", "-a", help="Tool argument as key=value"),
    identity: str = typer.Option("cli", "--identity", "-i"),
    role: Optional[List[str]] = typer.Option(None, "--role", "-r"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    disabled: bool = typer.Option(False, "--disabled", help="Create without a live timer"),
) -> None:
    """Create a scheduled task."""
    arguments = _parse_arguments(arg)

    async def work(guard: KaliGuard) -> dict[str, Any]:
        task = await guard.scheduler.create_task(
            name=name,
            cron_expression=cron,
            tool_name=tool,
            identity=identity,
            arguments=arguments,
            enabled=not disabled,
            description=description,
            roles=role or (),
        )
        return task.to_dict()

    _echo_json(_run(ctx, work))


@tasks_app.command("update")
def tasks_update(
    ctx: typer.Context,
    task_id: str = typer.Argument(...),
    name: Optional[str] = typer.Option(None, "--name"),
    cron: Optional[str] = typer.Option(None, "--cron"),
    enabled: Optional[bool] = typer.Option(None, "--enable/--disable"),
    arg: Optional[List[str]] = typer.Option(None, "--arg", "-a", help="Replace arguments"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
) -> None:
    """Update a scheduled task."""
    updates: dict[str, Any] = {}
    if name is not None:
        updates["name"] = name
    if cron is not None:
        updates["cron_expression"] = cron
    if enabled is not None:
        updates["enabled"] = enabled
    if arg:
        updates["arguments"] = _parse_arguments(arg)
    if description is not None:
        updates["description"] = description
    if not updates:
        typer.echo("Error: Nothing to update", err=True)
        raise typer.Exit(code=1)

    async def work(guard: KaliGuard) -> dict[str, Any]:
        task = await guard.scheduler.update_task(task_id, **updates)
        return task.to_dict()

    _echo_json(_run(ctx, work))


@tasks_app.command("delete")
def tasks_delete(ctx: typer.Context, task_id: str = typer.Argument(...)) -> None:
    """Delete a scheduled task."""

    async def work(guard: KaliGuard) -> bool:
        return await guard.scheduler.delete_task(task_id)

    if not _run(ctx, work):
        typer.echo(f"Error: Scheduled task not found: {task_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Deleted {task_id}")


@tasks_app.command("run")
def tasks_run(ctx: typer.Context, task_id: str = typer.Argument(...)) -> None:
    """Run a scheduled task now and wait for it to finish."""

    async def work(guard: KaliGuard) -> bool:
        started = await guard.scheduler.run_task_now(task_id)
        await guard.scheduler.wait_for_running()
        return started

    if not _run(ctx, work):
        typer.echo(f"Error: Scheduled task not found: {task_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Ran {task_id}")


@app.command("serve")
def serve(ctx: typer.Context) -> None:
    """Run the task scheduler until interrupted."""

    async def work(guard: KaliGuard) -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        typer.echo("KaliGuard scheduler running. Press Ctrl+C to stop.")
        await stop.wait()

    _run(ctx, work, run_scheduler=True)
    typer.echo("Stopped.")


if __name__ == "__main__":
    app()
