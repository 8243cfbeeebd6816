"""CLI commands for execgate."""

import asyncio
import json
import platform
import sys
import time

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from execgate import __version__, __logo__

if platform.system() == "Windows":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

app = typer.Typer(
    name="execgate",
    help=f"{__logo__} execgate - command execution gate for agents",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} execgate v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logs"),
):
    """execgate - command execution gate for agents."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _build_request(
    command: list[str] | None,
    raw: str | None,
    cwd: str | None,
    agent: str | None,
    decision: str | None,
    timeout: int | None,
):
    from execgate.exec.types import RunRequest

    return RunRequest(
        command=command or None,
        raw_command=raw,
        cwd=cwd,
        agent_id=agent,
        session_key="cli",
        approval_decision=decision,
        timeout_ms=timeout * 1000 if timeout else None,
    )


async def _prompt_decision(pending) -> str:
    """Ask on the terminal whether a pending run may proceed."""
    console.print(f"\n[yellow]Approval required[/yellow] for: [cyan]{pending.cmd_text}[/cyan]")
    if pending.resolved_path:
        console.print(f"[dim]Executable: {pending.resolved_path}[/dim]")
    answer = await asyncio.to_thread(
        typer.prompt, "Decision [once/always/deny]", default="deny"
    )
    return {
        "once": "allow-once",
        "always": "allow-always",
    }.get(answer.strip().lower(), "deny")


# ============================================================================
# Run Commands
# ============================================================================


@app.command()
def run(
    command: list[str] = typer.Argument(None, help="Command argv (use -- before options)"),
    raw: str = typer.Option(None, "--raw", "-r", help="Raw shell command text"),
    cwd: str = typer.Option(None, "--cwd", "-C", help="Working directory"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id"),
    decision: str = typer.Option(None, "--decision", "-d", help="allow-once, allow-always or deny"),
    timeout: int = typer.Option(None, "--timeout", "-t", help="Timeout in seconds"),
    interactive: bool = typer.Option(True, "--interactive/--no-interactive", help="Prompt when approval is required"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw response"),
):
    """Run a command through the gate."""
    from execgate.config.loader import load_config
    from execgate.exec.binding import ApprovalBroker
    from execgate.exec.invoke import RunRequestHandler

    config = load_config().tools.exec
    broker = None
    if interactive and sys.stdin.isatty():
        broker = ApprovalBroker(config.approval_timeout_seconds, callback=_prompt_decision)

    handler = RunRequestHandler(config, broker=broker)
    request = _build_request(command, raw, cwd, agent, decision, timeout)
    async def _run():
        try:
            return await handler.handle(request)
        finally:
            await handler.aclose()

    response = asyncio.run(_run())

    if as_json:
        console.print_json(json.dumps(response.to_dict()))
        raise typer.Exit(0 if response.ok else 1)

    if not response.ok:
        console.print(f"[red]{response.error_code}: {response.error_message}[/red]")
        raise typer.Exit(1)

    payload = response.payload or {}
    if payload.get("stdout"):
        sys.stdout.write(payload["stdout"])
    if payload.get("stderr"):
        sys.stderr.write(payload["stderr"])
    if payload.get("error"):
        console.print(f"[yellow]{payload['error']}[/yellow]")
    exit_code = payload.get("exitCode")
    raise typer.Exit(exit_code if isinstance(exit_code, int) and exit_code >= 0 else 1)


@app.command()
def check(
    command: list[str] = typer.Argument(None, help="Command argv (use -- before options)"),
    raw: str = typer.Option(None, "--raw", "-r", help="Raw shell command text"),
    cwd: str = typer.Option(None, "--cwd", "-C", help="Working directory"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id"),
    decision: str = typer.Option(None, "--decision", "-d", help="Pretend this approval decision was given"),
):
    """Show how a command would be decided, without running it."""
    from execgate.config.loader import load_config
    from execgate.exec.errors import InvalidRequest
    from execgate.exec.invoke import RunRequestHandler

    config = load_config().tools.exec
    handler = RunRequestHandler(config)
    request = _build_request(command, raw, cwd, agent, decision, None)

    try:
        parsed = handler.parse(request)
    except InvalidRequest as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(1)

    async def _decide():
        try:
            return await handler.decide(parsed, wait_for_approval=False)
        finally:
            await handler.aclose()

    result = asyncio.run(_decide())
    verdict = result.verdict

    console.print(f"\n[bold cyan]{parsed.cmd_text}[/bold cyan]")
    console.print("─" * 40)
    console.print(f"Security: [cyan]{result.security}[/cyan]  Ask: [cyan]{result.approvals.ask}[/cyan]")
    if result.analysis.ok:
        console.print("Analysis: [green]ok[/green]")
    else:
        console.print(f"Analysis: [red]failed[/red] {result.analysis.reason or ''}")

    table = Table(title="Segments")
    table.add_column("Argv", style="cyan")
    table.add_column("Resolved")
    table.add_column("Satisfied by")
    for i, segment in enumerate(result.analysis.segments):
        resolved = segment.resolution.canonical_path if segment.resolution else "[red]unresolved[/red]"
        satisfied = result.evaluation.segment_satisfied_by[i] if i < len(result.evaluation.segment_satisfied_by) else None
        table.add_row(" ".join(segment.argv), resolved, satisfied or "[dim]-[/dim]")
    console.print(table)

    if verdict.allowed:
        console.print("[green]✓ allowed[/green]")
    else:
        console.print(f"[red]✗ denied[/red] ({verdict.event_reason}): {verdict.error_message}")


@app.command()
def policy(
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id"),
):
    """Show the effective exec policy for an agent."""
    from execgate.config.loader import load_config
    from execgate.exec.approvals import ExecApprovalStore

    config = load_config().tools.exec
    store = ExecApprovalStore(config.approvals_file)
    resolved = store.resolve(agent, config.security, config.ask, config.ask_fallback)

    console.print(f"\n[bold cyan]Exec Policy ({agent or 'defaults'})[/bold cyan]")
    console.print("─" * 40)
    console.print(f"Security: [cyan]{resolved.security}[/cyan]")
    console.print(f"Ask mode: [cyan]{resolved.ask}[/cyan]")
    console.print(f"Ask fallback: [cyan]{resolved.ask_fallback}[/cyan]")
    console.print(f"Auto-allow skills: [cyan]{resolved.auto_allow_skills}[/cyan]")
    console.print(f"Allowlist entries: [cyan]{len(resolved.allowlist)}[/cyan]")
    console.print(f"Approvals file: [dim]{store.path}[/dim]")

    if resolved.security == "deny":
        console.print("\n[yellow]⚠️  Command execution is currently DENIED[/yellow]")
        console.print("[dim]Set tools.exec.security in the config to enable[/dim]")


# ============================================================================
# Allowlist Commands
# ============================================================================

allowlist_app = typer.Typer(help="Manage the exec allowlist")
app.add_typer(allowlist_app, name="allowlist")


def _store():
    from execgate.config.loader import load_config
    from execgate.exec.approvals import ExecApprovalStore

    return ExecApprovalStore(load_config().tools.exec.approvals_file)


@allowlist_app.command("list")
def allowlist_list(
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id (default: shared defaults)"),
):
    """List allowlist entries."""
    approvals = _store().load()
    agent_policy = approvals.agents.get(agent) if agent else approvals.defaults
    entries = agent_policy.allowlist if agent_policy else []

    if not entries:
        console.print("[dim]No allowlist entries.[/dim]")
        return

    table = Table(title="Exec Allowlist")
    table.add_column("Pattern", style="cyan")
    table.add_column("Uses")
    table.add_column("Last Used")
    table.add_column("Command")

    for entry in entries:
        last_used = ""
        if entry.last_used_at:
            last_used = time.strftime("%Y-%m-%d %H:%M", time.localtime(entry.last_used_at / 1000))
        cmd = entry.last_used_command or ""
        if len(cmd) > 40:
            cmd = cmd[:40] + "..."
        table.add_row(entry.pattern, str(entry.use_count), last_used, cmd)

    console.print(table)


@allowlist_app.command("add")
def allowlist_add(
    pattern: str = typer.Argument(..., help="Absolute executable path pattern (supports glob)"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id (default: shared defaults)"),
):
    """Add a pattern to the allowlist."""
    from execgate.exec.allowlist import parse_pattern

    if parse_pattern(pattern) is None:
        console.print(f"[red]Pattern must start with an executable path: {pattern}[/red]")
        raise typer.Exit(1)

    if _store().add_allowlist_entry(agent, pattern):
        console.print(f"[green]✓[/green] Added [cyan]{pattern}[/cyan] to allowlist")
    else:
        console.print(f"[dim]Already allowed: {pattern}[/dim]")


@allowlist_app.command("remove")
def allowlist_remove(
    pattern: str = typer.Argument(..., help="Pattern to remove"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id (default: shared defaults)"),
):
    """Remove a pattern from the allowlist."""
    if _store().remove_allowlist_entry(agent, pattern):
        console.print(f"[green]✓[/green] Removed [cyan]{pattern}[/cyan] from allowlist")
    else:
        console.print(f"[yellow]Pattern not found: {pattern}[/yellow]")


@allowlist_app.command("safe-bins")
def allowlist_safe_bins():
    """List safe bins allowed for stdin-only use."""
    from execgate.config.loader import load_config
    from execgate.exec.allowlist import resolve_safe_bin_runtime_policy

    config = load_config().tools.exec
    runtime = resolve_safe_bin_runtime_policy(config.safe_bins, None, config.trusted_dirs)

    console.print("\n[bold]Safe Bins (allowed for stdin-only operations):[/bold]")
    for entry in sorted(runtime.safe_bins, key=lambda e: e.name):
        console.print(f"  • {entry.name} [dim]{entry.canonical_path}[/dim]")
    console.print(f"\n[dim]Trusted dirs: {', '.join(runtime.trusted_dirs)}[/dim]")


if __name__ == "__main__":
    app()
