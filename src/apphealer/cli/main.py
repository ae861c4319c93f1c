"""AppHealer CLI application."""

from __future__ import annotations

import asyncio
import sys
from typing import List, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from apphealer import __version__
from apphealer.config import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_TARGETS_DIR,
    ConfigError,
    create_default_config,
    load_config,
    load_targets,
)
from apphealer.core.errors import HealerError
from apphealer.core.orchestrator import Healer
from apphealer.core.validator import validate_command
from apphealer.models import (
    CheckProfile,
    CheckStatus,
    DiagnosticExecution,
    HealerConfig,
    HealingExecution,
    HealingStatus,
    HealthStatus,
)

app = typer.Typer(
    name="apphealer",
    help="AppHealer - diagnose and heal web applications",
    no_args_is_help=True,
)
console = Console()

targets_app = typer.Typer(help="Target management commands")
app.add_typer(targets_app, name="targets")

patterns_app = typer.Typer(help="Learned pattern commands")
app.add_typer(patterns_app, name="patterns")


STATUS_STYLES = {
    CheckStatus.PASS: "green",
    CheckStatus.WARN: "yellow",
    CheckStatus.FAIL: "red",
    CheckStatus.ERROR: "magenta",
    CheckStatus.SKIPPED: "dim",
    HealingStatus.SUCCESS: "green",
    HealingStatus.HEALTHY: "green",
    HealingStatus.AWAITING_APPROVAL: "yellow",
    HealingStatus.FAILED: "red",
    HealingStatus.ROLLED_BACK: "magenta",
    HealingStatus.REJECTED: "dim",
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.DOWN: "red",
    HealthStatus.MAINTENANCE: "blue",
    HealthStatus.HEALING: "cyan",
}


def styled(value) -> str:
    style = STATUS_STYLES.get(value)
    text = value.value if hasattr(value, "value") else str(value)
    return f"[{style}]{text}[/{style}]" if style else text


def setup_logging(verbose: bool = False, config: HealerConfig | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"
    if config and not verbose:
        level = config.daemon.log_level

    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if config and config.daemon.log_file:
        logger.add(
            config.daemon.log_file,
            level="DEBUG",
            rotation=config.daemon.log_rotation,
            retention=config.daemon.log_retention,
        )


def get_healer(verbose: bool = False, recover: bool = True) -> Healer:
    """Load configuration and build a Healer.

    Commands that only read state pass `recover=False` so they never touch
    executions another process is running.
    """
    try:
        config = load_config()
    except ConfigError as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(1)
    setup_logging(verbose, config)
    return Healer(config, recover=recover)


def run(coro):
    """Run an engine coroutine, turning engine errors into a CLI exit."""
    try:
        return asyncio.run(coro)
    except HealerError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)


def results_table(diagnostic: DiagnosticExecution, title: str) -> Table:
    """Build a table of check results."""
    table = Table(title=title)
    table.add_column("Check", style="cyan")
    table.add_column("Category")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("ms", justify="right")
    for result in diagnostic.results:
        table.add_row(
            result.name,
            result.category.value,
            result.severity.value,
            styled(result.status),
            result.message,
            str(result.duration_ms),
        )
    return table


def print_execution(execution: HealingExecution) -> None:
    """Print a healing execution and its log trail."""
    console.print(
        f"Execution [cyan]{execution.id}[/cyan] on [cyan]{execution.target_id}[/cyan]: "
        f"{styled(execution.status)}"
        + (f" ({execution.reason})" if execution.reason else "")
    )
    diagnosis = execution.diagnosis
    if diagnosis:
        console.print(
            f"  Diagnosis: {diagnosis.diagnosis_type.value} "
            f"({diagnosis.confidence:.0%}, risk {diagnosis.risk_level.value})"
            + (f", culprit {diagnosis.culprit}" if diagnosis.culprit else "")
        )
        if diagnosis.suggested_action:
            console.print(f"  Action: {diagnosis.suggested_action}")
        for command in execution.commands or diagnosis.suggested_commands:
            console.print(f"    $ {command}")
    if execution.backup_id:
        console.print(f"  Backup: {execution.backup_id}")

    table = Table(title="Execution log")
    table.add_column("Time")
    table.add_column("Step", justify="right")
    table.add_column("Level")
    table.add_column("Message")
    for entry in execution.execution_logs:
        message = entry.message
        if entry.command:
            message += f"\n[dim]$ {entry.command}[/dim]"
        if entry.error:
            message += f"\n[red]{entry.error}[/red]"
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            str(entry.step) if entry.step is not None else "",
            entry.level.value,
            message,
        )
    console.print(table)


# ============================================================================
# General Commands
# ============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"AppHealer v{__version__}")


@app.command()
def init() -> None:
    """Create default configuration and an example target."""
    create_default_config()
    console.print(f"[green]✓ Config at {DEFAULT_CONFIG_FILE}[/green]")
    console.print(f"  Add targets to: {DEFAULT_TARGETS_DIR}/")


@app.command("validate")
def validate(command: str = typer.Argument(..., help="Shell command to check")) -> None:
    """Check whether a command would be allowed to run on a target."""
    result = validate_command(command)
    if result.valid:
        console.print("[green]✓ Command allowed[/green]")
    else:
        console.print(f"[red]✗ Command rejected: {result.reason}[/red]")
        raise typer.Exit(1)


# ============================================================================
# Target Commands
# ============================================================================


@targets_app.command("sync")
def targets_sync(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Load target files and register them."""
    healer = get_healer(verbose, recover=False)
    try:
        targets = load_targets(defaults=healer.config.healing)
    except ConfigError as e:
        console.print(f"[red]Error loading targets: {e}[/red]")
        raise typer.Exit(1)

    count = healer.sync_targets(targets)
    console.print(f"[green]✓ Synced {count} targets[/green]")


@targets_app.command("list")
def targets_list(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """List registered targets."""
    healer = get_healer(verbose, recover=False)
    targets = healer.list_targets()
    if not targets:
        console.print("[yellow]No targets registered[/yellow]")
        console.print(f"Add targets to {DEFAULT_TARGETS_DIR}/ and run 'apphealer targets sync'")
        return

    table = Table(title="Targets")
    table.add_column("Target", style="cyan")
    table.add_column("Health")
    table.add_column("Score", justify="right")
    table.add_column("Mode")
    table.add_column("Attempts", justify="right")
    table.add_column("Last Check")

    for target in targets:
        table.add_row(
            target.id,
            styled(target.health_status),
            str(target.health_score) if target.health_score is not None else "-",
            target.healing_mode.value + ("" if target.is_healer_enabled else " (off)"),
            f"{target.current_healing_attempts}/{target.max_healing_attempts}",
            target.last_health_check.strftime("%Y-%m-%d %H:%M") if target.last_health_check else "-",
        )
    console.print(table)


# ============================================================================
# Healing Commands
# ============================================================================


@app.command()
def diagnose(
    target_id: str = typer.Argument(..., help="Target to diagnose"),
    profile: Optional[CheckProfile] = typer.Option(None, "--profile", "-p", help="Check profile"),
    checks: Optional[List[str]] = typer.Option(None, "--check", "-c", help="Checks for the custom profile"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run diagnostic checks on a target without healing it."""
    healer = get_healer(verbose, recover=False)
    execution, diagnosis = run(healer.diagnose(target_id, profile, checks))
    console.print(results_table(execution, f"{target_id} - {execution.profile.value} profile"))

    console.print(f"Health score: [bold]{execution.health_score}[/bold]")
    console.print(
        f"Diagnosis: [bold]{diagnosis.diagnosis_type.value}[/bold] "
        f"(confidence {diagnosis.confidence:.0%})"
        + (f", culprit {diagnosis.culprit}" if diagnosis.culprit else "")
    )
    if diagnosis.suggested_action:
        console.print(f"Suggested action: {diagnosis.suggested_action}")
    for command in diagnosis.suggested_commands:
        console.print(f"  $ {command}")


@app.command()
def heal(
    target_id: str = typer.Argument(..., help="Target to heal"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Diagnose a target and heal it if its mode allows."""
    healer = get_healer(verbose)
    execution = run(healer.request_heal(target_id))
    print_execution(execution)
    if execution.status != HealingStatus.AWAITING_APPROVAL:
        return
    if execution.cannot_heal:
        console.print(
            f"No remediation to approve. Supply one with: "
            f"apphealer approve {execution.id} --command '<command>'"
        )
        console.print(f"Or close it with: apphealer reject {execution.id}")
    else:
        console.print(f"Approve with: apphealer approve {execution.id}")


@app.command()
def approve(
    execution_id: int = typer.Argument(..., help="Execution awaiting approval"),
    commands: Optional[List[str]] = typer.Option(
        None, "--command", "-c", help="Replace the suggested commands (repeatable)"
    ),
    by: str = typer.Option("operator", "--by", help="Who approves"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Approve and run a pending remediation."""
    healer = get_healer(verbose)
    execution = run(healer.approve(execution_id, commands or None, by))
    print_execution(execution)


@app.command()
def reject(
    execution_id: int = typer.Argument(..., help="Execution awaiting approval"),
    reason: str = typer.Option("Rejected by operator", "--reason", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Reject a pending remediation."""
    healer = get_healer(verbose)
    try:
        execution = healer.reject(execution_id, reason)
    except HealerError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Execution {execution.id} rejected[/green]")


@app.command()
def rollback(
    execution_id: int = typer.Argument(..., help="Failed execution to roll back"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Restore the backup taken before a failed healing."""
    healer = get_healer(verbose)
    execution = run(healer.rollback(execution_id))
    print_execution(execution)
    if execution.status != HealingStatus.ROLLED_BACK:
        raise typer.Exit(1)


@app.command()
def executions(
    target_id: Optional[str] = typer.Option(None, "--target", "-t", help="Filter by target"),
    limit: int = typer.Option(20, "--limit", "-n"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """List recent healing executions."""
    healer = get_healer(verbose, recover=False)
    rows = healer.list_executions(target_id, limit)
    if not rows:
        console.print("[yellow]No healing executions[/yellow]")
        return

    table = Table(title="Healing executions")
    table.add_column("ID", justify="right")
    table.add_column("Target", style="cyan")
    table.add_column("Status")
    table.add_column("Diagnosis")
    table.add_column("Reason")
    table.add_column("Started")
    for execution in rows:
        table.add_row(
            str(execution.id),
            execution.target_id,
            styled(execution.status),
            execution.diagnosis.diagnosis_type.value if execution.diagnosis else "-",
            execution.reason or "",
            execution.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def show(
    execution_id: int = typer.Argument(..., help="Execution id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Show a healing execution with its full log."""
    healer = get_healer(verbose, recover=False)
    execution = healer.get_execution(execution_id)
    if execution is None:
        console.print(f"[red]Execution {execution_id} not found[/red]")
        raise typer.Exit(1)
    print_execution(execution)

    for label, diagnostic_id in (
        ("Before healing", execution.diagnostic_execution_id),
        ("Verification", execution.verification_execution_id),
    ):
        diagnostic = healer.get_diagnostic(diagnostic_id) if diagnostic_id else None
        if diagnostic is not None:
            console.print(results_table(diagnostic, f"{label} - score {diagnostic.health_score}"))


@app.command()
def history(
    target_id: Optional[str] = typer.Option(None, "--target", "-t", help="Filter by target"),
    limit: int = typer.Option(20, "--limit", "-n"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """List recent diagnostic passes."""
    healer = get_healer(verbose, recover=False)
    rows = healer.list_diagnostics(target_id, limit)
    if not rows:
        console.print("[yellow]No diagnostic passes[/yellow]")
        return

    table = Table(title="Diagnostic passes")
    table.add_column("ID", justify="right")
    table.add_column("Target", style="cyan")
    table.add_column("Profile")
    table.add_column("Score", justify="right")
    table.add_column("Triggered by")
    table.add_column("At")
    for diagnostic in rows:
        table.add_row(
            str(diagnostic.id),
            diagnostic.target_id,
            diagnostic.profile.value,
            str(diagnostic.health_score),
            diagnostic.triggered_by,
            diagnostic.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


# ============================================================================
# Pattern Commands
# ============================================================================


@patterns_app.command("list")
def patterns_list(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """List learned patterns, most reliable first."""
    healer = get_healer(verbose, recover=False)
    patterns = healer.list_patterns()
    if not patterns:
        console.print("[yellow]No patterns learned yet[/yellow]")
        return

    table = Table(title="Healing patterns")
    table.add_column("ID", justify="right")
    table.add_column("Signature", style="cyan")
    table.add_column("Success", justify="right")
    table.add_column("Failure", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Auto")
    table.add_column("Reasoning")
    for pattern in patterns:
        table.add_row(
            str(pattern.id),
            pattern.signature,
            str(pattern.success_count),
            str(pattern.failure_count),
            f"{pattern.confidence:.0%}",
            "[green]yes[/green]" if pattern.auto_approved else "no",
            healer.patterns.reasoning(pattern),
        )
    console.print(table)


def _set_approval(pattern_id: int, approved: bool, verbose: bool) -> None:
    healer = get_healer(verbose, recover=False)
    pattern = healer.set_pattern_approval(pattern_id, approved)
    if pattern is None:
        console.print(f"[red]Pattern {pattern_id} not found[/red]")
        raise typer.Exit(1)
    state = "approved" if approved else "revoked"
    console.print(f"[green]✓ Pattern {pattern.signature} {state}[/green]")


@patterns_app.command("approve")
def patterns_approve(
    pattern_id: int = typer.Argument(..., help="Pattern id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Allow a pattern to heal automatically."""
    _set_approval(pattern_id, True, verbose)


@patterns_app.command("revoke")
def patterns_revoke(
    pattern_id: int = typer.Argument(..., help="Pattern id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Stop a pattern from healing automatically."""
    _set_approval(pattern_id, False, verbose)


@patterns_app.command("delete")
def patterns_delete(
    pattern_id: int = typer.Argument(..., help="Pattern id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Forget a learned pattern."""
    healer = get_healer(verbose, recover=False)
    if not healer.delete_pattern(pattern_id):
        console.print(f"[red]Pattern {pattern_id} not found[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Pattern {pattern_id} deleted[/green]")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
