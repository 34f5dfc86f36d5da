"""Rendering of :class:`InstallOutcome` for the terminal."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gitops_bootstrap.core.exceptions import ToolUnavailableError
from gitops_bootstrap.services.bootstrap.models import InstallOutcome, Phase

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def exit_code_for(outcome: InstallOutcome) -> int:
    """Map an outcome to the process exit status."""
    if outcome.success:
        return EXIT_SUCCESS
    if outcome.cancelled:
        return EXIT_CANCELLED
    return EXIT_FAILURE


def _phase_table(outcome: InstallOutcome) -> Table:
    table = Table(title="Installation Phases")
    table.add_column("Phase", style="cyan", no_wrap=True)
    table.add_column("Status")
    for phase in Phase:
        if phase in outcome.completed_phases:
            status = "[green]done[/green]"
        elif phase is outcome.phase:
            status = "[yellow]cancelled[/yellow]" if outcome.cancelled else "[red]failed[/red]"
        elif outcome.phase is None and outcome.success:
            status = "[dim]skipped[/dim]"
        else:
            status = "[dim]not run[/dim]"
        table.add_row(phase.value, status)
    return table


def render_outcome(
    outcome: InstallOutcome,
    console: Console,
    *,
    silent: bool = False,
) -> None:
    """Print the run summary.

    In silent mode only failures are printed. The diagnostics report, when
    present, is always shown after a failure.
    """
    if outcome.success:
        if not silent:
            console.print(_phase_table(outcome))
            console.print("\n[green]Installation completed successfully.[/green]")
        return

    if not silent and outcome.completed_phases:
        console.print(_phase_table(outcome))

    error = outcome.error
    phase = outcome.phase.value if outcome.phase else "setup"
    if outcome.cancelled:
        console.print(f"\n[yellow]Installation cancelled during {phase}.[/yellow]")
        return

    console.print(f"\n[red]Installation failed during {phase}:[/red] {outcome.message}")
    if isinstance(error, ToolUnavailableError) and error.hint:
        console.print(f"[dim]Hint:[/dim] {error.hint}")
    missing = outcome.missing_targets
    if missing:
        console.print("[red]Still missing:[/red]")
        for target in missing:
            console.print(f"  - {target}")
    if outcome.diagnostics:
        console.print(
            Panel(
                Text(outcome.diagnostics),
                title="Diagnostics",
                border_style="red",
                expand=False,
            )
        )
