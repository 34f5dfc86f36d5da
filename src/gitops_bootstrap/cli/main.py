"""Main CLI entry point using Typer."""

from __future__ import annotations

import typer
from rich.console import Console

from gitops_bootstrap import __version__
from gitops_bootstrap.cli.commands import install
from gitops_bootstrap.logging.config import configure_logging

app = typer.Typer(
    name="gitops-bootstrap",
    help="Bootstrap a GitOps controller onto a local cluster.",
    add_completion=True,
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"gitops-bootstrap version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug mode.",
    ),
    silent: bool = typer.Option(
        False,
        "--silent",
        "-s",
        help="Only print errors.",
    ),
) -> None:
    """GitOps bootstrap - install the controller stack into a cluster."""
    configure_logging(verbose=verbose, debug=debug, silent=silent)
    ctx.obj = {"verbose": verbose or debug, "silent": silent}


app.command()(install.install)


if __name__ == "__main__":
    app()
