"""Install command: bootstrap the GitOps controller stack into a cluster."""

from __future__ import annotations

import signal
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

import structlog
import typer
from pydantic import ValidationError
from rich.console import Console

from gitops_bootstrap.cli.output import exit_code_for, render_outcome
from gitops_bootstrap.cli.output.outcome import EXIT_FAILURE
from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import (
    APP_OF_APPS_DEFAULT_NAMESPACE,
    APP_OF_APPS_DEFAULT_TIMEOUT,
    DEFAULT_CLUSTER_NAME,
)
from gitops_bootstrap.services.bootstrap import orchestrator
from gitops_bootstrap.services.bootstrap.models import (
    AppOfAppsConfig,
    ControllerConfig,
    DeploymentMode,
    ImageConfig,
    InstallRequest,
    TlsConfig,
)

console = Console()
logger = structlog.get_logger()

CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Iterator[None]:
    """Cancel ``token`` on SIGINT/SIGTERM while the block runs."""

    def handler(signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        logger.warning("cancellation_requested", signal=name)
        token.cancel(f"Interrupted by {name}")

    previous = {sig: signal.signal(sig, handler) for sig in CANCEL_SIGNALS}
    try:
        yield
    finally:
        for sig, old_handler in previous.items():
            signal.signal(sig, old_handler)


def build_request(
    *,
    cluster_name: str,
    deployment_mode: DeploymentMode | None,
    non_interactive: bool,
    dry_run: bool,
    skip_crds: bool,
    verbose: bool,
    silent: bool,
    app_of_apps_chart: str | None,
    values_file: Path | None,
    app_namespace: str,
    app_timeout: str,
    cert_file: Path | None,
    key_file: Path | None,
    controller_image: str | None,
    wait_for_apps: bool = False,
) -> InstallRequest:
    """Assemble an :class:`InstallRequest` from command options.

    Raises:
        typer.BadParameter: If option combinations are invalid.
        ValidationError: If a value fails model validation.
    """
    if (cert_file is None) != (key_file is None):
        raise typer.BadParameter("--cert-file and --key-file must be given together")
    if values_file is not None and app_of_apps_chart is None:
        raise typer.BadParameter("--values-file requires --app-of-apps-chart")
    if wait_for_apps and app_of_apps_chart is None:
        raise typer.BadParameter("--wait-for-apps requires --app-of-apps-chart")

    app_of_apps = None
    if app_of_apps_chart is not None:
        app_of_apps = AppOfAppsConfig(
            chart_path=app_of_apps_chart,
            values_file=str(values_file) if values_file else None,
            namespace=app_namespace,
            timeout=app_timeout,
        )
    tls = None
    if cert_file is not None and key_file is not None:
        tls = TlsConfig(cert_file=str(cert_file), key_file=str(key_file))
    controller = ControllerConfig()
    if controller_image:
        controller = ControllerConfig(image=ImageConfig.parse(controller_image))

    return InstallRequest(
        cluster_name=cluster_name,
        deployment_mode=deployment_mode,
        dry_run=dry_run,
        verbose=verbose,
        silent=silent,
        non_interactive=non_interactive,
        skip_resource_types=skip_crds,
        wait_for_applications=wait_for_apps,
        app_of_apps=app_of_apps,
        controller=controller,
        tls=tls,
    )


def install(
    ctx: typer.Context,
    cluster_name: str = typer.Argument(
        DEFAULT_CLUSTER_NAME,
        help="Name of the cluster to bootstrap (context is k3d-<name>).",
    ),
    deployment_mode: DeploymentMode | None = typer.Option(
        None,
        "--deployment-mode",
        "-m",
        help="Platform flavour deployed by the app-of-apps release.",
        case_sensitive=False,
    ),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Fail instead of prompting; requires --deployment-mode.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Render releases with helm --dry-run without changing the cluster.",
    ),
    skip_crds: bool = typer.Option(
        False,
        "--skip-crds",
        help="Do not install or wait for the controller's resource types.",
    ),
    app_of_apps_chart: str | None = typer.Option(
        None,
        "--app-of-apps-chart",
        help="Path to the app-of-apps chart. Omit to install only the controller.",
    ),
    values_file: Path | None = typer.Option(
        None,
        "--values-file",
        "-f",
        help="Values file for the app-of-apps release.",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    app_namespace: str = typer.Option(
        APP_OF_APPS_DEFAULT_NAMESPACE,
        "--app-namespace",
        help="Namespace of the app-of-apps release.",
    ),
    app_timeout: str = typer.Option(
        APP_OF_APPS_DEFAULT_TIMEOUT,
        "--app-timeout",
        help="Helm wait timeout for the app-of-apps release (e.g. 60m).",
    ),
    cert_file: Path | None = typer.Option(
        None,
        "--cert-file",
        help="TLS certificate for the local ingress.",
        dir_okay=False,
        resolve_path=True,
    ),
    key_file: Path | None = typer.Option(
        None,
        "--key-file",
        help="TLS private key for the local ingress.",
        dir_okay=False,
        resolve_path=True,
    ),
    controller_image: str | None = typer.Option(
        None,
        "--controller-image",
        help="Override the controller image (repository[:tag]).",
    ),
    wait_for_apps: bool = typer.Option(
        False,
        "--wait-for-apps",
        help="After the app-of-apps release, wait until every Application is Healthy and Synced.",
    ),
) -> None:
    """Install the GitOps controller and the app-of-apps release into a cluster."""
    options = ctx.obj or {}
    verbose = bool(options.get("verbose", False))
    silent = bool(options.get("silent", False))

    try:
        request = build_request(
            cluster_name=cluster_name,
            deployment_mode=deployment_mode,
            non_interactive=non_interactive,
            dry_run=dry_run,
            skip_crds=skip_crds,
            verbose=verbose,
            silent=silent,
            app_of_apps_chart=app_of_apps_chart,
            values_file=values_file,
            app_namespace=app_namespace,
            app_timeout=app_timeout,
            cert_file=cert_file,
            key_file=key_file,
            controller_image=controller_image,
            wait_for_apps=wait_for_apps,
        )
    except ValidationError as e:
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"]) or "request"
            console.print(f"[red]Invalid option ({location}):[/red] {error['msg']}")
        raise typer.Exit(EXIT_FAILURE) from None

    logger.info(
        "install_requested",
        cluster=request.cluster_name,
        context=request.kube_context,
        dry_run=request.dry_run,
    )
    if not silent:
        prefix = "[yellow]Dry run:[/yellow] " if request.dry_run else ""
        console.print(
            f"{prefix}Bootstrapping cluster [bold]{request.cluster_name}[/bold] "
            f"(context [cyan]{request.kube_context}[/cyan])"
        )

    token = CancellationToken()
    with cancel_on_signals(token):
        outcome = orchestrator.install(request, token)

    render_outcome(outcome, console, silent=silent)
    raise typer.Exit(exit_code_for(outcome))
