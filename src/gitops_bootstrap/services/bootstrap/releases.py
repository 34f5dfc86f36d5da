"""Helm release installation with post-install verification.

Two releases are driven through here: the controller itself and the
app-of-apps release. Both run ``helm upgrade --install`` with an explicit
``--kube-context``; a reported success is then re-checked against
``helm list`` because an install can exit zero without creating a release.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import (
    APP_OF_APPS_RELEASE,
    CHART_REPO_NAME,
    CHART_REPO_URL,
    CONTROLLER_CHART,
    CONTROLLER_CHART_VERSION,
    CONTROLLER_HELM_TIMEOUT,
    CONTROLLER_NAMESPACE,
    CONTROLLER_RELEASE,
    CONTROLLER_SKIP_CRDS_VALUE,
    TLS_SET_FILE_KEYS,
)
from gitops_bootstrap.core.exceptions import (
    ConfigurationError,
    ReleaseInstallError,
    ReleaseVerificationError,
)
from gitops_bootstrap.integrations.kubernetes.exceptions import HelmCommandError, HelmError
from gitops_bootstrap.integrations.kubernetes.helm_client import HelmClient
from gitops_bootstrap.integrations.kubernetes.models.helm import HelmRelease
from gitops_bootstrap.services.bootstrap.base import BootstrapComponent
from gitops_bootstrap.services.bootstrap.models import AppOfAppsConfig, TlsConfig
from gitops_bootstrap.services.bootstrap.values import ephemeral_values_file
from gitops_bootstrap.utils.paths import PathTranslator

# Returns a rendered diagnostics report.
DiagnosticsHook = Callable[[], str]


@dataclass(frozen=True)
class ReleaseSpec:
    """Everything helm needs for one upgrade-or-install."""

    name: str
    chart: str
    namespace: str
    timeout: str
    version: str | None = None
    create_namespace: bool = False
    repository: tuple[str, str] | None = None
    set_values: tuple[str, ...] = ()
    # (key, host path) pairs passed as --set-file after path translation
    set_files: tuple[tuple[str, str], ...] = ()


def controller_release_spec() -> ReleaseSpec:
    """Release spec for the controller; its resource types are installed separately."""
    return ReleaseSpec(
        name=CONTROLLER_RELEASE,
        chart=CONTROLLER_CHART,
        namespace=CONTROLLER_NAMESPACE,
        timeout=CONTROLLER_HELM_TIMEOUT,
        version=CONTROLLER_CHART_VERSION,
        create_namespace=True,
        repository=(CHART_REPO_NAME, CHART_REPO_URL),
        set_values=(CONTROLLER_SKIP_CRDS_VALUE,),
    )


def tls_set_files(tls: TlsConfig | None) -> tuple[tuple[str, str], ...]:
    """``--set-file`` pairs for the ingress certificate, when both files exist."""
    if tls is None:
        return ()
    if not (os.path.isfile(tls.cert_file) and os.path.isfile(tls.key_file)):
        return ()
    pairs: list[tuple[str, str]] = []
    for prefix in TLS_SET_FILE_KEYS:
        pairs.append((f"{prefix}.cert", tls.cert_file))
        pairs.append((f"{prefix}.key", tls.key_file))
    return tuple(pairs)


def app_of_apps_release_spec(config: AppOfAppsConfig, tls: TlsConfig | None) -> ReleaseSpec:
    """Release spec for the app-of-apps chart."""
    return ReleaseSpec(
        name=APP_OF_APPS_RELEASE,
        chart=config.chart_path,
        namespace=config.namespace,
        timeout=config.timeout,
        set_files=tls_set_files(tls),
    )


# ---------------------------------------------------------------------------
# ReleaseInstaller
# ---------------------------------------------------------------------------


class ReleaseInstaller(BootstrapComponent):
    """Installs and verifies helm releases."""

    _entity_name = "release"

    def __init__(
        self,
        helm: HelmClient,
        paths: PathTranslator,
        token: CancellationToken,
        diagnostics: DiagnosticsHook | None = None,
    ) -> None:
        """Initialize the installer.

        Args:
            helm: Helm client bound to the run's context.
            paths: Translator for files helm will read.
            token: Run cancellation scope.
            diagnostics: Called on install failure to capture cluster state.
        """
        super().__init__(token)
        self._helm = helm
        self._paths = paths
        self._diagnostics = diagnostics
        self._registered_repos: set[str] = set()

    def ensure_repository(self, name: str, url: str) -> None:
        """Register and refresh a chart repository once per run."""
        if name in self._registered_repos:
            return
        try:
            self._helm.repo_add(name, url)
            self._helm.repo_update()
        except HelmError as e:
            raise ReleaseInstallError(
                name, f"Failed to prepare chart repository '{name}': {e.message}", e.result
            ) from e
        self._registered_repos.add(name)

    @contextmanager
    def _values_path(
        self,
        release: str,
        values: Mapping[str, Any] | None,
        values_file: str | None,
    ) -> Iterator[str | None]:
        if values is not None:
            with ephemeral_values_file(values, prefix=f"{release}-values-") as path:
                yield path
        else:
            yield values_file

    def install_or_upgrade(
        self,
        spec: ReleaseSpec,
        *,
        values: Mapping[str, Any] | None = None,
        values_file: str | None = None,
        dry_run: bool = False,
    ) -> None:
        """Run ``helm upgrade --install`` for a release.

        ``values`` is rendered to an ephemeral file that is removed when this
        call returns, whatever the outcome. ``values_file`` is an existing
        file used as is.

        Raises:
            ReleaseInstallError: If helm reports failure; carries helm's output
                and the diagnostics captured at that moment.
            OperationCancelledError: If the run is cancelled.
        """
        log = self._log.bind(release=spec.name, namespace=spec.namespace)
        if values_file is not None and not os.path.isfile(values_file):
            raise ConfigurationError(f"Values file not found: {values_file}")
        if spec.repository:
            self.ensure_repository(*spec.repository)

        with self._values_path(spec.name, values, values_file) as host_values:
            values_files: Sequence[str] = ()
            if host_values:
                values_files = (self._paths.translate(host_values),)
            chart = spec.chart
            if os.path.exists(chart):
                chart = self._paths.translate(chart)
            set_files = tuple(
                f"{key}={self._paths.translate(path)}" for key, path in spec.set_files
            )

            log.info("installing_release", chart=spec.chart, dry_run=dry_run)
            try:
                self._helm.upgrade_install(
                    spec.name,
                    chart,
                    namespace=spec.namespace,
                    version=spec.version,
                    create_namespace=spec.create_namespace,
                    wait=True,
                    timeout=spec.timeout,
                    values_files=values_files,
                    set_values=spec.set_values,
                    set_files=set_files,
                    dry_run=dry_run,
                )
            except HelmCommandError as e:
                self._token.raise_if_cancelled()
                log.error("release_install_failed", error=e.output)
                error = ReleaseInstallError(
                    spec.name,
                    f"Failed to install release '{spec.name}'. Helm output: {e.output}",
                    e.result,
                )
                if self._diagnostics is not None:
                    error.diagnostics = self._diagnostics()
                raise error from e
        log.info("release_installed")

    def verify(self, release: str, namespace: str) -> HelmRelease:
        """Confirm the release exists after a reported-successful install.

        Raises:
            ReleaseVerificationError: If the release is absent or cannot be queried.
        """
        log = self._log.bind(release=release, namespace=namespace)
        try:
            releases = self._helm.list_releases(namespace=namespace, filter_pattern=release)
        except HelmError as e:
            raise ReleaseVerificationError(release, namespace, e.message) from e

        found = next((r for r in releases if r.name == release), None)
        if found is None:
            log.error("release_missing_after_install", listed=[r.name for r in releases])
            raise ReleaseVerificationError(release, namespace)

        try:
            status = self._helm.status(release, namespace=namespace)
        except HelmError as e:
            raise ReleaseVerificationError(release, namespace, e.message) from e
        log.info("release_verified", revision=found.revision, status=status.status or found.status)
        return found
