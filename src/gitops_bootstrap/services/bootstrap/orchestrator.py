"""Installation orchestrator: drives one bootstrap run phase by phase.

Phases run strictly in order::

    ConnectivityCheck -> ResourceTypesInstall -> ResourceTypesReady
      -> NamespaceEnsure -> ControllerReleaseInstall -> ControllerReleaseVerify
      -> WorkloadsReady -> AppOfAppsReleaseInstall -> ApplicationsReady

The first failure stops the run. Every run ends in an
:class:`InstallOutcome`; errors are stamped with the phase they occurred in
and, for release and readiness failures, carry a diagnostics report.
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator

import structlog
from pydantic import ValidationError

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import (
    APPLICATION_POLL_INTERVAL_SECONDS,
    APPLICATION_POLL_TIMEOUT_SECONDS,
    CONNECTIVITY_ATTEMPTS,
    CONNECTIVITY_DELAY_SECONDS,
    CONTROLLER_DEPLOYMENTS,
    CONTROLLER_NAMESPACE,
    CONTROLLER_RELEASE,
    CONTROLLER_STATEFULSETS,
    CRD_MANIFEST_URLS,
    CRD_NAMES,
    CRD_POLL_INTERVAL_SECONDS,
    CRD_POLL_TIMEOUT_SECONDS,
    NAMESPACE_POLL_INTERVAL_SECONDS,
    NAMESPACE_POLL_TIMEOUT_SECONDS,
    PRE_APP_OF_APPS_CONNECTIVITY_ATTEMPTS,
    PRE_APP_OF_APPS_CONNECTIVITY_DELAY_SECONDS,
    WORKLOAD_POLL_INTERVAL_SECONDS,
    WORKLOAD_POLL_TIMEOUT_SECONDS,
)
from gitops_bootstrap.core.exceptions import (
    ApplyFailureError,
    BootstrapError,
    CommandTimeoutError,
    ConfigurationError,
    ConnectivityFailureError,
    OperationCancelledError,
    ToolUnavailableError,
)
from gitops_bootstrap.integrations.kubernetes.client import KubernetesClient
from gitops_bootstrap.integrations.kubernetes.config import ConnectionConfig
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    HelmError,
    KubectlBinaryNotFoundError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesTimeoutError,
)
from gitops_bootstrap.integrations.kubernetes.helm_client import HelmClient
from gitops_bootstrap.integrations.kubernetes.kubectl_client import KubectlClient
from gitops_bootstrap.services.bootstrap.applier import ManifestSource, ResourceApplier
from gitops_bootstrap.services.bootstrap.backends import (
    ClusterBackend,
    KubectlBackend,
    NativeBackend,
)
from gitops_bootstrap.services.bootstrap.diagnostics import DiagnosticsCollector
from gitops_bootstrap.services.bootstrap.models import (
    ExecutionTarget,
    InstallOutcome,
    InstallRequest,
    Phase,
    ReadinessTarget,
    ResourceCategory,
)
from gitops_bootstrap.services.bootstrap.releases import (
    ReleaseInstaller,
    app_of_apps_release_spec,
    controller_release_spec,
)
from gitops_bootstrap.services.bootstrap.values import render_controller_values
from gitops_bootstrap.services.bootstrap.waiter import ReadinessWaiter
from gitops_bootstrap.utils.command_runner import CommandRunner
from gitops_bootstrap.utils.polling import retry_call
from gitops_bootstrap.utils.tool_environment import ToolEnvironment, select_tool_environment

logger = structlog.get_logger()

# Phases whose failures are worth a look at the controller namespace.
DIAGNOSED_PHASES = frozenset(
    {
        Phase.CONTROLLER_RELEASE_INSTALL,
        Phase.CONTROLLER_RELEASE_VERIFY,
        Phase.WORKLOADS_READY,
        Phase.APP_OF_APPS_RELEASE_INSTALL,
        Phase.APPLICATIONS_READY,
    }
)

# Phases that only observe or mutate live cluster state and are skipped in a dry run.
DRY_RUN_SKIPPED_PHASES = frozenset(
    {
        Phase.RESOURCE_TYPES_INSTALL,
        Phase.RESOURCE_TYPES_READY,
        Phase.NAMESPACE_ENSURE,
        Phase.CONTROLLER_RELEASE_VERIFY,
        Phase.WORKLOADS_READY,
        Phase.APPLICATIONS_READY,
    }
)

SNAPSHOT_RESOURCES: tuple[tuple[str, str | None], ...] = (
    ("namespaces", None),
    ("pods", CONTROLLER_NAMESPACE),
    ("deployments", CONTROLLER_NAMESPACE),
    ("services", CONTROLLER_NAMESPACE),
)

_CONNECTIVITY_ERRORS = (KubernetesError, CommandTimeoutError)

# Phases whose unhandled API errors mean a resource was rejected.
_APPLY_PHASES = frozenset({Phase.RESOURCE_TYPES_INSTALL, Phase.NAMESPACE_ENSURE})


def crd_targets() -> list[ReadinessTarget]:
    return [ReadinessTarget(ResourceCategory.CRD, name) for name in CRD_NAMES]


def workload_targets(namespace: str = CONTROLLER_NAMESPACE) -> list[ReadinessTarget]:
    """Controller workloads that must exist before the run can finish."""
    targets = [
        ReadinessTarget(ResourceCategory.DEPLOYMENT, name, namespace)
        for name in CONTROLLER_DEPLOYMENTS
    ]
    targets.extend(
        ReadinessTarget(ResourceCategory.STATEFULSET, name, namespace)
        for name in CONTROLLER_STATEFULSETS
    )
    return targets


def _from_kubernetes_error(phase: Phase | None, error: KubernetesError) -> BootstrapError:
    """Map a cluster API error that escaped a phase onto the run's error types."""
    wrapped: BootstrapError
    if isinstance(error, (KubernetesConnectionError, KubernetesTimeoutError)):
        wrapped = ConnectivityFailureError(str(error))
    elif phase in _APPLY_PHASES:
        wrapped = ApplyFailureError(error.message, error.kind, error.name)
    else:
        wrapped = BootstrapError(str(error))
    wrapped.__cause__ = error
    return wrapped


# ---------------------------------------------------------------------------
# Execution target selection
# ---------------------------------------------------------------------------


def resolve_execution_target(
    connection: ConnectionConfig,
    *,
    platform: str | None = None,
) -> ExecutionTarget:
    """Pick the execution target before any cluster call is made.

    A forced target in the connection config wins. Otherwise Windows hosts
    drive the cluster through kubectl inside WSL, where the kubeconfig lives,
    and every other host uses the native API client.
    """
    if connection.execution_target != "auto":
        return ExecutionTarget(connection.execution_target)
    if (platform or sys.platform) == "win32":
        return ExecutionTarget.SUBPROCESS
    return ExecutionTarget.NATIVE


def _optional_kubectl(tools: ToolEnvironment, context: str) -> KubectlClient | None:
    try:
        return KubectlClient(tools, context)
    except KubectlBinaryNotFoundError:
        logger.debug("kubectl_not_available", environment=tools.name)
        return None


def build_backend(
    connection: ConnectionConfig,
    tools: ToolEnvironment,
    target: ExecutionTarget,
) -> tuple[ClusterBackend, KubernetesClient | None, KubectlClient | None]:
    """Construct the cluster backend for a run.

    An unforced native target that cannot load its kubeconfig context falls
    back to kubectl when kubectl is installed.

    Returns:
        The backend, the native client (if one was built) and the kubectl
        client (if kubectl is installed).

    Raises:
        ToolUnavailableError: If the chosen substrate cannot be used.
    """
    kubectl = _optional_kubectl(tools, connection.context)
    if target is ExecutionTarget.NATIVE:
        try:
            client = KubernetesClient(connection)
        except KubernetesConnectionError as e:
            if connection.execution_target == "native" or kubectl is None:
                raise ToolUnavailableError(
                    "kubernetes",
                    f"Cannot use the Kubernetes API client: {e.message}",
                    hint="Check the kubeconfig path and context, or install kubectl.",
                ) from e
            logger.warning("native_client_unavailable_falling_back", error=e.message)
        else:
            return NativeBackend(client), client, kubectl

    if kubectl is None:
        raise KubectlBinaryNotFoundError()
    return KubectlBackend(kubectl), None, kubectl


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BootstrapOrchestrator:
    """Runs the installation phases for one :class:`InstallRequest`.

    Components are injected so the phase machine can be driven against any
    :class:`ClusterBackend`; :meth:`from_request` wires the real ones.
    """

    def __init__(
        self,
        request: InstallRequest,
        *,
        backend: ClusterBackend,
        installer: ReleaseInstaller,
        token: CancellationToken,
        applier: ResourceApplier | None = None,
        waiter: ReadinessWaiter | None = None,
        diagnostics: DiagnosticsCollector | None = None,
        kubectl: KubectlClient | None = None,
        client: KubernetesClient | None = None,
    ) -> None:
        self._request = request
        self._backend = backend
        self._installer = installer
        self._token = token
        self._applier = applier or ResourceApplier(backend, token)
        self._waiter = waiter or ReadinessWaiter(backend, token)
        self._diagnostics = diagnostics or DiagnosticsCollector(
            kubectl=kubectl, client=client, token=token
        )
        self._kubectl = kubectl
        self._client = client
        self._log = logger.bind(
            cluster=request.cluster_name,
            context=request.kube_context,
            target=backend.target.value,
        )

    @classmethod
    def from_request(
        cls,
        request: InstallRequest,
        token: CancellationToken | None = None,
        *,
        connection: ConnectionConfig | None = None,
        platform: str | None = None,
    ) -> BootstrapOrchestrator:
        """Wire the real tool environment, clients and backend for a request.

        Raises:
            ToolUnavailableError: If helm, kubectl or WSL cannot be used.
            ConfigurationError: If the connection settings are invalid.
        """
        token = token or CancellationToken()
        if connection is None:
            try:
                connection = ConnectionConfig.from_env(request.kube_context)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid connection settings: {e}") from e
        runner = CommandRunner(token)
        tools = select_tool_environment(runner, platform=platform)

        target = resolve_execution_target(connection, platform=platform)
        logger.info(
            "execution_target_selected",
            target=target.value,
            environment=tools.name,
            context=connection.context,
        )
        backend, client, kubectl = build_backend(connection, tools, target)
        helm = HelmClient(tools, kube_context=connection.context)
        try:
            logger.info("helm_available", version=helm.get_version())
        except HelmError as e:
            raise ToolUnavailableError(
                "helm", f"helm is installed but not working: {e.output}"
            ) from e

        diagnostics = DiagnosticsCollector(kubectl=kubectl, client=client, token=token)
        installer = ReleaseInstaller(
            helm, tools.paths, token, diagnostics=lambda: diagnostics.collect().render()
        )
        return cls(
            request,
            backend=backend,
            installer=installer,
            token=token,
            diagnostics=diagnostics,
            kubectl=kubectl,
            client=client,
        )

    # -----------------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------------

    def _phases(self) -> Iterator[tuple[Phase, Callable[[], None]]]:
        yield Phase.CONNECTIVITY_CHECK, self._check_connectivity
        yield Phase.RESOURCE_TYPES_INSTALL, self._install_resource_types
        yield Phase.RESOURCE_TYPES_READY, self._wait_for_resource_types
        yield Phase.NAMESPACE_ENSURE, self._ensure_namespace
        yield Phase.CONTROLLER_RELEASE_INSTALL, self._install_controller
        yield Phase.CONTROLLER_RELEASE_VERIFY, self._verify_controller
        yield Phase.WORKLOADS_READY, self._wait_for_workloads
        yield Phase.APP_OF_APPS_RELEASE_INSTALL, self._install_app_of_apps
        yield Phase.APPLICATIONS_READY, self._wait_for_applications

    def _skipped(self, phase: Phase) -> str | None:
        request = self._request
        if request.dry_run and phase in DRY_RUN_SKIPPED_PHASES:
            return "dry_run"
        if request.skip_resource_types and phase in (
            Phase.RESOURCE_TYPES_INSTALL,
            Phase.RESOURCE_TYPES_READY,
        ):
            return "skip_resource_types"
        if request.app_of_apps is None and phase in (
            Phase.APP_OF_APPS_RELEASE_INSTALL,
            Phase.APPLICATIONS_READY,
        ):
            return "no_app_of_apps_chart"
        if phase is Phase.APPLICATIONS_READY and not request.wait_for_applications:
            return "application_wait_disabled"
        return None

    def install(self) -> InstallOutcome:
        """Run every phase in order and report how the run ended.

        Never raises for run failures; they are returned in the outcome.
        """
        completed: list[Phase] = []
        phase: Phase | None = None
        self._log.info(
            "installation_started",
            dry_run=self._request.dry_run,
            mode=self._request.deployment_mode.value if self._request.deployment_mode else None,
        )
        try:
            for phase, step in self._phases():
                self._token.raise_if_cancelled()
                reason = self._skipped(phase)
                if reason:
                    self._log.info("phase_skipped", phase=phase.value, reason=reason)
                    continue
                self._log.info("phase_started", phase=phase.value)
                step()
                completed.append(phase)
                self._log.info("phase_completed", phase=phase.value)
        except BootstrapError as e:
            return self._failed(phase, e, completed)
        except KubernetesError as e:
            return self._failed(phase, _from_kubernetes_error(phase, e), completed)
        finally:
            self.close()

        self._log.info("installation_completed", phases=[p.value for p in completed])
        return InstallOutcome(success=True, completed_phases=completed)

    def _cancelled(
        self,
        phase: Phase | None,
        error: OperationCancelledError,
        completed: list[Phase],
    ) -> InstallOutcome:
        error.phase = phase.value if phase else None
        self._log.warning("installation_cancelled", phase=error.phase)
        return InstallOutcome(success=False, phase=phase, error=error, completed_phases=completed)

    def _failed(
        self,
        phase: Phase | None,
        error: BootstrapError,
        completed: list[Phase],
    ) -> InstallOutcome:
        if isinstance(error, OperationCancelledError):
            return self._cancelled(phase, error, completed)
        if self._token.cancelled:
            cancelled = OperationCancelledError(self._token.reason or "Operation cancelled")
            cancelled.__cause__ = error
            return self._cancelled(phase, cancelled, completed)

        if phase is not None:
            error.phase = phase.value
        if not error.diagnostics and phase in DIAGNOSED_PHASES:
            try:
                error.diagnostics = self._diagnostics.collect().render()
            except OperationCancelledError as e:
                e.__cause__ = error
                return self._cancelled(phase, e, completed)
        self._log.error("installation_failed", phase=error.phase, error=error.message)
        return InstallOutcome(
            success=False,
            phase=phase,
            error=error,
            diagnostics=error.diagnostics,
            completed_phases=completed,
        )

    def close(self) -> None:
        self._applier.close()
        if self._client is not None:
            self._client.close()

    # -----------------------------------------------------------------------
    # Phases
    # -----------------------------------------------------------------------

    def _connectivity(self, attempts: int, delay: float, description: str) -> None:
        try:
            retry_call(
                self._backend.check_connectivity,
                attempts=attempts,
                delay=delay,
                token=self._token,
                retry_on=_CONNECTIVITY_ERRORS,
                description=description,
            )
        except _CONNECTIVITY_ERRORS as e:
            raise ConnectivityFailureError(
                f"Cluster '{self._request.cluster_name}' is unreachable via context "
                f"'{self._request.kube_context}' after {attempts} attempts: {e}",
                attempts=attempts,
            ) from e

    def _check_connectivity(self) -> None:
        self._connectivity(CONNECTIVITY_ATTEMPTS, CONNECTIVITY_DELAY_SECONDS, "connectivity")

    def _install_resource_types(self) -> None:
        for url in CRD_MANIFEST_URLS:
            self._applier.apply_manifest_from_source(ManifestSource.from_url(url))

    def _wait_for_resource_types(self) -> None:
        self._waiter.wait_for(
            crd_targets(),
            interval=CRD_POLL_INTERVAL_SECONDS,
            timeout=CRD_POLL_TIMEOUT_SECONDS,
        )

    def _ensure_namespace(self) -> None:
        try:
            if self._backend.namespace_phase(CONTROLLER_NAMESPACE) is None:
                self._backend.create_namespace(CONTROLLER_NAMESPACE)
                self._log.info("namespace_created", namespace=CONTROLLER_NAMESPACE)
        except KubernetesError as e:
            raise ApplyFailureError(
                f"Failed to create namespace: {e.message}", "Namespace", CONTROLLER_NAMESPACE
            ) from e
        self._waiter.wait_for(
            [ReadinessTarget(ResourceCategory.NAMESPACE, CONTROLLER_NAMESPACE)],
            interval=NAMESPACE_POLL_INTERVAL_SECONDS,
            timeout=NAMESPACE_POLL_TIMEOUT_SECONDS,
        )

    def _install_controller(self) -> None:
        self._installer.install_or_upgrade(
            controller_release_spec(),
            values=render_controller_values(self._request.controller),
            dry_run=self._request.dry_run,
        )

    def _verify_controller(self) -> None:
        self._installer.verify(CONTROLLER_RELEASE, CONTROLLER_NAMESPACE)
        self._snapshot()

    def _snapshot(self) -> None:
        """Log a kubectl view of the controller namespace; never fails the run."""
        if self._kubectl is None:
            return
        for resource, namespace in SNAPSHOT_RESOURCES:
            try:
                table = self._kubectl.get_table(resource, namespace)
            except (KubernetesError, CommandTimeoutError, ToolUnavailableError) as e:
                self._log.warning("snapshot_failed", resource=resource, error=str(e))
                continue
            self._log.info("snapshot", resource=resource, namespace=namespace, table=table)

    def _wait_for_workloads(self) -> None:
        self._waiter.wait_for_workloads(
            workload_targets(),
            interval=WORKLOAD_POLL_INTERVAL_SECONDS,
            timeout=WORKLOAD_POLL_TIMEOUT_SECONDS,
        )

    def _install_app_of_apps(self) -> None:
        config = self._request.app_of_apps
        if config is None:
            raise ConfigurationError("No app-of-apps chart configured")
        self._connectivity(
            PRE_APP_OF_APPS_CONNECTIVITY_ATTEMPTS,
            PRE_APP_OF_APPS_CONNECTIVITY_DELAY_SECONDS,
            "pre_app_of_apps_connectivity",
        )
        self._installer.install_or_upgrade(
            app_of_apps_release_spec(config, self._request.tls),
            values_file=config.values_file,
            dry_run=self._request.dry_run,
        )

    def _wait_for_applications(self) -> None:
        self._waiter.wait_for_applications(
            CONTROLLER_NAMESPACE,
            interval=APPLICATION_POLL_INTERVAL_SECONDS,
            timeout=APPLICATION_POLL_TIMEOUT_SECONDS,
        )


def install(
    request: InstallRequest,
    token: CancellationToken | None = None,
    *,
    connection: ConnectionConfig | None = None,
    platform: str | None = None,
) -> InstallOutcome:
    """Bootstrap the controller stack described by ``request``.

    Setup failures (a missing tool, an unloadable context) are reported as
    an outcome with no phase.
    """
    token = token or CancellationToken()
    try:
        orchestrator = BootstrapOrchestrator.from_request(
            request, token, connection=connection, platform=platform
        )
    except BootstrapError as e:
        logger.error("installation_setup_failed", error=str(e))
        return InstallOutcome(success=False, error=e)
    return orchestrator.install()
