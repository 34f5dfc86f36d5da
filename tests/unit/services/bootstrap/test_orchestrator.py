"""Unit tests for the installation orchestrator."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import respx
from httpx import Response

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import CONNECTIVITY_ATTEMPTS, CRD_MANIFEST_URLS, CRD_NAMES
from gitops_bootstrap.core.exceptions import (
    ApplyFailureError,
    ConfigurationError,
    ConnectivityFailureError,
    ManifestFetchError,
    OperationCancelledError,
    ReadinessTimeoutError,
    ReleaseInstallError,
    ReleaseVerificationError,
    ToolUnavailableError,
)
from gitops_bootstrap.integrations.kubernetes.client import KubernetesClient
from gitops_bootstrap.integrations.kubernetes.config import ConnectionConfig
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    HelmCommandError,
    KubectlBinaryNotFoundError,
    KubectlCommandError,
    KubernetesAuthError,
    KubernetesConnectionError,
)
from gitops_bootstrap.integrations.kubernetes.helm_client import HelmClient
from gitops_bootstrap.integrations.kubernetes.kubectl_client import KubectlClient
from gitops_bootstrap.integrations.kubernetes.models.helm import HelmRelease, HelmReleaseStatus
from gitops_bootstrap.services.bootstrap import orchestrator as orchestrator_module
from gitops_bootstrap.services.bootstrap.backends import KubectlBackend, NativeBackend
from gitops_bootstrap.services.bootstrap.diagnostics import DiagnosticsCollector
from gitops_bootstrap.services.bootstrap.models import (
    ApplicationStatus,
    AppOfAppsConfig,
    DeploymentMode,
    ExecutionTarget,
    InstallRequest,
    Phase,
)
from gitops_bootstrap.services.bootstrap.orchestrator import (
    BootstrapOrchestrator,
    build_backend,
    install,
    resolve_execution_target,
)
from gitops_bootstrap.services.bootstrap.releases import ReleaseInstaller
from gitops_bootstrap.utils.command_runner import CommandResult
from gitops_bootstrap.utils.paths import HostPathTranslator

ORCHESTRATOR = "gitops_bootstrap.services.bootstrap.orchestrator"

ALL_PHASES_WITHOUT_APP_OF_APPS = [
    Phase.CONNECTIVITY_CHECK,
    Phase.RESOURCE_TYPES_INSTALL,
    Phase.RESOURCE_TYPES_READY,
    Phase.NAMESPACE_ENSURE,
    Phase.CONTROLLER_RELEASE_INSTALL,
    Phase.CONTROLLER_RELEASE_VERIFY,
    Phase.WORKLOADS_READY,
]


def _crd_manifest(name: str) -> str:
    return (
        "apiVersion: apiextensions.k8s.io/v1\n"
        "kind: CustomResourceDefinition\n"
        f"metadata:\n  name: {name}\n"
        "spec:\n  group: argoproj.io\n"
    )


# ===========================================================================
# Fixtures
# ===========================================================================


@pytest.fixture(autouse=True)
def fast_cadence(monkeypatch: pytest.MonkeyPatch) -> None:
    """Shrink every poll and retry cadence so runs finish in milliseconds."""
    for name, value in {
        "CONNECTIVITY_DELAY_SECONDS": 0,
        "PRE_APP_OF_APPS_CONNECTIVITY_DELAY_SECONDS": 0,
        "CRD_POLL_INTERVAL_SECONDS": 0.01,
        "CRD_POLL_TIMEOUT_SECONDS": 0.2,
        "NAMESPACE_POLL_INTERVAL_SECONDS": 0.01,
        "NAMESPACE_POLL_TIMEOUT_SECONDS": 0.1,
        "WORKLOAD_POLL_INTERVAL_SECONDS": 0.01,
        "WORKLOAD_POLL_TIMEOUT_SECONDS": 0.1,
        "APPLICATION_POLL_INTERVAL_SECONDS": 0.01,
        "APPLICATION_POLL_TIMEOUT_SECONDS": 0.1,
    }.items():
        monkeypatch.setattr(f"{ORCHESTRATOR}.{name}", value)


@pytest.fixture
def crd_manifests() -> Iterator[respx.MockRouter]:
    """Serve the three resource-type manifests."""
    with respx.mock(assert_all_called=False) as router:
        for url, name in zip(CRD_MANIFEST_URLS, CRD_NAMES, strict=True):
            router.get(url).mock(return_value=Response(200, text=_crd_manifest(name)))
        yield router


@pytest.fixture
def mock_helm(fake_backend: Any) -> MagicMock:
    """Helm client whose installs are recorded in the backend call log."""
    helm = MagicMock(spec=HelmClient)

    def upgrade(release: str, chart: str, **kwargs: Any) -> CommandResult:
        fake_backend.calls.append(("helm_upgrade", release))
        return CommandResult("helm", 0, "", "")

    helm.upgrade_install.side_effect = upgrade
    helm.list_releases.return_value = [
        HelmRelease("argo-cd", "argocd", 1, "deployed", "argo-cd-9.3.4", "v2.13.2")
    ]
    helm.status.return_value = HelmReleaseStatus("argo-cd", "argocd", 1, "deployed", "")
    return helm


@pytest.fixture
def mock_kubectl() -> MagicMock:
    kubectl = MagicMock(spec=KubectlClient)
    kubectl.pods_wide.return_value = "NAME  READY  STATUS\nargocd-server-0  0/1  Pending\n"
    kubectl.events.return_value = "Warning  FailedScheduling  pod/argocd-server-0\n"
    kubectl.list_names.return_value = set()
    kubectl.non_running_pods.return_value = []
    kubectl.get_table.return_value = "NAME  STATUS\nargocd  Active\n"
    return kubectl


@pytest.fixture
def make_orchestrator(
    fake_backend: Any,
    mock_helm: MagicMock,
    mock_kubectl: MagicMock,
    token: CancellationToken,
) -> Any:
    def factory(**request_fields: Any) -> BootstrapOrchestrator:
        request = InstallRequest(**request_fields)
        installer = ReleaseInstaller(mock_helm, HostPathTranslator(), token)
        return BootstrapOrchestrator(
            request,
            backend=fake_backend,
            installer=installer,
            token=token,
            diagnostics=DiagnosticsCollector(kubectl=mock_kubectl, token=token),
            kubectl=mock_kubectl,
        )

    return factory


@pytest.fixture
def ready_cluster(fake_backend: Any, crd_manifests: respx.MockRouter) -> Any:
    """A reachable cluster on which the controller workloads come up."""
    fake_backend.add_controller_workloads()
    return fake_backend


# ===========================================================================
# Successful runs
# ===========================================================================


@pytest.mark.unit
@pytest.mark.bootstrap
class TestSuccessfulRun:
    """Tests for runs that complete."""

    def test_all_phases_complete_in_order(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        outcome = make_orchestrator().install()

        assert outcome.success is True
        assert outcome.error is None
        assert outcome.completed_phases == ALL_PHASES_WITHOUT_APP_OF_APPS

    def test_resource_types_applied_and_observed(
        self, make_orchestrator: Any, ready_cluster: Any, crd_manifests: respx.MockRouter
    ) -> None:
        make_orchestrator().install()

        assert ready_cluster.crds == set(CRD_NAMES)
        assert len(crd_manifests.calls) == len(CRD_MANIFEST_URLS)

    def test_namespace_active_before_controller_install(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        make_orchestrator().install()

        methods = ready_cluster.methods()
        helm_index = methods.index("helm_upgrade")
        assert methods.index("create_namespace") < helm_index
        create_index = methods.index("create_namespace")
        assert "namespace_phase" in methods[create_index:helm_index]
        assert "workload_exists" not in methods[:helm_index]

    def test_existing_namespace_not_recreated(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        ready_cluster.namespaces["argocd"] = "Active"

        assert make_orchestrator().install().success is True
        assert "create_namespace" not in ready_cluster.methods()

    def test_controller_values_and_release(
        self, make_orchestrator: Any, ready_cluster: Any, mock_helm: MagicMock
    ) -> None:
        make_orchestrator().install()

        args, kwargs = mock_helm.upgrade_install.call_args
        assert args == ("argo-cd", "argo/argo-cd")
        assert kwargs["namespace"] == "argocd"
        assert kwargs["version"] == "9.3.4"
        assert kwargs["set_values"] == ("crds.install=false",)
        assert len(kwargs["values_files"]) == 1
        mock_helm.list_releases.assert_called_once_with(
            namespace="argocd", filter_pattern="argo-cd"
        )

    def test_snapshot_logged_after_verify(
        self, make_orchestrator: Any, ready_cluster: Any, mock_kubectl: MagicMock
    ) -> None:
        mock_kubectl.get_table.side_effect = [
            "namespaces",
            KubectlCommandError("kubectl get pods failed"),
            "deployments",
            "services",
        ]

        outcome = make_orchestrator().install()

        assert outcome.success is True
        assert mock_kubectl.get_table.call_count == 4

    def test_transient_connectivity_failures_are_retried(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        ready_cluster.connectivity_failures = 2

        assert make_orchestrator().install().success is True
        assert ready_cluster.methods().count("check_connectivity") == 3

    def test_app_of_apps_release(
        self, make_orchestrator: Any, ready_cluster: Any, mock_helm: MagicMock, tmp_path: Path
    ) -> None:
        values = tmp_path / "values.yaml"
        values.write_text("deployment:\n  oss:\n    enabled: true\n")
        chart = tmp_path / "app-of-apps"
        chart.mkdir()

        outcome = make_orchestrator(
            deployment_mode=DeploymentMode.OSS_TENANT,
            app_of_apps=AppOfAppsConfig(chart_path=str(chart), values_file=str(values)),
        ).install()

        assert outcome.success is True
        assert outcome.completed_phases[-1] is Phase.APP_OF_APPS_RELEASE_INSTALL
        args, kwargs = mock_helm.upgrade_install.call_args
        assert args == ("app-of-apps", str(chart))
        assert kwargs["values_files"] == (str(values),)
        assert kwargs["timeout"] == "60m"
        methods = ready_cluster.methods()
        assert methods.count("check_connectivity") == 2
        reversed_methods = methods[::-1]
        assert reversed_methods.index("check_connectivity") < reversed_methods.index(
            "workload_exists"
        )
        assert "list_applications" not in methods

    def test_resource_types_ready_before_controller_install(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        for name in CRD_NAMES:
            ready_cluster.ready_after[f"crd/{name}"] = 2

        outcome = make_orchestrator().install()

        assert outcome.success is True
        helm_index = ready_cluster.methods().index("helm_upgrade")
        for name in CRD_NAMES:
            assert ready_cluster.first_ready[f"crd/{name}"] < helm_index
        assert ready_cluster.methods().count("crd_exists") > len(CRD_NAMES)

    def test_slow_namespace_and_workloads(
        self, make_orchestrator: Any, ready_cluster: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(f"{ORCHESTRATOR}.NAMESPACE_POLL_TIMEOUT_SECONDS", 2)
        monkeypatch.setattr(f"{ORCHESTRATOR}.WORKLOAD_POLL_TIMEOUT_SECONDS", 2)
        workloads = (
            "deployment/argocd-server",
            "deployment/argocd-repo-server",
            "statefulset/argocd-application-controller",
        )
        ready_cluster.ready_after["namespace/argocd"] = 2
        for key in workloads:
            ready_cluster.ready_after[key] = 3

        outcome = make_orchestrator().install()

        assert outcome.success is True
        assert outcome.completed_phases == ALL_PHASES_WITHOUT_APP_OF_APPS
        # One lookup before creation, then two pending polls and the active one.
        assert ready_cluster.calls.count(("namespace_phase", "argocd")) == 4
        assert ready_cluster.first_ready["namespace/argocd"] < ready_cluster.methods().index(
            "helm_upgrade"
        )
        for key in workloads:
            assert ready_cluster.calls.count(("workload_exists", key)) == 4

    def test_applications_waited_for_after_app_of_apps(
        self, make_orchestrator: Any, ready_cluster: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(f"{ORCHESTRATOR}.APPLICATION_POLL_TIMEOUT_SECONDS", 2)
        ready_cluster.application_states = [
            [ApplicationStatus("app-of-apps", "Healthy", "Synced", planned=1)],
            [
                ApplicationStatus("app-of-apps", "Healthy", "Synced", planned=1),
                ApplicationStatus("redis", "Progressing", "Synced"),
            ],
            [
                ApplicationStatus("app-of-apps", "Healthy", "Synced", planned=1),
                ApplicationStatus("redis", "Healthy", "Synced"),
            ],
        ]

        outcome = make_orchestrator(
            app_of_apps=AppOfAppsConfig(chart_path="./app-of-apps"),
            wait_for_applications=True,
        ).install()

        assert outcome.success is True
        assert outcome.completed_phases[-2:] == [
            Phase.APP_OF_APPS_RELEASE_INSTALL,
            Phase.APPLICATIONS_READY,
        ]
        methods = ready_cluster.methods()
        assert methods.count("list_applications") == 3
        last_release = len(methods) - 1 - methods[::-1].index("helm_upgrade")
        assert methods.index("list_applications") > last_release

    def test_without_app_of_apps_chart_phase_is_skipped(
        self, make_orchestrator: Any, ready_cluster: Any, mock_helm: MagicMock
    ) -> None:
        outcome = make_orchestrator().install()

        assert Phase.APP_OF_APPS_RELEASE_INSTALL not in outcome.completed_phases
        assert mock_helm.upgrade_install.call_count == 1


# ===========================================================================
# Skips
# ===========================================================================


@pytest.mark.unit
@pytest.mark.bootstrap
class TestSkippedPhases:
    """Tests for dry-run and skip flags."""

    def test_dry_run_only_renders_releases(
        self,
        make_orchestrator: Any,
        fake_backend: Any,
        mock_helm: MagicMock,
        crd_manifests: respx.MockRouter,
    ) -> None:
        outcome = make_orchestrator(dry_run=True).install()

        assert outcome.success is True
        assert outcome.completed_phases == [
            Phase.CONNECTIVITY_CHECK,
            Phase.CONTROLLER_RELEASE_INSTALL,
        ]
        assert mock_helm.upgrade_install.call_args.kwargs["dry_run"] is True
        mock_helm.list_releases.assert_not_called()
        assert fake_backend.objects == {}
        assert "create_namespace" not in fake_backend.methods()
        assert len(crd_manifests.calls) == 0

    def test_skip_resource_types(
        self, make_orchestrator: Any, fake_backend: Any, crd_manifests: respx.MockRouter
    ) -> None:
        fake_backend.add_controller_workloads()

        outcome = make_orchestrator(skip_resource_types=True).install()

        assert outcome.success is True
        assert Phase.RESOURCE_TYPES_INSTALL not in outcome.completed_phases
        assert Phase.RESOURCE_TYPES_READY not in outcome.completed_phases
        assert "crd_exists" not in fake_backend.methods()
        assert len(crd_manifests.calls) == 0

    def test_dry_run_does_not_wait_for_applications(
        self, make_orchestrator: Any, fake_backend: Any, crd_manifests: respx.MockRouter
    ) -> None:
        outcome = make_orchestrator(
            dry_run=True,
            app_of_apps=AppOfAppsConfig(chart_path="./app-of-apps"),
            wait_for_applications=True,
        ).install()

        assert outcome.success is True
        assert outcome.completed_phases[-1] is Phase.APP_OF_APPS_RELEASE_INSTALL
        assert "list_applications" not in fake_backend.methods()


# ===========================================================================
# Failures
# ===========================================================================


@pytest.mark.unit
@pytest.mark.bootstrap
class TestFailedRun:
    """Tests for runs that stop at a failing phase."""

    def test_unreachable_cluster(
        self, make_orchestrator: Any, fake_backend: Any, mock_helm: MagicMock
    ) -> None:
        fake_backend.connectivity_failures = -1

        outcome = make_orchestrator().install()

        assert outcome.success is False
        assert outcome.phase is Phase.CONNECTIVITY_CHECK
        assert isinstance(outcome.error, ConnectivityFailureError)
        assert "k3d-openframe-dev" in outcome.message
        assert fake_backend.methods().count("check_connectivity") == CONNECTIVITY_ATTEMPTS
        assert outcome.completed_phases == []
        assert outcome.diagnostics == ""
        mock_helm.upgrade_install.assert_not_called()

    def test_manifest_fetch_failure(self, make_orchestrator: Any) -> None:
        with respx.mock:
            respx.get(CRD_MANIFEST_URLS[0]).mock(return_value=Response(503))

            outcome = make_orchestrator().install()

        assert outcome.phase is Phase.RESOURCE_TYPES_INSTALL
        assert isinstance(outcome.error, ManifestFetchError)
        assert outcome.error.phase == "ResourceTypesInstall"

    def test_resource_types_never_established(
        self, make_orchestrator: Any, fake_backend: Any, crd_manifests: respx.MockRouter
    ) -> None:
        fake_backend.register_crds_on_create = False

        outcome = make_orchestrator().install()

        assert outcome.phase is Phase.RESOURCE_TYPES_READY
        assert isinstance(outcome.error, ReadinessTimeoutError)
        assert len(outcome.missing_targets) == len(CRD_NAMES)

    def test_namespace_creation_rejected(self, make_orchestrator: Any, ready_cluster: Any) -> None:
        def forbidden(name: str) -> None:
            raise KubernetesAuthError("namespaces is forbidden", 403)

        ready_cluster.create_namespace = forbidden

        outcome = make_orchestrator().install()

        assert outcome.phase is Phase.NAMESPACE_ENSURE
        assert isinstance(outcome.error, ApplyFailureError)
        assert outcome.error.name == "argocd"

    def test_namespace_never_active(self, make_orchestrator: Any, ready_cluster: Any) -> None:
        ready_cluster.namespace_phase_on_create = "Terminating"

        outcome = make_orchestrator().install()

        assert outcome.phase is Phase.NAMESPACE_ENSURE
        assert outcome.missing_targets == ["namespace/argocd"]
        assert "helm_upgrade" not in ready_cluster.methods()

    def test_controller_install_failure_has_diagnostics(
        self, make_orchestrator: Any, ready_cluster: Any, mock_helm: MagicMock
    ) -> None:
        mock_helm.upgrade_install.side_effect = HelmCommandError(
            "failed", CommandResult("helm", 1, "", "Error: timed out waiting for the condition")
        )

        outcome = make_orchestrator().install()

        assert outcome.phase is Phase.CONTROLLER_RELEASE_INSTALL
        assert isinstance(outcome.error, ReleaseInstallError)
        assert "timed out waiting for the condition" in outcome.message
        assert "Diagnostics for namespace 'argocd'" in outcome.diagnostics
        assert "FailedScheduling" in outcome.diagnostics

    def test_release_missing_after_install(
        self, make_orchestrator: Any, ready_cluster: Any, mock_helm: MagicMock
    ) -> None:
        mock_helm.list_releases.return_value = []

        outcome = make_orchestrator().install()

        assert outcome.phase is Phase.CONTROLLER_RELEASE_VERIFY
        assert isinstance(outcome.error, ReleaseVerificationError)
        assert outcome.diagnostics

    def test_workloads_never_appear(
        self, make_orchestrator: Any, fake_backend: Any, crd_manifests: respx.MockRouter
    ) -> None:
        outcome = make_orchestrator().install()

        assert outcome.success is False
        assert outcome.phase is Phase.WORKLOADS_READY
        assert isinstance(outcome.error, ReadinessTimeoutError)
        assert "deployment/argocd-server in argocd" in outcome.missing_targets
        assert "statefulset/argocd-application-controller in argocd" in outcome.missing_targets
        assert "Pod status" in outcome.diagnostics
        assert outcome.completed_phases == ALL_PHASES_WITHOUT_APP_OF_APPS[:-1]

    def test_app_of_apps_connectivity_lost(
        self, make_orchestrator: Any, ready_cluster: Any, mock_helm: MagicMock
    ) -> None:
        original = ready_cluster.check_connectivity
        calls = {"count": 0}

        def flaky() -> None:
            calls["count"] += 1
            if calls["count"] > 1:
                raise KubernetesConnectionError("connection refused")
            original()

        ready_cluster.check_connectivity = flaky

        outcome = make_orchestrator(
            app_of_apps=AppOfAppsConfig(chart_path="./app-of-apps")
        ).install()

        assert outcome.phase is Phase.APP_OF_APPS_RELEASE_INSTALL
        assert isinstance(outcome.error, ConnectivityFailureError)
        assert calls["count"] == 1 + 5
        assert mock_helm.upgrade_install.call_count == 1

    def test_applications_never_healthy(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        ready_cluster.application_states = [
            [
                ApplicationStatus("app-of-apps", "Healthy", "Synced"),
                ApplicationStatus("kafka", "Degraded", "Synced"),
            ]
        ]

        outcome = make_orchestrator(
            app_of_apps=AppOfAppsConfig(chart_path="./app-of-apps"),
            wait_for_applications=True,
        ).install()

        assert outcome.phase is Phase.APPLICATIONS_READY
        assert isinstance(outcome.error, ReadinessTimeoutError)
        assert outcome.missing_targets == ["application/kafka (Degraded/Synced)"]
        assert "Diagnostics for namespace 'argocd'" in outcome.diagnostics

    def test_api_error_while_applying_resource_types(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        orchestrator = make_orchestrator()
        forbidden = KubernetesAuthError("customresourcedefinitions is forbidden", 403)

        with patch.object(
            orchestrator._applier, "apply_manifest_from_source", side_effect=forbidden
        ):
            outcome = orchestrator.install()

        assert outcome.phase is Phase.RESOURCE_TYPES_INSTALL
        assert isinstance(outcome.error, ApplyFailureError)
        assert outcome.error.__cause__ is forbidden
        assert "forbidden" in outcome.message

    def test_connection_lost_while_waiting_for_workloads(
        self, make_orchestrator: Any, ready_cluster: Any
    ) -> None:
        orchestrator = make_orchestrator()
        refused = KubernetesConnectionError("connection refused")

        with patch.object(orchestrator._waiter, "wait_for_workloads", side_effect=refused):
            outcome = orchestrator.install()

        assert outcome.phase is Phase.WORKLOADS_READY
        assert isinstance(outcome.error, ConnectivityFailureError)
        assert outcome.error.__cause__ is refused
        assert outcome.error.phase == "WorkloadsReady"

    def test_client_closed_after_run(
        self, fake_backend: Any, mock_helm: MagicMock, token: CancellationToken
    ) -> None:
        fake_backend.connectivity_failures = -1
        client = MagicMock(spec=KubernetesClient)
        orchestrator = BootstrapOrchestrator(
            InstallRequest(),
            backend=fake_backend,
            installer=ReleaseInstaller(mock_helm, HostPathTranslator(), token),
            token=token,
            client=client,
        )

        orchestrator.install()

        client.close.assert_called_once()


# ===========================================================================
# Cancellation
# ===========================================================================


@pytest.mark.unit
@pytest.mark.bootstrap
class TestCancellation:
    """Tests for operator cancellation."""

    def test_cancelled_before_start(
        self, make_orchestrator: Any, fake_backend: Any, token: CancellationToken
    ) -> None:
        token.cancel("Interrupted by SIGINT")

        outcome = make_orchestrator().install()

        assert outcome.cancelled is True
        assert outcome.phase is Phase.CONNECTIVITY_CHECK
        assert fake_backend.calls == []

    def test_cancelled_during_release_has_no_diagnostics(
        self,
        make_orchestrator: Any,
        ready_cluster: Any,
        mock_helm: MagicMock,
        mock_kubectl: MagicMock,
        token: CancellationToken,
    ) -> None:
        def upgrade(*args: Any, **kwargs: Any) -> CommandResult:
            token.cancel("Interrupted by SIGINT")
            raise HelmCommandError("failed", CommandResult("helm", -15, "", ""))

        mock_helm.upgrade_install.side_effect = upgrade

        outcome = make_orchestrator().install()

        assert outcome.cancelled is True
        assert isinstance(outcome.error, OperationCancelledError)
        assert outcome.phase is Phase.CONTROLLER_RELEASE_INSTALL
        assert outcome.diagnostics == ""
        mock_kubectl.pods_wide.assert_not_called()

    def test_cancelled_while_polling_workloads(
        self,
        make_orchestrator: Any,
        fake_backend: Any,
        crd_manifests: respx.MockRouter,
        token: CancellationToken,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(f"{ORCHESTRATOR}.WORKLOAD_POLL_TIMEOUT_SECONDS", 30)
        original = fake_backend.workload_exists

        def cancel_on_poll(*args: Any) -> bool:
            token.cancel("Interrupted by SIGTERM")
            return original(*args)

        fake_backend.workload_exists = cancel_on_poll

        outcome = make_orchestrator().install()

        assert outcome.cancelled is True
        assert outcome.phase is Phase.WORKLOADS_READY
        assert "SIGTERM" in outcome.message

    def test_cancelled_while_collecting_diagnostics(
        self,
        make_orchestrator: Any,
        fake_backend: Any,
        crd_manifests: respx.MockRouter,
        mock_kubectl: MagicMock,
        token: CancellationToken,
    ) -> None:
        def cancel(namespace: str) -> str:
            token.cancel("Interrupted by SIGINT")
            raise OperationCancelledError("Cancelled while running kubectl")

        mock_kubectl.pods_wide.side_effect = cancel

        outcome = make_orchestrator().install()

        assert outcome.success is False
        assert outcome.cancelled is True
        assert outcome.phase is Phase.WORKLOADS_READY
        assert isinstance(outcome.error.__cause__, ReadinessTimeoutError)
        mock_kubectl.events.assert_not_called()

    def test_diagnostics_stop_once_cancelled(
        self,
        make_orchestrator: Any,
        fake_backend: Any,
        crd_manifests: respx.MockRouter,
        mock_kubectl: MagicMock,
        token: CancellationToken,
    ) -> None:
        def cancel(namespace: str) -> str:
            token.cancel("Interrupted by SIGTERM")
            return "NAME  READY  STATUS\n"

        mock_kubectl.pods_wide.side_effect = cancel

        outcome = make_orchestrator().install()

        assert outcome.cancelled is True
        assert "SIGTERM" in outcome.message
        assert outcome.diagnostics == ""
        mock_kubectl.events.assert_not_called()
        mock_kubectl.non_running_pods.assert_not_called()


# ===========================================================================
# Wiring
# ===========================================================================


@pytest.mark.unit
@pytest.mark.bootstrap
class TestExecutionTarget:
    """Tests for execution target selection."""

    def test_forced_target(self) -> None:
        connection = ConnectionConfig(context="k3d-x", execution_target="subprocess")

        assert resolve_execution_target(connection, platform="linux") is ExecutionTarget.SUBPROCESS

    def test_windows_uses_subprocess(self) -> None:
        connection = ConnectionConfig(context="k3d-x")

        assert resolve_execution_target(connection, platform="win32") is ExecutionTarget.SUBPROCESS

    def test_other_hosts_use_native(self) -> None:
        connection = ConnectionConfig(context="k3d-x")

        assert resolve_execution_target(connection, platform="darwin") is ExecutionTarget.NATIVE


@pytest.mark.unit
@pytest.mark.bootstrap
class TestBuildBackend:
    """Tests for backend construction."""

    @patch(f"{ORCHESTRATOR}.KubernetesClient")
    def test_native(self, mock_client_cls: MagicMock, fake_tools: Any) -> None:
        connection = ConnectionConfig(context="k3d-x")

        backend, client, kubectl = build_backend(connection, fake_tools, ExecutionTarget.NATIVE)

        assert isinstance(backend, NativeBackend)
        assert client is mock_client_cls.return_value
        assert kubectl is not None

    @patch(f"{ORCHESTRATOR}.KubernetesClient")
    def test_native_falls_back_to_kubectl(
        self, mock_client_cls: MagicMock, fake_tools: Any
    ) -> None:
        mock_client_cls.side_effect = KubernetesConnectionError("Cannot load context")

        backend, client, _ = build_backend(
            ConnectionConfig(context="k3d-x"), fake_tools, ExecutionTarget.NATIVE
        )

        assert isinstance(backend, KubectlBackend)
        assert client is None

    @patch(f"{ORCHESTRATOR}.KubernetesClient")
    def test_forced_native_does_not_fall_back(
        self, mock_client_cls: MagicMock, fake_tools: Any
    ) -> None:
        mock_client_cls.side_effect = KubernetesConnectionError("Cannot load context")
        connection = ConnectionConfig(context="k3d-x", execution_target="native")

        with pytest.raises(ToolUnavailableError, match="Cannot load context"):
            build_backend(connection, fake_tools, ExecutionTarget.NATIVE)

    def test_subprocess_requires_kubectl(self, fake_tools: Any) -> None:
        fake_tools.available.discard("kubectl")

        with pytest.raises(KubectlBinaryNotFoundError):
            build_backend(ConnectionConfig(context="k3d-x"), fake_tools, ExecutionTarget.SUBPROCESS)

    def test_subprocess(self, fake_tools: Any) -> None:
        backend, client, kubectl = build_backend(
            ConnectionConfig(context="k3d-x"), fake_tools, ExecutionTarget.SUBPROCESS
        )

        assert isinstance(backend, KubectlBackend)
        assert client is None
        assert kubectl is not None


@pytest.mark.unit
@pytest.mark.bootstrap
class TestFromRequest:
    """Tests for wiring real components from a request."""

    @patch(f"{ORCHESTRATOR}.KubernetesClient")
    def test_wires_components(
        self, mock_client_cls: MagicMock, fake_tools: Any, result_factory: Any
    ) -> None:
        fake_tools.queue(result_factory(stdout="v3.17.0+g301108e\n"))

        with patch(f"{ORCHESTRATOR}.select_tool_environment", return_value=fake_tools):
            orchestrator = BootstrapOrchestrator.from_request(
                InstallRequest(cluster_name="demo"), platform="linux"
            )

        assert isinstance(orchestrator._backend, NativeBackend)
        connection = mock_client_cls.call_args.args[0]
        assert connection.context == "k3d-demo"
        assert fake_tools.calls[0][0] == "helm"

    def test_broken_helm(self, fake_tools: Any, result_factory: Any) -> None:
        fake_tools.queue(result_factory(exit_code=127, stderr="helm: cannot execute binary"))
        connection = ConnectionConfig(context="k3d-x", execution_target="subprocess")

        with (
            patch(f"{ORCHESTRATOR}.select_tool_environment", return_value=fake_tools),
            pytest.raises(ToolUnavailableError, match="cannot execute binary"),
        ):
            BootstrapOrchestrator.from_request(InstallRequest(), connection=connection)

    def test_invalid_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GITOPS_BOOTSTRAP_EXECUTION_TARGET", "carrier-pigeon")

        with pytest.raises(ConfigurationError, match="Invalid connection settings"):
            BootstrapOrchestrator.from_request(InstallRequest())

    def test_install_reports_setup_failure(self) -> None:
        with patch.object(
            orchestrator_module.BootstrapOrchestrator,
            "from_request",
            side_effect=ToolUnavailableError("helm"),
        ):
            outcome = install(InstallRequest())

        assert outcome.success is False
        assert outcome.phase is None
        assert isinstance(outcome.error, ToolUnavailableError)
