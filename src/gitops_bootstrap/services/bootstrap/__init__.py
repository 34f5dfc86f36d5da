"""Bootstrap service module.

Installs the GitOps controller stack into a freshly provisioned cluster:
resource types, the controller release and the app-of-apps release.
"""

from gitops_bootstrap.services.bootstrap.applier import ManifestSource, ResourceApplier
from gitops_bootstrap.services.bootstrap.backends import (
    ClusterBackend,
    KubectlBackend,
    NativeBackend,
)
from gitops_bootstrap.services.bootstrap.diagnostics import DiagnosticsCollector
from gitops_bootstrap.services.bootstrap.models import (
    AppOfAppsConfig,
    ControllerConfig,
    DeploymentMode,
    ExecutionTarget,
    InstallOutcome,
    InstallRequest,
    Phase,
    TlsConfig,
)
from gitops_bootstrap.services.bootstrap.orchestrator import (
    BootstrapOrchestrator,
    install,
    resolve_execution_target,
)
from gitops_bootstrap.services.bootstrap.releases import ReleaseInstaller
from gitops_bootstrap.services.bootstrap.waiter import ReadinessWaiter

__all__ = [
    "AppOfAppsConfig",
    "BootstrapOrchestrator",
    "ClusterBackend",
    "ControllerConfig",
    "DeploymentMode",
    "DiagnosticsCollector",
    "ExecutionTarget",
    "InstallOutcome",
    "InstallRequest",
    "KubectlBackend",
    "ManifestSource",
    "NativeBackend",
    "Phase",
    "ReadinessWaiter",
    "ReleaseInstaller",
    "ResourceApplier",
    "TlsConfig",
    "install",
    "resolve_execution_target",
]
