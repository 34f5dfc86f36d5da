"""Fixed installation constants.

These pin the controller chart, the resource-type manifests and the
polling cadences. None of them are user input.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Cluster addressing
# ---------------------------------------------------------------------------

CONTEXT_PREFIX = "k3d-"
DEFAULT_CLUSTER_NAME = "openframe-dev"

# ---------------------------------------------------------------------------
# Controller release
# ---------------------------------------------------------------------------

CONTROLLER_NAMESPACE = "argocd"
CONTROLLER_RELEASE = "argo-cd"
CONTROLLER_CHART = "argo/argo-cd"
CONTROLLER_CHART_VERSION = "9.3.4"
CONTROLLER_HELM_TIMEOUT = "7m"
CONTROLLER_SKIP_CRDS_VALUE = "crds.install=false"

CHART_REPO_NAME = "argo"
CHART_REPO_URL = "https://argoproj.github.io/argo-helm"

# ---------------------------------------------------------------------------
# App-of-apps release
# ---------------------------------------------------------------------------

APP_OF_APPS_RELEASE = "app-of-apps"
APP_OF_APPS_DEFAULT_NAMESPACE = "argocd"
APP_OF_APPS_DEFAULT_TIMEOUT = "60m"
# Application the release creates; its status lists the child Applications.
ROOT_APPLICATION = "app-of-apps"
TLS_SET_FILE_KEYS = (
    "deployment.oss.ingress.localhost.tls",
    "deployment.saas.ingress.localhost.tls",
)

# ---------------------------------------------------------------------------
# Resource types
# ---------------------------------------------------------------------------

ARGOCD_CRD_VERSION = "v2.13.2"
_CRD_BASE_URL = (
    f"https://raw.githubusercontent.com/argoproj/argo-cd/{ARGOCD_CRD_VERSION}/manifests/crds"
)
CRD_MANIFEST_URLS = (
    f"{_CRD_BASE_URL}/application-crd.yaml",
    f"{_CRD_BASE_URL}/applicationset-crd.yaml",
    f"{_CRD_BASE_URL}/appproject-crd.yaml",
)
CRD_NAMES = (
    "applications.argoproj.io",
    "applicationsets.argoproj.io",
    "appprojects.argoproj.io",
)
MANIFEST_FETCH_TIMEOUT_SECONDS = 30.0

# ---------------------------------------------------------------------------
# Expected controller workloads
# ---------------------------------------------------------------------------

CONTROLLER_DEPLOYMENTS = ("argocd-server", "argocd-repo-server")
CONTROLLER_STATEFULSETS = ("argocd-application-controller",)

# ---------------------------------------------------------------------------
# Applications deployed by the app-of-apps release
# ---------------------------------------------------------------------------

APPLICATION_API_PATH = "/apis/argoproj.io/v1alpha1/namespaces/{namespace}/applications"
APPLICATION_RESOURCE = "applications.argoproj.io"
APPLICATION_HEALTHY = "Healthy"
APPLICATION_SYNCED = "Synced"

# ---------------------------------------------------------------------------
# Cadences (interval seconds, timeout seconds / attempts)
# ---------------------------------------------------------------------------

CONNECTIVITY_ATTEMPTS = 10
CONNECTIVITY_DELAY_SECONDS = 3.0
PRE_APP_OF_APPS_CONNECTIVITY_ATTEMPTS = 5
PRE_APP_OF_APPS_CONNECTIVITY_DELAY_SECONDS = 2.0

CRD_POLL_INTERVAL_SECONDS = 1.0
CRD_POLL_TIMEOUT_SECONDS = 30.0

NAMESPACE_POLL_INTERVAL_SECONDS = 0.5
NAMESPACE_POLL_TIMEOUT_SECONDS = 30.0

API_PORT_CHECK_INTERVAL_SECONDS = 1.0
API_PORT_CHECK_TIMEOUT_SECONDS = 45.0
API_PORT_DIAL_TIMEOUT_SECONDS = 2.0

WORKLOAD_POLL_INTERVAL_SECONDS = 2.0
WORKLOAD_POLL_TIMEOUT_SECONDS = 120.0

APPLICATION_POLL_INTERVAL_SECONDS = 2.0
APPLICATION_POLL_TIMEOUT_SECONDS = 3600.0
APPLICATION_MAX_UNREACHABLE_CHECKS = 5

# ---------------------------------------------------------------------------
# Tool environment
# ---------------------------------------------------------------------------

HELM_SCRATCH_DIRS = {
    "HELM_CACHE_HOME": "/tmp/helm/cache",
    "HELM_CONFIG_HOME": "/tmp/helm/config",
    "HELM_DATA_HOME": "/tmp/helm/data",
}
DEFAULT_WSL_DISTRO = "Ubuntu"
DEFAULT_WSL_USER = "runner"
WSLPATH_TIMEOUT_SECONDS = 5.0
COMMAND_CANCEL_GRACE_SECONDS = 5.0


def context_for_cluster(cluster_name: str) -> str:
    """Return the kubeconfig context selector for a cluster."""
    return f"{CONTEXT_PREFIX}{cluster_name}"
