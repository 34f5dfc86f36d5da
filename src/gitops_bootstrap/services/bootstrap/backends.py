"""Cluster backends: one contract, two execution substrates.

``NativeBackend`` talks to the API server through the kubernetes Python
client. ``KubectlBackend`` shells out to kubectl with an explicit
``--context``. The orchestrator picks one per run and every other component
only sees the :class:`ClusterBackend` protocol.

Both raise the integration-level exception types: a missing object is a
``KubernetesNotFoundError`` (or a ``False``/``None`` return where the
method says so) and an existing one on create is a
``KubernetesConflictError``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from gitops_bootstrap.core.constants import APPLICATION_API_PATH, APPLICATION_RESOURCE
from gitops_bootstrap.integrations.kubernetes.client import TRANSPORT_ERRORS
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    KubectlCommandError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesNotFoundError,
)
from gitops_bootstrap.integrations.kubernetes.kubectl_client import (
    is_already_exists,
    is_not_found,
    is_unreachable,
)
from gitops_bootstrap.services.bootstrap.models import (
    ApplicationStatus,
    ExecutionTarget,
    ManifestResource,
    ResourceCategory,
)

if TYPE_CHECKING:
    from gitops_bootstrap.integrations.kubernetes.client import KubernetesClient
    from gitops_bootstrap.integrations.kubernetes.kubectl_client import KubectlClient

logger = structlog.get_logger()

# ---------------------------------------------------------------------------
# Kind -> endpoint table
# ---------------------------------------------------------------------------

# kind: (plural endpoint, namespaced)
KIND_ENDPOINTS: dict[str, tuple[str, bool]] = {
    "CustomResourceDefinition": ("customresourcedefinitions", False),
    "Namespace": ("namespaces", False),
    "ClusterRole": ("clusterroles", False),
    "ClusterRoleBinding": ("clusterrolebindings", False),
    "Deployment": ("deployments", True),
    "StatefulSet": ("statefulsets", True),
    "DaemonSet": ("daemonsets", True),
    "Service": ("services", True),
    "ServiceAccount": ("serviceaccounts", True),
    "ConfigMap": ("configmaps", True),
    "Secret": ("secrets", True),
    "Role": ("roles", True),
    "RoleBinding": ("rolebindings", True),
    "Ingress": ("ingresses", True),
    "NetworkPolicy": ("networkpolicies", True),
    "Application": ("applications", True),
    "ApplicationSet": ("applicationsets", True),
    "AppProject": ("appprojects", True),
}


def resolve_endpoint(resource: ManifestResource) -> tuple[str, bool]:
    """Return ``(plural, namespaced)`` for a resource's kind.

    Kinds outside the table fall back to ``lowercase(kind) + "s"``, scoped
    by whether the document names a namespace.
    """
    if resource.kind in KIND_ENDPOINTS:
        return KIND_ENDPOINTS[resource.kind]
    plural = f"{resource.kind.lower()}s"
    logger.warning(
        "unknown_kind_endpoint_guessed",
        kind=resource.kind,
        api_version=resource.api_version,
        endpoint=plural,
    )
    return plural, bool(resource.namespace)


def collection_path(resource: ManifestResource) -> str:
    """API path of the collection a resource is created in."""
    plural, namespaced = resolve_endpoint(resource)
    if resource.group:
        root = f"/apis/{resource.group}/{resource.version}"
    else:
        root = f"/api/{resource.version}"
    if namespaced:
        return f"{root}/namespaces/{resource.namespace or 'default'}/{plural}"
    return f"{root}/{plural}"


def object_path(resource: ManifestResource) -> str:
    """API path of a single named resource."""
    return f"{collection_path(resource)}/{resource.name}"


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ClusterBackend(Protocol):
    """Cluster operations needed by the bootstrap components."""

    target: ExecutionTarget

    def check_connectivity(self) -> None:
        """Raise if the API server is unreachable."""
        ...

    def crd_exists(self, name: str) -> bool: ...

    def namespace_phase(self, name: str) -> str | None:
        """Return the namespace phase, or None if it does not exist."""
        ...

    def create_namespace(self, name: str) -> None:
        """Create a namespace; an existing one is not an error."""
        ...

    def workload_exists(self, category: ResourceCategory, name: str, namespace: str) -> bool: ...

    def create(self, resource: ManifestResource) -> None:
        """Create an object; raises KubernetesConflictError if it exists."""
        ...

    def get(self, resource: ManifestResource) -> dict[str, Any]: ...

    def replace(self, resource: ManifestResource, body: dict[str, Any]) -> None: ...

    def api_address(self) -> tuple[str, int] | None:
        """API server (host, port) for a raw TCP reachability check, if known."""
        ...

    def list_applications(self, namespace: str) -> list[ApplicationStatus]:
        """Applications in a namespace; raises KubernetesConnectionError if unreachable."""
        ...


# ---------------------------------------------------------------------------
# Native
# ---------------------------------------------------------------------------


class NativeBackend:
    """Backend over the kubernetes Python client."""

    target = ExecutionTarget.NATIVE

    def __init__(self, client: KubernetesClient) -> None:
        self._client = client

    def _read(
        self,
        read: Callable[[], Any],
        kind: str,
        name: str,
        namespace: str | None = None,
    ) -> Any | None:
        """Run a typed read; ``None`` when the object does not exist."""
        from kubernetes.client import ApiException

        try:
            return read()
        except ApiException as e:
            if e.status == 404:
                return None
            raise self._client.translate_api_exception(e, kind, name, namespace) from e
        except TRANSPORT_ERRORS as e:
            raise self._client.connection_error(e) from e

    def check_connectivity(self) -> None:
        version = self._client.check_connection()
        logger.debug("api_server_reachable", version=version, context=self._client.context)

    def crd_exists(self, name: str) -> bool:
        crd = self._read(
            lambda: self._client.apiextensions_v1.read_custom_resource_definition(name),
            "CustomResourceDefinition",
            name,
        )
        return crd is not None

    def namespace_phase(self, name: str) -> str | None:
        namespace = self._read(lambda: self._client.core_v1.read_namespace(name), "Namespace", name)
        if namespace is None or not namespace.status:
            return None
        return namespace.status.phase

    def create_namespace(self, name: str) -> None:
        from kubernetes.client import ApiException

        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}
        try:
            self._client.core_v1.create_namespace(body=body)
        except ApiException as e:
            if e.status == 409:
                logger.debug("namespace_already_exists", namespace=name)
                return
            raise self._client.translate_api_exception(e, "Namespace", name) from e
        except TRANSPORT_ERRORS as e:
            raise self._client.connection_error(e) from e

    def workload_exists(self, category: ResourceCategory, name: str, namespace: str) -> bool:
        apps = self._client.apps_v1
        if category is ResourceCategory.DEPLOYMENT:
            read = apps.read_namespaced_deployment
        elif category is ResourceCategory.STATEFULSET:
            read = apps.read_namespaced_stateful_set
        else:
            raise ValueError(f"not a workload category: {category.value}")
        workload = self._read(lambda: read(name, namespace), category.value, name, namespace)
        return workload is not None

    def create(self, resource: ManifestResource) -> None:
        self._client.request(
            "POST",
            collection_path(resource),
            resource.body,
            kind=resource.kind,
            name=resource.name,
            namespace=resource.namespace or None,
        )

    def get(self, resource: ManifestResource) -> dict[str, Any]:
        return self._client.request(
            "GET",
            object_path(resource),
            kind=resource.kind,
            name=resource.name,
            namespace=resource.namespace or None,
        )

    def replace(self, resource: ManifestResource, body: dict[str, Any]) -> None:
        self._client.request(
            "PUT",
            object_path(resource),
            body,
            kind=resource.kind,
            name=resource.name,
            namespace=resource.namespace or None,
        )

    def api_address(self) -> tuple[str, int] | None:
        return self._client.api_address()

    def list_applications(self, namespace: str) -> list[ApplicationStatus]:
        body = self._client.request(
            "GET",
            APPLICATION_API_PATH.format(namespace=namespace),
            kind="Application",
            namespace=namespace,
        )
        return [ApplicationStatus.from_object(item) for item in body.get("items") or []]


# ---------------------------------------------------------------------------
# kubectl
# ---------------------------------------------------------------------------


def _kubectl_resource(resource: ManifestResource) -> str:
    """Fully qualified resource name kubectl resolves through discovery."""
    kind = resource.kind.lower()
    return f"{kind}.{resource.group}" if resource.group else kind


class KubectlBackend:
    """Backend over the kubectl CLI."""

    target = ExecutionTarget.SUBPROCESS

    def __init__(self, kubectl: KubectlClient) -> None:
        self._kubectl = kubectl

    def check_connectivity(self) -> None:
        self._kubectl.cluster_info()

    def crd_exists(self, name: str) -> bool:
        return self._kubectl.exists("customresourcedefinition", name)

    def namespace_phase(self, name: str) -> str | None:
        try:
            phase = self._kubectl.jsonpath("namespace", name, ".status.phase")
        except KubectlCommandError as e:
            if is_not_found(e):
                return None
            raise
        return phase or None

    def create_namespace(self, name: str) -> None:
        try:
            self._kubectl.create_namespace(name)
        except KubectlCommandError as e:
            if is_already_exists(e):
                logger.debug("namespace_already_exists", namespace=name)
                return
            raise

    def workload_exists(self, category: ResourceCategory, name: str, namespace: str) -> bool:
        if category not in (ResourceCategory.DEPLOYMENT, ResourceCategory.STATEFULSET):
            raise ValueError(f"not a workload category: {category.value}")
        return self._kubectl.exists(category.value, name, namespace)

    def create(self, resource: ManifestResource) -> None:
        try:
            self._kubectl.create_from_stdin(json.dumps(resource.body))
        except KubectlCommandError as e:
            if is_already_exists(e):
                raise KubernetesConflictError(
                    kind=resource.kind,
                    name=resource.name,
                    namespace=resource.namespace or None,
                ) from e
            raise

    def get(self, resource: ManifestResource) -> dict[str, Any]:
        args = [_kubectl_resource(resource), resource.name]
        if resource.namespace:
            args.extend(["-n", resource.namespace])
        try:
            return self._kubectl.get_json(args)
        except KubectlCommandError as e:
            if is_not_found(e):
                raise KubernetesNotFoundError(
                    kind=resource.kind,
                    name=resource.name,
                    namespace=resource.namespace or None,
                ) from e
            raise

    def replace(self, resource: ManifestResource, body: dict[str, Any]) -> None:
        self._kubectl.replace_from_stdin(json.dumps(body))

    def api_address(self) -> tuple[str, int] | None:
        return None

    def list_applications(self, namespace: str) -> list[ApplicationStatus]:
        try:
            body = self._kubectl.get_json([APPLICATION_RESOURCE, "-n", namespace])
        except KubectlCommandError as e:
            if is_unreachable(e):
                raise KubernetesConnectionError(e.message, original_error=e) from e
            raise
        return [ApplicationStatus.from_object(item) for item in body.get("items") or []]
