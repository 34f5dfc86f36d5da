"""Kubernetes API client wrapper.

Wraps the official kubernetes Python client bound to one kubeconfig
context, with lazy API group initialization, a raw REST entry point for
kind-agnostic manifests, and consistent error translation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import structlog
from urllib3.exceptions import HTTPError as TransportHTTPError

from gitops_bootstrap.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)

if TYPE_CHECKING:
    from kubernetes.client import (
        ApiClient,
        ApiextensionsV1Api,
        AppsV1Api,
        CoreV1Api,
        VersionApi,
    )

    from gitops_bootstrap.integrations.kubernetes.config import ConnectionConfig

logger = structlog.get_logger()

JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}

# Raised by urllib3 before any HTTP status exists (refused, reset, DNS).
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (TransportHTTPError, OSError)


class KubernetesClient:
    """Kubernetes API client bound to a single context.

    Unlike ``kubernetes.config.load_kube_config`` with no arguments, the
    loaded configuration is kept on this instance and never installed as the
    process-wide default, so two clients for different clusters can coexist.

    Example:
        ```python
        config = ConnectionConfig.from_env(context="k3d-demo")
        with KubernetesClient(config) as client:
            client.check_connection()
            ns = client.core_v1.read_namespace("argocd")
        ```
    """

    def __init__(self, connection: ConnectionConfig) -> None:
        """Initialize the client from a connection config.

        Args:
            connection: Resolved connection configuration.

        Raises:
            KubernetesConnectionError: If the kubeconfig or context cannot be loaded.
        """
        self._connection = connection
        self._api_client: ApiClient | None = None
        self._host = ""

        self._core_v1: CoreV1Api | None = None
        self._apps_v1: AppsV1Api | None = None
        self._apiextensions_v1: ApiextensionsV1Api | None = None
        self._version_api: VersionApi | None = None

        self._load_config()
        logger.info("kubernetes_client_initialized", context=connection.context, host=self._host)

    def _load_config(self) -> None:
        """Load the kubeconfig context into a private client configuration."""
        from kubernetes import client, config
        from kubernetes.config import ConfigException

        configuration = client.Configuration()
        try:
            config.load_kube_config(
                config_file=self._connection.kubeconfig,
                context=self._connection.context,
                client_configuration=configuration,
            )
        except (ConfigException, FileNotFoundError) as e:
            raise KubernetesConnectionError(
                message=(
                    f"Cannot load context '{self._connection.context}' "
                    f"from {self._connection.kubeconfig}"
                ),
                original_error=e,
            ) from e

        if not self._connection.verify_ssl:
            configuration.verify_ssl = False
        self._host = configuration.host
        self._api_client = client.ApiClient(configuration)
        logger.debug(
            "loaded_kubeconfig",
            context=self._connection.context,
            kubeconfig=self._connection.kubeconfig,
        )

    @property
    def context(self) -> str:
        """The kubeconfig context this client is bound to."""
        return self._connection.context

    @property
    def api_client(self) -> ApiClient:
        """The underlying ApiClient."""
        if self._api_client is None:
            raise KubernetesConnectionError("Kubernetes client is closed")
        return self._api_client

    # =========================================================================
    # Lazy API Group Accessors
    # =========================================================================

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance (namespaces, pods, events)."""
        if self._core_v1 is None:
            from kubernetes.client import CoreV1Api

            self._core_v1 = CoreV1Api(self.api_client)
        return self._core_v1

    @property
    def apps_v1(self) -> AppsV1Api:
        """Get AppsV1Api instance (deployments, statefulsets)."""
        if self._apps_v1 is None:
            from kubernetes.client import AppsV1Api

            self._apps_v1 = AppsV1Api(self.api_client)
        return self._apps_v1

    @property
    def apiextensions_v1(self) -> ApiextensionsV1Api:
        """Get ApiextensionsV1Api instance (custom resource definitions)."""
        if self._apiextensions_v1 is None:
            from kubernetes.client import ApiextensionsV1Api

            self._apiextensions_v1 = ApiextensionsV1Api(self.api_client)
        return self._apiextensions_v1

    @property
    def version_api(self) -> VersionApi:
        """Get VersionApi instance for cluster version info."""
        if self._version_api is None:
            from kubernetes.client import VersionApi

            self._version_api = VersionApi(self.api_client)
        return self._version_api

    # =========================================================================
    # Raw REST Access
    # =========================================================================

    def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Issue a JSON request against an arbitrary API path.

        Args:
            method: HTTP method (GET, POST, PUT).
            path: Absolute API path, e.g. ``/apis/apps/v1/namespaces/x/deployments``.
            body: JSON body for POST/PUT.
            kind: Resource kind, for error context.
            name: Resource name, for error context.
            namespace: Resource namespace, for error context.

        Returns:
            The decoded response object.

        Raises:
            KubernetesError: Translated from the API response.
        """
        from kubernetes.client import ApiException

        try:
            response = self.api_client.call_api(
                path,
                method,
                header_params=dict(JSON_HEADERS),
                body=body,
                auth_settings=["BearerToken"],
                response_type="object",
                _return_http_data_only=True,
                _preload_content=True,
            )
        except ApiException as e:
            raise self.translate_api_exception(e, kind, name, namespace) from e
        except TRANSPORT_ERRORS as e:
            raise self.connection_error(e) from e
        return response or {}

    def connection_error(self, e: Exception) -> KubernetesConnectionError:
        """Wrap a transport failure raised below the HTTP layer."""
        return KubernetesConnectionError(
            message=f"Cannot reach API server at {self._host}: {e}",
            original_error=e,
        )

    # =========================================================================
    # Error Translation
    # =========================================================================

    @staticmethod
    def translate_api_exception(
        e: Exception,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
    ) -> KubernetesError:
        """Translate a kubernetes ApiException to a KubernetesError subclass."""
        from kubernetes.client import ApiException

        if not isinstance(e, ApiException):
            return KubernetesConnectionError(message=str(e), original_error=e)

        status = e.status
        if status in (401, 403):
            return KubernetesAuthError(
                message=e.reason or "Authentication/authorization failed",
                status_code=status,
            )
        if status == 404:
            return KubernetesNotFoundError(kind=kind, name=name, namespace=namespace)
        if status == 409:
            return KubernetesConflictError(kind=kind, name=name, namespace=namespace)
        if status == 504:
            return KubernetesTimeoutError(message=e.reason or "Gateway timeout")
        if status in (400, 422):
            return KubernetesValidationError(
                message=e.body if isinstance(e.body, str) and e.body else (e.reason or ""),
                status_code=status,
                kind=kind,
                name=name,
            )
        if not status:
            return KubernetesConnectionError(message=e.reason or "API server unreachable")
        return KubernetesError(
            message=e.reason or f"Kubernetes API error: {status}",
            status_code=status,
            kind=kind,
            name=name,
            namespace=namespace,
        )

    # =========================================================================
    # Connection
    # =========================================================================

    def check_connection(self) -> str:
        """Query the API server version.

        Returns:
            The server's git version (e.g. ``v1.31.4+k3s1``).

        Raises:
            KubernetesError: If the API server cannot be queried.
        """
        from kubernetes.client import ApiException

        try:
            info = self.version_api.get_code()
        except ApiException as e:
            raise self.translate_api_exception(e) from e
        except TRANSPORT_ERRORS as e:
            raise self.connection_error(e) from e
        return str(info.git_version)

    def api_address(self) -> tuple[str, int] | None:
        """Return the API server's (host, port) from the loaded configuration."""
        if not self._host:
            return None
        parsed = urlparse(self._host)
        if not parsed.hostname:
            return None
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return parsed.hostname, port

    def close(self) -> None:
        """Release the connection pool."""
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None

    def __enter__(self) -> KubernetesClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
