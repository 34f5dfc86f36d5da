"""Readiness polling for resource types, namespaces, workloads and Applications."""

from __future__ import annotations

import socket
from collections.abc import Sequence

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import (
    API_PORT_DIAL_TIMEOUT_SECONDS,
    API_PORT_CHECK_INTERVAL_SECONDS,
    API_PORT_CHECK_TIMEOUT_SECONDS,
    APPLICATION_MAX_UNREACHABLE_CHECKS,
    APPLICATION_POLL_INTERVAL_SECONDS,
    APPLICATION_POLL_TIMEOUT_SECONDS,
    ROOT_APPLICATION,
    WORKLOAD_POLL_INTERVAL_SECONDS,
    WORKLOAD_POLL_TIMEOUT_SECONDS,
)
from gitops_bootstrap.core.exceptions import CommandTimeoutError, ConnectivityFailureError
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    KubernetesConnectionError,
    KubernetesError,
    KubernetesTimeoutError,
)
from gitops_bootstrap.services.bootstrap.backends import ClusterBackend
from gitops_bootstrap.services.bootstrap.base import BootstrapComponent
from gitops_bootstrap.services.bootstrap.models import ReadinessTarget, ResourceCategory
from gitops_bootstrap.utils.polling import poll_until

NAMESPACE_ACTIVE_PHASE = "Active"


def port_open(host: str, port: int, timeout: float = API_PORT_DIAL_TIMEOUT_SECONDS) -> bool:
    """Whether a TCP connection to ``host:port`` can be opened."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class ReadinessWaiter(BootstrapComponent):
    """Polls a cluster backend until readiness targets are observed.

    Not-found and transient API errors keep a target outstanding; only the
    overall deadline or cancellation ends a wait early.
    """

    _entity_name = "waiter"

    def __init__(self, backend: ClusterBackend, token: CancellationToken) -> None:
        super().__init__(token)
        self._backend = backend

    def is_satisfied(self, target: ReadinessTarget) -> bool:
        """Evaluate one target against the cluster."""
        if target.category is ResourceCategory.CRD:
            return self._backend.crd_exists(target.name)
        if target.category is ResourceCategory.NAMESPACE:
            return self._backend.namespace_phase(target.name) == NAMESPACE_ACTIVE_PHASE
        if target.category in (ResourceCategory.DEPLOYMENT, ResourceCategory.STATEFULSET):
            return self._backend.workload_exists(target.category, target.name, target.namespace)
        raise ValueError(f"Unsupported readiness target category: {target.category.value}")

    def wait_for(
        self,
        targets: Sequence[ReadinessTarget],
        *,
        interval: float,
        timeout: float,
    ) -> None:
        """Block until every target is satisfied.

        All outstanding targets are checked on each tick before sleeping.

        Raises:
            ReadinessTimeoutError: Naming the targets still outstanding.
            OperationCancelledError: If the run is cancelled.
        """
        outstanding = list(targets)

        def check() -> list[str]:
            for target in list(outstanding):
                self._token.raise_if_cancelled()
                try:
                    ready = self.is_satisfied(target)
                except (KubernetesError, CommandTimeoutError) as e:
                    self._log.warning("readiness_check_error", target=str(target), error=str(e))
                    continue
                if ready:
                    self._log.debug("readiness_target_satisfied", target=str(target))
                    outstanding.remove(target)
            return [str(t) for t in outstanding]

        self._log.info(
            "waiting_for_targets",
            targets=[str(t) for t in targets],
            interval=interval,
            timeout=timeout,
        )
        poll_until(
            check,
            interval=interval,
            timeout=timeout,
            token=self._token,
            description="readiness",
        )
        self._log.info("targets_ready", count=len(targets))

    def wait_for_api_port(
        self,
        *,
        interval: float = API_PORT_CHECK_INTERVAL_SECONDS,
        timeout: float = API_PORT_CHECK_TIMEOUT_SECONDS,
    ) -> None:
        """Wait until the API server port accepts TCP connections.

        Skipped when the backend cannot name the API server address.
        """
        address = self._backend.api_address()
        if address is None:
            self._log.debug("api_port_check_skipped")
            return
        host, port = address
        label = f"api-server {host}:{port}"

        def check() -> list[str]:
            return [] if port_open(host, port) else [label]

        poll_until(
            check,
            interval=interval,
            timeout=timeout,
            token=self._token,
            description="api_port",
        )
        self._log.debug("api_port_reachable", host=host, port=port)

    def wait_for_workloads(
        self,
        targets: Sequence[ReadinessTarget],
        *,
        interval: float = WORKLOAD_POLL_INTERVAL_SECONDS,
        timeout: float = WORKLOAD_POLL_TIMEOUT_SECONDS,
    ) -> None:
        """Confirm the API port is open, then wait for workload objects to exist."""
        self.wait_for_api_port()
        self.wait_for(targets, interval=interval, timeout=timeout)

    def wait_for_applications(
        self,
        namespace: str,
        *,
        root: str = ROOT_APPLICATION,
        interval: float = APPLICATION_POLL_INTERVAL_SECONDS,
        timeout: float = APPLICATION_POLL_TIMEOUT_SECONDS,
        max_unreachable: int = APPLICATION_MAX_UNREACHABLE_CHECKS,
    ) -> None:
        """Block until every Application in ``namespace`` is Healthy and Synced.

        The root Application's status lists the children it plans to create;
        the wait also holds until that many children exist. Listing errors
        keep the wait going, except that ``max_unreachable`` consecutive
        connectivity failures end it.

        Raises:
            ConnectivityFailureError: If the API server stays unreachable.
            ReadinessTimeoutError: Naming the Applications still not ready.
            OperationCancelledError: If the run is cancelled.
        """
        pending_label = f"applications in {namespace}"
        unreachable = 0
        planned = 0
        ever_ready: set[str] = set()

        def check() -> list[str]:
            nonlocal unreachable, planned
            self._token.raise_if_cancelled()
            try:
                apps = self._backend.list_applications(namespace)
            except (KubernetesConnectionError, KubernetesTimeoutError, CommandTimeoutError) as e:
                unreachable += 1
                self._log.warning(
                    "application_list_unreachable",
                    failures=unreachable,
                    max_failures=max_unreachable,
                    error=str(e),
                )
                if unreachable >= max_unreachable:
                    raise ConnectivityFailureError(
                        f"Cluster became unreachable while waiting for applications: {e}",
                        attempts=unreachable,
                    ) from e
                return [pending_label]
            except KubernetesError as e:
                self._log.warning("application_list_error", error=str(e))
                return [pending_label]
            unreachable = 0

            pending: list[str] = []
            children = 0
            for app in apps:
                if app.name == root:
                    planned = max(planned, app.planned)
                else:
                    children += 1
                if not app.ready:
                    pending.append(str(app))
                elif app.name not in ever_ready:
                    ever_ready.add(app.name)
                    self._log.info("application_ready", application=app.name)
            if not apps:
                pending.append(pending_label)
            if planned > children:
                pending.append(f"{planned - children} planned application(s) not yet created")
            self._log.debug(
                "application_progress",
                ready=sum(1 for app in apps if app.ready),
                total=len(apps),
                planned=planned,
                ever_ready=len(ever_ready),
            )
            return pending

        self._log.info(
            "waiting_for_applications",
            namespace=namespace,
            interval=interval,
            timeout=timeout,
        )
        poll_until(
            check,
            interval=interval,
            timeout=timeout,
            token=self._token,
            description="applications",
        )
        self._log.info("applications_ready", namespace=namespace, count=len(ever_ready))
