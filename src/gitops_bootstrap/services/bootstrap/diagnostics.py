"""Failure diagnostics for the controller namespace.

Captures pod status, recent events, current and previous container logs,
and descriptions of pods that are not running, at the moment a release
fails. Each section is collected independently; a section that cannot be
gathered records its error instead of aborting the report.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

import structlog

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import CONTROLLER_NAMESPACE
from gitops_bootstrap.core.exceptions import CommandTimeoutError
from gitops_bootstrap.integrations.kubernetes.client import TRANSPORT_ERRORS
from gitops_bootstrap.integrations.kubernetes.exceptions import KubernetesError

if TYPE_CHECKING:
    from gitops_bootstrap.integrations.kubernetes.client import KubernetesClient
    from gitops_bootstrap.integrations.kubernetes.kubectl_client import KubectlClient

logger = structlog.get_logger()

LOG_TAIL_LINES = 50
_COLLECTION_ERRORS = (KubernetesError, CommandTimeoutError)


@dataclass
class DiagnosticsSection:
    """One titled block of a diagnostics report."""

    title: str
    body: str = ""
    error: str | None = None

    def render(self) -> str:
        if self.error:
            content = f"(unavailable: {self.error})"
        else:
            content = self.body.rstrip() or "(empty)"
        return f"=== {self.title} ===\n{content}"


@dataclass
class DiagnosticsReport:
    """Cluster state captured at the moment of a failure."""

    namespace: str
    sections: list[DiagnosticsSection] = field(default_factory=list)
    token: CancellationToken | None = None

    def add(self, title: str, collect: Callable[[], str]) -> None:
        """Run ``collect`` and store its output, or its error, as a section.

        Raises:
            OperationCancelledError: If the run was cancelled; no further
                sections are collected.
        """
        if self.token is not None:
            self.token.raise_if_cancelled()
        try:
            self.sections.append(DiagnosticsSection(title, body=collect()))
        except _COLLECTION_ERRORS as e:
            logger.debug("diagnostics_section_failed", section=title, error=str(e))
            self.sections.append(DiagnosticsSection(title, error=str(e)))

    def render(self) -> str:
        header = f"Diagnostics for namespace '{self.namespace}'"
        return "\n\n".join([header, *(section.render() for section in self.sections)])

    def __bool__(self) -> bool:
        return bool(self.sections)


class DiagnosticsCollector:
    """Gathers a :class:`DiagnosticsReport` through kubectl or the native API.

    kubectl is preferred because its tables and ``describe`` output are
    what an operator expects to read; the native client is used when
    kubectl is not installed.
    """

    def __init__(
        self,
        kubectl: KubectlClient | None = None,
        client: KubernetesClient | None = None,
        namespace: str = CONTROLLER_NAMESPACE,
        token: CancellationToken | None = None,
    ) -> None:
        self._kubectl = kubectl
        self._client = client
        self._namespace = namespace
        self._token = token
        self._log = logger.bind(entity="diagnostics", namespace=namespace)

    def collect(self) -> DiagnosticsReport:
        """Collect every section. Never raises for cluster or tool errors.

        Raises:
            OperationCancelledError: If the run is cancelled while collecting.
        """
        report = DiagnosticsReport(namespace=self._namespace, token=self._token)
        if self._token is not None:
            self._token.raise_if_cancelled()
        if self._kubectl is not None:
            self._collect_kubectl(report, self._kubectl)
        elif self._client is not None:
            self._collect_native(report, self._client)
        else:
            report.sections.append(
                DiagnosticsSection("Diagnostics", error="no kubectl binary or API client available")
            )
        self._log.info("diagnostics_collected", sections=len(report.sections))
        return report

    # -----------------------------------------------------------------------
    # kubectl
    # -----------------------------------------------------------------------

    def _collect_kubectl(self, report: DiagnosticsReport, kubectl: KubectlClient) -> None:
        ns = self._namespace
        report.add("Pod status", lambda: kubectl.pods_wide(ns))
        report.add("Recent events", lambda: kubectl.events(ns))

        try:
            pods = sorted(kubectl.list_names("pods", ns))
        except _COLLECTION_ERRORS as e:
            report.sections.append(DiagnosticsSection("Pod logs", error=str(e)))
            pods = []
        for pod in pods:
            report.add(f"Logs: {pod}", partial(kubectl.pod_logs, pod, ns, tail=LOG_TAIL_LINES))
            report.add(
                f"Previous logs: {pod}",
                partial(kubectl.pod_logs, pod, ns, tail=LOG_TAIL_LINES, previous=True),
            )

        try:
            not_running = kubectl.non_running_pods(ns)
        except _COLLECTION_ERRORS as e:
            report.sections.append(DiagnosticsSection("Non-running pods", error=str(e)))
            not_running = []
        for pod_ref in not_running:
            report.add(f"Describe: {pod_ref}", partial(kubectl.describe, pod_ref, ns))

    # -----------------------------------------------------------------------
    # Native API
    # -----------------------------------------------------------------------

    def _native_call(self, client: KubernetesClient, func: Callable[[], Any]) -> Any:
        from kubernetes.client import ApiException

        try:
            return func()
        except ApiException as e:
            raise client.translate_api_exception(e) from e
        except TRANSPORT_ERRORS as e:
            raise client.connection_error(e) from e

    def _native_events(self, client: KubernetesClient) -> str:
        events = self._native_call(
            client, lambda: client.core_v1.list_namespaced_event(self._namespace)
        )
        return _event_table(events.items)

    def _native_logs(
        self, client: KubernetesClient, pod: str, container: str, previous: bool
    ) -> str:
        return str(
            self._native_call(
                client,
                lambda: client.core_v1.read_namespaced_pod_log(
                    pod,
                    self._namespace,
                    container=container,
                    tail_lines=LOG_TAIL_LINES,
                    previous=previous,
                ),
            )
        )

    def _collect_native(self, report: DiagnosticsReport, client: KubernetesClient) -> None:
        ns = self._namespace
        pods: list[Any] = []
        try:
            pods = self._native_call(client, lambda: client.core_v1.list_namespaced_pod(ns)).items
            report.sections.append(DiagnosticsSection("Pod status", body=_pod_table(pods)))
        except _COLLECTION_ERRORS as e:
            report.sections.append(DiagnosticsSection("Pod status", error=str(e)))

        report.add("Recent events", partial(self._native_events, client))

        for pod in pods:
            name = pod.metadata.name
            for container in pod.spec.containers:
                report.add(
                    f"Logs: {name}/{container.name}",
                    partial(self._native_logs, client, name, container.name, False),
                )
                report.add(
                    f"Previous logs: {name}/{container.name}",
                    partial(self._native_logs, client, name, container.name, True),
                )

        for pod in pods:
            if pod.status and pod.status.phase != "Running":
                report.sections.append(
                    DiagnosticsSection(
                        f"Describe: pod/{pod.metadata.name}", body=_describe_pod(pod)
                    )
                )


def _pod_table(pods: list[Any]) -> str:
    lines = [f"{'NAME':<50} {'PHASE':<12} {'NODE':<20} IP"]
    for pod in pods:
        phase = (pod.status.phase or "") if pod.status else ""
        ip = (pod.status.pod_ip or "") if pod.status else ""
        node = pod.spec.node_name or ""
        lines.append(f"{pod.metadata.name:<50} {phase:<12} {node:<20} {ip}")
    return "\n".join(lines)


def _event_time(event: Any) -> str:
    stamp = event.last_timestamp or event.event_time
    return stamp.isoformat() if stamp else ""


def _event_table(events: list[Any]) -> str:
    lines = []
    for event in sorted(events, key=_event_time):
        obj = event.involved_object
        lines.append(
            f"{_event_time(event)} {event.type} {event.reason} "
            f"{obj.kind}/{obj.name}: {event.message}"
        )
    return "\n".join(lines)


def _describe_pod(pod: Any) -> str:
    status = pod.status
    lines = [f"Name: {pod.metadata.name}", f"Phase: {status.phase}"]
    for condition in status.conditions or []:
        lines.append(f"Condition {condition.type}={condition.status} {condition.reason or ''}")
    for container in status.container_statuses or []:
        state = container.state
        if state and state.waiting:
            detail = f"waiting ({state.waiting.reason}: {state.waiting.message or ''})"
        elif state and state.terminated:
            detail = f"terminated ({state.terminated.reason}, exit {state.terminated.exit_code})"
        else:
            detail = "running"
        lines.append(f"Container {container.name}: {detail}, restarts={container.restart_count}")
    return "\n".join(line.rstrip() for line in lines)
