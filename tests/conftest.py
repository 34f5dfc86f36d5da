"""Shared pytest fixtures for gitops_bootstrap tests."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Generator, Iterable
from pathlib import Path
from typing import Any

import pytest
import typer
from typer.testing import CliRunner

from gitops_bootstrap.cli.main import app
from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesNotFoundError,
)
from gitops_bootstrap.services.bootstrap.models import (
    ApplicationStatus,
    ExecutionTarget,
    ManifestResource,
    ResourceCategory,
)
from gitops_bootstrap.utils.command_runner import CommandResult


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_app() -> typer.Typer:
    """Return the CLI app for testing."""
    return app


@pytest.fixture
def temp_dir() -> Generator[Path]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset environment variables for each test."""
    for key in list(os.environ.keys()):
        if key.startswith("GITOPS_BOOTSTRAP_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("KUBECONFIG", raising=False)


@pytest.fixture(autouse=True)
def isolated_log_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Keep log files written during CLI tests out of the home directory."""
    log_dir = tmp_path / "logs"
    monkeypatch.setattr("gitops_bootstrap.logging.config.LOG_DIR", log_dir)
    return log_dir


@pytest.fixture
def token() -> CancellationToken:
    """A fresh cancellation token."""
    return CancellationToken()


def make_result(
    exit_code: int = 0,
    stdout: str = "",
    stderr: str = "",
    command: str = "tool",
) -> CommandResult:
    """Build a CommandResult for scripted tool runs."""
    return CommandResult(command=command, exit_code=exit_code, stdout=stdout, stderr=stderr)


@pytest.fixture
def result_factory() -> Any:
    """Factory for CommandResult values used to script tool output."""
    return make_result


# =============================================================================
# Scripted tool environment
# =============================================================================


class FakeToolEnvironment:
    """Tool environment that returns scripted results and records invocations."""

    name = "fake"

    def __init__(self, available: Iterable[str] = ("helm", "kubectl")) -> None:
        from gitops_bootstrap.utils.paths import HostPathTranslator

        self.available = set(available)
        self.paths = HostPathTranslator()
        self.calls: list[tuple[str, list[str], dict[str, Any]]] = []
        self.results: list[CommandResult] = []
        self.default_result = make_result()
        self.scratch_prepared = False

    def locate(self, tool: str) -> str | None:
        return f"/usr/local/bin/{tool}" if tool in self.available else None

    def prepare_scratch_dirs(self) -> None:
        self.scratch_prepared = True

    def queue(self, *results: CommandResult) -> None:
        self.results.extend(results)

    def run_tool(
        self,
        tool: str,
        args: list[str],
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        input_data: str | None = None,
    ) -> CommandResult:
        self.calls.append(
            (tool, list(args), {"env": env, "timeout": timeout, "input_data": input_data})
        )
        if self.results:
            return self.results.pop(0)
        return self.default_result

    @property
    def last_args(self) -> list[str]:
        return self.calls[-1][1]


@pytest.fixture
def fake_tools() -> FakeToolEnvironment:
    """A scripted tool environment with helm and kubectl available."""
    return FakeToolEnvironment()


# =============================================================================
# Scripted cluster backend
# =============================================================================


class FakeBackend:
    """In-memory ClusterBackend that records the order of cluster calls.

    Attributes:
        calls: ``(method, detail)`` tuples in call order.
        connectivity_failures: Number of connectivity checks that fail
            before one succeeds; ``-1`` fails forever.
        crds: Names of resource types that exist.
        namespaces: Namespace name to phase.
        workloads: ``(category, name, namespace)`` triples that exist.
        objects: Created objects keyed by ``kind/name``.
        ready_after: Readiness checks that report ``key`` as not ready
            before it is observed; keys are ``crd/<name>``,
            ``namespace/<name>`` and ``<category>/<name>``.
        first_ready: Index into ``calls`` of the check that first observed
            each key as ready.
        application_states: Successive results of ``list_applications``;
            each is a list of statuses or an exception to raise. The last
            one repeats.
    """

    target = ExecutionTarget.NATIVE

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.connectivity_failures = 0
        self.crds: set[str] = set()
        self.namespaces: dict[str, str] = {}
        self.workloads: set[tuple[ResourceCategory, str, str]] = set()
        self.objects: dict[str, dict[str, Any]] = {}
        self.namespace_phase_on_create = "Active"
        self.register_crds_on_create = True
        self.ready_after: dict[str, int] = {}
        self.first_ready: dict[str, int] = {}
        self.application_states: list[list[ApplicationStatus] | Exception] = [[]]

    def _observe(self, key: str, present: bool) -> bool:
        if not present:
            return False
        remaining = self.ready_after.get(key, 0)
        if remaining > 0:
            self.ready_after[key] = remaining - 1
            return False
        self.first_ready.setdefault(key, len(self.calls) - 1)
        return True

    def check_connectivity(self) -> None:
        self.calls.append(("check_connectivity", ""))
        if self.connectivity_failures != 0:
            if self.connectivity_failures > 0:
                self.connectivity_failures -= 1
            raise KubernetesConnectionError("connection refused")

    def crd_exists(self, name: str) -> bool:
        self.calls.append(("crd_exists", name))
        return self._observe(f"crd/{name}", name in self.crds)

    def namespace_phase(self, name: str) -> str | None:
        self.calls.append(("namespace_phase", name))
        phase = self.namespaces.get(name)
        if phase == "Active" and not self._observe(f"namespace/{name}", True):
            return None
        return phase

    def create_namespace(self, name: str) -> None:
        self.calls.append(("create_namespace", name))
        self.namespaces.setdefault(name, self.namespace_phase_on_create)

    def workload_exists(self, category: ResourceCategory, name: str, namespace: str) -> bool:
        key = f"{category.value}/{name}"
        self.calls.append(("workload_exists", key))
        return self._observe(key, (category, name, namespace) in self.workloads)

    def create(self, resource: ManifestResource) -> None:
        key = f"{resource.kind}/{resource.name}"
        self.calls.append(("create", key))
        if key in self.objects:
            raise KubernetesConflictError(kind=resource.kind, name=resource.name)
        metadata = {**(resource.body.get("metadata") or {}), "resourceVersion": "1"}
        self.objects[key] = {**resource.body, "metadata": metadata}
        if resource.category is ResourceCategory.CRD and self.register_crds_on_create:
            self.crds.add(resource.name)

    def get(self, resource: ManifestResource) -> dict[str, Any]:
        key = f"{resource.kind}/{resource.name}"
        self.calls.append(("get", key))
        if key not in self.objects:
            raise KubernetesNotFoundError(kind=resource.kind, name=resource.name)
        return self.objects[key]

    def replace(self, resource: ManifestResource, body: dict[str, Any]) -> None:
        key = f"{resource.kind}/{resource.name}"
        self.calls.append(("replace", key))
        self.objects[key] = body

    def api_address(self) -> tuple[str, int] | None:
        return None

    def list_applications(self, namespace: str) -> list[ApplicationStatus]:
        self.calls.append(("list_applications", namespace))
        state = (
            self.application_states.pop(0)
            if len(self.application_states) > 1
            else self.application_states[0]
        )
        if isinstance(state, Exception):
            raise state
        return list(state)

    def add_controller_workloads(self, namespace: str = "argocd") -> None:
        self.workloads.update(
            {
                (ResourceCategory.DEPLOYMENT, "argocd-server", namespace),
                (ResourceCategory.DEPLOYMENT, "argocd-repo-server", namespace),
                (ResourceCategory.STATEFULSET, "argocd-application-controller", namespace),
            }
        )

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]


@pytest.fixture
def fake_backend() -> FakeBackend:
    """An empty, reachable fake cluster."""
    return FakeBackend()
