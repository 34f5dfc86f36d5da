"""Kubernetes integration exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gitops_bootstrap.core.exceptions import ToolUnavailableError

if TYPE_CHECKING:
    from gitops_bootstrap.utils.command_runner import CommandResult


class KubernetesError(Exception):
    """Base exception for cluster API operations.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code from the API server, if any.
        kind: Resource kind involved (e.g. "Namespace").
        name: Resource name involved.
        namespace: Resource namespace, if namespaced.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.kind = kind
        self.name = name
        self.namespace = namespace

    def __str__(self) -> str:
        """Return string representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"(status: {self.status_code})")
        if self.kind and self.name:
            loc = f"[{self.kind}/{self.name}"
            if self.namespace:
                loc += f" in {self.namespace}"
            loc += "]"
            parts.append(loc)
        return " ".join(parts)


class KubernetesConnectionError(KubernetesError):
    """Raised when the API server cannot be reached or the kubeconfig is unusable."""

    def __init__(
        self,
        message: str = "Failed to connect to Kubernetes cluster",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message=message)
        self.original_error = original_error


class KubernetesAuthError(KubernetesError):
    """Raised on 401/403 responses."""

    def __init__(
        self,
        message: str = "Kubernetes authentication/authorization failed",
        status_code: int | None = 401,
    ) -> None:
        super().__init__(message=message, status_code=status_code)


class KubernetesNotFoundError(KubernetesError):
    """Raised on 404 responses."""

    def __init__(
        self,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        message = "Kubernetes resource not found"
        if kind and name:
            message = f"{kind} '{name}' not found"
            if namespace:
                message += f" in namespace '{namespace}'"
        super().__init__(message, 404, kind, name, namespace)


class KubernetesConflictError(KubernetesError):
    """Raised on 409 responses, typically because the object already exists."""

    def __init__(
        self,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        message = "Resource conflict"
        if kind and name:
            message = f"{kind} '{name}' already exists"
            if namespace:
                message += f" in namespace '{namespace}'"
        super().__init__(message, 409, kind, name, namespace)


class KubernetesValidationError(KubernetesError):
    """Raised on 400/422 responses when the API server rejects an object."""

    def __init__(
        self,
        message: str = "Invalid resource specification",
        status_code: int | None = 422,
        kind: str | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(message, status_code, kind, name)


class KubernetesTimeoutError(KubernetesError):
    """Raised when the API server or a gateway in front of it times out."""

    def __init__(
        self,
        message: str = "Kubernetes operation timed out",
        timeout_seconds: float | None = None,
    ) -> None:
        if timeout_seconds:
            message = f"{message} (after {timeout_seconds:g}s)"
        super().__init__(message, 504)
        self.timeout_seconds = timeout_seconds


# ---------------------------------------------------------------------------
# CLI wrappers
# ---------------------------------------------------------------------------


class CommandToolError(KubernetesError):
    """Base exception for failures of a wrapped CLI tool."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message=message)
        self.result = result

    @property
    def output(self) -> str:
        """Return captured tool output (stderr, falling back to stdout)."""
        return self.result.output if self.result else ""


class KubectlError(CommandToolError):
    """Base exception for kubectl operations."""


class KubectlCommandError(KubectlError):
    """Raised when a kubectl command exits non-zero."""


class KubectlBinaryNotFoundError(ToolUnavailableError):
    """Raised when kubectl is not installed."""

    def __init__(self) -> None:
        super().__init__(
            "kubectl",
            "kubectl binary not found in PATH",
            hint="Install from: https://kubernetes.io/docs/tasks/tools/",
        )


class HelmError(CommandToolError):
    """Base exception for Helm operations."""


class HelmCommandError(HelmError):
    """Raised when a helm command exits non-zero."""


class HelmBinaryNotFoundError(ToolUnavailableError):
    """Raised when helm is not installed."""

    def __init__(self) -> None:
        super().__init__(
            "helm",
            "helm binary not found in PATH",
            hint="Install from: https://helm.sh/docs/intro/install/",
        )
