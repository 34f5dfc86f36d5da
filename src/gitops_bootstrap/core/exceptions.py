"""Error taxonomy for bootstrap orchestration runs.

Every failure that can end an installation run is a ``BootstrapError``.
The orchestrator stamps the failing phase onto the error before turning
it into an ``InstallOutcome``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitops_bootstrap.utils.command_runner import CommandResult


class BootstrapError(Exception):
    """Base exception for bootstrap operations.

    Attributes:
        message: Human-readable error message.
        phase: Name of the orchestration phase the error occurred in, if known.
        diagnostics: Rendered diagnostics report captured when the error occurred.
    """

    def __init__(self, message: str, phase: str | None = None) -> None:
        """Initialize BootstrapError.

        Args:
            message: Human-readable error message.
            phase: Orchestration phase name.
        """
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.diagnostics = ""

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.phase:
            return f"{self.message} (phase: {self.phase})"
        return self.message


class ConfigurationError(BootstrapError):
    """Raised when an install request cannot be executed as given."""


class ToolUnavailableError(BootstrapError):
    """Raised when a required external program is missing or unusable."""

    def __init__(self, tool: str, message: str | None = None, hint: str | None = None) -> None:
        self.tool = tool
        self.hint = hint
        super().__init__(message or f"{tool} is not available")


class ConnectivityFailureError(BootstrapError):
    """Raised when the control plane stays unreachable after bounded retries."""

    def __init__(self, message: str, attempts: int | None = None) -> None:
        self.attempts = attempts
        super().__init__(message)


class ApplyFailureError(BootstrapError):
    """Raised when a resource is rejected for a reason other than already-exists."""

    def __init__(self, message: str, kind: str | None = None, name: str | None = None) -> None:
        self.kind = kind
        self.name = name
        if kind and name:
            message = f"{message} [{kind}/{name}]"
        super().__init__(message)


class ManifestFetchError(ApplyFailureError):
    """Raised when a manifest source cannot be fetched."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        super().__init__(f"Failed to fetch manifest from {url}: {reason}")


class ReadinessTimeoutError(BootstrapError):
    """Raised when a readiness poll deadline passes with targets still unmet.

    Attributes:
        missing: Descriptions of the targets that were never satisfied.
        timeout: The deadline that was exceeded, in seconds.
    """

    def __init__(self, missing: Sequence[str], timeout: float) -> None:
        self.missing = list(missing)
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for: {', '.join(self.missing)}"
        )


class ReleaseInstallError(BootstrapError):
    """Raised when the package manager reports a failed install or upgrade."""

    def __init__(
        self,
        release: str,
        message: str,
        result: CommandResult | None = None,
    ) -> None:
        self.release = release
        self.result = result
        super().__init__(message)

    @property
    def tool_output(self) -> str:
        """Return the most useful captured output of the failed command."""
        return self.result.output if self.result else ""


class ReleaseVerificationError(BootstrapError):
    """Raised when an install reported success but the release does not exist."""

    def __init__(self, release: str, namespace: str, detail: str | None = None) -> None:
        self.release = release
        self.namespace = namespace
        message = f"Release '{release}' not found in namespace '{namespace}' after install"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class OperationCancelledError(BootstrapError):
    """Raised when the operator aborts the run."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class CommandTimeoutError(BootstrapError):
    """Raised when an external command exceeds its time limit."""

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command '{command}' timed out after {timeout:g}s")
