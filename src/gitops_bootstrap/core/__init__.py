"""Core types shared across the bootstrap package."""

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.exceptions import (
    ApplyFailureError,
    BootstrapError,
    CommandTimeoutError,
    ConfigurationError,
    ConnectivityFailureError,
    ManifestFetchError,
    OperationCancelledError,
    ReadinessTimeoutError,
    ReleaseInstallError,
    ReleaseVerificationError,
    ToolUnavailableError,
)

__all__ = [
    "ApplyFailureError",
    "BootstrapError",
    "CancellationToken",
    "CommandTimeoutError",
    "ConfigurationError",
    "ConnectivityFailureError",
    "ManifestFetchError",
    "OperationCancelledError",
    "ReadinessTimeoutError",
    "ReleaseInstallError",
    "ReleaseVerificationError",
    "ToolUnavailableError",
]
