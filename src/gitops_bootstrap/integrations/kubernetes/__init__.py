"""Kubernetes integration - API client, CLI wrappers and configuration models."""

from gitops_bootstrap.integrations.kubernetes.client import KubernetesClient
from gitops_bootstrap.integrations.kubernetes.config import ConnectionConfig
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    HelmBinaryNotFoundError,
    HelmCommandError,
    HelmError,
    KubectlBinaryNotFoundError,
    KubectlCommandError,
    KubectlError,
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)
from gitops_bootstrap.integrations.kubernetes.helm_client import HelmClient
from gitops_bootstrap.integrations.kubernetes.kubectl_client import KubectlClient

__all__ = [
    "ConnectionConfig",
    "HelmBinaryNotFoundError",
    "HelmClient",
    "HelmCommandError",
    "HelmError",
    "KubectlBinaryNotFoundError",
    "KubectlClient",
    "KubectlCommandError",
    "KubectlError",
    "KubernetesAuthError",
    "KubernetesClient",
    "KubernetesConflictError",
    "KubernetesConnectionError",
    "KubernetesError",
    "KubernetesNotFoundError",
    "KubernetesTimeoutError",
    "KubernetesValidationError",
]
