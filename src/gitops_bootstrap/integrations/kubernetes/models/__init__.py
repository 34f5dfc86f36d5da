"""Typed models for Kubernetes integration results."""

from gitops_bootstrap.integrations.kubernetes.models.helm import (
    HelmRelease,
    HelmReleaseStatus,
    extract_json,
)

__all__ = ["HelmRelease", "HelmReleaseStatus", "extract_json"]
