"""Cluster connection configuration models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator

ExecutionTargetName = Literal["auto", "native", "subprocess"]


class ConnectionConfig(BaseModel):
    """How to reach the target cluster.

    Resolved once before a run starts and shared read-only by every
    component of that run.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kubeconfig: str = "~/.kube/config"
    context: str
    verify_ssl: bool = False
    retry_attempts: int = 3
    execution_target: ExecutionTargetName = "auto"

    @field_validator("kubeconfig")
    @classmethod
    def validate_kubeconfig(cls, v: str) -> str:
        """Expand ~ in kubeconfig path."""
        return str(Path(v).expanduser())

    @field_validator("context")
    @classmethod
    def validate_context(cls, v: str) -> str:
        """Require a non-empty context selector."""
        if not v.strip():
            raise ValueError("context must not be empty")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """Validate retry_attempts is positive."""
        if v < 1:
            raise ValueError("retry_attempts must be at least 1")
        return v

    @classmethod
    def from_env(cls, context: str, base_config: dict[str, Any] | None = None) -> ConnectionConfig:
        """Create configuration with environment variable overrides.

        Supported environment variables:
            GITOPS_BOOTSTRAP_KUBECONFIG: Override kubeconfig path
                (falls back to KUBECONFIG, first entry only)
            GITOPS_BOOTSTRAP_CONTEXT: Override the derived context selector
            GITOPS_BOOTSTRAP_EXECUTION_TARGET: Force ``native`` or ``subprocess``
            GITOPS_BOOTSTRAP_VERIFY_SSL: ``true`` to verify the API server certificate
        """
        config_dict: dict[str, Any] = base_config.copy() if base_config else {}
        config_dict.setdefault("context", context)

        if kubeconfig := os.environ.get("GITOPS_BOOTSTRAP_KUBECONFIG"):
            config_dict["kubeconfig"] = kubeconfig
        elif kubeconfig_env := os.environ.get("KUBECONFIG"):
            config_dict["kubeconfig"] = kubeconfig_env.split(os.pathsep)[0]

        if ctx := os.environ.get("GITOPS_BOOTSTRAP_CONTEXT"):
            config_dict["context"] = ctx

        if target := os.environ.get("GITOPS_BOOTSTRAP_EXECUTION_TARGET"):
            config_dict["execution_target"] = target.lower()

        if verify := os.environ.get("GITOPS_BOOTSTRAP_VERIFY_SSL"):
            config_dict["verify_ssl"] = verify.lower() in {"1", "true", "yes"}

        return cls(**config_dict)
