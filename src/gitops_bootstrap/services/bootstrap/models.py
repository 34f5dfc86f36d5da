"""Request, resource and outcome models for bootstrap runs.

Configuration inputs are frozen pydantic models; values that only live
for the duration of one apply or poll are plain dataclasses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from gitops_bootstrap.core.constants import (
    APP_OF_APPS_DEFAULT_NAMESPACE,
    APP_OF_APPS_DEFAULT_TIMEOUT,
    APPLICATION_HEALTHY,
    APPLICATION_SYNCED,
    DEFAULT_CLUSTER_NAME,
    context_for_cluster,
)
from gitops_bootstrap.core.exceptions import (
    BootstrapError,
    OperationCancelledError,
    ReadinessTimeoutError,
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str) -> float:
    """Parse a Go-style duration string (``7m``, ``1h30m``, ``90s``) to seconds.

    Raises:
        ValueError: If the string is not a valid positive duration.
    """
    text = value.strip()
    if not text:
        raise ValueError("duration must not be empty")
    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or total <= 0:
        raise ValueError(f"invalid duration '{value}' (expected e.g. 30s, 7m, 1h30m)")
    return total


# =============================================================================
# Configuration
# =============================================================================


class DeploymentMode(str, Enum):
    """Which flavour of the platform the app-of-apps release deploys."""

    OSS_TENANT = "oss-tenant"
    SAAS_TENANT = "saas-tenant"
    SAAS_SHARED = "saas-shared"


class ExecutionTarget(str, Enum):
    """API surface used for cluster operations during a run."""

    NATIVE = "native"
    SUBPROCESS = "subprocess"


class ImageConfig(BaseModel):
    """A container image override."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    repository: str
    tag: str = ""

    @classmethod
    def parse(cls, reference: str) -> ImageConfig:
        """Split ``repository[:tag]``; a registry port is not taken for a tag."""
        repository, sep, tag = reference.strip().rpartition(":")
        if not sep or not tag or "/" in tag:
            return cls(repository=reference.strip())
        return cls(repository=repository, tag=tag)

    def to_values(self) -> dict[str, str]:
        values = {"repository": self.repository}
        if self.tag:
            values["tag"] = self.tag
        return values


class ControllerConfig(BaseModel):
    """Image overrides for the controller release."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    image: ImageConfig | None = None
    redis: ImageConfig | None = None
    redis_ha_proxy: ImageConfig | None = None
    redis_exporter: ImageConfig | None = None
    dex: ImageConfig | None = None
    extension_installer: ImageConfig | None = None


class AppOfAppsConfig(BaseModel):
    """Location and settings of the app-of-apps chart."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    chart_path: str
    values_file: str | None = None
    namespace: str = APP_OF_APPS_DEFAULT_NAMESPACE
    timeout: str = APP_OF_APPS_DEFAULT_TIMEOUT

    @field_validator("chart_path")
    @classmethod
    def validate_chart_path(cls, v: str) -> str:
        """Require a chart path."""
        if not v.strip():
            raise ValueError("chart_path must not be empty")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: str) -> str:
        """Validate the timeout is a duration helm accepts."""
        parse_duration(v)
        return v


class TlsConfig(BaseModel):
    """Certificate and key files for the local ingress."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    cert_file: str
    key_file: str


class InstallRequest(BaseModel):
    """Configuration for one orchestration run.

    Built once per command invocation and never mutated afterwards.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    cluster_name: str = DEFAULT_CLUSTER_NAME
    deployment_mode: DeploymentMode | None = None
    dry_run: bool = False
    verbose: bool = False
    silent: bool = False
    non_interactive: bool = False
    skip_resource_types: bool = False
    wait_for_applications: bool = False
    app_of_apps: AppOfAppsConfig | None = None
    controller: ControllerConfig = ControllerConfig()
    tls: TlsConfig | None = None

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Require a non-empty cluster name."""
        if not v.strip():
            raise ValueError("cluster_name must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_mode(self) -> InstallRequest:
        """Non-interactive runs must name a deployment mode."""
        if self.non_interactive and self.deployment_mode is None:
            raise ValueError("deployment_mode is required when non_interactive is set")
        return self

    @property
    def kube_context(self) -> str:
        """Context selector derived from the cluster name."""
        return context_for_cluster(self.cluster_name)


# =============================================================================
# Resources and readiness
# =============================================================================


class ResourceCategory(str, Enum):
    """Resource kinds the orchestrator treats specially."""

    CRD = "customresourcedefinition"
    NAMESPACE = "namespace"
    DEPLOYMENT = "deployment"
    STATEFULSET = "statefulset"
    GENERIC = "generic"

    @classmethod
    def from_kind(cls, kind: str) -> ResourceCategory:
        try:
            return cls(kind.lower())
        except ValueError:
            return cls.GENERIC


@dataclass
class ManifestResource:
    """One decoded document of a multi-document manifest."""

    api_version: str
    kind: str
    name: str
    namespace: str = ""
    body: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> ManifestResource:
        """Build from a decoded YAML document.

        Raises:
            ValueError: If apiVersion, kind or metadata.name is missing.
        """
        metadata = document.get("metadata") or {}
        api_version = str(document.get("apiVersion") or "")
        kind = str(document.get("kind") or "")
        name = str(metadata.get("name") or "")
        if not api_version or not kind or not name:
            raise ValueError("document is missing apiVersion, kind or metadata.name")
        return cls(
            api_version=api_version,
            kind=kind,
            name=name,
            namespace=str(metadata.get("namespace") or ""),
            body=document,
        )

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]

    @property
    def category(self) -> ResourceCategory:
        return ResourceCategory.from_kind(self.kind)


@dataclass(frozen=True)
class ReadinessTarget:
    """A condition the orchestrator must observe before moving on."""

    category: ResourceCategory
    name: str
    namespace: str = ""

    def __str__(self) -> str:
        label = f"{self.category.value}/{self.name}"
        return f"{label} in {self.namespace}" if self.namespace else label


@dataclass(frozen=True)
class ApplicationStatus:
    """Health and sync state of one controller Application.

    Attributes:
        name: Application name.
        health: ``status.health.status``, ``Unknown`` when not reported yet.
        sync: ``status.sync.status``, ``Unknown`` when not reported yet.
        planned: Child Applications listed in ``status.resources``.
    """

    name: str
    health: str = "Unknown"
    sync: str = "Unknown"
    planned: int = 0

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ApplicationStatus:
        """Build from a decoded Application object."""
        status = obj.get("status") or {}
        resources = status.get("resources") or []
        return cls(
            name=str((obj.get("metadata") or {}).get("name") or ""),
            health=str((status.get("health") or {}).get("status") or "Unknown"),
            sync=str((status.get("sync") or {}).get("status") or "Unknown"),
            planned=sum(1 for r in resources if r.get("kind") == "Application"),
        )

    @property
    def ready(self) -> bool:
        return self.health == APPLICATION_HEALTHY and self.sync == APPLICATION_SYNCED

    def __str__(self) -> str:
        return f"application/{self.name} ({self.health}/{self.sync})"


# =============================================================================
# Outcome
# =============================================================================


class Phase(str, Enum):
    """Orchestration phases, in execution order."""

    CONNECTIVITY_CHECK = "ConnectivityCheck"
    RESOURCE_TYPES_INSTALL = "ResourceTypesInstall"
    RESOURCE_TYPES_READY = "ResourceTypesReady"
    NAMESPACE_ENSURE = "NamespaceEnsure"
    CONTROLLER_RELEASE_INSTALL = "ControllerReleaseInstall"
    CONTROLLER_RELEASE_VERIFY = "ControllerReleaseVerify"
    WORKLOADS_READY = "WorkloadsReady"
    APP_OF_APPS_RELEASE_INSTALL = "AppOfAppsReleaseInstall"
    APPLICATIONS_READY = "ApplicationsReady"


@dataclass
class InstallOutcome:
    """Terminal result of one orchestration run."""

    success: bool
    phase: Phase | None = None
    error: BootstrapError | None = None
    diagnostics: str = ""
    completed_phases: list[Phase] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, OperationCancelledError)

    @property
    def missing_targets(self) -> list[str]:
        if isinstance(self.error, ReadinessTimeoutError):
            return list(self.error.missing)
        return []

    @property
    def message(self) -> str:
        if self.success:
            return "Installation completed"
        return self.error.message if self.error else "Installation failed"
