"""Idempotent application of multi-document resource manifests.

Each document is created; if it already exists, the live object's
``resourceVersion`` is copied onto the document and it is replaced.
Re-running a manifest against a partially applied cluster converges.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import httpx
import yaml

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import MANIFEST_FETCH_TIMEOUT_SECONDS
from gitops_bootstrap.core.exceptions import ApplyFailureError, ManifestFetchError
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    KubernetesConflictError,
    KubernetesError,
)
from gitops_bootstrap.services.bootstrap.backends import ClusterBackend
from gitops_bootstrap.services.bootstrap.base import BootstrapComponent
from gitops_bootstrap.services.bootstrap.models import ManifestResource

# ---------------------------------------------------------------------------
# Sources and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ManifestSource:
    """Where a manifest blob comes from: a URL or inline text."""

    url: str | None = None
    text: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ManifestSource:
        return cls(url=url)

    @classmethod
    def inline(cls, text: str) -> ManifestSource:
        return cls(text=text)

    def __str__(self) -> str:
        return self.url or "<inline manifest>"


@dataclass
class ApplyResult:
    """Result of applying a single document."""

    resource: str
    action: str
    namespace: str


def split_documents(blob: str) -> Iterator[dict[str, Any]]:
    """Yield each non-empty mapping document of a multi-document YAML blob.

    Raises:
        ApplyFailureError: If the blob is not valid YAML or a document is not a mapping.
    """
    try:
        for document in yaml.safe_load_all(blob):
            if document is None:
                continue
            if not isinstance(document, dict):
                raise ApplyFailureError(
                    f"Manifest document is a {type(document).__name__}, expected a mapping"
                )
            yield document
    except yaml.YAMLError as e:
        raise ApplyFailureError(f"Invalid manifest YAML: {e}") from e


# ---------------------------------------------------------------------------
# ResourceApplier
# ---------------------------------------------------------------------------


class ResourceApplier(BootstrapComponent):
    """Applies manifests through a cluster backend with create-else-replace."""

    _entity_name = "applier"

    def __init__(
        self,
        backend: ClusterBackend,
        token: CancellationToken,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the applier.

        Args:
            backend: Cluster backend to apply through.
            token: Run cancellation scope.
            http_client: Client used to fetch URL sources.
        """
        super().__init__(token)
        self._backend = backend
        self._http = http_client

    def _http_client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(
                timeout=httpx.Timeout(MANIFEST_FETCH_TIMEOUT_SECONDS),
                follow_redirects=True,
            )
        return self._http

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None

    def fetch(self, source: ManifestSource) -> str:
        """Return the manifest blob of a source.

        Raises:
            ManifestFetchError: On timeout, transport errors or a non-200 status.
        """
        if source.text is not None:
            return source.text
        if not source.url:
            raise ApplyFailureError("Manifest source has neither a URL nor inline text")

        self._token.raise_if_cancelled()
        try:
            response = self._http_client().get(source.url)
        except httpx.TimeoutException as e:
            raise ManifestFetchError(source.url, "request timed out") from e
        except httpx.HTTPError as e:
            raise ManifestFetchError(source.url, str(e)) from e
        if response.status_code != 200:
            raise ManifestFetchError(source.url, f"HTTP {response.status_code}")
        self._log.debug("manifest_fetched", url=source.url, bytes=len(response.content))
        return response.text

    def apply_manifest_from_source(self, source: ManifestSource) -> list[ApplyResult]:
        """Fetch, split and apply every document of a manifest.

        Args:
            source: Manifest URL or inline text.

        Returns:
            One result per applied document.

        Raises:
            ManifestFetchError: If the source cannot be fetched.
            ApplyFailureError: On the first document rejected for a reason
                other than already-exists.
            OperationCancelledError: If the run is cancelled.
        """
        blob = self.fetch(source)
        results: list[ApplyResult] = []
        for document in split_documents(blob):
            self._token.raise_if_cancelled()
            try:
                resource = ManifestResource.from_document(document)
            except ValueError as e:
                raise ApplyFailureError(f"Invalid manifest document in {source}: {e}") from e
            results.append(self.apply_resource(resource))
        self._log.info("manifest_applied", source=str(source), resources=len(results))
        return results

    def apply_resource(self, resource: ManifestResource) -> ApplyResult:
        """Create a resource, replacing it if it already exists.

        Raises:
            ApplyFailureError: If create or replace is rejected.
        """
        identifier = f"{resource.kind}/{resource.name}"
        try:
            self._backend.create(resource)
            action = "created"
        except KubernetesConflictError:
            self._replace_existing(resource)
            action = "replaced"
        except KubernetesError as e:
            self._log.error("resource_apply_failed", resource=identifier, error=str(e))
            raise ApplyFailureError(
                f"Failed to create resource: {e.message}", resource.kind, resource.name
            ) from e
        self._log.debug("resource_applied", resource=identifier, action=action)
        return ApplyResult(resource=identifier, action=action, namespace=resource.namespace)

    def _replace_existing(self, resource: ManifestResource) -> None:
        identifier = f"{resource.kind}/{resource.name}"
        try:
            live = self._backend.get(resource)
            body = copy.deepcopy(resource.body)
            resource_version = (live.get("metadata") or {}).get("resourceVersion")
            if resource_version:
                body.setdefault("metadata", {})["resourceVersion"] = resource_version
            self._backend.replace(resource, body)
        except KubernetesError as e:
            self._log.error("resource_replace_failed", resource=identifier, error=str(e))
            raise ApplyFailureError(
                f"Failed to update existing resource: {e.message}", resource.kind, resource.name
            ) from e
