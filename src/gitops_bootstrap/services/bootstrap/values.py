"""Values documents for the controller release.

The built-in document sizes the controller for small local clusters.
Image overrides from :class:`ControllerConfig` are merged on top.
"""

from __future__ import annotations

import copy
import os
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import structlog
import yaml

from gitops_bootstrap.services.bootstrap.models import ControllerConfig

logger = structlog.get_logger()

ARGOCD_BASE_VALUES = """\
fullnameOverride: argocd

configs:
  cm:
    resource.customizations.health.argoproj.io_Application: |
      hs = {}
      hs.status = "Progressing"
      hs.message = ""
      if obj.status ~= nil then
        if obj.status.health ~= nil then
          hs.status = obj.status.health.status
          if obj.status.health.message ~= nil then
            hs.message = obj.status.health.message
          end
        end
      end
      return hs

dex:
  enabled: false

notifications:
  enabled: false

applicationSet:
  enabled: false

controller:
  resources:
    limits:
      cpu: "1"
      memory: 1Gi
    requests:
      cpu: 200m
      memory: 512Mi
  env:
    - name: ARGOCD_RECONCILIATION_TIMEOUT
      value: "300s"
    - name: ARGOCD_REPO_SERVER_TIMEOUT_SECONDS
      value: "300"

server:
  resources:
    limits:
      cpu: 200m
      memory: 256Mi
    requests:
      cpu: 50m
      memory: 128Mi

repoServer:
  replicas: 1
  resources:
    limits:
      cpu: "1"
      memory: 512Mi
    requests:
      cpu: 100m
      memory: 256Mi
  env:
    - name: ARGOCD_EXEC_TIMEOUT
      value: "300s"
    - name: ARGOCD_GIT_ATTEMPTS_COUNT
      value: "5"
    - name: ARGOCD_GIT_RETRY_MAX_DURATION
      value: "30s"
  initContainers:
    - name: wait-for-dns
      image: busybox:1.36
      command: ['sh', '-c', 'until nslookup github.com; do echo waiting for DNS; sleep 2; done']
  extraArgs:
    - --parallelismlimit=2

redis:
  resources:
    limits:
      cpu: 100m
      memory: 128Mi
    requests:
      cpu: 50m
      memory: 64Mi
"""

# ControllerConfig field -> dotted location of the image block in the chart values
IMAGE_VALUE_PATHS: dict[str, tuple[str, ...]] = {
    "image": ("global", "image"),
    "redis": ("redis", "image"),
    "redis_ha_proxy": ("redis-ha", "haproxy", "image"),
    "redis_exporter": ("redis", "exporter", "image"),
    "dex": ("dex", "image"),
    "extension_installer": ("server", "extensions", "image"),
}


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Nested mappings merge key by key; any other value in ``override``
    replaces the base value.
    """
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def image_overrides(config: ControllerConfig) -> dict[str, Any]:
    """Translate controller image settings into chart values."""
    overrides: dict[str, Any] = {}
    for field_name, path in IMAGE_VALUE_PATHS.items():
        image = getattr(config, field_name)
        if image is None:
            continue
        nested: dict[str, Any] = image.to_values()
        for key in reversed(path):
            nested = {key: nested}
        overrides = deep_merge(overrides, nested)
    return overrides


def render_controller_values(config: ControllerConfig | None = None) -> dict[str, Any]:
    """Build the controller values document."""
    values: dict[str, Any] = yaml.safe_load(ARGOCD_BASE_VALUES)
    if config is not None:
        overrides = image_overrides(config)
        if overrides:
            logger.debug("controller_image_overrides", keys=sorted(overrides))
            values = deep_merge(values, overrides)
    return values


@contextmanager
def ephemeral_values_file(
    values: Mapping[str, Any] | str,
    prefix: str = "values-",
) -> Iterator[str]:
    """Write a values document to a temporary file, deleted on every exit path.

    Args:
        values: Mapping to dump as YAML, or YAML text written verbatim.
        prefix: File name prefix.

    Yields:
        The file's path on the host.
    """
    content = values if isinstance(values, str) else yaml.safe_dump(dict(values), sort_keys=False)
    handle = tempfile.NamedTemporaryFile(
        mode="w",
        prefix=prefix,
        suffix=".yaml",
        delete=False,
        encoding="utf-8",
    )
    path = handle.name
    try:
        with handle:
            handle.write(content)
        logger.debug("values_file_written", path=path)
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        logger.debug("values_file_removed", path=path)
