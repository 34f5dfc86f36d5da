"""Helm CLI wrapper for chart release management.

Wraps the helm binary for repository registration, upgrade-or-install,
and release queries. Commands run through a tool environment, so the same
client drives a host binary or one inside WSL.
"""

from __future__ import annotations

import json
from collections.abc import Sequence

import structlog

from gitops_bootstrap.core.constants import HELM_SCRATCH_DIRS
from gitops_bootstrap.integrations.kubernetes.exceptions import (
    HelmBinaryNotFoundError,
    HelmCommandError,
    HelmError,
)
from gitops_bootstrap.integrations.kubernetes.models.helm import (
    HelmRelease,
    HelmReleaseStatus,
    extract_json,
)
from gitops_bootstrap.utils.command_runner import CommandResult
from gitops_bootstrap.utils.tool_environment import ToolEnvironment

logger = structlog.get_logger()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VERSION_TIMEOUT_SECONDS = 10
SHORT_TIMEOUT_SECONDS = 60
# Upper bound for a single upgrade; helm's own --timeout governs the wait.
RELEASE_TIMEOUT_SECONDS = 4 * 60 * 60


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HelmClient:
    """Client for interacting with the Helm CLI.

    Every command carries ``--kube-context`` when a context is configured,
    and runs with helm's cache, config and data homes redirected to a
    writable scratch location.
    """

    def __init__(self, tools: ToolEnvironment, kube_context: str | None = None) -> None:
        """Initialize Helm client.

        Args:
            tools: Tool environment the binary runs in.
            kube_context: Context selector passed to every command.

        Raises:
            HelmBinaryNotFoundError: If helm cannot be located.
        """
        self._tools = tools
        self._kube_context = kube_context
        binary = tools.locate("helm")
        if not binary:
            raise HelmBinaryNotFoundError()
        tools.prepare_scratch_dirs()
        self._log = logger.bind(binary=binary, environment=tools.name, context=kube_context)
        self._log.debug("helm_client_initialized")

    def _run(self, args: list[str], *, timeout: float = SHORT_TIMEOUT_SECONDS) -> CommandResult:
        """Run a helm command.

        Args:
            args: Command arguments (without the ``helm`` prefix).
            timeout: Timeout in seconds.

        Returns:
            The command result.

        Raises:
            HelmCommandError: On non-zero exit.
        """
        self._log.debug("running_helm_command", args=args)
        result = self._tools.run_tool("helm", args, env=HELM_SCRATCH_DIRS, timeout=timeout)
        if not result.success:
            raise HelmCommandError(
                message=f"Helm command failed: {result.output or f'exit code {result.exit_code}'}",
                result=result,
            )
        return result

    def _context_args(self) -> list[str]:
        return ["--kube-context", self._kube_context] if self._kube_context else []

    # -----------------------------------------------------------------------
    # Version
    # -----------------------------------------------------------------------

    def get_version(self) -> str:
        """Get helm version string.

        Returns:
            Version string (e.g., ``v3.17.0``).
        """
        result = self._run(["version", "--short"], timeout=VERSION_TIMEOUT_SECONDS)
        version = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        # Strip build metadata (e.g., "v3.17.0+g301108e" -> "v3.17.0")
        return version.split("+")[0]

    # -----------------------------------------------------------------------
    # Repositories
    # -----------------------------------------------------------------------

    def repo_add(self, name: str, url: str) -> None:
        """Register a chart repository; an existing entry is left as is."""
        try:
            self._run(["repo", "add", name, url])
        except HelmCommandError as e:
            if "already exists" not in e.output:
                raise
            self._log.debug("helm_repo_exists", name=name)
            return
        self._log.info("helm_repo_added", name=name, url=url)

    def repo_update(self) -> None:
        """Refresh chart repository indexes."""
        self._run(["repo", "update"], timeout=SHORT_TIMEOUT_SECONDS * 2)
        self._log.info("helm_repo_updated")

    # -----------------------------------------------------------------------
    # Releases
    # -----------------------------------------------------------------------

    def upgrade_install(
        self,
        release_name: str,
        chart: str,
        *,
        namespace: str,
        version: str | None = None,
        create_namespace: bool = False,
        wait: bool = True,
        timeout: str | None = None,
        values_files: Sequence[str] = (),
        set_values: Sequence[str] = (),
        set_files: Sequence[str] = (),
        dry_run: bool = False,
    ) -> CommandResult:
        """Run ``helm upgrade --install``.

        Args:
            release_name: Name of the release.
            chart: Chart reference or local chart path.
            namespace: Target namespace.
            version: Chart version pin.
            create_namespace: Create the namespace if needed.
            wait: Wait for resources to be ready.
            timeout: Duration string for --wait (e.g. ``7m``).
            values_files: Values files, in precedence order.
            set_values: ``key=value`` overrides.
            set_files: ``key=path`` file overrides.
            dry_run: Simulate the upgrade.

        Returns:
            The command result.

        Raises:
            HelmCommandError: If helm reports failure.
        """
        args = ["upgrade", "--install", release_name, chart]
        if version:
            args.append(f"--version={version}")
        args.extend(["--namespace", namespace])
        if create_namespace:
            args.append("--create-namespace")
        if wait:
            args.append("--wait")
        if timeout:
            args.extend(["--timeout", timeout])
        for values_file in values_files:
            args.extend(["-f", values_file])
        for value in set_values:
            args.extend(["--set", value])
        for file_value in set_files:
            args.extend(["--set-file", file_value])
        args.extend(self._context_args())
        if dry_run:
            args.append("--dry-run")

        result = self._run(args, timeout=RELEASE_TIMEOUT_SECONDS)
        self._log.info("helm_upgrade_success", release=release_name, chart=chart, dry_run=dry_run)
        return result

    def list_releases(
        self,
        *,
        namespace: str,
        filter_pattern: str | None = None,
    ) -> list[HelmRelease]:
        """List releases in a namespace.

        Args:
            namespace: Namespace to list releases from.
            filter_pattern: Filter releases by name pattern.

        Returns:
            List of releases; empty when helm prints nothing or ``[]``.
        """
        args = ["list", "-n", namespace]
        if filter_pattern:
            args.extend(["--filter", filter_pattern])
        args.extend(["-o", "json", *self._context_args()])

        result = self._run(args)
        try:
            data = extract_json(result.stdout, "[")
        except json.JSONDecodeError as e:
            raise HelmError(f"Unparseable helm list output: {result.stdout[:200]}", result) from e
        return [HelmRelease.from_json(entry) for entry in data or []]

    def status(self, release_name: str, *, namespace: str) -> HelmReleaseStatus:
        """Get release status.

        Args:
            release_name: Name of the release.
            namespace: Release namespace.

        Returns:
            Release status details.
        """
        args = ["status", release_name, "-n", namespace, "-o", "json", *self._context_args()]
        result = self._run(args)
        try:
            data = extract_json(result.stdout, "{") or {}
        except json.JSONDecodeError:
            data = {}
        status = HelmReleaseStatus.from_json(data, raw=result.stdout)
        status.name = status.name or release_name
        status.namespace = status.namespace or namespace
        return status
