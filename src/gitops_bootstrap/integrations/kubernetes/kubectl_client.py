"""kubectl CLI wrapper.

Used when the native API client is unavailable (Windows hosts, or a
kubeconfig the Python client cannot load) and for diagnostics, where
kubectl's human-oriented output is what the operator wants to read.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from gitops_bootstrap.integrations.kubernetes.exceptions import (
    KubectlBinaryNotFoundError,
    KubectlCommandError,
    KubectlError,
)
from gitops_bootstrap.integrations.kubernetes.models.helm import extract_json
from gitops_bootstrap.utils.command_runner import CommandResult
from gitops_bootstrap.utils.tool_environment import ToolEnvironment

logger = structlog.get_logger()

KUBECTL_TIMEOUT_SECONDS = 30
LOGS_TIMEOUT_SECONDS = 60

# kubectl reports missing objects as "Error from server (NotFound): ...".
_NOT_FOUND_PATTERN = re.compile(r"\bNotFound\b")
_UNREACHABLE_MARKERS = (
    "connection refused",
    "Unable to connect to the server",
    "was refused",
    "no such host",
)


def is_not_found(error: KubectlCommandError) -> bool:
    """Whether a kubectl failure means the object does not exist."""
    return _NOT_FOUND_PATTERN.search(error.output) is not None


def is_unreachable(error: KubectlCommandError) -> bool:
    """Whether a kubectl failure means the API server could not be reached."""
    return any(marker in error.output for marker in _UNREACHABLE_MARKERS)


def is_already_exists(error: KubectlCommandError) -> bool:
    """Whether a kubectl failure means the object is already present."""
    return "AlreadyExists" in error.output or "already exists" in error.output


class KubectlClient:
    """Client for the kubectl CLI bound to one context."""

    def __init__(self, tools: ToolEnvironment, context: str | None = None) -> None:
        """Initialize kubectl client.

        Args:
            tools: Tool environment the binary runs in.
            context: Context selector passed to every command.

        Raises:
            KubectlBinaryNotFoundError: If kubectl cannot be located.
        """
        self._tools = tools
        self._context = context
        binary = tools.locate("kubectl")
        if not binary:
            raise KubectlBinaryNotFoundError()
        self._log = logger.bind(binary=binary, environment=tools.name, context=context)
        self._log.debug("kubectl_client_initialized")

    def run(
        self,
        args: list[str],
        *,
        input_data: str | None = None,
        timeout: float = KUBECTL_TIMEOUT_SECONDS,
        check: bool = True,
    ) -> CommandResult:
        """Run a kubectl command with the bound context.

        Args:
            args: Arguments without the ``kubectl`` prefix or context flag.
            input_data: Text for stdin (``-f -``).
            timeout: Timeout in seconds.
            check: Raise on non-zero exit.

        Raises:
            KubectlCommandError: On non-zero exit when ``check`` is set.
        """
        full_args = ["--context", self._context, *args] if self._context else list(args)
        self._log.debug("running_kubectl_command", args=args)
        result = self._tools.run_tool(
            "kubectl", full_args, timeout=timeout, input_data=input_data
        )
        if check and not result.success:
            raise KubectlCommandError(
                message=f"kubectl {' '.join(args[:3])} failed: "
                f"{result.output or f'exit code {result.exit_code}'}",
                result=result,
            )
        return result

    def get_json(self, args: list[str]) -> dict[str, Any]:
        """Run a ``get`` and decode its ``-o json`` output."""
        result = self.run(["get", *args, "-o", "json"])
        try:
            return extract_json(result.stdout, "{") or {}
        except json.JSONDecodeError as e:
            raise KubectlError(f"Unparseable kubectl output: {result.stdout[:200]}", result) from e

    # -----------------------------------------------------------------------
    # Cluster
    # -----------------------------------------------------------------------

    def cluster_info(self) -> CommandResult:
        """Run ``cluster-info``; raises when the API server is unreachable."""
        return self.run(["cluster-info"])

    # -----------------------------------------------------------------------
    # Objects
    # -----------------------------------------------------------------------

    def exists(self, resource: str, name: str, namespace: str | None = None) -> bool:
        """Whether ``resource/name`` exists.

        Raises:
            KubectlCommandError: On failures other than not-found.
        """
        args = ["get", resource, name, "-o", "name"]
        if namespace:
            args.extend(["-n", namespace])
        try:
            result = self.run(args)
        except KubectlCommandError as e:
            if is_not_found(e):
                return False
            raise
        return bool(result.stdout.strip())

    def jsonpath(self, resource: str, name: str, path: str, namespace: str | None = None) -> str:
        """Read one field with ``-o jsonpath``."""
        args = ["get", resource, name, "-o", f"jsonpath={{{path}}}"]
        if namespace:
            args.extend(["-n", namespace])
        return self.run(args).stdout.strip()

    def list_names(self, resource: str, namespace: str) -> set[str]:
        """Names of every ``resource`` object in ``namespace``."""
        data = self.get_json([resource, "-n", namespace])
        return {
            item.get("metadata", {}).get("name", "")
            for item in data.get("items", [])
            if item.get("metadata", {}).get("name")
        }

    def create_namespace(self, name: str) -> None:
        self.run(["create", "namespace", name])

    def create_from_stdin(self, document: str) -> CommandResult:
        return self.run(["create", "-f", "-"], input_data=document)

    def replace_from_stdin(self, document: str) -> CommandResult:
        return self.run(["replace", "-f", "-"], input_data=document)

    # -----------------------------------------------------------------------
    # Diagnostics
    # -----------------------------------------------------------------------

    def pods_wide(self, namespace: str) -> str:
        return self.run(["get", "pods", "-n", namespace, "-o", "wide"]).stdout

    def events(self, namespace: str) -> str:
        return self.run(
            ["get", "events", "-n", namespace, "--sort-by=.lastTimestamp"]
        ).stdout

    def pod_logs(self, pod: str, namespace: str, *, tail: int = 50, previous: bool = False) -> str:
        args = ["logs", pod, "-n", namespace, "--all-containers=true", f"--tail={tail}"]
        if previous:
            args.append("--previous")
        return self.run(args, timeout=LOGS_TIMEOUT_SECONDS).output

    def non_running_pods(self, namespace: str) -> list[str]:
        """Names (``pod/<name>``) of pods whose phase is not Running."""
        result = self.run(
            [
                "get",
                "pods",
                "-n",
                namespace,
                "--field-selector=status.phase!=Running",
                "-o",
                "name",
            ]
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def describe(self, resource: str, namespace: str) -> str:
        return self.run(["describe", resource, "-n", namespace]).stdout

    def get_table(self, resource: str, namespace: str | None = None) -> str:
        args = ["get", resource]
        if namespace:
            args.extend(["-n", namespace])
        return self.run(args).stdout
