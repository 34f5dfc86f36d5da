"""Where helm and kubectl execute.

On Linux and macOS the tools run on the host. On Windows they run inside
a WSL distribution, which changes both the command line and the path
syntax. The strategy is picked once per run by :func:`select_tool_environment`.
"""

from __future__ import annotations

import os
import shutil
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

import structlog

from gitops_bootstrap.core.constants import (
    DEFAULT_WSL_DISTRO,
    DEFAULT_WSL_USER,
    HELM_SCRATCH_DIRS,
)
from gitops_bootstrap.core.exceptions import ToolUnavailableError
from gitops_bootstrap.utils.command_runner import CommandResult, CommandRunner
from gitops_bootstrap.utils.paths import HostPathTranslator, PathTranslator, WslPathTranslator

logger = structlog.get_logger()

# wsl.exe exit status when the distribution cannot be reached (0xFFFFFFFF).
WSL_DISTRO_NOT_FOUND_EXIT_CODES = frozenset({4294967295, -1})

_KUBECONFIG_REWRITE = (
    "WSL_IP=$(ip -4 addr show eth0 2>/dev/null | grep -oP 'inet \\K[0-9.]+' | head -1) && "
    'if [ -n "$WSL_IP" ] && [ -f ~/.kube/config ]; then '
    'sed -i "s|server: https://127\\.0\\.0\\.1:|server: https://$WSL_IP:|g; '
    's|server: https://0\\.0\\.0\\.0:|server: https://$WSL_IP:|g" ~/.kube/config '
    "2>/dev/null || true; "
    "fi"
)


def shell_quote(arg: str) -> str:
    """Quote an argument for a ``bash -c`` script run through wsl.exe.

    Only spaces, quotes and backslashes trigger quoting; jsonpath braces and
    ``$`` are left alone because they are part of the tool's own syntax.
    """
    if not any(ch in arg for ch in (" ", '"', "'", "\\")):
        return arg
    escaped = arg.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ToolEnvironment(Protocol):
    """Strategy for running helm/kubectl and naming files they read."""

    name: str
    paths: PathTranslator

    def run_tool(
        self,
        tool: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        input_data: str | None = None,
    ) -> CommandResult: ...

    def locate(self, tool: str) -> str | None: ...

    def prepare_scratch_dirs(self) -> None: ...


class HostToolEnvironment:
    """Runs tools directly on the invoking host."""

    name = "host"

    def __init__(self, runner: CommandRunner, binaries: Mapping[str, str] | None = None) -> None:
        self._runner = runner
        self._binaries = dict(binaries or {})
        self.paths: PathTranslator = HostPathTranslator()

    def locate(self, tool: str) -> str | None:
        if tool in self._binaries:
            path = Path(self._binaries[tool])
            return str(path.resolve()) if path.exists() else None
        return shutil.which(tool)

    def prepare_scratch_dirs(self) -> None:
        """Create the helm scratch directories on the host."""
        for directory in HELM_SCRATCH_DIRS.values():
            Path(directory).mkdir(parents=True, exist_ok=True)

    def run_tool(
        self,
        tool: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        input_data: str | None = None,
    ) -> CommandResult:
        binary = self._binaries.get(tool, tool)
        return self._runner.run(binary, args, env=env, timeout=timeout, input_data=input_data)


class WslToolEnvironment:
    """Runs tools inside a WSL distribution from a Windows host.

    Each invocation becomes ``wsl -d <distro> -u <user> bash -c <script>``.
    The script exports the helm scratch directories and ``HOME``, points the
    kubeconfig server from loopback to the distribution's eth0 address, and
    folds stderr into stdout.
    """

    name = "wsl"

    def __init__(
        self,
        runner: CommandRunner,
        *,
        distro: str = DEFAULT_WSL_DISTRO,
        user: str = DEFAULT_WSL_USER,
    ) -> None:
        self._runner = runner
        self._distro = distro
        self._user = user
        self.paths: PathTranslator = WslPathTranslator(runner, distro)

    def locate(self, tool: str) -> str | None:
        result = self._runner.run(
            "wsl",
            ["-d", self._distro, "-u", self._user, "bash", "-c", f"command -v {tool}"],
            timeout=10,
        )
        found = result.stdout.strip()
        return found if result.success and found else None

    def prepare_scratch_dirs(self) -> None:
        """No-op; the wrapper script creates the directories inside WSL."""

    def build_script(self, tool: str, args: Sequence[str]) -> str:
        """Build the bash script that runs ``tool`` inside the distribution."""
        command = " ".join([tool, *(shell_quote(a) for a in args)])
        steps: list[str] = []
        if tool == "helm":
            steps.append("mkdir -p " + " ".join(HELM_SCRATCH_DIRS.values()))
            steps.extend(f"export {key}={value}" for key, value in HELM_SCRATCH_DIRS.items())
        steps.append(f"export HOME=/home/{self._user}")
        steps.append(_KUBECONFIG_REWRITE)
        steps.append(f"{command} 2>&1")
        return " && ".join(steps)

    def run_tool(
        self,
        tool: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        input_data: str | None = None,
    ) -> CommandResult:
        script = self.build_script(tool, args)
        result = self._runner.run(
            "wsl",
            ["-d", self._distro, "-u", self._user, "bash", "-c", script],
            env=env,
            timeout=timeout,
            input_data=input_data,
        )
        if result.exit_code in WSL_DISTRO_NOT_FOUND_EXIT_CODES:
            raise ToolUnavailableError(
                "wsl",
                f"WSL distribution '{self._distro}' is not accessible while running {tool}",
                hint=(
                    "Run 'wsl --list --verbose' to check the distribution, "
                    f"'wsl --terminate {self._distro}' to restart it, "
                    f"or 'wsl --install -d {self._distro}' if it is missing."
                ),
            )
        return result


def select_tool_environment(
    runner: CommandRunner,
    *,
    platform: str | None = None,
    binaries: Mapping[str, str] | None = None,
) -> HostToolEnvironment | WslToolEnvironment:
    """Pick the tool environment for the current host.

    Args:
        runner: Command runner bound to the run's cancellation token.
        platform: Override for ``sys.platform``.
        binaries: Explicit host binary paths keyed by tool name.
    """
    platform = platform or sys.platform
    if platform == "win32":
        distro = os.environ.get("GITOPS_BOOTSTRAP_WSL_DISTRO", DEFAULT_WSL_DISTRO)
        user = os.environ.get("GITOPS_BOOTSTRAP_WSL_USER", DEFAULT_WSL_USER)
        logger.debug("tool_environment_selected", environment="wsl", distro=distro, user=user)
        return WslToolEnvironment(runner, distro=distro, user=user)
    logger.debug("tool_environment_selected", environment="host")
    return HostToolEnvironment(runner, binaries)
