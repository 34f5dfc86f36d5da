"""Path translation between the invoking host and the tool environment."""

from __future__ import annotations

import ntpath
import os
import re
import sys
from typing import Protocol

import structlog

from gitops_bootstrap.core.constants import DEFAULT_WSL_DISTRO, WSLPATH_TIMEOUT_SECONDS
from gitops_bootstrap.core.exceptions import (
    CommandTimeoutError,
    ConfigurationError,
    ToolUnavailableError,
)
from gitops_bootstrap.utils.command_runner import CommandRunner

logger = structlog.get_logger()

_DRIVE_PATTERN = re.compile(r"^([A-Za-z]):(.*)$")


class PathTranslator(Protocol):
    """Converts a host path into the path syntax of the tool environment."""

    def translate(self, path: str) -> str: ...


def expand_short_path(path: str) -> str:
    """Expand Windows 8.3 short names (``RUNNER~1``) to their long form.

    Returns the input unchanged on other platforms, or when the path does
    not exist and the expansion fails.
    """
    if not path or sys.platform != "win32" or "~" not in path:
        return path

    import ctypes

    get_long_path_name = ctypes.windll.kernel32.GetLongPathNameW  # type: ignore[attr-defined]
    size = get_long_path_name(path, None, 0)
    if size == 0:
        return path
    buffer = ctypes.create_unicode_buffer(size)
    if get_long_path_name(path, buffer, size) == 0:
        return path
    return buffer.value


def manual_wsl_path(path: str) -> str:
    """Rewrite a Windows path to its ``/mnt/<drive>`` form without WSL.

    Example:
        ``C:\\Users\\dev\\values.yaml`` -> ``/mnt/c/Users/dev/values.yaml``
    """
    path = path.replace("\\", "/")
    match = _DRIVE_PATTERN.match(path)
    if match:
        return f"/mnt/{match.group(1).lower()}{match.group(2)}"
    return path


class HostPathTranslator:
    """Identity translation for tools that run on the invoking host."""

    def translate(self, path: str) -> str:
        if not path:
            raise ConfigurationError("Cannot translate an empty path")
        return os.path.abspath(path)


class WslPathTranslator:
    """Translates Windows host paths for tools executing inside WSL.

    Uses ``wslpath`` inside the distribution and falls back to a manual
    drive-prefix rewrite when that fails.
    """

    def __init__(self, runner: CommandRunner, distro: str = DEFAULT_WSL_DISTRO) -> None:
        self._runner = runner
        self._distro = distro
        self._log = logger.bind(distro=distro)

    def translate(self, path: str) -> str:
        if not path:
            raise ConfigurationError("Cannot translate an empty path")

        absolute = expand_short_path(ntpath.abspath(path))
        forward = absolute.replace("\\", "/")

        try:
            result = self._runner.run(
                "wsl",
                ["-d", self._distro, "wslpath", "-u", forward],
                timeout=WSLPATH_TIMEOUT_SECONDS,
            )
        except (ToolUnavailableError, CommandTimeoutError) as e:
            self._log.debug("wslpath_unavailable", path=forward, error=str(e))
        else:
            converted = result.stdout.strip()
            if result.success and converted:
                self._log.debug("wslpath_converted", source=path, target=converted)
                return converted
            self._log.debug(
                "wslpath_failed",
                path=forward,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )

        converted = manual_wsl_path(absolute)
        self._log.debug("wslpath_manual_fallback", source=path, target=converted)
        return converted
