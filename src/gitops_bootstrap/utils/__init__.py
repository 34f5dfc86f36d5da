"""Utility functions for gitops_bootstrap."""

from gitops_bootstrap.utils.command_runner import CommandResult, CommandRunner
from gitops_bootstrap.utils.paths import (
    HostPathTranslator,
    PathTranslator,
    WslPathTranslator,
    expand_short_path,
    manual_wsl_path,
)
from gitops_bootstrap.utils.polling import poll_until, retry_call

__all__ = [
    "CommandResult",
    "CommandRunner",
    "HostPathTranslator",
    "PathTranslator",
    "WslPathTranslator",
    "expand_short_path",
    "manual_wsl_path",
    "poll_until",
    "retry_call",
]
