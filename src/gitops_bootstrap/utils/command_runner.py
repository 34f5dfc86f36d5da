"""Cancellable subprocess execution.

Wraps ``subprocess.Popen`` so a blocking wait on a child process can be
interrupted by a :class:`CancellationToken` within a bounded grace period.
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import structlog

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.constants import COMMAND_CANCEL_GRACE_SECONDS
from gitops_bootstrap.core.exceptions import (
    CommandTimeoutError,
    OperationCancelledError,
    ToolUnavailableError,
)

logger = structlog.get_logger()

# How often a blocked wait wakes up to check the cancellation token.
POLL_SLICE_SECONDS = 0.2


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one subprocess invocation."""

    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def success(self) -> bool:
        """Whether the process exited with status zero."""
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Return stderr if present, else stdout.

        Tools wrapped through a shell often fold stderr into stdout, so
        callers rendering a failure want whichever stream has content.
        """
        return self.stderr.strip() or self.stdout.strip()


class CommandRunner:
    """Runs external programs under a shared cancellation token."""

    def __init__(
        self,
        token: CancellationToken | None = None,
        *,
        grace_period: float = COMMAND_CANCEL_GRACE_SECONDS,
    ) -> None:
        """Initialize the runner.

        Args:
            token: Cancellation scope for every command this runner starts.
            grace_period: Seconds to wait after terminating a cancelled child
                before killing it.
        """
        self.token = token or CancellationToken()
        self._grace_period = grace_period

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        input_data: str | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        A non-zero exit status is not an error at this level; callers inspect
        ``CommandResult.exit_code``.

        Args:
            command: Program name or path.
            args: Program arguments.
            env: Variables merged over the current process environment.
            timeout: Seconds before the child is stopped, or None for no limit.
            input_data: Text written to the child's stdin.

        Returns:
            The command result.

        Raises:
            OperationCancelledError: If the token is cancelled before or during
                execution.
            CommandTimeoutError: If the timeout elapses.
            ToolUnavailableError: If the program cannot be started.
        """
        self.token.raise_if_cancelled()

        argv = [command, *args]
        display = " ".join(argv)
        merged_env = {**os.environ, **env} if env else None
        log = logger.bind(command=command)
        log.debug("running_command", args=list(args))

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if input_data is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=merged_env,
            )
        except FileNotFoundError as e:
            raise ToolUnavailableError(command, f"{command} executable not found") from e
        except PermissionError as e:
            raise ToolUnavailableError(command, f"{command} is not executable") from e

        deadline = started + timeout if timeout is not None else None
        pending_input = input_data
        while True:
            if self.token.cancelled:
                self._stop(proc)
                log.info("command_cancelled", elapsed=round(time.monotonic() - started, 2))
                raise OperationCancelledError(f"Cancelled while running {command}")

            wait_for = POLL_SLICE_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._stop(proc)
                    log.warning("command_timed_out", timeout=timeout)
                    raise CommandTimeoutError(display, timeout or 0)
                wait_for = min(wait_for, remaining)

            try:
                stdout, stderr = proc.communicate(input=pending_input, timeout=wait_for)
                break
            except subprocess.TimeoutExpired:
                # communicate() may be retried, but input is only sent once
                pending_input = None

        duration = time.monotonic() - started
        result = CommandResult(
            command=display,
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=duration,
        )
        log.debug("command_finished", exit_code=result.exit_code, duration=round(duration, 2))
        return result

    def _stop(self, proc: subprocess.Popen[str]) -> None:
        """Terminate a child, escalating to kill after the grace period."""
        proc.terminate()
        try:
            proc.communicate(timeout=self._grace_period)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
