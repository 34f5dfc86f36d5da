"""Cooperative cancellation for one orchestration run."""

from __future__ import annotations

import threading

from gitops_bootstrap.core.exceptions import OperationCancelledError


class CancellationToken:
    """A cancellation scope shared by every blocking call of a run.

    Sleeps taken through :meth:`sleep` wake up as soon as :meth:`cancel` is
    called, so tenacity loops that use it as their ``sleep`` hook stop within
    one wake-up rather than one full interval.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation."""
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "Operation cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for up to ``seconds``, aborting early on cancellation.

        Raises:
            OperationCancelledError: If cancelled before or during the sleep.
        """
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(seconds):
            self.raise_if_cancelled()
