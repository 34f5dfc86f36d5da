"""Bounded, cancellable polling built on tenacity.

Every readiness check in the package goes through :func:`poll_until`, so
the timeout and cancellation behaviour is defined in one place.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TypeVar

import structlog
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from gitops_bootstrap.core.cancellation import CancellationToken
from gitops_bootstrap.core.exceptions import ReadinessTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")


def _clipped_wait(interval: float, timeout: float) -> Callable[[RetryCallState], float]:
    """Wait ``interval`` seconds, but never sleep past the deadline."""

    def wait(retry_state: RetryCallState) -> float:
        remaining = timeout - (retry_state.seconds_since_start or 0.0)
        return max(0.0, min(interval, remaining))

    return wait


def poll_until(
    check: Callable[[], Sequence[str]],
    *,
    interval: float,
    timeout: float,
    token: CancellationToken,
    description: str = "readiness",
) -> None:
    """Call ``check`` every ``interval`` seconds until it reports nothing pending.

    ``check`` returns the descriptions of the targets still outstanding; an
    empty sequence ends the poll. The first check runs immediately and a
    final check runs at the deadline, so a timeout is raised no earlier than
    ``timeout`` and no later than ``timeout`` plus one check.

    Args:
        check: Returns the targets still outstanding on this tick.
        interval: Seconds between checks.
        timeout: Overall deadline in seconds.
        token: Cancellation scope; interrupts in-flight sleeps.
        description: Label used in log events.

    Raises:
        ReadinessTimeoutError: With the targets still outstanding at the deadline.
        OperationCancelledError: If the token is cancelled.
    """
    log = logger.bind(poll=description, interval=interval, timeout=timeout)

    def before_sleep(retry_state: RetryCallState) -> None:
        pending = retry_state.outcome.result() if retry_state.outcome else []
        log.debug("poll_pending", attempt=retry_state.attempt_number, pending=list(pending))

    token.raise_if_cancelled()
    retrying = Retrying(
        stop=stop_after_delay(timeout),
        wait=_clipped_wait(interval, timeout),
        retry=retry_if_result(lambda pending: bool(pending)),
        sleep=token.sleep,
        before_sleep=before_sleep,
        reraise=True,
    )
    try:
        retrying(check)
    except RetryError as e:
        missing = list(e.last_attempt.result())
        log.warning("poll_timed_out", missing=missing)
        raise ReadinessTimeoutError(missing, timeout) from None
    log.debug("poll_satisfied")


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    token: CancellationToken,
    retry_on: type[BaseException] | tuple[type[BaseException], ...],
    description: str = "operation",
) -> T:
    """Call ``func`` up to ``attempts`` times with a fixed delay between calls.

    The last exception is re-raised once attempts are exhausted.
    """
    log = logger.bind(operation=description, attempts=attempts)

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log.info("retrying", attempt=retry_state.attempt_number, error=str(error))

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(retry_on),
        sleep=token.sleep,
        before_sleep=before_sleep,
        reraise=True,
    )
    return retrying(func)
