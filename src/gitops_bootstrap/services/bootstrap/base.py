"""Base class for bootstrap service components."""

from __future__ import annotations

import structlog

from gitops_bootstrap.core.cancellation import CancellationToken

logger = structlog.get_logger()


class BootstrapComponent:
    """Shared plumbing for bootstrap components.

    Subclasses set ``_entity_name`` for structured log context.

    Example:
        >>> class ResourceApplier(BootstrapComponent):
        ...     _entity_name = "applier"
    """

    _entity_name: str = ""

    def __init__(self, token: CancellationToken) -> None:
        """Initialize the component.

        Args:
            token: Cancellation scope of the run this component serves.
        """
        self._token = token
        self._log = logger.bind(entity=self._entity_name)
