"""
Scoped ownership of GPU and window handles.

Every handle is registered together with its release callable at the moment
it is acquired. Closing the scope releases them in reverse acquisition order,
exactly once, including after a partially failed initialization.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from typing import Any, Callable, List, Tuple

LOGGER = logging.getLogger(__name__)


class GpuResources:
    """Reverse-order, idempotent release of acquired handles."""

    def __init__(self):
        self._stack = ExitStack()
        self._labels: List[str] = []

    def __enter__(self) -> "GpuResources":
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False

    def __len__(self) -> int:
        return len(self._labels)

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(self._labels)

    def acquire(self, label: str, handle: Any, release: Callable[[Any], None]) -> Any:
        """Register ``handle`` and return it.

        Args:
            label: Name used in log messages
            handle: The acquired resource (GL name, window pointer, ...)
            release: Called with ``handle`` when the scope closes
        """
        self._labels.append(label)

        def _release():
            LOGGER.debug("Releasing %s", label)
            try:
                release(handle)
            finally:
                self._labels.remove(label)

        self._stack.callback(_release)
        return handle

    def close(self):
        """Release everything acquired so far. Safe to call repeatedly."""
        if not self._labels:
            return
        LOGGER.debug("Releasing %d GPU resources", len(self._labels))
        self._stack.close()
        self._stack = ExitStack()
