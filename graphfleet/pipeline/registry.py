"""
graphfleet/pipeline/registry.py — Process-wide bookkeeping shared by supervisors.

:class:`ContextRegistry` makes device context initialisation an explicit
no-op after the first call for a given id, so two graphs configured on the
same context never initialise it twice. :class:`ActiveGraphs` enforces one
running supervisor per graph id.
"""

from __future__ import annotations

import threading
from typing import Callable

from graphfleet.engine.base import EngineStatus


class ContextRegistry:
    """Context ids this process has already initialised."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._initialised: set[int] = set()

    def ensure(self, context_id: int, init: Callable[[int], EngineStatus]) -> EngineStatus | None:
        """
        Run *init* for *context_id* unless it already succeeded.

        The lock is held across *init* so a second graph on the same context
        waits for the first initialisation instead of racing it.

        Returns:
            The engine status, or ``None`` when the context was already
            initialised by this process and *init* was skipped.
        """
        with self._lock:
            if context_id in self._initialised:
                return None
            status = init(context_id)
            if status is not EngineStatus.FAILED:
                self._initialised.add(context_id)
            return status

    def __contains__(self, context_id: int) -> bool:
        with self._lock:
            return context_id in self._initialised


class ActiveGraphs:
    """Graph ids currently owned by a live supervisor."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: set[int] = set()

    def claim(self, graph_id: int) -> bool:
        """Reserve *graph_id*; returns False if someone already holds it."""
        with self._lock:
            if graph_id in self._ids:
                return False
            self._ids.add(graph_id)
            return True

    def release(self, graph_id: int) -> None:
        with self._lock:
            self._ids.discard(graph_id)

    def snapshot(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._ids)
