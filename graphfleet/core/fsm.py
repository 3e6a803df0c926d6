"""
graphfleet/core/fsm.py — Lifecycle state machine for one supervised graph.

Thread-safe FSM with an explicit transition map, per-state enter callbacks,
transition history (last 50), and structured logging. The interrupt handler
and the supervisor thread may race on the same machine; the lock makes one
of them win and the other receive :class:`InvalidTransitionError`.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from graphfleet.core.constants import GraphState

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Custom exception
# ──────────────────────────────────────────────────────────────

class InvalidTransitionError(RuntimeError):
    """
    Raised when a requested transition is not in the valid transition map.

    Args:
        from_state: Current state at the time of the illegal attempt.
        to_state: Requested (invalid) target state.
        reason: Caller-supplied reason string.
    """

    def __init__(
        self,
        from_state: GraphState,
        to_state: GraphState,
        reason: str = "",
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(
            f"Invalid transition {from_state.value} → {to_state.value}"
            + (f" (reason: {reason})" if reason else "")
        )


# ──────────────────────────────────────────────────────────────
# Valid transition map
# ──────────────────────────────────────────────────────────────

_VALID_TRANSITIONS: dict[GraphState, list[GraphState]] = {
    GraphState.UNINITIALIZED: [
        GraphState.CREATED,
        GraphState.FAILED,
        GraphState.INTERRUPTED,
    ],
    GraphState.CREATED: [
        GraphState.AWAITING_COMPLETION,
        GraphState.FAILED,
        GraphState.INTERRUPTED,
    ],
    GraphState.AWAITING_COMPLETION: [
        GraphState.COMPLETED,
        GraphState.INTERRUPTED,
    ],
    GraphState.COMPLETED: [
        GraphState.DESTROYED,
    ],
    GraphState.INTERRUPTED: [
        GraphState.DESTROYED,
    ],
    GraphState.FAILED: [
        GraphState.DESTROYED,
    ],
    GraphState.DESTROYED: [],
}

# Maximum number of transition records kept in history
_MAX_HISTORY = 50


# ──────────────────────────────────────────────────────────────
# FSM class
# ──────────────────────────────────────────────────────────────

class GraphFSM:
    """
    Thread-safe lifecycle machine for a single graph.

    Enforces :data:`_VALID_TRANSITIONS`. Illegal transitions raise
    :class:`InvalidTransitionError` immediately. ``DESTROYED`` is terminal.

    Args:
        graph_id: Identifier of the supervised graph, used in log lines.
        on_transition: Optional callback invoked after every successful
            transition with signature ``(from_state, to_state, reason)``.
    """

    def __init__(
        self,
        graph_id: int,
        on_transition: Callable[[GraphState, GraphState, str], None] | None = None,
    ) -> None:
        """Initialise in UNINITIALIZED."""
        self._graph_id = graph_id
        self._state: GraphState = GraphState.UNINITIALIZED
        self._lock = threading.Lock()
        self._history: list[dict] = []
        self._external_callback = on_transition

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    @property
    def current_state(self) -> GraphState:
        """Return the current state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def is_terminal(self) -> bool:
        """True once the graph has been destroyed."""
        with self._lock:
            return self._state is GraphState.DESTROYED

    def transition(self, new_state: GraphState, reason: str = "") -> None:
        """
        Attempt a validated state transition.

        Records the transition in history, fires the ``_on_enter_<state>``
        hook and notifies the external callback.

        Args:
            new_state: Target state.
            reason: Human-readable reason for the transition.

        Raises:
            InvalidTransitionError: If the transition is not in the valid map.
        """
        with self._lock:
            from_state = self._state
            if new_state not in _VALID_TRANSITIONS.get(from_state, []):
                raise InvalidTransitionError(from_state, new_state, reason)

            self._state = new_state
            self._history.append({
                "from": from_state.value,
                "to": new_state.value,
                "reason": reason,
                "timestamp": time.time(),
            })
            if len(self._history) > _MAX_HISTORY:
                self._history.pop(0)

        logger.info(
            "graph-%d: %s → %s%s",
            self._graph_id,
            from_state.value,
            new_state.value,
            f" [{reason}]" if reason else "",
        )

        # Hooks run outside the lock so they may read current_state
        self._fire_on_enter(new_state)

        if self._external_callback is not None:
            try:
                self._external_callback(from_state, new_state, reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("FSM external callback raised: %s", exc)

    def try_transition(self, new_state: GraphState, reason: str = "") -> bool:
        """
        Like :meth:`transition` but returns ``False`` instead of raising.

        Used on paths that race with the interrupt handler, where losing the
        race is an expected outcome rather than a bug.
        """
        try:
            self.transition(new_state, reason)
        except InvalidTransitionError as exc:
            logger.debug("graph-%d: %s", self._graph_id, exc)
            return False
        return True

    def can_transition(self, target: GraphState) -> bool:
        """
        Check whether a transition to ``target`` is currently valid.

        Approximate: the state may change before a following
        :meth:`transition` call.
        """
        return target in _VALID_TRANSITIONS.get(self._state, [])

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records, oldest first.

        Each record has keys ``from``, ``to``, ``reason`` and ``timestamp``.
        """
        with self._lock:
            return list(self._history)

    # ──────────────────────────────────────────
    # on_enter callbacks (override in subclass)
    # ──────────────────────────────────────────

    def _on_enter_awaiting_completion(self) -> None:
        logger.debug("graph-%d: input sent, waiting for output", self._graph_id)

    def _on_enter_interrupted(self) -> None:
        logger.warning("graph-%d: interrupted before completion", self._graph_id)

    def _on_enter_failed(self) -> None:
        logger.warning("graph-%d: start sequence failed", self._graph_id)

    # ──────────────────────────────────────────
    # Internal dispatch helpers
    # ──────────────────────────────────────────

    def _fire_on_enter(self, state: GraphState) -> None:
        """Dispatch to the ``_on_enter_<state>`` hook if one is defined."""
        method_name = f"_on_enter_{state.value.lower()}"
        method = getattr(self, method_name, None)
        if callable(method):
            try:
                method()
            except Exception as exc:  # noqa: BLE001
                logger.warning("on_enter callback %r raised: %s", method_name, exc)

    def __repr__(self) -> str:
        with self._lock:
            last = self._history[-1] if self._history else None
            state_str = self._state.value
        last_str = f"{last['from']}→{last['to']}" if last else "none"
        return f"GraphFSM(graph={self._graph_id}, state={state_str}, last={last_str})"
