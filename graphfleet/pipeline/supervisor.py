"""
graphfleet/pipeline/supervisor.py — Lifecycle owner for exactly one graph.

A supervisor runs on its own thread and walks its graph through::

    UNINITIALIZED ─► CREATED ─► AWAITING_COMPLETION ─┬─► COMPLETED ───┐
          │             │                            └─► INTERRUPTED ─┼─► DESTROYED
          └─────────────┴──► FAILED / INTERRUPTED ────────────────────┘

:meth:`~PipelineSupervisor.start` brings the graph up and sends the first
message, :meth:`~PipelineSupervisor.await_completion` polls until the graph's
own :class:`~graphfleet.pipeline.sink.PendingCount` drains or the shared
:class:`~graphfleet.pipeline.shutdown.ShutdownSignal` fires, and
:meth:`~PipelineSupervisor.shutdown` destroys the graph exactly once. The
interrupt handler may call :meth:`shutdown` from the main thread while the
supervisor thread is still inside :meth:`start` or :meth:`await_completion`;
the FSM lock decides which side's transition lands.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Optional, Sequence

from graphfleet.core.config import PipelineConfig, PortAddress
from graphfleet.core.constants import CompletionReason, GraphState
from graphfleet.core.constants import FleetConstants as C
from graphfleet.core.fsm import GraphFSM
from graphfleet.core.logger import get_logger
from graphfleet.engine.base import EngineStatus, GraphEngine, GraphHandle
from graphfleet.pipeline.registry import ActiveGraphs, ContextRegistry
from graphfleet.pipeline.shutdown import ShutdownSignal
from graphfleet.pipeline.sink import CompletionSink, PendingCount

_log = get_logger()

# Process-wide defaults; the orchestrator passes its own in tests
_CONTEXTS = ContextRegistry()
_ACTIVE = ActiveGraphs()


# ──────────────────────────────────────────────────────────────
# Start errors
# ──────────────────────────────────────────────────────────────

class StartError(RuntimeError):
    """
    A graph could not be brought up. Fatal to that graph only.

    Args:
        graph_id: Graph whose start sequence failed.
        message: What went wrong.
    """

    def __init__(self, graph_id: int, message: str) -> None:
        self.graph_id = graph_id
        super().__init__(f"graph-{graph_id}: {message}")


class GraphAlreadyRunningError(StartError):
    """Another supervisor in this process already owns the graph id."""


class InitFailedError(StartError):
    """The device / resource context could not be initialised."""


class CreateFailedError(StartError):
    """The engine refused to create or wire the graph."""


class LookupFailedError(StartError):
    """The graph was created but could not be resolved by its id."""


class SendFailedError(StartError):
    """The initial message was rejected by the entry port."""


# ──────────────────────────────────────────────────────────────
# Supervisor
# ──────────────────────────────────────────────────────────────

class PipelineSupervisor:
    """
    Owns one graph from creation to destruction.

    Args:
        config: Immutable description of the graph to run.
        engine: Pipeline engine that creates and executes the graph.
        shutdown_signal: Process-wide interrupt flag.
        expected_completions: Initial value of this graph's pending count.
        payload_type: Type tag sent with the initial message.
        expected_payload_type: Type completion payloads are checked against;
            ``None`` accepts any non-``None`` payload.
        contexts: Shared context-initialisation registry.
        active: Shared registry of graph ids in use.
    """

    def __init__(
        self,
        config: PipelineConfig,
        engine: GraphEngine,
        shutdown_signal: ShutdownSignal,
        *,
        expected_completions: int = C.EXPECTED_COMPLETIONS,
        payload_type: str = C.PAYLOAD_TYPE,
        expected_payload_type: Optional[type] = None,
        contexts: Optional[ContextRegistry] = None,
        active: Optional[ActiveGraphs] = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._signal = shutdown_signal
        self._payload_type = payload_type
        self._expected_payload_type = expected_payload_type
        self._contexts = contexts if contexts is not None else _CONTEXTS
        self._active = active if active is not None else _ACTIVE

        self._pending = PendingCount(expected_completions)
        self._fsm = GraphFSM(config.graph_id, on_transition=self._on_fsm_transition)
        self._sinks: list[CompletionSink] = []

        self._shutdown_lock = threading.Lock()
        self._shutdown_done = False
        self._claimed = False
        self._owns_graph = False

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def graph_id(self) -> int:
        return self._config.graph_id

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def state(self) -> GraphState:
        return self._fsm.current_state

    @property
    def pending(self) -> PendingCount:
        return self._pending

    @property
    def sinks(self) -> tuple[CompletionSink, ...]:
        return tuple(self._sinks)

    def history(self) -> list[dict]:
        return self._fsm.get_history()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(
        self,
        entry_port: PortAddress,
        terminal_ports: Sequence[PortAddress],
        payload: Any,
    ) -> None:
        """
        Initialise the context, create the graph, wire a sink to every
        terminal port and send *payload* to *entry_port*.

        Returns early, without raising, if the shutdown signal fires during
        bring-up; the graph is then in ``INTERRUPTED``.

        Raises:
            GraphAlreadyRunningError: The graph id is held by another supervisor.
            InitFailedError: The context could not be initialised.
            CreateFailedError: The graph could not be created or wired.
            LookupFailedError: The created graph could not be resolved.
            SendFailedError: The initial message was rejected.
        """
        gid = self.graph_id
        t0 = time.perf_counter()

        if self._signal.is_set():
            self._fsm.try_transition(GraphState.INTERRUPTED, reason="shutdown_before_start")
            return

        if not self._active.claim(gid):
            raise self._fail(GraphAlreadyRunningError(gid, "graph id already running in-process"))
        with self._shutdown_lock:
            if self._shutdown_done:
                self._active.release(gid)
                return
            self._claimed = True

        self._init_context()
        self._create_graph()

        # Only a graph this supervisor created is ever destroyed by it
        with self._shutdown_lock:
            abandoned = self._shutdown_done
            self._owns_graph = not abandoned
        if abandoned:
            # Shut down while the engine was still creating it
            self._destroy_quietly()
            return

        if not self._fsm.try_transition(GraphState.CREATED, reason="graph_created"):
            # Interrupt handler got here first and already tore down; the
            # engine may hold a graph created after that teardown.
            self._destroy_quietly()
            return

        handle = self._resolve_graph()
        self._wire_sinks(handle, terminal_ports)

        if self._signal.is_set():
            self._fsm.try_transition(GraphState.INTERRUPTED, reason="shutdown_before_send")
            return

        self._send_input(handle, entry_port, payload)
        self._fsm.try_transition(GraphState.AWAITING_COMPLETION, reason="input_sent")

        _log.perf("supervisor", "start_done", (time.perf_counter() - t0) * 1_000.0, {
            "graph_id": gid,
            "context_id": self._config.context_id,
            "terminal_ports": [str(p) for p in terminal_ports],
        })

    def await_completion(self, poll_interval: float) -> CompletionReason:
        """
        Block until every expected output has arrived or shutdown is signalled.

        The shutdown signal is checked first on every pass, so an interrupt
        always wins over a completion seen in the same pass. Sleeping on the
        signal itself means an interrupt is noticed within one poll interval.

        Args:
            poll_interval: Seconds between checks.
        """
        t0 = time.perf_counter()
        polls = 0
        while True:
            if self._signal.is_set():
                reason = CompletionReason.INTERRUPTED
                break
            if self._pending.drained:
                reason = CompletionReason.COMPLETED
                break
            if self.state is not GraphState.AWAITING_COMPLETION:
                # Torn down by a direct shutdown() without the signal
                reason = CompletionReason.INTERRUPTED
                break
            polls += 1
            self._signal.wait(poll_interval)

        target = (
            GraphState.COMPLETED if reason is CompletionReason.COMPLETED
            else GraphState.INTERRUPTED
        )
        if not self._fsm.try_transition(target, reason=reason.value.lower()):
            # Lost the race to the interrupt handler
            reason = (
                CompletionReason.COMPLETED if self.state is GraphState.COMPLETED
                else CompletionReason.INTERRUPTED
            )

        _log.perf("supervisor", "await_done", (time.perf_counter() - t0) * 1_000.0, {
            "graph_id": self.graph_id,
            "reason": reason.value,
            "polls": polls,
            "pending": self._pending.value,
        })
        return reason

    def shutdown(self) -> None:
        """
        Destroy the graph. Idempotent and safe from any thread.

        A graph still being brought up or awaited is marked ``INTERRUPTED``
        first. Engine errors are logged, never raised.
        """
        with self._shutdown_lock:
            if self._shutdown_done:
                return
            self._shutdown_done = True
            claimed = self._claimed
            owns_graph = self._owns_graph

        if self.state in (
            GraphState.UNINITIALIZED,
            GraphState.CREATED,
            GraphState.AWAITING_COMPLETION,
        ):
            self._fsm.try_transition(GraphState.INTERRUPTED, reason="shutdown_requested")

        if owns_graph:
            t0 = time.perf_counter()
            self._destroy_quietly()
            _log.perf("supervisor", "destroy_done", (time.perf_counter() - t0) * 1_000.0, {
                "graph_id": self.graph_id,
            })
        if claimed:
            self._active.release(self.graph_id)

        self._fsm.try_transition(GraphState.DESTROYED, reason="graph_destroyed")
        _log.info("supervisor", "graph_destroyed", {
            "graph_id": self.graph_id,
            "received": sum(s.received for s in self._sinks),
            "pending": self._pending.value,
        })

    # ── Start steps ───────────────────────────────────────────────────────────

    def _init_context(self) -> None:
        gid, cid = self.graph_id, self._config.context_id
        try:
            status = self._contexts.ensure(cid, self._engine.init_context)
        except Exception as exc:  # noqa: BLE001
            raise self._fail(InitFailedError(gid, f"context {cid} init raised: {exc}")) from exc

        if status is None:
            _log.info("supervisor", "context_reused", {"graph_id": gid, "context_id": cid})
        elif status is EngineStatus.ALREADY_INITIALIZED:
            _log.warn("supervisor", "context_already_initialized", {
                "graph_id": gid, "context_id": cid,
            })
        elif status is EngineStatus.FAILED:
            raise self._fail(InitFailedError(gid, f"context {cid} init failed"))

    def _create_graph(self) -> None:
        gid, source = self.graph_id, self._config.config_source
        try:
            status = self._engine.create_graph(source)
        except Exception as exc:  # noqa: BLE001
            raise self._fail(CreateFailedError(gid, f"create raised for {source}: {exc}")) from exc
        if not status.ok:
            raise self._fail(CreateFailedError(gid, f"create failed for {source} ({status.value})"))
        _log.info("supervisor", "graph_created", {"graph_id": gid, "source": source})

    def _resolve_graph(self) -> GraphHandle:
        gid = self.graph_id
        try:
            handle = self._engine.get_graph(gid)
        except Exception as exc:  # noqa: BLE001
            raise self._fail(LookupFailedError(gid, f"lookup raised: {exc}")) from exc
        if handle is None:
            raise self._fail(LookupFailedError(gid, "created graph not resolvable by id"))
        return handle

    def _wire_sinks(self, handle: GraphHandle, terminal_ports: Sequence[PortAddress]) -> None:
        for port in terminal_ports:
            sink = CompletionSink(port, self._pending, self._expected_payload_type)
            try:
                handle.set_data_receiver(port, sink)
            except Exception as exc:  # noqa: BLE001
                raise self._fail(
                    CreateFailedError(self.graph_id, f"cannot attach receiver to {port}: {exc}")
                ) from exc
            self._sinks.append(sink)

    def _send_input(self, handle: GraphHandle, entry_port: PortAddress, payload: Any) -> None:
        gid = self.graph_id
        try:
            status = handle.send_data(entry_port, self._payload_type, payload)
        except Exception as exc:  # noqa: BLE001
            raise self._fail(SendFailedError(gid, f"send to {entry_port} raised: {exc}")) from exc
        if not status.ok:
            raise self._fail(SendFailedError(gid, f"send to {entry_port} failed ({status.value})"))
        _log.info("supervisor", "input_sent", {
            "graph_id": gid, "port": str(entry_port), "type": self._payload_type,
        })

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _fail(self, error: StartError) -> StartError:
        """Move to FAILED (if still possible) and hand the error back for raising."""
        self._fsm.try_transition(GraphState.FAILED, reason=type(error).__name__)
        _log.error("supervisor", "start_failed", {
            "graph_id": self.graph_id,
            "kind": type(error).__name__,
            "error": str(error),
        })
        return error

    def _destroy_quietly(self) -> None:
        try:
            self._engine.destroy_graph(self.graph_id)
        except Exception as exc:  # noqa: BLE001
            _log.error("supervisor", "destroy_failed", {
                "graph_id": self.graph_id, "error": str(exc),
            })

    def _on_fsm_transition(self, from_state: GraphState, to_state: GraphState, reason: str) -> None:
        _log.info("supervisor", "fsm_transition", {
            "graph_id": self.graph_id,
            "from": from_state.value,
            "to": to_state.value,
            "reason": reason,
        })

    def __repr__(self) -> str:
        return (
            f"PipelineSupervisor(graph={self.graph_id}, state={self.state.value}, "
            f"pending={self._pending.value})"
        )
