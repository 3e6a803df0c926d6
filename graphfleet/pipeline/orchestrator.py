"""
graphfleet/pipeline/orchestrator.py — Fan-out / fan-in of a graph fleet.

The :class:`Orchestrator` owns one :class:`~graphfleet.pipeline.supervisor.PipelineSupervisor`
per configured graph and runs each on its own daemon thread::

    main thread                      graph-<id> thread (×N)
    ───────────                      ──────────────────────
    install signal handler
    spawn N threads ───────────────► start → await_completion → shutdown
    join loop  ◄──────────────────── (thread exits)
    restore handler, return exit code

An operator interrupt is a hard stop: the handler fires the shared
:class:`~graphfleet.pipeline.shutdown.ShutdownSignal`, destroys every tracked
graph, and exits the process without waiting for outstanding output.
"""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from graphfleet.core.config import FleetConfig, PipelineConfig
from graphfleet.core.constants import CompletionReason, GraphState
from graphfleet.core.constants import FleetConstants as C
from graphfleet.core.logger import get_logger
from graphfleet.engine.base import GraphEngine
from graphfleet.pipeline.registry import ActiveGraphs, ContextRegistry
from graphfleet.pipeline.shutdown import ShutdownSignal, install_handlers, restore_handlers
from graphfleet.pipeline.supervisor import LookupFailedError, PipelineSupervisor, StartError

logger = logging.getLogger(__name__)
_log = get_logger()


# ── Run report ────────────────────────────────────────────────────────────────

@dataclass
class PipelineOutcome:
    """
    What happened to one graph during a run.

    Attributes:
        graph_id: Graph identifier.
        started: True once the initial message was sent.
        reason: How the wait ended; ``None`` if the graph never waited.
        error: Start error text, if any.
        final_state: Lifecycle state after the thread finished.
    """

    graph_id: int
    started: bool = False
    reason: Optional[CompletionReason] = None
    error: Optional[str] = None
    final_state: GraphState = GraphState.UNINITIALIZED


@dataclass
class RunReport:
    """Per-graph outcomes of one :meth:`Orchestrator.run`, in config order."""

    outcomes: Dict[int, PipelineOutcome] = field(default_factory=dict)

    @property
    def started(self) -> List[int]:
        return [gid for gid, o in self.outcomes.items() if o.started]

    @property
    def failed(self) -> List[int]:
        return [gid for gid, o in self.outcomes.items() if o.error is not None]

    @property
    def exit_code(self) -> int:
        if self.outcomes and not self.started:
            return C.EXIT_ALL_FAILED
        return C.EXIT_OK


# ── Orchestrator ──────────────────────────────────────────────────────────────

class Orchestrator:
    """
    Launches a fleet of graphs and waits for all of them.

    Args:
        engine: Pipeline engine shared by every graph.
        settings: Fleet-wide settings (ports, payload, poll interval, signals).
            The ``pipelines`` field is ignored; graphs are passed to :meth:`run`.
        shutdown_signal: Interrupt flag; a fresh one is created if omitted.
        contexts: Context-initialisation registry; the process-wide one if omitted.
        active: Graph-id registry; the process-wide one if omitted, so two
            orchestrators in one process never run the same graph id.

    Example::

        cfg = load_config("config/fleet.yaml")
        orch = Orchestrator(LocalGraphEngine(), cfg)
        sys.exit(orch.run(cfg.pipelines))
    """

    def __init__(
        self,
        engine: GraphEngine,
        settings: Optional[FleetConfig] = None,
        *,
        shutdown_signal: Optional[ShutdownSignal] = None,
        contexts: Optional[ContextRegistry] = None,
        active: Optional[ActiveGraphs] = None,
    ) -> None:
        self._engine = engine
        self._settings = settings if settings is not None else FleetConfig()
        self._signal = shutdown_signal if shutdown_signal is not None else ShutdownSignal()
        # None falls through to the supervisor module's process-wide registries
        self._contexts = contexts
        self._active = active

        # Re-entrant: handle_interrupt runs on the main thread between bytecodes
        self._lock = threading.RLock()
        self._supervisors: Dict[int, PipelineSupervisor] = {}
        self._report = RunReport()

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def shutdown_signal(self) -> ShutdownSignal:
        return self._signal

    @property
    def report(self) -> RunReport:
        return self._report

    @property
    def supervisors(self) -> Dict[int, PipelineSupervisor]:
        """Tracked supervisors by graph id (copy)."""
        with self._lock:
            return dict(self._supervisors)

    # ── Run ───────────────────────────────────────────────────────────────────

    def run(self, configs: Sequence[PipelineConfig]) -> int:
        """
        Run every graph through start → await → shutdown and join them all.

        A start failure only affects its own graph. Returns once every
        graph thread has finished; an interrupt instead ends the process
        from inside the signal handler.

        Args:
            configs: Graphs to run, in launch order.

        Returns:
            :attr:`FleetConstants.EXIT_OK`, or :attr:`FleetConstants.EXIT_ALL_FAILED`
            when no graph could be started.

        Raises:
            ValueError: If two configs share a graph id.
        """
        configs = tuple(configs)
        ids = [c.graph_id for c in configs]
        if len(ids) != len(set(ids)):
            raise ValueError(f"graph ids must be unique within a run: {ids}")

        self._report = RunReport(
            outcomes={c.graph_id: PipelineOutcome(graph_id=c.graph_id) for c in configs}
        )
        with self._lock:
            self._supervisors = {c.graph_id: self._make_supervisor(c) for c in configs}

        _log.info("orchestrator", "run_start", {
            "graphs": ids,
            "poll_interval_ms": self._settings.poll_interval_ms,
            "expected_completions": self._settings.expected_completions,
        })

        # Handler goes in before any thread exists so no graph can start
        # polling ahead of it.
        previous = self._install_handler()
        try:
            threads = [
                threading.Thread(
                    target=self._run_one,
                    args=(supervisor,),
                    name=f"graph-{supervisor.graph_id}",
                    daemon=True,
                )
                for supervisor in self.supervisors.values()
            ]
            for t in threads:
                t.start()
            self._join_all(threads)
        finally:
            restore_handlers(previous)

        exit_code = self._report.exit_code
        _log.info("orchestrator", "run_done", {
            "started": self._report.started,
            "failed": self._report.failed,
            "exit_code": exit_code,
        })
        _log.flush()
        return exit_code

    def handle_interrupt(self, signum: int, frame: Any) -> None:
        """
        Signal handler: tear down every tracked graph and exit the process.

        Each supervisor's shutdown is isolated so one failing teardown
        cannot keep the others alive.
        """
        logger.warning("Caught signal %d — destroying all graphs", signum)
        first = self._signal.fire(signum)
        _log.critical("orchestrator", "interrupt", {"signum": signum, "first": first})

        for gid, supervisor in self.supervisors.items():
            try:
                supervisor.shutdown()
            except Exception as exc:  # noqa: BLE001
                _log.error("orchestrator", "interrupt_teardown_error", {
                    "graph_id": gid, "error": str(exc),
                })
            self._record_final_state(supervisor)

        _log.info("orchestrator", "interrupt_teardown_done", {
            "graphs": list(self.supervisors),
            "exit_code": self._settings.interrupt_exit_code,
        })
        _log.flush()
        sys.exit(self._settings.interrupt_exit_code)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _make_supervisor(self, config: PipelineConfig) -> PipelineSupervisor:
        return PipelineSupervisor(
            config,
            self._engine,
            self._signal,
            expected_completions=self._settings.expected_completions,
            payload_type=self._settings.payload_type,
            expected_payload_type=self._settings.completion_payload_class(),
            contexts=self._contexts,
            active=self._active,
        )

    def _install_handler(self) -> dict:
        try:
            return install_handlers(self.handle_interrupt, self._settings.signal_numbers())
        except ValueError as exc:
            # signal.signal only works on the main thread
            _log.warn("orchestrator", "signal_handler_unavailable", {"error": str(exc)})
            return {}

    def _run_one(self, supervisor: PipelineSupervisor) -> None:
        """Thread body: the full sequence for one graph."""
        gid = supervisor.graph_id
        outcome = self._report.outcomes[gid]
        settings = self._settings
        try:
            supervisor.start(
                settings.entry_port(gid),
                settings.terminal_ports(gid),
                settings.payload,
            )
        except LookupFailedError as exc:
            outcome.error = str(exc)
            _log.warn("orchestrator", "graph_lookup_failed", {"graph_id": gid, "error": str(exc)})
        except StartError as exc:
            outcome.error = str(exc)
            _log.error("orchestrator", "graph_start_failed", {"graph_id": gid, "error": str(exc)})
        except Exception as exc:  # noqa: BLE001
            outcome.error = f"unexpected: {exc}"
            logger.exception("graph-%d: unexpected error during start", gid)
        else:
            if supervisor.state is GraphState.AWAITING_COMPLETION:
                outcome.started = True
                outcome.reason = supervisor.await_completion(settings.poll_interval_s)
            else:
                # Interrupted during bring-up
                outcome.reason = CompletionReason.INTERRUPTED
        finally:
            supervisor.shutdown()
            self._record_final_state(supervisor)
            logger.info("[main] destroy graph-%d done", gid)

    def _join_all(self, threads: List[threading.Thread]) -> None:
        """Join with a timeout slice so the main thread keeps taking signals."""
        for t in threads:
            while t.is_alive():
                t.join(timeout=C.JOIN_INTERVAL_S)

    def _record_final_state(self, supervisor: PipelineSupervisor) -> None:
        outcome = self._report.outcomes.get(supervisor.graph_id)
        if outcome is not None:
            outcome.final_state = supervisor.state
