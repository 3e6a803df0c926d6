"""
tests/test_orchestrator.py — Fleet fan-out / fan-in and operator interrupts.
"""

from __future__ import annotations

import os
import signal
import threading
from dataclasses import replace
from typing import Any

import pytest

from conftest import FakeEngine, make_configs
from graphfleet.core.config import FleetConfig
from graphfleet.core.constants import CompletionReason, GraphState
from graphfleet.core.constants import FleetConstants as C
from graphfleet.pipeline import orchestrator as orchestrator_module
from graphfleet.pipeline import supervisor as supervisor_module
from graphfleet.pipeline.orchestrator import Orchestrator
from graphfleet.pipeline.registry import ActiveGraphs, ContextRegistry


def _orchestrator(engine: FakeEngine, settings: FleetConfig, **kwargs: Any) -> Orchestrator:
    kwargs.setdefault("contexts", ContextRegistry())
    kwargs.setdefault("active", ActiveGraphs())
    return Orchestrator(engine, settings, **kwargs)


# ──────────────────────────────────────────────────────────────
# Normal runs
# ──────────────────────────────────────────────────────────────

class TestRun:

    def test_all_graphs_complete(self, engine: FakeEngine, settings: FleetConfig, configs) -> None:
        orch = _orchestrator(engine, settings)
        assert orch.run(configs) == C.EXIT_OK

        report = orch.report
        assert report.started == [100, 101, 102, 103]
        assert report.failed == []
        for outcome in report.outcomes.values():
            assert outcome.reason is CompletionReason.COMPLETED
            assert outcome.final_state is GraphState.DESTROYED
        assert sorted(engine.destroy_calls) == [100, 101, 102, 103]
        assert sorted(engine.init_calls) == [0, 1, 2, 3]

    def test_one_create_failure_does_not_stop_the_others(
        self, engine: FakeEngine, settings: FleetConfig, configs
    ) -> None:
        engine.fail_create.add("graph-102")
        orch = _orchestrator(engine, settings)

        assert orch.run(configs) == C.EXIT_OK

        report = orch.report
        assert report.failed == [102]
        assert report.started == [100, 101, 103]
        assert "graph-102" in report.outcomes[102].error
        assert report.outcomes[102].reason is None
        assert all(o.final_state is GraphState.DESTROYED for o in report.outcomes.values())

    def test_lookup_failure_is_reported(self, engine: FakeEngine, settings: FleetConfig, configs) -> None:
        engine.hidden.add(101)
        orch = _orchestrator(engine, settings)
        assert orch.run(configs) == C.EXIT_OK
        assert orch.report.failed == [101]

    def test_every_graph_failing_exits_nonzero(
        self, engine: FakeEngine, settings: FleetConfig, configs
    ) -> None:
        engine.fail_init.update({0, 1, 2, 3})
        orch = _orchestrator(engine, settings)
        assert orch.run(configs) == C.EXIT_ALL_FAILED
        assert orch.report.started == []
        assert orch.report.failed == [100, 101, 102, 103]

    def test_unexpected_engine_exception_is_contained(
        self, engine: FakeEngine, settings: FleetConfig, configs
    ) -> None:
        engine.raise_create.add("graph-100")
        orch = _orchestrator(engine, settings)
        assert orch.run(configs) == C.EXIT_OK
        assert orch.report.failed == [100]

    def test_duplicate_graph_ids_rejected(self, engine: FakeEngine, settings: FleetConfig) -> None:
        configs = make_configs(2) + make_configs(1)
        with pytest.raises(ValueError, match="unique"):
            _orchestrator(engine, settings).run(configs)
        assert engine.create_calls == []

    def test_extra_outputs_still_complete(self, engine: FakeEngine, settings: FleetConfig, configs) -> None:
        engine.default_replies = 3
        orch = _orchestrator(engine, settings)
        assert orch.run(configs) == C.EXIT_OK
        assert all(o.reason is CompletionReason.COMPLETED for o in orch.report.outcomes.values())

    def test_expected_completions_from_settings(self, engine: FakeEngine, configs) -> None:
        engine.default_replies = 2
        settings = FleetConfig(poll_interval_ms=5.0, expected_completions=2)
        orch = _orchestrator(engine, settings)
        assert orch.run(configs) == C.EXIT_OK
        for sup in orch.supervisors.values():
            assert sup.pending.drained is True

    def test_completion_payload_type_from_settings(self, engine: FakeEngine, configs) -> None:
        engine.reply_payload = b"raw"
        settings = FleetConfig(poll_interval_ms=5.0, completion_payload_type="string")
        orch = _orchestrator(engine, settings)
        # A mismatched type is logged and still counted
        assert orch.run(configs) == C.EXIT_OK
        for sup in orch.supervisors.values():
            assert [s.expected_type for s in sup.sinks] == [str]
            assert sup.pending.drained is True

    def test_defaults_to_process_wide_registries(
        self, engine: FakeEngine, settings: FleetConfig, configs, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        shared_active, shared_contexts = ActiveGraphs(), ContextRegistry()
        monkeypatch.setattr(supervisor_module, "_ACTIVE", shared_active)
        monkeypatch.setattr(supervisor_module, "_CONTEXTS", shared_contexts)
        # Another orchestrator in this process is still running graph 100
        shared_active.claim(100)

        orch = Orchestrator(engine, settings)
        assert orch.run(configs) == C.EXIT_OK

        assert orch.report.failed == [100]
        assert 100 not in engine.destroy_calls
        assert 100 in shared_active.snapshot()
        assert all(cid in shared_contexts for cid in (1, 2, 3))

    def test_shared_context_initialised_once(self, engine: FakeEngine, settings: FleetConfig) -> None:
        configs = tuple(replace(c, context_id=0) for c in make_configs(4))
        assert _orchestrator(engine, settings).run(configs) == C.EXIT_OK
        assert engine.init_calls == [0]


# ──────────────────────────────────────────────────────────────
# Signal handler placement
# ──────────────────────────────────────────────────────────────

class TestHandlerInstallation:

    def test_handler_installed_before_any_graph_thread(
        self, engine: FakeEngine, settings: FleetConfig, configs, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seen: dict[str, Any] = {}
        real_install = orchestrator_module.install_handlers

        def _spy(handler, signals):
            seen["graph_threads"] = [
                t.name for t in threading.enumerate() if t.name.startswith("graph-")
            ]
            seen["init_calls"] = list(engine.init_calls)
            seen["signals"] = tuple(signals)
            return real_install(handler, signals)

        monkeypatch.setattr(orchestrator_module, "install_handlers", _spy)
        _orchestrator(engine, settings).run(configs)

        assert seen["graph_threads"] == []
        assert seen["init_calls"] == []
        assert seen["signals"] == (signal.SIGINT, signal.SIGTERM)

    def test_previous_handlers_restored(self, engine: FakeEngine, settings: FleetConfig, configs) -> None:
        before = (signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM))
        _orchestrator(engine, settings).run(configs)
        assert (signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM)) == before

    def test_runs_off_the_main_thread_without_handlers(
        self, engine: FakeEngine, settings: FleetConfig, configs
    ) -> None:
        result: dict[str, int] = {}

        def _body() -> None:
            result["code"] = _orchestrator(engine, settings).run(configs)

        t = threading.Thread(target=_body)
        t.start()
        t.join(timeout=10.0)
        assert result["code"] == C.EXIT_OK


# ──────────────────────────────────────────────────────────────
# Operator interrupt
# ──────────────────────────────────────────────────────────────

class TestInterrupt:

    def _interrupt_after(self, delay: float, signum: int = signal.SIGINT) -> threading.Timer:
        timer = threading.Timer(delay, os.kill, (os.getpid(), signum))
        timer.start()
        return timer

    def test_sigint_destroys_every_graph_and_exits(
        self, engine: FakeEngine, settings: FleetConfig, configs
    ) -> None:
        engine.default_replies = 0
        orch = _orchestrator(engine, settings)
        self._interrupt_after(0.2)

        with pytest.raises(SystemExit) as exc_info:
            orch.run(configs)

        assert exc_info.value.code == settings.interrupt_exit_code
        assert orch.shutdown_signal.is_set()
        assert orch.shutdown_signal.signum == signal.SIGINT
        assert sorted(engine.destroy_calls) == [100, 101, 102, 103]
        for sup in orch.supervisors.values():
            assert sup.state is GraphState.DESTROYED
            assert "INTERRUPTED" in [r["to"] for r in sup.history()]
        assert all(o.final_state is GraphState.DESTROYED for o in orch.report.outcomes.values())

    def test_sigterm_uses_configured_exit_code(self, engine: FakeEngine, configs) -> None:
        engine.default_replies = 0
        settings = FleetConfig(poll_interval_ms=5.0, interrupt_exit_code=130)
        orch = _orchestrator(engine, settings)
        self._interrupt_after(0.2, signal.SIGTERM)

        with pytest.raises(SystemExit) as exc_info:
            orch.run(configs)
        assert exc_info.value.code == 130

    def test_failing_teardown_does_not_block_the_rest(
        self, engine: FakeEngine, settings: FleetConfig, configs
    ) -> None:
        engine.default_replies = 0
        engine.raise_destroy.add(101)
        orch = _orchestrator(engine, settings)
        self._interrupt_after(0.2)

        with pytest.raises(SystemExit):
            orch.run(configs)

        assert sorted(engine.destroy_calls) == [100, 101, 102, 103]
        assert all(s.state is GraphState.DESTROYED for s in orch.supervisors.values())

    def test_handler_destroys_each_graph_once(
        self, engine: FakeEngine, settings: FleetConfig, configs
    ) -> None:
        engine.default_replies = 0
        orch = _orchestrator(engine, settings)
        self._interrupt_after(0.2)
        with pytest.raises(SystemExit):
            orch.run(configs)
        # Graph threads finish their own (no-op) shutdown after the handler
        for t in threading.enumerate():
            if t.name.startswith("graph-"):
                t.join(timeout=2.0)
        assert sorted(engine.destroy_calls) == [100, 101, 102, 103]
