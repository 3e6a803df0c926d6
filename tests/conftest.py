"""
tests/conftest.py — Shared fixtures and engine doubles for graphfleet tests.

The run log is pointed at a throwaway directory before any graphfleet
module is imported, so no test writes into the working tree.
"""

from __future__ import annotations

import os
import tempfile

os.environ.setdefault("GRAPHFLEET_LOG_DIR", tempfile.mkdtemp(prefix="graphfleet-test-logs-"))

import threading  # noqa: E402
import time  # noqa: E402
from collections import defaultdict  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import Any, Optional  # noqa: E402

import pytest  # noqa: E402

from graphfleet.core.config import FleetConfig, PipelineConfig, PortAddress  # noqa: E402
from graphfleet.engine.base import EngineStatus  # noqa: E402
from graphfleet.pipeline.registry import ActiveGraphs, ContextRegistry  # noqa: E402
from graphfleet.pipeline.shutdown import ShutdownSignal  # noqa: E402


# ──────────────────────────────────────────────────────────────
# Engine doubles
# ──────────────────────────────────────────────────────────────

def graph_source(graph_id: int) -> str:
    """Config source string the fake engine maps back to *graph_id*."""
    return f"graph-{graph_id}"


class FakeGraph:
    """
    Graph handle that answers each input with ``replies`` outputs, delivered
    from a separate thread the way a real engine would.
    """

    def __init__(self, engine: "FakeEngine", graph_id: int) -> None:
        self._engine = engine
        self._graph_id = graph_id
        self.receivers: dict[PortAddress, list[Any]] = defaultdict(list)
        self.sent: list[tuple[PortAddress, str, Any]] = []

    @property
    def graph_id(self) -> int:
        return self._graph_id

    def set_data_receiver(self, port: PortAddress, receiver: Any) -> None:
        if self._graph_id in self._engine.fail_wire:
            raise ValueError(f"no engine {port.engine_id}")
        self.receivers[port].append(receiver)

    def send_data(self, port: PortAddress, type_tag: str, payload: Any) -> EngineStatus:
        self.sent.append((port, type_tag, payload))
        if self._graph_id in self._engine.fail_send:
            return EngineStatus.FAILED
        replies = self._engine.replies.get(self._graph_id, self._engine.default_replies)
        if replies:
            threading.Thread(
                target=self._reply, args=(replies,), daemon=True,
                name=f"fake-engine-{self._graph_id}",
            ).start()
        return EngineStatus.OK

    def emit(self, payload: Any = "done") -> None:
        """Deliver one output to every registered receiver, synchronously."""
        for receivers in list(self.receivers.values()):
            for receiver in receivers:
                receiver.on_receive(payload)

    def _reply(self, count: int) -> None:
        time.sleep(self._engine.reply_delay_s)
        for _ in range(count):
            self.emit(self._engine.reply_payload)


class FakeEngine:
    """
    Scriptable :class:`~graphfleet.engine.base.GraphEngine` double.

    Failure switches are sets of context ids, sources or graph ids; every
    call is recorded for assertions.
    """

    def __init__(
        self,
        *,
        default_replies: int = 1,
        reply_delay_s: float = 0.01,
        reply_payload: Any = "done",
    ) -> None:
        self.default_replies = default_replies
        self.reply_delay_s = reply_delay_s
        self.reply_payload = reply_payload
        self.replies: dict[int, int] = {}

        self.fail_init: set[int] = set()
        self.already_initialized: set[int] = set()
        self.fail_create: set[str] = set()
        self.raise_create: set[str] = set()
        self.hidden: set[int] = set()
        self.fail_wire: set[int] = set()
        self.fail_send: set[int] = set()
        self.raise_destroy: set[int] = set()

        self._lock = threading.Lock()
        self.graphs: dict[int, FakeGraph] = {}
        self.init_calls: list[int] = []
        self.create_calls: list[str] = []
        self.destroy_calls: list[int] = []

    def init_context(self, context_id: int) -> EngineStatus:
        with self._lock:
            self.init_calls.append(context_id)
        if context_id in self.fail_init:
            return EngineStatus.FAILED
        if context_id in self.already_initialized:
            return EngineStatus.ALREADY_INITIALIZED
        return EngineStatus.OK

    def create_graph(self, config_source: str) -> EngineStatus:
        with self._lock:
            self.create_calls.append(config_source)
        if config_source in self.raise_create:
            raise RuntimeError("engine crashed")
        if config_source in self.fail_create:
            return EngineStatus.FAILED
        graph_id = int(config_source.rsplit("-", 1)[1])
        with self._lock:
            self.graphs[graph_id] = FakeGraph(self, graph_id)
        return EngineStatus.OK

    def get_graph(self, graph_id: int) -> Optional[FakeGraph]:
        if graph_id in self.hidden:
            return None
        with self._lock:
            return self.graphs.get(graph_id)

    def destroy_graph(self, graph_id: int) -> None:
        with self._lock:
            self.destroy_calls.append(graph_id)
            self.graphs.pop(graph_id, None)
        if graph_id in self.raise_destroy:
            raise RuntimeError(f"destroy of {graph_id} failed")


# ──────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────

def make_configs(count: int = 4, first_id: int = 100) -> tuple[PipelineConfig, ...]:
    return tuple(
        PipelineConfig(config_source=graph_source(first_id + n), graph_id=first_id + n, context_id=n)
        for n in range(count)
    )


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def shutdown_signal() -> ShutdownSignal:
    return ShutdownSignal()


@pytest.fixture()
def contexts() -> ContextRegistry:
    return ContextRegistry()


@pytest.fixture()
def active() -> ActiveGraphs:
    return ActiveGraphs()


@pytest.fixture()
def configs() -> tuple[PipelineConfig, ...]:
    """P0..P3 — graph ids 100..103 on contexts 0..3."""
    return make_configs(4)


@pytest.fixture()
def settings() -> FleetConfig:
    """Fleet settings with a short poll interval for fast tests."""
    return FleetConfig(poll_interval_ms=5.0)


@pytest.fixture()
def graph_dir(tmp_path: Path) -> Path:
    """Directory holding four three-stage graph descriptions for LocalGraphEngine."""
    graphs = tmp_path / "graphs"
    graphs.mkdir()
    for n in range(4):
        (graphs / f"graph{n}.yaml").write_text(
            f"graph_id: {100 + n}\n"
            "engines:\n"
            "  - {id: 101, name: SrcEngine}\n"
            "  - {id: 103, name: MidEngine}\n"
            "  - {id: 106, name: DestEngine}\n"
            "connects:\n"
            "  - {src_engine_id: 101, src_port_id: 0, target_engine_id: 103, target_port_id: 0}\n"
            "  - {src_engine_id: 103, src_port_id: 0, target_engine_id: 106, target_port_id: 0}\n",
            encoding="utf-8",
        )
    return graphs
