"""
graphfleet/engine/local.py — In-process reference pipeline engine.

Provides :class:`LocalGraphEngine`, a drop-in :class:`~graphfleet.engine.base.GraphEngine`
for running a fleet without vendor hardware. Graph descriptions are YAML:

.. code-block:: yaml

    graph_id: 100
    engines:
      - {id: 101, name: SrcEngine}
      - {id: 106, name: DestEngine, delay_ms: 5}
    connects:
      - {src_engine_id: 101, src_port_id: 0, target_engine_id: 106, target_port_id: 0}

Every stage runs on its own daemon thread with its own queue. Stages are
pass-through: a message arriving on input port *p* leaves on output port *p*,
after an optional ``delay_ms``. Output goes to connected stages and to any
receiver registered on ``(engine_id, port)``; receivers are called on the
stage thread, never on the caller's.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from graphfleet.core.config import PortAddress
from graphfleet.core.logger import get_logger
from graphfleet.engine.base import DataReceiver, EngineStatus

logger = logging.getLogger(__name__)
_log = get_logger()

# Seconds to wait for a stage thread to drain on destroy
_STAGE_JOIN_TIMEOUT_S: float = 2.0

_STOP = object()


# ──────────────────────────────────────────────────────────────
# Graph description
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StageSpec:
    engine_id: int
    name: str = ""
    delay_ms: float = 0.0


@dataclass(frozen=True)
class Connection:
    src_engine_id: int
    src_port_id: int
    target_engine_id: int
    target_port_id: int


@dataclass(frozen=True)
class GraphSpec:
    """Parsed and validated graph description."""

    graph_id: int
    stages: tuple[StageSpec, ...]
    connections: tuple[Connection, ...] = ()

    @classmethod
    def from_file(cls, path: Path | str) -> "GraphSpec":
        """
        Parse a YAML graph description.

        Raises:
            FileNotFoundError: If *path* does not exist.
            ValueError: If the description is malformed.
        """
        with Path(path).open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Any) -> "GraphSpec":
        if not isinstance(raw, dict):
            raise ValueError(f"Graph description must be a mapping, got: {type(raw)}")
        try:
            stages = tuple(
                StageSpec(
                    engine_id=int(item["id"]),
                    name=str(item.get("name", "")),
                    delay_ms=float(item.get("delay_ms", 0.0)),
                )
                for item in raw.get("engines") or []
            )
            connections = tuple(
                Connection(
                    src_engine_id=int(item["src_engine_id"]),
                    src_port_id=int(item.get("src_port_id", 0)),
                    target_engine_id=int(item["target_engine_id"]),
                    target_port_id=int(item.get("target_port_id", 0)),
                )
                for item in raw.get("connects") or []
            )
            spec = cls(graph_id=int(raw["graph_id"]), stages=stages, connections=connections)
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed graph description: {exc!r}") from exc
        spec.validate()
        return spec

    def validate(self) -> None:
        """Check engine ids are unique and every connection endpoint exists."""
        if not self.stages:
            raise ValueError(f"graph {self.graph_id} declares no engines")
        ids = [s.engine_id for s in self.stages]
        if len(ids) != len(set(ids)):
            raise ValueError(f"graph {self.graph_id} has duplicate engine ids: {ids}")
        known = set(ids)
        for conn in self.connections:
            for endpoint in (conn.src_engine_id, conn.target_engine_id):
                if endpoint not in known:
                    raise ValueError(
                        f"graph {self.graph_id} connects unknown engine {endpoint}"
                    )


# ──────────────────────────────────────────────────────────────
# Runtime
# ──────────────────────────────────────────────────────────────

class _Stage:
    """One engine of a running graph: a queue plus the thread draining it."""

    def __init__(self, graph: "LocalGraph", spec: StageSpec) -> None:
        self._graph = graph
        self._spec = spec
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(
            target=self._run,
            name=f"engine-{graph.graph_id}-{spec.engine_id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def deliver(self, port_id: int, payload: Any) -> None:
        self._queue.put((port_id, payload))

    def stop(self, timeout: float) -> None:
        self._queue.put(_STOP)
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            port_id, payload = item
            if self._spec.delay_ms > 0:
                time.sleep(self._spec.delay_ms / 1000.0)
            try:
                self._graph.route(self._spec.engine_id, port_id, payload)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Stage %d of graph %d failed to route: %s",
                    self._spec.engine_id, self._graph.graph_id, exc, exc_info=True,
                )


class LocalGraph:
    """A running graph; satisfies :class:`~graphfleet.engine.base.GraphHandle`."""

    def __init__(self, spec: GraphSpec) -> None:
        self._spec = spec
        self._lock = threading.Lock()
        self._closed = False
        self._stages = {s.engine_id: _Stage(self, s) for s in spec.stages}
        self._links: dict[tuple[int, int], list[tuple[int, int]]] = defaultdict(list)
        for conn in spec.connections:
            self._links[(conn.src_engine_id, conn.src_port_id)].append(
                (conn.target_engine_id, conn.target_port_id)
            )
        self._receivers: dict[tuple[int, int], list[DataReceiver]] = defaultdict(list)

    @property
    def graph_id(self) -> int:
        return self._spec.graph_id

    @property
    def engine_ids(self) -> tuple[int, ...]:
        return tuple(self._stages)

    def start(self) -> None:
        for stage in self._stages.values():
            stage.start()

    def stop(self, timeout: float = _STAGE_JOIN_TIMEOUT_S) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._receivers.clear()
        for stage in self._stages.values():
            stage.stop(timeout)

    def set_data_receiver(self, port: PortAddress, receiver: DataReceiver) -> None:
        """
        Raises:
            ValueError: If *port* is outside this graph or names an unknown engine.
        """
        self._check_port(port)
        with self._lock:
            self._receivers[(port.engine_id, port.port_id)].append(receiver)

    def send_data(self, port: PortAddress, type_tag: str, payload: Any) -> EngineStatus:
        try:
            self._check_port(port)
        except ValueError as exc:
            _log.error("engine", "send_rejected", {"port": str(port), "error": str(exc)})
            return EngineStatus.FAILED
        with self._lock:
            if self._closed:
                return EngineStatus.FAILED
        logger.debug("graph %d ← %s message on %s", self.graph_id, type_tag, port)
        self._stages[port.engine_id].deliver(port.port_id, payload)
        return EngineStatus.OK

    def route(self, engine_id: int, port_id: int, payload: Any) -> None:
        """Push one message out of ``(engine_id, port_id)``."""
        with self._lock:
            if self._closed:
                return
            receivers = list(self._receivers.get((engine_id, port_id), ()))
            targets = list(self._links.get((engine_id, port_id), ()))
        for receiver in receivers:
            try:
                receiver.on_receive(payload)
            except Exception as exc:  # noqa: BLE001
                _log.error("engine", "receiver_error", {
                    "graph_id": self.graph_id, "engine_id": engine_id, "error": str(exc),
                })
        for target_engine, target_port in targets:
            self._stages[target_engine].deliver(target_port, payload)

    def _check_port(self, port: PortAddress) -> None:
        if port.graph_id != self.graph_id:
            raise ValueError(f"port {port} does not belong to graph {self.graph_id}")
        if port.engine_id not in self._stages:
            raise ValueError(f"graph {self.graph_id} has no engine {port.engine_id}")


class LocalGraphEngine:
    """
    Process-wide registry of :class:`LocalGraph` instances.

    Context initialisation is tracked per id: the second call for the same id
    returns :attr:`EngineStatus.ALREADY_INITIALIZED`, mirroring hardware
    runtimes that refuse to re-open a device.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contexts: set[int] = set()
        self._graphs: dict[int, LocalGraph] = {}

    def init_context(self, context_id: int) -> EngineStatus:
        if context_id < 0:
            return EngineStatus.FAILED
        with self._lock:
            if context_id in self._contexts:
                return EngineStatus.ALREADY_INITIALIZED
            self._contexts.add(context_id)
        return EngineStatus.OK

    def create_graph(self, config_source: str) -> EngineStatus:
        try:
            spec = GraphSpec.from_file(config_source)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            _log.error("engine", "graph_parse_failed", {
                "source": config_source, "error": str(exc),
            })
            return EngineStatus.FAILED

        graph = LocalGraph(spec)
        with self._lock:
            if spec.graph_id in self._graphs:
                _log.error("engine", "graph_id_in_use", {
                    "source": config_source, "graph_id": spec.graph_id,
                })
                return EngineStatus.FAILED
            self._graphs[spec.graph_id] = graph
        graph.start()
        _log.info("engine", "graph_started", {
            "graph_id": spec.graph_id,
            "engines": list(graph.engine_ids),
            "source": config_source,
        })
        return EngineStatus.OK

    def get_graph(self, graph_id: int) -> Optional[LocalGraph]:
        with self._lock:
            return self._graphs.get(graph_id)

    def destroy_graph(self, graph_id: int) -> None:
        with self._lock:
            graph = self._graphs.pop(graph_id, None)
        if graph is None:
            return
        graph.stop()
        _log.info("engine", "graph_stopped", {"graph_id": graph_id})

    @property
    def graph_ids(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(self._graphs)
