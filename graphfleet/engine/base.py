"""
graphfleet/engine/base.py — Contract between the orchestration layer and a
pipeline engine.

The engine owns graph topology, stage execution and its own worker threads.
The orchestration layer only needs the handful of calls below; any object
with these methods works, no ABC inheritance required.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from graphfleet.core.config import PortAddress


class EngineStatus(Enum):
    """Result code returned by engine calls."""

    OK = "OK"
    ALREADY_INITIALIZED = "ALREADY_INITIALIZED"
    FAILED = "FAILED"

    @property
    def ok(self) -> bool:
        return self is EngineStatus.OK


# ──────────────────────────────────────────────────────────────
# Protocols (duck-typed)
# ──────────────────────────────────────────────────────────────

@runtime_checkable
class DataReceiver(Protocol):
    """Target the engine calls, from its own thread, for each output message."""

    def on_receive(self, payload: Any) -> None:
        ...


@runtime_checkable
class GraphHandle(Protocol):
    """One running graph instance as seen by its supervisor."""

    @property
    def graph_id(self) -> int:
        ...

    def set_data_receiver(self, port: PortAddress, receiver: DataReceiver) -> None:
        """Deliver every future message leaving *port* to *receiver*."""
        ...

    def send_data(self, port: PortAddress, type_tag: str, payload: Any) -> EngineStatus:
        """Queue *payload* on the input *port*."""
        ...


@runtime_checkable
class GraphEngine(Protocol):
    """Process-wide engine entry points."""

    def init_context(self, context_id: int) -> EngineStatus:
        """Initialise the device / resource context *context_id*."""
        ...

    def create_graph(self, config_source: str) -> EngineStatus:
        """Build and start the graph described at *config_source*."""
        ...

    def get_graph(self, graph_id: int) -> Optional[GraphHandle]:
        """Return the running graph registered under *graph_id*, if any."""
        ...

    def destroy_graph(self, graph_id: int) -> None:
        """Stop and forget *graph_id*. Destroying an unknown id is a no-op."""
        ...
