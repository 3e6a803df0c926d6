"""
graphfleet/pipeline/sink.py — Completion counting for one graph.

The engine calls :meth:`CompletionSink.on_receive` from its own worker
threads. Each sink decrements the :class:`PendingCount` of the graph that
owns it and nothing else, so graphs sharing a process never see each other's
output.
"""

from __future__ import annotations

import threading
from typing import Any, Optional

from graphfleet.core.config import PortAddress
from graphfleet.core.logger import get_logger

_log = get_logger()


class PendingCount:
    """
    Lock-protected countdown of outputs a graph still owes.

    The value may go below zero when a graph emits more than expected;
    :attr:`drained` stays true in that case.

    Args:
        initial: Outputs expected before the run counts as complete.
    """

    def __init__(self, initial: int = 1) -> None:
        self._lock = threading.Lock()
        self._value = initial

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    @property
    def drained(self) -> bool:
        """True once every expected output has arrived."""
        with self._lock:
            return self._value <= 0

    def decrement(self) -> int:
        """Count one arrival and return the remaining value."""
        with self._lock:
            self._value -= 1
            return self._value

    def __repr__(self) -> str:
        return f"PendingCount({self.value})"


class CompletionSink:
    """
    Receiver wired to one terminal port of one graph.

    Never blocks and never raises into the engine: a payload of the wrong
    type is logged and still counted, since only arrivals matter here.

    Args:
        port: Terminal port this sink is attached to.
        pending: The owning graph's counter.
        expected_type: Payload type to expect; ``None`` accepts anything
            except ``None`` itself.
    """

    def __init__(
        self,
        port: PortAddress,
        pending: PendingCount,
        expected_type: Optional[type] = None,
    ) -> None:
        self._port = port
        self._pending = pending
        self._expected_type = expected_type
        self._lock = threading.Lock()
        self._received = 0

    @property
    def port(self) -> PortAddress:
        return self._port

    @property
    def expected_type(self) -> Optional[type]:
        return self._expected_type

    @property
    def received(self) -> int:
        """Number of messages delivered to this sink so far."""
        with self._lock:
            return self._received

    def on_receive(self, payload: Any) -> None:
        with self._lock:
            self._received += 1
            seq = self._received

        if not self._payload_ok(payload):
            _log.warn("sink", "unexpected_payload", {
                "port": str(self._port),
                "payload_type": type(payload).__name__,
                "seq": seq,
            })

        remaining = self._pending.decrement()
        _log.info("sink", "output_received", {
            "graph_id": self._port.graph_id,
            "port": str(self._port),
            "remaining": remaining,
            "seq": seq,
        })
        if remaining < 0:
            _log.warn("sink", "extra_output", {
                "graph_id": self._port.graph_id,
                "remaining": remaining,
            })

    def _payload_ok(self, payload: Any) -> bool:
        if payload is None:
            return False
        if self._expected_type is None:
            return True
        return isinstance(payload, self._expected_type)
