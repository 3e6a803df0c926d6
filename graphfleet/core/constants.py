"""
graphfleet/core/constants.py — System constants for graphfleet.

Lifecycle enums plus a frozen dataclass of typed constant groups (engine
topology defaults, timing and process exit codes).
Call ``FleetConstants.validate(n)`` on startup to check host capacity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

import psutil

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Lifecycle states
# ──────────────────────────────────────────────────────────────

class GraphState(Enum):
    """All lifecycle states a supervised graph can occupy."""

    UNINITIALIZED = "UNINITIALIZED"
    CREATED = "CREATED"
    AWAITING_COMPLETION = "AWAITING_COMPLETION"
    COMPLETED = "COMPLETED"
    INTERRUPTED = "INTERRUPTED"
    FAILED = "FAILED"
    DESTROYED = "DESTROYED"


class CompletionReason(Enum):
    """Why :meth:`PipelineSupervisor.await_completion` returned."""

    COMPLETED = "COMPLETED"
    INTERRUPTED = "INTERRUPTED"


# ──────────────────────────────────────────────────────────────
# Frozen constants dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FleetConstants:
    """
    Frozen dataclass holding graphfleet system constants.

    Use the class attributes directly — do not instantiate this class.

    Example::

        from graphfleet.core.constants import FleetConstants as C

        print(C.POLL_INTERVAL_MS)   # 10.0
        C.validate(pipeline_count=4)
    """

    # ── Topology defaults ─────────────────────────────────────
    ENTRY_ENGINE_ID: ClassVar[int] = 101
    """Engine that receives the initial message in every graph."""

    TERMINAL_ENGINE_IDS: ClassVar[tuple[int, ...]] = (106,)
    """Leaf engines whose output port 0 is wired to a completion sink."""

    PORT_ID: ClassVar[int] = 0
    """Port used for both the entry message and the terminal receivers."""

    PAYLOAD_TYPE: ClassVar[str] = "string"
    """Type tag sent alongside the initial payload."""

    EXPECTED_COMPLETIONS: ClassVar[int] = 1
    """Outputs a graph must emit before its run counts as complete."""

    # ── Timing ────────────────────────────────────────────────
    POLL_INTERVAL_MS: ClassVar[float] = 10.0
    """Sleep between completion checks in each supervisor's wait loop."""

    JOIN_INTERVAL_S: ClassVar[float] = 0.2
    """Main-thread join slice; keeps signal delivery responsive."""

    # ── Exit codes ────────────────────────────────────────────
    EXIT_OK: ClassVar[int] = 0
    """At least one graph ran its full sequence."""

    EXIT_ALL_FAILED: ClassVar[int] = 1
    """No graph could be started."""

    EXIT_CONFIG_ERROR: ClassVar[int] = 2
    """Configuration could not be loaded or validated."""

    INTERRUPT_EXIT_CODE: ClassVar[int] = 0
    """Exit code after an operator interrupt tears the fleet down."""

    # ─────────────────────────────────────────────────────────
    @classmethod
    def validate(cls, pipeline_count: int) -> None:
        """
        Compare the requested fleet size against host capacity and log warnings.

        Does not raise — a fleet larger than the CPU count still runs, it
        just shares cores.

        Args:
            pipeline_count: Number of graphs about to be launched.
        """
        cls._check_cpus(pipeline_count)
        cls._check_ram()

    @classmethod
    def _check_cpus(cls, pipeline_count: int) -> None:
        """Warn when there are more graphs than logical CPUs."""
        cpus = psutil.cpu_count(logical=True) or 1
        if pipeline_count > cpus:
            logger.warning(
                "CPU warning: %d graphs requested on %d logical CPUs — "
                "supervisor threads will share cores.",
                pipeline_count, cpus,
            )
        else:
            logger.info("CPU OK: %d graphs on %d logical CPUs", pipeline_count, cpus)

    @classmethod
    def _check_ram(cls) -> None:
        """Log available system memory."""
        mem = psutil.virtual_memory()
        logger.info(
            "RAM: %.1f GB available / %.1f GB total",
            mem.available / (1024 ** 3), mem.total / (1024 ** 3),
        )


#: Convenience alias: ``from graphfleet.core.constants import C``
C = FleetConstants
