"""
graphfleet/core/logger.py — JSONL structured run log for graphfleet.

FleetLogger writes one JSON object per line to logs/graphfleet_{date}.jsonl,
rotating automatically each day. WARN/ERROR/CRITICAL are also mirrored
to Python stdlib logging (stderr). Thread-safe via threading.Lock; graph
threads, engine worker threads and the signal handler all write here.

Usage::

    from graphfleet.core.logger import get_logger
    log = get_logger()
    log.info("supervisor", "graph_created", {"graph_id": 100})
    log.perf("supervisor", "start_done", latency_ms=12.5, data={"graph_id": 100})
"""

from __future__ import annotations

import json
import logging
import os
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# ── stdlib mirror logger (stderr for WARN+) ──────────────────
_stdlib = logging.getLogger("graphfleet.run")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s — %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.DEBUG)
_stdlib.propagate = False

# ── Log directory (GRAPHFLEET_LOG_DIR overrides) ──────────────
_LOG_DIR = Path(os.environ.get("GRAPHFLEET_LOG_DIR", "logs"))

# ── Singleton storage ─────────────────────────────────────────
_instance: Optional["FleetLogger"] = None
_instance_lock = threading.Lock()


class FleetLogger:
    """
    Singleton JSONL structured logger.

    Fields written per entry:

    .. code-block:: json

        {
          "timestamp_iso": "2026-10-19T08:20:49.123456+00:00",
          "level": "INFO",
          "phase": "supervisor",
          "event": "graph_destroyed",
          "thread": "graph-100",
          "data": {"graph_id": 100},
          "latency_ms": 3.2
        }

    ``latency_ms`` is omitted when ``None``.

    Do not instantiate directly — use :func:`get_logger`.

    Args:
        log_dir: Directory receiving the daily ``.jsonl`` files.
    """

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir
        # Re-entrant: the interrupt handler may log while the main thread holds it
        self._lock = threading.RLock()
        self._file: Optional[Any] = None
        self._current_date: str = ""
        self._open_file()
        self._write_startup()

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    @property
    def current_path(self) -> Path:
        """Path of the file currently being appended to."""
        return self._log_dir / f"graphfleet_{self._current_date}.jsonl"

    # ──────────────────────────────────────────
    # Public logging methods
    # ──────────────────────────────────────────

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO-level structured log entry.

        Args:
            phase: Subsystem (e.g. ``'orchestrator'``, ``'supervisor'``).
            event: Short event identifier (e.g. ``'graph_created'``).
            data: Optional dict of additional key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a WARN-level entry and mirror it to stderr."""
        self._write("WARN", phase, event, data)
        _stdlib.warning("[%s] %s | %s", phase, event, data or {})

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write an ERROR-level entry and mirror it to stderr."""
        self._write("ERROR", phase, event, data)
        _stdlib.error("[%s] %s | %s", phase, event, data or {})

    def critical(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a CRITICAL-level entry and mirror it to stderr."""
        self._write("CRITICAL", phase, event, data)
        _stdlib.critical("[%s] %s | %s", phase, event, data or {})

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """
        Write a PERF-level entry for latency tracking.

        Args:
            phase: Subsystem the measurement belongs to.
            event: What was measured (e.g. ``'start_done'``).
            latency_ms: Measured latency in milliseconds.
            data: Optional additional context dict.
        """
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        """
        Flush the underlying file buffer immediately.

        Called by the interrupt handler before the process exits.
        """
        with self._lock:
            if self._file and not self._file.closed:
                self._file.flush()

    def retarget(self, log_dir: Path) -> None:
        """Close the current file and continue logging under *log_dir*."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
            self._log_dir = log_dir
            self._current_date = ""
            self._rotate_if_needed(datetime.now(tz=timezone.utc))
        self._write_startup()

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        """Serialise and append one JSON line, rotating on date change."""
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "thread": threading.current_thread().name,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._rotate_if_needed(now)
            if self._file and not self._file.closed:
                self._file.write(line + "\n")

    def _rotate_if_needed(self, now: datetime) -> None:
        """
        Open a new log file if the calendar date has changed.

        Called inside ``self._lock`` — do not call from outside.
        """
        today = now.strftime("%Y-%m-%d")
        if today != self._current_date:
            if self._file and not self._file.closed:
                self._file.close()
            self._current_date = today
            self._log_dir.mkdir(parents=True, exist_ok=True)
            self._file = open(self.current_path, "a", encoding="utf-8", buffering=1)  # noqa: WPS515

    def _open_file(self) -> None:
        now = datetime.now(tz=timezone.utc)
        with self._lock:
            self._rotate_if_needed(now)

    def _write_startup(self) -> None:
        """Write a startup entry with Python version, platform and pid."""
        self.info(
            phase="system",
            event="startup",
            data={
                "python_version": sys.version,
                "platform": platform.platform(),
                "hostname": platform.node(),
                "pid": os.getpid(),
            },
        )


# ──────────────────────────────────────────────────────────────
# Singleton accessor
# ──────────────────────────────────────────────────────────────

def get_logger() -> FleetLogger:
    """
    Return the singleton :class:`FleetLogger` instance.

    The first call creates the instance in the configured log directory;
    subsequent calls return the same object without taking the creation lock.
    """
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = FleetLogger(_LOG_DIR)
    return _instance


def configure(log_dir: Path | str) -> FleetLogger:
    """
    Point the run log at *log_dir*.

    The singleton is retargeted in place, so module-level ``_log = get_logger()``
    references keep working. The CLI calls this right after parsing
    ``--log-dir``; tests call it with a temporary directory.

    Returns:
        The application-wide :class:`FleetLogger`.
    """
    global _instance, _LOG_DIR
    with _instance_lock:
        _LOG_DIR = Path(log_dir)
        if _instance is None:
            _instance = FleetLogger(_LOG_DIR)
            return _instance
    if _instance.log_dir != _LOG_DIR:
        _instance.retarget(_LOG_DIR)
    return _instance
