"""
graphfleet/pipeline/shutdown.py — Process-wide interrupt state.

:class:`ShutdownSignal` is a broadcast flag: once fired, every supervisor's
wait loop sees it on its next check. :func:`install_handlers` /
:func:`restore_handlers` wrap :func:`signal.signal` so the orchestrator can
put its handler in place before any graph thread exists and take it out
again afterwards.
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

SignalHandler = Callable[[int, object], None]


class ShutdownSignal:
    """
    Broadcast interrupt flag shared by every supervisor in the process.

    Only the first :meth:`fire` is recorded; later calls are no-ops.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._signum: Optional[int] = None

    @property
    def signum(self) -> Optional[int]:
        """Signal number that fired the flag, or ``None`` if fired manually."""
        return self._signum

    def is_set(self) -> bool:
        return self._event.is_set()

    def fire(self, signum: Optional[int] = None) -> bool:
        """
        Set the flag.

        Returns:
            True if this call fired it, False if it was already set.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._signum = signum
            self._event.set()
        return True

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds, waking early if the flag fires."""
        return self._event.wait(timeout)


def install_handlers(
    handler: SignalHandler,
    signals: Iterable[signal.Signals],
) -> dict[signal.Signals, object]:
    """
    Register *handler* for each of *signals*.

    Must run on the main thread. Returns the previous handlers so they can
    be put back with :func:`restore_handlers`.

    Raises:
        ValueError: If called from a thread other than the main thread.
    """
    previous: dict[signal.Signals, object] = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, handler)
        logger.debug("Installed handler for %s", sig.name)
    return previous


def restore_handlers(previous: dict[signal.Signals, object]) -> None:
    """Put back handlers saved by :func:`install_handlers`."""
    for sig, old in previous.items():
        try:
            # None means the old handler was not installed from Python
            signal.signal(sig, old if old is not None else signal.SIG_DFL)  # type: ignore[arg-type]
        except (ValueError, TypeError) as exc:
            logger.warning("Could not restore handler for %s: %s", sig.name, exc)
