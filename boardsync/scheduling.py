"""Timer abstractions used by the autosave engine and the caches.

Timers are never taken from ambient global state.  Components receive a
:class:`Scheduler` so production code can run on the Qt event loop through
:class:`QtScheduler` while tests drive a :class:`ManualScheduler` and advance
virtual time deterministically.
"""

from __future__ import annotations

import heapq
import itertools
import time
from typing import Callable, List, Optional, Protocol, Set, Tuple

from PySide6.QtCore import QObject, QTimer


class TimerHandle(Protocol):
    """A pending callback that can be cancelled."""

    @property
    def active(self) -> bool: ...

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Schedules callbacks on a single-threaded event loop."""

    def now(self) -> float:
        """Return a monotonic timestamp in milliseconds."""

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay_ms`` milliseconds."""


class _QtTimerHandle:
    def __init__(self, timer: QTimer, on_done: Callable[["_QtTimerHandle"], None]) -> None:
        self._timer: Optional[QTimer] = timer
        self._on_done = on_done

    @property
    def active(self) -> bool:
        return self._timer is not None and self._timer.isActive()

    def cancel(self) -> None:
        if self._timer is None:
            return
        self._timer.stop()
        self._release()

    def _release(self) -> None:
        if self._timer is not None:
            self._timer.deleteLater()
            self._timer = None
            self._on_done(self)


class QtScheduler:
    """Scheduler backed by single-shot :class:`QTimer` objects.

    Pending timers are owned by the scheduler, so callers may drop the
    returned handle when they never need to cancel.
    """

    def __init__(self, parent: Optional[QObject] = None) -> None:
        self.parent = parent
        self._pending: Set[_QtTimerHandle] = set()

    def now(self) -> float:
        return time.monotonic() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> _QtTimerHandle:
        timer = QTimer(self.parent)
        timer.setSingleShot(True)
        handle = _QtTimerHandle(timer, self._pending.discard)
        self._pending.add(handle)

        def _on_timeout() -> None:
            handle._release()
            callback()

        timer.timeout.connect(_on_timeout)
        timer.start(max(int(delay_ms), 0))
        return handle


class _ManualTimerHandle:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual-time scheduler.

    Nothing runs until :meth:`advance` is called.  Callbacks fire in due-time
    order (ties in scheduling order) and callbacks scheduled from within a
    callback fire in the same :meth:`advance` call if they fall due inside the
    advanced window.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)
        self._queue: List[Tuple[float, int, _ManualTimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> _ManualTimerHandle:
        handle = _ManualTimerHandle(self._now + max(float(delay_ms), 0.0), callback)
        heapq.heappush(self._queue, (handle.due, next(self._seq), handle))
        return handle

    def pending(self) -> int:
        """Return the number of callbacks still waiting to fire."""
        return sum(1 for _, _, handle in self._queue if handle.active)

    def advance(self, delay_ms: float) -> int:
        """Move the clock forward by ``delay_ms`` and fire due callbacks."""

        target = self._now + float(delay_ms)
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            if not handle.active:
                continue
            self._now = max(self._now, due)
            handle.fired = True
            handle.callback()
            fired += 1
        self._now = target
        return fired

    def run_pending(self) -> int:
        """Fire everything that is already due without moving the clock."""
        return self.advance(0)
