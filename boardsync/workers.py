# workers.py
"""
Background task execution for remote saves.

Defines a Worker for QRunnable tasks and the task runners the autosave engine
uses to execute save callables without blocking the event loop.
"""
import logging
from typing import Any, Callable, Optional, Protocol, Set

from PySide6.QtCore import QObject, QRunnable, QThreadPool, Signal

LOGGER = logging.getLogger(__name__)

SuccessCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]


class WorkerSignals(QObject):
    started = Signal()
    finished = Signal()
    error = Signal(object)
    result = Signal(object)


class Worker(QRunnable):
    """Wraps any function to run in a QThreadPool."""
    def __init__(self, fn: Callable, *args, **kwargs):
        super().__init__()
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.signals = WorkerSignals()

    def run(self) -> None:  # pragma: no cover - exercised via Qt signal wiring
        try:
            self.signals.started.emit()
            result = self.fn(*self.args, **self.kwargs)
        except Exception as exc:  # noqa: BLE001 - delivered to the caller via signal
            LOGGER.debug("Worker error: %s", exc)
            self.signals.error.emit(exc)
        else:
            self.signals.result.emit(result)
        finally:
            self.signals.finished.emit()


class TaskRunner(Protocol):
    """Executes a callable and reports its outcome through callbacks."""

    def submit(
        self,
        fn: Callable[[], Any],
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None: ...


class QtTaskRunner:
    """Runs tasks on a QThreadPool; outcomes arrive on the owning thread."""

    def __init__(self, pool: Optional[QThreadPool] = None) -> None:
        self.thread_pool = pool or QThreadPool.globalInstance()
        self._active: Set[Worker] = set()

    def submit(
        self,
        fn: Callable[[], Any],
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        worker = Worker(fn)
        worker.setAutoDelete(False)
        self._active.add(worker)
        worker.signals.result.connect(on_success)
        worker.signals.error.connect(on_error)
        worker.signals.finished.connect(lambda: self._active.discard(worker))
        self.thread_pool.start(worker)

    def wait_for_done(self, timeout_ms: int = -1) -> bool:
        """Block until queued workers finish (shutdown and tests only)."""
        return self.thread_pool.waitForDone(timeout_ms)


class InlineTaskRunner:
    """Runs tasks synchronously on the calling thread."""

    def submit(
        self,
        fn: Callable[[], Any],
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        try:
            result = fn()
        except Exception as exc:  # noqa: BLE001 - reported through on_error
            on_error(exc)
            return
        on_success(result)
