"""Shared fixtures: virtual time and controllable save runners."""
from __future__ import annotations

import os
from typing import Any, Callable, List

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from boardsync.scheduling import ManualScheduler  # noqa: E402


class ScheduledRunner:
    """Task runner whose tasks complete ``latency_ms`` after submission.

    The task body runs at completion time so tests can model a slow remote
    call on the virtual clock.
    """

    def __init__(self, scheduler: ManualScheduler, latency_ms: float) -> None:
        self.scheduler = scheduler
        self.latency_ms = latency_ms
        self.submitted = 0
        self.in_flight = 0

    def submit(self, fn: Callable[[], Any], on_success, on_error) -> None:
        self.submitted += 1
        self.in_flight += 1

        def _complete() -> None:
            self.in_flight -= 1
            try:
                result = fn()
            except Exception as exc:  # noqa: BLE001 - forwarded like a real runner
                on_error(exc)
                return
            on_success(result)

        self.scheduler.call_later(self.latency_ms, _complete)


class RecordingSaver:
    """Callable save function that records payloads and can fail on demand."""

    def __init__(self, failures: int = 0, exc_factory: Callable[[], Exception] = None) -> None:
        self.failures = failures
        self.exc_factory = exc_factory or (lambda: OSError("network down"))
        self.calls: List[Any] = []

    def __call__(self, payload: Any) -> bool:
        self.calls.append(payload)
        if self.failures < 0 or len(self.calls) <= self.failures:
            raise self.exc_factory()
        return True


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def slow_runner_factory(scheduler: ManualScheduler) -> Callable[[float], ScheduledRunner]:
    def _factory(latency_ms: float) -> ScheduledRunner:
        return ScheduledRunner(scheduler, latency_ms)

    return _factory


@pytest.fixture()
def saver_factory() -> Callable[..., RecordingSaver]:
    return RecordingSaver

