# managers/autosave.py
"""Debounced autosave engine with structured logging and metrics.

This module exposes :class:`AutoSaveEngine` which reconciles locally mutated
board state with the remote store.  Every observed snapshot is fingerprinted;
real changes are backed up to durable local storage immediately and saved once
editing goes quiet for ``debounce_ms``.  At most one save is in flight at any
time: changes that arrive meanwhile set a queued flag that is consumed as soon
as the running save resolves.

Failed saves retry with increasing backoff.  Once retries are exhausted the
status turns to ``error`` while the backup and the change log are kept for
recovery.  All operations emit structured logs carrying a correlation
identifier (``cid``) per save cycle, and each engine records success, retry
and failure counts in its :class:`SaveMetrics`.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from PySide6.QtCore import QObject, Signal

from ..config import AutosaveSettings
from ..errors import BackupError, PayloadTooLargeError
from ..scheduling import QtScheduler, Scheduler, TimerHandle
from ..serialization.fingerprint import fingerprint, payload_size
from ..workers import QtTaskRunner, TaskRunner
from .backup import BackupRecord, DurableBackupStore, KeyValueStorage, MemoryStorage
from .changes import ChangeTracker

LOGGER = logging.getLogger(__name__)

SnapshotSaver = Callable[[Any], Any]
PatchSaver = Callable[[List[Dict[str, Any]]], Any]


class SaveStatus(str, enum.Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class SaveMetrics:
    """Simple in-memory metrics collector."""

    def __init__(self) -> None:
        self.counters: Counter[str] = Counter()
        self.durations: list[float] = []

    def record(self, name: str, duration: float | None = None) -> None:
        self.counters[name] += 1
        if duration is not None:
            self.durations.append(duration)


class _CycleLogAdapter(logging.LoggerAdapter):
    """Injects the cycle context into records, keeping per-call ``extra`` fields."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


class AutosaveSignals(QObject):
    """Signals exposed by :class:`AutoSaveEngine`."""

    status_changed = Signal(str)
    saved = Signal(str)
    failed = Signal(str)


@dataclass
class _SaveCycle:
    """Holds state shared across the attempts of one save."""

    cid: str
    log: logging.LoggerAdapter
    snapshot: Any
    fingerprint: Optional[str]
    patches: Optional[List[Dict[str, Any]]]
    started: float
    reason: str
    attempt: int = 1

    @property
    def mode(self) -> str:
        return "full" if self.patches is None else "incremental"


class AutoSaveEngine:
    """Saves board snapshots after editing settles, one save at a time."""

    def __init__(
        self,
        save_snapshot: SnapshotSaver,
        settings: AutosaveSettings,
        *,
        save_patches: Optional[PatchSaver] = None,
        tracker: Optional[ChangeTracker] = None,
        backup: Optional[DurableBackupStore] = None,
        storage: Optional[KeyValueStorage] = None,
        scheduler: Optional[Scheduler] = None,
        runner: Optional[TaskRunner] = None,
    ) -> None:
        self.settings = settings
        self._save_snapshot = save_snapshot
        self._save_patches = save_patches
        self.tracker = tracker
        self.backup = backup or DurableBackupStore(
            storage or MemoryStorage(), settings.backup_storage_key
        )
        self._scheduler = scheduler or QtScheduler()
        self._runner = runner or QtTaskRunner()
        self.signals = AutosaveSignals()
        self.metrics = SaveMetrics()

        self._enabled = settings.enabled
        self._closed = False
        self._status = SaveStatus.IDLE
        self._initialized = False
        self._baseline: Optional[str] = None
        self._latest: Any = None
        self._latest_fp: Optional[str] = None
        self._backup_fp: Optional[str] = None
        self._has_unsaved = False
        self._in_flight = False
        self._queued = False
        self._force_full = False
        self._last_finished: Optional[float] = None
        self._last_saved: Optional[datetime] = None
        self._last_error: Optional[BaseException] = None

        self._debounce_handle: Optional[TimerHandle] = None
        self._retry_handle: Optional[TimerHandle] = None
        self._status_handle: Optional[TimerHandle] = None

    # -- public state ----------------------------------------------------

    @property
    def status(self) -> SaveStatus:
        return self._status

    @property
    def has_unsaved_changes(self) -> bool:
        return self._has_unsaved

    @property
    def is_saving(self) -> bool:
        return self._in_flight

    @property
    def is_scheduled(self) -> bool:
        return self._debounce_handle is not None and self._debounce_handle.active

    @property
    def last_saved(self) -> Optional[datetime]:
        return self._last_saved

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Gate the engine; disabling drops a pending debounce timer."""
        self._enabled = bool(enabled)
        if not self._enabled:
            self._cancel_debounce()

    def load_backup(self) -> Optional[BackupRecord]:
        """Return the stashed unsaved snapshot for a recovery UI."""
        return self.backup.load()

    # -- inputs ----------------------------------------------------------

    def observe(self, snapshot: Any) -> None:
        """Feed the latest document state into the engine.

        The first observation only establishes the baseline.  Later snapshots
        whose fingerprint differs from the last saved one are backed up at once
        and (re)arm the debounce timer.
        """
        if not self._enabled or self._closed:
            return

        current = fingerprint(snapshot)
        if not self._initialized:
            self._initialized = True
            self._baseline = current
            self._latest = snapshot
            self._latest_fp = current
            LOGGER.debug("autosave baseline established", extra={"key": self.backup.key})
            return

        self._latest = snapshot
        self._latest_fp = current
        if current == self._baseline:
            self._cancel_debounce()
            self._has_unsaved = False
            return

        self._write_backup(snapshot, current, LOGGER)
        self._has_unsaved = True
        self._arm_debounce()

    def trigger_save(self) -> None:
        """Save now, bypassing the debounce delay but not the single-flight guard.

        Explicit requests are not held back by ``min_inter_save_gap_ms``; the gap
        only spaces out debounced and follow-up saves.
        """
        if self._closed:
            return
        self._cancel_debounce()
        self._flush("manual")

    def on_foreground(self) -> bool:
        """Flush immediately when the workspace is shown again with unsaved work.

        Returns whether a flush was requested.  A save already in flight is not
        waited for; the request is queued behind it instead.  Like
        :meth:`trigger_save` it does not wait out the minimum gap.
        """
        if not self._enabled or self._closed or not self._has_unsaved:
            return False
        LOGGER.info("workspace foregrounded with unsaved changes", extra={"key": self.backup.key})
        self._cancel_debounce()
        self._flush("foreground")
        return True

    def close(self) -> None:
        """Cancel every timer owned by the engine."""
        self._closed = True
        self._cancel_debounce()
        for handle in (self._retry_handle, self._status_handle):
            if handle is not None:
                handle.cancel()
        self._retry_handle = None
        self._status_handle = None

    # -- scheduling ------------------------------------------------------

    def _cancel_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def _arm_debounce(self, delay_ms: Optional[float] = None) -> None:
        self._cancel_debounce()
        delay = self.settings.debounce_ms if delay_ms is None else delay_ms
        if self._last_finished is not None:
            gap_left = (
                self._last_finished
                + self.settings.min_inter_save_gap_ms
                - self._scheduler.now()
            )
            delay = max(delay, gap_left)
        self._debounce_handle = self._scheduler.call_later(delay, self._on_debounce)

    def _on_debounce(self) -> None:
        self._debounce_handle = None
        self._flush("debounce")

    def _flush(self, reason: str) -> None:
        if self._in_flight:
            self._queued = True
            LOGGER.debug("save in flight; queued", extra={"reason": reason})
            return
        if not self._initialized or self._latest_fp == self._baseline:
            self._has_unsaved = False
            return
        self._start_cycle(reason)

    # -- save cycle ------------------------------------------------------

    def _start_cycle(self, reason: str) -> None:
        cid = uuid.uuid4().hex
        log = _CycleLogAdapter(LOGGER, {"cid": cid, "key": self.backup.key})
        self._in_flight = True
        self._queued = False
        if self._status_handle is not None:
            self._status_handle.cancel()
            self._status_handle = None
        self._set_status(SaveStatus.SAVING)

        snapshot, current = self._latest, self._latest_fp
        if self._backup_fp != current:
            self._write_backup(snapshot, current, log)

        cycle = _SaveCycle(
            cid=cid,
            log=log,
            snapshot=snapshot,
            fingerprint=current,
            patches=self._select_patches(log),
            started=self._scheduler.now(),
            reason=reason,
        )
        log.info("autosave started", extra={"reason": reason, "mode": cycle.mode})
        if cycle.patches is None and not self._check_full_size(cycle):
            return
        self._attempt(cycle)

    def _select_patches(self, log: logging.LoggerAdapter) -> Optional[List[Dict[str, Any]]]:
        if self._save_patches is None or self.tracker is None:
            return None
        if self._force_full or not self.tracker.is_complete:
            log.info("change log incomplete; using full save")
            return None
        patches = self.tracker.merged_changes()
        if not 1 <= len(patches) <= self.settings.incremental_patch_bound:
            return None
        wire = [patch.to_payload() for patch in patches]
        try:
            size = payload_size(wire)
        except Exception as exc:  # noqa: BLE001
            log.warning("patches not serializable; using full save", extra={"error": str(exc)})
            return None
        if size > self.settings.max_payload_bytes:
            log.info("patches too large; using full save", extra={"size": size})
            self.metrics.record("fallback")
            return None
        return wire

    def _check_full_size(self, cycle: _SaveCycle) -> bool:
        try:
            size = payload_size(cycle.snapshot)
        except Exception:  # noqa: BLE001
            return True
        if size > self.settings.max_payload_bytes:
            self._fail(cycle, PayloadTooLargeError(size, self.settings.max_payload_bytes))
            return False
        return True

    def _attempt(self, cycle: _SaveCycle) -> None:
        self._retry_handle = None
        if cycle.patches is not None:
            patches = cycle.patches
            task = lambda: self._save_patches(patches)  # noqa: E731
        else:
            snapshot = cycle.snapshot
            task = lambda: self._save_snapshot(snapshot)  # noqa: E731
        cycle.log.debug(
            "autosave attempt",
            extra={"attempt": cycle.attempt, "mode": cycle.mode},
        )
        self._runner.submit(
            task,
            lambda _result: self._on_attempt_success(cycle),
            lambda exc: self._on_attempt_error(cycle, exc),
        )

    def _on_attempt_success(self, cycle: _SaveCycle) -> None:
        duration = self._scheduler.now() - cycle.started
        self.metrics.record("success", duration)
        self._baseline = cycle.fingerprint
        self._last_saved = datetime.now(timezone.utc)
        self._last_error = None

        superseded = self._latest_fp != cycle.fingerprint
        if self.tracker is not None:
            self.tracker.clear()
        # Records made while this save was running were just dropped
        self._force_full = superseded
        if superseded:
            self._has_unsaved = True
        else:
            self._has_unsaved = False
            self._clear_backup(cycle.log)

        cycle.log.info(
            "autosave complete",
            extra={"mode": cycle.mode, "attempt": cycle.attempt, "duration_ms": duration},
        )
        self._set_status(SaveStatus.SAVED)
        if not self._closed:
            self.signals.saved.emit(self._last_saved.isoformat())
        self._schedule_status_reset(SaveStatus.SAVED, self.settings.saved_display_ms)
        self._finish_cycle(follow_up=superseded)

    def _on_attempt_error(self, cycle: _SaveCycle, exc: BaseException) -> None:
        if cycle.patches is not None:
            cycle.log.warning(
                "incremental save failed; retrying with full snapshot",
                extra={"error": str(exc)},
            )
            self.metrics.record("fallback")
            cycle.patches = None
            if self._check_full_size(cycle):
                self._attempt(cycle)
            return

        if isinstance(exc, PayloadTooLargeError):
            self._fail(cycle, exc)
            return

        cycle.log.warning(
            "autosave attempt failed",
            extra={"attempt": cycle.attempt, "error": str(exc)},
        )
        if cycle.attempt > self.settings.max_retries or self._closed:
            self._fail(cycle, exc)
            return

        delay = cycle.attempt * self.settings.retry_base_delay_ms
        self.metrics.record("retry", self._scheduler.now() - cycle.started)
        cycle.attempt += 1
        self._retry_handle = self._scheduler.call_later(delay, lambda: self._attempt(cycle))

    def _fail(self, cycle: _SaveCycle, exc: BaseException) -> None:
        self.metrics.record("failure")
        cycle.log.error(
            "autosave failed after retries",
            extra={"attempt": cycle.attempt, "mode": cycle.mode, "error": str(exc)},
        )
        self._last_error = exc
        self._has_unsaved = True
        self._set_status(SaveStatus.ERROR)
        if not self._closed:
            self.signals.failed.emit(str(exc))
        self._schedule_status_reset(SaveStatus.ERROR, self.settings.error_display_ms)
        self._finish_cycle(follow_up=self._queued)

    def _finish_cycle(self, *, follow_up: bool) -> None:
        self._in_flight = False
        self._last_finished = self._scheduler.now()
        queued, self._queued = self._queued, False
        if self._closed or not self._enabled:
            return
        if (follow_up or queued) and self._latest_fp != self._baseline and not self.is_scheduled:
            self._arm_debounce(self.settings.min_inter_save_gap_ms)

    # -- helpers ---------------------------------------------------------

    def _write_backup(self, snapshot: Any, current: Optional[str], log) -> None:
        try:
            self.backup.save(snapshot)
        except BackupError as exc:
            self.metrics.record("backup_failure")
            log.error("backup write failed", extra={"key": self.backup.key, "error": str(exc)})
            return
        self._backup_fp = current

    def _clear_backup(self, log: logging.LoggerAdapter) -> None:
        try:
            self.backup.clear()
        except BackupError as exc:
            self.metrics.record("backup_failure")
            log.warning("backup cleanup failed", extra={"key": self.backup.key, "error": str(exc)})
            return
        self._backup_fp = None

    def _set_status(self, status: SaveStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if not self._closed:
            self.signals.status_changed.emit(status.value)

    def _schedule_status_reset(self, expected: SaveStatus, delay_ms: int) -> None:
        if self._closed:
            return
        if self._status_handle is not None:
            self._status_handle.cancel()

        def _reset() -> None:
            self._status_handle = None
            if self._status is expected:
                self._set_status(SaveStatus.IDLE)

        self._status_handle = self._scheduler.call_later(delay_ms, _reset)
