"""Behavioural tests for the debounced autosave engine on virtual time."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import pytest

from boardsync.config import AutosaveSettings
from boardsync.errors import PayloadTooLargeError
from boardsync.managers.autosave import AutoSaveEngine, SaveStatus
from boardsync.managers.backup import DurableBackupStore, MemoryStorage
from boardsync.managers.changes import ChangeTracker
from boardsync.workers import InlineTaskRunner

KEY = "board-draft:test"


def _board(*node_ids: str) -> Dict[str, Any]:
    return {"nodes": [{"id": node_id} for node_id in node_ids], "edges": []}


def make_engine(
    scheduler,
    save,
    *,
    runner=None,
    storage: Optional[MemoryStorage] = None,
    save_patches=None,
    tracker: Optional[ChangeTracker] = None,
    **overrides: Any,
) -> AutoSaveEngine:
    settings = AutosaveSettings(backup_storage_key=KEY, **overrides)
    return AutoSaveEngine(
        save,
        settings,
        save_patches=save_patches,
        tracker=tracker,
        storage=storage or MemoryStorage(),
        scheduler=scheduler,
        runner=runner or InlineTaskRunner(),
    )


def test_first_observation_only_sets_baseline(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)

    engine.observe(_board("a"))
    scheduler.advance(10_000)

    assert saver.calls == []
    assert engine.load_backup() is None
    assert engine.status is SaveStatus.IDLE


def test_unchanged_fingerprint_never_saves(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)

    engine.observe({"edges": [], "nodes": [{"id": "a"}]})
    engine.observe(_board("a"))
    engine.observe(_board("a"))
    scheduler.advance(10_000)

    assert saver.calls == []
    assert not engine.has_unsaved_changes


def test_rapid_changes_coalesce_into_one_save(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    engine.observe(_board())

    ids: List[str] = []
    for index in range(5):
        ids.append(f"n{index}")
        engine.observe(_board(*ids))
        scheduler.advance(500)

    assert saver.calls == []
    scheduler.advance(2000)

    assert saver.calls == [_board(*ids)]
    assert engine.status is SaveStatus.SAVED


def test_backup_is_written_before_debounce_elapses(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    engine.observe(_board("a"))

    engine.observe(_board("a", "b"))

    record = engine.load_backup()
    assert record is not None
    assert record.data == _board("a", "b")
    assert record.version == "1.0"
    assert engine.has_unsaved_changes
    assert engine.is_scheduled


def test_reverting_to_saved_state_cancels_pending_save(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    engine.observe(_board("a"))
    engine.observe(_board("a", "b"))

    engine.observe(_board("a"))
    scheduler.advance(10_000)

    assert saver.calls == []
    assert not engine.has_unsaved_changes
    assert not engine.is_scheduled


def test_single_flight_saves_latest_state_after_slow_save(
    scheduler, saver_factory, slow_runner_factory
) -> None:
    saver = saver_factory()
    runner = slow_runner_factory(5000)
    engine = make_engine(scheduler, saver, runner=runner)
    engine.observe(_board())

    engine.observe(_board("a"))
    scheduler.advance(2000)  # first save in flight until t=7000
    assert engine.is_saving

    scheduler.advance(1000)
    engine.observe(_board("a", "b"))
    scheduler.advance(1000)
    engine.observe(_board("a", "b", "c"))
    scheduler.advance(2000)  # debounce fires at t=6000 while saving

    assert runner.submitted == 1
    assert runner.in_flight == 1

    scheduler.advance(20_000)

    assert saver.calls == [_board("a"), _board("a", "b", "c")]
    assert runner.submitted == 2
    assert not engine.is_saving
    assert engine.load_backup() is None


def test_exhausted_retries_preserve_backup(scheduler, saver_factory) -> None:
    saver = saver_factory(failures=-1)
    engine = make_engine(scheduler, saver)
    statuses: List[str] = []
    engine.signals.status_changed.connect(statuses.append)
    engine.observe(_board("a"))
    engine.observe(_board("a", "b"))

    scheduler.advance(2000)  # attempt 1
    assert len(saver.calls) == 1
    scheduler.advance(1000)  # attempt 2 after 1 * base delay
    assert len(saver.calls) == 2
    scheduler.advance(2000)  # attempt 3 after 2 * base delay

    assert len(saver.calls) == engine.settings.max_retries + 1
    assert engine.status is SaveStatus.ERROR
    assert isinstance(engine.last_error, OSError)
    assert engine.has_unsaved_changes
    record = engine.load_backup()
    assert record is not None and record.data == _board("a", "b")
    assert engine.metrics.counters["retry"] == 2
    assert engine.metrics.counters["failure"] == 1

    scheduler.advance(engine.settings.error_display_ms)
    assert engine.status is SaveStatus.IDLE
    assert statuses == ["saving", "error", "idle"]
    assert len(saver.calls) == 3


def test_transient_failure_recovers_on_retry(scheduler, saver_factory) -> None:
    saver = saver_factory(failures=1)
    engine = make_engine(scheduler, saver)
    engine.observe(_board())
    engine.observe(_board("a"))

    scheduler.advance(2000)
    assert engine.status is SaveStatus.SAVING
    scheduler.advance(1000)

    assert engine.status is SaveStatus.SAVED
    assert len(saver.calls) == 2
    assert engine.load_backup() is None
    assert engine.last_saved is not None
    assert engine.metrics.counters["retry"] == 1


def test_oversized_snapshot_fails_without_retrying(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver, max_payload_bytes=32)
    engine.observe(_board())

    big = {"nodes": [{"id": "n", "data": {"text": "x" * 200}}], "edges": []}
    engine.observe(big)
    scheduler.advance(2000)

    assert saver.calls == []
    assert engine.status is SaveStatus.ERROR
    assert isinstance(engine.last_error, PayloadTooLargeError)
    assert engine.metrics.counters["retry"] == 0
    assert engine.load_backup().data == big


def test_min_gap_between_saves(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver, debounce_ms=100, min_inter_save_gap_ms=1000)
    engine.observe(_board())

    engine.observe(_board("a"))
    scheduler.advance(150)  # saved at t=100
    assert len(saver.calls) == 1

    engine.observe(_board("a", "b"))
    scheduler.advance(900)
    assert len(saver.calls) == 1
    scheduler.advance(100)
    assert len(saver.calls) == 2


def test_foreground_flushes_immediately(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    engine.observe(_board())

    assert engine.on_foreground() is False

    engine.observe(_board("a"))
    assert engine.on_foreground() is True
    assert saver.calls == [_board("a")]
    assert not engine.is_scheduled


def test_trigger_save_respects_single_flight(
    scheduler, saver_factory, slow_runner_factory
) -> None:
    saver = saver_factory()
    runner = slow_runner_factory(5000)
    engine = make_engine(scheduler, saver, runner=runner)
    engine.observe(_board())

    engine.observe(_board("a"))
    engine.trigger_save()
    engine.observe(_board("a", "b"))
    engine.trigger_save()

    assert runner.submitted == 1
    scheduler.advance(5000)
    scheduler.advance(engine.settings.min_inter_save_gap_ms)
    assert runner.submitted == 2
    scheduler.advance(5000)

    assert saver.calls == [_board("a"), _board("a", "b")]


def test_disabled_engine_ignores_changes(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    engine.observe(_board())
    engine.observe(_board("a"))

    engine.set_enabled(False)
    engine.observe(_board("a", "b"))
    scheduler.advance(10_000)

    assert saver.calls == []
    assert not engine.is_scheduled


def test_close_cancels_pending_timers(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    engine.observe(_board())
    engine.observe(_board("a"))

    engine.close()
    scheduler.advance(10_000)

    assert saver.calls == []
    assert scheduler.pending() == 0


class _BrokenStorage(MemoryStorage):
    def set_item(self, key: str, value: str) -> None:
        raise OSError("disk full")


def test_backup_failure_does_not_block_save(scheduler, saver_factory, caplog) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver, storage=_BrokenStorage())
    engine.observe(_board())

    caplog.set_level(logging.ERROR, logger="boardsync")
    engine.observe(_board("a"))
    scheduler.advance(2000)

    assert saver.calls == [_board("a")]
    assert engine.metrics.counters["backup_failure"] >= 1
    assert any("backup write failed" in r.getMessage() for r in caplog.records)


def test_save_cycle_logs_carry_correlation_id(scheduler, saver_factory, caplog) -> None:
    saver = saver_factory(failures=1)
    engine = make_engine(scheduler, saver)
    engine.observe(_board())

    caplog.set_level(logging.INFO, logger="boardsync")
    engine.observe(_board("a"))
    scheduler.advance(3000)

    cycle_records = [r for r in caplog.records if hasattr(r, "cid")]
    assert cycle_records
    assert len({r.cid for r in cycle_records}) == 1
    failed = [r for r in cycle_records if r.getMessage() == "autosave attempt failed"]
    assert failed and failed[0].attempt == 1


def test_status_sequence_and_saved_signal(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    statuses: List[str] = []
    saved_at: List[str] = []
    engine.signals.status_changed.connect(statuses.append)
    engine.signals.saved.connect(saved_at.append)
    engine.observe(_board("a"))

    engine.observe(_board("a", "b"))
    scheduler.advance(2000)
    scheduler.advance(engine.settings.saved_display_ms)

    assert statuses == ["saving", "saved", "idle"]
    assert saved_at == [engine.last_saved.isoformat()]


def test_custom_backup_store_is_used(scheduler, saver_factory) -> None:
    storage = MemoryStorage()
    backup = DurableBackupStore(storage, "custom-key")
    engine = AutoSaveEngine(
        saver_factory(failures=-1),
        AutosaveSettings(backup_storage_key=KEY, max_retries=0),
        backup=backup,
        scheduler=scheduler,
        runner=InlineTaskRunner(),
    )
    engine.observe(_board())
    engine.observe(_board("a"))
    scheduler.advance(2000)

    assert storage.keys() == ["custom-key"]
    assert engine.status is SaveStatus.ERROR


@pytest.mark.parametrize("max_retries", [0, 1, 3])
def test_attempt_count_follows_max_retries(scheduler, saver_factory, max_retries) -> None:
    saver = saver_factory(failures=-1)
    engine = make_engine(scheduler, saver, max_retries=max_retries, retry_base_delay_ms=10)
    engine.observe(_board())
    engine.observe(_board("a"))

    scheduler.advance(10_000)

    assert len(saver.calls) == max_retries + 1
    assert engine.status is SaveStatus.IDLE


class _DisposedCard:
    def to_payload(self) -> Dict[str, Any]:
        raise AttributeError("card was disposed")


def test_snapshot_that_fails_to_encode_does_not_wedge_saving(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver)
    engine.observe(_board())

    broken = {"nodes": [_DisposedCard()], "edges": []}
    engine.observe(broken)
    assert engine.has_unsaved_changes
    scheduler.advance(engine.settings.debounce_ms)

    assert saver.calls == [broken]
    assert not engine.is_saving
    assert engine.metrics.counters["backup_failure"] > 0

    engine.observe(_board("a"))
    scheduler.advance(engine.settings.debounce_ms)

    assert saver.calls[-1] == _board("a")
    assert engine.load_backup() is None


def test_manual_save_is_not_held_back_by_min_gap(scheduler, saver_factory) -> None:
    saver = saver_factory()
    engine = make_engine(scheduler, saver, debounce_ms=100, min_inter_save_gap_ms=1000)
    engine.observe(_board())
    engine.observe(_board("a"))
    scheduler.advance(100)
    assert len(saver.calls) == 1

    engine.observe(_board("a", "b"))
    engine.trigger_save()

    assert saver.calls == [_board("a"), _board("a", "b")]
    assert not engine.is_scheduled
