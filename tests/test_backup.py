"""Tests for durable backup storage."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest

from boardsync.errors import BackupError
from boardsync.managers.backup import (
    BackupRecord,
    DurableBackupStore,
    JsonDirectoryStorage,
    MemoryStorage,
    validate_storage_key,
)

FIXED = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "directory"])
def storage(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryStorage()
    return JsonDirectoryStorage(tmp_path / "drafts")


def test_save_and_load_record(storage) -> None:
    store = DurableBackupStore(storage, "board-draft:1", clock=lambda: FIXED)
    snapshot = {"nodes": [{"id": "a"}], "edges": []}

    store.save(snapshot)
    record = store.load()

    assert record == BackupRecord(data=snapshot, timestamp=FIXED, version="1.0")
    assert store.load_data() == snapshot
    assert store.exists()


def test_stored_schema(storage) -> None:
    store = DurableBackupStore(storage, "board-draft:1", clock=lambda: FIXED)
    store.save({"nodes": []})

    payload = json.loads(storage.get_item("board-draft:1"))

    assert payload == {
        "data": {"nodes": []},
        "timestamp": FIXED.isoformat(),
        "version": "1.0",
    }


def test_save_overwrites_previous_backup(storage) -> None:
    store = DurableBackupStore(storage, "draft")
    store.save({"rev": 1})
    store.save({"rev": 2})

    assert store.load_data() == {"rev": 2}


def test_clear_removes_backup(storage) -> None:
    store = DurableBackupStore(storage, "draft")
    store.save({"rev": 1})

    store.clear()
    store.clear()

    assert store.load() is None
    assert not store.exists()


def test_missing_backup_loads_none(storage) -> None:
    assert DurableBackupStore(storage, "draft").load() is None


def test_corrupt_backup_is_ignored(caplog) -> None:
    storage = MemoryStorage()
    storage.set_item("draft", "{not json")
    store = DurableBackupStore(storage, "draft")

    with caplog.at_level(logging.WARNING, logger="boardsync"):
        assert store.load() is None

    assert any("Ignoring unreadable backup" in r.getMessage() for r in caplog.records)


def test_record_without_timestamp_is_ignored() -> None:
    storage = MemoryStorage()
    storage.set_item("draft", json.dumps({"data": {}, "version": "1.0"}))

    assert DurableBackupStore(storage, "draft").load() is None


def test_unserializable_snapshot_raises_backup_error() -> None:
    store = DurableBackupStore(MemoryStorage(), "draft")

    with pytest.raises(BackupError):
        store.save({"value": object()})


def test_storage_failure_raises_backup_error() -> None:
    class FullStorage(MemoryStorage):
        def set_item(self, key: str, value: str) -> None:
            raise OSError("quota exceeded")

    store = DurableBackupStore(FullStorage(), "draft")

    with pytest.raises(BackupError, match="quota exceeded"):
        store.save({"nodes": []})


def test_backup_key_required() -> None:
    with pytest.raises(ValueError):
        DurableBackupStore(MemoryStorage(), "")


def test_directory_storage_writes_one_file_per_key(tmp_path: Path) -> None:
    storage = JsonDirectoryStorage(tmp_path)
    storage.set_item("board-draft:42", "{}")

    assert (tmp_path / "board-draft_42.json").read_text(encoding="utf-8") == "{}"
    assert not list(tmp_path.glob(".backup_*"))


@pytest.mark.parametrize("key", ["", ".", "..", "../escape", "a/b", "white space"])
def test_invalid_storage_keys_are_rejected(key: str) -> None:
    with pytest.raises(ValueError):
        validate_storage_key(key)


def test_directory_storage_rejects_unsafe_key(tmp_path: Path) -> None:
    storage = JsonDirectoryStorage(tmp_path)

    with pytest.raises(ValueError):
        storage.set_item("../outside", "{}")
