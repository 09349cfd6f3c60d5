# managers/backup.py
"""Durable local backup of unsaved board snapshots.

The autosave engine stashes the latest unsaved snapshot here before every save
attempt so that a crash or reload leaves recoverable state behind.  Storage is
reached through a small key-value port; :class:`JsonDirectoryStorage` keeps one
JSON file per key and :class:`MemoryStorage` serves tests and ephemeral use.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Union

from .. import config
from ..errors import BackupError

LOGGER = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")


class KeyValueStorage(Protocol):
    """Local persistence medium for backup records."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self):
        return list(self._items)


def validate_storage_key(key: str) -> str:
    """Ensure ``key`` is safe to use as a file name.

    Keys may contain letters, digits, ``.``, ``_``, ``:`` and ``-`` but must
    not be ``.``/``..``; anything else raises :class:`ValueError`.
    """
    if not key or not _KEY_PATTERN.match(key) or key in {".", ".."}:
        raise ValueError(f"Invalid storage key: {key!r}")
    return key


class JsonDirectoryStorage:
    """Stores each key as ``<key>.json`` inside ``path``."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        os.makedirs(self.path, exist_ok=True)

    def _file_for(self, key: str) -> Path:
        return self.path / f"{validate_storage_key(key).replace(':', '_')}.json"

    def get_item(self, key: str) -> Optional[str]:
        target = self._file_for(key)
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        target = self._file_for(key)
        fd, tmp = tempfile.mkstemp(prefix=".backup_", suffix=".tmp", dir=self.path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp, target)
        except BaseException:
            try:
                os.remove(tmp)
            except OSError:
                LOGGER.warning("Could not remove temporary backup file %s", tmp)
            raise

    def remove_item(self, key: str) -> None:
        try:
            os.remove(self._file_for(key))
        except FileNotFoundError:
            pass


@dataclass(frozen=True)
class BackupRecord:
    """Snapshot stashed for crash recovery."""

    data: Any
    timestamp: datetime
    version: str = config.BACKUP_VERSION

    def to_payload(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BackupRecord":
        return cls(
            data=payload["data"],
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            version=str(payload.get("version", config.BACKUP_VERSION)),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DurableBackupStore:
    """Keeps the latest unsaved snapshot of one document under ``key``."""

    def __init__(
        self,
        storage: KeyValueStorage,
        key: str,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not key:
            raise ValueError("backup key is required")
        self.storage = storage
        self.key = key
        self._clock = clock or _utc_now

    def save(self, snapshot: Any) -> BackupRecord:
        """Overwrite the backup with ``snapshot``.

        Raises :class:`BackupError` when the snapshot cannot be encoded or the
        storage medium rejects the write.
        """
        record = BackupRecord(data=snapshot, timestamp=self._clock())
        try:
            encoded = json.dumps(record.to_payload(), default=_encode_default)
            self.storage.set_item(self.key, encoded)
        except Exception as exc:  # noqa: BLE001
            raise BackupError(f"Failed to back up {self.key}: {exc}") from exc
        return record

    def load(self) -> Optional[BackupRecord]:
        """Return the stored record, or ``None`` when absent or unreadable."""
        try:
            raw = self.storage.get_item(self.key)
        except OSError as exc:
            LOGGER.error("Failed to read backup", extra={"key": self.key, "error": str(exc)})
            return None
        if raw is None:
            return None
        try:
            return BackupRecord.from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            LOGGER.warning(
                "Ignoring unreadable backup",
                extra={"key": self.key, "error": str(exc)},
            )
            return None

    def load_data(self) -> Any:
        record = self.load()
        return None if record is None else record.data

    def exists(self) -> bool:
        return self.load() is not None

    def clear(self) -> None:
        """Remove the backup; only called after a confirmed save."""
        try:
            self.storage.remove_item(self.key)
        except OSError as exc:
            raise BackupError(f"Failed to clear backup {self.key}: {exc}") from exc


def _encode_default(value: Any) -> Any:
    to_payload = getattr(value, "to_payload", None)
    if callable(to_payload):
        return to_payload()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
