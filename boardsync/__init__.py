"""Board persistence: debounced autosave, change tracking, backups and caching."""

from .cache import CacheStats, EntityCaches, TTLCache
from .config import AutosaveSettings, CacheSettings
from .errors import AutosaveError, BackupError, PayloadTooLargeError
from .managers.autosave import AutoSaveEngine, SaveStatus
from .managers.backup import BackupRecord, DurableBackupStore, JsonDirectoryStorage, MemoryStorage
from .managers.changes import ChangeKind, ChangeRecord, ChangeTracker, MergedPatch, TargetKind
from .scheduling import ManualScheduler, QtScheduler
from .serialization.fingerprint import fingerprint

__all__ = [
    "AutoSaveEngine",
    "AutosaveError",
    "AutosaveSettings",
    "BackupError",
    "BackupRecord",
    "CacheSettings",
    "CacheStats",
    "ChangeKind",
    "ChangeRecord",
    "ChangeTracker",
    "DurableBackupStore",
    "EntityCaches",
    "JsonDirectoryStorage",
    "ManualScheduler",
    "MemoryStorage",
    "MergedPatch",
    "PayloadTooLargeError",
    "QtScheduler",
    "SaveStatus",
    "TTLCache",
    "TargetKind",
    "fingerprint",
]
