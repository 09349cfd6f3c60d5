# config.py
"""
Configuration constants and settings objects for board persistence.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping

# Autosave defaults
DEBOUNCE_MS = 2000
MAX_RETRIES = 2
RETRY_BASE_DELAY_MS = 1000
MIN_INTER_SAVE_GAP_MS = 1000
INCREMENTAL_PATCH_BOUND = 50
SAVED_DISPLAY_MS = 2000
ERROR_DISPLAY_MS = 3000
MAX_PAYLOAD_BYTES = 5 << 20  # 5 MB

# Backup record format
BACKUP_VERSION = "1.0"

# Change tracking
CHANGE_LOG_CAPACITY = 100

# Cache settings
CACHE_SWEEP_INTERVAL_MS = 60 * 1000
USER_CACHE_TTL_MS = 10 * 60 * 1000  # 10 minutes, near-static
BOARD_CACHE_TTL_MS = 2 * 60 * 1000  # 2 minutes, frequently mutated
DEFAULT_CACHE_TTL_MS = 5 * 60 * 1000

# Node data keys that only exist in the editor (callbacks, view flags)
TRANSIENT_NODE_DATA_KEYS = (
    "on_add_comment",
    "on_editing_change",
    "on_node_data_change",
    "on_delete_node",
    "is_read_only",
    "is_board_owner",
    "onAddComment",
    "onEditingChange",
    "onNodeDataChange",
    "onDeleteNode",
    "isReadOnly",
    "isBoardOwner",
)

# Option names accepted from editor-side configuration
_OPTION_ALIASES = {
    "debounceMs": "debounce_ms",
    "maxRetries": "max_retries",
    "retryBaseDelayMs": "retry_base_delay_ms",
    "minInterSaveGapMs": "min_inter_save_gap_ms",
    "incrementalPatchBound": "incremental_patch_bound",
    "backupStorageKey": "backup_storage_key",
    "storageKey": "backup_storage_key",
    "savedDisplayMs": "saved_display_ms",
    "errorDisplayMs": "error_display_ms",
    "maxPayloadBytes": "max_payload_bytes",
}

_CACHE_OPTION_ALIASES = {
    "cacheTTLMs": "default_ttl_ms",
    "cacheSweepIntervalMs": "sweep_interval_ms",
}


@dataclass(frozen=True)
class AutosaveSettings:
    """Tunables for :class:`~boardsync.managers.autosave.AutoSaveEngine`."""

    backup_storage_key: str
    debounce_ms: int = DEBOUNCE_MS
    max_retries: int = MAX_RETRIES
    retry_base_delay_ms: int = RETRY_BASE_DELAY_MS
    min_inter_save_gap_ms: int = MIN_INTER_SAVE_GAP_MS
    incremental_patch_bound: int = INCREMENTAL_PATCH_BOUND
    saved_display_ms: int = SAVED_DISPLAY_MS
    error_display_ms: int = ERROR_DISPLAY_MS
    max_payload_bytes: int = MAX_PAYLOAD_BYTES
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.backup_storage_key:
            raise ValueError("backup_storage_key is required")
        for name in (
            "debounce_ms",
            "max_retries",
            "retry_base_delay_ms",
            "min_inter_save_gap_ms",
            "saved_display_ms",
            "error_display_ms",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.incremental_patch_bound < 0:
            raise ValueError("incremental_patch_bound must not be negative")
        if self.max_payload_bytes <= 0:
            raise ValueError("max_payload_bytes must be greater than zero")

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "AutosaveSettings":
        """Build settings from editor-style options.

        Both the camelCase names used by the editor (``debounceMs``) and the
        attribute names (``debounce_ms``) are accepted.  Unknown keys raise
        :class:`ValueError` so typos do not silently fall back to defaults.
        """

        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown autosave option: {key}")
            kwargs[name] = value
        if "backup_storage_key" not in kwargs:
            raise ValueError("backup_storage_key is required")
        return cls(**kwargs)


@dataclass(frozen=True)
class CacheSettings:
    """Tunables for a :class:`~boardsync.cache.TTLCache` instance."""

    default_ttl_ms: int = DEFAULT_CACHE_TTL_MS
    sweep_interval_ms: int = CACHE_SWEEP_INTERVAL_MS

    def __post_init__(self) -> None:
        if self.default_ttl_ms <= 0:
            raise ValueError("default_ttl_ms must be greater than zero")
        if self.sweep_interval_ms <= 0:
            raise ValueError("sweep_interval_ms must be greater than zero")

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "CacheSettings":
        """Build settings from ``cacheTTLMs``/``cacheSweepIntervalMs`` style options."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            name = _CACHE_OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown cache option: {key}")
            kwargs[name] = value
        return cls(**kwargs)


USER_CACHE = CacheSettings(default_ttl_ms=USER_CACHE_TTL_MS)
BOARD_CACHE = CacheSettings(default_ttl_ms=BOARD_CACHE_TTL_MS)
