"""Session controller wiring a board's editor state to persistence.

:class:`BoardSyncSession` is a small service layer between the editor and the
remote board store.  It applies editor change events to a plain-dictionary
copy of the board, records the persistent ones in a
:class:`~boardsync.managers.changes.ChangeTracker` and feeds the cleaned
snapshot into an :class:`~boardsync.managers.autosave.AutoSaveEngine`.  Front
ends (the Qt editor, CLI tools, automated tests) only talk to this class.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..backends import BoardBackend
from ..cache import EntityCaches
from ..config import AutosaveSettings
from ..managers.autosave import AutoSaveEngine, SaveStatus
from ..managers.backup import BackupRecord, DurableBackupStore, KeyValueStorage, MemoryStorage
from ..managers.changes import ChangeTracker, TargetKind
from ..scheduling import Scheduler
from ..serialization.board import BoardSnapshot, clean_node_data, merge_fields
from ..workers import TaskRunner

LOGGER = logging.getLogger(__name__)


def _apply_events(items: List[Dict[str, Any]], events: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Apply editor change events to a list of node or edge dictionaries."""
    result = [dict(item) for item in items]
    for event in events:
        event_type = event.get("type")
        entity_id = event.get("id")
        if event_type == "add" and isinstance(event.get("item"), Mapping):
            result.append(copy.deepcopy(dict(event["item"])))
            continue
        if event_type == "remove":
            result = [item for item in result if item.get("id") != entity_id]
            continue
        for item in result:
            if item.get("id") != entity_id:
                continue
            if event_type == "position" and event.get("position") is not None:
                item["position"] = dict(event["position"])
            elif event_type == "dimensions" and event.get("dimensions") is not None:
                item["dimensions"] = dict(event["dimensions"])
            elif event_type == "select":
                item["selected"] = bool(event.get("selected"))
    return result


class BoardSyncSession:
    """Keep one board's editor state and its autosave engine in step."""

    def __init__(
        self,
        board_id: str,
        backend: BoardBackend,
        *,
        nodes: Iterable[Mapping[str, Any]] = (),
        edges: Iterable[Mapping[str, Any]] = (),
        settings: Optional[AutosaveSettings] = None,
        storage: Optional[KeyValueStorage] = None,
        scheduler: Optional[Scheduler] = None,
        runner: Optional[TaskRunner] = None,
        caches: Optional[EntityCaches] = None,
        incremental: bool = True,
    ) -> None:
        if not board_id:
            raise ValueError("board_id is required")
        self.board_id = board_id
        self.backend = backend
        self.caches = caches
        self.settings = settings or AutosaveSettings(backup_storage_key=f"board-draft:{board_id}")
        self.tracker = ChangeTracker()
        self._nodes: List[Dict[str, Any]] = [copy.deepcopy(dict(node)) for node in nodes]
        self._edges: List[Dict[str, Any]] = [copy.deepcopy(dict(edge)) for edge in edges]

        backup = DurableBackupStore(storage or MemoryStorage(), self.settings.backup_storage_key)
        self.engine = AutoSaveEngine(
            self._save_snapshot,
            self.settings,
            save_patches=self._save_patches if incremental else None,
            tracker=self.tracker,
            backup=backup,
            scheduler=scheduler,
            runner=runner,
        )
        self.engine.observe(self.snapshot())

    # -- state -----------------------------------------------------------

    @property
    def status(self) -> SaveStatus:
        return self.engine.status

    @property
    def has_unsaved_changes(self) -> bool:
        return self.engine.has_unsaved_changes

    @property
    def nodes(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._nodes)

    @property
    def edges(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._edges)

    def snapshot(self) -> Dict[str, Any]:
        """Return the persistent board payload without editor-only state."""
        return BoardSnapshot.from_editor(self._nodes, self._edges).to_payload()

    # -- editor inputs ---------------------------------------------------

    def apply_node_changes(self, events: Iterable[Mapping[str, Any]]) -> None:
        events = list(events)
        self.tracker.record("nodes", events)
        self._nodes = _apply_events(self._nodes, events)
        self._publish()

    def apply_edge_changes(self, events: Iterable[Mapping[str, Any]]) -> None:
        events = list(events)
        self.tracker.record("edges", events)
        self._edges = _apply_events(self._edges, events)
        self._publish()

    def update_node_data(self, node_id: str, data: Mapping[str, Any]) -> bool:
        """Merge ``data`` into a node's data; returns ``False`` for unknown nodes."""
        return self._update_data(self._nodes, node_id, data, TargetKind.NODE)

    def update_edge_data(self, edge_id: str, data: Mapping[str, Any]) -> bool:
        return self._update_data(self._edges, edge_id, data, TargetKind.EDGE)

    def _update_data(
        self,
        items: List[Dict[str, Any]],
        entity_id: str,
        data: Mapping[str, Any],
        target: TargetKind,
    ) -> bool:
        for item in items:
            if item.get("id") == entity_id:
                item["data"] = merge_fields(item.get("data") or {}, data)
                break
        else:
            LOGGER.warning("data update for unknown %s %s", target.value, entity_id)
            return False
        # Node data is stored without editor callbacks and view flags
        stored = clean_node_data(data) if target is TargetKind.NODE else dict(data)
        if stored:
            self.tracker.record_field_update(entity_id, {"data": stored}, target=target)
        self._publish()
        return True

    def replace(self, nodes: Iterable[Mapping[str, Any]], edges: Iterable[Mapping[str, Any]]) -> None:
        """Swap the whole board (import, clear workspace); forces a full save."""
        self._nodes = [copy.deepcopy(dict(node)) for node in nodes]
        self._edges = [copy.deepcopy(dict(edge)) for edge in edges]
        self.tracker.invalidate()
        self._publish()

    def restore_from_backup(self) -> bool:
        """Load the unsaved backup into the session; returns whether one existed."""
        record = self.recoverable()
        if record is None or not isinstance(record.data, Mapping):
            return False
        restored = BoardSnapshot.from_payload(record.data).to_payload()
        LOGGER.info(
            "restoring board from backup",
            extra={"board_id": self.board_id, "backup_time": record.timestamp.isoformat()},
        )
        self.replace(restored["nodes"], restored["edges"])
        return True

    def recoverable(self) -> Optional[BackupRecord]:
        return self.engine.load_backup()

    def on_foreground(self) -> bool:
        return self.engine.on_foreground()

    def save_now(self) -> None:
        self.engine.trigger_save()

    def close(self) -> None:
        self.engine.close()

    def _publish(self) -> None:
        self.engine.observe(self.snapshot())

    # -- remote calls (run on the engine's task runner) -------------------

    def _save_snapshot(self, snapshot: Mapping[str, Any]) -> Any:
        result = self.backend.save_board(self.board_id, snapshot)
        self._invalidate_cache()
        return result

    def _save_patches(self, patches: List[Dict[str, Any]]) -> Any:
        result = self.backend.apply_board_changes(self.board_id, patches)
        self._invalidate_cache()
        return result

    def _invalidate_cache(self) -> None:
        if self.caches is not None:
            self.caches.invalidate_board(self.board_id)
