# managers/changes.py
"""Incremental change tracking for board nodes and edges.

:class:`ChangeTracker` turns editor change events into a bounded log of
:class:`ChangeRecord` entries and collapses it into merged patches so a save
can send only what changed instead of the whole board.
"""

from __future__ import annotations

import copy
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from .. import config
from ..serialization.board import merge_fields, normalize_position, persisted_item

LOGGER = logging.getLogger(__name__)


class ChangeKind(str, enum.Enum):
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"


class TargetKind(str, enum.Enum):
    NODE = "node"
    EDGE = "edge"


# Editor domains as passed to ChangeTracker.record
_DOMAINS = {"nodes": TargetKind.NODE, "edges": TargetKind.EDGE}

# Node geometry events; everything else (select, ...) is UI-only
_NODE_GEOMETRY_EVENTS = frozenset({"position", "dimensions"})


@dataclass(frozen=True)
class ChangeRecord:
    """One materially significant change to a node or edge."""

    kind: ChangeKind
    target: TargetKind
    id: str
    payload: Optional[Dict[str, Any]] = None
    timestamp: float = 0.0

    @property
    def key(self) -> Tuple[ChangeKind, TargetKind, str]:
        return self.kind, self.target, self.id

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "target": self.target.value,
            "id": self.id,
            "timestamp": self.timestamp,
        }
        if self.payload is not None:
            payload["payload"] = copy.deepcopy(self.payload)
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChangeRecord":
        body = payload.get("payload")
        return cls(
            kind=ChangeKind(payload["kind"]),
            target=TargetKind(payload["target"]),
            id=str(payload["id"]),
            payload=dict(body) if body is not None else None,
            timestamp=float(payload.get("timestamp", 0.0)),
        )


# A merged patch has the same shape as a single record
MergedPatch = ChangeRecord


class ChangeTracker:
    """Accumulates editor change events into a bounded, de-duplicated log."""

    def __init__(
        self,
        *,
        capacity: int = config.CHANGE_LOG_CAPACITY,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be greater than zero")
        self.capacity = capacity
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._log: Deque[ChangeRecord] = deque()
        self._overflowed = False
        self._invalidated = False

    @property
    def overflowed(self) -> bool:
        """Return whether entries were dropped since the last :meth:`clear`."""
        return self._overflowed

    @property
    def is_complete(self) -> bool:
        """Return whether merged patches still describe every change since the last save."""
        return not (self._overflowed or self._invalidated)

    def invalidate(self) -> None:
        """Mark the log as incomplete, e.g. after the whole board was replaced."""
        self._invalidated = True

    def record(self, domain: str, events: Optional[Iterable[Mapping[str, Any]]]) -> int:
        """Classify editor events and append the significant ones.

        ``domain`` is ``"nodes"`` or ``"edges"``.  Returns the number of records
        appended; selection and other view-only events are discarded.
        """
        if not events:
            return 0
        try:
            target = _DOMAINS[domain]
        except KeyError:
            raise ValueError(f"Unknown change domain: {domain!r}") from None

        appended = 0
        for event in events:
            record = self._classify(target, event)
            if record is not None:
                self._append(record)
                appended += 1
        return appended

    def _classify(self, target: TargetKind, event: Mapping[str, Any]) -> Optional[ChangeRecord]:
        event_type = event.get("type")
        item = event.get("item")
        entity_id = event.get("id")
        if entity_id is None and isinstance(item, Mapping):
            entity_id = item.get("id")

        if event_type == "add":
            if entity_id is None:
                LOGGER.warning("Ignoring add event without an id: %s", event)
                return None
            payload = None
            if isinstance(item, Mapping):
                payload = persisted_item(target.value, {**item, "id": entity_id})
            return self._make(ChangeKind.ADD, target, entity_id, payload)
        if event_type == "remove" and entity_id is not None:
            return self._make(ChangeKind.REMOVE, target, entity_id, None)
        if event_type in _NODE_GEOMETRY_EVENTS and target is TargetKind.NODE and entity_id is not None:
            # Stored boards keep node positions only
            position = event.get("position")
            if event_type != "position" or not isinstance(position, Mapping):
                return None
            return self._make(
                ChangeKind.UPDATE,
                target,
                entity_id,
                {"position": normalize_position(position)},
            )
        return None

    def record_field_update(
        self,
        entity_id: str,
        fields: Mapping[str, Any],
        *,
        target: TargetKind = TargetKind.NODE,
    ) -> ChangeRecord:
        """Record a direct data mutation that did not come through editor events."""
        record = self._make(ChangeKind.UPDATE, target, entity_id, copy.deepcopy(dict(fields)))
        self._append(record)
        return record

    def _make(
        self,
        kind: ChangeKind,
        target: TargetKind,
        entity_id: Any,
        payload: Optional[Dict[str, Any]],
    ) -> ChangeRecord:
        return ChangeRecord(
            kind=kind,
            target=target,
            id=str(entity_id),
            payload=payload,
            timestamp=self._clock(),
        )

    def _append(self, record: ChangeRecord) -> None:
        self._log.append(record)
        while len(self._log) > self.capacity:
            self._log.popleft()
            if not self._overflowed:
                LOGGER.info("Change log exceeded %d entries; dropping oldest", self.capacity)
            self._overflowed = True

    def changes(self) -> List[ChangeRecord]:
        """Return a copy of the raw log in recording order."""
        return list(self._log)

    def merged_changes(self) -> List[MergedPatch]:
        """Collapse the log into one patch per ``(kind, target, id)``.

        Later records win, update payloads are merged field by field, and each
        patch takes the position of its most recent contributing record.  A
        removal discards the earlier additions and updates of that entity.
        """
        merged: Dict[Tuple[ChangeKind, TargetKind, str], ChangeRecord] = {}
        for record in self._log:
            if record.kind is ChangeKind.REMOVE:
                for kind in (ChangeKind.ADD, ChangeKind.UPDATE):
                    merged.pop((kind, record.target, record.id), None)

            existing = merged.pop(record.key, None)
            if existing is None:
                merged[record.key] = record
                continue
            if existing.payload is not None and record.payload is not None:
                payload = merge_fields(existing.payload, record.payload)
            else:
                payload = record.payload if record.payload is not None else existing.payload
            merged[record.key] = replace(
                existing,
                payload=payload,
                timestamp=max(existing.timestamp, record.timestamp),
            )
        return list(merged.values())

    def count(self) -> int:
        return len(self._log)

    def clear(self) -> None:
        """Drop every record; call only after a confirmed save."""
        self._log.clear()
        self._overflowed = False
        self._invalidated = False

    def __len__(self) -> int:
        return len(self._log)
