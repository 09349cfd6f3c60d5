"""Board snapshot helpers decoupled from editor internals."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .. import config

LOGGER = logging.getLogger(__name__)

_OPTIONAL_EDGE_FIELDS = (
    "source_handle",
    "target_handle",
    "data",
    "animated",
    "style",
    "label",
)


def merge_fields(base: Mapping[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``update`` into a copy of ``base``; nested mappings merge recursively."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in update.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_fields(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def normalize_position(position: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    position = position or {}
    return {
        "x": float(position.get("x", 0.0)),
        "y": float(position.get("y", 0.0)),
    }


def persisted_item(target: str, item: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the stored form of an editor node (``"node"``) or edge (``"edge"``)."""
    if target == "edge":
        return BoardEdge.from_payload(item).to_payload()
    return BoardNode.from_payload(item).to_payload()


def clean_node_data(data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop editor-only keys (callbacks, view flags) from node data."""
    if not data:
        return {}
    return {
        key: copy.deepcopy(value)
        for key, value in data.items()
        if key not in config.TRANSIENT_NODE_DATA_KEYS and not callable(value)
    }


@dataclass(eq=True, frozen=True)
class BoardNode:
    """Persistent part of a card on the board."""

    id: str
    type: str = "storyCard"
    position: Dict[str, float] = field(default_factory=lambda: {"x": 0.0, "y": 0.0})
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "position": dict(self.position),
            "data": copy.deepcopy(self.data),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BoardNode":
        return cls(
            id=str(payload.get("id", "")),
            type=str(payload.get("type") or "storyCard"),
            position=normalize_position(payload.get("position")),
            data=clean_node_data(payload.get("data")),
        )


@dataclass(eq=True, frozen=True)
class BoardEdge:
    """Connection between two cards."""

    id: str
    source: str
    target: str
    type: str = "default"
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    animated: Optional[bool] = None
    style: Optional[Dict[str, Any]] = None
    label: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
        }
        for name in _OPTIONAL_EDGE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = copy.deepcopy(value)
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BoardEdge":
        return cls(
            id=str(payload.get("id", "")),
            source=str(payload.get("source", "")),
            target=str(payload.get("target", "")),
            type=str(payload.get("type") or "default"),
            source_handle=payload.get("source_handle", payload.get("sourceHandle")),
            target_handle=payload.get("target_handle", payload.get("targetHandle")),
            data=copy.deepcopy(payload.get("data")),
            animated=payload.get("animated"),
            style=copy.deepcopy(payload.get("style")),
            label=payload.get("label"),
        )


@dataclass(eq=True, frozen=True)
class BoardSnapshot:
    """Serializable snapshot of a board's nodes and edges."""

    nodes: List[BoardNode] = field(default_factory=list)
    edges: List[BoardEdge] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_payload() for node in self.nodes],
            "edges": [edge.to_payload() for edge in self.edges],
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BoardSnapshot":
        return cls(
            nodes=[BoardNode.from_payload(entry) for entry in payload.get("nodes") or []],
            edges=[BoardEdge.from_payload(entry) for entry in payload.get("edges") or []],
        )

    @classmethod
    def from_editor(
        cls,
        nodes: Iterable[Mapping[str, Any]],
        edges: Iterable[Mapping[str, Any]],
    ) -> "BoardSnapshot":
        """Capture editor node/edge dictionaries, dropping editor-only state."""
        return cls(
            nodes=[BoardNode.from_payload(node) for node in nodes],
            edges=[BoardEdge.from_payload(edge) for edge in edges],
        )


def _patch_payload(patch: Any) -> Mapping[str, Any]:
    to_payload = getattr(patch, "to_payload", None)
    return to_payload() if callable(to_payload) else patch


def apply_changes(
    board: Mapping[str, Any],
    patches: Iterable[Any],
) -> Dict[str, Any]:
    """Apply change patches to a board payload and return the new payload.

    ``patches`` may be :class:`~boardsync.managers.changes.ChangeRecord` objects
    or their wire dictionaries.  Updates merge field by field; removing an
    unknown entity or updating a missing one is logged and skipped.
    """
    collections: Dict[str, List[Dict[str, Any]]] = {
        "node": [copy.deepcopy(dict(node)) for node in board.get("nodes") or []],
        "edge": [copy.deepcopy(dict(edge)) for edge in board.get("edges") or []],
    }
    for raw in patches:
        patch = _patch_payload(raw)
        kind = patch.get("kind")
        items = collections.get(str(patch.get("target")))
        if items is None:
            LOGGER.warning("Skipping patch with unknown target: %s", patch)
            continue
        entity_id = str(patch.get("id"))
        index = next((i for i, item in enumerate(items) if str(item.get("id")) == entity_id), None)
        body = patch.get("payload") or {}

        if kind == "add":
            entry = copy.deepcopy(dict(body))
            entry.setdefault("id", entity_id)
            if index is None:
                items.append(entry)
            else:
                items[index] = entry
        elif kind == "remove":
            if index is None:
                LOGGER.debug("Remove for unknown %s %s", patch.get("target"), entity_id)
            else:
                del items[index]
        elif kind == "update":
            if index is None:
                LOGGER.warning("Update for missing %s %s", patch.get("target"), entity_id)
            else:
                items[index] = merge_fields(items[index], body)
        else:
            LOGGER.warning("Skipping patch with unknown kind: %s", patch)

    result = dict(board)
    result["nodes"] = collections["node"]
    result["edges"] = collections["edge"]
    return result
