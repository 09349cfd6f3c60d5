"""Serialization helpers for board persistence."""

from .board import (
    BoardEdge,
    BoardNode,
    BoardSnapshot,
    apply_changes,
    clean_node_data,
)
from .fingerprint import canonical_json, fingerprint, payload_size

__all__ = [
    "BoardEdge",
    "BoardNode",
    "BoardSnapshot",
    "apply_changes",
    "canonical_json",
    "clean_node_data",
    "fingerprint",
    "payload_size",
]
