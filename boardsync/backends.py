"""Reference board stores implementing the remote save contract.

Real deployments talk to a hosted board API; these stores keep the same
interface for tests, local development and the replay tool.
"""
from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from .managers.backup import JsonDirectoryStorage
from .serialization.board import apply_changes
from .serialization.fingerprint import canonical_json

LOGGER = logging.getLogger(__name__)


class BoardBackend(Protocol):
    """Remote board persistence.

    Both methods raise on any failure, including timeouts.
    """

    def save_board(self, board_id: str, board: Mapping[str, Any]) -> Any: ...

    def apply_board_changes(self, board_id: str, patches: List[Dict[str, Any]]) -> Any: ...


class InMemoryBoardStore:
    """Board store held in a dictionary."""

    def __init__(self, boards: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._boards: Dict[str, Dict[str, Any]] = {
            board_id: copy.deepcopy(dict(board)) for board_id, board in (boards or {}).items()
        }
        self._lock = threading.Lock()
        self.full_saves: List[Dict[str, Any]] = []
        self.patch_saves: List[List[Dict[str, Any]]] = []

    def get_board(self, board_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            board = self._boards.get(board_id)
            return copy.deepcopy(board) if board is not None else None

    def save_board(self, board_id: str, board: Mapping[str, Any]) -> bool:
        with self._lock:
            self._boards[board_id] = copy.deepcopy(dict(board))
            self.full_saves.append(copy.deepcopy(dict(board)))
        return True

    def apply_board_changes(self, board_id: str, patches: List[Dict[str, Any]]) -> bool:
        with self._lock:
            current = self._boards.get(board_id)
            if current is None:
                raise KeyError(f"Unknown board: {board_id}")
            self._boards[board_id] = apply_changes(current, patches)
            self.patch_saves.append(copy.deepcopy(patches))
        return True


class DirectoryBoardStore:
    """Board store keeping one JSON document per board in a directory."""

    def __init__(self, path: Union[str, Path]) -> None:
        self._storage = JsonDirectoryStorage(path)
        self.path = self._storage.path

    def get_board(self, board_id: str) -> Optional[Dict[str, Any]]:
        raw = self._storage.get_item(board_id)
        return None if raw is None else json.loads(raw)

    def save_board(self, board_id: str, board: Mapping[str, Any]) -> bool:
        self._storage.set_item(board_id, canonical_json(board))
        LOGGER.info("board written", extra={"board_id": board_id})
        return True

    def apply_board_changes(self, board_id: str, patches: List[Dict[str, Any]]) -> bool:
        current = self.get_board(board_id)
        if current is None:
            raise KeyError(f"Unknown board: {board_id}")
        return self.save_board(board_id, apply_changes(current, patches))
