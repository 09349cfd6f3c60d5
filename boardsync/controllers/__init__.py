"""Controller layer for decoupling editor state from persistence workflows."""

from .session import BoardSyncSession

__all__ = ["BoardSyncSession"]
