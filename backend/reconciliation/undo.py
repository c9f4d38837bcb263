"""LIFO stack of client ids for the operator's "last action"."""
from __future__ import annotations

from typing import Iterable, Optional


class UndoStack:
    def __init__(self) -> None:
        self._items: list[str] = []

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._items

    def push(self, client_id: str) -> None:
        """Re-pushing an id moves it to the top."""
        if client_id in self._items:
            self._items.remove(client_id)
        self._items.append(client_id)

    def push_many(self, client_ids: Iterable[str]) -> None:
        for client_id in client_ids:
            self.push(client_id)

    def peek(self, depth: int = 0) -> Optional[str]:
        """depth 0 is the top of the stack."""
        if depth >= len(self._items):
            return None
        return self._items[-1 - depth]

    def pop(self) -> Optional[str]:
        return self._items.pop() if self._items else None

    def remove(self, client_id: str) -> bool:
        if client_id in self._items:
            self._items.remove(client_id)
            return True
        return False

    def retain(self, keep: Iterable[str]) -> None:
        allowed = set(keep)
        self._items = [cid for cid in self._items if cid in allowed]

    def clear(self) -> None:
        self._items.clear()

    def as_list(self) -> list[str]:
        return list(self._items)
