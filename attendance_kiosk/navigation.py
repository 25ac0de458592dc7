from __future__ import annotations

from typing import List


class History:
    """In-memory navigation history. ``location`` is the current path."""

    def __init__(self, initial: str = "/login"):
        self._entries: List[str] = [initial]

    @property
    def location(self) -> str:
        return self._entries[-1]

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def push(self, path: str) -> None:
        if not path.startswith("/"):
            raise ValueError(f"Navigation paths must be absolute, got '{path}'.")
        self._entries.append(path)
