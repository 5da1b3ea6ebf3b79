"""Bounded recency cache of Message-IDs that were already notified."""

from __future__ import annotations

from typing import Iterable, Iterator, Optional

IDCACHE_SIZE = 100


class NotifiedCache:
    """Insertion-ordered set of the last ``capacity`` notified Message-IDs.

    Orthogonal to the watermarks: it catches the same mail delivered twice
    (for instance copied into two watched folders) under different UIDs.
    """

    def __init__(self, message_ids: Optional[Iterable[str]] = None, capacity: int = IDCACHE_SIZE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._ids: list[str] = []
        for message_id in message_ids or ():
            self.add(message_id)

    def add(self, message_id: str) -> None:
        """Remember ``message_id``, evicting the oldest entries beyond capacity."""
        if message_id in self._ids:
            return
        self._ids.append(message_id)
        overflow = len(self._ids) - self.capacity
        if overflow > 0:
            del self._ids[:overflow]

    def to_list(self) -> list[str]:
        return list(self._ids)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return f"NotifiedCache({self._ids!r}, capacity={self.capacity})"
