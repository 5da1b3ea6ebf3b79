"""Per-epoch record of the highest UID already observed."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional


class Watermarks:
    """Mapping of UIDVALIDITY → highest seen UID that never moves backwards."""

    def __init__(self, marks: Optional[Mapping[int, int]] = None) -> None:
        self._marks: dict[int, int] = {}
        for epoch, uid in (marks or {}).items():
            self.advance(epoch, uid)

    @classmethod
    def from_json(cls, payload: Optional[Mapping[str, int]]) -> "Watermarks":
        """Rebuild from a JSON object, whose keys are always strings."""
        return cls({int(epoch): int(uid) for epoch, uid in (payload or {}).items()})

    def to_json(self) -> dict[str, int]:
        return {str(epoch): uid for epoch, uid in self._marks.items()}

    def get(self, epoch: int) -> Optional[int]:
        return self._marks.get(epoch)

    def advance(self, epoch: int, uid: int) -> bool:
        """Record ``uid`` for ``epoch`` unless a larger value is already stored."""
        current = self._marks.get(epoch)
        if current is not None and uid < current:
            return False
        self._marks[epoch] = uid
        return True

    def retain(self, epochs: Iterable[int]) -> list[int]:
        """Forget every epoch not in ``epochs``; return the forgotten ones."""
        keep = set(epochs)
        dropped = [epoch for epoch in self._marks if epoch not in keep]
        for epoch in dropped:
            del self._marks[epoch]
        return dropped

    def __contains__(self, epoch: object) -> bool:
        return epoch in self._marks

    def __len__(self) -> int:
        return len(self._marks)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Watermarks):
            return self._marks == other._marks
        if isinstance(other, Mapping):
            return self._marks == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"Watermarks({self._marks!r})"
