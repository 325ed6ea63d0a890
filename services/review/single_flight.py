from __future__ import annotations

from typing import Hashable, Set


class SingleFlight:
    """Keys with an operation in flight. Owned by one coordinator, not global."""

    def __init__(self) -> None:
        self._inflight: Set[Hashable] = set()

    def acquire(self, key: Hashable) -> bool:
        if key in self._inflight:
            return False
        self._inflight.add(key)
        return True

    def release(self, key: Hashable) -> None:
        self._inflight.discard(key)

    def __contains__(self, key: object) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)
