"""Per-process cache of published step definitions."""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict

from .steps import StepDefinition

StepKey = tuple[uuid.UUID, int]


class StepCache:
    """Bounded LRU keyed by (journey_id, version).

    A published version's steps never change, so entries need no
    invalidation; a new publish bumps the version and gets a new key.
    """

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._entries: OrderedDict[StepKey, tuple[StepDefinition, ...]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, journey_id: uuid.UUID, version: int) -> tuple[StepDefinition, ...] | None:
        with self._lock:
            steps = self._entries.get((journey_id, version))
            if steps is not None:
                self._entries.move_to_end((journey_id, version))
            return steps

    def put(self, journey_id: uuid.UUID, version: int, steps: tuple[StepDefinition, ...]) -> None:
        if self.maxsize <= 0:
            return
        with self._lock:
            self._entries[(journey_id, version)] = steps
            self._entries.move_to_end((journey_id, version))
            while len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)

    def discard(self, journey_id: uuid.UUID) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == journey_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
