"""In-process per-project exclusivity for classification writers."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import threading
from typing import Iterator


@dataclass
class _Slot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class ProjectLockRegistry:
    """Serializes writers per project id while leaving different projects independent.

    This complements the store's row lock: it keeps two threads of one process
    from queuing on the same database row, and is released as soon as the unit ends.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    @contextmanager
    def hold(self, project_id: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(project_id, _Slot())
            slot.holders += 1
        slot.lock.acquire()
        try:
            yield
        finally:
            slot.lock.release()
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    self._slots.pop(project_id, None)

    def active_count(self) -> int:
        with self._guard:
            return len(self._slots)
