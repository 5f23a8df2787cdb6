"""In-memory admission control: one in-flight job per actor, optional global cap."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from comfy_bridge.generation.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Reject-on-conflict gate shared by all generation requests of a process.

    ``max_concurrent=0`` means no global cap. There is no waiting queue: a
    failed ``try_acquire`` is an immediate rejection.
    """

    def __init__(self, max_concurrent: int = 0) -> None:
        if max_concurrent < 0:
            raise ValueError("max_concurrent must be >= 0")
        self._max_concurrent = max_concurrent
        self._active: set[str] = set()
        self._count = 0
        self._lock = threading.Lock()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def try_acquire(self, actor_id: str) -> bool:
        with self._lock:
            if actor_id in self._active:
                return False
            if self._max_concurrent > 0 and self._count >= self._max_concurrent:
                return False
            self._active.add(actor_id)
            self._count += 1
            return True

    def release(self, actor_id: str) -> None:
        """Release the actor's slot; releasing a slot that is not held is a no-op."""

        with self._lock:
            if actor_id not in self._active:
                return
            self._active.discard(actor_id)
            self._count -= 1

    def active_count(self) -> int:
        with self._lock:
            return self._count

    def is_actor_active(self, actor_id: str) -> bool:
        with self._lock:
            return actor_id in self._active

    @contextmanager
    def hold(self, actor_id: str) -> Iterator[None]:
        """Own the actor's slot for the duration of the block."""

        if not self.try_acquire(actor_id):
            logger.info("Admission rejected for actor %s (active=%d)", actor_id, self.active_count())
            raise ConcurrencyConflict(actor_id)
        try:
            yield
        finally:
            self.release(actor_id)
