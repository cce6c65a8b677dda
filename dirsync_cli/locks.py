"""Named advisory locks serializing updates of the same entity."""

import contextlib
import threading
from typing import Dict, Iterator, Tuple


class NamedLocks:
    """Mapping from ``(entity type, id)`` to a lock.

    Locks are created on first use and kept for the lifetime of the
    instance, which is owned by the ``ProviderContext`` of a run.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def _get(self, entity_type: str, entity_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((entity_type, entity_id), threading.Lock())

    @contextlib.contextmanager
    def hold(self, entity_type: str, entity_id: str) -> Iterator[None]:
        """Hold the lock for the entity until the ``with`` block is left."""
        lock = self._get(entity_type, entity_id)
        with lock:
            yield

    def is_held(self, entity_type: str, entity_id: str) -> bool:
        with self._guard:
            lock = self._locks.get((entity_type, entity_id))
        return lock is not None and lock.locked()
