import threading
from typing import Callable, List, Optional
from miyoo.domain.models import ProgressSnapshot

SnapshotCallback = Callable[[ProgressSnapshot], None]


class ProgressStore:
    """Thread-safe holder of the published ProgressSnapshot.

    Every update builds a new frozen snapshot and swaps it in, so readers
    always get a consistent object. Subscribers are notified under the lock,
    in publication order, on the publishing thread; they should return
    quickly.
    """

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._snapshot = ProgressSnapshot()
        self._subscribers: List[SnapshotCallback] = []

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot

    def update(self, **changes) -> ProgressSnapshot:
        with self._lock:
            return self._replace(self._snapshot.model_copy(update=changes))

    def replace(self, snapshot: ProgressSnapshot) -> ProgressSnapshot:
        with self._lock:
            return self._replace(snapshot)

    def _replace(self, snapshot: ProgressSnapshot) -> ProgressSnapshot:
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            callback(snapshot)
        return snapshot

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Registers a callback; returns a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe
