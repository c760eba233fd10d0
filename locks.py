import logging
import threading
from contextlib import contextmanager
from typing import Hashable, Iterator, Optional

from config import get_settings
from errors import ConflictError

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class BucketLocks:
    """Per-bucket mutual exclusion for recompute + alert evaluation.

    Keys are acquired in sorted order so two writers touching the same pair of
    buckets cannot deadlock. Acquisition is bounded; a timeout surfaces as a
    retryable ConflictError. An entry lives only while some caller holds or
    waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._entries[key]
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        if timeout is None:
            timeout = get_settings().lock_timeout_secs
        ordered = sorted(set(keys), key=repr)
        checked_out: list[Hashable] = []
        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                checked_out.append(key)
                if not entry.lock.acquire(timeout=timeout):
                    logger.warning(f"bucket_lock_timeout: key={key!r}")
                    raise ConflictError(f"Bucket {key!r} is busy; retry the operation")
                acquired.append(entry.lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)


bucket_locks = BucketLocks()
