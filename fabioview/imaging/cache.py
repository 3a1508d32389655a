"""Fixed-size ring cache holding the most recently decoded float images.

The cache is a pure ring: slots are overwritten in write order, never by
access order. Records remember the slot they last wrote and check that the
slot still belongs to their path before reusing it.
"""

import logging
import os
import threading
from typing import List, Optional

import numpy as np

from fabioview.config import config

log = logging.getLogger(__name__)


def _same_path(a: Optional[str], b: str) -> bool:
    if a is None:
        return False
    return os.path.normcase(a) == os.path.normcase(b)


class RingImageCache:
    """A ring of ``capacity`` slots, each owning one path and one float buffer."""

    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._paths: List[Optional[str]] = [None] * capacity
        self._buffers: List[Optional[np.ndarray]] = [None] * capacity
        self._cursor = 0
        self._lock = threading.Lock()
        log.info("Initialized ring image cache with %d slots.", capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for p in self._paths if p is not None)

    @property
    def nbytes(self) -> int:
        """Total size of the buffers currently held."""
        with self._lock:
            return sum(b.nbytes for b in self._buffers if b is not None)

    def _claim(self) -> int:
        # Caller holds the lock
        index = self._cursor
        self._cursor = (self._cursor + 1) % self._capacity
        if self._paths[index] is not None:
            log.debug("Evicting '%s' from slot %d", self._paths[index], index)
        self._paths[index] = None
        self._buffers[index] = None
        return index

    def reserve_slot(self, path: str) -> int:
        """Advances the write cursor and returns the slot to write ``path`` into.

        Whatever the slot held is dropped. Use :meth:`store` when the slot
        is to be filled right away; reserving and writing separately leaves
        a window in which another thread may claim the same slot after a
        full turn of the ring.
        """
        with self._lock:
            index = self._claim()
        log.debug("Reserved slot %d for '%s'", index, path)
        return index

    def write(self, index: int, path: str, buffer: np.ndarray):
        """Stores ``buffer`` at ``index`` and records ``path`` as its owner."""
        with self._lock:
            self._paths[index] = path
            self._buffers[index] = buffer

    def store(self, path: str, buffer: np.ndarray) -> int:
        """Reserves a slot and writes into it as one atomic step."""
        with self._lock:
            index = self._claim()
            self._paths[index] = path
            self._buffers[index] = buffer
        log.debug("Cached '%s' in slot %d (%.2f MB)", path, index, buffer.nbytes / 1024**2)
        return index

    def is_valid(self, index: Optional[int], path: str) -> bool:
        """True if the slot at ``index`` currently holds data for ``path``."""
        if index is None or not 0 <= index < self._capacity:
            return False
        with self._lock:
            return _same_path(self._paths[index], path)

    def read(self, index: int) -> Optional[np.ndarray]:
        """Returns the buffer at ``index``; check :meth:`is_valid` first."""
        with self._lock:
            return self._buffers[index]

    def lookup(self, index: Optional[int], path: str) -> Optional[np.ndarray]:
        """Returns the buffer at ``index`` if it still belongs to ``path``."""
        if index is None or not 0 <= index < self._capacity:
            return None
        with self._lock:
            if _same_path(self._paths[index], path):
                return self._buffers[index]
        return None

    def clear(self):
        with self._lock:
            self._paths = [None] * self._capacity
            self._buffers = [None] * self._capacity
            self._cursor = 0
        log.info("Cleared ring image cache.")


_shared_cache: Optional[RingImageCache] = None
_shared_lock = threading.Lock()


def shared_cache() -> RingImageCache:
    """Returns the process-wide cache, creating it from the config on first use."""
    global _shared_cache
    with _shared_lock:
        if _shared_cache is None:
            _shared_cache = RingImageCache(config.getint("cache", "slots", fallback=10))
        return _shared_cache


def reset_shared_cache(capacity: Optional[int] = None) -> RingImageCache:
    """Replaces the process-wide cache, e.g. after the slot count changed."""
    global _shared_cache
    with _shared_lock:
        if capacity is None:
            capacity = config.getint("cache", "slots", fallback=10)
        _shared_cache = RingImageCache(capacity)
        return _shared_cache
