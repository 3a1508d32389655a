"""Loads headers and pixels of neighbouring frames in a background thread pool."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from fabioview.config import config
from fabioview.errors import FabioFileError
from fabioview.fabio_file import FabioFile

log = logging.getLogger(__name__)


class Prefetcher:
    """Keeps the frames within ``radius`` of the current one decoded.

    Each worker thread decodes through its own decoder handle (the files
    fall back to the calling thread's decoder), so no decoder is ever used
    by two threads.
    """

    def __init__(
        self,
        fabio_files: List[FabioFile],
        radius: Optional[int] = None,
        on_loaded: Optional[Callable[[int, FabioFile], None]] = None,
        max_workers: Optional[int] = None,
    ):
        self.fabio_files = fabio_files
        self.radius = radius if radius is not None else config.getint("prefetch", "radius", fallback=2)
        self.on_loaded = on_loaded
        if max_workers is None:
            max_workers = config.getint("prefetch", "max_workers", fallback=4)
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="Prefetcher"
        )
        self.futures: Dict[int, Future] = {}
        self.generation = 0
        self._futures_lock = threading.Lock()

    def set_files(self, fabio_files: List[FabioFile]):
        if self.fabio_files != fabio_files:
            self.cancel_all()
            self.fabio_files = fabio_files

    def update_prefetch(self, current_index: int):
        """Schedules loads around ``current_index`` and drops stale ones."""
        with self._futures_lock:
            self.generation += 1
            generation = self.generation
            log.debug("Updating prefetch for index %d, generation %d", current_index, generation)

            stale_keys = [
                index for index in self.futures
                if not self._is_in_prefetch_range(index, current_index)
            ]
            for index in stale_keys:
                self.futures.pop(index).cancel()

            start = max(0, current_index - self.radius)
            end = min(len(self.fabio_files), current_index + self.radius + 1)
            for i in range(start, end):
                future = self.futures.get(i)
                if future is None or future.done():
                    self._submit(i, generation)

    def _submit(self, index: int, generation: int) -> Future:
        # Caller holds _futures_lock
        fabio_file = self.fabio_files[index]
        future = self.executor.submit(self._load, fabio_file, index, generation)
        self.futures[index] = future
        log.debug("Submitted prefetch task for index %d", index)
        return future

    def _load(self, fabio_file: FabioFile, index: int, generation: int) -> Optional[int]:
        """The actual work done by the thread pool."""
        if generation != self.generation:
            log.debug("Skipping stale task for index %d (gen %d != %d)", index, generation, self.generation)
            return None
        try:
            fabio_file.load_header()
            fabio_file.load_image_as_float()
        except FabioFileError as e:
            log.error("Error loading %s at index %d: %s", fabio_file.path, index, e)
            return None

        if self.on_loaded is not None:
            self.on_loaded(index, fabio_file)
        log.debug("Loaded %s at index %d", fabio_file.name, index)
        return index

    def load_headers(self, fabio_files: Optional[List[FabioFile]] = None) -> int:
        """Reads every header in parallel and waits; returns how many succeeded."""
        if fabio_files is None:
            fabio_files = self.fabio_files
        futures = [self.executor.submit(self._load_header, f) for f in fabio_files]
        wait(futures)
        return sum(1 for future in futures if future.result())

    def _load_header(self, fabio_file: FabioFile) -> bool:
        try:
            fabio_file.load_header()
        except FabioFileError as e:
            log.error("Error loading header of %s: %s", fabio_file.path, e)
            return False
        return True

    def _is_in_prefetch_range(self, index: int, current_index: int) -> bool:
        return abs(index - current_index) <= self.radius

    def cancel_all(self):
        """Cancels all pending prefetch tasks."""
        log.info("Cancelling all prefetch tasks.")
        with self._futures_lock:
            self.generation += 1
            for future in self.futures.values():
                future.cancel()
            self.futures.clear()

    def shutdown(self):
        """Shuts down the thread pool executor."""
        log.info("Shutting down prefetcher thread pool.")
        self.cancel_all()
        self.executor.shutdown(wait=False)
