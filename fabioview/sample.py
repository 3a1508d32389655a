"""An ordered set of frames from one directory, sharing one image cache."""

import functools
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union

from fabioview.errors import NotFoundError
from fabioview.fabio_file import NAME_KEY, FabioFile
from fabioview.imaging.cache import RingImageCache, shared_cache
from fabioview.imaging.decoder import DecoderPort
from fabioview.io.indexer import find_frames
from fabioview.io.naming import sequence_key
from fabioview.io.watcher import Watcher
from fabioview.models import SortDirection

log = logging.getLogger(__name__)


class Sample:
    """Frames in the order they were added; each file's index is its position.

    Sorting settings are pushed to every file so that
    :meth:`FabioFile.compare_to` uses the same key and direction everywhere.
    """

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        cache: Optional[RingImageCache] = None,
        decoder_factory: Optional[Callable[[], DecoderPort]] = None,
    ):
        self.directory = Path(directory) if directory is not None else None
        self.cache = cache if cache is not None else shared_cache()
        self.decoder_factory = decoder_factory
        self.sort_key = NAME_KEY
        self.sort_direction = SortDirection.ASCENDING
        self._files: List[FabioFile] = []
        self._by_path: Dict[str, FabioFile] = {}
        self._lock = threading.RLock()
        self._watcher: Optional[Watcher] = None
        if self.directory is not None:
            self.refresh()

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[FabioFile]:
        return iter(list(self._files))

    @property
    def files(self) -> List[FabioFile]:
        """Files in insertion order."""
        with self._lock:
            return list(self._files)

    def add_file(self, path: Union[str, Path]) -> FabioFile:
        """Adds a file, or returns the existing record for the same path."""
        fabio_file = FabioFile(path, cache=self.cache, decoder_factory=self.decoder_factory)
        with self._lock:
            existing = self._by_path.get(fabio_file.path)
            if existing is not None:
                return existing
            fabio_file.add_index(len(self._files))
            fabio_file.set_sort_key(self.sort_key)
            fabio_file.set_sort_direction(self.sort_direction)
            self._files.append(fabio_file)
            self._by_path[fabio_file.path] = fabio_file
        return fabio_file

    def refresh(self) -> int:
        """Adds frames that appeared in the directory since the last scan."""
        if self.directory is None:
            return 0
        added = 0
        for path in find_frames(self.directory):
            with self._lock:
                known = os.path.abspath(path) in self._by_path
            if known:
                continue
            try:
                self.add_file(path)
            except NotFoundError:
                # Deleted between the scan and now
                log.warning("Frame vanished before it could be added: %s", path)
                continue
            added += 1
        if added:
            log.info("Added %d new frames from %s", added, self.directory)
        return added

    def watch(self):
        """Refreshes automatically whenever a frame lands in the directory."""
        if self.directory is None:
            raise ValueError("A sample without a directory cannot be watched")
        if self._watcher is None:
            self._watcher = Watcher(self.directory, self.refresh)
        self._watcher.start()

    def stop_watching(self):
        if self._watcher is not None:
            self._watcher.stop()

    @property
    def watching(self) -> bool:
        return self._watcher is not None and self._watcher.is_alive()

    def find(self, name: str) -> Optional[FabioFile]:
        """Returns the file with the given short name, if any."""
        with self._lock:
            for fabio_file in self._files:
                if fabio_file.name == name:
                    return fabio_file
        return None

    def set_sort(self, key: Optional[str] = None, direction: Optional[SortDirection] = None):
        with self._lock:
            if key is not None:
                self.sort_key = key
            if direction is not None:
                self.sort_direction = SortDirection(direction)
            for fabio_file in self._files:
                fabio_file.set_sort_key(self.sort_key)
                fabio_file.set_sort_direction(self.sort_direction)

    def sorted_files(self) -> List[FabioFile]:
        """Files ordered by the current sort key; loads every header."""
        files = self.files
        return sorted(files, key=functools.cmp_to_key(lambda a, b: a.compare_to(b)))

    def group_by_stem(self) -> Dict[str, List[FabioFile]]:
        """Series of frames sharing a stem, each ordered by sequence number."""
        groups: Dict[str, List[FabioFile]] = {}
        for fabio_file in self.files:
            groups.setdefault(fabio_file.stem, []).append(fabio_file)
        for frames in groups.values():
            frames.sort(key=lambda f: sequence_key(f.file_number))
        return groups
