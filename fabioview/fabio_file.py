"""A diffraction image file whose header and pixels are loaded on demand.

A :class:`FabioFile` can be shared between threads. Loads of one file are
serialized by the file's guard, so concurrent callers collapse into a
single decoder call. Decoded pixels live in the shared
:class:`~fabioview.imaging.cache.RingImageCache`; only the most recently
decoded frames stay there, so a file may have to decode again after other
files pushed it out of the ring.

Decoders are not shared between threads. Pass one explicitly or let the
record use the calling thread's own decoder.
"""

import logging
import os
import re
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import numpy as np

from fabioview.errors import DecodeError, KeyNotFoundError, NotFoundError
from fabioview.imaging.cache import RingImageCache, shared_cache
from fabioview.imaging.decoder import DecoderPort, thread_decoder
from fabioview.io.naming import split_stem_and_number
from fabioview.models import SortDirection

log = logging.getLogger(__name__)

# Written into every header after decoding
NAME_KEY = "name"
INDEX_KEY = "#"

# Stands in for header values that cannot be turned into text
UNREADABLE_VALUE = "-1"

INT32_MIN = -2**31
INT32_MAX = 2**31 - 1


class LoadGuard:
    """A single-permit semaphore; whoever holds it may decode the file."""

    def __init__(self):
        self._semaphore = threading.BoundedSemaphore(1)

    def acquire(self):
        self._semaphore.acquire()

    def release(self):
        self._semaphore.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def _as_text(value) -> str:
    try:
        return str(value)
    except Exception:
        return UNREADABLE_VALUE


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


class FabioFile:
    """One image file: header, pixels and derived statistics, loaded on first use.

    The path must exist when the record is created. Headers and statistics,
    once loaded, never change; pixels come from the shared ring cache and
    are decoded again if the ring has overwritten them.
    """

    def __init__(
        self,
        path: Union[str, Path],
        cache: Optional[RingImageCache] = None,
        decoder_factory: Optional[Callable[[], DecoderPort]] = None,
    ):
        path = os.fspath(path)
        if not os.path.exists(path):
            raise NotFoundError(f"File not found: {path}")
        self._path = os.path.abspath(path)
        self._name = re.split(r"[\\/]", self._path)[-1]
        self._cache = cache if cache is not None else shared_cache()
        self._decoder_factory = decoder_factory or thread_decoder
        self._guard = LoadGuard()

        self._header: Dict[str, str] = {}
        self._keys_in_header: List[str] = []
        self._header_loaded = False
        self._index = 0

        self._image_loaded = False
        self._slot: Optional[int] = None
        self._width = 0
        self._height = 0
        self._stats_computed = False
        self._minimum = 0.0
        self._maximum = 0.0
        self._mean = 0.0
        self._time_to_read = 0.0

        self._stem: Optional[str] = None
        self._file_number: Optional[str] = None

        self._sort_key = NAME_KEY
        self._sort_direction = SortDirection.ASCENDING

    def __repr__(self) -> str:
        return f"FabioFile({self._path!r})"

    @property
    def path(self) -> str:
        return self._path

    @property
    def name(self) -> str:
        """Short file name, without the directory."""
        return self._name

    @property
    def index(self) -> int:
        return self._index

    @property
    def header_loaded(self) -> bool:
        return self._header_loaded

    @property
    def image_loaded(self) -> bool:
        return self._image_loaded

    @property
    def time_to_read(self) -> float:
        """Seconds the last image load spent decoding; zero for a cache hit."""
        return self._time_to_read

    def acquire(self):
        self._guard.acquire()

    def release(self):
        self._guard.release()

    def _decoder(self, decoder: Optional[DecoderPort]) -> DecoderPort:
        return decoder if decoder is not None else self._decoder_factory()

    # ---- header ----

    def load_header(self, decoder: Optional[DecoderPort] = None):
        """Reads the header once. Later calls return straight away."""
        if self._header_loaded:
            return
        if not os.path.exists(self._path):
            raise NotFoundError(f"File not found: {self._path}")

        with self._guard:
            if self._header_loaded:
                return
            decoder = self._decoder(decoder)
            header: Dict[str, str] = {}
            keys_in_header: List[str] = []
            try:
                for key, value in decoder.open_header(self._path):
                    key = _as_text(key)
                    if key not in header:
                        keys_in_header.append(key)
                    header[key] = _as_text(value)
            except DecodeError as e:
                log.error("Failed to read header of %s: %s", self._path, e)
                raise
            except Exception as e:
                log.error("Failed to read header of %s: %s", self._path, e)
                raise DecodeError(f"Failed to read header of {self._path}: {e}") from e

            header[NAME_KEY] = self._name
            header[INDEX_KEY] = str(self._index)

            self._header = header
            self._keys_in_header = keys_in_header
            self._header_loaded = True
        log.debug("Loaded %d header keys from %s", len(keys_in_header), self._name)

    def add_index(self, index: int):
        """Sets the position of this file in its sample, shown as the '#' header field."""
        self._index = index

    def get_keys(self) -> List[str]:
        """Header keys in ascending order."""
        self.load_header()
        return sorted(self._header)

    def get_keys_in_arrival_order(self) -> List[str]:
        """Header keys in the order the file lists them."""
        self.load_header()
        return list(self._keys_in_header)

    def get_value(self, key: str) -> str:
        self.load_header()
        try:
            return self._header[key]
        except KeyError:
            raise KeyNotFoundError(
                f"The key {key} has not been found in the header for the file {self._name}"
            ) from None

    def get_header(self) -> Dict[str, str]:
        self.load_header()
        return dict(self._header)

    # ---- file name ----

    @property
    def stem(self) -> str:
        """Series name, e.g. 'sample_' for 'sample_0042.edf'."""
        if self._stem is None:
            self._stem, self._file_number = split_stem_and_number(self._name)
        return self._stem

    @property
    def file_number(self) -> str:
        """Sequence number as written in the name, e.g. '0042'."""
        if self._file_number is None:
            self._stem, self._file_number = split_stem_and_number(self._name)
        return self._file_number

    # ---- image ----

    def load_image_as_float(self, decoder: Optional[DecoderPort] = None) -> np.ndarray:
        """Returns the pixels as a flat float32 array, decoding unless cached.

        Minimum, maximum and mean are computed on the first decode only.
        """
        buffer = self._cached_buffer()
        if buffer is not None:
            return buffer

        with self._guard:
            # Another thread may have decoded while we waited
            buffer = self._cached_buffer()
            if buffer is not None:
                return buffer

            decoder = self._decoder(decoder)
            log.debug("read file %s", self._name)
            t_start = time.perf_counter()
            try:
                frame = decoder.open_image(self._path)
                buffer = np.asarray(frame.buffer, dtype=np.float32).reshape(-1)
                width, height = int(frame.width), int(frame.height)
            except DecodeError as e:
                log.error("Failed to read image %s: %s", self._path, e)
                raise
            except Exception as e:
                log.error("Failed to read image %s: %s", self._path, e)
                raise DecodeError(f"Failed to read image {self._path}: {e}") from e

            if buffer.size == 0:
                raise DecodeError(f"Image {self._path} has no pixels")
            if buffer.size != width * height:
                raise DecodeError(
                    f"Image {self._path} has {buffer.size} pixels, expected {width}x{height}"
                )

            self._slot = self._cache.store(self._path, buffer)
            self._width = width
            self._height = height
            if not self._stats_computed:
                self._compute_statistics(buffer)
            self._time_to_read = time.perf_counter() - t_start
            self._image_loaded = True

        log.debug("Read %s (%dx%d) in %.3fs", self._name, width, height, self._time_to_read)
        return buffer

    def _cached_buffer(self) -> Optional[np.ndarray]:
        if not self._image_loaded:
            return None
        buffer = self._cache.lookup(self._slot, self._path)
        if buffer is not None:
            self._time_to_read = 0.0
        return buffer

    def _compute_statistics(self, buffer: np.ndarray):
        self._minimum = float(buffer.min())
        self._maximum = float(buffer.max())
        self._mean = float(buffer.sum(dtype=np.float64) / buffer.size)
        self._stats_computed = True

    def _ensure_image(self):
        if not self._image_loaded:
            self.load_image_as_float()

    def get_width(self) -> int:
        self._ensure_image()
        return self._width

    def get_height(self) -> int:
        self._ensure_image()
        return self._height

    def get_minimum(self) -> float:
        self._ensure_image()
        return self._minimum

    def get_maximum(self) -> float:
        self._ensure_image()
        return self._maximum

    def get_mean(self) -> float:
        self._ensure_image()
        return self._mean

    def get_image_as_float(self, decoder: Optional[DecoderPort] = None) -> np.ndarray:
        """Returns the cached buffer itself, not a copy. Do not modify it."""
        return self.load_image_as_float(decoder)

    def get_cached_image_as_float(self, decoder: DecoderPort) -> Optional[np.ndarray]:
        """Lenient variant of :meth:`get_image_as_float`.

        A failed decode is logged and ignored; the method then returns
        whatever the slot this file last wrote holds, which may be another
        file's pixels or None.
        """
        try:
            return self.load_image_as_float(decoder)
        except DecodeError as e:
            log.warning("Ignoring failed read of %s: %s", self._name, e)
        if self._slot is None:
            return None
        return self._cache.read(self._slot)

    def get_image_as_int(self) -> np.ndarray:
        """A new int32 array of the pixels, truncated toward zero.

        Values beyond the int32 range saturate and NaN becomes 0.
        """
        buffer = self.load_image_as_float()
        truncated = np.nan_to_num(np.trunc(buffer.astype(np.float64)), nan=0.0)
        return np.clip(truncated, INT32_MIN, INT32_MAX).astype(np.int32)

    # ---- ordering ----

    @property
    def sort_key(self) -> str:
        return self._sort_key

    @property
    def sort_direction(self) -> SortDirection:
        return self._sort_direction

    def set_sort_key(self, key: str):
        self._sort_key = key

    def set_sort_direction(self, direction: SortDirection):
        self._sort_direction = SortDirection(direction)

    def compare_to(self, other: "FabioFile") -> int:
        """Compares header values of the current sort key; -1, 0 or 1.

        Raises KeyNotFoundError if either file lacks the key. Files with
        equal values are ordered by their index.
        """
        key = self._sort_key
        result = _cmp(self.get_value(key), other.get_value(key))
        if result == 0:
            result = _cmp(self._index, other._index)
        if self._sort_direction is SortDirection.DESCENDING:
            result = -result
        return result

    def compare_to_key(self, key: str, other: "FabioFile") -> int:
        self.set_sort_key(key)
        return self.compare_to(other)
