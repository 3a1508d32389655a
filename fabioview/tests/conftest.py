import os
import tempfile
import threading
import time

# Keep the config file out of the user's home directory
os.environ["APPDATA"] = tempfile.mkdtemp(prefix="fabioview-tests-")

import numpy as np
import pytest

from fabioview.imaging.cache import RingImageCache
from fabioview.models import DecodedFrame


class FakeDecoder:
    """Counts calls and serves canned headers and pixels."""

    def __init__(self, header=None, data=None, delay=0.0, error=None):
        self.header = header if header is not None else [("Dim_1", "2"), ("Dim_2", "2")]
        self.data = np.asarray(data if data is not None else [[1.0, 2.0], [3.0, 4.0]], dtype=np.float32)
        self.delay = delay
        self.error = error
        self.header_calls = 0
        self.image_calls = 0
        self._lock = threading.Lock()

    def open_header(self, path):
        with self._lock:
            self.header_calls += 1
        time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.header)

    def open_image(self, path):
        with self._lock:
            self.image_calls += 1
        time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        height, width = self.data.shape
        return DecodedFrame(buffer=self.data.reshape(-1).copy(), width=width, height=height)


@pytest.fixture
def fake_decoder():
    return FakeDecoder()


@pytest.fixture
def cache():
    return RingImageCache(capacity=3)


@pytest.fixture
def make_frame(tmp_path):
    """Creates an (empty) frame file and returns its path."""
    def _make(name="name123.edf"):
        path = tmp_path / name
        path.write_bytes(b"\x00")
        return path
    return _make
