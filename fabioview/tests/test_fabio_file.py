"""Tests for lazy header and image loading of FabioFile."""

import threading
import warnings

import numpy as np
import pytest

from conftest import FakeDecoder
from fabioview.errors import DecodeError, KeyNotFoundError, NotFoundError
from fabioview.fabio_file import FabioFile
from fabioview.imaging.cache import RingImageCache
from fabioview.models import DecodedFrame, SortDirection


def make_file(path, cache, decoder):
    return FabioFile(path, cache=cache, decoder_factory=lambda: decoder)


class Unprintable:
    def __str__(self):
        raise ValueError("no text for you")


# ---- construction ----

def test_missing_file_is_rejected(tmp_path, cache):
    with pytest.raises(NotFoundError):
        FabioFile(tmp_path / "missing.edf", cache=cache)


def test_not_found_is_a_file_not_found_error(tmp_path, cache):
    with pytest.raises(FileNotFoundError):
        FabioFile(tmp_path / "missing.edf", cache=cache)


def test_path_and_name(make_frame, cache):
    path = make_frame("frame_0001.edf")
    fabio_file = FabioFile(path, cache=cache)
    assert fabio_file.path == str(path.absolute())
    assert fabio_file.name == "frame_0001.edf"
    assert not fabio_file.header_loaded
    assert not fabio_file.image_loaded


# ---- header ----

def test_load_header_once(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    fabio_file.load_header()
    assert fabio_file.header_loaded
    fabio_file.load_header()
    fabio_file.get_value("Dim_1")
    assert fake_decoder.header_calls == 1
    assert fabio_file.header_loaded


def test_keys_sorted_and_in_arrival_order(make_frame, cache):
    decoder = FakeDecoder(header=[("zeta", "1"), ("alpha", "2")])
    fabio_file = make_file(make_frame(), cache, decoder)
    assert fabio_file.get_keys() == ["#", "alpha", "name", "zeta"]
    assert fabio_file.get_keys_in_arrival_order() == ["zeta", "alpha"]


def test_synthetic_keys(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame("name123.edf"), cache, fake_decoder)
    fabio_file.add_index(7)
    assert fabio_file.get_value("name") == "name123.edf"
    assert fabio_file.get_value("#") == "7"


def test_values_coerced_to_text(make_frame, cache):
    decoder = FakeDecoder(header=[("Dim_1", 2048), ("ExposureTime", 0.5), ("Bad", Unprintable())])
    fabio_file = make_file(make_frame(), cache, decoder)
    assert fabio_file.get_value("Dim_1") == "2048"
    assert fabio_file.get_value("ExposureTime") == "0.5"
    assert fabio_file.get_value("Bad") == "-1"


def test_duplicate_keys_last_value_wins(make_frame, cache):
    decoder = FakeDecoder(header=[("a", "1"), ("b", "2"), ("a", "3")])
    fabio_file = make_file(make_frame(), cache, decoder)
    assert fabio_file.get_value("a") == "3"
    assert fabio_file.get_keys_in_arrival_order() == ["a", "b"]


def test_missing_key(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    with pytest.raises(KeyNotFoundError) as excinfo:
        fabio_file.get_value("missing-key")
    assert "missing-key" in str(excinfo.value)
    assert isinstance(excinfo.value, KeyError)
    assert fabio_file.header_loaded


def test_get_header_is_a_copy(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    header = fabio_file.get_header()
    header["Dim_1"] = "changed"
    assert fabio_file.get_value("Dim_1") == "2"


def test_header_of_deleted_file(make_frame, cache, fake_decoder):
    path = make_frame()
    fabio_file = make_file(path, cache, fake_decoder)
    path.unlink()
    with pytest.raises(NotFoundError):
        fabio_file.load_header()
    assert fake_decoder.header_calls == 0


def test_header_decode_failure_releases_guard(make_frame, cache):
    failing = FakeDecoder(error=RuntimeError("corrupt header"))
    fabio_file = make_file(make_frame(), cache, failing)

    with pytest.raises(DecodeError) as excinfo:
        fabio_file.load_header()
    assert "corrupt header" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert not fabio_file.header_loaded

    # The guard is free again and a working decoder can load the header
    working = FakeDecoder()
    fabio_file.load_header(working)
    assert fabio_file.header_loaded
    assert working.header_calls == 1


@pytest.mark.parametrize("header", [[("a", "1", "extra")], [42], None])
def test_malformed_header_is_a_decode_error(make_frame, cache, header):
    class MalformedHeader(FakeDecoder):
        def open_header(self, path):
            return header

    fabio_file = make_file(make_frame(), cache, MalformedHeader())
    with pytest.raises(DecodeError):
        fabio_file.load_header()
    assert not fabio_file.header_loaded
    assert fabio_file._guard._semaphore.acquire(blocking=False)
    fabio_file.release()


def test_concurrent_header_loads_decode_once(make_frame, cache):
    decoder = FakeDecoder(delay=0.05)
    fabio_file = make_file(make_frame(), cache, decoder)
    barrier = threading.Barrier(4)

    def load():
        barrier.wait()
        fabio_file.load_header()

    threads = [threading.Thread(target=load) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert decoder.header_calls == 1
    assert fabio_file.header_loaded


# ---- image ----

def test_statistics(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    assert fabio_file.get_minimum() == 1.0
    assert fabio_file.get_maximum() == 4.0
    assert fabio_file.get_mean() == pytest.approx(2.5)
    assert fabio_file.get_width() == 2
    assert fabio_file.get_height() == 2
    assert fabio_file.image_loaded
    assert fake_decoder.image_calls == 1


def test_min_max_bound_every_pixel(make_frame, cache):
    rng = np.random.default_rng(42)
    data = rng.normal(100.0, 30.0, size=(16, 24)).astype(np.float32)
    fabio_file = make_file(make_frame(), cache, FakeDecoder(data=data))
    image = fabio_file.get_image_as_float()
    assert np.all(image >= fabio_file.get_minimum())
    assert np.all(image <= fabio_file.get_maximum())
    assert fabio_file.get_mean() == pytest.approx(float(data.astype(np.float64).mean()), rel=1e-6)
    assert fabio_file.get_width() == 24
    assert fabio_file.get_height() == 16


def test_image_comes_from_cache(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    first = fabio_file.get_image_as_float()
    second = fabio_file.get_image_as_float()
    assert second is first
    assert fake_decoder.image_calls == 1
    assert fabio_file.time_to_read == 0.0
    assert len(cache) == 1


def test_image_reloads_after_eviction(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame("a.edf"), cache, fake_decoder)
    fabio_file.load_image_as_float()
    others = [make_file(make_frame(f"other{i}.edf"), cache, FakeDecoder()) for i in range(3)]
    for other in others:
        other.load_image_as_float()

    fabio_file.get_image_as_float()
    assert fake_decoder.image_calls == 2


def test_statistics_not_recomputed_on_reload(make_frame, cache):
    decoder = FakeDecoder(data=[[1.0, 2.0], [3.0, 4.0]])
    fabio_file = make_file(make_frame("a.edf"), cache, decoder)
    fabio_file.load_image_as_float()
    cache.clear()

    decoder.data = np.array([[10.0, 20.0], [30.0, 40.0]], dtype=np.float32)
    image = fabio_file.get_image_as_float()
    assert decoder.image_calls == 2
    assert image[0] == 10.0
    assert fabio_file.get_minimum() == 1.0
    assert fabio_file.get_maximum() == 4.0
    assert fabio_file.get_mean() == pytest.approx(2.5)


def test_image_as_int_truncates_toward_zero(make_frame, cache):
    decoder = FakeDecoder(data=[[-1.7, 2.9, 0.5], [-0.2, 7.0, -3.999]])
    fabio_file = make_file(make_frame(), cache, decoder)
    as_int = fabio_file.get_image_as_int()
    assert len(as_int) == fabio_file.get_width() * fabio_file.get_height()
    assert as_int.tolist() == [-1, 2, 0, 0, 7, -3]


def test_image_as_int_saturates_and_zeroes_nan(make_frame, cache):
    decoder = FakeDecoder(data=[[4294967295.0, np.nan, -1e12]])
    fabio_file = make_file(make_frame(), cache, decoder)
    fabio_file.load_image_as_float()

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        as_int = fabio_file.get_image_as_int()
    assert as_int.dtype == np.int32
    assert as_int.tolist() == [2147483647, 0, -2147483648]


def test_image_as_int_is_a_new_array(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    first = fabio_file.get_image_as_int()
    first[0] = 99
    second = fabio_file.get_image_as_int()
    assert second is not first
    assert second[0] == 1
    assert fake_decoder.image_calls == 1


def test_size_mismatch_is_a_decode_error(make_frame, cache):
    class LyingDecoder(FakeDecoder):
        def open_image(self, path):
            frame = super().open_image(path)
            frame.width = 3
            return frame

    fabio_file = make_file(make_frame(), cache, LyingDecoder())
    with pytest.raises(DecodeError):
        fabio_file.load_image_as_float()
    assert not fabio_file.image_loaded
    assert len(cache) == 0


def test_image_decode_failure_releases_guard(make_frame, cache):
    fabio_file = make_file(make_frame(), cache, FakeDecoder(error=OSError("truncated")))
    with pytest.raises(DecodeError) as excinfo:
        fabio_file.get_width()
    assert isinstance(excinfo.value.__cause__, OSError)
    assert not fabio_file.image_loaded

    working = FakeDecoder()
    fabio_file.load_image_as_float(working)
    assert fabio_file.image_loaded
    assert working.image_calls == 1


class NoFrameDecoder(FakeDecoder):
    def open_image(self, path):
        return None


def test_missing_frame_is_a_decode_error(make_frame, cache):
    fabio_file = make_file(make_frame(), cache, NoFrameDecoder())
    with pytest.raises(DecodeError) as excinfo:
        fabio_file.load_image_as_float()
    assert isinstance(excinfo.value.__cause__, AttributeError)
    assert not fabio_file.image_loaded
    assert len(cache) == 0


def test_non_numeric_pixels_are_a_decode_error(make_frame, cache):
    class TextDecoder(FakeDecoder):
        def open_image(self, path):
            return DecodedFrame(buffer=["x", "y"], width=2, height=1)

    fabio_file = make_file(make_frame(), cache, TextDecoder())
    with pytest.raises(DecodeError):
        fabio_file.load_image_as_float()
    assert not fabio_file.image_loaded


def test_lenient_image_with_missing_frame(make_frame, cache):
    fabio_file = make_file(make_frame(), cache, FakeDecoder())
    assert fabio_file.get_cached_image_as_float(NoFrameDecoder()) is None


def test_concurrent_image_loads_decode_once(make_frame, cache):
    decoder = FakeDecoder(delay=0.05)
    fabio_file = make_file(make_frame(), cache, decoder)
    results = []
    barrier = threading.Barrier(4)

    def load():
        barrier.wait()
        results.append(fabio_file.get_image_as_float())

    threads = [threading.Thread(target=load) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert decoder.image_calls == 1
    assert all(r is results[0] for r in results)


def test_lenient_image_before_any_load(make_frame, cache):
    fabio_file = make_file(make_frame(), cache, FakeDecoder())
    failing = FakeDecoder(error=RuntimeError("boom"))
    assert fabio_file.get_cached_image_as_float(failing) is None


def test_lenient_image_returns_slot_contents(make_frame):
    cache = RingImageCache(capacity=1)
    fabio_file = make_file(make_frame("a.edf"), cache, FakeDecoder())
    fabio_file.load_image_as_float()

    other = make_file(make_frame("b.edf"), cache, FakeDecoder(data=[[9.0]]))
    other_image = other.load_image_as_float()

    failing = FakeDecoder(error=RuntimeError("boom"))
    assert fabio_file.get_cached_image_as_float(failing) is other_image


def test_lenient_image_success(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, FakeDecoder())
    image = fabio_file.get_cached_image_as_float(fake_decoder)
    assert image.tolist() == [1.0, 2.0, 3.0, 4.0]
    assert fake_decoder.image_calls == 1


def test_guard_is_free_after_loads(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    fabio_file.load_header()
    fabio_file.load_image_as_float()
    assert fabio_file._guard._semaphore.acquire(blocking=False)
    fabio_file.release()


def test_explicit_acquire_blocks_loads(make_frame, cache, fake_decoder):
    fabio_file = make_file(make_frame(), cache, fake_decoder)
    fabio_file.acquire()
    loader = threading.Thread(target=fabio_file.load_header)
    loader.start()
    loader.join(timeout=0.1)
    assert loader.is_alive()
    assert fake_decoder.header_calls == 0

    fabio_file.release()
    loader.join(timeout=5)
    assert not loader.is_alive()
    assert fake_decoder.header_calls == 1


# ---- file name ----

def test_stem_and_number(make_frame, cache):
    fabio_file = FabioFile(make_frame("name123.edf"), cache=cache)
    assert fabio_file.stem == "name"
    assert fabio_file.file_number == "123"


def test_bruker_stem_and_number(make_frame, cache):
    fabio_file = FabioFile(make_frame("name.001"), cache=cache)
    assert fabio_file.file_number == "001"
    assert fabio_file.stem == "name"


# ---- ordering ----

@pytest.fixture
def pair(make_frame, cache):
    a = make_file(make_frame("a.edf"), cache, FakeDecoder(header=[("Omega", "10"), ("Motor", "x")]))
    b = make_file(make_frame("b.edf"), cache, FakeDecoder(header=[("Omega", "05")]))
    a.add_index(0)
    b.add_index(1)
    return a, b


def test_compare_by_name(pair):
    a, b = pair
    assert a.compare_to(b) == -1
    assert b.compare_to(a) == 1
    assert a.compare_to(a) == 0


def test_compare_descending(pair):
    a, b = pair
    a.set_sort_direction(SortDirection.DESCENDING)
    assert a.compare_to(b) == 1


def test_compare_to_key(pair):
    a, b = pair
    assert a.compare_to_key("Omega", b) == 1
    assert a.sort_key == "Omega"


def test_compare_ties_use_index(make_frame, cache):
    a = make_file(make_frame("a.edf"), cache, FakeDecoder(header=[("Omega", "1")]))
    b = make_file(make_frame("b.edf"), cache, FakeDecoder(header=[("Omega", "1")]))
    a.add_index(3)
    b.add_index(1)
    assert a.compare_to_key("Omega", b) == 1


def test_compare_missing_key_raises(pair):
    a, b = pair
    with pytest.raises(KeyNotFoundError):
        a.compare_to_key("Motor", b)
