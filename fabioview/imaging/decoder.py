"""Decoder port and the adapters that read detector images into float buffers.

A decoder handle is not assumed to be thread-safe, so every thread gets its
own instance through :func:`thread_decoder`.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union

import numpy as np
from PIL import Image, TiffTags

from fabioview.config import config
from fabioview.errors import DecodeError
from fabioview.models import DecodedFrame

log = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Pillow modes numpy can view directly without a lossy conversion
_NATIVE_MODES = {"F", "I", "I;16", "I;16B", "I;16L", "L"}


class DecoderPort(Protocol):
    """What a file record needs from an image format library."""

    def open_header(self, path: PathLike) -> Iterable[Tuple[str, Any]]:
        ...

    def open_image(self, path: PathLike) -> DecodedFrame:
        ...


def clean_header_value(value: Any) -> Any:
    """Decodes printable bytes; leaves everything else for the record to coerce."""
    if isinstance(value, bytes):
        try:
            decoded = value.decode("utf-8").strip("\x00")
        except UnicodeDecodeError:
            return f"<binary data: {len(value)} bytes>"
        if decoded.isprintable():
            return decoded
        return f"<binary data: {len(value)} bytes>"
    return value


def to_frame(data: np.ndarray) -> DecodedFrame:
    """Flattens a 2D array (rows = slow axis) into a float32 frame."""
    data = np.asarray(data, dtype=np.float32)
    if data.ndim != 2:
        raise DecodeError(f"Expected a 2D image, got shape {data.shape}")
    height, width = data.shape
    return DecodedFrame(buffer=np.ascontiguousarray(data).reshape(-1), width=width, height=height)


class PillowDecoder:
    """Reads TIFF, PNG and the other formats Pillow understands."""

    def open_header(self, path: PathLike) -> List[Tuple[str, Any]]:
        try:
            with Image.open(path) as img:
                pairs: List[Tuple[str, Any]] = [
                    ("Dim_1", img.width),
                    ("Dim_2", img.height),
                    ("DataType", img.mode),
                    ("format", img.format),
                ]
                for key, value in img.info.items():
                    pairs.append((str(key), clean_header_value(value)))
                tags = getattr(img, "tag_v2", None)
                if tags is not None:
                    for tag_id, value in tags.items():
                        name = TiffTags.lookup(tag_id).name
                        pairs.append((name, clean_header_value(value)))
        except OSError as e:
            raise DecodeError(f"Cannot read header of {path}: {e}") from e
        return pairs

    def open_image(self, path: PathLike) -> DecodedFrame:
        try:
            with Image.open(path) as img:
                if img.mode not in _NATIVE_MODES:
                    img = img.convert("F")
                data = np.asarray(img)
        except OSError as e:
            raise DecodeError(f"Cannot read image {path}: {e}") from e
        return to_frame(data)


class FabioDecoder:
    """Reads EDF, CBF, Bruker, MarCCD and friends through the fabio library."""

    def __init__(self):
        # Optional dependency, installed with the "fabio" extra
        import fabio

        self._fabio = fabio

    def open_header(self, path: PathLike) -> List[Tuple[str, Any]]:
        im = self._fabio.openheader(str(path))
        return list(im.header.items())

    def open_image(self, path: PathLike) -> DecodedFrame:
        im = self._fabio.open(str(path))
        return to_frame(im.data)


DECODERS: Dict[str, Callable[[], DecoderPort]] = {
    "pillow": PillowDecoder,
    "fabio": FabioDecoder,
}


def make_decoder(backend: Optional[str] = None) -> DecoderPort:
    """Creates a decoder for ``backend``, defaulting to the configured one."""
    if backend is None:
        backend = config.get("decoder", "backend", fallback="pillow")
    backend = backend.strip().lower()
    try:
        factory = DECODERS[backend]
    except KeyError:
        raise ValueError(f"Unknown decoder backend '{backend}'. Choose from {sorted(DECODERS)}") from None
    log.debug("Creating %s decoder for thread %s", backend, threading.current_thread().name)
    return factory()


_local = threading.local()


def thread_decoder(backend: Optional[str] = None) -> DecoderPort:
    """Returns this thread's decoder for ``backend``, creating it on first use."""
    if backend is None:
        backend = config.get("decoder", "backend", fallback="pillow")
    decoders = getattr(_local, "decoders", None)
    if decoders is None:
        decoders = _local.decoders = {}
    decoder = decoders.get(backend)
    if decoder is None:
        decoder = decoders[backend] = make_decoder(backend)
    return decoder
