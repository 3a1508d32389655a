"""Diffraction image file records with a shared ring cache of decoded frames."""

from fabioview.errors import DecodeError, FabioFileError, KeyNotFoundError, NotFoundError
from fabioview.fabio_file import FabioFile
from fabioview.models import DecodedFrame, SortDirection

__all__ = [
    "DecodeError",
    "DecodedFrame",
    "FabioFile",
    "FabioFileError",
    "KeyNotFoundError",
    "NotFoundError",
    "SortDirection",
]
