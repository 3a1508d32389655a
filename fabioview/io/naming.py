"""Splits frame filenames into a series stem and a sequence number."""

import re
import threading
from typing import Tuple

from cachetools import LRUCache, cached

# Bruker frames carry the frame number as the extension, e.g. sample.001
_INTEGER = re.compile(r"[+-]?[0-9]+")
_DIGITS_ONLY = re.compile(r"[0-9]+")
_INT32_MIN = -2**31
_INT32_MAX = 2**31 - 1
_DIGITS = "0123456789"


@cached(cache=LRUCache(maxsize=4096), lock=threading.Lock())
def split_stem_and_number(filename: str) -> Tuple[str, str]:
    """Returns ``(stem, number)`` for a short filename.

    ``name0042.edf`` gives ``("name", "0042")`` and ``name.001`` gives
    ``("name", "001")``. A first part without trailing digits is returned
    unchanged as both stem and number, and a name without any ``.`` is
    returned whole as both.
    """
    parts = filename.split(".")
    if len(parts) < 2:
        return filename, filename

    ext = parts[1]
    if is_bruker_number(ext):
        return filename[: filename.index(".")], ext

    first = parts[0]
    i = len(first)
    while i > 0 and first[i - 1] in _DIGITS:
        i -= 1
    if i == len(first):
        return first, first
    return first[:i], first[i:]


def is_bruker_number(ext: str) -> bool:
    """True for an extension that is a frame number in the 32-bit int range.

    Longer digit runs are not frame numbers; such names fall through to the
    trailing-digit scan.
    """
    return _INTEGER.fullmatch(ext) is not None and _INT32_MIN <= int(ext) <= _INT32_MAX


def is_ascii_number(text: str) -> bool:
    return _DIGITS_ONLY.fullmatch(text) is not None


def sequence_key(number: str):
    """Sort key putting numeric sequence numbers first, in numeric order."""
    if _INTEGER.fullmatch(number):
        return 0, int(number), number
    return 1, 0, number
