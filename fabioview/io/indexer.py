"""Scans directories for detector frames."""

import logging
import os
import time
from pathlib import Path
from typing import Iterable, List, Optional

from fabioview.config import config
from fabioview.io.naming import is_ascii_number

log = logging.getLogger(__name__)


def configured_extensions() -> List[str]:
    return [ext.lower() for ext in config.getlist("indexer", "extensions", fallback=[])]


def is_frame_file(path: Path, extensions: Iterable[str]) -> bool:
    """True for a known image extension or a numeric Bruker extension."""
    suffix = path.suffix.lower()
    if suffix in extensions:
        return True
    return is_ascii_number(suffix[1:])


def find_frames(directory: Path, extensions: Optional[Iterable[str]] = None) -> List[Path]:
    """Finds all frame files in a directory, sorted by name."""
    t_start = time.perf_counter()
    if extensions is None:
        extensions = configured_extensions()
    extensions = {ext.lower() for ext in extensions}
    log.info("Scanning directory for frames: %s", directory)

    frames: List[Path] = []
    try:
        for entry in os.scandir(directory):
            if entry.is_file():
                p = Path(entry.path)
                if is_frame_file(p, extensions):
                    frames.append(p)
    except OSError:
        log.exception("Error scanning directory %s", directory)
        return []

    frames.sort(key=lambda p: p.name)
    log.info("Found %d frames in %.3fs", len(frames), time.perf_counter() - t_start)
    return frames
