"""Filesystem watcher to pick up frames written while a series is acquired."""

import logging
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

class FrameDirectoryEventHandler(FileSystemEventHandler):
    """Calls back on file creation or rename inside the frame directory."""
    def __init__(self, callback: Callable[[], None]):
        super().__init__()
        self.callback = callback

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in ("created", "moved", "closed"):
            return
        # Detectors and writers often stage frames under a temporary name
        path = getattr(event, "dest_path", "") or event.src_path
        if str(path).endswith(".tmp"):
            return
        log.info(f"Detected filesystem change: {event}. Triggering refresh.")
        self.callback()

class Watcher:
    """Manages the filesystem observer."""
    def __init__(self, directory: Path, callback: Callable[[], None]):
        self.observer: Optional[Observer] = None
        self.event_handler = FrameDirectoryEventHandler(callback)
        self.directory = Path(directory)

    def start(self):
        """Starts watching the directory."""
        if not self.directory.is_dir():
            log.warning(f"Cannot watch non-existent directory: {self.directory}")
            return

        if self.observer and self.observer.is_alive():
            return # Already running

        # An observer cannot be restarted, so make a fresh one each time
        self.observer = Observer()
        self.observer.schedule(self.event_handler, str(self.directory), recursive=False)
        self.observer.start()
        log.info(f"Started watching directory: {self.directory}")

    def stop(self):
        """Stops watching the directory."""
        if self.observer and self.observer.is_alive():
            self.observer.stop()
            self.observer.join()
            log.info("Stopped watching directory.")
        self.observer = None

    def is_alive(self) -> bool:
        """Checks if the watcher thread is alive."""
        return bool(self.observer and self.observer.is_alive())
