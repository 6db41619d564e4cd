"""
hotgraft Build Watcher

Watches a build-output directory and hands every new module build to a
reload callback.
"""

from __future__ import annotations

import fnmatch
import threading
from pathlib import Path
from typing import Callable, Optional, Set, Tuple, Union

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = structlog.get_logger(__name__)

BuildCallback = Callable[[Path], None]


class BuildWatcher:
    """
    Calls ``callback(path)`` when a file matching ``pattern`` appears in
    ``directory``, either created there or moved in.

    The same build (path and modification time) is reported once, however
    many events the platform delivers for it.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        callback: BuildCallback,
        pattern: str = "*.py",
        recursive: bool = False,
    ):
        self.directory = Path(directory)
        self.callback = callback
        self.pattern = pattern
        self.recursive = recursive

        self._observer: Optional[Observer] = None
        self._seen: Set[Tuple[Path, int]] = set()
        self._lock = threading.Lock()
        self.builds_seen = 0
        self.callback_errors = 0

    def start(self) -> None:
        """Start watching."""
        if self._observer is not None:
            return
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Build directory not found: {self.directory}")

        self._observer = Observer()
        self._observer.schedule(_BuildEventHandler(self), str(self.directory), recursive=self.recursive)
        self._observer.daemon = True
        self._observer.start()
        logger.info("Watching for builds", directory=str(self.directory), pattern=self.pattern)

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("Stopped watching", directory=str(self.directory))

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def matches(self, path: Path) -> bool:
        return fnmatch.fnmatch(path.name, self.pattern)

    def handle(self, path: Union[str, Path]) -> bool:
        """
        Report a candidate build.

        Returns:
            True if the callback was invoked.
        """
        path = Path(path)
        if not self.matches(path):
            return False

        try:
            key = (path, path.stat().st_mtime_ns)
        except FileNotFoundError:
            logger.debug("Build vanished before it could be reported", path=str(path))
            return False

        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            self.builds_seen += 1

        logger.info("New build detected", path=str(path))
        try:
            self.callback(path)
        except Exception as e:
            self.callback_errors += 1
            logger.error("Build callback failed", path=str(path), error=str(e), exc_info=True)
        return True

    def __enter__(self) -> "BuildWatcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class _BuildEventHandler(FileSystemEventHandler):
    """Watchdog handler forwarding new files to the watcher."""

    def __init__(self, watcher: BuildWatcher):
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle(_as_str(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle(_as_str(event.dest_path))


def _as_str(path: Union[str, bytes]) -> str:
    return path.decode() if isinstance(path, bytes) else path
