"""
hotgraft Cleanup

Reclaiming memory held by an unloaded module, and deleting its files
once nothing has them open anymore.
"""

from __future__ import annotations

import gc
import threading
import warnings
from pathlib import Path
from typing import Iterable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class FileCleanupWarning(UserWarning):
    """An old module file could not be deleted. Never raised, only recorded."""

    def __init__(self, path: Path, cause: Optional[BaseException] = None):
        self.path = path
        self.cause = cause
        super().__init__(f"Could not delete '{path}': {cause}")


def collect_garbage(max_passes: int = 50) -> int:
    """
    Run collection passes until one finds nothing unreachable.

    Returns:
        Number of passes run.
    """
    passes = 0
    while passes < max_passes:
        passes += 1
        if gc.collect() == 0:
            break
    else:
        logger.warning("Garbage collection did not settle", passes=passes)
    return passes


class DeferredCleanup:
    """
    Background deletion of files left behind by a reload.

    Deletion runs once, on a daemon timer, ``delay`` seconds after
    ``start()``. Missing files count as removed. Files that cannot be
    deleted produce a ``FileCleanupWarning`` which is logged and kept in
    ``warnings``; their paths are in ``failed_paths`` for a later retry.

    Args:
        paths: Files to delete.
        delay: Grace delay in seconds.
        keep: Paths that must survive, such as the module now loaded.
    """

    def __init__(self, paths: Iterable[Path], delay: float = 2.0, keep: Iterable[Path] = ()):
        keep_resolved = {_resolve(p) for p in keep}
        unique: List[Path] = []
        for path in paths:
            path = Path(path)
            if _resolve(path) in keep_resolved or path in unique:
                continue
            unique.append(path)

        self.paths = unique
        self.delay = delay
        self.removed: List[Path] = []
        self.warnings: List[FileCleanupWarning] = []
        self._timer: Optional[threading.Timer] = None
        self._done = threading.Event()
        self._cancelled = False

    def start(self) -> "DeferredCleanup":
        if self._timer is not None:
            return self
        self._timer = threading.Timer(self.delay, self.run)
        self._timer.daemon = True
        self._timer.name = "hotgraft-cleanup"
        self._timer.start()
        logger.debug("Scheduled file cleanup", paths=[str(p) for p in self.paths], delay=self.delay)
        return self

    def run(self) -> None:
        """Delete the files now."""
        try:
            for path in self.paths:
                self._delete(path)
        finally:
            self._done.set()

        if self.removed:
            logger.info("Removed old module files", paths=[str(p) for p in self.removed])

    def _delete(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            warning = FileCleanupWarning(path, e)
            self.warnings.append(warning)
            logger.warning("Failed to delete old module file", path=str(path), error=str(e))
            warnings.warn(warning, stacklevel=2)
            return
        self.removed.append(path)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the deletion has run. Returns False on timeout."""
        return self._done.wait(timeout)

    def cancel(self) -> bool:
        """Cancel a deletion that has not started yet."""
        if self._timer is None or self._done.is_set():
            return False
        self._timer.cancel()
        self._cancelled = True
        self._done.set()
        return True

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def failed_paths(self) -> List[Path]:
        return [w.path for w in self.warnings]

    def pending_paths(self) -> List[Path]:
        """Paths still owed deletion: all of them before a run, the failures after."""
        if self._cancelled or not self._done.is_set():
            return list(self.paths)
        return self.failed_paths


def _resolve(path: Path) -> Path:
    return Path(path).resolve()
