"""
hotgraft Plugin Manager

Host-side coordinator: keeps the plugin records, the shared command table
and the reload orchestrator together.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from hotgraft.commands import CommandTable
from hotgraft.config import ReloadConfig, get_config
from hotgraft.reloader import ReloadOrchestrator
from hotgraft.types import PluginInfo, PluginRecord, ReloadResult
from hotgraft.watcher import BuildWatcher

logger = structlog.get_logger(__name__)


class PluginManager:
    """
    Central plugin management for a host process.

    Example:
        manager = PluginManager()
        manager.load("tracer", "build/tracer_1.py")
        manager.dispatch("trace.hits")
        manager.reload("tracer", "build/tracer_2.py")
    """

    def __init__(
        self,
        config: Optional[ReloadConfig] = None,
        commands: Optional[CommandTable] = None,
        is_debugging: Optional[Callable[[], bool]] = None,
    ):
        self.config = config or get_config()
        self.commands = commands or CommandTable(is_debugging=is_debugging)
        self.orchestrator = ReloadOrchestrator(self.commands, self.config)

        self._plugins: Dict[str, PluginRecord] = {}
        self._watchers: Dict[str, BuildWatcher] = {}
        self._lock = threading.Lock()

    # === Registry ===

    def add(self, name: str, description: str = "") -> PluginRecord:
        """Register a plugin without loading it. Returns the existing record if present."""
        with self._lock:
            record = self._plugins.get(name)
            if record is None:
                record = PluginRecord(info=PluginInfo(name=name, description=description))
                self._plugins[name] = record
                logger.debug("Added plugin", plugin=name)
            return record

    def get(self, name: str) -> Optional[PluginRecord]:
        return self._plugins.get(name)

    def list(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self._plugins.values()]

    def _require(self, name: str) -> PluginRecord:
        record = self._plugins.get(name)
        if record is None:
            raise KeyError(f"Unknown plugin: {name}")
        return record

    # === Loading ===

    def load(self, name: str, path: Union[str, Path], description: str = "") -> ReloadResult:
        """Add the plugin if needed, then load (or reload) it from ``path``."""
        return self.orchestrator.reload(self.add(name, description), path)

    def reload(self, name: str, path: Union[str, Path]) -> ReloadResult:
        """
        Reload a known plugin.

        Raises:
            KeyError: If the plugin was never added.
        """
        return self.orchestrator.reload(self._require(name), path)

    def unload(self, name: str) -> List[str]:
        """Unload a plugin and forget it."""
        record = self._require(name)
        watcher = self._watchers.pop(name, None)
        if watcher is not None:
            watcher.stop()
        removed = self.orchestrator.unload(record)
        with self._lock:
            self._plugins.pop(name, None)
        return removed

    def dispatch(self, command: str, args: Optional[List[str]] = None) -> bool:
        return self.commands.dispatch(command, args)

    # === Watching ===

    def watch(self, name: str, directory: Union[str, Path], pattern: str = "*.py") -> BuildWatcher:
        """Reload ``name`` whenever a new build lands in ``directory``."""
        self.add(name)
        if name in self._watchers:
            self._watchers.pop(name).stop()

        watcher = BuildWatcher(directory, lambda path: self._on_build(name, path), pattern=pattern)
        watcher.start()
        self._watchers[name] = watcher
        return watcher

    def _on_build(self, name: str, path: Path) -> None:
        result = self.reload(name, path)
        if not result.succeeded:
            logger.warning("Build did not load", plugin=name, path=str(path), error=str(result.error))

    # === Shutdown ===

    def shutdown(self, cleanup_timeout: float = 5.0) -> None:
        """Stop watchers, unload every plugin and wait for pending file cleanup."""
        for watcher in list(self._watchers.values()):
            watcher.stop()
        self._watchers.clear()

        for name in list(self._plugins):
            self.unload(name)

        if not self.orchestrator.wait_for_cleanups(cleanup_timeout):
            logger.warning("File cleanup still pending at shutdown", timeout=cleanup_timeout)
        logger.info("Plugin manager shut down")

    def get_stats(self) -> Dict[str, Any]:
        """Get manager statistics."""
        return {
            "plugins": len(self._plugins),
            "loaded": sum(1 for r in self._plugins.values() if r.instance is not None),
            "watching": sorted(self._watchers),
            "commands": self.commands.get_stats(),
            "reloads": self.orchestrator.get_stats(),
        }
