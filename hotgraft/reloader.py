"""
hotgraft Reload Orchestrator

Drives one plugin through a reload: tear down its commands, load the new
module, cold-start or migrate the live instance, register the new
commands, notify migrated objects and retire the old module.
"""

from __future__ import annotations

import importlib.util
import inspect
import threading
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog

from hotgraft.adapter import GraphAdapter
from hotgraft.cleanup import DeferredCleanup, collect_garbage
from hotgraft.commands import CommandTable
from hotgraft.config import ReloadConfig, get_config
from hotgraft.interfaces import Hotloadable
from hotgraft.loader import LoadError, ModuleContext
from hotgraft.migration import MigrationContext, MigrationError
from hotgraft.types import (
    RELOAD_TRANSITIONS,
    InvalidTransitionError,
    LiveInstance,
    PluginRecord,
    ReloadError,
    ReloadResult,
    ReloadState,
)
from hotgraft.walker import LifecycleWalker

logger = structlog.get_logger(__name__)

TransitionCallback = Callable[[str, ReloadState, ReloadState], None]


class ConstructionError(ReloadError):
    """Raised when a plugin's constructor or startup hook fails on a cold start."""

    def __init__(self, type_name: str, message: str, cause: Optional[Exception] = None):
        self.type_name = type_name
        self.message = message
        self.cause = cause
        super().__init__(f"Failed to construct {type_name}: {message}")


class ReloadOrchestrator:
    """
    Reload state machine for plugins sharing one command table.

    Reloads of the same plugin are serialized; reloads of different
    plugins may run concurrently. ``reload()`` never raises for a failed
    reload; the failure is returned in ``ReloadResult.error``.
    """

    def __init__(self, commands: CommandTable, config: Optional[ReloadConfig] = None):
        self.commands = commands
        self.config = config or get_config()

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._callbacks: List[TransitionCallback] = []
        self._cleanups: Dict[str, DeferredCleanup] = {}
        self._history: List[ReloadResult] = []

    def _get_lock(self, plugin: str) -> threading.Lock:
        """Get or create lock for plugin."""
        with self._locks_guard:
            if plugin not in self._locks:
                self._locks[plugin] = threading.Lock()
            return self._locks[plugin]

    def on_transition(self, callback: TransitionCallback) -> None:
        """Observe state changes as ``callback(plugin, old_state, new_state)``."""
        self._callbacks.append(callback)

    def walker_for(self, record: PluginRecord) -> LifecycleWalker:
        return LifecycleWalker(
            self.commands,
            owner=record.name,
            system_modules=self.config.system_modules,
        )

    # === Reload ===

    def reload(self, record: PluginRecord, path: Union[str, Path]) -> ReloadResult:
        """
        Reload a plugin from a module file.

        Args:
            record: The plugin to reload. Mutated in place.
            path: The new module build.

        Returns:
            The reload result; ``result.succeeded`` tells whether the new
            module is live.
        """
        path = Path(path)
        with self._get_lock(record.name):
            result = self._reload(record, path)

        with self._locks_guard:
            self._history.append(result)
            if len(self._history) > self.config.history_size:
                del self._history[:-self.config.history_size]
        return result

    def _reload(self, record: PluginRecord, path: Path) -> ReloadResult:
        result = ReloadResult(plugin=record.name, module_path=path)
        walker = self.walker_for(record)
        old_live = record.live
        old_loader = record.loader
        result.hot_reload = old_live is not None

        logger.info(
            "Reloading plugin",
            plugin=record.name,
            path=str(path),
            hot=result.hot_reload,
        )

        # Old commands go first, even if the new module turns out broken
        if old_live is not None:
            self._transition(record, result, ReloadState.UNREGISTERING)
            result.unregistered = walker.unregister(old_live.instance)

        self._transition(record, result, ReloadState.LOADING)
        context = ModuleContext(self.config.module_prefix)
        try:
            module = context.load(path)
            entry_type = context.entry_type()
        except LoadError as e:
            context.unload()
            return self._abort(record, result, e)
        result.entry_type = entry_type.__qualname__

        hotloadables: List[Any] = []
        try:
            if old_live is None:
                self._transition(record, result, ReloadState.COLD_START)
                instance = self.cold_start(entry_type)
            else:
                self._transition(record, result, ReloadState.MIGRATING)
                instance, hotloadables = self.migrate(
                    old_live,
                    module,
                    old_loader.module if old_loader is not None else None,
                    entry_type,
                )
        except ReloadError as e:
            context.unload()
            return self._abort(record, result, e)
        except Exception as e:
            context.unload()
            error = MigrationError(f"{type(e).__name__}: {e}", e)
            error.__cause__ = e
            return self._abort(record, result, error)

        # Readers see the old pair or the new one, never a mix
        record.swap_instance(instance, entry_type)
        old_live = None

        self._transition(record, result, ReloadState.REGISTERING)
        result.registered = walker.register(instance)

        if result.hot_reload:
            self._transition(record, result, ReloadState.NOTIFYING)
            self._notify(hotloadables, result)
        hotloadables = []

        self._transition(record, result, ReloadState.FINALIZING)
        self._finalize(record, result, context, path)

        record.reload_count += 1
        self._transition(record, result, ReloadState.IDLE)
        record.last_result = result.finish(ReloadState.IDLE)

        logger.info(
            "Reloaded plugin",
            plugin=record.name,
            entry_type=result.entry_type,
            hot=result.hot_reload,
            commands=len(result.registered),
            duration_ms=round(result.duration_ms, 2),
        )
        return result

    def cold_start(self, entry_type: type) -> Any:
        """
        Construct a fresh root instance.

        ``__init__`` runs when it can be called without arguments, then
        ``startup()`` if the type defines it.

        Raises:
            ConstructionError: If either raises.
        """
        name = entry_type.__qualname__
        with MigrationContext() as ctx:
            instance = ctx.create(entry_type)

        init = entry_type.__init__
        if init is not object.__init__ and _bindable_without_args(init, instance):
            try:
                init(instance)
            except Exception as e:
                raise ConstructionError(name, f"__init__ raised {type(e).__name__}: {e}", e) from e

        startup = getattr(instance, "startup", None)
        if callable(startup):
            try:
                startup()
            except Exception as e:
                raise ConstructionError(name, f"startup() raised {type(e).__name__}: {e}", e) from e

        return instance

    def migrate(
        self,
        old_live: LiveInstance,
        module: ModuleType,
        old_module: Optional[ModuleType],
        entry_type: type,
    ) -> Tuple[Any, List[Any]]:
        """
        Migrate the old root instance into a new ``entry_type`` instance.

        Returns:
            The new root and the migrated objects that want ``on_hotload``.
        """
        adapter = GraphAdapter(module, old_module)
        with MigrationContext() as ctx:
            instance = adapter.migrate(ctx, old_live.instance, entry_type)
            hotloadables = ctx.objects_implementing(Hotloadable)
            logger.debug("Migrated object graph", objects=len(ctx), type=entry_type.__qualname__)
        return instance, hotloadables

    def _notify(self, hotloadables: List[Any], result: ReloadResult) -> None:
        for obj in hotloadables:
            try:
                obj.on_hotload()
            except Exception as e:
                logger.error(
                    "Reload hook failed",
                    plugin=result.plugin,
                    type=type(obj).__qualname__,
                    error=str(e),
                    exc_info=True,
                )
                result.hook_errors.append(f"{type(obj).__qualname__}: {type(e).__name__}: {e}")
                continue
            result.notified += 1

    def _finalize(
        self,
        record: PluginRecord,
        result: ReloadResult,
        context: ModuleContext,
        path: Path,
    ) -> None:
        old_loader = record.loader
        old_path = record.module_path

        if old_loader is not None:
            old_loader.unload()
            result.gc_passes = collect_garbage(self.config.gc_max_passes)
            if self.config.delete_old_modules and old_path is not None:
                result.cleanup = self._schedule_cleanup(record.name, old_path, path)

        # Only now does the record point at the new module
        record.loader = context
        record.module_path = path

    def _schedule_cleanup(self, plugin: str, old_path: Path, current: Path) -> DeferredCleanup:
        paths = self.cleanup_paths(old_path)

        # Retry whatever the previous cleanup did not get to
        previous = self._cleanups.pop(plugin, None)
        if previous is not None:
            previous.cancel()
            paths.extend(previous.pending_paths())

        cleanup = DeferredCleanup(paths, delay=self.config.cleanup_delay_seconds, keep=[current])
        self._cleanups[plugin] = cleanup.start()
        return cleanup

    def cleanup_paths(self, module_path: Path) -> List[Path]:
        """Files belonging to a module build: the module, its symbols, its bytecode cache."""
        paths = [module_path]
        if self.config.symbols_suffix:
            paths.append(module_path.with_suffix(self.config.symbols_suffix))
        if self.config.remove_bytecode_cache and module_path.suffix == ".py":
            paths.append(Path(importlib.util.cache_from_source(str(module_path))))
        return paths

    def _abort(self, record: PluginRecord, result: ReloadResult, error: ReloadError) -> ReloadResult:
        self._transition(record, result, ReloadState.ABORTED)
        result.error = error
        record.last_result = result.finish(ReloadState.ABORTED)
        logger.error(
            "Reload aborted",
            plugin=record.name,
            path=str(result.module_path),
            error_type=type(error).__name__,
            error=str(error),
            commands_removed=len(result.unregistered),
        )
        # Tracebacks hold the frames of the discarded graph
        _release_frames(error)
        return result

    def _transition(self, record: PluginRecord, result: ReloadResult, target: ReloadState) -> None:
        current = record.state
        if target not in RELOAD_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(record.name, current, target)

        record.state = target
        result.state = target

        for callback in self._callbacks:
            try:
                callback(record.name, current, target)
            except Exception as e:
                logger.error("Transition callback error", plugin=record.name, error=str(e))

        logger.debug("Reload state changed", plugin=record.name, old=current.value, new=target.value)

    # === Unload ===

    def unload(self, record: PluginRecord) -> List[str]:
        """
        Retire a plugin: remove its commands, drop its instance, unload its module.

        The module file itself is kept.

        Returns:
            Command names that were removed.
        """
        with self._get_lock(record.name):
            removed: List[str] = []
            live = record.live
            if live is not None:
                removed = self.walker_for(record).unregister(live.instance)
            live = None
            record.clear_instance()

            if record.loader is not None:
                record.loader.unload()
                record.loader = None
                collect_garbage(self.config.gc_max_passes)

            logger.info("Unloaded plugin", plugin=record.name, commands_removed=len(removed))
            return removed

    # === Bookkeeping ===

    def wait_for_cleanups(self, timeout: Optional[float] = None) -> bool:
        """Wait for scheduled file deletions. Returns False if any is still pending."""
        return all(c.wait(timeout) for c in list(self._cleanups.values()))

    def get_history(self, limit: Optional[int] = None, plugin: Optional[str] = None) -> List[ReloadResult]:
        with self._locks_guard:
            history = [r for r in self._history if plugin is None or r.plugin == plugin]
        if limit is not None:
            history = history[-limit:]
        return history

    def get_stats(self) -> Dict[str, Any]:
        """Get reload statistics."""
        with self._locks_guard:
            history = list(self._history)
        return {
            "total_reloads": len(history),
            "succeeded": sum(1 for r in history if r.succeeded),
            "aborted": sum(1 for r in history if r.state == ReloadState.ABORTED),
            "hot_reloads": sum(1 for r in history if r.hot_reload and r.succeeded),
            "cold_starts": sum(1 for r in history if not r.hot_reload and r.succeeded),
            "pending_cleanups": sum(1 for c in self._cleanups.values() if not c.done),
        }


def _bindable_without_args(init: Callable, instance: Any) -> bool:
    try:
        inspect.signature(init).bind(instance)
    except TypeError:
        logger.debug("Constructor needs arguments, skipping it", type=type(instance).__qualname__)
        return False
    except ValueError:
        return False
    return True


def _release_frames(error: BaseException) -> None:
    """Drop the tracebacks of an exception and everything it chains to."""
    seen: set = set()
    pending = [error]
    while pending:
        exc = pending.pop()
        if exc is None or id(exc) in seen:
            continue
        seen.add(id(exc))
        exc.__traceback__ = None
        pending.extend((exc.__cause__, exc.__context__))
