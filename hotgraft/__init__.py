"""
hotgraft - Live Code Reload with State Migration

Swaps a running plugin's code for a freshly built version without losing
its in-memory state. The live object graph is migrated field by field
into the new types, command handlers are re-bound, and the old module is
retired once nothing references it.

Basic Usage:
    from hotgraft import PluginManager

    manager = PluginManager()

    # Cold start: construct the plugin and register its commands
    manager.load("tracer", "build/tracer_1.py")
    manager.dispatch("trace.hits")

    # Hot reload: migrate the live state into the new build
    result = manager.reload("tracer", "build/tracer_2.py")
    assert result.succeeded

Writing a Plugin:
    from hotgraft import Hotloadable, Plugin, command

    class Tracer(Plugin, Hotloadable):
        hits: int = 0
        history: list[int]

        def startup(self) -> None:
            self.history = []

        def on_hotload(self) -> None:
            print("reloaded with", self.hits, "hits")

        @command("trace.hits")
        def show_hits(self, args: list[str]) -> None:
            print(self.hits)
"""

from hotgraft.adapter import GraphAdapter, UnsupportedMigrationError
from hotgraft.cleanup import DeferredCleanup, FileCleanupWarning, collect_garbage
from hotgraft.commands import (
    CommandConflictError,
    CommandEntry,
    CommandError,
    CommandTable,
    CommandUnavailableError,
    UnknownCommandError,
)
from hotgraft.config import ReloadConfig, get_config, reset_config, set_config
from hotgraft.interfaces import CommandMeta, Hotloadable, Plugin, command
from hotgraft.loader import LoadError, ModuleContext, find_entry_type
from hotgraft.log import setup_logging
from hotgraft.manager import PluginManager
from hotgraft.migration import MigrationContext, MigrationError
from hotgraft.reloader import ConstructionError, ReloadOrchestrator
from hotgraft.schema import FieldKind, FieldSpec, TypeSchema, schema_for
from hotgraft.types import (
    InvalidTransitionError,
    PluginInfo,
    PluginRecord,
    ReloadError,
    ReloadResult,
    ReloadState,
)
from hotgraft.walker import LifecycleWalker, is_system_type
from hotgraft.watcher import BuildWatcher

__version__ = "1.0.0"

__all__ = [
    # === Core ===
    "PluginManager",
    "ReloadOrchestrator",

    # === Plugin Contract ===
    "Plugin",
    "Hotloadable",
    "command",
    "CommandMeta",

    # === Loading ===
    "ModuleContext",
    "find_entry_type",

    # === Migration ===
    "MigrationContext",
    "GraphAdapter",
    "FieldKind",
    "FieldSpec",
    "TypeSchema",
    "schema_for",

    # === Commands ===
    "CommandTable",
    "CommandEntry",
    "LifecycleWalker",
    "is_system_type",

    # === Cleanup ===
    "DeferredCleanup",
    "collect_garbage",

    # === Records & Results ===
    "PluginInfo",
    "PluginRecord",
    "ReloadResult",
    "ReloadState",

    # === Errors ===
    "ReloadError",
    "LoadError",
    "MigrationError",
    "UnsupportedMigrationError",
    "ConstructionError",
    "InvalidTransitionError",
    "CommandError",
    "CommandConflictError",
    "UnknownCommandError",
    "CommandUnavailableError",
    "FileCleanupWarning",

    # === Configuration ===
    "ReloadConfig",
    "get_config",
    "set_config",
    "reset_config",
    "setup_logging",

    # === Watching ===
    "BuildWatcher",

    "__version__",
]
