"""
hotgraft Module Loader

Loads a plugin module into its own private slot so that it can later be
dropped without touching any other loaded code.
"""

from __future__ import annotations

import importlib.util
import inspect
import itertools
import sys
from pathlib import Path
from types import ModuleType
from typing import List, Optional, Union

import structlog

from hotgraft.interfaces import Plugin
from hotgraft.types import ReloadError

logger = structlog.get_logger(__name__)

_context_ids = itertools.count(1)


class LoadError(ReloadError):
    """Raised when a plugin module cannot be loaded."""

    def __init__(self, path: Union[str, Path], message: str, cause: Optional[Exception] = None):
        self.path = Path(path)
        self.message = message
        self.cause = cause
        super().__init__(f"Failed to load plugin module '{path}': {message}")


class ModuleContext:
    """
    An isolated, unloadable home for one plugin module.

    Every context registers its module under a unique private name, so two
    builds of the same plugin never share a ``sys.modules`` entry. A context
    holds at most one module; once unloaded it cannot be reused.
    """

    def __init__(self, prefix: str = "_hotgraft_plugin"):
        self.name = f"{prefix}_{next(_context_ids)}"
        self.module: Optional[ModuleType] = None
        self.path: Optional[Path] = None
        self._unloaded = False

    def load(self, path: Union[str, Path]) -> ModuleType:
        """
        Load a module file into this context.

        Raises:
            LoadError: If the file is missing, fails to execute, or the
                context is already in use.
        """
        path = Path(path)

        if self._unloaded:
            raise LoadError(path, "context has been unloaded, create a new one")
        if self.module is not None:
            raise LoadError(path, f"context already holds {self.path}")
        if not path.is_file():
            raise LoadError(path, "module file not found")

        spec = importlib.util.spec_from_file_location(self.name, path)
        if not spec or not spec.loader:
            raise LoadError(path, "cannot create module spec")

        module = importlib.util.module_from_spec(spec)

        # Must be importable while executing (dataclasses, typing look it up)
        sys.modules[self.name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            self._drop_modules()
            raise LoadError(path, f"{type(e).__name__}: {e}", e) from e

        self.module = module
        self.path = path
        logger.debug("Loaded module", context=self.name, path=str(path))
        return module

    def entry_type(self) -> type:
        """Locate the plugin entry type of the loaded module."""
        if self.module is None:
            raise LoadError(self.path or "<none>", "no module loaded")
        return find_entry_type(self.module, self.path)

    def unload(self) -> bool:
        """
        Detach the module from the interpreter.

        Returns:
            True if a module was unloaded, False if there was nothing to do.
        """
        if self.module is None:
            return False

        self._drop_modules()
        self.module = None
        self._unloaded = True
        logger.debug("Unloaded module", context=self.name, path=str(self.path))
        return True

    def is_loaded(self) -> bool:
        return self.module is not None

    def owns(self, cls: type) -> bool:
        """Check whether a class was defined by this context's module."""
        return self.module is not None and getattr(cls, "__module__", None) == self.name

    def _drop_modules(self) -> None:
        """Remove the module and any submodules from sys.modules."""
        prefix = f"{self.name}."
        for name in [n for n in sys.modules if n == self.name or n.startswith(prefix)]:
            sys.modules.pop(name, None)


def find_entry_type(module: ModuleType, path: Optional[Path] = None) -> type:
    """
    Find the single plugin entry type defined in a module.

    Only concrete ``Plugin`` subclasses defined by the module itself count;
    classes it merely imports are ignored.

    Raises:
        LoadError: If there is no entry type or more than one.
    """
    entries: List[type] = []
    for obj in vars(module).values():
        if (
            isinstance(obj, type)
            and issubclass(obj, Plugin)
            and obj is not Plugin
            and obj.__module__ == module.__name__
            and not inspect.isabstract(obj)
        ):
            entries.append(obj)

    source = path or getattr(module, "__file__", module.__name__)
    if len(entries) > 1:
        names = ", ".join(sorted(e.__name__ for e in entries))
        raise LoadError(source, f"module has multiple Plugin classes ({names}), can have only one entry")
    if not entries:
        raise LoadError(source, "module has no Plugin class")
    return entries[0]
