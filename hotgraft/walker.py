"""
hotgraft Lifecycle Walker

Finds command handlers on every object reachable from a plugin's root
instance and registers them with, or removes them from, a command table.
"""

from __future__ import annotations

import inspect
import sys
import typing
from typing import Any, Callable, Iterable, Iterator, List, Optional, Set, Tuple

import structlog

from hotgraft.commands import CommandConflictError, CommandHandler, CommandTable
from hotgraft.interfaces import CommandMeta, get_command_meta
from hotgraft.schema import is_value_type

logger = structlog.get_logger(__name__)

_STDLIB_MODULES = frozenset(sys.stdlib_module_names) | {"builtins"}


def is_system_type(cls: type, system_modules: Iterable[str] = ()) -> bool:
    """
    Check whether instances of ``cls`` are never walked.

    Builtins, standard library types, value types and types from the
    given top-level packages are system types.
    """
    module = getattr(cls, "__module__", None) or "builtins"
    top = module.split(".", 1)[0]
    if top in _STDLIB_MODULES or top in system_modules:
        return True
    return is_value_type(cls)


class LifecycleWalker:
    """
    Depth-first walker binding ``@command`` methods to a command table.

    Each object is visited once, so cycles and shared references are
    handled by the visited set.

    Args:
        commands: Table to register with.
        owner: Name recorded on registered entries. Unregistration only
            removes entries held by the same owner.
        system_modules: Top-level packages whose objects are not walked.
    """

    def __init__(
        self,
        commands: CommandTable,
        owner: Optional[str] = None,
        system_modules: Iterable[str] = (),
    ):
        self.commands = commands
        self.owner = owner
        self.system_modules = frozenset(system_modules)

    def register(self, root: Any) -> List[str]:
        """
        Register every command found in the graph under ``root``.

        Returns:
            Names that were registered.
        """
        registered: List[str] = []
        for obj, meta, method in self.find_commands(root):
            handler = wrap_handler(method, meta)
            if handler is None:
                continue
            try:
                self.commands.register(meta.name, meta.debug_only, handler, owner=self.owner)
            except CommandConflictError as e:
                logger.warning(
                    "Command name already taken, skipping",
                    command=meta.name,
                    type=type(obj).__qualname__,
                    held_by=e.owner,
                )
                continue
            registered.append(meta.name)
        return registered

    def unregister(self, root: Any) -> List[str]:
        """
        Remove every command found in the graph under ``root``, then any
        other entry still held by this walker's owner.

        Returns:
            Names that were removed.
        """
        removed: List[str] = []
        for _, meta, _ in self.find_commands(root):
            entry = self.commands.get(meta.name)
            if entry is None:
                continue
            if self.owner is not None and entry.owner != self.owner:
                continue
            if self.commands.remove(meta.name):
                removed.append(meta.name)

        # Handlers of objects detached from the graph since registration
        if self.owner is not None:
            for name in self.commands.names(owner=self.owner):
                if self.commands.remove(name):
                    removed.append(name)
        return removed

    def find_commands(self, root: Any) -> Iterator[Tuple[Any, CommandMeta, Callable]]:
        """Yield (object, metadata, bound method) for each command in the graph."""
        for obj in self.walk(root):
            for meta, method in _command_methods(obj):
                yield obj, meta, method

    def walk(self, root: Any) -> Iterator[Any]:
        """Objects reachable from ``root`` in depth-first order, system types excluded."""
        if root is None:
            return
        visited: Set[int] = set()
        stack = [root]
        while stack:
            obj = stack.pop()
            if id(obj) in visited:
                continue
            visited.add(id(obj))
            if obj is not root and is_system_type(type(obj), self.system_modules):
                continue

            yield obj

            children = [
                child for child in _children(obj)
                if child is not None and id(child) not in visited
            ]
            # Reversed so children come out in declaration order
            stack.extend(reversed(children))


def _children(obj: Any) -> List[Any]:
    children: List[Any] = []

    instance_dict = getattr(obj, "__dict__", None)
    if isinstance(instance_dict, dict):
        children.extend(instance_dict.values())

    cls = type(obj)
    for klass in cls.__mro__:
        slots = klass.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for slot in slots:
            if slot in ("__dict__", "__weakref__"):
                continue
            try:
                children.append(getattr(obj, slot))
            except AttributeError:
                continue

    for klass in cls.__mro__:
        for name, attr in klass.__dict__.items():
            if not isinstance(attr, property):
                continue
            try:
                children.append(attr.__get__(obj, cls))
            except AttributeError:
                continue
            except Exception as e:
                logger.warning(
                    "Property raised while walking, skipping",
                    type=cls.__qualname__,
                    property=name,
                    error=str(e),
                )

    return children


def _command_methods(obj: Any) -> Iterator[Tuple[CommandMeta, Callable]]:
    """Command methods of an object, most derived definition first."""
    seen: Set[str] = set()
    cls = type(obj)
    for klass in cls.__mro__:
        for attr_name, attr in klass.__dict__.items():
            if attr_name in seen:
                continue
            seen.add(attr_name)

            fn = attr.__func__ if isinstance(attr, (staticmethod, classmethod)) else attr
            if not callable(fn):
                continue
            meta = get_command_meta(fn)
            if meta is None:
                continue
            yield meta, attr.__get__(obj, cls)


def _return_annotation(fn: Callable) -> Any:
    try:
        hints = typing.get_type_hints(fn)
    except (NameError, TypeError, AttributeError):
        hints = getattr(fn, "__annotations__", {})
    return hints.get("return", inspect.Signature.empty)


def wrap_handler(method: Callable, meta: CommandMeta) -> Optional[CommandHandler]:
    """
    Adapt a bound method to the uniform ``handler(args) -> bool`` shape.

    Methods returning nothing always succeed; methods returning ``bool``
    report their own result. Any other return type is not a command.
    """
    returns = _return_annotation(method)
    if returns in (inspect.Signature.empty, None, type(None), "None"):
        always_ok = True
    elif returns in (bool, "bool"):
        always_ok = False
    else:
        logger.warning(
            "Command method must return None or bool, skipping",
            command=meta.name,
            method=getattr(method, "__qualname__", repr(method)),
            returns=str(returns),
        )
        return None

    try:
        takes_args = bool(inspect.signature(method).parameters)
    except (TypeError, ValueError):
        takes_args = True

    def handler(args: List[str]) -> bool:
        result = method(args) if takes_args else method()
        return True if always_ok else bool(result)

    handler.__name__ = meta.name
    handler.__qualname__ = getattr(method, "__qualname__", meta.name)
    return handler
