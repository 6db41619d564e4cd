"""
hotgraft Plugin Interfaces

The stable contract between the host and reloadable plugin modules.
These classes live in the host and are never reloaded, so plugin code
built at different times can be recognized by the same checks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

F = TypeVar("F", bound=Callable)

COMMAND_ATTR = "__hotgraft_command__"


class Plugin(ABC):
    """
    Marker base for a plugin's entry type.

    A module must define exactly one concrete subclass. On a cold start
    the class is allocated, its ``__init__`` is run when it can be called
    without arguments, and then ``startup()`` is invoked if defined.
    Neither runs on a hot reload; the state is migrated instead.

    Example:
        class Tracer(Plugin):
            hits: int = 0

            def startup(self) -> None:
                self.hits = 0

            @command("trace.hits")
            def show_hits(self, args: list[str]) -> None:
                print(self.hits)
    """


class Hotloadable(ABC):
    """Objects that want to be told when they were migrated by a hot reload."""

    @abstractmethod
    def on_hotload(self) -> None:
        """Called once per migrated object after the reload completes."""


@dataclass(frozen=True)
class CommandMeta:
    """Command binding metadata attached to a method."""

    name: str
    debug_only: bool = False


def command(name: str, debug_only: bool = False) -> Callable[[F], F]:
    """
    Mark a method as a command handler.

    The method must return ``None`` (always succeeds) or ``bool``.
    """
    if not name:
        raise ValueError("Command name must not be empty")

    def decorator(fn: F) -> F:
        setattr(fn, COMMAND_ATTR, CommandMeta(name=name, debug_only=debug_only))
        return fn

    return decorator


def get_command_meta(fn: Callable) -> Optional[CommandMeta]:
    """Return the command metadata of a function, if any."""
    meta = getattr(fn, COMMAND_ATTR, None)
    return meta if isinstance(meta, CommandMeta) else None
