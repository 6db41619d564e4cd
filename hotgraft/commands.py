"""
hotgraft Command Table

Global, name-keyed registry of command handlers. Plugins contribute
handlers through the lifecycle walker; hosts dispatch by name.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

CommandHandler = Callable[[List[str]], bool]


class CommandError(Exception):
    """Base class for command table errors."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"Command '{name}': {message}")


class CommandConflictError(CommandError):
    """Raised when a command name is already registered."""

    def __init__(self, name: str, owner: Optional[str] = None):
        self.owner = owner
        held_by = f" by '{owner}'" if owner else ""
        super().__init__(name, f"already registered{held_by}")


class UnknownCommandError(CommandError):
    """Raised when dispatching a name nobody has registered."""

    def __init__(self, name: str):
        super().__init__(name, "unknown command")


class CommandUnavailableError(CommandError):
    """Raised when a debug-only command is dispatched outside a debug session."""

    def __init__(self, name: str):
        super().__init__(name, "only available while debugging")


@dataclass
class CommandEntry:
    """A registered command."""

    name: str
    callback: CommandHandler
    debug_only: bool = False
    owner: Optional[str] = None
    registered_at: datetime = field(default_factory=datetime.now)
    calls: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "debug_only": self.debug_only,
            "owner": self.owner,
            "registered_at": self.registered_at.isoformat(),
            "calls": self.calls,
            "failures": self.failures,
        }


class CommandTable:
    """
    Thread-safe command registry.

    A name maps to at most one handler at any time; registering a held
    name is an error rather than an overwrite.

    Args:
        is_debugging: Predicate gating debug-only commands. Without one,
            debug-only commands are always available.
    """

    def __init__(self, is_debugging: Optional[Callable[[], bool]] = None):
        self._commands: Dict[str, CommandEntry] = {}
        self._lock = threading.RLock()
        self._is_debugging = is_debugging

    def register(
        self,
        name: str,
        debug_only: bool,
        callback: CommandHandler,
        owner: Optional[str] = None,
    ) -> CommandEntry:
        """
        Register a command handler.

        Raises:
            CommandConflictError: If the name is already registered.
        """
        with self._lock:
            existing = self._commands.get(name)
            if existing is not None:
                raise CommandConflictError(name, existing.owner)

            entry = CommandEntry(name=name, callback=callback, debug_only=debug_only, owner=owner)
            self._commands[name] = entry

        logger.debug("Registered command", command=name, owner=owner, debug_only=debug_only)
        return entry

    def remove(self, name: str) -> bool:
        """
        Remove a command.

        Returns:
            True if the command was registered.
        """
        with self._lock:
            entry = self._commands.pop(name, None)

        if entry is None:
            return False
        logger.debug("Removed command", command=name, owner=entry.owner)
        return True

    def get(self, name: str) -> Optional[CommandEntry]:
        with self._lock:
            return self._commands.get(name)

    def names(self, owner: Optional[str] = None) -> List[str]:
        """Registered names, optionally filtered by owner."""
        with self._lock:
            return sorted(
                name for name, entry in self._commands.items()
                if owner is None or entry.owner == owner
            )

    def dispatch(self, name: str, args: Optional[List[str]] = None) -> bool:
        """
        Invoke a command.

        Returns:
            The handler's success flag.

        Raises:
            UnknownCommandError: If no handler is registered under ``name``.
            CommandUnavailableError: If the command is debug-only and no
                debug session is active.
        """
        with self._lock:
            entry = self._commands.get(name)
            if entry is None:
                raise UnknownCommandError(name)
            if entry.debug_only and self._is_debugging is not None and not self._is_debugging():
                raise CommandUnavailableError(name)
            entry.calls += 1

        # Handlers run outside the lock so they may dispatch other commands
        ok = bool(entry.callback(list(args or [])))
        if not ok:
            with self._lock:
                entry.failures += 1
        return ok

    def clear(self) -> None:
        with self._lock:
            self._commands.clear()

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._commands

    def __len__(self) -> int:
        with self._lock:
            return len(self._commands)

    def get_stats(self) -> Dict[str, Any]:
        """Get command table statistics."""
        with self._lock:
            by_owner: Dict[str, int] = {}
            for entry in self._commands.values():
                key = entry.owner or "<none>"
                by_owner[key] = by_owner.get(key, 0) + 1

            return {
                "total_commands": len(self._commands),
                "debug_only": sum(1 for e in self._commands.values() if e.debug_only),
                "by_owner": by_owner,
                "total_calls": sum(e.calls for e in self._commands.values()),
            }
