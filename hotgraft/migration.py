"""
hotgraft Migration Context

Per-reload scratch state: which old object became which new object, and
every object allocated along the way.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from hotgraft.types import ReloadError


class MigrationError(ReloadError):
    """Raised when an object graph cannot be migrated."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class MigrationContext:
    """
    Identity map and allocation log for one migration.

    The map is keyed by object identity. Old objects are held alongside
    their counterparts so their ids stay valid for the lifetime of the
    context. Dispose the context (or leave its ``with`` block) as soon as
    the reload is done, since it keeps the old graph alive.
    """

    def __init__(self):
        self._references: Dict[int, Tuple[Any, Any]] = {}
        self._new_objects: List[Any] = []
        self._disposed = False

    def __enter__(self) -> "MigrationContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def dispose(self) -> None:
        self._references.clear()
        self._new_objects.clear()
        self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed

    def create(self, cls: type) -> Any:
        """Allocate an instance of ``cls`` without running ``__init__``."""
        self._check()
        obj = cls.__new__(cls)
        self._new_objects.append(obj)
        return obj

    def map_reference(self, old: Any, new: Any) -> None:
        """
        Record that ``new`` replaces ``old``.

        Raises:
            MigrationError: If ``old`` is already mapped.
        """
        self._check()
        key = id(old)
        if key in self._references:
            raise MigrationError(
                f"{type(old).__name__} object at {key:#x} is already mapped"
            )
        self._references[key] = (old, new)

    def lookup(self, old: Any) -> Optional[Any]:
        """Return the counterpart of ``old``, or None if it has none yet."""
        self._check()
        entry = self._references.get(id(old))
        return entry[1] if entry else None

    def is_mapped(self, old: Any) -> bool:
        return id(old) in self._references

    def objects_implementing(self, capability: type) -> List[Any]:
        """New objects that are instances of ``capability``, in creation order."""
        self._check()
        return [obj for obj in self._new_objects if isinstance(obj, capability)]

    @property
    def new_objects(self) -> Tuple[Any, ...]:
        return tuple(self._new_objects)

    def __len__(self) -> int:
        return len(self._references)

    def _check(self) -> None:
        if self._disposed:
            raise MigrationError("migration context has been disposed")
