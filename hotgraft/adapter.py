"""
hotgraft Graph Adapter

Populates a freshly allocated object graph from its predecessor. Fields
are matched by name; each field's category (see hotgraft.schema) decides
whether its value is copied, moved, migrated recursively or shared.
"""

from __future__ import annotations

import array
import collections
import copy
import dataclasses
from enum import Enum
from types import ModuleType
from typing import Any, Optional, Sequence

import numpy as np
import structlog

from hotgraft.migration import MigrationContext, MigrationError
from hotgraft.schema import (
    MISSING,
    ElementKind,
    FieldKind,
    FieldSpec,
    is_named_tuple,
    is_value,
    is_value_type,
    schema_for,
)

logger = structlog.get_logger(__name__)


class UnsupportedMigrationError(MigrationError):
    """Raised for a field whose state this adapter cannot carry over."""

    def __init__(self, type_name: str, field_name: str, reason: str):
        self.type_name = type_name
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Unsupported state transfer of {type_name}.{field_name}: {reason}")


def _set(obj: Any, name: str, value: Any) -> None:
    object.__setattr__(obj, name, value)


class GraphAdapter:
    """
    Field-by-field copier between two versions of a type graph.

    Args:
        module: The newly loaded plugin module. Classes defined there are
            migrated; classes defined anywhere else are host code that
            survives the reload and are shared by reference.
        old_module: The module being replaced. Objects of its classes are
            never carried over as they are.
    """

    def __init__(self, module: ModuleType, old_module: Optional[ModuleType] = None):
        self.module = module
        self._new_name = module.__name__
        self._old_name = old_module.__name__ if old_module is not None else None

    def migrate(self, ctx: MigrationContext, old_instance: Any, new_type: type) -> Any:
        """Allocate a ``new_type`` instance and populate it from ``old_instance``."""
        new_instance = ctx.create(new_type)
        self.adapt_instance(ctx, old_instance, type(old_instance), new_instance, new_type)
        return new_instance

    def adapt_instance(
        self,
        ctx: MigrationContext,
        old_instance: Any,
        old_type: type,
        new_instance: Any,
        new_type: type,
    ) -> None:
        # Map before descending so cycles resolve to this object
        ctx.map_reference(old_instance, new_instance)

        old_schema = schema_for(old_type)
        for spec in schema_for(new_type):
            logger.debug(
                "Adapting field",
                type=new_type.__qualname__,
                field=spec.name,
                kind=spec.kind.value,
            )

            if spec.name not in old_schema:
                _set(new_instance, spec.name, spec.make_default())
                continue

            try:
                old_value = getattr(old_instance, spec.name)
            except AttributeError:
                _set(new_instance, spec.name, spec.make_default())
                continue

            self.adapt_field(ctx, old_instance, old_value, new_instance, new_type, spec)

    def adapt_field(
        self,
        ctx: MigrationContext,
        old_instance: Any,
        old_value: Any,
        new_instance: Any,
        new_type: type,
        spec: FieldSpec,
    ) -> None:
        owner = new_type.__qualname__

        if spec.kind is FieldKind.VALUE:
            target = spec.declared_type or self._counterpart_type(old_value)
            value = self._convert_value(old_value, target)
            if value is MISSING:
                logger.warning(
                    "Value has no counterpart in the new type, using default",
                    type=owner,
                    field=spec.name,
                    value=repr(old_value),
                )
                value = spec.make_default()
            _set(new_instance, spec.name, value)

        elif spec.kind is FieldKind.ARRAY:
            _set(new_instance, spec.name, self._copy_array(old_value, spec, owner))

        elif spec.kind is FieldKind.COLLECTION:
            self._check_elements(old_value, spec, owner)
            if old_value is not None:
                self._convert_elements(old_value, spec, owner)
            # Ownership move: the old instance gives the container up
            _set(new_instance, spec.name, old_value)
            _set(old_instance, spec.name, None)

        elif spec.kind is FieldKind.REFERENCE:
            _set(new_instance, spec.name, self._adapt_reference(ctx, old_value, spec.declared_type))

        else:
            # Untyped: the runtime class decides
            _set(new_instance, spec.name, self._adapt_reference(ctx, old_value, None))

    # === References ===

    def _adapt_reference(self, ctx: MigrationContext, old_value: Any, declared: Optional[type]) -> Any:
        if old_value is None:
            return None

        mapped = ctx.lookup(old_value)
        if mapped is not None:
            return mapped

        if is_value(old_value):
            value = self._convert_value(old_value, self._counterpart_type(old_value))
            if value is MISSING:
                raise MigrationError(f"{old_value!r} has no counterpart in the new module")
            return value

        new_type = self._resolve_type(type(old_value), declared)
        if new_type is None:
            return old_value

        new_value = ctx.create(new_type)
        self.adapt_instance(ctx, old_value, type(old_value), new_value, new_type)
        return new_value

    def _resolve_type(self, old_cls: type, declared: Optional[type]) -> Optional[type]:
        """
        Pick the class to allocate for an old object.

        Returns None for host objects, which are shared instead.
        """
        declared_is_ours = declared is not None and self.owns(declared)
        from_old_module = self._old_name is not None and old_cls.__module__ == self._old_name
        if not (declared_is_ours or from_old_module):
            return None

        candidate = self.find_class(old_cls.__qualname__)
        if candidate is not None and (declared is None or _is_subclass(candidate, declared)):
            return candidate
        if declared_is_ours:
            return declared

        raise MigrationError(
            f"{old_cls.__qualname__} has no counterpart in the new module"
        )

    def _counterpart_type(self, value: Any) -> Optional[type]:
        """New version of the old-module class of ``value``, None for host values."""
        cls = type(value)
        if self._old_name is None or cls.__module__ != self._old_name:
            return None
        target = self.find_class(cls.__qualname__)
        if target is None:
            raise MigrationError(f"{cls.__qualname__} has no counterpart in the new module")
        return target

    def owns(self, cls: type) -> bool:
        return getattr(cls, "__module__", None) == self._new_name

    def find_class(self, qualname: str) -> Optional[type]:
        """Look up a class of the new module by qualified name."""
        obj: Any = self.module
        for part in qualname.split("."):
            obj = getattr(obj, part, None)
            if obj is None:
                return None
        return obj if isinstance(obj, type) and self.owns(obj) else None

    # === Values ===

    def _convert_value(self, value: Any, target: Optional[type]) -> Any:
        """
        Re-express a value as the new version of its type.

        Enums map by member name, records field by field. Returns MISSING
        when an enum member no longer exists.
        """
        if value is None or not isinstance(target, type) or isinstance(value, target):
            return value

        if issubclass(target, Enum) and isinstance(value, Enum):
            return target.__members__.get(value.name, MISSING)

        if dataclasses.is_dataclass(target) and dataclasses.is_dataclass(value):
            return self._rebuild_dataclass(value, target)

        if is_named_tuple(target) and is_named_tuple(type(value)):
            return self._rebuild_named_tuple(value, target)

        return value

    def _rebuild_dataclass(self, value: Any, target: type) -> Any:
        schema = schema_for(target)
        rebuilt = target.__new__(target)
        for spec in schema:
            if hasattr(value, spec.name):
                item = self._convert_value(getattr(value, spec.name), spec.declared_type)
                if item is MISSING:
                    item = spec.make_default()
            else:
                item = spec.make_default()
            _set(rebuilt, spec.name, item)
        return rebuilt

    def _rebuild_named_tuple(self, value: Any, target: type) -> Any:
        schema = schema_for(target)
        defaults = getattr(target, "_field_defaults", {})
        items = []
        for name in target._fields:
            if name in value._fields:
                spec = schema.get(name)
                item = self._convert_value(getattr(value, name), spec.declared_type if spec else None)
                if item is not MISSING:
                    items.append(item)
                    continue
            if name not in defaults:
                raise MigrationError(f"{target.__qualname__}.{name} has no value and no default")
            items.append(defaults[name])
        return target._make(items)

    # === Arrays ===

    def _copy_array(self, value: Any, spec: FieldSpec, owner: str) -> Any:
        if ElementKind.REFERENCE in spec.element_kinds():
            raise UnsupportedMigrationError(owner, spec.name, "array of reference-typed elements")
        if value is None:
            return None

        if isinstance(value, np.ndarray):
            if value.dtype == object:
                raise UnsupportedMigrationError(owner, spec.name, "array of reference-typed elements")
            return np.array(value, copy=True)
        if isinstance(value, bytearray):
            return bytearray(value)
        if isinstance(value, array.array):
            return copy.copy(value)
        if isinstance(value, tuple):
            if not is_value(value):
                raise UnsupportedMigrationError(owner, spec.name, "tuple holds reference-typed elements")
            targets = _positional_targets(spec.element_types, len(value))
            items = []
            for item, target in zip(value, targets):
                converted = self._convert_value(item, target)
                if converted is MISSING:
                    raise MigrationError(f"{owner}.{spec.name}: {item!r} has no counterpart")
                items.append(converted)
            return type(value)(items) if type(value) is tuple else value
        return copy.copy(value)

    # === Collections ===

    def _check_elements(self, value: Any, spec: FieldSpec, owner: str) -> None:
        kinds = spec.element_kinds()
        if ElementKind.REFERENCE in kinds:
            raise UnsupportedMigrationError(owner, spec.name, "collection of reference-typed elements")
        if value is None or (kinds and kinds == {ElementKind.VALUE}):
            return

        items = list(value.keys()) + list(value.values()) if isinstance(value, dict) else list(value)
        if not all(is_value(item) for item in items):
            raise UnsupportedMigrationError(owner, spec.name, "collection holds reference-typed elements")

    def _convert_elements(self, value: Any, spec: FieldSpec, owner: str) -> None:
        """Rebuild stale value elements in place, keeping the container itself."""
        targets = [_value_target(tp) for tp in spec.element_types]

        def convert(item: Any, target: Optional[type]) -> Any:
            converted = self._convert_value(item, target)
            if converted is MISSING:
                raise MigrationError(f"{owner}.{spec.name}: {item!r} has no counterpart")
            return converted

        if isinstance(value, dict):
            key_target = targets[0] if len(targets) == 2 else None
            value_target = targets[1] if len(targets) == 2 else None
            if key_target is None and value_target is None:
                return
            items = [(convert(k, key_target), convert(v, value_target)) for k, v in value.items()]
            value.clear()
            value.update(items)

        elif isinstance(value, set):
            target = targets[0] if len(targets) == 1 else None
            if target is None:
                return
            items = [convert(item, target) for item in value]
            value.clear()
            value.update(items)

        elif isinstance(value, (list, collections.deque)):
            target = targets[0] if len(targets) == 1 else None
            if target is None:
                return
            for index, item in enumerate(value):
                converted = convert(item, target)
                if converted is not item:
                    value[index] = converted


def _value_target(tp: Any) -> Optional[type]:
    return tp if isinstance(tp, type) and is_value_type(tp) else None


def _positional_targets(element_types: Sequence[Any], length: int) -> Sequence[Optional[type]]:
    if len(element_types) == 1:
        return [_value_target(element_types[0])] * length
    if len(element_types) == length:
        return [_value_target(tp) for tp in element_types]
    return [None] * length


def _is_subclass(candidate: type, declared: type) -> bool:
    try:
        return issubclass(candidate, declared)
    except TypeError:
        # Non-runtime protocols and typing constructs
        return False
