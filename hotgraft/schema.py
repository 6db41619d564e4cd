"""
hotgraft Type Schemas

Declarative field tables for plugin state types. A schema lists a
class's annotated fields in declaration order (base classes first) and
sorts each one into the category that decides how its value migrates.
"""

from __future__ import annotations

import array
import collections
import dataclasses
import datetime
import decimal
import fractions
import inspect
import pathlib
import sys
import types
import typing
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Set, Tuple

import numpy as np

MISSING = dataclasses.MISSING

# Field has no declared default
NO_DEFAULT = object()

_SCHEMA_ATTR = "__hotgraft_schema__"

VALUE_TYPES: Tuple[type, ...] = (
    int,
    float,
    complex,
    bool,
    str,
    bytes,
    type(None),
    frozenset,
    range,
    decimal.Decimal,
    fractions.Fraction,
    datetime.datetime,
    datetime.date,
    datetime.time,
    datetime.timedelta,
    uuid.UUID,
    pathlib.PurePath,
    np.generic,
)

ARRAY_TYPES: Tuple[type, ...] = (tuple, np.ndarray, array.array, bytearray)

COLLECTION_TYPES: Tuple[type, ...] = (list, collections.deque, dict, set)

_UNION_TYPES = (typing.Union, types.UnionType)


class FieldKind(str, Enum):
    """How a field's value crosses from the old graph to the new one."""

    VALUE = "value"              # copied
    ARRAY = "array"              # copied, value elements only
    COLLECTION = "collection"    # moved, value elements only
    REFERENCE = "reference"      # migrated recursively or shared
    OPAQUE = "opaque"            # resolved from the runtime object


class ElementKind(str, Enum):
    VALUE = "value"
    REFERENCE = "reference"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FieldSpec:
    """One migratable field of a type."""

    name: str
    kind: FieldKind
    declared_type: Optional[type] = None
    element_types: Tuple[Any, ...] = ()
    default: Any = NO_DEFAULT
    default_factory: Any = NO_DEFAULT

    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT or self.default_factory is not NO_DEFAULT

    def make_default(self) -> Any:
        """Fresh default value, None when the field declares none."""
        if self.default_factory is not NO_DEFAULT:
            return self.default_factory()
        if self.default is not NO_DEFAULT:
            return self.default
        return None

    def element_kinds(self) -> Set[ElementKind]:
        return {element_kind(tp) for tp in self.element_types}


@dataclass(frozen=True)
class TypeSchema:
    """Ordered field table of one class."""

    type_name: str
    fields: Tuple[FieldSpec, ...]
    _by_name: Dict[str, FieldSpec] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_by_name", {f.name: f for f in self.fields})

    def get(self, name: str) -> Optional[FieldSpec]:
        return self._by_name.get(name)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def __iter__(self) -> Iterator[FieldSpec]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name


# === Value classification ===


def is_named_tuple(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, tuple) and hasattr(tp, "_fields")


def is_value_type(tp: Any) -> bool:
    """Check whether instances of a type are self-contained values."""
    if not isinstance(tp, type):
        return False
    if issubclass(tp, VALUE_TYPES) or issubclass(tp, Enum):
        return True
    if is_named_tuple(tp):
        return True
    return dataclasses.is_dataclass(tp) and tp.__dataclass_params__.frozen


def is_value(obj: Any) -> bool:
    """Check whether a runtime object can be copied by value."""
    if type(obj) is tuple:
        return all(is_value(item) for item in obj)
    if isinstance(obj, np.ndarray):
        return obj.dtype != object
    return is_value_type(type(obj))


def unwrap_optional(tp: Any) -> Any:
    """Optional[X] and X | None become X."""
    if typing.get_origin(tp) in _UNION_TYPES:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def element_kind(tp: Any) -> ElementKind:
    """Classify a container element annotation."""
    if isinstance(tp, str) or tp is Any or tp is object or tp is Ellipsis:
        return ElementKind.UNKNOWN

    tp = unwrap_optional(tp)
    origin = typing.get_origin(tp)
    args = [a for a in typing.get_args(tp) if a is not Ellipsis]

    if origin in _UNION_TYPES:
        kinds = {element_kind(a) for a in args}
        if kinds == {ElementKind.VALUE}:
            return ElementKind.VALUE
        if ElementKind.REFERENCE in kinds:
            return ElementKind.REFERENCE
        return ElementKind.UNKNOWN

    declared = origin if origin is not None else tp
    if not isinstance(declared, type):
        return ElementKind.UNKNOWN
    if declared is np.object_:
        return ElementKind.REFERENCE
    if is_value_type(declared) or issubclass(declared, np.ndarray):
        return ElementKind.VALUE

    # Nested containers are values when everything inside them is
    if issubclass(declared, (tuple, list, collections.deque, set, dict)):
        if not args:
            return ElementKind.UNKNOWN
        kinds = {element_kind(a) for a in args}
        if kinds == {ElementKind.VALUE}:
            return ElementKind.VALUE
        if ElementKind.REFERENCE in kinds:
            return ElementKind.REFERENCE
        return ElementKind.UNKNOWN

    return ElementKind.REFERENCE


def _array_elements(declared: type, args: Tuple[Any, ...]) -> Tuple[Any, ...]:
    if issubclass(declared, np.ndarray):
        # NDArray[np.float64] is ndarray[Any, dtype[np.float64]]
        if len(args) == 2:
            dtype_args = typing.get_args(args[1])
            if dtype_args and dtype_args[0] is not Any:
                return (dtype_args[0],)
        return ()
    if issubclass(declared, (bytearray, array.array)):
        return (int,)
    if len(args) == 2 and args[1] is Ellipsis:
        return (args[0],)
    if args == ((),):
        return ()
    return tuple(args)


def classify(annotation: Any) -> Tuple[FieldKind, Optional[type], Tuple[Any, ...]]:
    """
    Sort an annotation into a field category.

    Returns:
        Tuple of (kind, declared type, element annotations)
    """
    if isinstance(annotation, str):
        return FieldKind.OPAQUE, None, ()

    tp = unwrap_optional(annotation)
    if tp is Any or tp is object:
        return FieldKind.OPAQUE, None, ()

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)

    if origin in _UNION_TYPES:
        if all(element_kind(a) == ElementKind.VALUE for a in args):
            return FieldKind.VALUE, None, args
        return FieldKind.OPAQUE, None, args

    declared = origin if origin is not None else tp
    if not isinstance(declared, type):
        return FieldKind.OPAQUE, None, ()

    if is_named_tuple(declared):
        return FieldKind.VALUE, declared, ()
    if issubclass(declared, ARRAY_TYPES):
        return FieldKind.ARRAY, declared, _array_elements(declared, args)
    if issubclass(declared, COLLECTION_TYPES):
        return FieldKind.COLLECTION, declared, tuple(args)
    if is_value_type(declared):
        return FieldKind.VALUE, declared, ()
    return FieldKind.REFERENCE, declared, ()


# === Schema construction ===


def _is_classvar(annotation: Any) -> bool:
    if isinstance(annotation, str):
        return annotation.startswith(("ClassVar", "typing.ClassVar"))
    return annotation is typing.ClassVar or typing.get_origin(annotation) is typing.ClassVar


def _resolve_hints(cls: type) -> Dict[str, Any]:
    """Annotations across the MRO, base first, resolved where possible."""
    try:
        return typing.get_type_hints(cls)
    except (NameError, TypeError, AttributeError):
        pass

    # Resolve one annotation at a time; failures stay as strings (opaque)
    hints: Dict[str, Any] = {}
    for base in reversed(cls.__mro__):
        if base is object:
            continue
        module = sys.modules.get(base.__module__)
        globalns = vars(module) if module else {}
        for name, annotation in inspect.get_annotations(base).items():
            if isinstance(annotation, str):
                try:
                    annotation = eval(annotation, globalns, dict(vars(base)))
                except (NameError, SyntaxError, TypeError, AttributeError):
                    pass
            hints[name] = annotation
    return hints


def _field_defaults(cls: type, name: str, dc_field: Optional[dataclasses.Field]) -> Tuple[Any, Any]:
    if dc_field is not None:
        default = NO_DEFAULT if dc_field.default is MISSING else dc_field.default
        factory = NO_DEFAULT if dc_field.default_factory is MISSING else dc_field.default_factory
        return default, factory
    for base in cls.__mro__:
        if name in base.__dict__:
            value = base.__dict__[name]
            if not inspect.isdatadescriptor(value):
                return value, NO_DEFAULT
            break
    return NO_DEFAULT, NO_DEFAULT


def build_schema(cls: type) -> TypeSchema:
    """Build the field table of a class from its annotations."""
    hints = _resolve_hints(cls)
    dc_fields: Dict[str, dataclasses.Field] = (
        {f.name: f for f in dataclasses.fields(cls)} if dataclasses.is_dataclass(cls) else {}
    )

    specs = []
    for name, annotation in hints.items():
        if _is_classvar(annotation) or isinstance(annotation, dataclasses.InitVar):
            continue
        kind, declared, elements = classify(annotation)
        default, default_factory = _field_defaults(cls, name, dc_fields.get(name))
        specs.append(FieldSpec(
            name=name,
            kind=kind,
            declared_type=declared,
            element_types=elements,
            default=default,
            default_factory=default_factory,
        ))

    return TypeSchema(type_name=cls.__qualname__, fields=tuple(specs))


def schema_for(cls: type) -> TypeSchema:
    """
    Cached schema of a class.

    The schema is stored on the class itself, so it goes away together
    with the class when a plugin module is unloaded.
    """
    schema = cls.__dict__.get(_SCHEMA_ATTR)
    if schema is None:
        schema = build_schema(cls)
        try:
            setattr(cls, _SCHEMA_ATTR, schema)
        except (TypeError, AttributeError):
            # Built-in and extension types are immutable; rebuilt on each call
            pass
    return schema

