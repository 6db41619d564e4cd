"""
hotgraft Migration Tests

Tests for type schemas, the migration context and the graph adapter.
"""

import collections
import dataclasses
import threading
from typing import Any, ClassVar, Dict, List, Optional, Tuple

import numpy as np
import pytest
from structlog.testing import capture_logs

from hotgraft.adapter import GraphAdapter, UnsupportedMigrationError
from hotgraft.interfaces import Hotloadable
from hotgraft.migration import MigrationContext, MigrationError
from hotgraft.schema import ElementKind, FieldKind, FieldSpec, classify, is_value, schema_for


# === Test Types ===


class Leaf:
    value: int = 0


class Sample:
    count: int
    ratio: Optional[float]
    samples: List[int]
    table: Dict[str, int]
    coords: Tuple[int, ...]
    weights: np.ndarray
    children: List[Leaf]
    leaf: Leaf
    anything: Any
    limit: ClassVar[int] = 3


class DerivedSample(Sample):
    extra: str = "x"


@dataclasses.dataclass
class Settings:
    name: str
    retries: int = 3
    tags: List[str] = dataclasses.field(default_factory=list)
    note: Optional[str] = None


class Listener(Hotloadable):
    def on_hotload(self) -> None:
        pass


class Exploding:
    def __init__(self):
        raise AssertionError("constructor must not run")


def migrate(old_module, new_module, old_instance, type_name: str = "Root"):
    """Migrate ``old_instance`` into the same-named type of ``new_module``."""
    adapter = GraphAdapter(new_module, old_module)
    with MigrationContext() as ctx:
        return adapter.migrate(ctx, old_instance, getattr(new_module, type_name))


# === Schema Tests ===


class TestSchema:
    """Test field schemas."""

    def test_fields_in_declaration_order(self):
        """Annotated fields are listed in order, class variables excluded."""
        schema = schema_for(Sample)
        assert schema.names == (
            "count", "ratio", "samples", "table", "coords",
            "weights", "children", "leaf", "anything",
        )
        assert "limit" not in schema

    def test_base_fields_first(self):
        """Inherited fields come before the subclass's own."""
        names = schema_for(DerivedSample).names
        assert names[0] == "count"
        assert names[-1] == "extra"
        assert schema_for(DerivedSample).get("extra").default == "x"

    def test_field_kinds(self):
        """Each annotation lands in the right category."""
        schema = schema_for(Sample)
        assert schema.get("count").kind == FieldKind.VALUE
        assert schema.get("ratio").kind == FieldKind.VALUE
        assert schema.get("samples").kind == FieldKind.COLLECTION
        assert schema.get("table").kind == FieldKind.COLLECTION
        assert schema.get("coords").kind == FieldKind.ARRAY
        assert schema.get("weights").kind == FieldKind.ARRAY
        assert schema.get("children").kind == FieldKind.COLLECTION
        assert schema.get("leaf").kind == FieldKind.REFERENCE
        assert schema.get("anything").kind == FieldKind.OPAQUE

    def test_element_kinds(self):
        """Container element types are classified for the migration policy."""
        schema = schema_for(Sample)
        assert schema.get("samples").element_kinds() == {ElementKind.VALUE}
        assert schema.get("coords").element_kinds() == {ElementKind.VALUE}
        assert schema.get("children").element_kinds() == {ElementKind.REFERENCE}

    def test_schema_cached_on_class(self):
        """The schema is built once and stored on the class."""
        first = schema_for(Sample)
        assert schema_for(Sample) is first
        assert Sample.__dict__["__hotgraft_schema__"] is first

    def test_classify_optional_reference(self):
        """Optional[X] is classified as X."""
        kind, declared, _ = classify(Optional[Leaf])
        assert kind == FieldKind.REFERENCE
        assert declared is Leaf

    def test_is_value(self):
        """Runtime value checks look inside tuples and arrays."""
        assert is_value((1, "a", 2.0))
        assert not is_value((1, Leaf()))
        assert is_value(np.zeros(3))
        assert not is_value(np.array([Leaf()], dtype=object))

    def test_field_spec_defaults(self):
        """A spec built without a default has none; factories run per call."""
        plain = FieldSpec(name="count", kind=FieldKind.VALUE)
        assert not plain.has_default()
        assert plain.make_default() is None

        valued = FieldSpec(name="limit", kind=FieldKind.VALUE, default=3)
        assert valued.has_default()
        assert valued.make_default() == 3

        factory = FieldSpec(name="items", kind=FieldKind.COLLECTION, default_factory=list)
        assert factory.make_default() == []
        assert factory.make_default() is not factory.make_default()

    def test_dataclass_defaults(self):
        """Dataclass fields without a default are reported as such."""
        schema = schema_for(Settings)
        assert not schema.get("name").has_default()
        assert schema.get("retries").make_default() == 3
        assert schema.get("tags").make_default() == []
        assert schema.get("note").has_default()
        assert schema.get("note").make_default() is None


# === Migration Context Tests ===


class TestMigrationContext:
    """Test the migration context."""

    def test_create_skips_constructor(self):
        """Objects are allocated without running __init__."""
        with MigrationContext() as ctx:
            obj = ctx.create(Exploding)
            assert isinstance(obj, Exploding)
            assert ctx.new_objects == (obj,)

    def test_map_and_lookup(self):
        """Mapped objects are found by identity."""
        old, new = Leaf(), Leaf()
        with MigrationContext() as ctx:
            assert ctx.lookup(old) is None
            ctx.map_reference(old, new)
            assert ctx.lookup(old) is new
            assert ctx.is_mapped(old)
            assert len(ctx) == 1

    def test_duplicate_mapping_rejected(self):
        """An old object maps to exactly one new object."""
        old = Leaf()
        with MigrationContext() as ctx:
            ctx.map_reference(old, Leaf())
            with pytest.raises(MigrationError):
                ctx.map_reference(old, Leaf())

    def test_objects_implementing_in_creation_order(self):
        """Capability queries return new objects in creation order."""
        with MigrationContext() as ctx:
            first = ctx.create(Listener)
            ctx.create(Leaf)
            second = ctx.create(Listener)
            assert ctx.objects_implementing(Listener) == [first, second]
            assert ctx.objects_implementing(Hotloadable) == [first, second]

    def test_disposed_context_rejects_use(self):
        """Leaving the with block disposes the context."""
        with MigrationContext() as ctx:
            ctx.map_reference(Leaf(), Leaf())

        assert ctx.disposed
        assert len(ctx) == 0
        with pytest.raises(MigrationError):
            ctx.create(Leaf)


# === Graph Adapter Tests ===


VALUES_SOURCE = '''
import datetime
import decimal
import enum
from dataclasses import dataclass
from typing import NamedTuple, Optional

from hotgraft import Plugin


class Color(enum.Enum):
    RED = 1
    GREEN = 2


@dataclass(frozen=True)
class Point:
    x: int
    y: int


class Span(NamedTuple):
    start: int
    end: int


class Root(Plugin):
    count: int = 0
    ratio: float = 0.0
    name: str = ""
    flag: bool = False
    blob: bytes = b""
    amount: decimal.Decimal = decimal.Decimal(0)
    when: Optional[datetime.date] = None
    color: Color = Color.RED
    origin: Point = Point(0, 0)
    span: Span = Span(0, 0)
'''

GRAPH_SOURCE = '''
import threading
from typing import Optional

from hotgraft import Plugin


class Node:
    value: int = 0
    peer: Optional["Node"] = None


class SpecialNode(Node):
    label: str = ""


class Root(Plugin):
    first: Node
    second: Node
    event: threading.Event
'''

COLLECTIONS_SOURCE = '''
import enum
from typing import Deque, Dict, List, Set, Tuple

import numpy as np

from hotgraft import Plugin


class Color(enum.Enum):
    RED = 1
    GREEN = 2


class Root(Plugin):
    samples: List[int]
    table: Dict[str, int]
    seen: Set[str]
    recent: Deque[float]
    colors: List[Color]
    coords: Tuple[int, ...]
    weights: np.ndarray
    raw: bytearray
'''


class TestValueTransfer:
    """Value-typed fields are copied."""

    def test_values_copied(self, load_module):
        """Primitive and value fields keep their values."""
        import datetime
        import decimal

        old_module = load_module(VALUES_SOURCE)
        new_module = load_module(VALUES_SOURCE)

        old = old_module.Root()
        old.count = 7
        old.ratio = 2.5
        old.name = "seven"
        old.flag = True
        old.blob = b"\x00\x01"
        old.amount = decimal.Decimal("1.25")
        old.when = datetime.date(2024, 5, 1)

        new = migrate(old_module, new_module, old)

        assert isinstance(new, new_module.Root)
        assert new.count == 7
        assert new.ratio == 2.5
        assert new.name == "seven"
        assert new.flag is True
        assert new.blob == b"\x00\x01"
        assert new.amount == decimal.Decimal("1.25")
        assert new.when == datetime.date(2024, 5, 1)

    def test_reloaded_value_types_rebuilt(self, load_module):
        """Enums, frozen dataclasses and named tuples become the new versions."""
        old_module = load_module(VALUES_SOURCE)
        new_module = load_module(VALUES_SOURCE)

        old = old_module.Root()
        old.color = old_module.Color.GREEN
        old.origin = old_module.Point(3, 4)
        old.span = old_module.Span(1, 2)

        new = migrate(old_module, new_module, old)

        assert new.color is new_module.Color.GREEN
        assert type(new.origin) is new_module.Point
        assert new.origin == new_module.Point(3, 4)
        assert type(new.span) is new_module.Span
        assert tuple(new.span) == (1, 2)

    def test_missing_enum_member_uses_default(self, load_module):
        """An enum member removed in the new build falls back to the default."""
        old_module = load_module(VALUES_SOURCE)
        new_module = load_module(VALUES_SOURCE.replace("    GREEN = 2\n", ""))

        old = old_module.Root()
        old.color = old_module.Color.GREEN

        with capture_logs() as logs:
            new = migrate(old_module, new_module, old)

        assert new.color is new_module.Color.RED
        assert any(
            log["event"] == "Value has no counterpart in the new type, using default"
            and log["field"] == "color"
            for log in logs
        )

    def test_fields_matched_by_name(self, load_module):
        """New fields get defaults; removed fields are dropped."""
        old_module = load_module('''
            from hotgraft import Plugin

            class Root(Plugin):
                hits: int = 0
                legacy: str = "old"
        ''')
        new_module = load_module('''
            from dataclasses import dataclass, field
            from typing import List, Optional

            from hotgraft import Plugin

            @dataclass
            class Root(Plugin):
                hits: int = 0
                label: str = "fresh"
                history: List[int] = field(default_factory=list)
                note: Optional[str] = None
        ''')

        old = old_module.Root()
        old.hits = 12

        new = migrate(old_module, new_module, old)

        assert new.hits == 12
        assert new.label == "fresh"
        assert new.history == []
        assert new.note is None
        assert "legacy" not in vars(new)

    def test_adapting_fields_logged(self, load_module):
        """Each field is logged at debug level."""
        old_module = load_module(VALUES_SOURCE)
        new_module = load_module(VALUES_SOURCE)

        with capture_logs() as logs:
            migrate(old_module, new_module, old_module.Root())

        fields = [log["field"] for log in logs if log["event"] == "Adapting field"]
        assert fields[:3] == ["count", "ratio", "name"]


class TestReferenceMigration:
    """Reference fields are migrated recursively."""

    def test_shared_reference_identity_preserved(self, load_module):
        """Two fields pointing at one old object point at one new object."""
        old_module = load_module(GRAPH_SOURCE)
        new_module = load_module(GRAPH_SOURCE)

        old = old_module.Root()
        shared = old_module.Node()
        shared.value = 5
        old.first = shared
        old.second = shared
        old.event = threading.Event()

        new = migrate(old_module, new_module, old)

        assert new.first is new.second
        assert isinstance(new.first, new_module.Node)
        assert not isinstance(new.first, old_module.Node)
        assert new.first.value == 5

    def test_cyclic_graph_terminates(self, load_module):
        """A and B referencing each other migrate to A' and B' doing the same."""
        old_module = load_module(GRAPH_SOURCE)
        new_module = load_module(GRAPH_SOURCE)

        a = old_module.Node()
        b = old_module.Node()
        a.value, b.value = 1, 2
        a.peer = b
        b.peer = a

        old = old_module.Root()
        old.first = a
        old.second = b
        old.event = threading.Event()

        new = migrate(old_module, new_module, old)

        assert new.first.peer is new.second
        assert new.second.peer is new.first
        assert (new.first.value, new.second.value) == (1, 2)

    def test_subclass_resolved_by_name(self, load_module):
        """A subclass instance stays a subclass instance."""
        old_module = load_module(GRAPH_SOURCE)
        new_module = load_module(GRAPH_SOURCE)

        special = old_module.SpecialNode()
        special.label = "special"
        old = old_module.Root()
        old.first = special
        old.second = old_module.Node()
        old.event = threading.Event()

        new = migrate(old_module, new_module, old)

        assert type(new.first) is new_module.SpecialNode
        assert new.first.label == "special"
        assert type(new.second) is new_module.Node

    def test_host_objects_shared(self, load_module):
        """Objects of host types survive the reload as they are."""
        old_module = load_module(GRAPH_SOURCE)
        new_module = load_module(GRAPH_SOURCE)

        old = old_module.Root()
        old.first = old_module.Node()
        old.second = old_module.Node()
        old.event = threading.Event()

        new = migrate(old_module, new_module, old)

        assert new.event is old.event

    def test_object_without_counterpart_fails(self, load_module):
        """An old-module object whose class was removed cannot be migrated."""
        old_module = load_module('''
            from hotgraft import Hotloadable, Plugin

            class Helper(Hotloadable):
                def on_hotload(self) -> None:
                    pass

            class Root(Plugin):
                helper: Hotloadable
        ''')
        new_module = load_module('''
            from hotgraft import Hotloadable, Plugin

            class Root(Plugin):
                helper: Hotloadable
        ''')

        old = old_module.Root()
        old.helper = old_module.Helper()

        with pytest.raises(MigrationError, match="no counterpart"):
            migrate(old_module, new_module, old)


UNTYPED_SOURCE = '''
import enum
from typing import Any, Union

from hotgraft import Plugin


class Mode(enum.Enum):
    ON = 1
    OFF = 2


class Helper:
    count: int = 0


class Other:
    name: str = ""


class Root(Plugin):
    typed: Helper
    loose: Any
    either: Union[Helper, Other]
    choice: Union[Mode, Helper]
    unresolved: "NotDefinedAnywhere"
'''


class TestUntypedMigration:
    """Fields without a usable declared type are resolved from the object."""

    def test_any_field_migrated(self, load_module):
        """An old-module object in an Any field becomes a new-module object."""
        old_module = load_module(UNTYPED_SOURCE)
        new_module = load_module(UNTYPED_SOURCE)

        old = old_module.Root()
        old.loose = old_module.Helper()
        old.loose.count = 3

        new = migrate(old_module, new_module, old)

        assert type(new.loose) is new_module.Helper
        assert new.loose.count == 3

    def test_identity_shared_with_typed_field(self, load_module):
        """One old object reached through a typed and an Any field stays one object."""
        old_module = load_module(UNTYPED_SOURCE)
        new_module = load_module(UNTYPED_SOURCE)

        old = old_module.Root()
        helper = old_module.Helper()
        old.typed = helper
        old.loose = helper

        new = migrate(old_module, new_module, old)

        assert new.typed is new.loose
        assert type(new.typed) is new_module.Helper

    def test_union_field_migrated(self, load_module):
        """A union of classes resolves to the runtime class."""
        old_module = load_module(UNTYPED_SOURCE)
        new_module = load_module(UNTYPED_SOURCE)

        old = old_module.Root()
        old.either = old_module.Other()
        old.either.name = "other"

        new = migrate(old_module, new_module, old)

        assert type(new.either) is new_module.Other
        assert new.either.name == "other"

    def test_unresolved_annotation_migrated(self, load_module):
        old_module = load_module(UNTYPED_SOURCE)
        new_module = load_module(UNTYPED_SOURCE)

        old = old_module.Root()
        old.unresolved = old_module.Helper()

        new = migrate(old_module, new_module, old)

        assert schema_for(new_module.Root).get("unresolved").kind == FieldKind.OPAQUE
        assert type(new.unresolved) is new_module.Helper

    def test_reloaded_enum_in_union_rebuilt(self, load_module):
        """A value of a reloaded enum held in a mixed union is rebuilt."""
        old_module = load_module(UNTYPED_SOURCE)
        new_module = load_module(UNTYPED_SOURCE)

        old = old_module.Root()
        old.choice = old_module.Mode.OFF

        new = migrate(old_module, new_module, old)

        assert new.choice is new_module.Mode.OFF

    def test_host_objects_and_values_kept(self, load_module):
        old_module = load_module(UNTYPED_SOURCE)
        new_module = load_module(UNTYPED_SOURCE)

        event = threading.Event()
        old = old_module.Root()
        old.loose = event
        old.either = None
        old.unresolved = 42

        new = migrate(old_module, new_module, old)

        assert new.loose is event
        assert new.either is None
        assert new.unresolved == 42

    def test_removed_class_fails(self, load_module):
        """An object in an Any field whose class is gone cannot be migrated."""
        old_module = load_module('''
            from typing import Any

            from hotgraft import Plugin

            class Helper:
                pass

            class Root(Plugin):
                loose: Any
        ''')
        new_module = load_module('''
            from typing import Any

            from hotgraft import Plugin

            class Root(Plugin):
                loose: Any
        ''')

        old = old_module.Root()
        old.loose = old_module.Helper()

        with pytest.raises(MigrationError, match="no counterpart"):
            migrate(old_module, new_module, old)


class TestCollectionMigration:
    """Collections move, arrays copy."""

    def make_old(self, module):
        old = module.Root()
        old.samples = [1, 2, 3]
        old.table = {"a": 1}
        old.seen = {"x"}
        old.recent = collections.deque([0.5, 1.5])
        old.colors = [module.Color.RED, module.Color.GREEN]
        old.coords = (1, 2, 3)
        old.weights = np.arange(4, dtype=np.float64)
        old.raw = bytearray(b"abc")
        return old

    def test_list_ownership_moved(self, load_module):
        """The same container moves over and the old field is cleared."""
        old_module = load_module(COLLECTIONS_SOURCE)
        new_module = load_module(COLLECTIONS_SOURCE)
        old = self.make_old(old_module)
        samples = old.samples
        table = old.table

        new = migrate(old_module, new_module, old)

        assert new.samples is samples
        assert new.samples == [1, 2, 3]
        assert new.table is table
        assert new.seen == {"x"}
        assert list(new.recent) == [0.5, 1.5]
        assert old.samples is None
        assert old.table is None
        assert old.seen is None
        assert old.recent is None

    def test_stale_elements_rebuilt_in_place(self, load_module):
        """Old enum members inside a moved list become new members."""
        old_module = load_module(COLLECTIONS_SOURCE)
        new_module = load_module(COLLECTIONS_SOURCE)
        old = self.make_old(old_module)
        colors = old.colors

        new = migrate(old_module, new_module, old)

        assert new.colors is colors
        assert new.colors == [new_module.Color.RED, new_module.Color.GREEN]

    def test_arrays_copied(self, load_module):
        """Value arrays are copied, not shared."""
        old_module = load_module(COLLECTIONS_SOURCE)
        new_module = load_module(COLLECTIONS_SOURCE)
        old = self.make_old(old_module)

        new = migrate(old_module, new_module, old)

        assert new.coords == (1, 2, 3)
        np.testing.assert_array_equal(new.weights, np.arange(4, dtype=np.float64))
        assert not np.shares_memory(new.weights, old.weights)
        assert new.raw == bytearray(b"abc")
        assert new.raw is not old.raw

    @pytest.mark.parametrize("annotation", ["List[Node]", "Tuple[Node, ...]"])
    def test_reference_elements_unsupported(self, load_module, annotation):
        """Containers of reference-typed elements fail loudly."""
        source = f'''
            from typing import List, Tuple

            from hotgraft import Plugin

            class Node:
                value: int = 0

            class Root(Plugin):
                nodes: {annotation}
        '''
        old_module = load_module(source)
        new_module = load_module(source)
        old = old_module.Root()
        old.nodes = [old_module.Node()] if annotation.startswith("List") else (old_module.Node(),)

        with pytest.raises(UnsupportedMigrationError) as exc_info:
            migrate(old_module, new_module, old)

        assert exc_info.value.field_name == "nodes"
        assert exc_info.value.type_name == "Root"

    def test_object_array_unsupported(self, load_module):
        """An ndarray of objects is an array of references."""
        source = '''
            import numpy as np

            from hotgraft import Plugin

            class Root(Plugin):
                items: np.ndarray
        '''
        old_module = load_module(source)
        new_module = load_module(source)
        old = old_module.Root()
        old.items = np.array([object(), object()], dtype=object)

        with pytest.raises(UnsupportedMigrationError):
            migrate(old_module, new_module, old)
