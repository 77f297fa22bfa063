# tests/test_resolver.py
"""
Tests for the two-phase type-graph resolver and its registry.
"""

import threading

import pytest

from dbgcodegen.errors import DiagnosticKind, GenerationCancelled, ProviderQueryError, Severity
from dbgcodegen.instances import (
    Aggregate,
    Array,
    CanonicalKey,
    EnumInstance,
    Function,
    InstanceKind,
    Pointer,
    Primitive,
    PrimitiveKind,
    TemplateInstance,
    Undefined,
)
from dbgcodegen.provider import InMemorySymbolProvider, ShapeDescriptor, ShapeKind
from dbgcodegen.resolver import TypeGraphResolver, TypeRegistry
from dbgcodegen.snapshot import loads_snapshot
from tests.conftest import CYCLE_SNAPSHOT, LAYOUT_SNAPSHOT, UNDEFINED_SNAPSHOT


def _resolve_module(text, module):
    resolver = TypeGraphResolver(loads_snapshot(text), module)
    resolver.resolve_all(resolver.provider.list_types(module))
    return resolver


def _by_name(resolver, name):
    return resolver.registry.get(CanonicalKey.named(resolver.module, name))


class _FailingProvider(InMemorySymbolProvider):
    """Fails every lookup of ``Boom``."""

    def lookup_type(self, module, name_or_offset):
        if name_or_offset == "Boom":
            raise RuntimeError("debug session lost")
        return super().lookup_type(module, name_or_offset)


class TestRegistry:

    def test_register_and_alias(self):
        registry = TypeRegistry("m")
        inst = Primitive(PrimitiveKind.INT32)
        key = CanonicalKey.primitive("m", PrimitiveKind.INT32)
        registry.register(key, inst)
        registry.register(key, inst)
        alias = CanonicalKey.named("m", "int32_t")
        registry.alias(alias, inst)
        assert registry.get(alias) is inst
        assert registry.key_of(inst) == key
        assert registry.keys_of(inst) == (key, alias)
        assert len(registry) == 1
        assert alias in registry

    def test_conflicting_registration(self):
        registry = TypeRegistry("m")
        key = CanonicalKey.named("m", "Foo")
        registry.register(key, Aggregate(name="Foo"))
        with pytest.raises(ValueError):
            registry.register(key, Aggregate(name="Foo"))

    def test_alias_of_unregistered(self):
        with pytest.raises(ValueError):
            TypeRegistry("m").alias(CanonicalKey.named("m", "X"), Aggregate(name="X"))

    def test_instances_sorted_by_key(self):
        registry = TypeRegistry("m")
        for name in ("b", "a", "c"):
            registry.register(CanonicalKey.named("m", name), Aggregate(name=name))
        assert [i.name for i in registry.instances()] == ["a", "b", "c"]

    def test_invalid_marks(self):
        registry = TypeRegistry("m")
        inst = Aggregate(name="Bad")
        registry.mark_invalid(inst, "first")
        registry.mark_invalid(inst, "second")
        assert registry.is_invalid(inst)
        assert registry.invalid_reason(inst) == "first"


class TestBasicResolution:

    def test_pointer_cycle(self, app_resolver):
        node = app_resolver.resolve("Node")
        assert isinstance(node, Aggregate)
        assert node.is_finalized
        value, nxt = node.fields
        assert isinstance(value.instance, Primitive)
        assert value.instance.primitive is PrimitiveKind.INT32
        assert isinstance(nxt.instance, Pointer)
        assert nxt.instance.pointee is node
        assert nxt.instance.size == 8
        assert str(app_resolver.registry.key_of(nxt.instance)) == "app!*<app!Node>"

    def test_deduplicated_across_spellings(self, app_resolver):
        assert app_resolver.resolve("Node *") is app_resolver.resolve("Node*")
        assert app_resolver.resolve("NodePtr") is app_resolver.resolve("Node*")
        assert app_resolver.resolve("unsigned") is app_resolver.resolve("unsigned int")

    def test_typedef_alias_key(self, app_resolver):
        registry_type = app_resolver.resolve("Handle")
        assert registry_type is app_resolver.resolve("Registry")
        keys = [str(k) for k in app_resolver.registry.keys_of(registry_type)]
        assert keys == ["app!Registry", "app!Handle"]

    def test_queries_memoized(self, app_provider, app_resolver):
        app_resolver.resolve("Node")
        count = app_provider.query_count
        app_resolver.resolve("Node")
        app_resolver.resolve("Node*")
        assert app_provider.query_count == count

    def test_enum(self, app_resolver):
        color = app_resolver.resolve("Color")
        assert isinstance(color, EnumInstance)
        assert color.members == (("RED", 0), ("GREEN", 1), ("BLUE", 2))
        assert color.underlying.primitive is PrimitiveKind.INT32
        assert color.size == 4

    def test_bitfields(self, app_resolver):
        pixel = app_resolver.resolve("Pixel")
        color, flags, mode = pixel.fields
        assert isinstance(color.instance, EnumInstance)
        assert (flags.bit_offset, flags.bit_width) == (0, 3)
        assert (mode.bit_offset, mode.bit_width) == (3, 5)
        assert not app_resolver.registry.is_invalid(pixel)

    def test_base_types(self, app_resolver):
        derived = app_resolver.resolve("Derived")
        base = app_resolver.resolve("Base")
        assert [(b.instance, b.offset) for b in derived.base_types] == [(base, 0)]
        assert derived.fields[0].instance.primitive is PrimitiveKind.FLOAT64

    def test_function(self, app_resolver):
        callback = app_resolver.resolve("Callback")
        assert isinstance(callback, Function)
        assert callback.name == "Callback"
        assert callback.return_type.primitive is PrimitiveKind.VOID
        assert callback.display_name == "void Callback(int32, Node*)"
        registry_type = app_resolver.resolve("Registry")
        assert registry_type.fields[1].instance.pointee is callback

    def test_template_instance(self, app_resolver):
        pair = app_resolver.resolve("std::pair<int, Node *>")
        assert isinstance(pair, TemplateInstance)
        assert pair.kind is InstanceKind.TEMPLATE
        assert pair.base_name == "pair"
        assert pair.namespace == "std"
        assert pair.name == "pair<int, Node*>"
        int32, node_ptr = pair.arguments
        assert int32.primitive is PrimitiveKind.INT32
        assert node_ptr is app_resolver.resolve("Node*")
        assert str(app_resolver.registry.key_of(pair)) \
            == "app!std::pair<app!int32, app!*<app!Node>>"

    def test_no_diagnostics_for_clean_module(self, app_resolver):
        app_resolver.resolve_all(app_resolver.provider.list_types("app"))
        assert app_resolver.diagnostics == []
        for inst in app_resolver.registry.instances():
            assert inst.is_finalized

    def test_declarator_arrays(self):
        resolver = _resolve_module(LAYOUT_SNAPSHOT, "layout")
        grid = _by_name(resolver, "Grid")
        cells = grid.fields[0].instance
        assert isinstance(cells, Array)
        assert cells.length == 2
        assert cells.element.length == 3
        assert cells.size == 24


class TestUndefined:

    def test_undefined_does_not_block(self):
        resolver = _resolve_module(UNDEFINED_SNAPSHOT, "undef")
        wrapper = _by_name(resolver, "Wrapper")
        handle, inner = wrapper.fields
        assert isinstance(handle.instance.pointee, Undefined)
        assert isinstance(inner.instance, Undefined)
        assert not resolver.registry.is_invalid(wrapper)
        assert wrapper.contains_undefined()

    def test_diagnostics(self):
        resolver = _resolve_module(UNDEFINED_SNAPSHOT, "undef")
        assert sorted(d.subject for d in resolver.diagnostics) == ["Missing", "Opaque"]
        for diag in resolver.diagnostics:
            assert diag.kind is DiagnosticKind.UNRESOLVABLE
            assert diag.severity is Severity.WARNING

    def test_unparsable_reference(self):
        provider = InMemorySymbolProvider()
        provider.add_struct("m", "S", 4, [])
        resolver = TypeGraphResolver(provider, "m")
        inst = resolver.resolve("Foo<")
        assert isinstance(inst, Undefined)
        assert resolver.diagnostics[0].kind is DiagnosticKind.UNRESOLVABLE


class TestCycles:

    def test_value_cycle_reported_once(self):
        resolver = _resolve_module(CYCLE_SNAPSHOT, "cyc")
        cycles = [d for d in resolver.diagnostics
                  if d.kind is DiagnosticKind.ILLEGAL_VALUE_CYCLE]
        assert len(cycles) == 1
        assert cycles[0].subject == "cyc!A"
        assert cycles[0].severity is Severity.ERROR
        assert "cyc!A -> cyc!B -> cyc!A" in cycles[0].message

    def test_cycle_members_invalid_and_finalized(self):
        resolver = _resolve_module(CYCLE_SNAPSHOT, "cyc")
        a, b = _by_name(resolver, "A"), _by_name(resolver, "B")
        assert resolver.registry.is_invalid(a)
        assert resolver.registry.is_invalid(b)
        assert a.is_finalized and b.is_finalized

    def test_rest_of_module_continues(self):
        resolver = _resolve_module(CYCLE_SNAPSHOT, "cyc")
        fine = _by_name(resolver, "Fine")
        holder = _by_name(resolver, "Holder")
        assert not resolver.registry.is_invalid(fine)
        assert fine.fields[1].instance.pointee is _by_name(resolver, "A")
        assert holder.is_finalized

    def test_self_containment(self):
        provider = loads_snapshot('(module "m" (struct "Self" 8 (field "me" "Self" 0)))')
        resolver = TypeGraphResolver(provider, "m")
        inst = resolver.resolve("Self")
        assert resolver.registry.is_invalid(inst)
        assert [d.subject for d in resolver.diagnostics] == ["m!Self"]

    def test_value_through_pointer_is_legal(self):
        provider = loads_snapshot('''
            (module "m"
              (struct "P" 16 (field "q" "Q" 0))
              (struct "Q" 8 (field "p" "P*" 0)))
        ''')
        resolver = TypeGraphResolver(provider, "m")
        p = resolver.resolve("P")
        assert resolver.diagnostics == []
        assert p.fields[0].instance.fields[0].instance.pointee is p


class TestLayout:

    def test_field_outside_aggregate(self):
        resolver = _resolve_module(LAYOUT_SNAPSHOT, "layout")
        bad = _by_name(resolver, "Bad")
        assert resolver.registry.is_invalid(bad)
        assert bad.is_finalized
        diags = [d for d in resolver.diagnostics if d.subject == "layout!Bad"]
        assert [d.kind for d in diags] == [DiagnosticKind.INVALID_LAYOUT]

    def test_bitfield_exceeding_storage(self):
        resolver = _resolve_module(LAYOUT_SNAPSHOT, "layout")
        assert resolver.registry.is_invalid(_by_name(resolver, "BadBits"))

    @pytest.mark.parametrize("bits, invalid", [
        ("(bits 3 12)", False),
        ("(bits 0 32)", False),
        ("(bits 28 5)", True),
    ])
    def test_bitfield_bounded_by_storage_unit(self, bits, invalid):
        provider = loads_snapshot(
            f'(module "m" (struct "S" 4 (field "f" "unsigned int" 0 {bits})))')
        resolver = TypeGraphResolver(provider, "m")
        assert resolver.registry.is_invalid(resolver.resolve("S")) is invalid

    def test_flexible_array_at_end(self):
        resolver = _resolve_module(LAYOUT_SNAPSHOT, "layout")
        flex = _by_name(resolver, "Flex")
        assert not resolver.registry.is_invalid(flex)
        assert flex.fields[1].instance.length is None

    def test_unknown_size_skips_offset_checks(self):
        provider = loads_snapshot(
            '(module "m" (struct "S" unknown (field "x" "int" 64)))')
        resolver = TypeGraphResolver(provider, "m")
        inst = resolver.resolve("S")
        assert not resolver.registry.is_invalid(inst)


class TestShapes:

    def test_duplicate_enumerators(self):
        provider = InMemorySymbolProvider()
        provider.add_enum("m", "E", "int", [("A", 0), ("A", 1), ("B", 2)])
        resolver = TypeGraphResolver(provider, "m")
        enum = resolver.resolve("E")
        assert enum.members == (("A", 0), ("B", 2))
        assert [d.kind for d in resolver.diagnostics] == [DiagnosticKind.DUPLICATE_MEMBER]

    def test_enum_without_underlying(self):
        provider = InMemorySymbolProvider()
        provider.add("m", ShapeDescriptor(ShapeKind.ENUM, name="Small", size=2,
                                          members=(("X", 1),)))
        resolver = TypeGraphResolver(provider, "m")
        assert resolver.resolve("Small").underlying.primitive is PrimitiveKind.INT16

    def test_anonymous_struct_keeps_typedef_as_alias(self):
        provider = InMemorySymbolProvider()
        provider.add_struct("m", "", 8, type_id=0x2a)
        provider.add_typedef("m", "Point", 0x2a)
        resolver = TypeGraphResolver(provider, "m")
        point = resolver.resolve("Point")
        assert isinstance(point, Aggregate)
        assert point.name == "<anonymous-2a>"
        assert resolver.resolve(0x2a) is point
        assert [str(k) for k in resolver.registry.keys_of(point)] == [
            "m!<anonymous-2a>", "m!Point",
        ]

    @pytest.mark.parametrize("roots", [["Point", 0x2a], [0x2a, "Point"]])
    def test_anonymous_struct_name_independent_of_order(self, roots):
        provider = InMemorySymbolProvider()
        provider.add_struct("m", "", 8, type_id=0x2a)
        provider.add_typedef("m", "Point", 0x2a)
        resolver = TypeGraphResolver(provider, "m")
        first, second = resolver.resolve_all(roots)
        assert first is second
        assert first.name == "<anonymous-2a>"

    def test_anonymous_enum(self):
        provider = InMemorySymbolProvider()
        provider.add_enum("m", "", "int", [("ON", 1)], type_id=0x2d)
        resolver = TypeGraphResolver(provider, "m")
        enum = resolver.resolve(0x2d)
        assert enum.name == "<anonymous-2d>"
        assert str(resolver.registry.key_of(enum)) == "m!<anonymous-2d>"

    def test_pointer_size_follows_module(self):
        provider = loads_snapshot('(module "m32" (pointer-size 4) (struct "S" 4 (field "p" "S*" 0)))')
        resolver = TypeGraphResolver(provider, "m32")
        assert resolver.resolve("S").fields[0].instance.size == 4

    def test_typedef_to_itself(self):
        provider = InMemorySymbolProvider()
        provider.add_typedef("m", "Loop", 5, type_id=5)
        resolver = TypeGraphResolver(provider, "m")
        assert isinstance(resolver.resolve("Loop"), Undefined)


class TestFailures:

    def test_provider_error_wrapped(self):
        provider = loads_snapshot('(module "app" (struct "Node" 4 (field "v" "int" 0)))',
                                  _FailingProvider())
        resolver = TypeGraphResolver(provider, "app")
        resolver.resolve("Node")
        with pytest.raises(ProviderQueryError) as info:
            resolver.resolve("Boom")
        assert info.value.query == "Boom"
        assert resolver.last_successful_query == "int"

    def test_cancellation(self, app_provider):
        event = threading.Event()
        event.set()
        resolver = TypeGraphResolver(app_provider, "app", cancel_event=event)
        with pytest.raises(GenerationCancelled):
            resolver.resolve("Node")
