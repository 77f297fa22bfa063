# tests/test_writers.py
"""
Tests for the code writers.

Generated modules must be valid Python; the ctypes output is executed and
its layout compared with the native sizes, the accessor output is executed
against a minimal stand-in runtime module.
"""

import ctypes
import sys
import types

import pytest

from dbgcodegen.driver import ExportDriver
from dbgcodegen.instances import PrimitiveKind
from dbgcodegen.naming import IdentifierAllocator, NAMED_KINDS
from dbgcodegen.provider import InMemorySymbolProvider
from dbgcodegen.resolver import TypeGraphResolver
from dbgcodegen.snapshot import loads_snapshot
from dbgcodegen.writers import (
    CodeWriter,
    CtypesWriter,
    PythonAccessorWriter,
    available_writers,
    get_writer,
    register_writer,
)
from tests.conftest import (
    APP_SNAPSHOT,
    COLLISION_SNAPSHOT,
    CYCLE_SNAPSHOT,
    LAYOUT_SNAPSHOT,
    UNDEFINED_SNAPSHOT,
)

UNION_SNAPSHOT = '''
(module "uni"
  (union "U" 8
    (field "i" "int" 0)
    (field "d" "double" 0)))
'''

ALL_SNAPSHOTS = [
    (APP_SNAPSHOT, "app"),
    (UNDEFINED_SNAPSHOT, "undef"),
    (CYCLE_SNAPSHOT, "cyc"),
    (LAYOUT_SNAPSHOT, "layout"),
    (COLLISION_SNAPSHOT, "coll"),
    (UNION_SNAPSHOT, "uni"),
]
SNAPSHOT_IDS = [module for _, module in ALL_SNAPSHOTS]

RUNTIME_MODULE = "fake_dbg_runtime"


def _generate(writer, text, module):
    return ExportDriver(loads_snapshot(text), writer).export_module(module).source


def _exec(source, name):
    namespace = {"__name__": name}
    exec(compile(source, f"{name}.py", "exec"), namespace)
    return namespace


def _names(text, module):
    resolver = TypeGraphResolver(loads_snapshot(text), module)
    resolver.resolve_all(resolver.provider.list_types(module))
    registry = resolver.registry
    named = [i for i in registry.instances()
             if i.kind in NAMED_KINDS and not registry.is_invalid(i)]
    table = IdentifierAllocator().allocate(named, registry)
    return {i.display_name: i for i in named}, table


@pytest.fixture
def fake_runtime(monkeypatch):
    """Just enough of the debugger runtime to execute accessor modules."""
    runtime = types.ModuleType(RUNTIME_MODULE)

    class UserType:
        def read_field(self, offset, type_):
            return ("field", offset, type_)

        def read_bitfield(self, offset, bit, width, type_):
            return ("bits", offset, bit, width, type_)

        def base_class(self, offset, type_):
            return ("base", offset, type_)

    class _Generic:
        def __class_getitem__(cls, item):
            return (cls.__name__, item)

    runtime.UserType = UserType
    runtime.Pointer = type("Pointer", (_Generic,), {})
    runtime.Array = type("Array", (_Generic,), {})
    runtime.Variable = type("Variable", (), {})
    runtime.CodeFunction = type("CodeFunction", (), {})
    runtime.NativeEnum = type("NativeEnum", (), {})
    for kind in PrimitiveKind:
        setattr(runtime, kind.token, kind.token)
    monkeypatch.setitem(sys.modules, RUNTIME_MODULE, runtime)
    return runtime


class TestRegistry:

    def test_available(self):
        names = [name for name, _ in available_writers()]
        assert names == ["accessor", "ctypes"]
        assert all(description for _, description in available_writers())

    def test_get_writer(self):
        writer = get_writer("ctypes", truncate_namespace=False)
        assert isinstance(writer, CtypesWriter)
        assert not writer.truncate_namespace
        assert isinstance(get_writer("accessor"), PythonAccessorWriter)

    def test_unknown_writer(self):
        with pytest.raises(KeyError) as info:
            get_writer("fortran")
        assert "accessor" in str(info.value)

    def test_register_requires_name(self):
        with pytest.raises(ValueError):
            register_writer(type("Nameless", (CodeWriter,), {}))

    def test_structural_instances_have_no_declaration(self):
        by_name, table = _names(APP_SNAPSHOT, "app")
        node = by_name["Node"]
        with pytest.raises(TypeError):
            PythonAccessorWriter().render_declaration(node.fields[0].instance, table)

    def test_describe(self):
        by_name, _ = _names(APP_SNAPSHOT, "app")
        assert CodeWriter.describe(by_name["Node"]) == "Native type ``Node`` (16 bytes)."
        assert CodeWriter.describe(by_name["Color"]) == "Native enum ``Color`` (4 bytes)."
        union, _ = _names(UNION_SNAPSHOT, "uni")
        assert CodeWriter.describe(union["U"]) == "Native union ``U`` (8 bytes)."


class TestValidPython:

    @pytest.mark.parametrize("text, module", ALL_SNAPSHOTS, ids=SNAPSHOT_IDS)
    @pytest.mark.parametrize("writer_name", ["accessor", "ctypes"])
    def test_compiles(self, writer_name, text, module):
        source = _generate(get_writer(writer_name), text, module)
        compile(source, f"{module}.py", "exec")

    @pytest.mark.parametrize("writer_name", ["accessor", "ctypes"])
    def test_header(self, writer_name):
        source = _generate(get_writer(writer_name), APP_SNAPSHOT, "app")
        assert source.startswith(f"# Generated by dbgcodegen ({writer_name} writer)")
        assert "__native_module__ = 'app'" in source
        assert source.endswith("]\n")


class TestAccessorWriter:

    @pytest.fixture
    def app_source(self):
        return _generate(PythonAccessorWriter(), APP_SNAPSHOT, "app")

    def test_aggregate(self, app_source):
        assert "class Node(UserType):" in app_source
        assert '    """Native type ``Node`` (16 bytes)."""' in app_source
        assert "    __native_size__ = 16" in app_source
        assert "    def next(self) -> 'Pointer[Node]':" in app_source
        assert "        return self.read_field(8, Pointer[Node])" in app_source

    def test_inheritance(self, app_source):
        assert "class Derived(Base):" in app_source

    def test_bitfields(self, app_source):
        assert "return self.read_bitfield(4, 0, 3, uint32)" in app_source
        assert "return self.read_bitfield(4, 3, 5, uint32)" in app_source

    def test_enum(self, app_source):
        assert "class Color(NativeEnum):" in app_source
        assert "    __underlying_type__ = int32" in app_source
        assert "    BLUE = 2" in app_source

    def test_function(self, app_source):
        assert "class Callback(CodeFunction):" in app_source
        assert "    __return_type__ = 'void'" in app_source
        assert "    __parameter_types__ = ('int32', 'Pointer[Node]')" in app_source
        assert "def on_change(self) -> 'Pointer[Callback]':" in app_source

    def test_template(self, app_source):
        assert "class pair_int_Node_ptr(UserType):" in app_source
        assert "    __native_name__ = 'std::pair<int, Node*>'" in app_source
        assert "    __template_name__ = 'pair'" in app_source
        assert "    __template_arguments__ = ('int32', 'Pointer[Node]')" in app_source

    def test_anonymous_enums(self):
        provider = InMemorySymbolProvider()
        provider.add_enum("m", "", "int", [("ON", 1)], type_id=0x2d)
        provider.add_enum("m", "", "int", [("FAST", 0)], type_id=0x2e)
        provider.add_typedef("m", "Mode", 0x2e)
        source = ExportDriver(provider, PythonAccessorWriter()).export_module(
            "m", [0x2d, "Mode"]).source
        assert "class anonymous_2d(NativeEnum):" in source
        assert "``<anonymous-2d>``" in source
        assert "class Mode(NativeEnum):" in source

    def test_undefined_renders_variable(self):
        source = _generate(PythonAccessorWriter(), UNDEFINED_SNAPSHOT, "undef")
        assert "def handle(self) -> 'Pointer[Variable]':" in source
        assert "def inner(self) -> 'Variable':" in source

    def test_renamed_members(self):
        source = _generate(PythonAccessorWriter(), COLLISION_SNAPSHOT, "coll")
        assert "class Pointer_2(UserType):" in source
        assert "def class_(self) -> 'int32':" in source
        assert '"""Native field ``class``."""' in source
        assert "def b(self) -> 'Item_2':" in source

    def test_union_marker(self):
        source = _generate(PythonAccessorWriter(), UNION_SNAPSHOT, "uni")
        assert "__native_union__ = True" in source

    def test_runtime_module(self):
        writer = get_writer("accessor", runtime_module="my.runtime")
        assert "from my.runtime import (" in _generate(writer, APP_SNAPSHOT, "app")

    def test_member_access(self):
        by_name, table = _names(COLLISION_SNAPSHOT, "coll")
        writer = PythonAccessorWriter()
        assert writer.render_member_access("obj", by_name["Pointer"], 0, table) == "obj.class_"

    def test_executes_against_runtime(self, fake_runtime):
        writer = PythonAccessorWriter(runtime_module=RUNTIME_MODULE)
        ns = _exec(_generate(writer, APP_SNAPSHOT, "app"), "generated_app")
        node = ns["Node"]()
        assert node.value == ("field", 0, "int32")
        assert node.next == ("field", 8, ("Pointer", ns["Node"]))
        assert ns["Pixel"]().mode == ("bits", 4, 3, 5, "uint32")
        derived = ns["Derived"]()
        assert isinstance(derived, ns["Base"])
        assert derived.id == ("field", 0, "int32")
        assert derived.weight == ("field", 4, "float64")
        assert ns["Color"].GREEN == 1
        assert ns["__all__"] == sorted(ns["__all__"])
        assert "pair_int_Node_ptr" in ns["__all__"]

    def test_undefined_executes(self, fake_runtime):
        writer = PythonAccessorWriter(runtime_module=RUNTIME_MODULE)
        ns = _exec(_generate(writer, UNDEFINED_SNAPSHOT, "undef"), "generated_undef")
        wrapper = ns["Wrapper"]()
        assert wrapper.inner == ("field", 8, fake_runtime.Variable)
        assert wrapper.handle == ("field", 0, ("Pointer", fake_runtime.Variable))


class TestCtypesWriter:

    @pytest.fixture
    def app(self):
        return _exec(_generate(CtypesWriter(), APP_SNAPSHOT, "app"), "ctypes_app")

    def test_sizes_match_native_layout(self, app):
        assert ctypes.sizeof(app["Node"]) == 16
        assert ctypes.sizeof(app["Pixel"]) == 8
        assert ctypes.sizeof(app["Base"]) == 4
        assert ctypes.sizeof(app["Derived"]) == 12
        assert ctypes.sizeof(app["pair_int_Node_ptr"]) == 16
        assert ctypes.sizeof(app["Registry"]) == 32

    def test_offsets(self, app):
        assert app["Node"].next.offset == 8
        assert app["Derived"].weight.offset == 4
        assert app["Registry"].pair.offset == 16

    def test_self_reference(self, app):
        node = app["Node"]
        first, second = node(value=1), node(value=2)
        first.next = ctypes.pointer(second)
        assert first.next.contents.value == 2

    def test_bitfields(self, app):
        pixel = app["Pixel"]()
        pixel.flags = 5
        pixel.mode = 17
        assert (pixel.flags, pixel.mode) == (5, 17)

    def test_anonymous_base(self, app):
        derived = app["Derived"]()
        derived.id = 7
        assert derived.id == 7
        assert app["Derived"]._anonymous_ == ("base_Base",)

    def test_enum(self, app):
        assert issubclass(app["Color"], ctypes.c_int32)
        assert app["Color"].BLUE == 2

    def test_enumerators_do_not_shadow_ctypes_api(self):
        text = '''
(module "ce"
  (enum "E" "int" (member "value" 1) (member "from_param" 2) (member "other" 3))
  (struct "S" 8 (field "from_buffer" "int" 0) (field "value" "int" 4)))
'''
        ns = _exec(_generate(CtypesWriter(), text, "ce"), "ctypes_ce")
        enum = ns["E"]
        assert enum(3).value == 3
        assert (enum.value_, enum.from_param_, enum.other) == (1, 2, 3)
        struct = ns["S"]
        record = struct.from_buffer_copy(bytes([5, 0, 0, 0, 9, 0, 0, 0]))
        assert (record.from_buffer_, record.value) == (5, 9)

    def test_function_prototype(self, app):
        callback = app["Callback"]
        assert callback._restype_ is None
        assert callback._argtypes_[0] is ctypes.c_int32

    def test_padding_members(self):
        source = _generate(CtypesWriter(), APP_SNAPSHOT, "app")
        assert "('_pad0', ctypes.c_uint8 * 4)," in source
        assert "('_bits4_0', ctypes.c_uint32, 24)," in source

    def test_stubs_before_fields(self):
        source = _generate(CtypesWriter(), APP_SNAPSHOT, "app")
        last_stub = max(source.index("class Node(ctypes.Structure):"),
                        source.index("class Registry(ctypes.Structure):"))
        assert last_stub < source.index("Node._fields_ = [")

    def test_layout_module(self):
        ns = _exec(_generate(CtypesWriter(), LAYOUT_SNAPSHOT, "layout"), "ctypes_layout")
        assert ctypes.sizeof(ns["Flex"]) == 4
        assert ctypes.sizeof(ns["Grid"]) == 24
        assert "Bad" not in ns
        assert "BadBits" not in ns

    def test_undefined_field_kept_as_padding(self):
        source = _generate(CtypesWriter(), UNDEFINED_SNAPSHOT, "undef")
        assert "# Wrapper: field 'inner' has no ctypes layout, kept as padding" in source
        ns = _exec(source, "ctypes_undef")
        assert ctypes.sizeof(ns["Wrapper"]) == 16

    def test_union(self):
        ns = _exec(_generate(CtypesWriter(), UNION_SNAPSHOT, "uni"), "ctypes_uni")
        assert issubclass(ns["U"], ctypes.Union)
        assert ctypes.sizeof(ns["U"]) == 8

    def test_member_access(self):
        by_name, table = _names(APP_SNAPSHOT, "app")
        writer = CtypesWriter()
        assert writer.render_member_access("d", by_name["Derived"], 0, table) == "d.weight"
