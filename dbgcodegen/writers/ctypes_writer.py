"""
dbgcodegen/writers/ctypes_writer.py
===================================

Writer producing plain :mod:`ctypes` declarations, usable without the
debugger runtime (e.g. on a memory dump read into a buffer).

Layout is made explicit rather than left to ctypes: every structure uses
``_pack_ = 1`` and carries padding members, so each field sits at the
byte offset the debug information reports.  Bit-fields sharing a storage
unit are grouped, with filler bits for gaps.  Bases become leading
members listed in ``_anonymous_`` so their fields stay reachable.

Output sections, in order::

    prologue            import ctypes
    enums               class Color(ctypes.c_int32): RED = 0 ...
    forward stubs       class Node(ctypes.Structure): _pack_ = 1
    function types      func_1a2b3c4d = ctypes.CFUNCTYPE(...)
    _fields_            Node._fields_ = [...]   (emission order)
    epilogue            __all__

All class names exist before the first ``_fields_`` assignment, so
``ctypes.POINTER(Node)`` works inside cycles; emission order guarantees
that a type embedded by value has its ``_fields_`` before its embedder.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

from ..emitter import CodeEmitter
from ..instances import (
    Aggregate,
    Array,
    EnumInstance,
    Function,
    InstanceKind,
    Pointer,
    Primitive,
    PrimitiveKind,
    TypeInstance,
)
from ..naming import NameTable
from .base import CodeFragment, CodeWriter, register_writer

logger = logging.getLogger(__name__)

__all__ = ["CtypesWriter", "CTYPES_PRIMITIVES", "CDATA_API", "SIMPLE_CDATA_API"]

CTYPES_PRIMITIVES: Dict[PrimitiveKind, str] = {
    PrimitiveKind.VOID: "None",
    PrimitiveKind.BOOL: "ctypes.c_bool",
    PrimitiveKind.CHAR: "ctypes.c_char",
    PrimitiveKind.WCHAR: "ctypes.c_uint16",
    PrimitiveKind.INT8: "ctypes.c_int8",
    PrimitiveKind.UINT8: "ctypes.c_uint8",
    PrimitiveKind.INT16: "ctypes.c_int16",
    PrimitiveKind.UINT16: "ctypes.c_uint16",
    PrimitiveKind.INT32: "ctypes.c_int32",
    PrimitiveKind.UINT32: "ctypes.c_uint32",
    PrimitiveKind.INT64: "ctypes.c_int64",
    PrimitiveKind.UINT64: "ctypes.c_uint64",
    PrimitiveKind.INT128: "(ctypes.c_uint8 * 16)",
    PrimitiveKind.UINT128: "(ctypes.c_uint8 * 16)",
    PrimitiveKind.FLOAT32: "ctypes.c_float",
    PrimitiveKind.FLOAT64: "ctypes.c_double",
}

# Attributes of ctypes data types that a member of the same name would shadow.
CDATA_API = frozenset({
    "from_address", "from_buffer", "from_buffer_copy", "from_param", "in_dll",
    "_as_parameter_", "_b_base_", "_b_needsfree_", "_objects",
})
SIMPLE_CDATA_API = CDATA_API | {"value", "_type_"}

_BITFIELD_STORAGE = {1: "ctypes.c_uint8", 2: "ctypes.c_uint16", 4: "ctypes.c_uint32",
                     8: "ctypes.c_uint64"}

_SECTION_ORDER = {
    InstanceKind.ENUM: 0,
    InstanceKind.AGGREGATE: 1,
    InstanceKind.TEMPLATE: 1,
    InstanceKind.FUNCTION: 2,
}


@register_writer
class CtypesWriter(CodeWriter):
    name = "ctypes"
    description = "ctypes Structure/Union declarations with explicit padding"

    # ------------------------------------------------------------------
    # Type references
    # ------------------------------------------------------------------

    def render_type_reference(self, instance: TypeInstance, names: NameTable) -> str:
        """ctypes expression for *instance*, or ``""`` when it has no layout."""
        if isinstance(instance, Primitive):
            return CTYPES_PRIMITIVES[instance.primitive]
        if isinstance(instance, Pointer):
            return self._pointer_reference(instance, names)
        if isinstance(instance, Array):
            element = self.render_type_reference(instance.element, names)
            if not element or element == "None":
                return ""
            return f"({element} * {instance.length or 0})"
        if isinstance(instance, EnumInstance):
            if instance in names:
                return names[instance]
            return self.render_type_reference(instance.underlying, names)
        if isinstance(instance, (Aggregate, Function)):
            return names.get(instance, "")
        return ""

    def _pointer_reference(self, pointer: Pointer, names: NameTable) -> str:
        pointee = pointer.pointee
        if isinstance(pointee, Function):
            return names.get(pointee, "ctypes.c_void_p")
        target = self.render_type_reference(pointee, names)
        if not target or target == "None":
            return "ctypes.c_void_p"
        return f"ctypes.POINTER({target})"

    def render_member_access(self, owner_expr: str, aggregate: Aggregate,
                             index: int, names: NameTable) -> str:
        previous, self._names = self._names, names
        try:
            exposed = self._bases(aggregate)
            reserved = [slot for slot, _, _ in exposed] + sorted(CDATA_API)
            members = names.members(aggregate, reserved)
            return f"{owner_expr}.{members[index]}"
        finally:
            self._names = previous

    # ------------------------------------------------------------------
    # Module frame
    # ------------------------------------------------------------------

    def render_prologue(self, module: str, names: NameTable) -> str:
        emitter = CodeEmitter()
        emitter.emit_lines(self.header_comment(module))
        emitter.emit_docstring(f"ctypes layout of native module ``{module}``.")
        emitter.emit_blank()
        emitter.emit("import ctypes")
        emitter.emit_blank()
        emitter.emit(f"__native_module__ = {module!r}")
        return emitter.get_code()

    def assemble(self, module: str, fragments: Sequence[CodeFragment],
                 names: NameTable) -> str:
        ordered = sorted(
            enumerate(fragments),
            key=lambda item: (_SECTION_ORDER.get(item[1].instance.kind, 3), item[0]),
        )
        preludes = [f for _, f in ordered]
        parts = [self.render_prologue(module, names).rstrip("\n")]
        parts.extend(f.prelude.rstrip("\n") for f in preludes if f.prelude)
        parts.extend(f.body.rstrip("\n") for f in fragments if f.body)
        exported = [f.identifier for f in fragments]
        parts.append(self.render_epilogue(module, names, exported).rstrip("\n"))
        return "\n\n\n".join(p for p in parts if p) + "\n"

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _bases(self, aggregate: Aggregate) -> List[Tuple[str, int, TypeInstance]]:
        """Every base is a leading member; none becomes a Python base class."""
        exposed: List[Tuple[str, int, TypeInstance]] = []
        used = set()
        for base in aggregate.base_types:
            label = self.names.get(base.instance) or "base"
            slot, n = f"base_{label}", 2
            while slot in used:
                slot = f"base_{label}_{n}"
                n += 1
            used.add(slot)
            exposed.append((slot, base.offset, base.instance))
        return exposed

    def visit_aggregate(self, inst: Aggregate) -> CodeFragment:
        ident = self.names[inst]
        kind = "ctypes.Union" if inst.is_union else "ctypes.Structure"

        stub = CodeEmitter()
        with stub.block(f"class {ident}({kind}):"):
            stub.emit_docstring(self.describe(inst))
            stub.emit("_layout_ = 'ms'")
            stub.emit("_pack_ = 1")

        entries, anonymous, notes = self._layout(inst)
        body = CodeEmitter()
        for note in notes:
            body.emit_comment(f"{ident}: {note}")
        if anonymous:
            body.emit(f"{ident}._anonymous_ = {tuple(anonymous)!r}")
        if not entries:
            body.emit(f"{ident}._fields_ = []")
        else:
            with body.block(f"{ident}._fields_ = ["):
                for entry in entries:
                    body.emit(entry + ",")
            body.emit("]")
        return CodeFragment(inst, ident, body.get_code(), prelude=stub.get_code())

    def _layout(self, inst: Aggregate) -> Tuple[List[str], List[str], List[str]]:
        """``_fields_`` entries, anonymous member names and layout notes."""
        exposed = self._bases(inst)
        reserved = [slot for slot, _, _ in exposed] + sorted(CDATA_API)
        members = self.names.members(inst, reserved)
        entries: List[str] = []
        anonymous: List[str] = []
        notes: List[str] = []
        cursor = 0
        pads = 0

        def pad_to(offset: int) -> None:
            nonlocal cursor, pads
            if offset > cursor and not inst.is_union:
                entries.append(f"('_pad{pads}', ctypes.c_uint8 * {offset - cursor})")
                pads += 1
                cursor = offset

        for slot, offset, base in exposed:
            ref = self.render_type_reference(base, self.names)
            if not ref or base.size is None or offset < cursor:
                notes.append(f"base {base.display_name} at offset {offset} kept as padding")
                continue
            pad_to(offset)
            entries.append(f"({slot!r}, {ref})")
            anonymous.append(slot)
            cursor = offset + base.size

        placed = sorted(range(len(inst.fields)),
                        key=lambda i: (inst.fields[i].byte_offset, i))
        index = 0
        while index < len(placed):
            member = inst.fields[placed[index]]
            if member.is_bitfield:
                group = [placed[index]]
                while (index + len(group) < len(placed)
                       and inst.fields[placed[index + len(group)]].is_bitfield
                       and inst.fields[placed[index + len(group)]].byte_offset == member.byte_offset
                       and inst.fields[placed[index + len(group)]].instance.size == member.instance.size):
                    group.append(placed[index + len(group)])
                index += len(group)
                cursor = self._bitfield_group(inst, group, members, entries, notes, cursor, pad_to)
                continue
            index += 1
            prop = members[placed[index - 1]]
            ref = self.render_type_reference(member.instance, self.names)
            size = member.instance.size
            if not ref or (size is None and member.instance.kind is not InstanceKind.ARRAY):
                notes.append(f"field {member.name!r} has no ctypes layout, kept as padding")
                continue
            if inst.is_union and member.byte_offset != 0:
                notes.append(f"union member {member.name!r} at offset {member.byte_offset}, skipped")
                continue
            if member.byte_offset < cursor and not inst.is_union:
                notes.append(f"field {member.name!r} overlaps the previous member, skipped")
                continue
            pad_to(member.byte_offset)
            entries.append(f"({prop!r}, {ref})")
            cursor = member.byte_offset + (size or 0)

        if inst.size is not None:
            if inst.is_union:
                if cursor == 0 and not entries and inst.size:
                    entries.append(f"('_pad0', ctypes.c_uint8 * {inst.size})")
            else:
                pad_to(inst.size)
        return entries, anonymous, notes

    def _bitfield_group(self, inst: Aggregate, group: List[int], members: List[str],
                        entries: List[str], notes: List[str], cursor: int, pad_to) -> int:
        first = inst.fields[group[0]]
        unit = first.instance.size or 1
        storage = _BITFIELD_STORAGE.get(unit)
        if storage is None or (first.byte_offset < cursor and not inst.is_union):
            for i in group:
                notes.append(f"bit-field {inst.fields[i].name!r} has no ctypes layout, skipped")
            return cursor
        pad_to(first.byte_offset)
        bit = 0
        fillers = 0
        for i in sorted(group, key=lambda j: (inst.fields[j].bit_offset or 0, j)):
            member = inst.fields[i]
            start = member.bit_offset or 0
            if start < bit:
                notes.append(f"bit-field {member.name!r} overlaps, skipped")
                continue
            if start > bit:
                entries.append(f"('_bits{first.byte_offset}_{fillers}', {storage}, {start - bit})")
                fillers += 1
            entries.append(f"({members[i]!r}, {storage}, {member.bit_width})")
            bit = start + member.bit_width
        if bit < unit * 8:
            entries.append(f"('_bits{first.byte_offset}_{fillers}', {storage}, {unit * 8 - bit})")
        return first.byte_offset + unit

    def visit_enum(self, inst: EnumInstance) -> CodeFragment:
        ident = self.names[inst]
        base = self.render_type_reference(inst.underlying, self.names)
        if not base.startswith("ctypes.c_"):
            base = "ctypes.c_int32"
        emitter = CodeEmitter()
        with emitter.block(f"class {ident}({base}):"):
            emitter.emit_docstring(self.describe(inst))
            if inst.members:
                emitter.emit_blank()
            members = self.names.members(inst, SIMPLE_CDATA_API)
            for prop, (_, value) in zip(members, inst.members):
                emitter.emit(f"{prop} = {value}")
        return CodeFragment(inst, ident, "", prelude=emitter.get_code())

    def visit_function(self, inst: Function) -> CodeFragment:
        ident = self.names[inst]
        ret = self._signature_type(inst.return_type)
        params = [self._signature_type(p) for p in inst.parameters]
        emitter = CodeEmitter()
        emitter.emit(f"# {inst.display_name}")
        if inst.variadic:
            emitter.emit("# variadic: ctypes prototypes cannot express the trailing '...'")
        emitter.emit(f"{ident} = ctypes.CFUNCTYPE({', '.join([ret] + params)})")
        return CodeFragment(inst, ident, "", prelude=emitter.get_code())

    def _signature_type(self, instance: TypeInstance) -> str:
        ref = self.render_type_reference(instance, self.names)
        if isinstance(instance, Primitive) and instance.primitive is PrimitiveKind.VOID:
            return "None"
        if isinstance(instance, Array):
            element = self.render_type_reference(instance.element, self.names)
            return f"ctypes.POINTER({element})" if element and element != "None" else "ctypes.c_void_p"
        return ref or "ctypes.c_void_p"
