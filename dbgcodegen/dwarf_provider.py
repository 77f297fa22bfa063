#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbgcodegen/dwarf_provider.py
============================

A :class:`~dbgcodegen.provider.SymbolProvider` backed by the DWARF debug
information of ELF images, read with pyelftools.

Each module maps to one ELF file.  The file is opened on first use and
its compilation units are walked once to build a name index; names are
qualified through enclosing namespaces and classes (``ns::Outer::Inner``).
Type references inside shapes are DIE offsets, so the resolver follows
``DW_AT_type`` chains by id and never has to re-derive names for
anonymous types.

DIE → shape mapping
-------------------
============================  ===========================================
base_type                     PRIMITIVE (by name, else by encoding)
pointer / (rvalue) reference  POINTER
const / volatile / restrict   ALIAS without a name (transparent)
typedef                       ALIAS
array_type                    ARRAY (one synthetic id per extra dimension)
enumeration_type              ENUM
subroutine_type               FUNCTION
structure / class / union     STRUCT / UNION (declarations are replaced by
                              the definition of the same name when one
                              exists, else reported UNSUPPORTED)
anything else                 UNSUPPORTED
============================  ===========================================

The provider is not thread-safe; use a
:class:`~dbgcodegen.worker.ProviderWorker` when several resolvers share it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import IO, Any, Dict, List, Mapping, Optional, Tuple, Union

from elftools.common.exceptions import ELFError
from elftools.dwarf.dwarf_expr import DWARFExprParser
from elftools.elf.elffile import ELFFile

from .errors import ProviderQueryError, TypeNameSyntaxError
from .instances import PrimitiveKind
from .provider import (
    BaseDescriptor,
    FieldDescriptor,
    ShapeDescriptor,
    ShapeKind,
    TypeRef,
    builtin_primitive,
)
from .typenames import normalize_type_name

logger = logging.getLogger(__name__)

__all__ = ["DwarfSymbolProvider", "normalize_bitfield"]


# ═══════════════════════════════════════════════════════════════════════════
# DWARF CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════

AGGREGATE_TAGS = frozenset({
    "DW_TAG_structure_type",
    "DW_TAG_class_type",
    "DW_TAG_union_type",
})
ENUM_TAG = "DW_TAG_enumeration_type"
TYPEDEF_TAG = "DW_TAG_typedef"
BASE_TAG = "DW_TAG_base_type"
POINTER_TAGS = frozenset({
    "DW_TAG_pointer_type",
    "DW_TAG_reference_type",
    "DW_TAG_rvalue_reference_type",
})
QUALIFIER_TAGS = frozenset({
    "DW_TAG_const_type",
    "DW_TAG_volatile_type",
    "DW_TAG_restrict_type",
    "DW_TAG_atomic_type",
})
ARRAY_TAG = "DW_TAG_array_type"
SUBROUTINE_TAG = "DW_TAG_subroutine_type"
NAMESPACE_TAG = "DW_TAG_namespace"

#: Tags whose named DIEs are reachable by name.
INDEX_TAGS = AGGREGATE_TAGS | {ENUM_TAG, TYPEDEF_TAG, BASE_TAG}

#: Tags listed by :meth:`DwarfSymbolProvider.list_types`.
LISTED_TAGS = AGGREGATE_TAGS | {ENUM_TAG}

# DW_ATE_* base type encodings
DW_ATE_BOOLEAN = 0x02
DW_ATE_FLOAT = 0x04
DW_ATE_SIGNED = 0x05
DW_ATE_SIGNED_CHAR = 0x06
DW_ATE_UNSIGNED = 0x07
DW_ATE_UNSIGNED_CHAR = 0x08
DW_ATE_UTF = 0x10

_CONSTANT_LOCATION_OPS = frozenset({"DW_OP_plus_uconst", "DW_OP_constu", "DW_OP_consts"})


# ═══════════════════════════════════════════════════════════════════════════
# ATTRIBUTE HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def _attr_int(die: Any, name: str) -> Optional[int]:
    attr = die.attributes.get(name)
    if attr is None or isinstance(attr.value, bool) or not isinstance(attr.value, int):
        return None
    return attr.value


def _attr_flag(die: Any, name: str) -> bool:
    attr = die.attributes.get(name)
    return bool(attr is not None and attr.value)


def _die_name(die: Any) -> str:
    attr = die.attributes.get("DW_AT_name")
    return _decode(attr.value) if attr is not None else ""


def _type_die(die: Any) -> Optional[Any]:
    if "DW_AT_type" not in die.attributes:
        return None
    return die.get_DIE_from_attribute("DW_AT_type")


def _name_key(name: str) -> str:
    try:
        return normalize_type_name(name)
    except TypeNameSyntaxError:
        return " ".join(name.split())


def normalize_bitfield(
    bit_size: int,
    storage_size: Optional[int],
    data_bit_offset: Optional[int] = None,
    byte_offset: Optional[int] = None,
    legacy_bit_offset: Optional[int] = None,
    legacy_byte_size: Optional[int] = None,
    little_endian: bool = True,
) -> Tuple[int, int]:
    """
    ``(byte_offset, bit_offset)`` of a bit-field, the bit offset counted
    from the least significant bit of a storage unit of *storage_size*
    bytes starting at ``byte_offset``.

    DWARF 4+ gives ``DW_AT_data_bit_offset`` from the start of the
    aggregate; the storage unit is the aligned one that holds the field,
    falling back to byte granularity for fields straddling two units.
    DWARF 2/3 gives ``DW_AT_bit_offset`` counted from the most significant
    bit of a ``DW_AT_byte_size`` unit at ``DW_AT_data_member_location``.
    """
    if data_bit_offset is not None:
        unit = 8 * storage_size if storage_size else 8
        byte = (data_bit_offset // unit) * (unit // 8)
        bit = data_bit_offset - 8 * byte
        if bit + bit_size > unit:
            byte, bit = divmod(data_bit_offset, 8)
        return byte, bit

    byte = byte_offset or 0
    if legacy_bit_offset is None:
        return byte, 0
    if not little_endian:
        return byte, legacy_bit_offset
    storage_bits = 8 * (legacy_byte_size or storage_size or 1)
    return byte, storage_bits - legacy_bit_offset - bit_size


# ═══════════════════════════════════════════════════════════════════════════
# PER-IMAGE STATE
# ═══════════════════════════════════════════════════════════════════════════

class _DwarfImage:
    """One opened ELF image and its type index."""

    def __init__(self, module: str, path: Path) -> None:
        self.module = module
        self.path = path
        try:
            self._stream: IO[bytes] = open(path, "rb")
        except OSError as exc:
            raise ProviderQueryError(f"cannot open {path}: {exc}", module=module) from exc
        try:
            self.elf = ELFFile(self._stream)
            if not self.elf.has_dwarf_info():
                raise ProviderQueryError(f"{path} has no DWARF debug information", module=module)
            self.dwarf = self.elf.get_dwarf_info()
        except ELFError as exc:
            self._stream.close()
            raise ProviderQueryError(f"cannot read {path}: {exc}", module=module) from exc
        except ProviderQueryError:
            self._stream.close()
            raise

        self.pointer_size = self.elf.elfclass // 8
        self.little_endian = self.elf.little_endian
        self.expr_parser = DWARFExprParser(self.dwarf.structs)
        self.by_name: Dict[str, Any] = {}
        self.by_offset: Dict[int, Any] = {}
        self.qualified: Dict[int, str] = {}
        self.synthetic: Dict[int, ShapeDescriptor] = {}
        self._index()

    def close(self) -> None:
        self._stream.close()

    # -- indexing ---------------------------------------------------------

    def _index(self) -> None:
        units = 0
        for cu in self.dwarf.iter_CUs():
            self._index_scope(cu.get_top_DIE(), ())
            units += 1
        logger.info("%s: indexed %d named types from %d compilation units of %s",
                    self.module, len(self.by_name), units, self.path)

    def _index_scope(self, parent: Any, scope: Tuple[str, ...]) -> None:
        for die in parent.iter_children():
            tag = die.tag
            name = _die_name(die)
            self.by_offset[die.offset] = die
            if name and tag in INDEX_TAGS:
                qualified = "::".join(scope + (name,))
                self.qualified[die.offset] = qualified
                self._offer(_name_key(qualified), die)
            if tag == NAMESPACE_TAG:
                self._index_scope(die, scope + (name or "(anonymous namespace)",))
            elif tag in AGGREGATE_TAGS and die.has_children:
                self._index_scope(die, scope + (name,) if name else scope)

    def _offer(self, key: str, die: Any) -> None:
        current = self.by_name.get(key)
        if current is None or _definition_score(die) > _definition_score(current):
            self.by_name[key] = die

    # -- lookups ----------------------------------------------------------

    def die_at(self, offset: int) -> Optional[Any]:
        die = self.by_offset.get(offset)
        if die is None:
            try:
                die = self.dwarf.get_DIE_from_refaddr(offset)
            except Exception as exc:
                logger.debug("%s: no DIE at 0x%x: %s", self.module, offset, exc)
                return None
            self.by_offset[offset] = die
        return die

    def name_of(self, die: Any) -> str:
        return self.qualified.get(die.offset) or _die_name(die)

    def definition_of(self, die: Any) -> Any:
        """The defining DIE for a declaration, or *die* itself."""
        if not _attr_flag(die, "DW_AT_declaration"):
            return die
        name = self.name_of(die)
        candidate = self.by_name.get(_name_key(name)) if name else None
        if candidate is not None and candidate.tag == die.tag \
                and not _attr_flag(candidate, "DW_AT_declaration"):
            return candidate
        return die

    def type_size(self, die: Optional[Any]) -> Optional[int]:
        """Byte size of a type DIE, looking through typedefs and qualifiers."""
        seen = set()
        while die is not None and die.offset not in seen:
            seen.add(die.offset)
            size = _attr_int(die, "DW_AT_byte_size")
            if size is not None:
                return size
            if die.tag in POINTER_TAGS:
                return self.pointer_size
            die = _type_die(die)
        return None

    def location(self, die: Any) -> Optional[int]:
        attr = die.attributes.get("DW_AT_data_member_location")
        if attr is None:
            return None
        value = attr.value
        if isinstance(value, int):
            return value
        if isinstance(value, (bytes, list)):
            ops = self.expr_parser.parse_expr(list(value))
            if len(ops) == 1 and ops[0].op_name in _CONSTANT_LOCATION_OPS:
                return int(ops[0].args[0])
        return None


def _definition_score(die: Any) -> int:
    score = -5 if _attr_flag(die, "DW_AT_declaration") else 5
    if "DW_AT_byte_size" in die.attributes:
        score += 2
    if die.has_children:
        score += 1
    return score


def _ref(die: Optional[Any]) -> TypeRef:
    return die.offset if die is not None else "void"


# ═══════════════════════════════════════════════════════════════════════════
# PROVIDER
# ═══════════════════════════════════════════════════════════════════════════

class DwarfSymbolProvider:
    """
    Symbol provider over ``{module: elf_path}``.

    Unknown modules, unreadable files and images without DWARF are
    provider failures (:class:`ProviderQueryError`); an unknown type is
    ``None``.
    """

    def __init__(self, images: Mapping[str, Union[str, Path]]) -> None:
        self._paths = {module: Path(path) for module, path in images.items()}
        self._images: Dict[str, _DwarfImage] = {}

    def modules(self) -> List[str]:
        return sorted(self._paths)

    def close(self) -> None:
        for image in self._images.values():
            image.close()
        self._images.clear()

    def __enter__(self) -> "DwarfSymbolProvider":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _image(self, module: str, query: object) -> _DwarfImage:
        image = self._images.get(module)
        if image is None:
            path = self._paths.get(module)
            if path is None:
                raise ProviderQueryError(f"unknown module {module!r}", module=module, query=query)
            image = _DwarfImage(module, path)
            self._images[module] = image
        return image

    # -- SymbolProvider ---------------------------------------------------

    def lookup_type(self, module: str, name_or_offset: TypeRef) -> Optional[ShapeDescriptor]:
        image = self._image(module, name_or_offset)
        if isinstance(name_or_offset, int):
            if name_or_offset < 0:
                return image.synthetic.get(name_or_offset)
            die = image.die_at(name_or_offset)
            return self._shape(image, die) if die is not None else None

        die = image.by_name.get(_name_key(name_or_offset))
        if die is not None:
            return self._shape(image, die)
        kind = builtin_primitive(name_or_offset, image.pointer_size)
        if kind is not None:
            return ShapeDescriptor.of_primitive(name_or_offset, kind)
        return None

    def list_types(self, module: str) -> List[str]:
        image = self._image(module, None)
        return sorted(
            name for name, die in image.by_name.items()
            if die.tag in LISTED_TAGS and not _attr_flag(die, "DW_AT_declaration")
        )

    def pointer_size(self, module: str) -> int:
        return self._image(module, None).pointer_size

    # ------------------------------------------------------------------
    # DIE → shape
    # ------------------------------------------------------------------

    def _shape(self, image: _DwarfImage, die: Any) -> ShapeDescriptor:
        tag = die.tag
        if tag in AGGREGATE_TAGS:
            die = image.definition_of(die)
            if _attr_flag(die, "DW_AT_declaration"):
                return ShapeDescriptor.unsupported(image.name_of(die))
            shape = self._aggregate(image, die)
        elif tag == BASE_TAG:
            shape = self._base(image, die)
        elif tag in POINTER_TAGS:
            size = _attr_int(die, "DW_AT_byte_size") or image.pointer_size
            shape = ShapeDescriptor.of_pointer(_ref(_type_die(die)), size)
        elif tag in QUALIFIER_TAGS:
            shape = ShapeDescriptor.of_alias("", _ref(_type_die(die)))
        elif tag == TYPEDEF_TAG:
            shape = ShapeDescriptor.of_alias(image.name_of(die), _ref(_type_die(die)))
        elif tag == ARRAY_TAG:
            shape = self._array(image, die)
        elif tag == ENUM_TAG:
            shape = self._enum(image, die)
        elif tag == SUBROUTINE_TAG:
            shape = self._subroutine(die)
        else:
            logger.debug("%s: unsupported DIE %s at 0x%x", image.module, tag, die.offset)
            shape = ShapeDescriptor.unsupported(image.name_of(die) or tag)
        return replace(shape, type_id=die.offset)

    def _base(self, image: _DwarfImage, die: Any) -> ShapeDescriptor:
        name = _die_name(die)
        size = _attr_int(die, "DW_AT_byte_size") or 0
        kind = builtin_primitive(name, image.pointer_size) if name else None
        if kind is None or (size and kind.size != size):
            kind = _primitive_by_encoding(_attr_int(die, "DW_AT_encoding"), size)
        if kind is None:
            return ShapeDescriptor.unsupported(name or "base type")
        return ShapeDescriptor.of_primitive(name, kind)

    def _array(self, image: _DwarfImage, die: Any) -> ShapeDescriptor:
        lengths: List[Optional[int]] = []
        for child in die.iter_children():
            if child.tag != "DW_TAG_subrange_type":
                continue
            count = _attr_int(child, "DW_AT_count")
            if count is None:
                upper = _attr_int(child, "DW_AT_upper_bound")
                count = upper + 1 if upper is not None else None
            lengths.append(count)
        if not lengths:
            lengths.append(None)

        # int a[2][3]: Array(Array(int, 3), 2); inner dimensions get ids of their own
        element: TypeRef = _ref(_type_die(die))
        for index in range(len(lengths) - 1, 0, -1):
            synthetic_id = -(die.offset * 64 + index)
            image.synthetic[synthetic_id] = ShapeDescriptor(
                ShapeKind.ARRAY, target=element, length=lengths[index], type_id=synthetic_id)
            element = synthetic_id
        return ShapeDescriptor.of_array(element, lengths[0])

    def _enum(self, image: _DwarfImage, die: Any) -> ShapeDescriptor:
        members = []
        for child in die.iter_children():
            if child.tag != "DW_TAG_enumerator":
                continue
            value = _attr_int(child, "DW_AT_const_value")
            if value is None:
                logger.debug("%s: enumerator %s without constant value", image.module,
                             _die_name(child))
                continue
            members.append((_die_name(child), value))
        underlying = _type_die(die)
        return ShapeDescriptor(
            ShapeKind.ENUM,
            name=image.name_of(die),
            size=_attr_int(die, "DW_AT_byte_size"),
            underlying=underlying.offset if underlying is not None else None,
            members=tuple(members),
        )

    def _subroutine(self, die: Any) -> ShapeDescriptor:
        parameters: List[TypeRef] = []
        variadic = False
        for child in die.iter_children():
            if child.tag == "DW_TAG_formal_parameter":
                parameters.append(_ref(_type_die(child)))
            elif child.tag == "DW_TAG_unspecified_parameters":
                variadic = True
        return ShapeDescriptor.of_function(_ref(_type_die(die)), parameters, variadic)

    def _aggregate(self, image: _DwarfImage, die: Any) -> ShapeDescriptor:
        union = die.tag == "DW_TAG_union_type"
        fields: List[FieldDescriptor] = []
        bases: List[BaseDescriptor] = []
        for child in die.iter_children():
            if child.tag == "DW_TAG_inheritance":
                offset = image.location(child)
                if offset is None:
                    logger.debug("%s: %s: virtual base skipped", image.module, image.name_of(die))
                    continue
                bases.append(BaseDescriptor(_ref(_type_die(child)), offset))
            elif child.tag == "DW_TAG_member":
                described = self._member(image, die, child, union)
                if described is not None:
                    fields.append(described)
        return ShapeDescriptor.of_aggregate(
            image.name_of(die), _attr_int(die, "DW_AT_byte_size"), fields, bases, union)

    def _member(self, image: _DwarfImage, owner: Any, die: Any,
                union: bool) -> Optional[FieldDescriptor]:
        member_type = _type_die(die)
        location = image.location(die)
        bit_size = _attr_int(die, "DW_AT_bit_size")
        data_bit_offset = _attr_int(die, "DW_AT_data_bit_offset")

        if location is None and data_bit_offset is None and not union:
            if _attr_flag(die, "DW_AT_external") or _attr_flag(die, "DW_AT_declaration"):
                return None  # static data member
            logger.debug("%s: %s.%s has no location, assuming offset 0", image.module,
                         image.name_of(owner), _die_name(die))

        if bit_size is None:
            return FieldDescriptor(_die_name(die), _ref(member_type), location or 0)

        byte_offset, bit_offset = normalize_bitfield(
            bit_size,
            image.type_size(member_type),
            data_bit_offset=data_bit_offset,
            byte_offset=location,
            legacy_bit_offset=_attr_int(die, "DW_AT_bit_offset"),
            legacy_byte_size=_attr_int(die, "DW_AT_byte_size"),
            little_endian=image.little_endian,
        )
        return FieldDescriptor(_die_name(die), _ref(member_type), byte_offset,
                               bit_offset, bit_size)


def _primitive_by_encoding(encoding: Optional[int], size: int) -> Optional[PrimitiveKind]:
    if encoding == DW_ATE_FLOAT:
        return {4: PrimitiveKind.FLOAT32, 8: PrimitiveKind.FLOAT64}.get(size)
    if encoding == DW_ATE_BOOLEAN:
        return PrimitiveKind.BOOL if size == 1 else _integer(size, False)
    if encoding == DW_ATE_UTF:
        return {1: PrimitiveKind.CHAR, 2: PrimitiveKind.WCHAR}.get(size) or _integer(size, False)
    if encoding in (DW_ATE_SIGNED, DW_ATE_SIGNED_CHAR):
        return _integer(size, True)
    if encoding in (DW_ATE_UNSIGNED, DW_ATE_UNSIGNED_CHAR):
        return _integer(size, False)
    return None


def _integer(size: int, signed: bool) -> Optional[PrimitiveKind]:
    try:
        return PrimitiveKind.integer(size, signed)
    except ValueError:
        return None
