#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbgcodegen/provider.py
======================

The symbol provider contract and its dict-backed implementation.

A symbol provider answers questions about the native types of a module:
"what is the shape of ``ns::Foo``?", "what is at type id 0x2d?", "which
types does the module define?".  The resolver never sees provider-specific
objects; it only sees :class:`ShapeDescriptor` records whose type
references are names (``str``) or provider ids (``int``).

Implementations
---------------
- :class:`InMemorySymbolProvider`: dict-backed, filled programmatically
  or from an S-expression snapshot (:mod:`dbgcodegen.snapshot`).
- :class:`dbgcodegen.dwarf_provider.DwarfSymbolProvider`: reads DWARF
  debug information from ELF images through pyelftools.
- :class:`RoutingSymbolProvider`: sends each module to its own provider.

Providers are not assumed to be thread-safe; wrap them in a
:class:`dbgcodegen.worker.ProviderWorker` to share one across threads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

from .errors import ProviderQueryError, TypeNameSyntaxError
from .instances import PrimitiveKind
from .typenames import normalize_type_name

logger = logging.getLogger(__name__)

__all__ = [
    "TypeRef",
    "ShapeKind",
    "FieldDescriptor",
    "BaseDescriptor",
    "ShapeDescriptor",
    "SymbolProvider",
    "InMemorySymbolProvider",
    "RoutingSymbolProvider",
    "builtin_primitive",
]

#: A type is referenced by name or by a provider-specific id / offset.
TypeRef = Union[str, int]


# ═══════════════════════════════════════════════════════════════════════════
# SHAPE DESCRIPTORS
# ═══════════════════════════════════════════════════════════════════════════

class ShapeKind(Enum):
    PRIMITIVE = "primitive"
    POINTER = "pointer"
    ARRAY = "array"
    ENUM = "enum"
    FUNCTION = "function"
    STRUCT = "struct"
    UNION = "union"
    ALIAS = "alias"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    type_ref: TypeRef
    byte_offset: int
    bit_offset: Optional[int] = None
    bit_width: Optional[int] = None


@dataclass(frozen=True)
class BaseDescriptor:
    type_ref: TypeRef
    offset: int = 0


@dataclass(frozen=True)
class ShapeDescriptor:
    """
    Provider-neutral description of one native type.

    Which attributes are meaningful depends on ``kind``:

    ============  ==================================================
    PRIMITIVE     ``primitive``
    POINTER       ``target`` (pointee), ``size``
    ARRAY         ``target`` (element), ``length``
    ENUM          ``underlying``, ``members``, ``size``
    FUNCTION      ``return_type``, ``parameters``, ``variadic``
    STRUCT/UNION  ``size``, ``bases``, ``fields``
    ALIAS         ``target``
    ============  ==================================================
    """

    kind: ShapeKind
    name: str = ""
    size: Optional[int] = None
    primitive: Optional[PrimitiveKind] = None
    target: Optional[TypeRef] = None
    length: Optional[int] = None
    underlying: Optional[TypeRef] = None
    members: Tuple[Tuple[str, int], ...] = ()
    fields: Tuple[FieldDescriptor, ...] = ()
    bases: Tuple[BaseDescriptor, ...] = ()
    return_type: Optional[TypeRef] = None
    parameters: Tuple[TypeRef, ...] = ()
    variadic: bool = False
    type_id: Optional[int] = None

    @property
    def is_aggregate(self) -> bool:
        return self.kind in (ShapeKind.STRUCT, ShapeKind.UNION)

    # -- constructors -----------------------------------------------------

    @classmethod
    def of_primitive(cls, name: str, kind: PrimitiveKind) -> "ShapeDescriptor":
        return cls(ShapeKind.PRIMITIVE, name=name, size=kind.size, primitive=kind)

    @classmethod
    def of_pointer(cls, target: TypeRef, size: int) -> "ShapeDescriptor":
        return cls(ShapeKind.POINTER, size=size, target=target)

    @classmethod
    def of_array(cls, element: TypeRef, length: Optional[int]) -> "ShapeDescriptor":
        return cls(ShapeKind.ARRAY, target=element, length=length)

    @classmethod
    def of_enum(cls, name: str, underlying: TypeRef,
                members: Sequence[Tuple[str, int]],
                size: Optional[int] = None) -> "ShapeDescriptor":
        return cls(ShapeKind.ENUM, name=name, size=size, underlying=underlying,
                   members=tuple((n, int(v)) for n, v in members))

    @classmethod
    def of_function(cls, return_type: TypeRef, parameters: Sequence[TypeRef] = (),
                    variadic: bool = False, name: str = "") -> "ShapeDescriptor":
        return cls(ShapeKind.FUNCTION, name=name, return_type=return_type,
                   parameters=tuple(parameters), variadic=variadic)

    @classmethod
    def of_aggregate(cls, name: str, size: Optional[int],
                     fields: Sequence[FieldDescriptor] = (),
                     bases: Sequence[BaseDescriptor] = (),
                     union: bool = False) -> "ShapeDescriptor":
        return cls(ShapeKind.UNION if union else ShapeKind.STRUCT, name=name,
                   size=size, fields=tuple(fields), bases=tuple(bases))

    @classmethod
    def of_alias(cls, name: str, target: TypeRef) -> "ShapeDescriptor":
        return cls(ShapeKind.ALIAS, name=name, target=target)

    @classmethod
    def unsupported(cls, name: str) -> "ShapeDescriptor":
        return cls(ShapeKind.UNSUPPORTED, name=name)


# ═══════════════════════════════════════════════════════════════════════════
# PROTOCOL
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class SymbolProvider(Protocol):
    """What the resolver needs from a debug-information source."""

    def lookup_type(self, module: str, name_or_offset: TypeRef) -> Optional[ShapeDescriptor]:
        """Shape of the type, or None when the module does not know it.

        Raises ProviderQueryError when the provider itself fails.
        """
        ...

    def list_types(self, module: str) -> Sequence[str]:
        ...

    def pointer_size(self, module: str) -> int:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# BUILTIN TYPE NAMES
# ═══════════════════════════════════════════════════════════════════════════

_FIXED_BUILTINS: Dict[str, PrimitiveKind] = {
    "void": PrimitiveKind.VOID,
    "bool": PrimitiveKind.BOOL,
    "_Bool": PrimitiveKind.BOOL,
    "char": PrimitiveKind.CHAR,
    "char8_t": PrimitiveKind.CHAR,
    "signed char": PrimitiveKind.INT8,
    "unsigned char": PrimitiveKind.UINT8,
    "wchar_t": PrimitiveKind.WCHAR,
    "char16_t": PrimitiveKind.WCHAR,
    "char32_t": PrimitiveKind.UINT32,
    "short": PrimitiveKind.INT16,
    "unsigned short": PrimitiveKind.UINT16,
    "int": PrimitiveKind.INT32,
    "unsigned int": PrimitiveKind.UINT32,
    "long long": PrimitiveKind.INT64,
    "unsigned long long": PrimitiveKind.UINT64,
    "float": PrimitiveKind.FLOAT32,
    "double": PrimitiveKind.FLOAT64,
    "long double": PrimitiveKind.FLOAT64,
    "__int8": PrimitiveKind.INT8,
    "__int16": PrimitiveKind.INT16,
    "__int32": PrimitiveKind.INT32,
    "__int64": PrimitiveKind.INT64,
    "__int128": PrimitiveKind.INT128,
    "__int128_t": PrimitiveKind.INT128,
    "__uint128_t": PrimitiveKind.UINT128,
    "int8_t": PrimitiveKind.INT8,
    "uint8_t": PrimitiveKind.UINT8,
    "int16_t": PrimitiveKind.INT16,
    "uint16_t": PrimitiveKind.UINT16,
    "int32_t": PrimitiveKind.INT32,
    "uint32_t": PrimitiveKind.UINT32,
    "int64_t": PrimitiveKind.INT64,
    "uint64_t": PrimitiveKind.UINT64,
}

# Names whose width follows the pointer size (LP64 data model).
_POINTER_WIDTH_BUILTINS: Dict[str, bool] = {
    "long": True,
    "unsigned long": False,
    "size_t": False,
    "ssize_t": True,
    "ptrdiff_t": True,
    "intptr_t": True,
    "uintptr_t": False,
}


def builtin_primitive(name: str, pointer_size: int = 8) -> Optional[PrimitiveKind]:
    """Primitive kind of a C/C++ builtin type name, or None."""
    try:
        canonical = normalize_type_name(name)
    except TypeNameSyntaxError:
        return None
    if canonical.startswith("std::"):
        canonical = canonical[len("std::"):]
    kind = _FIXED_BUILTINS.get(canonical)
    if kind is not None:
        return kind
    signed = _POINTER_WIDTH_BUILTINS.get(canonical)
    if signed is None:
        return None
    return PrimitiveKind.integer(pointer_size, signed)


# ═══════════════════════════════════════════════════════════════════════════
# IN-MEMORY PROVIDER
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class _ModuleTable:
    pointer_size: int = 8
    by_name: Dict[str, ShapeDescriptor] = field(default_factory=dict)
    by_id: Dict[int, ShapeDescriptor] = field(default_factory=dict)


def _name_key(name: str) -> str:
    try:
        return normalize_type_name(name)
    except TypeNameSyntaxError:
        return " ".join(name.split())


class InMemorySymbolProvider:
    """
    Dict-backed :class:`SymbolProvider`.

    Lookups by name are normalized through the type-name grammar, so
    ``"unsigned"`` and ``"unsigned int"`` or ``"Foo *"`` and ``"Foo*"`` are
    the same query.  Builtin C/C++ names are answered without registration.
    Unknown modules are a provider failure (:class:`ProviderQueryError`).
    """

    def __init__(self) -> None:
        self._modules: Dict[str, _ModuleTable] = {}
        self.query_count = 0

    # -- population -------------------------------------------------------

    def add_module(self, module: str, pointer_size: int = 8) -> None:
        table = self._modules.setdefault(module, _ModuleTable())
        table.pointer_size = pointer_size

    def add(self, module: str, shape: ShapeDescriptor,
            type_id: Optional[int] = None) -> ShapeDescriptor:
        """Register *shape* under its name and, when given, *type_id*."""
        table = self._modules.setdefault(module, _ModuleTable())
        if type_id is not None:
            shape = replace(shape, type_id=type_id)
            table.by_id[type_id] = shape
        if shape.name:
            key = _name_key(shape.name)
            previous = table.by_name.get(key)
            if previous is not None and shape.kind is ShapeKind.ALIAS \
                    and previous.kind is not ShapeKind.ALIAS:
                # typedef struct Foo Foo;
                return shape
            if previous is not None:
                logger.debug("%s: redefinition of %s replaces earlier shape", module, key)
            table.by_name[key] = shape
        return shape

    def add_struct(self, module: str, name: str, size: Optional[int],
                   fields: Sequence[FieldDescriptor] = (),
                   bases: Sequence[BaseDescriptor] = (),
                   union: bool = False,
                   type_id: Optional[int] = None) -> ShapeDescriptor:
        return self.add(module, ShapeDescriptor.of_aggregate(name, size, fields, bases, union),
                        type_id)

    def add_enum(self, module: str, name: str, underlying: TypeRef,
                 members: Sequence[Tuple[str, int]],
                 type_id: Optional[int] = None) -> ShapeDescriptor:
        return self.add(module, ShapeDescriptor.of_enum(name, underlying, members), type_id)

    def add_typedef(self, module: str, name: str, target: TypeRef,
                    type_id: Optional[int] = None) -> ShapeDescriptor:
        return self.add(module, ShapeDescriptor.of_alias(name, target), type_id)

    def add_function(self, module: str, name: str, return_type: TypeRef,
                     parameters: Sequence[TypeRef] = (), variadic: bool = False,
                     type_id: Optional[int] = None) -> ShapeDescriptor:
        return self.add(module, ShapeDescriptor.of_function(return_type, parameters,
                                                            variadic, name), type_id)

    def add_primitive(self, module: str, name: str, kind: PrimitiveKind,
                      type_id: Optional[int] = None) -> ShapeDescriptor:
        return self.add(module, ShapeDescriptor.of_primitive(name, kind), type_id)

    def add_opaque(self, module: str, name: str,
                   type_id: Optional[int] = None) -> ShapeDescriptor:
        return self.add(module, ShapeDescriptor.unsupported(name), type_id)

    # -- SymbolProvider ---------------------------------------------------

    def modules(self) -> List[str]:
        return sorted(self._modules)

    def _table(self, module: str, query: object) -> _ModuleTable:
        table = self._modules.get(module)
        if table is None:
            raise ProviderQueryError(f"unknown module {module!r}", module=module, query=query)
        return table

    def lookup_type(self, module: str, name_or_offset: TypeRef) -> Optional[ShapeDescriptor]:
        self.query_count += 1
        table = self._table(module, name_or_offset)
        if isinstance(name_or_offset, int):
            return table.by_id.get(name_or_offset)
        shape = table.by_name.get(_name_key(name_or_offset))
        if shape is not None:
            return shape
        kind = builtin_primitive(name_or_offset, table.pointer_size)
        if kind is not None:
            return ShapeDescriptor.of_primitive(name_or_offset, kind)
        return None

    def list_types(self, module: str) -> List[str]:
        table = self._table(module, None)
        return sorted(
            name for name, shape in table.by_name.items()
            if shape.kind not in (ShapeKind.PRIMITIVE, ShapeKind.ALIAS)
        )

    def pointer_size(self, module: str) -> int:
        return self._table(module, None).pointer_size


# ═══════════════════════════════════════════════════════════════════════════
# ROUTING
# ═══════════════════════════════════════════════════════════════════════════

class RoutingSymbolProvider:
    """Dispatches every query to the provider registered for its module."""

    def __init__(self, routes: Optional[Dict[str, SymbolProvider]] = None) -> None:
        self._routes: Dict[str, SymbolProvider] = dict(routes or {})

    def route(self, module: str, provider: SymbolProvider) -> None:
        if module in self._routes and self._routes[module] is not provider:
            raise ValueError(f"module {module!r} already has a symbol provider")
        self._routes[module] = provider

    def modules(self) -> List[str]:
        return sorted(self._routes)

    def _provider(self, module: str, query: object) -> SymbolProvider:
        provider = self._routes.get(module)
        if provider is None:
            raise ProviderQueryError(f"unknown module {module!r}", module=module, query=query)
        return provider

    def lookup_type(self, module: str, name_or_offset: TypeRef) -> Optional[ShapeDescriptor]:
        return self._provider(module, name_or_offset).lookup_type(module, name_or_offset)

    def list_types(self, module: str) -> Sequence[str]:
        return self._provider(module, None).list_types(module)

    def pointer_size(self, module: str) -> int:
        return self._provider(module, None).pointer_size(module)
