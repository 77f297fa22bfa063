#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbgcodegen/instances.py
=======================

The type instance model: canonical, deduplicated descriptors of native
types, linked into a (possibly cyclic) graph.

Variants
--------
The set of variants is closed; :class:`InstanceKind` names them and every
:class:`InstanceVisitor` handles all of them::

    Primitive          fixed-size scalar (int32, float64, ...)
    Pointer            reference to another instance (the only cycle carrier)
    Array              element × length (length None = unknown)
    Enum               underlying primitive + ordered members
    Function           return type, parameters, variadic flag
    Aggregate          struct / class / union: bases + fields
    TemplateInstance   aggregate whose name carries template arguments
    Undefined          placeholder for a type the provider cannot describe

Identity
--------
Instances compare by identity.  Deduplication happens in the resolver's
registry through :class:`CanonicalKey`, never through ``__eq__``: the graph
may contain cycles and structural equality on it would not terminate.

Aggregates start as placeholders, are populated once by the resolver and
then :meth:`finalize`-d.  All other variants are finalized on construction.
A finalized instance rejects attribute assignment with
:class:`dataclasses.FrozenInstanceError`.
"""

from __future__ import annotations

import abc
from dataclasses import FrozenInstanceError, dataclass, field
from enum import Enum
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

__all__ = [
    "InstanceKind",
    "PrimitiveKind",
    "CanonicalKey",
    "TypeInstance",
    "Primitive",
    "Pointer",
    "Array",
    "EnumInstance",
    "Function",
    "BaseType",
    "Field",
    "Aggregate",
    "TemplateInstance",
    "Undefined",
    "InstanceVisitor",
    "OPAQUE_MARKER",
]

#: Rendered in place of any type that has no generated declaration.
OPAQUE_MARKER = "Variable"

FUNCTION_MARKER = "CodeFunction"


# ═══════════════════════════════════════════════════════════════════════════
# KINDS
# ═══════════════════════════════════════════════════════════════════════════

class InstanceKind(Enum):
    PRIMITIVE = "primitive"
    POINTER = "pointer"
    ARRAY = "array"
    ENUM = "enum"
    FUNCTION = "function"
    AGGREGATE = "aggregate"
    TEMPLATE = "template"
    UNDEFINED = "undefined"


class PrimitiveKind(Enum):
    """Fixed-size scalar kinds.  ``token`` is the rendered type token."""

    VOID = ("void", 0)
    BOOL = ("bool8", 1)
    CHAR = ("char8", 1)
    WCHAR = ("char16", 2)
    INT8 = ("int8", 1)
    UINT8 = ("uint8", 1)
    INT16 = ("int16", 2)
    UINT16 = ("uint16", 2)
    INT32 = ("int32", 4)
    UINT32 = ("uint32", 4)
    INT64 = ("int64", 8)
    UINT64 = ("uint64", 8)
    INT128 = ("int128", 16)
    UINT128 = ("uint128", 16)
    FLOAT32 = ("float32", 4)
    FLOAT64 = ("float64", 8)

    def __init__(self, token: str, size: int) -> None:
        self.token = token
        self.size = size

    @property
    def is_signed(self) -> bool:
        return self.token.startswith("int") or self.token.startswith("float")

    @property
    def is_integral(self) -> bool:
        return self not in (PrimitiveKind.VOID, PrimitiveKind.FLOAT32, PrimitiveKind.FLOAT64)

    @classmethod
    def from_token(cls, token: str) -> "PrimitiveKind":
        for member in cls:
            if member.token == token:
                return member
        raise ValueError(f"unknown primitive token {token!r}")

    @classmethod
    def integer(cls, size: int, signed: bool) -> "PrimitiveKind":
        """The integral kind of *size* bytes."""
        prefix = "int" if signed else "uint"
        return cls.from_token(f"{prefix}{size * 8}")


# ═══════════════════════════════════════════════════════════════════════════
# CANONICAL KEY
# ═══════════════════════════════════════════════════════════════════════════

KeyArgument = Union["CanonicalKey", int]


@dataclass(frozen=True)
class CanonicalKey:
    """
    Identity of a type within one module's resolution run.

    ``qualified_name`` is the normalized native name; structural types use
    reserved names (``*`` pointer, ``[N]`` / ``[]`` array, ``()`` / ``(...)``
    function) with their component keys as arguments.
    """

    module: str
    qualified_name: str
    template_arguments: Tuple[KeyArgument, ...] = ()

    def __str__(self) -> str:
        text = f"{self.module}!{self.qualified_name}"
        if self.template_arguments:
            text += "<" + ", ".join(str(a) for a in self.template_arguments) + ">"
        return text

    def __lt__(self, other: "CanonicalKey") -> bool:
        return str(self) < str(other)

    @property
    def is_structural(self) -> bool:
        return self.qualified_name[:1] in ("*", "[", "(")

    @classmethod
    def named(cls, module: str, qualified_name: str,
              arguments: Sequence[KeyArgument] = ()) -> "CanonicalKey":
        return cls(module, qualified_name, tuple(arguments))

    @classmethod
    def primitive(cls, module: str, kind: PrimitiveKind) -> "CanonicalKey":
        return cls(module, kind.token)

    @classmethod
    def pointer(cls, module: str, pointee: "CanonicalKey") -> "CanonicalKey":
        return cls(module, "*", (pointee,))

    @classmethod
    def array(cls, module: str, element: "CanonicalKey",
              length: Optional[int]) -> "CanonicalKey":
        name = f"[{length}]" if length is not None else "[]"
        return cls(module, name, (element,))

    @classmethod
    def function(cls, module: str, return_key: "CanonicalKey",
                 parameter_keys: Sequence["CanonicalKey"],
                 variadic: bool) -> "CanonicalKey":
        return cls(module, "(...)" if variadic else "()",
                   (return_key,) + tuple(parameter_keys))


# ═══════════════════════════════════════════════════════════════════════════
# BASE CLASS
# ═══════════════════════════════════════════════════════════════════════════

NameLookup = Mapping["TypeInstance", str]


class TypeInstance:
    """Common behaviour of every instance variant."""

    kind: InstanceKind
    _finalized: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_finalized", False):
            raise FrozenInstanceError(
                f"cannot assign to {name!r} of finalized {type(self).__name__}"
            )
        object.__setattr__(self, name, value)

    def finalize(self) -> None:
        object.__setattr__(self, "_finalized", True)

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def accept(self, visitor: "InstanceVisitor") -> Any:
        return getattr(visitor, f"visit_{self.kind.value}")(self)

    # -- structure --------------------------------------------------------

    @property
    def size(self) -> Optional[int]:
        return None

    @property
    def display_name(self) -> str:
        raise NotImplementedError

    def value_dependencies(self) -> List["TypeInstance"]:
        """Instances embedded by value (their layout is part of this one)."""
        return []

    def reference_dependencies(self) -> List["TypeInstance"]:
        """Instances only referred to (pointer targets, signatures, template args)."""
        return []

    def dependencies(self) -> Iterator[Tuple["TypeInstance", bool]]:
        """All outgoing edges as ``(target, by_value)`` in declaration order."""
        for dep in self.value_dependencies():
            yield dep, True
        for dep in self.reference_dependencies():
            yield dep, False

    def contains_undefined(self) -> bool:
        """
        True when this instance is Undefined or embeds one by value.

        Pointer targets, function signatures and template arguments do not
        propagate: a pointer to an undefined type is still a usable pointer.
        """
        seen = set()
        stack: List[TypeInstance] = [self]
        while stack:
            inst = stack.pop()
            if id(inst) in seen:
                continue
            seen.add(id(inst))
            if inst.kind is InstanceKind.UNDEFINED:
                return True
            stack.extend(inst.value_dependencies())
        return False

    # -- rendering --------------------------------------------------------

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.display_name}>"


def _named_reference(inst: "TypeInstance", native: str,
                     names: Optional[NameLookup]) -> str:
    if names is None:
        return native
    return names.get(inst, OPAQUE_MARKER)


# ═══════════════════════════════════════════════════════════════════════════
# LEAF AND STRUCTURAL VARIANTS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(eq=False, repr=False)
class Primitive(TypeInstance):
    primitive: PrimitiveKind
    kind = InstanceKind.PRIMITIVE

    def __post_init__(self) -> None:
        self.finalize()

    @property
    def size(self) -> Optional[int]:
        return self.primitive.size

    @property
    def display_name(self) -> str:
        return self.primitive.token

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        return self.primitive.token


@dataclass(eq=False, repr=False)
class Pointer(TypeInstance):
    pointee: TypeInstance
    pointer_size: int = 8
    kind = InstanceKind.POINTER

    def __post_init__(self) -> None:
        self.finalize()

    @property
    def size(self) -> Optional[int]:
        return self.pointer_size

    @property
    def display_name(self) -> str:
        return f"{self.pointee.display_name}*"

    def reference_dependencies(self) -> List[TypeInstance]:
        return [self.pointee]

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        inner = self.pointee.render_type_string(truncate_namespace, names)
        return f"Pointer[{inner}]"


@dataclass(eq=False, repr=False)
class Array(TypeInstance):
    element: TypeInstance
    length: Optional[int] = None
    kind = InstanceKind.ARRAY

    def __post_init__(self) -> None:
        self.finalize()

    @property
    def size(self) -> Optional[int]:
        if self.length is None or self.element.size is None:
            return None
        return self.element.size * self.length

    @property
    def display_name(self) -> str:
        dim = "" if self.length is None else str(self.length)
        return f"{self.element.display_name}[{dim}]"

    def value_dependencies(self) -> List[TypeInstance]:
        return [self.element]

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        inner = self.element.render_type_string(truncate_namespace, names)
        return f"Array[{inner}, {self.length}]"


@dataclass(eq=False, repr=False)
class EnumInstance(TypeInstance):
    name: str
    underlying: TypeInstance
    members: Tuple[Tuple[str, int], ...] = ()
    namespace: str = ""
    kind = InstanceKind.ENUM

    def __post_init__(self) -> None:
        self.members = tuple(self.members)
        self.finalize()

    @property
    def size(self) -> Optional[int]:
        return self.underlying.size

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}::{self.name}" if self.namespace else self.name

    @property
    def display_name(self) -> str:
        return self.qualified_name

    def value_dependencies(self) -> List[TypeInstance]:
        return [self.underlying]

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        native = self.name if truncate_namespace else self.qualified_name
        return _named_reference(self, native, names)


@dataclass(eq=False, repr=False)
class Function(TypeInstance):
    return_type: TypeInstance
    parameters: Tuple[TypeInstance, ...] = ()
    variadic: bool = False
    name: Optional[str] = None
    kind = InstanceKind.FUNCTION

    def __post_init__(self) -> None:
        self.parameters = tuple(self.parameters)
        self.finalize()

    @property
    def display_name(self) -> str:
        params = [p.display_name for p in self.parameters]
        if self.variadic:
            params.append("...")
        label = self.name or "(*)"
        return f"{self.return_type.display_name} {label}({', '.join(params)})"

    def reference_dependencies(self) -> List[TypeInstance]:
        return [self.return_type, *self.parameters]

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        if names is not None and self in names:
            return names[self]
        return FUNCTION_MARKER


@dataclass(eq=False, repr=False)
class Undefined(TypeInstance):
    name: str
    kind = InstanceKind.UNDEFINED

    def __post_init__(self) -> None:
        self.finalize()

    @property
    def display_name(self) -> str:
        return self.name

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        return OPAQUE_MARKER


# ═══════════════════════════════════════════════════════════════════════════
# AGGREGATES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BaseType:
    instance: TypeInstance
    offset: int = 0


@dataclass(frozen=True)
class Field:
    name: str
    instance: TypeInstance
    byte_offset: int
    bit_offset: Optional[int] = None
    bit_width: Optional[int] = None

    @property
    def is_bitfield(self) -> bool:
        return self.bit_width is not None


@dataclass(eq=False, repr=False)
class Aggregate(TypeInstance):
    """A struct, class or union.  Created empty, populated, then finalized."""

    name: str
    namespace: str = ""
    size_bytes: Optional[int] = None
    base_types: List[BaseType] = field(default_factory=list)
    fields: List[Field] = field(default_factory=list)
    is_union: bool = False
    kind = InstanceKind.AGGREGATE

    def finalize(self) -> None:
        if self._finalized:
            return
        self.base_types = tuple(self.base_types)
        self.fields = tuple(self.fields)
        super().finalize()

    @property
    def size(self) -> Optional[int]:
        return self.size_bytes

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}::{self.name}" if self.namespace else self.name

    @property
    def display_name(self) -> str:
        return self.qualified_name

    def add_base(self, instance: TypeInstance, offset: int) -> None:
        self.base_types.append(BaseType(instance, offset))

    def add_field(self, member: Field) -> None:
        self.fields.append(member)

    def value_dependencies(self) -> List[TypeInstance]:
        deps = [b.instance for b in self.base_types]
        deps.extend(f.instance for f in self.fields)
        return deps

    def render_type_string(self, truncate_namespace: bool = False,
                           names: Optional[NameLookup] = None) -> str:
        native = self.name if truncate_namespace else self.qualified_name
        return _named_reference(self, native, names)


@dataclass(eq=False, repr=False)
class TemplateInstance(Aggregate):
    """An aggregate instantiated from a template: ``name`` carries the arguments."""

    base_name: str = ""
    arguments: Tuple[Union[TypeInstance, int], ...] = ()
    kind = InstanceKind.TEMPLATE

    def __post_init__(self) -> None:
        self.arguments = tuple(self.arguments)

    @property
    def type_arguments(self) -> List[TypeInstance]:
        return [a for a in self.arguments if isinstance(a, TypeInstance)]

    def reference_dependencies(self) -> List[TypeInstance]:
        return self.type_arguments


# ═══════════════════════════════════════════════════════════════════════════
# VISITOR
# ═══════════════════════════════════════════════════════════════════════════

class InstanceVisitor(abc.ABC):
    """Exhaustive dispatch over the instance variants."""

    def visit(self, inst: TypeInstance) -> Any:
        return inst.accept(self)

    @abc.abstractmethod
    def visit_primitive(self, inst: Primitive) -> Any: ...

    @abc.abstractmethod
    def visit_pointer(self, inst: Pointer) -> Any: ...

    @abc.abstractmethod
    def visit_array(self, inst: Array) -> Any: ...

    @abc.abstractmethod
    def visit_enum(self, inst: EnumInstance) -> Any: ...

    @abc.abstractmethod
    def visit_function(self, inst: Function) -> Any: ...

    @abc.abstractmethod
    def visit_aggregate(self, inst: Aggregate) -> Any: ...

    @abc.abstractmethod
    def visit_template(self, inst: TemplateInstance) -> Any: ...

    @abc.abstractmethod
    def visit_undefined(self, inst: Undefined) -> Any: ...
