"""
dbgcodegen/naming.py
════════════════════

Identifier allocation for generated declarations and their members.

Every Aggregate, TemplateInstance, Enum and Function that gets a
declaration receives one Python identifier.  Allocation is a pure function
of the *set* of instances and their canonical keys, so the same input in any
order yields the same names:

1. each instance proposes a candidate (its sanitized short or qualified
   name; anonymous aggregates and enums take their smallest typedef
   alias; unnamed functions use a hash of their key);
2. candidates are grouped; within a group instances are ordered by
   ``str(key)`` and the first one keeps the bare candidate;
3. the remaining ones take ``<candidate>_2``, ``<candidate>_3`` …,
   skipping anything already taken or reserved.

Reserved names are the runtime API the generated code imports, the
primitive type tokens, Python keywords and the builtins the generated code
relies on.
"""

from __future__ import annotations

import hashlib
import keyword
import logging
import re
from collections import defaultdict
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import IdentifierCollisionError, TypeNameSyntaxError
from .instances import (
    Aggregate,
    CanonicalKey,
    EnumInstance,
    Function,
    InstanceKind,
    PrimitiveKind,
    TypeInstance,
)
from .resolver import ANONYMOUS_PREFIX
from .typenames import parse_type_name

logger = logging.getLogger(__name__)

__all__ = [
    "NAMED_KINDS",
    "RESERVED_IDENTIFIERS",
    "MEMBER_RESERVED",
    "sanitize",
    "NameTable",
    "IdentifierAllocator",
]

NAMED_KINDS = frozenset({
    InstanceKind.AGGREGATE,
    InstanceKind.TEMPLATE,
    InstanceKind.ENUM,
    InstanceKind.FUNCTION,
})

RUNTIME_NAMES = frozenset({
    "UserType", "Variable", "Pointer", "Array", "CodeFunction", "NativeEnum",
    "ctypes", "Structure", "Union",
})

RESERVED_IDENTIFIERS: FrozenSet[str] = frozenset(
    RUNTIME_NAMES
    | {kind.token for kind in PrimitiveKind}
    | set(keyword.kwlist)
    | {"property", "object", "int", "str", "None", "True", "False"}
)

# Attribute names of the runtime base classes a field property must not shadow.
MEMBER_RESERVED: FrozenSet[str] = frozenset({
    "read_field", "read_bitfield", "base_class", "address", "cast",
    "memory", "size", "native_name", "native_size",
    "_fields_", "_pack_", "_anonymous_",
})

_INVALID_RUN = re.compile(r"[^A-Za-z0-9_]+")


def sanitize(name: str) -> str:
    """
    Turn a native name into a Python identifier.

    >>> sanitize("std::pair<int, Node*>")
    'std_pair_int_Node_ptr'
    """
    text = name.replace("::", " ").replace("*", "_ptr").replace("&", "_ref")
    parts = [p for p in _INVALID_RUN.split(text) if p]
    result = "_".join(parts)
    if not result:
        return "unnamed"
    if result[0].isdigit():
        result = "_" + result
    return result


class NameTable(Mapping[TypeInstance, str]):
    """Identifiers allocated for one module; also allocates member names."""

    def __init__(self, identifiers: Dict[TypeInstance, str]) -> None:
        self._identifiers = identifiers
        self._members: Dict[Tuple[TypeInstance, FrozenSet[str]], List[str]] = {}

    def __getitem__(self, instance: TypeInstance) -> str:
        return self._identifiers[instance]

    def __iter__(self) -> Iterator[TypeInstance]:
        return iter(self._identifiers)

    def __len__(self) -> int:
        return len(self._identifiers)

    def identifiers(self) -> List[str]:
        return sorted(self._identifiers.values())

    def members(self, instance: TypeInstance, reserved: Iterable[str] = ()) -> List[str]:
        """Unique identifiers for the fields / enumerators of *instance*, in order."""
        extra = frozenset(reserved)
        cache_key = (instance, extra)
        cached = self._members.get(cache_key)
        if cached is not None:
            return cached
        if isinstance(instance, Aggregate):
            raw = [f.name for f in instance.fields]
        elif isinstance(instance, EnumInstance):
            raw = [name for name, _ in instance.members]
        else:
            raw = []
        result = allocate_members(raw, extra)
        self._members[cache_key] = result
        return result


def allocate_members(names: Sequence[str], reserved: FrozenSet[str] = frozenset()) -> List[str]:
    used: Set[str] = set()
    result: List[str] = []
    for index, raw in enumerate(names):
        base = sanitize(raw) if raw else f"unnamed_{index}"
        if base in MEMBER_RESERVED or keyword.iskeyword(base) or base in reserved:
            base += "_"
        ident = base
        suffix = 2
        while ident in used or ident in reserved:
            ident = f"{base}_{suffix}"
            suffix += 1
        used.add(ident)
        result.append(ident)
    return result


class IdentifierAllocator:
    """Allocate collision-free identifiers for the declarations of a module."""

    def __init__(
        self,
        truncate_namespace: bool = True,
        reserved: Iterable[str] = RESERVED_IDENTIFIERS,
        max_suffix: int = 10000,
    ) -> None:
        self.truncate_namespace = truncate_namespace
        self.reserved = frozenset(reserved)
        self.max_suffix = max_suffix

    def candidate(self, instance: TypeInstance, key: CanonicalKey,
                  aliases: Sequence[CanonicalKey] = ()) -> str:
        if isinstance(instance, Function):
            if instance.name:
                return sanitize(instance.name)
            digest = hashlib.sha1(str(key).encode("utf-8")).hexdigest()[:8]
            return f"func_{digest}"
        if isinstance(instance, (Aggregate, EnumInstance)):
            if instance.name.startswith(ANONYMOUS_PREFIX):
                typedef = self._typedef_name(aliases)
                if typedef is not None:
                    return sanitize(typedef)
            if self.truncate_namespace:
                return sanitize(instance.name)
            return sanitize(instance.qualified_name)
        raise TypeError(f"{instance!r} does not get a declaration identifier")

    def _typedef_name(self, aliases: Sequence[CanonicalKey]) -> Optional[str]:
        """Smallest typedef alias of an anonymous type (``typedef struct {...} Name;``)."""
        names = sorted(
            k.qualified_name for k in aliases
            if not k.is_structural and not k.template_arguments
            and not k.qualified_name.startswith(ANONYMOUS_PREFIX)
        )
        if not names:
            return None
        if not self.truncate_namespace:
            return names[0]
        try:
            return parse_type_name(names[0]).short_name
        except TypeNameSyntaxError:
            return names[0]

    def allocate(self, instances: Iterable[TypeInstance], registry) -> NameTable:
        groups: Dict[str, List[Tuple[str, TypeInstance]]] = defaultdict(list)
        for inst in instances:
            if inst.kind not in NAMED_KINDS:
                continue
            key, *aliases = registry.keys_of(inst)
            groups[self.candidate(inst, key, aliases)].append((str(key), inst))

        taken: Set[str] = set(self.reserved)
        identifiers: Dict[TypeInstance, str] = {}
        pending: List[Tuple[str, str, TypeInstance]] = []

        for candidate in sorted(groups):
            ordered = sorted(groups[candidate], key=lambda item: item[0])
            if candidate not in taken:
                taken.add(candidate)
                identifiers[ordered[0][1]] = candidate
                ordered = ordered[1:]
            pending.extend((candidate, key_text, inst) for key_text, inst in ordered)

        for candidate, key_text, inst in pending:
            for index in range(2, self.max_suffix + 2):
                ident = f"{candidate}_{index}"
                if ident not in taken:
                    break
            else:
                raise IdentifierCollisionError(candidate, key_text)
            logger.debug("identifier %s taken, %s becomes %s", candidate, key_text, ident)
            taken.add(ident)
            identifiers[inst] = ident

        return NameTable(identifiers)
