#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbgcodegen/resolver.py
======================

Builds the canonical type graph of one module from symbol-provider shapes.

Resolution runs in two phases per type:

1. **declare**: query the provider (memoized per reference), compute the
   :class:`~dbgcodegen.instances.CanonicalKey`, and either reuse the
   registry entry for that key or register a new instance.  Aggregates
   are registered as empty placeholders and queued on a worklist.
2. **define**: populate an aggregate placeholder: its bases and fields
   are declared, the ones embedded *by value* are defined recursively
   first, then the aggregate is finalized.

Pointer targets, function signatures and template arguments are only
declared.  The aggregates they reach are defined later from the worklist,
so pointer cycles (``struct Node { Node *next; }``) never recurse.

A by-value edge that reaches an aggregate that is still being defined is
an illegal cycle: every aggregate on the cycle is marked invalid and
finalized, and resolution of everything else continues.

Per-type problems become :class:`~dbgcodegen.errors.Diagnostic` records;
only provider failures (:class:`ProviderQueryError`) and cancellation
(:class:`GenerationCancelled`) leave the resolver.
"""

from __future__ import annotations

import collections
import logging
import threading
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple, Union

from .errors import (
    Diagnostic,
    DiagnosticKind,
    GenerationCancelled,
    IllegalValueCycleError,
    InvalidLayoutError,
    ProviderQueryError,
    Severity,
    TypeNameSyntaxError,
    UnresolvableTypeError,
)
from .instances import (
    Aggregate,
    Array,
    CanonicalKey,
    EnumInstance,
    Field,
    Function,
    InstanceKind,
    Pointer,
    Primitive,
    PrimitiveKind,
    TemplateInstance,
    TypeInstance,
    Undefined,
)
from .provider import ShapeDescriptor, ShapeKind, SymbolProvider, TypeRef
from .typenames import DeclaratorKind, Declarator, TypeExpr, parse_type_name

logger = logging.getLogger(__name__)

__all__ = ["TypeRegistry", "TypeGraphResolver"]

ANONYMOUS_PREFIX = "<anonymous"


# ═══════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════════════════

class TypeRegistry:
    """
    At most one instance per canonical key.

    An instance has one primary key (the one it was registered under) and
    any number of alias keys (typedefs, alternate spellings).
    """

    def __init__(self, module: str) -> None:
        self.module = module
        self._by_key: Dict[CanonicalKey, TypeInstance] = {}
        self._keys: Dict[TypeInstance, List[CanonicalKey]] = {}
        self._invalid: Dict[TypeInstance, str] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: CanonicalKey) -> bool:
        return key in self._by_key

    def get(self, key: CanonicalKey) -> Optional[TypeInstance]:
        return self._by_key.get(key)

    def register(self, key: CanonicalKey, instance: TypeInstance) -> TypeInstance:
        existing = self._by_key.get(key)
        if existing is not None and existing is not instance:
            raise ValueError(f"key {key} already registered to {existing!r}")
        if existing is None:
            self._by_key[key] = instance
            self._keys.setdefault(instance, []).append(key)
        return instance

    def alias(self, key: CanonicalKey, instance: TypeInstance) -> None:
        existing = self._by_key.get(key)
        if existing is instance:
            return
        if existing is not None:
            logger.debug("%s: alias %s already names %r", self.module, key, existing)
            return
        if instance not in self._keys:
            raise ValueError(f"cannot alias {key} to unregistered {instance!r}")
        self._by_key[key] = instance
        self._keys[instance].append(key)

    def key_of(self, instance: TypeInstance) -> CanonicalKey:
        return self._keys[instance][0]

    def keys_of(self, instance: TypeInstance) -> Tuple[CanonicalKey, ...]:
        return tuple(self._keys.get(instance, ()))

    def instances(self) -> List[TypeInstance]:
        """Every registered instance once, ordered by primary key."""
        return sorted(self._keys, key=lambda inst: str(self._keys[inst][0]))

    def items(self) -> List[Tuple[CanonicalKey, TypeInstance]]:
        return sorted(self._by_key.items(), key=lambda kv: str(kv[0]))

    def mark_invalid(self, instance: TypeInstance, reason: str) -> None:
        self._invalid.setdefault(instance, reason)

    def is_invalid(self, instance: TypeInstance) -> bool:
        return instance in self._invalid

    def invalid_reason(self, instance: TypeInstance) -> Optional[str]:
        return self._invalid.get(instance)


# ═══════════════════════════════════════════════════════════════════════════
# RESOLVER
# ═══════════════════════════════════════════════════════════════════════════

class TypeGraphResolver:
    """
    Resolve type references of one module into a finalized type graph.

    One resolver (and its registry) serves one module run; it is not
    shared between threads.
    """

    def __init__(
        self,
        provider: SymbolProvider,
        module: str,
        cancel_event: Optional[threading.Event] = None,
        registry: Optional[TypeRegistry] = None,
    ) -> None:
        self.provider = provider
        self.module = module
        self.cancel_event = cancel_event
        self.registry = registry if registry is not None else TypeRegistry(module)
        self.diagnostics: List[Diagnostic] = []
        self.last_successful_query: Optional[TypeRef] = None

        self._shapes: Dict[TypeRef, Optional[ShapeDescriptor]] = {}
        self._declared: Dict[TypeRef, TypeInstance] = {}
        self._placeholders: Dict[Aggregate, ShapeDescriptor] = {}
        self._worklist: Deque[Aggregate] = collections.deque()
        self._defining: List[Aggregate] = []
        self._aliases: Set[str] = set()
        self._pointer_size: Optional[int] = None
        self._anonymous = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, ref: TypeRef) -> TypeInstance:
        """Resolve one reference; every aggregate it reaches ends up finalized."""
        return self.resolve_all([ref])[0]

    def resolve_all(self, refs: Iterable[TypeRef]) -> List[TypeInstance]:
        roots = [self._declare(ref) for ref in refs]
        self._drain()
        return roots

    # ------------------------------------------------------------------
    # Provider access
    # ------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise GenerationCancelled(self.module)

    def _query(self, ref: TypeRef) -> Optional[ShapeDescriptor]:
        if ref in self._shapes:
            return self._shapes[ref]
        self._check_cancelled()
        try:
            shape = self.provider.lookup_type(self.module, ref)
        except (ProviderQueryError, GenerationCancelled):
            raise
        except Exception as exc:
            raise ProviderQueryError(f"lookup of {ref!r} failed: {exc}",
                                     module=self.module, query=ref) from exc
        logger.debug("%s: lookup %r -> %s", self.module, ref,
                     shape.kind.value if shape is not None else None)
        self._shapes[ref] = shape
        self.last_successful_query = ref
        return shape

    @property
    def pointer_size(self) -> int:
        if self._pointer_size is None:
            self._check_cancelled()
            try:
                self._pointer_size = int(self.provider.pointer_size(self.module))
            except ProviderQueryError:
                raise
            except Exception as exc:
                raise ProviderQueryError(f"pointer size query failed: {exc}",
                                         module=self.module) from exc
        return self._pointer_size

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _report(self, diagnostic: Diagnostic) -> None:
        log = logger.warning if diagnostic.severity is Severity.ERROR else logger.info
        log("%s", diagnostic)
        self.diagnostics.append(diagnostic)

    def _undefined(self, name: str, reason: str) -> TypeInstance:
        key = CanonicalKey.named(self.module, name)
        existing = self.registry.get(key)
        if existing is not None:
            return existing
        self._report(UnresolvableTypeError(reason, type_name=name,
                                           module=self.module).to_diagnostic())
        return self.registry.register(key, Undefined(name))

    # ------------------------------------------------------------------
    # Declare phase
    # ------------------------------------------------------------------

    def _declare(self, ref: TypeRef) -> TypeInstance:
        cached = self._declared.get(ref)
        if cached is not None:
            return cached

        if isinstance(ref, str):
            try:
                expr = parse_type_name(ref)
            except TypeNameSyntaxError as exc:
                inst = self._undefined(ref.strip(), exc.message)
                self._declared[ref] = inst
                return inst
            if expr.declarators:
                inst = self._declare(expr.without_declarators().format())
                for decl in expr.application_order():
                    inst = self._apply_declarator(inst, decl)
                self._declared[ref] = inst
                return inst
            normalized = expr.format()
            if normalized != ref:
                inst = self._declare(normalized)
                self._declared[ref] = inst
                return inst

        shape = self._query(ref)
        label = ref if isinstance(ref, str) else f"#{ref:x}"
        inst = self._declare_shape(label, shape)
        self._declared[ref] = inst
        return inst

    def _apply_declarator(self, inst: TypeInstance, decl: Declarator) -> TypeInstance:
        if decl.kind is DeclaratorKind.ARRAY:
            return self._array(inst, decl.length)
        return self._pointer(inst, None)

    def _declare_shape(self, label: str, shape: Optional[ShapeDescriptor]) -> TypeInstance:
        if shape is None:
            return self._undefined(label, "symbol provider does not know this type")

        kind = shape.kind
        if kind is ShapeKind.PRIMITIVE:
            return self._primitive(shape.primitive or PrimitiveKind.VOID)
        if kind is ShapeKind.POINTER:
            if shape.target is None:
                return self._pointer(self._primitive(PrimitiveKind.VOID), shape.size)
            return self._pointer(self._declare(shape.target), shape.size)
        if kind is ShapeKind.ARRAY:
            if shape.target is None:
                return self._undefined(label, "array shape without element type")
            return self._array(self._declare(shape.target), shape.length)
        if kind is ShapeKind.ALIAS:
            return self._alias(label, shape)
        if kind is ShapeKind.ENUM:
            return self._enum(shape)
        if kind is ShapeKind.FUNCTION:
            return self._function(shape)
        if shape.is_aggregate:
            return self._aggregate(shape)
        return self._undefined(shape.name or label, f"unsupported type kind {kind.value}")

    def _primitive(self, kind: PrimitiveKind) -> TypeInstance:
        key = CanonicalKey.primitive(self.module, kind)
        return self.registry.get(key) or self.registry.register(key, Primitive(kind))

    def _pointer(self, target: TypeInstance, size: Optional[int]) -> TypeInstance:
        key = CanonicalKey.pointer(self.module, self.registry.key_of(target))
        existing = self.registry.get(key)
        if existing is not None:
            return existing
        return self.registry.register(key, Pointer(target, size or self.pointer_size))

    def _array(self, element: TypeInstance, length: Optional[int]) -> TypeInstance:
        key = CanonicalKey.array(self.module, self.registry.key_of(element), length)
        return self.registry.get(key) or self.registry.register(key, Array(element, length))

    def _alias(self, label: str, shape: ShapeDescriptor) -> TypeInstance:
        if shape.target is None:
            return self._undefined(shape.name or label, "typedef without target type")
        if label in self._aliases:
            return self._undefined(label, "typedef chain refers to itself")
        self._aliases.add(label)
        try:
            target = self._declare(shape.target)
        finally:
            self._aliases.discard(label)
        if shape.name:
            # typedef struct { ... } Name; the allocator names the type from this key
            self.registry.alias(self._named_key(shape.name), target)
        return target

    def _anonymous_name(self, shape: ShapeDescriptor) -> str:
        if shape.type_id is not None:
            return f"{ANONYMOUS_PREFIX}-{shape.type_id:x}>"
        self._anonymous += 1
        return f"{ANONYMOUS_PREFIX}-{self._anonymous}>"

    def _enum(self, shape: ShapeDescriptor) -> TypeInstance:
        name = shape.name or self._anonymous_name(shape)
        key = self._named_key(name)
        existing = self.registry.get(key)
        if existing is not None:
            return existing
        if shape.underlying is not None:
            underlying = self._declare(shape.underlying)
        else:
            size = shape.size if shape.size in (1, 2, 4, 8) else 4
            underlying = self._primitive(PrimitiveKind.integer(size, signed=True))

        members: List[Tuple[str, int]] = []
        seen = set()
        for member_name, value in shape.members:
            if member_name in seen:
                self._report(Diagnostic(
                    DiagnosticKind.DUPLICATE_MEMBER, Severity.WARNING, self.module,
                    name, f"duplicate enumerator {member_name!r} dropped",
                ))
                continue
            seen.add(member_name)
            members.append((member_name, value))

        namespace, short = _split(name)
        return self.registry.register(key, EnumInstance(short, underlying, tuple(members), namespace))

    def _function(self, shape: ShapeDescriptor) -> TypeInstance:
        if shape.return_type is not None:
            ret = self._declare(shape.return_type)
        else:
            ret = self._primitive(PrimitiveKind.VOID)
        params = [self._declare(p) for p in shape.parameters]
        key = CanonicalKey.function(self.module, self.registry.key_of(ret),
                                    [self.registry.key_of(p) for p in params],
                                    shape.variadic)
        existing = self.registry.get(key)
        if existing is not None:
            return existing
        return self.registry.register(
            key, Function(ret, tuple(params), shape.variadic, shape.name or None))

    def _aggregate(self, shape: ShapeDescriptor) -> TypeInstance:
        name = shape.name or self._anonymous_name(shape)
        expr = _parse_or_none(name)
        union = shape.kind is ShapeKind.UNION
        if expr is not None and expr.is_template:
            arguments: List[Union[TypeInstance, int]] = []
            for arg in expr.template_arguments:
                arguments.append(arg if isinstance(arg, int) else self._declare(arg.format()))
            key_args = [a if isinstance(a, int) else self.registry.key_of(a) for a in arguments]
            key = CanonicalKey.named(self.module, expr.base_name, key_args)
            existing = self.registry.get(key)
            if existing is not None:
                return existing
            inst: Aggregate = TemplateInstance(
                name=expr.short_name, namespace=expr.namespace, size_bytes=shape.size,
                is_union=union, base_name=expr.segments[-1].name,
                arguments=tuple(arguments),
            )
        else:
            key = self._named_key(name)
            existing = self.registry.get(key)
            if existing is not None:
                return existing
            namespace, short = _split(name)
            inst = Aggregate(name=short, namespace=namespace, size_bytes=shape.size,
                             is_union=union)

        self.registry.register(key, inst)
        self._placeholders[inst] = shape
        self._worklist.append(inst)
        return inst

    def _named_key(self, name: str) -> CanonicalKey:
        expr = _parse_or_none(name)
        return CanonicalKey.named(self.module, expr.format() if expr is not None else name)

    # ------------------------------------------------------------------
    # Define phase
    # ------------------------------------------------------------------

    def _drain(self) -> None:
        while self._worklist:
            agg = self._worklist.popleft()
            if not agg.is_finalized:
                self._define(agg)

    def _define_value(self, inst: TypeInstance) -> None:
        """Define everything *inst* embeds by value."""
        while inst.kind is InstanceKind.ARRAY:
            inst = inst.element
        if isinstance(inst, Aggregate) and not inst.is_finalized:
            self._define(inst)

    def _define(self, agg: Aggregate) -> None:
        if agg in self._defining:
            start = self._defining.index(agg)
            cycle = [self.registry.key_of(a) for a in self._defining[start:]]
            raise IllegalValueCycleError(cycle, module=self.module)

        shape = self._placeholders.pop(agg)
        self._defining.append(agg)
        try:
            for base in shape.bases:
                inst = self._declare(base.type_ref)
                self._define_value(inst)
                agg.add_base(inst, base.offset)
            for fd in shape.fields:
                inst = self._declare(fd.type_ref)
                self._define_value(inst)
                agg.add_field(Field(fd.name, inst, fd.byte_offset, fd.bit_offset, fd.bit_width))
            self._check_layout(agg)
        except IllegalValueCycleError as exc:
            self.registry.mark_invalid(agg, exc.message)
            agg.finalize()
            if exc.cycle[0] != self.registry.key_of(agg):
                raise
            self._report(exc.to_diagnostic(self.module))
            return
        except InvalidLayoutError as exc:
            self.registry.mark_invalid(agg, exc.message)
            self._report(exc.to_diagnostic(self.module))
        finally:
            self._defining.pop()
        agg.finalize()

    def _check_layout(self, agg: Aggregate) -> None:
        key = str(self.registry.key_of(agg))
        size = agg.size
        for base in agg.base_types:
            if base.offset < 0 or (size is not None and base.offset > size):
                raise InvalidLayoutError(
                    f"base {base.instance.display_name} at offset {base.offset} "
                    f"outside [0, {size}]", type_name=key, module=self.module)
        for member in agg.fields:
            offset = member.byte_offset
            flexible = isinstance(member.instance, Array) and not member.instance.length
            if offset < 0 or (size is not None and not (
                    offset < size or (flexible and offset == size))):
                raise InvalidLayoutError(
                    f"field {member.name!r} at offset {offset} outside [0, {size})",
                    type_name=key, module=self.module)
            if member.bit_width is not None:
                storage = member.instance.size
                limit = 8 * storage if storage else 8
                bit_offset = member.bit_offset or 0
                if member.bit_width <= 0 or bit_offset < 0 or bit_offset + member.bit_width > limit:
                    raise InvalidLayoutError(
                        f"bit-field {member.name!r} bits [{bit_offset}, "
                        f"{bit_offset + member.bit_width}) exceed its {limit}-bit storage",
                        type_name=key, module=self.module)


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def _parse_or_none(name: str) -> Optional[TypeExpr]:
    try:
        expr = parse_type_name(name)
    except TypeNameSyntaxError:
        return None
    return None if expr.declarators else expr


def _split(name: str) -> Tuple[str, str]:
    """``ns::Foo<int>`` → ``("ns", "Foo<int>")``; unparsable names stay whole."""
    expr = _parse_or_none(name)
    if expr is None:
        return "", name
    return expr.namespace, expr.short_name
