"""
dbgcodegen/writers/base.py
==========================

The code writer strategy: one :class:`CodeWriter` subclass per output
flavour, selected by name through :func:`get_writer`.

A writer is an :class:`~dbgcodegen.instances.InstanceVisitor`: rendering a
declaration dispatches on the instance variant.  Only Aggregate,
TemplateInstance, Enum and Function get declarations; the structural
variants exist in the output only as type references.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Type

from ..emitter import CodeEmitter
from ..instances import (
    Aggregate,
    Array,
    EnumInstance,
    InstanceVisitor,
    Pointer,
    Primitive,
    TemplateInstance,
    TypeInstance,
    Undefined,
)
from ..naming import NameTable, sanitize

logger = logging.getLogger(__name__)

__all__ = [
    "CodeFragment",
    "CodeWriter",
    "register_writer",
    "get_writer",
    "available_writers",
    "DEFAULT_RUNTIME_MODULE",
]

DEFAULT_RUNTIME_MODULE = "dbgscript.runtime"


@dataclass
class CodeFragment:
    """
    Rendered source for one declaration.

    ``prelude`` is emitted before every ``body`` of the module; writers
    that must declare names before they can describe them (ctypes) put the
    forward declaration there and the definition in ``body``.
    """

    instance: TypeInstance
    identifier: str
    body: str
    prelude: str = ""


class CodeWriter(InstanceVisitor):
    """Base class of all writers."""

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""

    def __init__(
        self,
        truncate_namespace: bool = True,
        runtime_module: str = DEFAULT_RUNTIME_MODULE,
    ) -> None:
        self.truncate_namespace = truncate_namespace
        self.runtime_module = runtime_module
        self._names: Optional[NameTable] = None

    @property
    def names(self) -> NameTable:
        if self._names is None:
            raise RuntimeError("writer used outside render_declaration()")
        return self._names

    # ------------------------------------------------------------------
    # Strategy API
    # ------------------------------------------------------------------

    def render_type_reference(self, instance: TypeInstance, names: NameTable) -> str:
        return instance.render_type_string(self.truncate_namespace, names)

    def render_declaration(self, instance: TypeInstance, names: NameTable) -> CodeFragment:
        self._names = names
        try:
            return instance.accept(self)
        finally:
            self._names = None

    @abc.abstractmethod
    def render_member_access(self, owner_expr: str, aggregate: Aggregate,
                             index: int, names: NameTable) -> str:
        """Expression reading field *index* of *aggregate* from *owner_expr*."""

    @abc.abstractmethod
    def render_prologue(self, module: str, names: NameTable) -> str:
        ...

    def render_epilogue(self, module: str, names: NameTable,
                        exported: Optional[Sequence[str]] = None) -> str:
        exported = sorted(exported) if exported is not None else names.identifiers()
        emitter = CodeEmitter()
        if not exported:
            emitter.emit("__all__ = []")
            return emitter.get_code()
        with emitter.block("__all__ = ["):
            for ident in exported:
                emitter.emit(f"{ident!r},")
        emitter.emit("]")
        return emitter.get_code()

    def assemble(self, module: str, fragments: Sequence[CodeFragment],
                 names: NameTable) -> str:
        parts = [self.render_prologue(module, names).rstrip("\n")]
        parts.extend(f.prelude.rstrip("\n") for f in fragments if f.prelude)
        parts.extend(f.body.rstrip("\n") for f in fragments if f.body)
        exported = [f.identifier for f in fragments]
        parts.append(self.render_epilogue(module, names, exported).rstrip("\n"))
        return "\n\n\n".join(p for p in parts if p) + "\n"

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def header_comment(self, module: str) -> List[str]:
        return [
            f"# Generated by dbgcodegen ({self.name} writer) for module {module!r}.",
            "# Do not edit: regenerate from the module's debug information instead.",
        ]

    def base_members(self, aggregate: Aggregate) -> Tuple[Optional[TypeInstance], List[Tuple[str, int, TypeInstance]]]:
        """
        Split the bases into the inherited one and the ones exposed by name.

        The first base at offset 0 that has a declaration of its own becomes
        the Python base class; every other base is ``(property, offset,
        instance)``.
        """
        inherited: Optional[TypeInstance] = None
        exposed: List[Tuple[str, int, TypeInstance]] = []
        used = set()
        for base in aggregate.base_types:
            if inherited is None and base.offset == 0 and base.instance in self.names:
                inherited = base.instance
                continue
            label = self.names.get(base.instance) or base.instance.display_name
            prop = sanitize(f"base_{label}")
            candidate, n = prop, 2
            while candidate in used:
                candidate = f"{prop}_{n}"
                n += 1
            used.add(candidate)
            exposed.append((candidate, base.offset, base.instance))
        return inherited, exposed

    @staticmethod
    def describe(instance: TypeInstance) -> str:
        size = instance.size
        what = "union" if isinstance(instance, Aggregate) and instance.is_union else "type"
        if isinstance(instance, EnumInstance):
            what = "enum"
        text = f"Native {what} ``{instance.display_name}``"
        if size is not None:
            text += f" ({size} bytes)"
        return text + "."

    # ------------------------------------------------------------------
    # Variants without declarations
    # ------------------------------------------------------------------

    def _no_declaration(self, instance: TypeInstance) -> CodeFragment:
        raise TypeError(f"{instance.kind.value} {instance.display_name} has no declaration")

    def visit_primitive(self, inst: Primitive) -> CodeFragment:
        return self._no_declaration(inst)

    def visit_pointer(self, inst: Pointer) -> CodeFragment:
        return self._no_declaration(inst)

    def visit_array(self, inst: Array) -> CodeFragment:
        return self._no_declaration(inst)

    def visit_undefined(self, inst: Undefined) -> CodeFragment:
        return self._no_declaration(inst)

    def visit_template(self, inst: TemplateInstance) -> CodeFragment:
        return self.visit_aggregate(inst)


# ═══════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════════════════

_WRITERS: Dict[str, Type[CodeWriter]] = {}


def register_writer(cls: Type[CodeWriter]) -> Type[CodeWriter]:
    """Class decorator adding a writer to the registry under ``cls.name``."""
    if not cls.name:
        raise ValueError(f"{cls.__name__} has no writer name")
    _WRITERS[cls.name] = cls
    return cls


def get_writer(name: str, **options) -> CodeWriter:
    try:
        cls = _WRITERS[name]
    except KeyError:
        known = ", ".join(sorted(_WRITERS))
        raise KeyError(f"unknown writer {name!r} (available: {known})") from None
    return cls(**options)


def available_writers() -> List[Tuple[str, str]]:
    return [(name, _WRITERS[name].description) for name in sorted(_WRITERS)]
