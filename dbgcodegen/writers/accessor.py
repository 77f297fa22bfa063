"""
dbgcodegen/writers/accessor.py
==============================

Writer for the debugger runtime: every native aggregate becomes a
``UserType`` subclass whose fields are read-only properties reading the
debuggee's memory on access.

Example output::

    class Node(UserType):
        \"\"\"Native type ``Node`` (16 bytes).\"\"\"

        __native_name__ = 'Node'
        __native_size__ = 16

        @property
        def value(self) -> 'int32':
            return self.read_field(0, int32)

        @property
        def next(self) -> 'Pointer[Node]':
            return self.read_field(8, Pointer[Node])

Type annotations are strings so declarations may refer to each other in
any order; the property bodies resolve names when they run.
"""

from __future__ import annotations

from typing import List

from ..emitter import CodeEmitter
from ..instances import Aggregate, EnumInstance, Field, Function, PrimitiveKind, TemplateInstance
from ..naming import NameTable
from .base import CodeFragment, CodeWriter, register_writer

__all__ = ["PythonAccessorWriter"]

RUNTIME_CLASSES = ("Array", "CodeFunction", "NativeEnum", "Pointer", "UserType", "Variable")


@register_writer
class PythonAccessorWriter(CodeWriter):
    name = "accessor"
    description = "UserType subclasses with typed read-only field properties"

    def render_prologue(self, module: str, names: NameTable) -> str:
        emitter = CodeEmitter()
        emitter.emit_lines(self.header_comment(module))
        emitter.emit_docstring(f"Typed accessors for native module ``{module}``.")
        emitter.emit_blank()
        imports = sorted(RUNTIME_CLASSES + tuple(kind.token for kind in PrimitiveKind))
        with emitter.block(f"from {self.runtime_module} import ("):
            for name in imports:
                emitter.emit(f"{name},")
        emitter.emit(")")
        emitter.emit_blank()
        emitter.emit(f"__native_module__ = {module!r}")
        return emitter.get_code()

    def render_member_access(self, owner_expr: str, aggregate: Aggregate,
                             index: int, names: NameTable) -> str:
        previous, self._names = self._names, names
        try:
            return f"{owner_expr}.{self._member_identifiers(aggregate)[index]}"
        finally:
            self._names = previous

    # ------------------------------------------------------------------

    def _member_identifiers(self, aggregate: Aggregate) -> List[str]:
        _, exposed = self.base_members(aggregate)
        return self.names.members(aggregate, [prop for prop, _, _ in exposed])

    def _read_expression(self, member: Field) -> str:
        type_ref = self.render_type_reference(member.instance, self.names)
        if member.is_bitfield:
            return (f"self.read_bitfield({member.byte_offset}, {member.bit_offset or 0}, "
                    f"{member.bit_width}, {type_ref})")
        return f"self.read_field({member.byte_offset}, {type_ref})"

    def visit_aggregate(self, inst: Aggregate) -> CodeFragment:
        ident = self.names[inst]
        inherited, exposed = self.base_members(inst)
        parent = self.names[inherited] if inherited is not None else "UserType"
        members = self.names.members(inst, [prop for prop, _, _ in exposed])

        emitter = CodeEmitter()
        with emitter.block(f"class {ident}({parent}):"):
            emitter.emit_docstring(self.describe(inst))
            emitter.emit_blank()
            emitter.emit(f"__native_name__ = {inst.qualified_name!r}")
            emitter.emit(f"__native_size__ = {inst.size!r}")
            if inst.is_union:
                emitter.emit("__native_union__ = True")
            if isinstance(inst, TemplateInstance):
                arguments = tuple(
                    a if isinstance(a, int) else self.render_type_reference(a, self.names)
                    for a in inst.arguments
                )
                emitter.emit(f"__template_name__ = {inst.base_name!r}")
                emitter.emit(f"__template_arguments__ = {arguments!r}")

            for prop, offset, base in exposed:
                type_ref = self.render_type_reference(base, self.names)
                emitter.emit_blank()
                emitter.emit("@property")
                with emitter.block(f"def {prop}(self) -> {type_ref!r}:"):
                    emitter.emit(f"return self.base_class({offset}, {type_ref})")

            for member, prop in zip(inst.fields, members):
                type_ref = self.render_type_reference(member.instance, self.names)
                emitter.emit_blank()
                emitter.emit("@property")
                with emitter.block(f"def {prop}(self) -> {type_ref!r}:"):
                    if member.name != prop:
                        emitter.emit_docstring(f"Native field ``{member.name}``.")
                    emitter.emit(f"return {self._read_expression(member)}")
        return CodeFragment(inst, ident, emitter.get_code())

    def visit_enum(self, inst: EnumInstance) -> CodeFragment:
        ident = self.names[inst]
        emitter = CodeEmitter()
        with emitter.block(f"class {ident}(NativeEnum):"):
            emitter.emit_docstring(self.describe(inst))
            emitter.emit_blank()
            emitter.emit(f"__native_name__ = {inst.qualified_name!r}")
            emitter.emit(f"__underlying_type__ = "
                         f"{self.render_type_reference(inst.underlying, self.names)}")
            if inst.members:
                emitter.emit_blank()
            for prop, (_, value) in zip(self.names.members(inst), inst.members):
                emitter.emit(f"{prop} = {value}")
        return CodeFragment(inst, ident, emitter.get_code())

    def visit_function(self, inst: Function) -> CodeFragment:
        ident = self.names[inst]
        params = tuple(self.render_type_reference(p, self.names) for p in inst.parameters)
        emitter = CodeEmitter()
        with emitter.block(f"class {ident}(CodeFunction):"):
            emitter.emit_docstring(f"Native function type ``{inst.display_name}``.")
            emitter.emit_blank()
            emitter.emit(f"__return_type__ = "
                         f"{self.render_type_reference(inst.return_type, self.names)!r}")
            emitter.emit(f"__parameter_types__ = {params!r}")
            emitter.emit(f"__variadic__ = {inst.variadic!r}")
        return CodeFragment(inst, ident, emitter.get_code())
