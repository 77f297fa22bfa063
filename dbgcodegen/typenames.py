"""
dbgcodegen/typenames.py
═══════════════════════

Parser for native (C/C++) type names as reported by a symbol provider.

Symbol providers spell the same type in many ways (``unsigned int`` vs
``unsigned``, ``std::pair<int,Node *>`` vs ``std::pair<int, Node*>``,
``long unsigned int`` from GCC's DWARF).  Canonical keys must not depend on
the spelling, so every name goes through the PEG grammar below and is
rebuilt from the parse tree.

Grammar overview
────────────────
::

    type_name     := cv* base declarator*
    base          := builtin-words | ['::'] segment ('::' segment)*
    segment       := identifier ['<' [arg (',' arg)*] '>']
    arg           := integer | type_name
    declarator    := '*' | '&' | '&&' | '[' [integer] ']' | cv

cv-qualifiers are accepted and dropped: they do not change the memory
layout a generated accessor reads.

Usage::

    >>> expr = parse_type_name("const ns::Foo<int, Bar *>*")
    >>> expr.qualified_name
    'ns::Foo<int, Bar*>'
    >>> expr.format()
    'ns::Foo<int, Bar*>*'
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import Node, NodeVisitor

from .errors import TypeNameSyntaxError

__all__ = [
    "DeclaratorKind",
    "Declarator",
    "NameSegment",
    "TypeExpr",
    "parse_type_name",
    "normalize_type_name",
    "canonical_builtin",
]


# ═══════════════════════════════════════════════════════════════════
#  PART 1: GRAMMAR (Parsimonious PEG)
# ═══════════════════════════════════════════════════════════════════

TYPE_NAME_GRAMMAR = Grammar(r'''
    type_name      = _ cv* base _ suffix* _

    cv             = ~r"(?:const|volatile)\b" _

    base           = builtin / scoped
    builtin        = ~r"(?:(?:unsigned|signed|short|long|int|char|double|float|bool|void|wchar_t)\b\s*)+"
    scoped         = global_scope? segment scope_tail*
    global_scope   = "::" _
    scope_tail     = "::" _ segment
    segment        = name _ template_args?
    name           = special_name / identifier
    special_name   = ~r"\((?:anonymous|anon) namespace\)" / ~r"<[A-Za-z0-9_ -]+>"
    identifier     = ~r"[A-Za-z_$~][A-Za-z0-9_$]*"

    template_args  = "<" _ argument_list? ">" _
    argument_list  = template_arg more_args*
    more_args      = "," _ template_arg
    template_arg   = number_arg / type_name
    number_arg     = number _
    number         = ~r"[-+]?(?:0[xX][0-9a-fA-F]+|[0-9]+)[uUlL]*"

    suffix         = declarator _
    declarator     = rvalue_ref / lvalue_ref / pointer / array / cv_suffix
    rvalue_ref     = "&&"
    lvalue_ref     = "&"
    pointer        = "*"
    array          = "[" _ array_length? "]"
    array_length   = number _
    cv_suffix      = ~r"(?:const|volatile)\b"

    _              = ~r"\s*"
''')


# ═══════════════════════════════════════════════════════════════════
#  PART 2: PARSED REPRESENTATION
# ═══════════════════════════════════════════════════════════════════

class DeclaratorKind(Enum):
    POINTER = "*"
    REFERENCE = "&"
    ARRAY = "[]"


@dataclass(frozen=True)
class Declarator:
    kind: DeclaratorKind
    length: Optional[int] = None

    def format(self) -> str:
        if self.kind is DeclaratorKind.ARRAY:
            return f"[{self.length}]" if self.length is not None else "[]"
        return self.kind.value


TemplateArgument = Union["TypeExpr", int]


@dataclass(frozen=True)
class NameSegment:
    """One ``::``-separated component of a qualified name."""

    name: str
    arguments: Tuple[TemplateArgument, ...] = ()
    templated: bool = False

    def format(self) -> str:
        if not self.templated:
            return self.name
        args = ", ".join(_format_argument(a) for a in self.arguments)
        return f"{self.name}<{args}>"


@dataclass(frozen=True)
class TypeExpr:
    """A parsed type name: a (possibly qualified) base plus declarators."""

    segments: Tuple[NameSegment, ...]
    builtin: bool = False
    declarators: Tuple[Declarator, ...] = ()

    @property
    def qualified_name(self) -> str:
        """Base name with namespace and template arguments, no declarators."""
        return "::".join(s.format() for s in self.segments)

    @property
    def namespace(self) -> str:
        return "::".join(s.format() for s in self.segments[:-1])

    @property
    def short_name(self) -> str:
        return self.segments[-1].format()

    @property
    def base_name(self) -> str:
        """Qualified name with the last segment's template arguments removed."""
        parts = [s.format() for s in self.segments[:-1]] + [self.segments[-1].name]
        return "::".join(parts)

    @property
    def template_arguments(self) -> Tuple[TemplateArgument, ...]:
        return self.segments[-1].arguments

    @property
    def is_template(self) -> bool:
        return self.segments[-1].templated

    def without_declarators(self) -> "TypeExpr":
        return TypeExpr(self.segments, self.builtin, ())

    def application_order(self) -> List[Declarator]:
        """
        Declarators in the order they wrap the base type.

        Pointer and reference suffixes apply left to right.  A run of
        array suffixes follows C: ``int[2][3]`` is an array of two arrays
        of three ints, so the innermost dimension is the rightmost one.
        """
        ordered: List[Declarator] = []
        run: List[Declarator] = []
        for decl in self.declarators:
            if decl.kind is DeclaratorKind.ARRAY:
                run.append(decl)
                continue
            ordered.extend(reversed(run))
            run = []
            ordered.append(decl)
        ordered.extend(reversed(run))
        return ordered

    def format(self) -> str:
        return self.qualified_name + "".join(d.format() for d in self.declarators)

    def __str__(self) -> str:
        return self.format()


def _format_argument(arg: TemplateArgument) -> str:
    if isinstance(arg, int):
        return str(arg)
    return arg.format()


# ═══════════════════════════════════════════════════════════════════
#  PART 3: BUILTIN NAME CANONICALISATION
# ═══════════════════════════════════════════════════════════════════

_FLOATING = ("double", "float", "bool", "void", "wchar_t")


def canonical_builtin(words: str) -> str:
    """
    Collapse the many spellings of a C builtin type into one.

    >>> canonical_builtin("long unsigned int")
    'unsigned long'
    >>> canonical_builtin("signed")
    'int'
    """
    parts = words.split()
    sign = ""
    if "unsigned" in parts:
        sign = "unsigned"
    elif "signed" in parts:
        sign = "signed"
    longs = parts.count("long")

    if "char" in parts:
        return f"{sign} char".strip()
    if "double" in parts:
        return "long double" if longs else "double"
    for word in _FLOATING:
        if word in parts:
            return word

    if "short" in parts:
        size = "short"
    elif longs >= 2:
        size = "long long"
    elif longs == 1:
        size = "long"
    else:
        size = "int"
    return f"unsigned {size}" if sign == "unsigned" else size


# ═══════════════════════════════════════════════════════════════════
#  PART 4: PARSE TREE VISITOR
# ═══════════════════════════════════════════════════════════════════

def _as_list(value: Any) -> list:
    """Optional / repeated matches visit to a list, empty ones to a Node."""
    return value if isinstance(value, list) else []


def _parse_int(text: str) -> int:
    digits = re.sub(r"[uUlL]+$", "", text)
    return int(digits, 0)


class _TypeNameVisitor(NodeVisitor):
    """Build a :class:`TypeExpr` from the parsimonious parse tree."""

    unwrapped_exceptions = (TypeNameSyntaxError,)

    def visit_type_name(self, node: Node, visited_children: list) -> TypeExpr:
        _, _cvs, base, _, suffixes, _ = visited_children
        segments, builtin = base
        declarators = tuple(d for d in _as_list(suffixes) if d is not None)
        return TypeExpr(segments=segments, builtin=builtin, declarators=declarators)

    def visit_cv(self, node: Node, visited_children: list) -> None:
        return None

    def visit_base(self, node: Node, visited_children: list) -> Any:
        return visited_children[0]

    def visit_builtin(self, node: Node, visited_children: list) -> Any:
        return (NameSegment(canonical_builtin(node.text)),), True

    def visit_scoped(self, node: Node, visited_children: list) -> Any:
        _, first, tail = visited_children
        return tuple([first] + _as_list(tail)), False

    def visit_scope_tail(self, node: Node, visited_children: list) -> NameSegment:
        _, _, segment = visited_children
        return segment

    def visit_segment(self, node: Node, visited_children: list) -> NameSegment:
        name, _, args = visited_children
        matched = _as_list(args)
        if matched:
            return NameSegment(name, tuple(matched[0]), True)
        return NameSegment(name)

    def visit_name(self, node: Node, visited_children: list) -> str:
        return node.text

    def visit_template_args(self, node: Node, visited_children: list) -> list:
        _, _, arguments, _, _ = visited_children
        matched = _as_list(arguments)
        return matched[0] if matched else []

    def visit_argument_list(self, node: Node, visited_children: list) -> list:
        first, rest = visited_children
        return [first] + _as_list(rest)

    def visit_more_args(self, node: Node, visited_children: list) -> Any:
        _, _, arg = visited_children
        return arg

    def visit_template_arg(self, node: Node, visited_children: list) -> Any:
        return visited_children[0]

    def visit_number_arg(self, node: Node, visited_children: list) -> int:
        return visited_children[0]

    def visit_number(self, node: Node, visited_children: list) -> int:
        return _parse_int(node.text)

    def visit_suffix(self, node: Node, visited_children: list) -> Optional[Declarator]:
        declarator, _ = visited_children
        return declarator

    def visit_declarator(self, node: Node, visited_children: list) -> Optional[Declarator]:
        return visited_children[0]

    def visit_rvalue_ref(self, node: Node, visited_children: list) -> Declarator:
        return Declarator(DeclaratorKind.REFERENCE)

    def visit_lvalue_ref(self, node: Node, visited_children: list) -> Declarator:
        return Declarator(DeclaratorKind.REFERENCE)

    def visit_pointer(self, node: Node, visited_children: list) -> Declarator:
        return Declarator(DeclaratorKind.POINTER)

    def visit_array(self, node: Node, visited_children: list) -> Declarator:
        _, _, length, _ = visited_children
        matched = _as_list(length)
        return Declarator(DeclaratorKind.ARRAY, matched[0] if matched else None)

    def visit_array_length(self, node: Node, visited_children: list) -> int:
        number, _ = visited_children
        return number

    def visit_cv_suffix(self, node: Node, visited_children: list) -> None:
        return None

    def generic_visit(self, node: Node, visited_children: list) -> Any:
        return visited_children or node


# ═══════════════════════════════════════════════════════════════════
#  PART 5: PUBLIC API
# ═══════════════════════════════════════════════════════════════════

@functools.lru_cache(maxsize=4096)
def parse_type_name(text: str) -> TypeExpr:
    """Parse *text* into a :class:`TypeExpr` or raise TypeNameSyntaxError."""
    if not text or not text.strip():
        raise TypeNameSyntaxError(text, "empty name")
    try:
        tree = TYPE_NAME_GRAMMAR.parse(text)
    except ParseError as exc:
        raise TypeNameSyntaxError(text, str(exc)) from exc
    try:
        return _TypeNameVisitor().visit(tree)
    except VisitationError as exc:
        raise TypeNameSyntaxError(text, str(exc)) from exc


def normalize_type_name(text: str) -> str:
    """Canonical spelling of *text* (whitespace, builtins, cv dropped)."""
    return parse_type_name(text).format()
