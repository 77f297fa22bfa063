"""dbgcodegen/snapshot.py – S-expression type snapshots → symbol provider.

A snapshot is a textual, provider-independent dump of a module's types.
It lets the generator run without a live debug session and is the format
the test-suite describes its type graphs in.  Text is read with
``sexpdata`` and every form is dispatched on its head symbol to a
``_parse_<tag>`` helper.

Surface syntax
--------------
::

    (module <name>
      (pointer-size 8)
      (struct  "Name" <size> [(id N)]
        (base  "Type" <offset>)
        (field "name" "Type" <offset> [(bits <bit-offset> <bit-width>)]))
      (class   ...)                       ;; same as struct
      (union   ...)
      (enum    "Name" "Underlying" [(id N)] (member "A" 0) ...)
      (typedef "Name" "Type" [(id N)])
      (function "Name" "Ret" ("P1" "P2") [variadic] [(id N)])
      (primitive "Name" <token>)          ;; token: int32, float64, ...
      (opaque  "Name"))                   ;; known name, shape unavailable

A size written as the symbol ``unknown`` leaves the size unset.  A type
reference is a string (a type name, declarators allowed) or an integer
(a type id given with ``(id N)``).  Several ``module`` forms may share one
file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import sexpdata
from sexpdata import Symbol

from .errors import SnapshotError
from .instances import PrimitiveKind
from .provider import (
    BaseDescriptor,
    FieldDescriptor,
    InMemorySymbolProvider,
    ShapeDescriptor,
    TypeRef,
)

logger = logging.getLogger(__name__)

__all__ = [
    "load_snapshot",
    "loads_snapshot",
    "parse_forms",
    "form_head",
    "atom_text",
    "atom_int",
    "is_symbol",
    "symbol_text",
]

Sexp = Any


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def symbol_text(obj: Sexp) -> str:
    value = getattr(obj, "value", None)
    return str(value()) if callable(value) else str(obj)


def is_symbol(obj: Sexp, name: Optional[str] = None) -> bool:
    # Symbol subclasses str in recent sexpdata releases: test it first.
    if not isinstance(obj, Symbol):
        return False
    return name is None or symbol_text(obj) == name


def form_head(form: Sexp) -> str:
    if not isinstance(form, list) or not form or not is_symbol(form[0]):
        raise SnapshotError(f"expected a (tag ...) form, got {form!r}")
    return symbol_text(form[0])


def atom_text(obj: Sexp, what: str) -> str:
    if is_symbol(obj):
        return symbol_text(obj)
    if isinstance(obj, str):
        return obj
    raise SnapshotError(f"expected {what} as a string, got {obj!r}")


def atom_int(obj: Sexp, what: str) -> int:
    if isinstance(obj, bool) or not isinstance(obj, int):
        raise SnapshotError(f"expected integer {what}, got {obj!r}")
    return obj


def _size(obj: Sexp) -> Optional[int]:
    if is_symbol(obj, "unknown"):
        return None
    return atom_int(obj, "size")


def _type_ref(obj: Sexp) -> TypeRef:
    if isinstance(obj, int) and not isinstance(obj, bool):
        return obj
    return atom_text(obj, "type reference")


def _split_options(items: List[Sexp]) -> Tuple[List[Sexp], Dict[str, List[Sexp]]]:
    """Separate ``(id N)``-style option forms from the positional items."""
    positional: List[Sexp] = []
    options: Dict[str, List[Sexp]] = {}
    for item in items:
        if isinstance(item, list) and item and is_symbol(item[0]) \
                and symbol_text(item[0]) in ("id", "bits"):
            options[symbol_text(item[0])] = item[1:]
        else:
            positional.append(item)
    return positional, options


def _type_id(options: Dict[str, List[Sexp]]) -> Optional[int]:
    values = options.get("id")
    if values is None:
        return None
    if len(values) != 1:
        raise SnapshotError(f"(id N) takes one integer, got {values!r}")
    return atom_int(values[0], "type id")


def parse_forms(text: str) -> List[Sexp]:
    """Parse a string holding any number of top-level forms."""
    try:
        return sexpdata.loads(f"({text})")
    except Exception as exc:
        raise SnapshotError(f"malformed snapshot: {exc}") from exc


# ═══════════════════════════════════════════════════════════════════════
#  Form parsers
# ═══════════════════════════════════════════════════════════════════════

class _SnapshotLoader:
    def __init__(self, provider: InMemorySymbolProvider) -> None:
        self.provider = provider
        self._dispatch: Dict[str, Callable[[str, List[Sexp]], None]] = {
            "struct": self._parse_struct,
            "class": self._parse_struct,
            "union": self._parse_union,
            "enum": self._parse_enum,
            "typedef": self._parse_typedef,
            "function": self._parse_function,
            "primitive": self._parse_primitive,
            "opaque": self._parse_opaque,
        }

    def load_module(self, form: List[Sexp]) -> str:
        if form_head(form) != "module" or len(form) < 2:
            raise SnapshotError(f"expected (module NAME ...), got {form!r}")
        module = atom_text(form[1], "module name")
        body = form[2:]
        pointer_size = 8
        for item in body:
            if form_head(item) == "pointer-size":
                pointer_size = atom_int(item[1], "pointer size")
        self.provider.add_module(module, pointer_size)
        count = 0
        for item in body:
            tag = form_head(item)
            if tag == "pointer-size":
                continue
            parser = self._dispatch.get(tag)
            if parser is None:
                raise SnapshotError(f"{module}: unknown snapshot form ({tag} ...)")
            parser(module, item[1:])
            count += 1
        logger.debug("snapshot module %s: %d type forms", module, count)
        return module

    def _parse_struct(self, module: str, args: List[Sexp], union: bool = False) -> None:
        positional, options = _split_options(args)
        if len(positional) < 2:
            raise SnapshotError(f"{module}: (struct NAME SIZE ...) needs a name and size")
        name = atom_text(positional[0], "struct name")
        size = _size(positional[1])
        fields: List[FieldDescriptor] = []
        bases: List[BaseDescriptor] = []
        for member in positional[2:]:
            tag = form_head(member)
            if tag == "field":
                fields.append(self._parse_field(module, name, member[1:]))
            elif tag == "base":
                if len(member) != 3:
                    raise SnapshotError(f"{module}: {name}: (base TYPE OFFSET) expected")
                bases.append(BaseDescriptor(_type_ref(member[1]), atom_int(member[2], "base offset")))
            else:
                raise SnapshotError(f"{module}: {name}: unexpected member form ({tag} ...)")
        self.provider.add_struct(module, name, size, fields, bases, union, _type_id(options))

    def _parse_union(self, module: str, args: List[Sexp]) -> None:
        self._parse_struct(module, args, union=True)

    def _parse_field(self, module: str, owner: str, args: List[Sexp]) -> FieldDescriptor:
        positional, options = _split_options(args)
        if len(positional) != 3:
            raise SnapshotError(f"{module}: {owner}: (field NAME TYPE OFFSET) expected")
        bit_offset = bit_width = None
        bits = options.get("bits")
        if bits is not None:
            if len(bits) != 2:
                raise SnapshotError(f"{module}: {owner}: (bits OFFSET WIDTH) expected")
            bit_offset = atom_int(bits[0], "bit offset")
            bit_width = atom_int(bits[1], "bit width")
        return FieldDescriptor(
            name=atom_text(positional[0], "field name"),
            type_ref=_type_ref(positional[1]),
            byte_offset=atom_int(positional[2], "field offset"),
            bit_offset=bit_offset,
            bit_width=bit_width,
        )

    def _parse_enum(self, module: str, args: List[Sexp]) -> None:
        positional, options = _split_options(args)
        if len(positional) < 2:
            raise SnapshotError(f"{module}: (enum NAME UNDERLYING ...) expected")
        name = atom_text(positional[0], "enum name")
        members = []
        for member in positional[2:]:
            if form_head(member) != "member" or len(member) != 3:
                raise SnapshotError(f"{module}: {name}: (member NAME VALUE) expected")
            members.append((atom_text(member[1], "member name"), atom_int(member[2], "member value")))
        self.provider.add_enum(module, name, _type_ref(positional[1]), members, _type_id(options))

    def _parse_typedef(self, module: str, args: List[Sexp]) -> None:
        positional, options = _split_options(args)
        if len(positional) != 2:
            raise SnapshotError(f"{module}: (typedef NAME TYPE) expected")
        self.provider.add_typedef(module, atom_text(positional[0], "typedef name"),
                                  _type_ref(positional[1]), _type_id(options))

    def _parse_function(self, module: str, args: List[Sexp]) -> None:
        positional, options = _split_options(args)
        variadic = any(is_symbol(p, "variadic") for p in positional)
        positional = [p for p in positional if not is_symbol(p, "variadic")]
        if len(positional) not in (2, 3):
            raise SnapshotError(f"{module}: (function NAME RET (PARAMS...)) expected")
        params: List[TypeRef] = []
        if len(positional) == 3:
            if not isinstance(positional[2], list):
                raise SnapshotError(f"{module}: function parameters must be a list")
            params = [_type_ref(p) for p in positional[2]]
        self.provider.add_function(module, atom_text(positional[0], "function name"),
                                   _type_ref(positional[1]), params, variadic,
                                   _type_id(options))

    def _parse_primitive(self, module: str, args: List[Sexp]) -> None:
        positional, options = _split_options(args)
        if len(positional) != 2:
            raise SnapshotError(f"{module}: (primitive NAME TOKEN) expected")
        token = atom_text(positional[1], "primitive token")
        try:
            kind = PrimitiveKind.from_token(token)
        except ValueError as exc:
            raise SnapshotError(f"{module}: {exc}") from exc
        self.provider.add_primitive(module, atom_text(positional[0], "primitive name"), kind,
                                    _type_id(options))

    def _parse_opaque(self, module: str, args: List[Sexp]) -> None:
        positional, options = _split_options(args)
        if len(positional) != 1:
            raise SnapshotError(f"{module}: (opaque NAME) expected")
        self.provider.add_opaque(module, atom_text(positional[0], "type name"), _type_id(options))


# ═══════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════

def loads_snapshot(text: str,
                   provider: Optional[InMemorySymbolProvider] = None) -> InMemorySymbolProvider:
    """Load every ``(module ...)`` form in *text* into *provider* (or a new one)."""
    provider = provider if provider is not None else InMemorySymbolProvider()
    loader = _SnapshotLoader(provider)
    forms = parse_forms(text)
    if not forms:
        raise SnapshotError("snapshot contains no module")
    for form in forms:
        loader.load_module(form)
    return provider


def load_snapshot(path: Union[str, Path],
                  provider: Optional[InMemorySymbolProvider] = None) -> InMemorySymbolProvider:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SnapshotError(f"cannot read snapshot {path}: {exc}") from exc
    logger.info("loading type snapshot %s", path)
    return loads_snapshot(text, provider)
