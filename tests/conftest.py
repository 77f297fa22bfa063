# tests/conftest.py
"""
Shared snapshot texts and fixtures.

Snapshots describe small type graphs in the S-expression format read by
:mod:`dbgcodegen.snapshot`; each one exercises a different corner of the
resolver / writers.
"""

import pytest

from dbgcodegen.provider import InMemorySymbolProvider
from dbgcodegen.resolver import TypeGraphResolver
from dbgcodegen.snapshot import loads_snapshot


# ─────────────────────────────────────────────────────────────────────
#  Snapshot texts
# ─────────────────────────────────────────────────────────────────────

APP_SNAPSHOT = '''
(module "app"
  (pointer-size 8)
  (struct "Node" 16
    (field "value" "int" 0)
    (field "next" "Node*" 8))
  (enum "Color" "int"
    (member "RED" 0)
    (member "GREEN" 1)
    (member "BLUE" 2))
  (struct "Pixel" 8
    (field "color" "Color" 0)
    (field "flags" "unsigned int" 4 (bits 0 3))
    (field "mode" "unsigned int" 4 (bits 3 5)))
  (struct "Base" 4
    (field "id" "int" 0))
  (class "Derived" 12
    (base "Base" 0)
    (field "weight" "double" 4))
  (function "Callback" "void" ("int" "Node*"))
  (struct "Registry" 32
    (field "head" "Node*" 0)
    (field "on_change" "Callback*" 8)
    (field "pair" "std::pair<int, Node*>" 16))
  (struct "std::pair<int, Node*>" 16
    (field "first" "int" 0)
    (field "second" "Node*" 8))
  (typedef "NodePtr" "Node*")
  (typedef "Handle" "Registry"))
'''

UNDEFINED_SNAPSHOT = '''
(module "undef"
  (opaque "Opaque")
  (struct "Wrapper" 16
    (field "handle" "Opaque*" 0)
    (field "inner" "Missing" 8)))
'''

CYCLE_SNAPSHOT = '''
(module "cyc"
  (struct "A" 8 (field "b" "B" 0))
  (struct "B" 8 (field "a" "A" 0))
  (struct "Holder" 16
    (field "a" "A" 0)
    (field "n" "int" 8))
  (struct "Fine" 16
    (field "x" "int" 0)
    (field "a" "A*" 8)))
'''

LAYOUT_SNAPSHOT = '''
(module "layout"
  (struct "Bad" 4 (field "x" "int" 8))
  (struct "BadBits" 4 (field "f" "unsigned char" 0 (bits 6 4)))
  (struct "Flex" 4
    (field "len" "int" 0)
    (field "data" "char[]" 4))
  (struct "Grid" 24 (field "cells" "int[2][3]" 0)))
'''

COLLISION_SNAPSHOT = '''
(module "coll"
  (struct "a::Item" 4 (field "x" "int" 0))
  (struct "b::Item" 4 (field "y" "int" 0))
  (struct "Pointer" 4 (field "class" "int" 0))
  (struct "Holder" 8
    (field "a" "a::Item" 0)
    (field "b" "b::Item" 4)))
'''


# ─────────────────────────────────────────────────────────────────────
#  Fixtures
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_provider() -> InMemorySymbolProvider:
    return loads_snapshot(APP_SNAPSHOT)


@pytest.fixture
def app_resolver(app_provider) -> TypeGraphResolver:
    return TypeGraphResolver(app_provider, "app")


@pytest.fixture
def all_provider() -> InMemorySymbolProvider:
    """Every test module in one provider."""
    provider = InMemorySymbolProvider()
    for text in (APP_SNAPSHOT, UNDEFINED_SNAPSHOT, CYCLE_SNAPSHOT,
                 LAYOUT_SNAPSHOT, COLLISION_SNAPSHOT):
        loads_snapshot(text, provider)
    return provider


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "types.sexp"
    path.write_text(APP_SNAPSHOT, encoding="utf-8")
    return path
