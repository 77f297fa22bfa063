"""
dbgcodegen: Python type modules from native debug information
===============================================================

Turns the types a debug-information source knows about into importable
Python code: one generated module per native module, one declaration per
aggregate, template instance, enum and function type.

Pipeline
--------
::

    SymbolProvider ──► TypeGraphResolver ──► IdentifierAllocator
    (snapshot/DWARF)   (TypeInstance graph)  (NameTable)
                                                  │
                 ExportDriver ◄── CodeWriter ◄── emission_order
                 (<module>.py)    (accessor/ctypes)

Package layout
--------------
::

    dbgcodegen/
    ├── typenames.py       native type-name grammar (parsimonious)
    ├── instances.py       TypeInstance model and CanonicalKey
    ├── provider.py        SymbolProvider protocol, in-memory provider
    ├── snapshot.py        S-expression type snapshots (sexpdata)
    ├── dwarf_provider.py  DWARF provider (pyelftools)
    ├── worker.py          thread-affine provider wrapper
    ├── resolver.py        two-phase type-graph resolution
    ├── naming.py          identifier allocation
    ├── ordering.py        declaration ordering
    ├── emitter.py         indented source emitter
    ├── writers/           code writers
    ├── config.py          generator configuration
    ├── driver.py          export driver
    └── main.py            command line
"""

from __future__ import annotations

__version__ = "0.1.0"

from .errors import (
    DbgCodeGenError,
    Diagnostic,
    DiagnosticKind,
    GenerationCancelled,
    GenerationRunError,
    ProviderQueryError,
    Severity,
)
from .instances import (
    Aggregate,
    Array,
    CanonicalKey,
    EnumInstance,
    Function,
    InstanceKind,
    Pointer,
    Primitive,
    PrimitiveKind,
    TemplateInstance,
    TypeInstance,
    Undefined,
)
from .provider import InMemorySymbolProvider, ShapeDescriptor, SymbolProvider
from .snapshot import load_snapshot, loads_snapshot
from .resolver import TypeGraphResolver, TypeRegistry
from .naming import IdentifierAllocator, NameTable
from .ordering import emission_order
from .writers import CodeWriter, available_writers, get_writer
from .config import GeneratorConfig, load_config
from .driver import ExportDriver, ExportResult, ModuleOutput, ModuleRequest

__all__ = [
    "__version__",
    "DbgCodeGenError",
    "Diagnostic",
    "DiagnosticKind",
    "GenerationCancelled",
    "GenerationRunError",
    "ProviderQueryError",
    "Severity",
    "Aggregate",
    "Array",
    "CanonicalKey",
    "EnumInstance",
    "Function",
    "InstanceKind",
    "Pointer",
    "Primitive",
    "PrimitiveKind",
    "TemplateInstance",
    "TypeInstance",
    "Undefined",
    "InMemorySymbolProvider",
    "ShapeDescriptor",
    "SymbolProvider",
    "load_snapshot",
    "loads_snapshot",
    "TypeGraphResolver",
    "TypeRegistry",
    "IdentifierAllocator",
    "NameTable",
    "emission_order",
    "CodeWriter",
    "available_writers",
    "get_writer",
    "GeneratorConfig",
    "load_config",
    "ExportDriver",
    "ExportResult",
    "ModuleOutput",
    "ModuleRequest",
]
