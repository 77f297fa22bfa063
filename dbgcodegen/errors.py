# dbgcodegen/errors.py
"""
Error types and diagnostics for the type-graph code generator.

Error hierarchy
───────────────
┌─────────────────────────────────────────────────────────────────────────────┐
│  DbgCodeGenError (base)                                                     │
│  ├── TypeResolutionError       - a single type could not be resolved        │
│  │   ├── UnresolvableTypeError - provider cannot describe the type          │
│  │   ├── IllegalValueCycleError- aggregate contains itself by value         │
│  │   └── InvalidLayoutError    - field offsets outside the aggregate        │
│  ├── TypeNameSyntaxError       - type name does not parse                   │
│  ├── IdentifierCollisionError  - allocator invariant broken (fatal)         │
│  ├── ProviderQueryError        - symbol provider failed (fatal to the run)  │
│  ├── GenerationRunError        - whole-run failure with context             │
│  ├── GenerationCancelled       - run cancelled at a query boundary          │
│  ├── ConfigError               - bad configuration file / values            │
│  └── SnapshotError             - malformed type snapshot                    │
└─────────────────────────────────────────────────────────────────────────────┘

Per-type failures never abort a run.  They are turned into
:class:`Diagnostic` records that travel with the module output; only
``ProviderQueryError``, ``IdentifierCollisionError`` and cancellation stop
the run.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Dict, Optional, Sequence


# ═══════════════════════════════════════════════════════════════════════════════
# DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════════

@unique
class Severity(Enum):
    """Severity of a diagnostic attached to an export run."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    def __lt__(self, other: "Severity") -> bool:
        order = [Severity.INFO, Severity.WARNING, Severity.ERROR]
        return order.index(self) < order.index(other)

    def is_error(self) -> bool:
        return self is Severity.ERROR


@unique
class DiagnosticKind(Enum):
    """What went wrong with a single type."""

    UNRESOLVABLE = "unresolvable"
    ILLEGAL_VALUE_CYCLE = "illegal-value-cycle"
    INVALID_LAYOUT = "invalid-layout"
    INVALID_DEPENDENCY = "invalid-dependency"
    DUPLICATE_MEMBER = "duplicate-member"
    RENDER_FAILURE = "render-failure"


@dataclass(frozen=True)
class Diagnostic:
    """One per-type problem recorded during a generation run."""

    kind: DiagnosticKind
    severity: Severity
    module: str
    subject: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "module": self.module,
            "subject": self.subject,
            "message": self.message,
        }

    def __str__(self) -> str:
        return (
            f"{self.module}: {self.severity.value}: "
            f"[{self.kind.value}] {self.subject}: {self.message}"
        )


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTION CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

class DbgCodeGenError(Exception):
    """
    Base exception for all code generator errors.

    Carries a human-readable message plus an optional dictionary of
    details that is appended to ``str()``.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# ───────────────────────────────────────────────────────────────────────────────
# PER-TYPE RESOLUTION ERRORS
# ───────────────────────────────────────────────────────────────────────────────

class TypeResolutionError(DbgCodeGenError):
    """A single type failed to resolve; the rest of the module continues."""

    kind: DiagnosticKind = DiagnosticKind.UNRESOLVABLE
    severity: Severity = Severity.ERROR

    def __init__(self, message: str, type_name: str = "", module: str = "") -> None:
        details = {}
        if type_name:
            details["type"] = type_name
        if module:
            details["module"] = module
        super().__init__(message, details)
        self.type_name = type_name
        self.module = module

    def to_diagnostic(self, module: Optional[str] = None) -> Diagnostic:
        return Diagnostic(
            kind=self.kind,
            severity=self.severity,
            module=module or self.module,
            subject=self.type_name,
            message=self.message,
        )


class UnresolvableTypeError(TypeResolutionError):
    """The symbol provider cannot describe the requested type."""

    kind = DiagnosticKind.UNRESOLVABLE
    severity = Severity.WARNING


class IllegalValueCycleError(TypeResolutionError):
    """
    An aggregate contains itself by value.

    ``cycle`` lists the canonical keys on the by-value path, starting with
    the aggregate that was re-entered.
    """

    kind = DiagnosticKind.ILLEGAL_VALUE_CYCLE

    def __init__(self, cycle: Sequence[Any], module: str = "") -> None:
        self.cycle = tuple(cycle)
        path = " -> ".join(str(k) for k in self.cycle + self.cycle[:1])
        super().__init__(
            f"type contains itself by value: {path}",
            type_name=str(self.cycle[0]) if self.cycle else "",
            module=module,
        )


class InvalidLayoutError(TypeResolutionError):
    """A field of an aggregate does not fit inside the aggregate."""

    kind = DiagnosticKind.INVALID_LAYOUT


# ───────────────────────────────────────────────────────────────────────────────
# RUN-LEVEL ERRORS
# ───────────────────────────────────────────────────────────────────────────────

class TypeNameSyntaxError(DbgCodeGenError):
    """A native type name could not be parsed."""

    def __init__(self, text: str, reason: str = "") -> None:
        message = f"cannot parse type name {text!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message, {})
        self.text = text


class IdentifierCollisionError(DbgCodeGenError):
    """The allocator failed to produce a unique identifier (internal bug)."""

    def __init__(self, identifier: str, key: Any) -> None:
        super().__init__(
            f"no free identifier for {key}",
            {"candidate": identifier},
        )
        self.identifier = identifier
        self.key = key


class ProviderQueryError(DbgCodeGenError):
    """The symbol provider itself failed (disconnected session, native error)."""

    def __init__(self, message: str, module: str = "", query: Any = None) -> None:
        details: Dict[str, Any] = {}
        if module:
            details["module"] = module
        if query is not None:
            details["query"] = query
        super().__init__(message, details)
        self.module = module
        self.query = query


class GenerationRunError(DbgCodeGenError):
    """
    A whole-run failure, surfaced with the context needed to reproduce it.
    """

    def __init__(
        self,
        message: str,
        module: str = "",
        root: Any = None,
        last_query: Any = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        details: Dict[str, Any] = {"module": module}
        if root is not None:
            details["root"] = root
        if last_query is not None:
            details["last_successful_query"] = last_query
        super().__init__(message, details)
        self.module = module
        self.root = root
        self.last_query = last_query
        self.cause = cause


class GenerationCancelled(DbgCodeGenError):
    """Raised at a query boundary once cancellation has been requested."""

    def __init__(self, module: str = "") -> None:
        super().__init__("generation cancelled", {"module": module} if module else {})
        self.module = module


class ConfigError(DbgCodeGenError):
    """Invalid generator configuration."""


class SnapshotError(DbgCodeGenError):
    """Malformed type snapshot file."""
