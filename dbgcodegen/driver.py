#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbgcodegen/driver.py
====================

Export driver: resolve → select → name → order → render → assemble, per
module.

Pipeline for one module
-----------------------
1. **Resolve** the roots (all listed types when none are given) into a
   fresh :class:`~dbgcodegen.resolver.TypeRegistry`.
2. **Select** the declarations: Aggregates, TemplateInstances, Enums and
   Functions that are neither invalid nor embed an invalid type by value.
3. **Name** them with the :class:`~dbgcodegen.naming.IdentifierAllocator`.
4. **Order** them (:func:`~dbgcodegen.ordering.emission_order`).
5. **Render** each declaration; a failure is isolated to that declaration.
6. **Assemble** the module source.

Modules are independent: each gets its own resolver and registry, so
several can run in parallel (``max_workers``).  Results are always
reported in module-name order, and the generated text contains nothing
time- or order-dependent, so identical inputs give identical bytes.

Failure model
-------------
Per-type problems are diagnostics.  A provider failure aborts the run
with a :class:`GenerationRunError` naming the module, the root being
resolved and the last query that succeeded.  Cancellation raises
:class:`GenerationCancelled`; a cancelled module produces no output.
"""

from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .config import GeneratorConfig
from .errors import (
    Diagnostic,
    DiagnosticKind,
    GenerationCancelled,
    GenerationRunError,
    ProviderQueryError,
    Severity,
)
from .instances import TypeInstance
from .naming import NAMED_KINDS, IdentifierAllocator, NameTable, sanitize
from .ordering import emission_order
from .provider import SymbolProvider, TypeRef
from .resolver import TypeGraphResolver, TypeRegistry
from .writers import CodeFragment, CodeWriter

logger = logging.getLogger(__name__)

__all__ = ["ModuleRequest", "ModuleOutput", "ExportResult", "ExportDriver"]


# ═══════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ModuleRequest:
    module: str
    roots: Tuple[TypeRef, ...] = ()


@dataclass
class ModuleOutput:
    module: str
    source: str
    declarations: List[str] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    registry: Optional[TypeRegistry] = field(default=None, repr=False, compare=False)

    @property
    def has_errors(self) -> bool:
        return any(d.severity.is_error() for d in self.diagnostics)

    @property
    def filename(self) -> str:
        return f"{sanitize(self.module)}.py"


@dataclass
class ExportResult:
    outputs: List[ModuleOutput] = field(default_factory=list)

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return [d for output in self.outputs for d in output.diagnostics]

    @property
    def has_errors(self) -> bool:
        return any(output.has_errors for output in self.outputs)

    def output(self, module: str) -> ModuleOutput:
        for output in self.outputs:
            if output.module == module:
                return output
        raise KeyError(module)


class _CancelToken:
    """Cancelled when the caller's event or the run's abort event is set."""

    def __init__(self, *events: Optional[threading.Event]) -> None:
        self._events = [e for e in events if e is not None]

    def is_set(self) -> bool:
        return any(e.is_set() for e in self._events)


RequestLike = Union[ModuleRequest, str, Tuple[str, Sequence[TypeRef]]]


def _as_request(item: RequestLike) -> ModuleRequest:
    if isinstance(item, ModuleRequest):
        return item
    if isinstance(item, str):
        return ModuleRequest(item)
    module, roots = item
    return ModuleRequest(module, tuple(roots))


# ═══════════════════════════════════════════════════════════════════════════
# DRIVER
# ═══════════════════════════════════════════════════════════════════════════

class ExportDriver:
    def __init__(
        self,
        provider: SymbolProvider,
        writer: CodeWriter,
        config: Optional[GeneratorConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.provider = provider
        self.writer = writer
        self.config = config if config is not None else GeneratorConfig(writer=writer.name)
        self.cancel_event = cancel_event
        self._abort = threading.Event()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, requests: Iterable[RequestLike]) -> ExportResult:
        """Export every requested module; results come back sorted by module."""
        pending = [_as_request(r) for r in requests]
        self._abort.clear()
        workers = max(1, self.config.max_workers)
        outputs: List[ModuleOutput] = []

        if workers == 1 or len(pending) <= 1:
            for request in pending:
                outputs.append(self.export_module(request.module, request.roots))
        else:
            with ThreadPoolExecutor(max_workers=workers,
                                    thread_name_prefix="dbgcodegen") as pool:
                futures = {
                    pool.submit(self.export_module, r.module, r.roots): r.module
                    for r in pending
                }
                failure: Optional[BaseException] = None
                try:
                    for future in as_completed(futures):
                        try:
                            outputs.append(future.result())
                        except (GenerationRunError, GenerationCancelled) as exc:
                            self._abort.set()
                            if failure is None or isinstance(failure, GenerationCancelled):
                                failure = exc
                except KeyboardInterrupt:
                    # stop the remaining modules at their next query
                    self._abort.set()
                    raise
                if failure is not None:
                    raise failure

        outputs.sort(key=lambda output: output.module)
        return ExportResult(outputs)

    def export_module(self, module: str, roots: Sequence[TypeRef] = ()) -> ModuleOutput:
        cancel = _CancelToken(self.cancel_event, self._abort)
        if cancel.is_set():
            raise GenerationCancelled(module)
        logger.info("exporting module %s", module)

        roots = list(roots)
        if not roots:
            try:
                roots = list(self.provider.list_types(module))
            except ProviderQueryError as exc:
                raise GenerationRunError(f"cannot list types of {module}: {exc}",
                                         module=module, cause=exc) from exc
            logger.debug("%s: %d listed root types", module, len(roots))

        resolver = TypeGraphResolver(self.provider, module, cancel_event=cancel)
        for root in roots:
            try:
                resolver.resolve(root)
            except ProviderQueryError as exc:
                raise GenerationRunError(
                    f"symbol provider failed while resolving {root!r}: {exc}",
                    module=module, root=root,
                    last_query=resolver.last_successful_query, cause=exc,
                ) from exc

        registry = resolver.registry
        diagnostics = list(resolver.diagnostics)
        selected = self._select(registry, diagnostics)

        allocator = IdentifierAllocator(truncate_namespace=self.config.truncate_namespace)
        names = allocator.allocate(selected, registry)
        order = emission_order(selected, sort_key=lambda inst: str(registry.key_of(inst)))

        if cancel.is_set():
            raise GenerationCancelled(module)
        writer = copy.copy(self.writer)
        fragments = self._render(writer, module, order, names, registry, diagnostics)
        source = writer.assemble(module, fragments, names)

        logger.info("%s: %d declarations, %d diagnostics", module, len(fragments),
                    len(diagnostics))
        return ModuleOutput(
            module=module,
            source=source,
            declarations=[f.identifier for f in fragments],
            diagnostics=diagnostics,
            registry=registry,
        )

    def write(self, result: ExportResult,
              output_dir: Optional[Union[str, Path]] = None) -> List[Path]:
        """Write one ``<module>.py`` per module output; returns the paths."""
        target = Path(output_dir if output_dir is not None else self.config.output_dir)
        target.mkdir(parents=True, exist_ok=True)
        written = []
        for output in result.outputs:
            path = target / output.filename
            path.write_text(output.source, encoding="utf-8")
            logger.info("wrote %s", path)
            written.append(path)
        return written

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _select(self, registry: TypeRegistry,
                diagnostics: List[Diagnostic]) -> List[TypeInstance]:
        selected = []
        for inst in registry.instances():
            if inst.kind not in NAMED_KINDS or registry.is_invalid(inst):
                continue
            culprit = _invalid_dependency(inst, registry)
            if culprit is not None:
                diagnostics.append(Diagnostic(
                    DiagnosticKind.INVALID_DEPENDENCY, Severity.WARNING, registry.module,
                    str(registry.key_of(inst)),
                    f"skipped: embeds invalid type {registry.key_of(culprit)} by value",
                ))
                continue
            selected.append(inst)
        return selected

    def _render(self, writer: CodeWriter, module: str, order: List[TypeInstance],
                names: NameTable, registry: TypeRegistry,
                diagnostics: List[Diagnostic]) -> List[CodeFragment]:
        fragments = []
        for inst in order:
            try:
                fragments.append(writer.render_declaration(inst, names))
            except Exception as exc:
                logger.warning("%s: rendering %s failed: %s", module, names[inst], exc)
                diagnostics.append(Diagnostic(
                    DiagnosticKind.RENDER_FAILURE, Severity.ERROR, module,
                    str(registry.key_of(inst)), f"{type(exc).__name__}: {exc}",
                ))
        return fragments


def _invalid_dependency(inst: TypeInstance, registry: TypeRegistry) -> Optional[TypeInstance]:
    """First invalid instance *inst* embeds by value, if any."""
    seen = {id(inst)}
    stack = list(inst.value_dependencies())
    while stack:
        dep = stack.pop()
        if id(dep) in seen:
            continue
        seen.add(id(dep))
        if registry.is_invalid(dep):
            return dep
        stack.extend(dep.value_dependencies())
    return None
