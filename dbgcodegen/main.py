#!/usr/bin/env python3
"""dbgcodegen/main.py: CLI entry-point for the code generator.

Usage examples
--------------
    # Generate accessor modules for every module described in a snapshot
    dbgcodegen generate --snapshot types.sexp -o generated/

    # Generate ctypes structures for two roots of one ELF image
    dbgcodegen generate --elf app=build/app --root Node --root ns::Registry \\
        --writer ctypes -o generated/

    # Drive everything from a configuration file, four modules at a time
    dbgcodegen generate --config dbgcodegen.sexp -j 4

    # Show the resolved type graph of a root (debugging aid)
    dbgcodegen resolve --snapshot types.sexp --module app --root Node

    # List the available writers
    dbgcodegen writers

Exit codes
----------
    0   Success (no ERROR diagnostics).
    1   One or more diagnostics with severity ERROR were emitted.
    2   Infrastructure failure (bad configuration, unreadable input,
        symbol provider failure).
    130 Interrupted.

``python -m dbgcodegen`` runs :func:`main` through ``dbgcodegen/__main__.py``.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import sys
import textwrap
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO, Tuple

from . import __version__
from .config import GeneratorConfig, load_config
from .driver import ExportDriver, ModuleRequest
from .errors import (
    ConfigError,
    DbgCodeGenError,
    GenerationCancelled,
    GenerationRunError,
    ProviderQueryError,
    SnapshotError,
)
from .provider import InMemorySymbolProvider, RoutingSymbolProvider, SymbolProvider
from .resolver import TypeGraphResolver
from .snapshot import load_snapshot
from .writers import available_writers, get_writer

_log = logging.getLogger("dbgcodegen")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2
EXIT_INTERRUPTED: int = 130


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``dbgcodegen`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("dbgcodegen")
    root.setLevel(level)
    if not any(getattr(h, "_dbgcodegen", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        handler._dbgcodegen = True  # type: ignore[attr-defined]
        root.addHandler(handler)


def _emit_diagnostics(diagnostics: Sequence[Any], fmt: str, stream: TextIO) -> int:
    """Write *diagnostics* to *stream*; returns the count of ERROR ones."""
    error_count = 0
    for diag in diagnostics:
        if diag.severity.is_error():
            error_count += 1
        if fmt == "json":
            stream.write(json.dumps(diag.to_dict()) + "\n")
        else:
            stream.write(str(diag) + "\n")
    if fmt == "summary" and diagnostics:
        stream.write(f"\n--- {len(diagnostics)} diagnostic(s), "
                     f"{error_count} error(s) ---\n")
    return error_count


def _parse_elf_arg(raw: str) -> Tuple[str, str]:
    module, sep, path = raw.partition("=")
    if not sep or not module or not path:
        raise ConfigError(f"--elf expects MODULE=PATH, got {raw!r}")
    return module, path


# ===========================================================================
# Configuration and providers
# ===========================================================================

def _load_configuration(args: argparse.Namespace) -> GeneratorConfig:
    """Configuration file (if any) with command-line overrides applied."""
    config = load_config(args.config) if args.config else GeneratorConfig()
    snapshots = list(config.snapshots) + list(args.snapshot or [])
    config = config.merged(
        writer=getattr(args, "writer", None),
        output_dir=getattr(args, "output_dir", None),
        runtime_module=getattr(args, "runtime_module", None),
        max_workers=getattr(args, "jobs", None),
        truncate_namespace=False if getattr(args, "no_truncate_namespace", False) else None,
        snapshots=snapshots,
    )
    config.validate()
    return config


def _elf_images(config: GeneratorConfig, args: argparse.Namespace) -> Dict[str, str]:
    images = {spec.name: spec.elf for spec in config.modules if spec.elf}
    for raw in args.elf or []:
        module, path = _parse_elf_arg(raw)
        images[module] = path
    return images


def _build_provider(config: GeneratorConfig, args: argparse.Namespace,
                    stack: contextlib.ExitStack) -> RoutingSymbolProvider:
    """Route snapshot modules to one in-memory provider, ELF modules to DWARF."""
    router = RoutingSymbolProvider()
    if config.snapshots:
        memory = InMemorySymbolProvider()
        for path in config.snapshots:
            load_snapshot(path, memory)
        for module in memory.modules():
            router.route(module, memory)

    images = _elf_images(config, args)
    if images:
        # pyelftools is imported only when DWARF input is actually requested
        from .dwarf_provider import DwarfSymbolProvider

        dwarf: SymbolProvider
        if config.max_workers > 1:
            from .worker import ProviderWorker

            worker = ProviderWorker(lambda: DwarfSymbolProvider(images))
            stack.callback(worker.stop)
            dwarf = worker.start()
        else:
            direct = DwarfSymbolProvider(images)
            stack.callback(direct.close)
            dwarf = direct
        for module in sorted(images):
            try:
                router.route(module, dwarf)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc

    if not router.modules():
        raise ConfigError("no input: give --snapshot, --elf or a --config with modules")
    return router


def _requests(config: GeneratorConfig, args: argparse.Namespace,
              provider: RoutingSymbolProvider) -> List[ModuleRequest]:
    modules = list(args.module or []) or [spec.name for spec in config.modules] \
        or provider.modules()
    requests = []
    for module in modules:
        if args.root:
            roots = list(args.root)
        else:
            spec = config.module(module)
            roots = list(spec.roots) if spec is not None else []
        requests.append(ModuleRequest(module, tuple(roots)))
    return requests


# ===========================================================================
# Subcommands
# ===========================================================================

def cmd_generate(args: argparse.Namespace) -> int:
    try:
        config = _load_configuration(args)
        writer = get_writer(config.writer, truncate_namespace=config.truncate_namespace,
                            runtime_module=config.runtime_module)
    except (ConfigError, SnapshotError) as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except KeyError as exc:
        _log.error("%s", exc.args[0])
        return EXIT_INFRA

    cancel = threading.Event()
    with contextlib.ExitStack() as stack:
        try:
            provider = _build_provider(config, args, stack)
            requests = _requests(config, args, provider)
            driver = ExportDriver(provider, writer, config, cancel_event=cancel)
            result = driver.run(requests)
        except (ConfigError, SnapshotError, ProviderQueryError) as exc:
            _log.error("%s", exc)
            return EXIT_INFRA
        except GenerationRunError as exc:
            _log.error("generation failed: %s", exc)
            return EXIT_INFRA
        except GenerationCancelled:
            _log.warning("generation cancelled")
            return EXIT_INTERRUPTED
        except KeyboardInterrupt:
            cancel.set()
            raise

    if config.output_dir == "-":
        for output in result.outputs:
            sys.stdout.write(output.source)
    else:
        for path in driver.write(result):
            _log.info("wrote %s", path)

    errors = _emit_diagnostics(result.diagnostics, args.format, sys.stderr)
    return EXIT_ERROR if errors else EXIT_OK


def cmd_resolve(args: argparse.Namespace) -> int:
    try:
        config = _load_configuration(args)
    except (ConfigError, SnapshotError) as exc:
        _log.error("%s", exc)
        return EXIT_INFRA

    diagnostics = []
    with contextlib.ExitStack() as stack:
        try:
            provider = _build_provider(config, args, stack)
            for request in _requests(config, args, provider):
                resolver = TypeGraphResolver(provider, request.module)
                resolver.resolve_all(request.roots or provider.list_types(request.module))
                registry = resolver.registry
                print(f"module {request.module} ({len(registry)} types)")
                for key, inst in registry.items():
                    size = inst.size if inst.size is not None else "?"
                    line = f"  {key}  {inst.kind.value}  size={size}"
                    if registry.is_invalid(inst):
                        line += f"  invalid: {registry.invalid_reason(inst)}"
                    print(line)
                diagnostics.extend(resolver.diagnostics)
        except (ConfigError, SnapshotError, ProviderQueryError) as exc:
            _log.error("%s", exc)
            return EXIT_INFRA

    errors = _emit_diagnostics(diagnostics, args.format, sys.stderr)
    return EXIT_ERROR if errors else EXIT_OK


def cmd_writers(args: argparse.Namespace) -> int:
    for name, description in available_writers():
        print(f"{name:<12} {description}")
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="dbgcodegen",
        description=(
            "Generate Python type modules from native debug information.\n\n"
            "Resolves the type graph of each module through a symbol provider\n"
            "(type snapshot or DWARF) and writes one Python module per module."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              dbgcodegen generate --snapshot types.sexp -o generated/
              dbgcodegen generate --elf app=build/app --writer ctypes
              dbgcodegen resolve --snapshot types.sexp --root Node
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(dest="command", title="commands", metavar="<command>")

    def _add_input_args(p: argparse.ArgumentParser) -> None:
        g = p.add_argument_group("input")
        g.add_argument("--config", metavar="FILE", help="Configuration file (S-expression).")
        g.add_argument("--snapshot", metavar="FILE", action="append",
                       help="Type snapshot to load (repeatable).")
        g.add_argument("--elf", metavar="MODULE=PATH", action="append",
                       help="Read MODULE's types from the DWARF of an ELF image (repeatable).")
        g.add_argument("--module", metavar="NAME", action="append",
                       help="Only process these modules (repeatable).")
        g.add_argument("--root", metavar="TYPE", action="append",
                       help="Root type to export (repeatable); default: every listed type.")
        p.add_argument("--format", choices=("summary", "gcc", "json"), default="summary",
                       help="Diagnostic output format (default: summary).")

    # generate ----------------------------------------------------------------
    p_gen = subparsers.add_parser("generate", help="Generate Python modules.")
    _add_input_args(p_gen)
    g = p_gen.add_argument_group("output")
    g.add_argument("--writer", help="Writer to use (see 'dbgcodegen writers').")
    g.add_argument("-o", "--output-dir", dest="output_dir", metavar="DIR",
                   help="Output directory, '-' for stdout.")
    g.add_argument("--runtime-module", dest="runtime_module", metavar="MODULE",
                   help="Module the accessor writer imports its runtime from.")
    g.add_argument("--no-truncate-namespace", dest="no_truncate_namespace",
                   action="store_true",
                   help="Keep namespaces in generated identifiers.")
    g.add_argument("-j", "--jobs", type=int, metavar="N",
                   help="Number of modules generated in parallel.")
    p_gen.set_defaults(func=cmd_generate)

    # resolve -----------------------------------------------------------------
    p_res = subparsers.add_parser("resolve", help="Resolve and print the type graph.")
    _add_input_args(p_res)
    p_res.set_defaults(func=cmd_resolve)

    # writers -----------------------------------------------------------------
    p_wr = subparsers.add_parser("writers", help="List available writers.")
    p_wr.set_defaults(func=cmd_writers)

    return parser


# ===========================================================================
# Entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the CLI; returns the exit code (see module docstring)."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return EXIT_INTERRUPTED
    except DbgCodeGenError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
