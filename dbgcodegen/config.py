"""dbgcodegen/config.py – generator configuration.

Configuration lives in an S-expression file, read with ``sexpdata`` like
the type snapshots::

    (config
      (writer accessor)                    ;; accessor | ctypes
      (output-dir "generated")
      (truncate-namespace yes)             ;; yes | no
      (runtime-module "dbgscript.runtime")
      (max-workers 4)
      (snapshot "types.sexp")              ;; repeatable
      (module "app"
        (elf "build/app")                  ;; DWARF source for this module
        (roots "Node" "ns::Registry")))

Relative paths are resolved against the directory of the configuration
file.  Command-line flags override file values (see :meth:`merged`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, List, Optional, Union

from .errors import ConfigError, SnapshotError
from .snapshot import atom_int, atom_text, form_head, is_symbol, parse_forms, symbol_text

logger = logging.getLogger(__name__)

__all__ = ["ModuleSpec", "GeneratorConfig", "load_config", "loads_config"]

_TRUE = ("yes", "true", "on")
_FALSE = ("no", "false", "off")


@dataclass
class ModuleSpec:
    """One module to export; no roots means every type the module lists."""

    name: str
    roots: List[str] = field(default_factory=list)
    elf: Optional[str] = None


@dataclass
class GeneratorConfig:
    writer: str = "accessor"
    output_dir: str = "generated"
    truncate_namespace: bool = True
    runtime_module: str = "dbgscript.runtime"
    max_workers: int = 1
    modules: List[ModuleSpec] = field(default_factory=list)
    snapshots: List[str] = field(default_factory=list)

    def merged(self, **overrides: Any) -> "GeneratorConfig":
        """Copy with every override that is not None applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values)

    def module(self, name: str) -> Optional[ModuleSpec]:
        for spec in self.modules:
            if spec.name == name:
                return spec
        return None

    def validate(self) -> None:
        if self.max_workers < 1:
            raise ConfigError("max-workers must be at least 1", {"max_workers": self.max_workers})
        seen = set()
        for spec in self.modules:
            if spec.name in seen:
                raise ConfigError(f"module {spec.name!r} configured twice")
            seen.add(spec.name)
        if not self.runtime_module:
            raise ConfigError("runtime-module must not be empty")


# ═══════════════════════════════════════════════════════════════════════
#  Loading
# ═══════════════════════════════════════════════════════════════════════

def _bool(obj: Any, what: str) -> bool:
    if isinstance(obj, bool):
        return obj
    text = symbol_text(obj).lower() if is_symbol(obj) else str(obj).lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{what}: expected yes/no, got {obj!r}")


def _single(form: List[Any]) -> Any:
    if len(form) != 2:
        raise ConfigError(f"({form_head(form)} VALUE) takes exactly one value")
    return form[1]


def _resolve(path: str, base: Optional[Path]) -> str:
    if base is None or Path(path).is_absolute():
        return path
    return str(base / path)


def _parse_module(form: List[Any], base: Optional[Path]) -> ModuleSpec:
    if len(form) < 2:
        raise ConfigError("(module NAME ...) needs a name")
    spec = ModuleSpec(name=atom_text(form[1], "module name"))
    for item in form[2:]:
        tag = form_head(item)
        if tag == "elf":
            spec.elf = _resolve(atom_text(_single(item), "elf path"), base)
        elif tag == "roots":
            spec.roots.extend(atom_text(r, "root type") for r in item[1:])
        else:
            raise ConfigError(f"module {spec.name}: unknown option ({tag} ...)")
    return spec


def loads_config(text: str, base_dir: Optional[Path] = None) -> GeneratorConfig:
    try:
        forms = parse_forms(text)
        if len(forms) != 1 or form_head(forms[0]) != "config":
            raise ConfigError("configuration must be a single (config ...) form")
        config = GeneratorConfig()
        for item in forms[0][1:]:
            tag = form_head(item)
            if tag == "writer":
                config.writer = atom_text(_single(item), "writer")
            elif tag == "output-dir":
                config.output_dir = _resolve(atom_text(_single(item), "output-dir"), base_dir)
            elif tag == "truncate-namespace":
                config.truncate_namespace = _bool(_single(item), "truncate-namespace")
            elif tag == "runtime-module":
                config.runtime_module = atom_text(_single(item), "runtime-module")
            elif tag == "max-workers":
                config.max_workers = atom_int(_single(item), "max-workers")
            elif tag == "snapshot":
                config.snapshots.append(_resolve(atom_text(_single(item), "snapshot"), base_dir))
            elif tag == "module":
                config.modules.append(_parse_module(item, base_dir))
            else:
                raise ConfigError(f"unknown configuration option ({tag} ...)")
    except SnapshotError as exc:
        raise ConfigError(exc.message) from exc
    config.validate()
    return config


def load_config(path: Union[str, Path]) -> GeneratorConfig:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read configuration {path}: {exc}") from exc
    logger.info("loading configuration %s", path)
    return loads_config(text, path.parent)
