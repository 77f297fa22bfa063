# tests/test_config.py
"""Tests for the S-expression configuration file."""

import pytest

from dbgcodegen.config import GeneratorConfig, ModuleSpec, load_config, loads_config
from dbgcodegen.errors import ConfigError


FULL_CONFIG = '''
(config
  (writer ctypes)
  (output-dir "out")
  (truncate-namespace no)
  (runtime-module "myrt.types")
  (max-workers 4)
  (snapshot "types.sexp")
  (snapshot "/abs/more.sexp")
  (module "app"
    (elf "build/app")
    (roots "Node" "ns::Registry"))
  (module libc))
'''


class TestLoadsConfig:

    def test_defaults(self):
        config = loads_config("(config)")
        assert config == GeneratorConfig()
        assert config.writer == "accessor"
        assert config.truncate_namespace is True
        assert config.max_workers == 1

    def test_full(self, tmp_path):
        config = loads_config(FULL_CONFIG, tmp_path)
        assert config.writer == "ctypes"
        assert config.output_dir == str(tmp_path / "out")
        assert config.truncate_namespace is False
        assert config.runtime_module == "myrt.types"
        assert config.max_workers == 4
        assert config.snapshots == [str(tmp_path / "types.sexp"), "/abs/more.sexp"]
        assert config.modules == [
            ModuleSpec("app", ["Node", "ns::Registry"], str(tmp_path / "build/app")),
            ModuleSpec("libc"),
        ]

    def test_paths_kept_without_base(self):
        config = loads_config(FULL_CONFIG)
        assert config.output_dir == "out"
        assert config.module("app").elf == "build/app"

    def test_module_lookup(self):
        config = loads_config(FULL_CONFIG)
        assert config.module("libc").roots == []
        assert config.module("missing") is None

    @pytest.mark.parametrize("value, expected", [
        ("yes", True), ("on", True), ('"true"', True),
        ("no", False), ("off", False), ('"FALSE"', False),
    ])
    def test_bool_spellings(self, value, expected):
        config = loads_config(f"(config (truncate-namespace {value}))")
        assert config.truncate_namespace is expected

    @pytest.mark.parametrize("text", [
        "(config (colour blue))",
        "(config (truncate-namespace maybe))",
        "(config) (config)",
        "(settings)",
        "(config (writer",
        "(config (writer accessor ctypes))",
        "(config (max-workers 0))",
        "(config (max-workers many))",
        '(config (module "a") (module "a"))',
        '(config (module "a" (depth 3)))',
        "(config (module))",
        '(config (runtime-module ""))',
        "(config writer)",
    ])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            loads_config(text)


class TestMerged:

    def test_none_values_skipped(self):
        base = loads_config(FULL_CONFIG)
        merged = base.merged(writer="accessor", output_dir=None, max_workers=None)
        assert merged.writer == "accessor"
        assert merged.output_dir == "out"
        assert merged.max_workers == 4
        assert base.writer == "ctypes"


class TestLoadConfig:

    def test_relative_to_file(self, tmp_path):
        path = tmp_path / "conf" / "dbgcodegen.sexp"
        path.parent.mkdir()
        path.write_text('(config (snapshot "types.sexp"))', encoding="utf-8")
        config = load_config(path)
        assert config.snapshots == [str(path.parent / "types.sexp")]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as info:
            load_config(tmp_path / "nope.sexp")
        assert "cannot read configuration" in str(info.value)

    def test_accepts_str_path(self, tmp_path):
        path = tmp_path / "c.sexp"
        path.write_text("(config (writer ctypes))", encoding="utf-8")
        assert load_config(str(path)).writer == "ctypes"
