# tests/test_driver.py
"""
Tests for the export driver: selection, diagnostics, determinism,
parallel runs, failure context and cancellation.
"""

import itertools
import threading

import pytest

from dbgcodegen.config import GeneratorConfig
from dbgcodegen.driver import ExportDriver, ExportResult, ModuleOutput, ModuleRequest
from dbgcodegen.errors import (
    DiagnosticKind,
    GenerationCancelled,
    GenerationRunError,
    Severity,
)
from dbgcodegen.provider import FieldDescriptor, InMemorySymbolProvider
from dbgcodegen.snapshot import loads_snapshot
from dbgcodegen.writers import CtypesWriter, PythonAccessorWriter
from tests.conftest import APP_SNAPSHOT


class _FailingProvider(InMemorySymbolProvider):
    def lookup_type(self, module, name_or_offset):
        if name_or_offset == "Boom":
            raise RuntimeError("debug session lost")
        return super().lookup_type(module, name_or_offset)


class _BrokenEnumWriter(PythonAccessorWriter):
    def visit_enum(self, inst):
        raise RuntimeError("enum renderer exploded")


def _driver(provider, writer=None, **config):
    writer = writer or PythonAccessorWriter()
    return ExportDriver(provider, writer, GeneratorConfig(writer=writer.name, **config))


class TestSelection:

    def test_declarations(self, app_provider):
        output = _driver(app_provider).export_module("app")
        assert sorted(output.declarations) == [
            "Base", "Callback", "Color", "Derived", "Node", "Pixel", "Registry",
            "pair_int_Node_ptr",
        ]
        assert output.diagnostics == []
        assert not output.has_errors

    def test_dependencies_declared_first(self, app_provider):
        decls = _driver(app_provider).export_module("app").declarations
        assert decls.index("Base") < decls.index("Derived")
        assert decls.index("pair_int_Node_ptr") < decls.index("Registry")

    def test_roots_limit_the_output(self, app_provider):
        output = _driver(app_provider).export_module("app", ["Node"])
        assert output.declarations == ["Node"]

    def test_roots_pull_in_dependencies(self, app_provider):
        output = _driver(app_provider).export_module("app", ["Derived"])
        assert output.declarations == ["Base", "Derived"]

    def test_invalid_types_excluded(self, all_provider):
        output = _driver(all_provider).export_module("cyc")
        assert output.declarations == ["Fine"]
        kinds = sorted(d.kind.value for d in output.diagnostics)
        assert kinds == ["illegal-value-cycle", "invalid-dependency"]
        dependency = next(d for d in output.diagnostics
                          if d.kind is DiagnosticKind.INVALID_DEPENDENCY)
        assert dependency.subject == "cyc!Holder"
        assert dependency.severity is Severity.WARNING
        assert output.has_errors

    def test_undefined_fields_do_not_block(self, all_provider):
        output = _driver(all_provider).export_module("undef")
        assert output.declarations == ["Wrapper"]
        assert not output.has_errors

    def test_layout_errors(self, all_provider):
        output = _driver(all_provider).export_module("layout")
        assert sorted(output.declarations) == ["Flex", "Grid"]
        subjects = sorted(d.subject for d in output.diagnostics)
        assert subjects == ["layout!Bad", "layout!BadBits"]

    def test_render_failure_isolated(self, app_provider):
        output = _driver(app_provider, _BrokenEnumWriter()).export_module("app")
        assert "Color" not in output.declarations
        assert "Node" in output.declarations
        failure, = output.diagnostics
        assert failure.kind is DiagnosticKind.RENDER_FAILURE
        assert failure.subject == "app!Color"
        assert "enum renderer exploded" in failure.message
        compile(output.source, "app.py", "exec")


class TestRun:

    def test_results_sorted_by_module(self, all_provider):
        result = _driver(all_provider).run(["undef", "app", "cyc"])
        assert [o.module for o in result.outputs] == ["app", "cyc", "undef"]
        assert result.has_errors
        assert len(result.diagnostics) == sum(len(o.diagnostics) for o in result.outputs)

    def test_request_forms(self, app_provider):
        result = _driver(app_provider).run([ModuleRequest("app", ("Node",))])
        assert result.output("app").declarations == ["Node"]
        result = _driver(app_provider).run([("app", ["Base"])])
        assert result.output("app").declarations == ["Base"]
        with pytest.raises(KeyError):
            result.output("other")

    def test_deterministic(self):
        first = _driver(loads_snapshot(APP_SNAPSHOT)).run(["app"])
        second = _driver(loads_snapshot(APP_SNAPSHOT)).run(["app"])
        assert first.output("app").source == second.output("app").source

    @pytest.mark.parametrize("writer_cls", [PythonAccessorWriter, CtypesWriter])
    def test_root_order_irrelevant(self, writer_cls):
        provider = InMemorySymbolProvider()
        provider.add_struct("m", "", 4, [FieldDescriptor("x", "int", 0)], type_id=5)
        provider.add_typedef("m", "Point", 5)
        provider.add_struct("m", "Outer", 4, [FieldDescriptor("p", 5, 0)])
        outputs = [
            _driver(provider, writer_cls()).export_module("m", list(roots))
            for roots in itertools.permutations(["Outer", "Point"])
        ]
        assert outputs[0].source == outputs[1].source
        assert outputs[0].declarations == outputs[1].declarations == ["Point", "Outer"]

    def test_root_order_irrelevant_for_app(self, app_provider):
        roots = ["Registry", "Derived", "Node", "Callback"]
        first = _driver(app_provider).export_module("app", roots)
        second = _driver(app_provider).export_module("app", list(reversed(roots)))
        assert first.source == second.source

    @pytest.mark.parametrize("writer_cls", [PythonAccessorWriter, CtypesWriter])
    def test_parallel_matches_sequential(self, all_provider, writer_cls):
        modules = ["app", "coll", "cyc", "layout", "undef"]
        sequential = _driver(all_provider, writer_cls()).run(modules)
        parallel = _driver(all_provider, writer_cls(), max_workers=4).run(modules)
        assert [o.source for o in sequential.outputs] == [o.source for o in parallel.outputs]
        assert [o.diagnostics for o in sequential.outputs] \
            == [o.diagnostics for o in parallel.outputs]

    def test_empty_run(self, app_provider):
        assert _driver(app_provider).run([]).outputs == []


class TestFailures:

    def test_provider_failure_context(self):
        provider = loads_snapshot(APP_SNAPSHOT, _FailingProvider())
        with pytest.raises(GenerationRunError) as info:
            _driver(provider).export_module("app", ["Node", "Boom"])
        error = info.value
        assert error.module == "app"
        assert error.root == "Boom"
        assert error.last_query == "int"
        assert "debug session lost" in str(error.cause)

    def test_unknown_module(self, app_provider):
        with pytest.raises(GenerationRunError) as info:
            _driver(app_provider).run(["nope"])
        assert info.value.module == "nope"

    def test_parallel_failure_aborts_run(self, app_provider):
        with pytest.raises(GenerationRunError) as info:
            _driver(app_provider, max_workers=2).run(["app", "nope"])
        assert info.value.module == "nope"

    def test_cancelled_before_start(self, app_provider):
        event = threading.Event()
        event.set()
        driver = ExportDriver(app_provider, PythonAccessorWriter(), cancel_event=event)
        with pytest.raises(GenerationCancelled):
            driver.run(["app"])


class TestOutputFiles:

    def test_write(self, all_provider, tmp_path):
        driver = _driver(all_provider)
        result = driver.run(["app", "undef"])
        paths = driver.write(result, tmp_path / "out")
        assert [p.name for p in paths] == ["app.py", "undef.py"]
        assert paths[0].read_text(encoding="utf-8") == result.output("app").source

    def test_write_to_configured_dir(self, app_provider, tmp_path):
        driver = _driver(app_provider, output_dir=str(tmp_path))
        paths = driver.write(driver.run(["app"]))
        assert paths == [tmp_path / "app.py"]

    def test_filename_sanitized(self):
        assert ModuleOutput("lib/app.so", "").filename == "lib_app_so.py"

    def test_empty_result(self):
        result = ExportResult()
        assert not result.has_errors
        assert result.diagnostics == []
