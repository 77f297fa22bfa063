#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbgcodegen/emitter.py
=====================

Indentation-aware buffer the code writers emit Python source into.
"""

from __future__ import annotations

from io import StringIO
from typing import Any, Iterable

__all__ = ["CodeEmitter"]


class CodeEmitter:
    """Low-level code emission with indentation management.

    Provides:
    - Automatic indentation tracking
    - Block context managers
    """

    def __init__(self, indent_str: str = "    ", level: int = 0) -> None:
        self._buffer = StringIO()
        self._indent_str = indent_str
        self._indent_level = level

    def emit(self, code: str) -> None:
        """Emit a line of code at the current indentation."""
        if code.strip():
            self._buffer.write(self._indent_str * self._indent_level)
            self._buffer.write(code)
        self._buffer.write("\n")

    def emit_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.emit(line)

    def emit_blank(self, count: int = 1) -> None:
        for _ in range(count):
            self._buffer.write("\n")

    def emit_comment(self, text: str) -> None:
        for line in text.split("\n"):
            self.emit(f"# {line}" if line else "#")

    def emit_docstring(self, text: str) -> None:
        lines = text.strip().replace('"""', '\\"\\"\\"').split("\n")
        if len(lines) == 1:
            self.emit(f'"""{lines[0]}"""')
        else:
            self.emit('"""')
            for line in lines:
                self.emit(line)
            self.emit('"""')

    def indent(self) -> None:
        self._indent_level += 1

    def dedent(self) -> None:
        self._indent_level = max(0, self._indent_level - 1)

    def block(self, header: str) -> "CodeEmitter._BlockContext":
        """Context manager for indented blocks."""
        return self._BlockContext(self, header)

    class _BlockContext:
        def __init__(self, emitter: "CodeEmitter", header: str) -> None:
            self._emitter = emitter
            self._header = header

        def __enter__(self) -> "CodeEmitter":
            self._emitter.emit(self._header)
            self._emitter.indent()
            return self._emitter

        def __exit__(self, *args: Any) -> None:
            self._emitter.dedent()

    def get_code(self) -> str:
        return self._buffer.getvalue()
