"""Code writers: one strategy per generated-code flavour."""

from .base import (
    DEFAULT_RUNTIME_MODULE,
    CodeFragment,
    CodeWriter,
    available_writers,
    get_writer,
    register_writer,
)
from .accessor import PythonAccessorWriter
from .ctypes_writer import CtypesWriter

__all__ = [
    "DEFAULT_RUNTIME_MODULE",
    "CodeFragment",
    "CodeWriter",
    "PythonAccessorWriter",
    "CtypesWriter",
    "available_writers",
    "get_writer",
    "register_writer",
]
