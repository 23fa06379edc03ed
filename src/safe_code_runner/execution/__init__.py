from .capabilities import BackendKind, backend_for
from .engine import ExecutionEngine
from .local_engine import LocalEngine
from .typed_engine import TypedPythonEngine
from .types import ExecutionRequest, ExecutionResult, GuestLanguage
from .v8_engine import V8Engine

__all__ = [
    "BackendKind",
    "ExecutionEngine",
    "ExecutionRequest",
    "ExecutionResult",
    "GuestLanguage",
    "LocalEngine",
    "TypedPythonEngine",
    "V8Engine",
    "backend_for",
]
