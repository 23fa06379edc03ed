from .execution.config import RunnerSettings
from .execution.local_engine import LocalEngine
from .execution.typed_engine import TypedPythonEngine
from .execution.types import (
    ExecutionRequest,
    ExecutionResult,
    GuestLanguage,
    TestCase,
    TestCaseResult,
)
from .execution.v8_engine import V8Engine
from .policy import RunnerPolicy
from .runner import (
    Dispatcher,
    execute,
    is_runtime_loading,
    is_supported,
    on_runtime_load,
    run_test_cases,
)

__all__ = [
    "Dispatcher",
    "ExecutionRequest",
    "ExecutionResult",
    "GuestLanguage",
    "LocalEngine",
    "RunnerPolicy",
    "RunnerSettings",
    "TestCase",
    "TestCaseResult",
    "TypedPythonEngine",
    "V8Engine",
    "execute",
    "is_runtime_loading",
    "is_supported",
    "on_runtime_load",
    "run_test_cases",
]
