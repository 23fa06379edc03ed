from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

TIMEOUT_EXIT_CODE = 124

ERROR_TIMEOUT = "Timeout"
ERROR_COMPILATION = "Compilation failed"
ERROR_RUNTIME_LOAD = "Runtime load failed"
ERROR_EXECUTION = "Execution failed"


class GuestLanguage(str, Enum):
    """Language identifiers known to the assessment platform.

    Only some of them have an execution backend; see `capabilities`.

    Example:
        ```python
        lang = GuestLanguage.parse("Python")
        ```
    """

    PYTHON = "python"
    TYPED_PYTHON = "typed-python"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    JAVA = "java"
    CPP = "cpp"
    CSHARP = "csharp"
    GO = "go"
    RUST = "rust"

    @classmethod
    def parse(cls, value: "str | GuestLanguage") -> "GuestLanguage | None":
        """Resolve a language id, returning None for ids outside the catalogue.

        Example:
            ```python
            assert GuestLanguage.parse(" JavaScript ") is GuestLanguage.JAVASCRIPT
            ```
        """
        if isinstance(value, GuestLanguage):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """One run of guest source code handed to an execution engine.

    Example:
        ```python
        req = ExecutionRequest("print(1)", GuestLanguage.PYTHON, stdin="", timeout_ms=2000)
        ```
    """

    source_code: str
    language: GuestLanguage
    stdin: str = ""
    timeout_ms: int = 10_000


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Uniform output of every engine.

    `error` is the error tag; it is None exactly when the run finished
    cleanly (unsupported languages are the one exit-1 case without a tag).

    Example:
        ```python
        res = ExecutionResult(stdout="hello", stderr="", exit_code=0, duration_ms=12.5)
        ```
    """

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE and self.error == ERROR_TIMEOUT


def timeout_result(timeout_ms: int, stdout: str = "", stderr: str = "") -> ExecutionResult:
    """Build the deterministic result for a run that exceeded its budget.

    Example:
        ```python
        res = timeout_result(50)
        ```
    """
    notice = f"Execution timed out after {timeout_ms}ms"
    return ExecutionResult(
        stdout=stdout,
        stderr=f"{stderr}\n{notice}" if stderr else notice,
        exit_code=TIMEOUT_EXIT_CODE,
        duration_ms=float(timeout_ms),
        error=ERROR_TIMEOUT,
    )


@dataclass(frozen=True, slots=True)
class TestCase:
    """Input/expected-output pair supplied by the caller.

    Example:
        ```python
        case = TestCase.from_mapping({"input": "1 2", "expectedOutput": "3"})
        ```
    """

    __test__ = False

    input: str
    expected_output: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "TestCase":
        """Build a test case from platform JSON (camelCase or snake_case keys).

        Example:
            ```python
            case = TestCase.from_mapping({"input": "", "expected_output": "ok"})
            ```
        """
        expected = raw.get("expectedOutput", raw.get("expected_output"))
        if expected is None:
            raise ValueError("Test case requires 'expectedOutput' or 'expected_output'")
        return cls(input=str(raw.get("input", "")), expected_output=str(expected))


@dataclass(frozen=True, slots=True)
class TestCaseResult:
    """Outcome of running one test case.

    Example:
        ```python
        res = TestCaseResult("1 2", "3", "3", passed=True, duration_ms=8.0)
        ```
    """

    __test__ = False

    input: str
    expected_output: str
    actual_output: str
    passed: bool
    duration_ms: float
