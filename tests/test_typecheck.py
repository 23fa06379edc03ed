import ast
import asyncio
import time

import pytest

from safe_code_runner import Dispatcher, ExecutionRequest, GuestLanguage, LocalEngine, TypedPythonEngine
from safe_code_runner.errors import ToolchainError
from safe_code_runner.execution.resources import ResourceCache
from safe_code_runner.execution.typecheck import (
    Diagnostic,
    TypedPythonToolchain,
    parse_mypy_output,
    strip_annotations,
)


class _FakeMypy:
    def __init__(self, report: str = "", errors: str = "", status: int = 0) -> None:
        self.report = report
        self.errors = errors
        self.status = status
        self.calls: list[list[str]] = []

    def __call__(self, args: list[str]) -> tuple[str, str, int]:
        self.calls.append(args)
        return self.report, self.errors, self.status


def _run(source: str) -> str:
    namespace: dict = {"__name__": "__stripped__"}
    lines: list[str] = []
    namespace["print"] = lambda *args: lines.append(" ".join(str(a) for a in args))
    exec(compile(source, "<stripped>", "exec"), namespace)
    return "\n".join(lines)


def test_strip_annotations_keeps_line_numbers() -> None:
    source = (
        "def add(a: int, b: int = 2) -> int:\n"
        "    total: int = a + b\n"
        "    return total\n"
        "\n"
        "pending: list[int]\n"
        "print(add(1))\n"
    )

    stripped = strip_annotations(source)

    assert len(stripped.splitlines()) == len(source.splitlines())
    assert ": int" not in stripped
    assert "->" not in stripped
    assert stripped.splitlines()[4].strip() == "..."
    assert _run(stripped) == "3"


def test_strip_annotations_handles_all_argument_kinds() -> None:
    source = (
        "async def f(a: int, /, b: str, *args: int, key: bool = False, **kw: dict) -> None:\n"
        "    pass\n"
    )

    stripped = strip_annotations(source)
    tree = ast.parse(stripped)
    fn = tree.body[0]

    assert isinstance(fn, ast.AsyncFunctionDef)
    assert fn.returns is None
    assert all(arg.annotation is None for arg in fn.args.args + fn.args.kwonlyargs)
    assert fn.args.vararg is not None and fn.args.vararg.annotation is None


def test_strip_annotations_keeps_class_body_fields() -> None:
    source = (
        "from dataclasses import dataclass\n"
        "@dataclass\n"
        "class Point:\n"
        "    x: int\n"
        "    y: int = 0\n"
        "    def norm(self) -> int:\n"
        "        scale: int = 1\n"
        "        return (self.x + self.y) * scale\n"
        "print(Point(3, 4).norm())\n"
    )

    stripped = strip_annotations(source)

    assert "    x: int\n" in stripped
    assert "    y: int = 0\n" in stripped
    assert "-> int" not in stripped
    assert "scale: int" not in stripped
    assert _run(stripped) == "7"


def test_strip_annotations_falls_back_to_unparse() -> None:
    source = (
        "def f(\n"
        "    a: int,\n"
        ") -> (\n"
        "    int\n"
        "):\n"
        "    return a\n"
        "print(f(5))\n"
    )

    stripped = strip_annotations(source)

    assert "->" not in stripped
    assert _run(stripped) == "5"


def test_parse_mypy_output_keeps_errors_in_line_order() -> None:
    report = (
        '<string>:7: error: Name "y" is not defined\n'
        "<string>:3: note: Revealed type is \"builtins.int\"\n"
        '<string>:2:5: error: Incompatible types in assignment (expression has type "str", variable has type "int")\n'
        "/usr/lib/typeshed/builtins.pyi:10: error: stub problem\n"
    )

    diagnostics = parse_mypy_output(report)

    assert [diag.line for diag in diagnostics] == [2, 7]
    assert diagnostics[1].format() == 'Line 7: Name "y" is not defined'


def test_transform_reports_syntax_error_without_running_mypy() -> None:
    mypy = _FakeMypy()
    toolchain = TypedPythonToolchain(mypy, cache_dir="/tmp/cache")

    output = toolchain.transform("x: int = \n")

    assert output.code is None
    assert output.diagnostics[0].line == 1
    assert output.diagnostics[0].message.startswith("SyntaxError")
    assert mypy.calls == []


def test_transform_returns_diagnostics_from_mypy() -> None:
    mypy = _FakeMypy(report='<string>:1: error: Incompatible types in assignment\n', status=1)
    toolchain = TypedPythonToolchain(mypy, cache_dir="/tmp/cache")

    output = toolchain.transform('x: int = "a"\n')

    assert not output.ok
    assert output.diagnostics == (Diagnostic(1, "Incompatible types in assignment"),)
    assert mypy.calls[0][-2:] == ["-c", 'x: int = "a"\n']
    assert "--cache-dir" in mypy.calls[0]


def test_transform_raises_when_mypy_crashes() -> None:
    toolchain = TypedPythonToolchain(_FakeMypy(errors="usage: mypy", status=2), cache_dir="/tmp/cache")

    with pytest.raises(ToolchainError, match="usage: mypy"):
        toolchain.transform("x = 1\n")


def _engine_with(mypy: _FakeMypy, cache: ResourceCache) -> TypedPythonEngine:
    async def loader() -> TypedPythonToolchain:
        return TypedPythonToolchain(mypy, cache_dir="/tmp/cache")

    return TypedPythonEngine(LocalEngine(), resources=cache, loader=loader)


def test_typed_engine_stops_on_diagnostics() -> None:
    mypy = _FakeMypy(report='<string>:2: error: Unsupported operand types for + ("int" and "str")\n', status=1)
    engine = _engine_with(mypy, ResourceCache())

    result = asyncio.run(engine.execute(ExecutionRequest("a: int = 1\nprint(a + 'x')\n", GuestLanguage.TYPED_PYTHON)))

    assert result.exit_code == 1
    assert result.error == "Compilation failed"
    assert result.stderr == 'Line 2: Unsupported operand types for + ("int" and "str")'
    assert result.stdout == ""


def test_typed_engine_runs_stripped_code_with_stdin() -> None:
    engine = _engine_with(_FakeMypy(), ResourceCache())
    code = "def double(n: int) -> int:\n    return n * 2\nvalue: int = int(input())\nprint(double(value))\n"

    result = asyncio.run(engine.execute(ExecutionRequest(code, GuestLanguage.TYPED_PYTHON, stdin="21")))

    assert result.exit_code == 0
    assert result.stdout == "42"


def test_typed_engine_runtime_errors_keep_original_lines() -> None:
    engine = _engine_with(_FakeMypy(), ResourceCache())
    code = "def f(xs: list[int]) -> int:\n    return xs[5]\n\nprint(f([1]))\n"

    result = asyncio.run(engine.execute(ExecutionRequest(code, GuestLanguage.TYPED_PYTHON)))

    assert result.error == "IndexError: list index out of range"
    assert "line 2" in result.stderr


def test_typed_engine_reports_load_failure_and_retries() -> None:
    cache = ResourceCache()
    attempts = 0

    async def loader() -> TypedPythonToolchain:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("mypy is not installed")
        return TypedPythonToolchain(_FakeMypy(), cache_dir="/tmp/cache")

    engine = TypedPythonEngine(LocalEngine(), resources=cache, loader=loader)
    request = ExecutionRequest("print('ok')\n", GuestLanguage.TYPED_PYTHON)

    failed = asyncio.run(engine.execute(request))
    recovered = asyncio.run(engine.execute(request))

    assert failed.exit_code == 1
    assert failed.error == "Runtime load failed"
    assert "mypy is not installed" in failed.stderr
    assert recovered.stdout == "ok"
    assert cache.load_counts["mypy"] == 2


def test_slow_toolchain_load_is_bounded_by_the_budget() -> None:
    async def loader() -> TypedPythonToolchain:
        await asyncio.sleep(2)
        return TypedPythonToolchain(_FakeMypy(), cache_dir="/tmp/cache")

    engine = TypedPythonEngine(LocalEngine(), resources=ResourceCache(), loader=loader)

    async def scenario():
        start = time.perf_counter()
        result = await engine.execute(ExecutionRequest("print(1)\n", GuestLanguage.TYPED_PYTHON, timeout_ms=50))
        return result, time.perf_counter() - start

    result, elapsed = asyncio.run(scenario())

    assert result.exit_code == 124
    assert result.error == "Timeout"
    assert result.duration_ms == 50
    assert elapsed < 1.0


def test_slow_type_check_is_bounded_by_the_budget() -> None:
    class _SlowMypy(_FakeMypy):
        def __call__(self, args: list[str]) -> tuple[str, str, int]:
            time.sleep(0.5)
            return super().__call__(args)

    engine = _engine_with(_SlowMypy(), ResourceCache())

    async def scenario():
        start = time.perf_counter()
        result = await engine.execute(ExecutionRequest("x: int = 1\n", GuestLanguage.TYPED_PYTHON, timeout_ms=50))
        return result, time.perf_counter() - start

    result, elapsed = asyncio.run(scenario())

    assert result.exit_code == 124
    assert "Execution timed out after 50ms" in result.stderr
    assert elapsed < 0.4


def test_type_error_is_reported_as_compilation_failure() -> None:
    dispatcher = Dispatcher(resources=ResourceCache())
    code = "def square(n: int) -> int:\n    return n * n\n\nresult: str = square(3)\nprint(result)\n"

    result = asyncio.run(dispatcher.execute(code, "typed-python", timeout_ms=60_000))

    assert result.exit_code == 1
    assert result.error == "Compilation failed"
    assert "Line 4:" in result.stderr


def test_well_typed_code_runs_through_mypy() -> None:
    dispatcher = Dispatcher(resources=ResourceCache())
    code = "from typing import List\n\ndef total(xs: List[int]) -> int:\n    return sum(xs)\n\nprint(total([int(x) for x in input().split()]))\n"

    result = asyncio.run(dispatcher.execute(code, "typed-python", stdin="1 2 3", timeout_ms=60_000))

    assert result.exit_code == 0, result.stderr
    assert result.stdout == "6"
