"""Type checking and annotation stripping for typed Python guest code.

The toolchain is mypy, driven through ``mypy.api``. Importing mypy is slow,
so the engine loads it once through the resource cache and reuses the
resulting `TypedPythonToolchain`.
"""

from __future__ import annotations

import ast
import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterator

from ..errors import RuntimeLoadError, ToolchainError

logger = logging.getLogger(__name__)

MypyRun = Callable[[list[str]], tuple[str, str, int]]

_MYPY_LINE = re.compile(
    r"^(?P<path>.*?):(?P<line>\d+)(?::\d+)?: (?P<severity>error|note): (?P<message>.*)$"
)
_ARROW_GAP = frozenset(b" \t\r\n\\")


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One toolchain complaint, pinned to a 1-based source line.

    Example:
        ```python
        Diagnostic(3, 'Incompatible return value type (got "str", expected "int")').format()
        ```
    """

    line: int
    message: str

    def format(self) -> str:
        return f"Line {self.line}: {self.message}"


@dataclass(frozen=True, slots=True)
class TransformOutput:
    """Either runnable source or a non-empty list of diagnostics."""

    code: str | None
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.diagnostics


def parse_mypy_output(report: str) -> list[Diagnostic]:
    """Extract error diagnostics from mypy's plain-text report, ordered by line.

    Example:
        ```python
        diags = parse_mypy_output('<string>:2: error: Name "y" is not defined')
        ```
    """
    diagnostics: list[Diagnostic] = []
    for raw_line in report.splitlines():
        match = _MYPY_LINE.match(raw_line.strip())
        if match is None or match.group("severity") != "error":
            continue
        # Errors reported inside stub files do not point at guest lines.
        if match.group("path").endswith(".pyi"):
            continue
        diagnostics.append(Diagnostic(int(match.group("line")), match.group("message").strip()))
    diagnostics.sort(key=lambda diag: diag.line)
    return diagnostics


class _CannotBlank(Exception):
    pass


def _annotated_nodes(tree: ast.AST) -> Iterator[ast.AST]:
    """Yield function definitions and annotated assignments whose annotations go.

    Annotated assignments directly in a class body are skipped: dataclasses,
    NamedTuple and TypedDict read them at run time.
    """
    kept: set[int] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.ClassDef):
            kept.update(id(stmt) for stmt in node.body if isinstance(stmt, ast.AnnAssign))
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            yield node
        elif isinstance(node, ast.AnnAssign) and id(node) not in kept:
            yield node


def _all_args(arguments: ast.arguments) -> list[ast.arg]:
    args = [*arguments.posonlyargs, *arguments.args, *arguments.kwonlyargs]
    if arguments.vararg is not None:
        args.append(arguments.vararg)
    if arguments.kwarg is not None:
        args.append(arguments.kwarg)
    return args


class _Blanker:
    """Blank out byte ranges of a source text without moving any line."""

    def __init__(self, source: str) -> None:
        self._data = bytearray(source.encode("utf-8"))
        self._line_starts = [0]
        for index, byte in enumerate(self._data):
            if byte == 0x0A:
                self._line_starts.append(index + 1)

    def offset(self, lineno: int, col: int) -> int:
        return self._line_starts[lineno - 1] + col

    def blank(self, start: int, end: int, replacement: bytes = b"") -> None:
        for index in range(start, end):
            if self._data[index] not in (0x0A, 0x0D):
                self._data[index] = 0x20
        self._data[start:start + len(replacement)] = replacement

    def strip_arg(self, arg: ast.arg) -> None:
        assert arg.annotation is not None
        name = arg.arg.encode("utf-8")
        name_start = self.offset(arg.lineno, arg.col_offset)
        if bytes(self._data[name_start:name_start + len(name)]) != name:
            raise _CannotBlank(arg.arg)
        end = self.offset(arg.annotation.end_lineno or arg.lineno, arg.annotation.end_col_offset or 0)
        self.blank(name_start + len(name), end)

    def strip_returns(self, returns: ast.expr) -> None:
        start = self.offset(returns.lineno, returns.col_offset)
        arrow = self._data.rfind(b"->", 0, start)
        if arrow < 0 or any(byte not in _ARROW_GAP for byte in self._data[arrow + 2:start]):
            raise _CannotBlank("->")
        self.blank(arrow, self.offset(returns.end_lineno or returns.lineno, returns.end_col_offset or 0))

    def strip_assignment(self, node: ast.AnnAssign) -> None:
        end = self.offset(node.annotation.end_lineno or node.lineno, node.annotation.end_col_offset or 0)
        if node.value is None:
            self.blank(self.offset(node.lineno, node.col_offset), end, b"...")
        else:
            target_end = self.offset(node.target.end_lineno or node.lineno, node.target.end_col_offset or 0)
            self.blank(target_end, end)

    def text(self) -> str:
        return self._data.decode("utf-8")


class _AnnotationStripper(ast.NodeTransformer):
    def visit_FunctionDef(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> ast.AST:
        for arg in _all_args(node.args):
            arg.annotation = None
        node.returns = None
        self.generic_visit(node)
        return node

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> ast.AST:
        node.body = [
            stmt if isinstance(stmt, ast.AnnAssign) else self.visit(stmt) for stmt in node.body
        ]
        return node

    def visit_AnnAssign(self, node: ast.AnnAssign) -> ast.AST:
        if node.value is None:
            return ast.copy_location(ast.Expr(ast.Constant(Ellipsis)), node)
        return ast.copy_location(ast.Assign(targets=[node.target], value=node.value), node)


def strip_annotations(source: str) -> str:
    """Remove type annotations, keeping every statement on its original line.

    Falls back to re-generating the source from the AST when in-place
    blanking cannot produce valid code (for example a parenthesized
    multi-line annotation).

    Example:
        ```python
        strip_annotations("def f(x: int) -> int:\\n    return x")
        ```
    """
    tree = ast.parse(source)
    blanker = _Blanker(source)
    try:
        # Blanking never changes the length, so offsets stay valid between edits.
        for node in _annotated_nodes(tree):
            if isinstance(node, ast.AnnAssign):
                blanker.strip_assignment(node)
                continue
            assert isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
            for arg in _all_args(node.args):
                if arg.annotation is not None:
                    blanker.strip_arg(arg)
            if node.returns is not None:
                blanker.strip_returns(node.returns)
        stripped = blanker.text()
        ast.parse(stripped)
        return stripped
    except (_CannotBlank, SyntaxError, UnicodeDecodeError) as exc:
        logger.debug("In-place annotation stripping failed (%s); regenerating source", exc)
    return ast.unparse(ast.fix_missing_locations(_AnnotationStripper().visit(ast.parse(source))))


class TypedPythonToolchain:
    """Type-check typed Python with mypy and lower it to plain Python.

    Example:
        ```python
        toolchain = load_toolchain("/tmp/mypy_cache")
        output = toolchain.transform("x: int = 'a'")
        ```
    """

    def __init__(self, mypy_run: MypyRun, *, cache_dir: str) -> None:
        self._mypy_run = mypy_run
        self._cache_dir = cache_dir
        # mypy.api keeps global state; one check at a time.
        self._lock = threading.Lock()

    def mypy_args(self, source: str) -> list[str]:
        return [
            "--no-error-summary",
            "--hide-error-context",
            "--hide-error-codes",
            "--no-color-output",
            "--no-pretty",
            "--check-untyped-defs",
            "--ignore-missing-imports",
            "--follow-imports",
            "silent",
            "--cache-dir",
            self._cache_dir,
            "-c",
            source,
        ]

    def check(self, source: str) -> list[Diagnostic]:
        """Run mypy over the source and return its error diagnostics.

        Example:
            ```python
            diags = toolchain.check("def f() -> int:\\n    return 'x'")
            ```
        """
        with self._lock:
            report, errors, status = self._mypy_run(self.mypy_args(source))
        diagnostics = parse_mypy_output(report)
        if status == 0:
            return []
        if status != 1 or not diagnostics:
            detail = (errors or report).strip() or f"mypy exited with status {status}"
            raise ToolchainError(f"Type checker failed: {detail}")
        return diagnostics

    def transform(self, source: str) -> TransformOutput:
        """Check and lower the source; synchronous and free of side effects on the guest.

        Example:
            ```python
            output = toolchain.transform("name: str = input()\\nprint(name)")
            ```
        """
        try:
            ast.parse(source)
        except SyntaxError as exc:
            return TransformOutput(None, (Diagnostic(exc.lineno or 1, f"SyntaxError: {exc.msg}"),))
        diagnostics = self.check(source)
        if diagnostics:
            return TransformOutput(None, tuple(diagnostics))
        return TransformOutput(strip_annotations(source))


def load_toolchain(cache_dir: str) -> TypedPythonToolchain:
    """Import mypy and wrap it in a toolchain. Blocking; run it off the event loop.

    Example:
        ```python
        toolchain = await asyncio.to_thread(load_toolchain, "/tmp/mypy_cache")
        ```
    """
    try:
        from mypy import api as mypy_api
    except ImportError as exc:
        raise RuntimeLoadError("type checker", f"mypy is not installed ({exc})") from exc
    return TypedPythonToolchain(mypy_api.run, cache_dir=cache_dir)
