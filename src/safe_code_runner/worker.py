"""Isolated-context program for Python guest code.

Runs as ``python -I worker.py`` in a throwaway process. Reads exactly one
JSON message ``{code, stdin, policy}`` from stdin and writes exactly one JSON
reply ``{stdout, stderr, error}`` as the last line of its stdout. Only the
standard library may be imported here.
"""

from __future__ import annotations

import ast
import contextlib
import io
import json
import linecache
import os
import sys
import traceback
import types
from typing import Any, Callable

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except Exception:  # pragma: no cover - platform specific
    _resource = None

GUEST_FILENAME = "<candidate>"
NO_OUTPUT_LINE = "(no output)"


class _StdinCursor(io.TextIOBase):
    """Line cursor over the request stdin shared by `input()` and `sys.stdin`."""

    def __init__(self, text: str) -> None:
        super().__init__()
        self._lines = text.split("\n")
        self._cursor = 0

    def next_line(self) -> str | None:
        if self._cursor >= len(self._lines):
            return None
        line = self._lines[self._cursor]
        self._cursor += 1
        return line

    def readable(self) -> bool:
        return True

    def readline(self, size: int | None = -1) -> str:  # type: ignore[override]
        line = self.next_line()
        if line is None:
            return ""
        if self._cursor < len(self._lines):
            return line + "\n"
        return line

    def read(self, size: int | None = -1) -> str:
        rest = "\n".join(self._lines[self._cursor:])
        self._cursor = len(self._lines)
        return rest


def _make_input(cursor: _StdinCursor) -> Callable[..., str]:
    def _input(prompt: Any = "") -> str:
        # Prompts are not echoed so expected outputs stay comparable.
        line = cursor.next_line()
        return "" if line is None else line

    return _input


def _isolate_network() -> str | None:
    """Move the process into fresh user and network namespaces (Linux only).

    The new network namespace has no interfaces besides a downed loopback.
    """
    unshare = getattr(os, "unshare", None)
    if unshare is None:
        return "network namespaces unavailable on this platform"
    try:
        unshare(os.CLONE_NEWUSER | os.CLONE_NEWNET)
    except OSError as exc:
        return f"network namespace not applied: {exc}"
    return None


def _set_limits(memory_limit_mb: int) -> list[str]:
    """Apply OS-level limits to the current process; returns what could not be applied."""
    errors: list[str] = []
    network_error = _isolate_network()
    if network_error is not None:
        errors.append(network_error)

    if _resource is None:
        errors.append("RLIMIT limits unavailable on this platform")
        return errors

    mem_bytes = int(memory_limit_mb) * 1024 * 1024

    try:
        _, current_hard = _resource.getrlimit(_resource.RLIMIT_AS)
        if current_hard in (-1, _resource.RLIM_INFINITY):
            target_hard = mem_bytes
        else:
            target_hard = min(mem_bytes, current_hard)
        target_soft = min(mem_bytes, target_hard)
        _resource.setrlimit(_resource.RLIMIT_AS, (target_soft, target_hard))
    except (ValueError, OSError) as exc:
        errors.append(f"RLIMIT_AS not applied: {exc}")

    # No child processes, no file writes, no core dumps. Pipes are not
    # subject to RLIMIT_FSIZE, so the reply channel keeps working.
    for name in ("RLIMIT_NPROC", "RLIMIT_FSIZE", "RLIMIT_CORE"):
        limit = getattr(_resource, name, None)
        if limit is None:
            continue
        try:
            _resource.setrlimit(limit, (0, 0))
        except (ValueError, OSError) as exc:
            errors.append(f"{name} not applied: {exc}")

    return errors


def _guest_sys(stdin: Any, stdout: Any, stderr: Any) -> types.ModuleType:
    """Build the ``sys`` module guest code sees: streams and a few constants only."""
    module = types.ModuleType("sys")
    module.__dict__.update(
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        argv=[GUEST_FILENAME],
        exit=sys.exit,
        maxsize=sys.maxsize,
        version_info=sys.version_info,
        setrecursionlimit=sys.setrecursionlimit,
        getrecursionlimit=sys.getrecursionlimit,
    )
    return module


def _guest_builtins(safe_builtins: dict[str, Any]) -> types.ModuleType:
    module = types.ModuleType("builtins")
    module.__dict__.update(safe_builtins)
    return module


def _public_view(
    module: types.ModuleType,
    views: dict[str, types.ModuleType],
    done: set[str] | None = None,
) -> types.ModuleType:
    """Return the stand-in exposing only the public, non-module names of ``module``.

    Real submodules (``collections.abc``) are kept as views of their own;
    modules a library merely imported (``typing.sys``) are left out. Views
    are reused across imports and refreshed each time.
    """
    done = set() if done is None else done
    name = module.__name__
    view = views.get(name)
    if view is None:
        view = views[name] = types.ModuleType(name, getattr(module, "__doc__", None))
    if name in done:
        return view
    done.add(name)
    for attr, value in list(vars(module).items()):
        if attr.startswith("_"):
            continue
        if isinstance(value, types.ModuleType):
            if getattr(value, "__name__", "") == f"{name}.{attr}":
                setattr(view, attr, _public_view(value, views, done))
            continue
        setattr(view, attr, value)
    if "__all__" in vars(module):
        view.__all__ = list(module.__all__)
    return view


def _safe_import_factory_mode(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
    replacements: dict[str, types.ModuleType],
) -> Callable[..., Any]:
    views: dict[str, types.ModuleType] = {}

    def _safe_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        if name == "importlib" or name.startswith("importlib."):
            raise ImportError("Import 'importlib' is blocked by policy")

        root = name.split(".")[0]
        if mode == "allow":
            if root not in allowed_imports:
                raise ImportError(f"Import '{name}' is not allowed by policy")
        elif root in blocked_imports:
            raise ImportError(f"Import '{name}' is blocked by policy")
        if name in replacements:
            return replacements[name]
        module = __import__(name, None, None, fromlist, 0)
        return _public_view(module, views)

    return _safe_import


def _blocked_name(text: str, blocked_attributes: set[str]) -> str | None:
    for name in blocked_attributes:
        if name in text if name.startswith("__") else text == name:
            return name
    return None


def _check_attributes(tree: ast.AST, blocked_attributes: set[str]) -> None:
    """Refuse guest code that names a blocked attribute, directly or in a string."""
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            hit = node.attr if node.attr in blocked_attributes else None
        elif isinstance(node, ast.Constant) and isinstance(node.value, str):
            hit = _blocked_name(node.value, blocked_attributes)
        else:
            continue
        if hit is not None:
            raise PermissionError(f"Attribute '{hit}' is blocked by policy (line {node.lineno})")


def _make_getattr(blocked_attributes: set[str]) -> Callable[..., Any]:
    def _getattr(obj: Any, name: str, *default: Any) -> Any:
        if isinstance(name, str) and _blocked_name(name, blocked_attributes) is not None:
            raise PermissionError(f"Attribute '{name}' is blocked by policy")
        return getattr(obj, name, *default)

    return _getattr


def _build_safe_builtins(
    mode: str,
    allowed_builtins: set[str],
    blocked_builtins: set[str],
    safe_import: Any,
) -> dict[str, Any]:
    raw_builtins = __builtins__
    if isinstance(raw_builtins, dict):
        builtins_obj: dict[str, Any] = raw_builtins
    else:
        builtins_obj = vars(raw_builtins)

    safe = {}
    for name, value in builtins_obj.items():
        if mode == "allow":
            if name not in allowed_builtins:
                continue
        elif name in blocked_builtins:
            continue
        safe[name] = value

    safe["__import__"] = safe_import
    return safe


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _format_guest_traceback(exc: BaseException) -> str:
    """Format a traceback keeping only frames that belong to the guest code."""
    te = traceback.TracebackException.from_exception(exc)
    te.stack = traceback.StackSummary.from_list(
        [frame for frame in te.stack if frame.filename == GUEST_FILENAME]
    )
    return "".join(te.format(chain=False))


def _normalize_system_exit(exit_code: Any) -> str | None:
    if exit_code in (None, 0):
        return None
    return f"SystemExit: {exit_code}"


def run_request(req: dict[str, Any]) -> dict[str, Any]:
    """Execute one request and build the reply message."""
    code = str(req.get("code", ""))
    stdin_text = str(req.get("stdin", "") or "")
    policy = req.get("policy", {}) or {}

    memory_limit_mb = int(policy.get("memory_limit_mb", 256))
    max_output_bytes = int(policy.get("max_output_kb", 128)) * 1024
    mode = str(policy.get("mode", "restrict"))
    if mode not in {"allow", "restrict"}:
        raise ValueError("mode must be 'allow' or 'restrict'")
    blocked_attributes = set(policy.get("blocked_attributes", []))

    _set_limits(memory_limit_mb=memory_limit_mb)

    cursor = _StdinCursor(stdin_text)
    stdout_buffer = io.StringIO()
    stderr_buffer = io.StringIO()
    error: str | None = None

    replacements: dict[str, types.ModuleType] = {}
    safe_import = _safe_import_factory_mode(
        mode,
        set(policy.get("allowed_imports", [])),
        set(policy.get("blocked_imports", [])),
        replacements,
    )
    safe_builtins = _build_safe_builtins(
        mode,
        set(policy.get("allowed_builtins", [])),
        set(policy.get("blocked_builtins", [])),
        safe_import,
    )
    safe_builtins["input"] = _make_input(cursor)
    if "getattr" in safe_builtins:
        safe_builtins["getattr"] = _make_getattr(blocked_attributes)
    replacements["sys"] = _guest_sys(cursor, stdout_buffer, stderr_buffer)
    replacements["builtins"] = _guest_builtins(safe_builtins)

    # Lets tracebacks show the offending guest line.
    linecache.cache[GUEST_FILENAME] = (len(code), None, code.splitlines(True), GUEST_FILENAME)

    try:
        tree = ast.parse(code, GUEST_FILENAME)
        _check_attributes(tree, blocked_attributes)
        byte_code = compile(tree, GUEST_FILENAME, "exec")
    except (SyntaxError, PermissionError) as exc:
        stderr_buffer.write("".join(traceback.format_exception_only(type(exc), exc)))
        error = _describe(exc)
    else:
        exec_globals: dict[str, Any] = {"__builtins__": safe_builtins, "__name__": "__main__"}
        saved_streams = (sys.stdin, sys.__stdout__, sys.__stderr__)
        try:
            sys.stdin = cursor
            sys.__stdout__ = stdout_buffer
            sys.__stderr__ = stderr_buffer
            with (
                contextlib.redirect_stdout(stdout_buffer),
                contextlib.redirect_stderr(stderr_buffer),
            ):
                exec(byte_code, exec_globals, exec_globals)
        except SystemExit as exc:
            error = _normalize_system_exit(exc.code)
            if isinstance(exc.code, str):
                stderr_buffer.write(f"{exc.code}\n")
        except MemoryError:
            stderr_buffer.write(f"MemoryError: memory limit of {memory_limit_mb}MB exceeded\n")
            error = "MemoryError: memory limit exceeded"
        except Exception as exc:
            stderr_buffer.write(_format_guest_traceback(exc))
            error = _describe(exc)
        finally:
            sys.stdin, sys.__stdout__, sys.__stderr__ = saved_streams

    stdout_text = stdout_buffer.getvalue()[:max_output_bytes].removesuffix("\n")
    stderr_text = stderr_buffer.getvalue()[:max_output_bytes].rstrip("\n")
    if not stdout_text and not stderr_text and error is None:
        stdout_text = NO_OUTPUT_LINE
    return {"stdout": stdout_text, "stderr": stderr_text, "error": error}


def _reply(stream: Any, message: dict[str, Any]) -> None:
    # Leading newline keeps the reply on its own line even if the guest
    # managed to write to the real stdout without a trailing newline.
    stream.write("\n" + json.dumps(message, default=str) + "\n")
    stream.flush()


def main() -> int:
    reply_stream = sys.stdout
    try:
        req = json.loads(sys.stdin.read() or "{}")
        if not isinstance(req, dict):
            raise ValueError("request must be a JSON object")
    except ValueError as exc:
        _reply(reply_stream, {"stdout": "", "stderr": "", "error": f"Invalid request: {exc}"})
        return 1

    try:
        response = run_request(req)
    except Exception as exc:
        # Failures of the worker itself, e.g. an invalid policy.
        _reply(reply_stream, {"stdout": "", "stderr": str(exc), "error": _describe(exc)})
        return 1
    _reply(reply_stream, response)
    return 0 if response["error"] is None else 1


if __name__ == "__main__":
    raise SystemExit(main())
