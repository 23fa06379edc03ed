"""JavaScript execution on an embedded V8 runtime.

V8 is loaded in-process through mini-racer the first time a JavaScript run
is requested and then reused for every later run. The runtime carries a
small harness (``__scr_run``) that swaps in fresh console buffers and a
stdin line cursor before each run, executes the guest code as a function
body and records any uncaught error. Reading the buffers back
(``__scr_collect``) also puts the global object and the common built-ins
back to their state right after the harness was installed, so nothing a
run defines or overwrites is seen by the next one. Runs are serialized on
the runtime.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import time
import weakref
from typing import Any, Awaitable, Callable

from ..errors import RuntimeLoadError
from .config import NO_OUTPUT_LINE, RUNTIME_LOADING_MESSAGE, RunnerSettings
from .resources import RESOURCES, ResourceCache
from .types import (
    ERROR_EXECUTION,
    ERROR_RUNTIME_LOAD,
    ExecutionRequest,
    ExecutionResult,
    timeout_result,
)

logger = logging.getLogger(__name__)

RUNTIME_RESOURCE = "v8"

ProgressCallback = Callable[[str], None]

HARNESS_PRELUDE = r"""
(function () {
  // Private references; guest code may overwrite the public ones.
  var Str = String;
  var FunctionCtor = Function;
  var ErrorCtor = Error;
  var stringify = JSON.stringify;
  var createObject = Object.create;
  var defineProperty = Object.defineProperty;
  var ownKeys = Reflect.ownKeys;
  var getDescriptor = Object.getOwnPropertyDescriptor;

  function fmt(value) {
    if (typeof value === "string") return value;
    if (value instanceof ErrorCtor) return Str(value);
    if (value === null || typeof value !== "object") return Str(value);
    try {
      var text = stringify(value);
      return text === undefined ? Str(value) : text;
    } catch (e) {
      return Str(value);
    }
  }

  function join(args) {
    var text = "";
    for (var i = 0; i < args.length; i++) {
      text += (i ? " " : "") + fmt(args[i]);
    }
    return text;
  }

  function push(list, value) {
    list[list.length] = value;
  }

  function snapshot(target) {
    var names = ownKeys(target);
    var descriptors = createObject(null);
    for (var i = 0; i < names.length; i++) {
      descriptors[names[i]] = getDescriptor(target, names[i]);
    }
    return { target: target, names: names, descriptors: descriptors };
  }

  function restore(snap) {
    var target = snap.target;
    var present = ownKeys(target);
    for (var i = 0; i < present.length; i++) {
      if (!(present[i] in snap.descriptors)) delete target[present[i]];
    }
    for (var j = 0; j < snap.names.length; j++) {
      var name = snap.names[j];
      var saved = snap.descriptors[name];
      var now = getDescriptor(target, name);
      if (!now || now.value !== saved.value || now.get !== saved.get || now.set !== saved.set) {
        try { defineProperty(target, name, saved); } catch (e) {}
      }
    }
  }

  var current = null;
  var snapshots = [];

  function reset() {
    for (var i = 0; i < snapshots.length; i++) restore(snapshots[i]);
  }

  function __scr_run(source, stdinText) {
    reset();
    var captured = { stdout: [], stderr: [], error: null };
    current = captured;

    var lines = Str(stdinText).split("\n");
    var cursor = 0;
    var next = function () {
      return cursor < lines.length ? lines[cursor++] : null;
    };
    globalThis.readline = next;
    globalThis.prompt = next;

    globalThis.console = {
      log: function () { push(captured.stdout, join(arguments)); },
      info: function () { push(captured.stdout, join(arguments)); },
      debug: function () { push(captured.stdout, join(arguments)); },
      error: function () { push(captured.stderr, join(arguments)); },
      warn: function () { push(captured.stderr, "[warn] " + join(arguments)); }
    };

    try {
      var result = (new FunctionCtor(source))();
      if (result !== undefined) push(captured.stdout, fmt(result));
    } catch (e) {
      captured.error = {
        message: Str(e),
        stack: e && e.stack ? Str(e.stack) : Str(e)
      };
    }
    return captured.error === null;
  }

  // Serializes the last run's buffers, then puts the shared globals back.
  function __scr_collect() {
    reset();
    var out = current === null ? null : stringify(current);
    current = null;
    return out;
  }

  var fixed = { writable: false, configurable: false, enumerable: false };
  fixed.value = __scr_run;
  defineProperty(globalThis, "__scr_run", fixed);
  fixed.value = __scr_collect;
  defineProperty(globalThis, "__scr_collect", fixed);

  var shared = [
    globalThis, Object, Object.prototype, Function.prototype, Array, Array.prototype,
    String, String.prototype, Number, Number.prototype, Boolean.prototype, Symbol,
    Math, JSON, Reflect, Promise, Promise.prototype, Error, Error.prototype,
    Map.prototype, Set.prototype, RegExp.prototype, Date.prototype
  ];
  for (var i = 0; i < shared.length; i++) snapshots[i] = snapshot(shared[i]);
})();
"""

# new Function() puts the body two lines below the generated header.
_FUNCTION_BODY_OFFSET = 2
_GUEST_FRAME = re.compile(
    r"^\s*at (?P<fn>.+?) \(eval at (?:\S+\.)?__scr_run \(.*\), <anonymous>:(?P<line>\d+):(?P<col>\d+)\)$"
)
_ANY_FRAME = re.compile(r"^\s*at ")


def clean_js_trace(stack: str) -> str:
    """Drop harness and engine frames from a V8 stack, renumbering guest frames.

    Example:
        ```python
        clean_js_trace("Error: boom\\n    at eval (eval at __scr_run (<anonymous>:40:20), <anonymous>:3:7)")
        # -> "Error: boom\\n    at main (line 1)"
        ```
    """
    kept: list[str] = []
    for line in stack.splitlines():
        match = _GUEST_FRAME.match(line)
        if match is not None:
            fn = match.group("fn")
            if fn in {"eval", "anonymous"}:
                fn = "main"
            guest_line = max(1, int(match.group("line")) - _FUNCTION_BODY_OFFSET)
            kept.append(f"    at {fn} (line {guest_line})")
        elif not _ANY_FRAME.match(line):
            kept.append(line)
    return "\n".join(kept).strip("\n")


def _fault_result(
    stdout: str,
    stderr: str,
    message: str,
    stack: str,
    duration_ms: float,
) -> ExecutionResult:
    trace = clean_js_trace(stack) or message
    lines = message.strip().splitlines()
    return ExecutionResult(
        stdout=stdout,
        stderr=f"{stderr}\n{trace}" if stderr else trace,
        exit_code=1,
        duration_ms=duration_ms,
        error=lines[0] if lines else "Error",
    )


class V8Runtime:
    """The loaded V8 context plus the locks that serialize runs on it.

    Each event loop queues its callers on its own ``asyncio.Lock``; the
    thread guard serializes runs coming from different loops.

    Example:
        ```python
        runtime = _create_runtime()
        result = await runtime.run("console.log(1)", "", timeout_ms=1000, grace_ms=2000)
        ```
    """

    def __init__(self, context: Any) -> None:
        self._context = context
        self._queues: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = (
            weakref.WeakKeyDictionary()
        )
        self._queues_lock = threading.Lock()
        # Held by the worker thread for the whole run/read-back cycle.
        self._guard = threading.Lock()
        self.runs = 0

    def _queue(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        with self._queues_lock:
            queue = self._queues.get(loop)
            if queue is None:
                queue = self._queues[loop] = asyncio.Lock()
            return queue

    async def run(self, source: str, stdin: str, timeout_ms: int, grace_ms: int) -> ExecutionResult:
        """Run guest code once; raises TimeoutError if V8's own watchdog never fires.

        Example:
            ```python
            result = await runtime.run("return 1 + 1", "", 1000, 2000)
            ```
        """
        async with self._queue():
            return await asyncio.wait_for(
                asyncio.to_thread(self._run_blocking, source, stdin, timeout_ms),
                (timeout_ms + grace_ms) / 1000,
            )

    def _run_blocking(self, source: str, stdin: str, timeout_ms: int) -> ExecutionResult:
        from py_mini_racer import JSEvalException, JSTimeoutException

        start = time.perf_counter()
        timed_out = False
        fault: str | None = None
        with self._guard:
            try:
                self._context.eval(
                    f"__scr_run({json.dumps(source)}, {json.dumps(stdin)})",
                    timeout=timeout_ms,
                )
            except JSTimeoutException:
                timed_out = True
            except JSEvalException as exc:
                fault = str(exc)
            captured = self._read_back()
            self.runs += 1
        duration_ms = (time.perf_counter() - start) * 1000

        buffers = captured or {"stdout": [], "stderr": [], "error": None}
        stdout = "\n".join(str(line) for line in buffers["stdout"])
        stderr = "\n".join(str(line) for line in buffers["stderr"])
        if timed_out:
            logger.info("JavaScript run exceeded %dms; terminated by the V8 watchdog", timeout_ms)
            return timeout_result(timeout_ms, stdout=stdout, stderr=stderr)

        error = buffers["error"]
        if isinstance(error, dict):
            message = str(error.get("message", ""))
            return _fault_result(stdout, stderr, message, str(error.get("stack") or message), duration_ms)
        if fault is not None:
            return _fault_result(stdout, stderr, fault, fault, duration_ms)
        if captured is None:
            return ExecutionResult(
                stdout="",
                stderr="JavaScript output buffers could not be read back",
                exit_code=1,
                duration_ms=duration_ms,
                error=ERROR_EXECUTION,
            )

        if not stdout and not stderr:
            stdout = NO_OUTPUT_LINE
        return ExecutionResult(stdout=stdout, stderr=stderr, exit_code=0, duration_ms=duration_ms)

    def _read_back(self) -> dict[str, Any] | None:
        captured: Any = None
        try:
            raw = self._context.eval("__scr_collect()")
            captured = json.loads(raw) if isinstance(raw, str) else None
        except Exception:
            logger.warning("Could not read back JavaScript output buffers", exc_info=True)
        if not isinstance(captured, dict):
            return None
        return {
            "stdout": captured.get("stdout") or [],
            "stderr": captured.get("stderr") or [],
            "error": captured.get("error"),
        }


def _create_runtime() -> V8Runtime:
    """Start V8 and install the run harness. Blocking; run it off the event loop."""
    try:
        from py_mini_racer import MiniRacer
    except ImportError as exc:
        raise RuntimeLoadError("JavaScript", f"mini-racer is not installed ({exc})") from exc
    try:
        context = MiniRacer()
        context.eval(HARNESS_PRELUDE)
    except Exception as exc:
        raise RuntimeLoadError("JavaScript", str(exc)) from exc
    return V8Runtime(context)


async def load_runtime() -> V8Runtime:
    return await asyncio.to_thread(_create_runtime)


class V8Engine:
    """Execute JavaScript guest code on the shared embedded V8 runtime.

    Example:
        ```python
        engine = V8Engine()
        engine.on_runtime_load(print)
        result = await engine.execute(ExecutionRequest("console.log(readline())", GuestLanguage.JAVASCRIPT, stdin="hi"))
        ```
    """

    def __init__(
        self,
        *,
        settings: RunnerSettings | None = None,
        resources: ResourceCache | None = None,
        loader: Callable[[], Awaitable[V8Runtime]] | None = None,
    ) -> None:
        self._settings = settings or RunnerSettings.from_env()
        self._resources = resources or RESOURCES
        self._loader = loader or load_runtime
        self._progress: ProgressCallback | None = None

    def on_runtime_load(self, callback: ProgressCallback | None) -> None:
        """Register the callback told when the runtime starts loading; None clears it.

        Example:
            ```python
            engine.on_runtime_load(lambda message: console.print(message))
            ```
        """
        self._progress = callback

    def is_runtime_loading(self) -> bool:
        return self._resources.has_started(RUNTIME_RESOURCE)

    def _notify_loading(self) -> None:
        if self._progress is None or self._resources.has_started(RUNTIME_RESOURCE):
            return
        try:
            self._progress(RUNTIME_LOADING_MESSAGE)
        except Exception:
            logger.warning("Runtime load progress callback failed", exc_info=True)

    async def ensure_loaded(self) -> V8Runtime:
        self._notify_loading()
        return await self._resources.get(RUNTIME_RESOURCE, self._loader)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request on the shared runtime, waiting for earlier runs to finish.

        Example:
            ```python
            result = await engine.execute(ExecutionRequest("return 6 * 7", GuestLanguage.JAVASCRIPT))
            ```
        """
        try:
            runtime = await self.ensure_loaded()
        except Exception as exc:
            logger.warning("JavaScript runtime unavailable: %s", exc)
            return ExecutionResult(
                stdout="",
                stderr=str(exc),
                exit_code=1,
                duration_ms=0.0,
                error=ERROR_RUNTIME_LOAD,
            )

        try:
            return await runtime.run(
                request.source_code,
                request.stdin,
                request.timeout_ms,
                self._settings.timeout_grace_ms,
            )
        except TimeoutError:
            logger.warning(
                "V8 watchdog missed the %dms budget; discarding the runtime",
                request.timeout_ms,
            )
            self._resources.reset(RUNTIME_RESOURCE)
            return timeout_result(request.timeout_ms)
