from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path

from ..policy import RunnerPolicy
from .config import RunnerSettings
from .types import (
    ERROR_EXECUTION,
    ExecutionRequest,
    ExecutionResult,
    timeout_result,
)

logger = logging.getLogger(__name__)


def _worker_path() -> Path:
    """Return the absolute path to the worker module file.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def _isolated_env(workdir: str) -> dict[str, str]:
    """Return the scrubbed environment handed to an isolated context.

    Example:
        ```python
        env = _isolated_env("/tmp/scr-abc")
        ```
    """
    env = {"PATH": os.defpath, "HOME": workdir, "TMPDIR": workdir}
    # Windows cannot start the interpreter without SYSTEMROOT.
    if "SYSTEMROOT" in os.environ:
        env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
    return env


async def _destroy(process: asyncio.subprocess.Process | None) -> None:
    """Kill an isolated context if it is still running and reap it.

    Example:
        ```python
        await _destroy(process)
        ```
    """
    if process is None:
        return
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        logger.debug("Killed isolated context pid=%s", process.pid)
    await process.wait()


def _parse_reply(
    raw_stdout: bytes,
    raw_stderr: bytes,
    returncode: int | None,
    duration_ms: float,
) -> ExecutionResult:
    """Turn the worker's single reply message into an ExecutionResult.

    Example:
        ```python
        result = _parse_reply(b'{"stdout": "hi", "stderr": "", "error": null}', b"", 0, 12.0)
        ```
    """
    text = raw_stdout.decode("utf-8", errors="replace")
    lines = [line for line in text.splitlines() if line.strip()]
    try:
        reply = json.loads(lines[-1]) if lines else None
    except json.JSONDecodeError:
        reply = None
    if not isinstance(reply, dict):
        detail = raw_stderr.decode("utf-8", errors="replace").strip()
        logger.warning("Isolated context exited with code %s without a reply", returncode)
        return ExecutionResult(
            stdout="",
            stderr=detail or f"Isolated context exited with code {returncode} without a reply",
            exit_code=1,
            duration_ms=duration_ms,
            error=ERROR_EXECUTION,
        )

    error = reply.get("error")
    return ExecutionResult(
        stdout=str(reply.get("stdout", "")),
        stderr=str(reply.get("stderr", "")),
        exit_code=0 if error is None else 1,
        duration_ms=duration_ms,
        error=None if error is None else str(error),
    )


class LocalEngine:
    """Execute Python guest code in a fresh, isolated interpreter process.

    Every run gets its own process and working directory, both destroyed
    when the run ends, times out or is cancelled.

    Example:
        ```python
        engine = LocalEngine(policy=RunnerPolicy(memory_limit_mb=128))
        result = await engine.execute(ExecutionRequest("print(1)", GuestLanguage.PYTHON))
        ```
    """

    def __init__(
        self,
        *,
        policy: RunnerPolicy | None = None,
        settings: RunnerSettings | None = None,
    ) -> None:
        self._policy = policy or RunnerPolicy()
        self._settings = settings or RunnerSettings.from_env()

    @property
    def policy(self) -> RunnerPolicy:
        return self._policy

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request through a single message exchange with a new context.

        Example:
            ```python
            result = await engine.execute(ExecutionRequest("print(input())", GuestLanguage.PYTHON, stdin="hi"))
            ```
        """
        budget_ms = request.timeout_ms
        message = json.dumps(
            {
                "code": request.source_code,
                "stdin": request.stdin,
                "policy": self._policy.to_payload(),
            }
        ).encode("utf-8")

        start = time.perf_counter()
        process: asyncio.subprocess.Process | None = None
        with tempfile.TemporaryDirectory(prefix="scr-") as workdir:
            try:
                async with asyncio.timeout(budget_ms / 1000):
                    process = await asyncio.create_subprocess_exec(
                        self._settings.python_executable,
                        "-I",
                        "-X",
                        "utf8",
                        str(_worker_path()),
                        stdin=asyncio.subprocess.PIPE,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        cwd=workdir,
                        env=_isolated_env(workdir),
                    )
                    logger.debug("Started isolated context pid=%s", process.pid)
                    raw_stdout, raw_stderr = await process.communicate(message)
            except TimeoutError:
                logger.info("Isolated context exceeded %dms; destroying it", budget_ms)
                return timeout_result(budget_ms)
            finally:
                await _destroy(process)

        duration_ms = (time.perf_counter() - start) * 1000
        return _parse_reply(raw_stdout, raw_stderr, process.returncode, duration_ms)
