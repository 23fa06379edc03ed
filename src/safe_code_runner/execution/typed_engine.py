from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable

from .config import RunnerSettings
from .local_engine import LocalEngine
from .resources import RESOURCES, ResourceCache
from .typecheck import TypedPythonToolchain, load_toolchain
from .types import (
    ERROR_COMPILATION,
    ERROR_RUNTIME_LOAD,
    ExecutionRequest,
    ExecutionResult,
    timeout_result,
)

logger = logging.getLogger(__name__)

TOOLCHAIN_RESOURCE = "mypy"

ToolchainLoader = Callable[[], Awaitable[TypedPythonToolchain]]


class TypedPythonEngine:
    """Type-check typed Python, strip its annotations and run it locally.

    The toolchain is loaded once per process through the shared resource
    cache. Diagnostics stop the run before any isolated context is created.

    Example:
        ```python
        engine = TypedPythonEngine(LocalEngine())
        result = await engine.execute(ExecutionRequest("x: int = 1\\nprint(x)", GuestLanguage.TYPED_PYTHON))
        ```
    """

    def __init__(
        self,
        local_engine: LocalEngine,
        *,
        settings: RunnerSettings | None = None,
        resources: ResourceCache | None = None,
        loader: ToolchainLoader | None = None,
    ) -> None:
        self._local = local_engine
        self._settings = settings or RunnerSettings.from_env()
        self._resources = resources or RESOURCES
        self._loader = loader or self._load_toolchain

    async def _load_toolchain(self) -> TypedPythonToolchain:
        return await asyncio.to_thread(load_toolchain, self._settings.mypy_cache_dir)

    async def ensure_loaded(self) -> TypedPythonToolchain:
        return await self._resources.get(TOOLCHAIN_RESOURCE, self._loader)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Transform the request's source and hand the result to the local engine.

        Loading the toolchain, type checking and the run itself all share the
        request's budget.

        Example:
            ```python
            result = await engine.execute(ExecutionRequest("y: str = 1", GuestLanguage.TYPED_PYTHON))
            ```
        """
        try:
            async with asyncio.timeout(request.timeout_ms / 1000):
                return await self._transform_and_run(request)
        except TimeoutError:
            logger.info("typed-python run exceeded %dms", request.timeout_ms)
            return timeout_result(request.timeout_ms)

    async def _transform_and_run(self, request: ExecutionRequest) -> ExecutionResult:
        try:
            toolchain = await self.ensure_loaded()
        except Exception as exc:
            logger.warning("Type checker unavailable: %s", exc)
            return ExecutionResult(
                stdout="",
                stderr=str(exc),
                exit_code=1,
                duration_ms=0.0,
                error=ERROR_RUNTIME_LOAD,
            )

        output = await asyncio.to_thread(toolchain.transform, request.source_code)
        if output.diagnostics:
            logger.debug("Transform produced %d diagnostic(s)", len(output.diagnostics))
            return ExecutionResult(
                stdout="",
                stderr="\n".join(diag.format() for diag in output.diagnostics),
                exit_code=1,
                duration_ms=0.0,
                error=ERROR_COMPILATION,
            )

        assert output.code is not None
        return await self._local.execute(dataclasses.replace(request, source_code=output.code))
