from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Iterable, Mapping

from .execution.capabilities import BackendKind, backend_for, supported_languages
from .execution.config import DEFAULT_TIMEOUT_MS, RunnerSettings
from .execution.engine import ExecutionEngine
from .execution.local_engine import LocalEngine
from .execution.resources import RESOURCES, ResourceCache
from .execution.typed_engine import TypedPythonEngine
from .execution.types import (
    ERROR_EXECUTION,
    ExecutionRequest,
    ExecutionResult,
    GuestLanguage,
    TestCase,
    TestCaseResult,
)
from .execution.v8_engine import ProgressCallback, V8Engine
from .policy import RunnerPolicy

logger = logging.getLogger(__name__)


def _resolve_policy(policy: RunnerPolicy | None, policy_file: str | None) -> RunnerPolicy:
    """Resolve the effective sandbox policy.

    Example:
        ```python
        policy = _resolve_policy(None, "/tmp/policy.toml")
        ```
    """
    if policy is not None and policy_file is not None:
        raise ValueError("Provide either 'policy' or 'policy_file', not both")
    if policy_file is not None:
        return RunnerPolicy.from_file(policy_file)
    return policy or RunnerPolicy()


def _language_label(language: str | GuestLanguage) -> str:
    return language.value if isinstance(language, GuestLanguage) else str(language)


def _unsupported_result(language: str | GuestLanguage) -> ExecutionResult:
    supported = ", ".join(lang.value for lang in supported_languages())
    return ExecutionResult(
        stdout="",
        stderr=(
            f"Execution is not available for {_language_label(language)}.\n"
            f"Supported languages: {supported}.\n"
            "You can still submit your code for evaluation."
        ),
        exit_code=1,
        duration_ms=0.0,
    )


def _as_test_case(case: TestCase | Mapping[str, Any]) -> TestCase:
    if isinstance(case, TestCase):
        return case
    if not isinstance(case, Mapping):
        raise ValueError(f"Test case must be a mapping, got {type(case).__name__}")
    return TestCase.from_mapping(case)


def _failure_result(exc: BaseException) -> ExecutionResult:
    return ExecutionResult(
        stdout="",
        stderr=str(exc) or type(exc).__name__,
        exit_code=1,
        duration_ms=0.0,
        error=ERROR_EXECUTION,
    )


def _failed_case(raw_case: Any, exc: BaseException, duration_ms: float) -> TestCaseResult:
    """Record a case that could not be run, keeping whatever fields it has."""
    if isinstance(raw_case, TestCase):
        case_input, expected = raw_case.input, raw_case.expected_output
    elif isinstance(raw_case, Mapping):
        case_input = raw_case.get("input", "")
        expected = raw_case.get("expectedOutput", raw_case.get("expected_output", ""))
    else:
        case_input, expected = "", ""
    return TestCaseResult(
        input="" if case_input is None else str(case_input),
        expected_output="" if expected is None else str(expected).strip(),
        actual_output=f"[Error] {exc}",
        passed=False,
        duration_ms=duration_ms,
    )


def _display_output(result: ExecutionResult) -> str:
    actual = result.stdout.strip()
    if result.stderr:
        actual += f"\n[Error] {result.stderr}"
    return actual


class Dispatcher:
    """Route guest code to the backend registered for its language.

    `execute` never raises for engine failures; every outcome is an
    `ExecutionResult`.

    Example:
        ```python
        dispatcher = Dispatcher()
        result = await dispatcher.execute("print('hello')", "python")
        ```
    """

    def __init__(
        self,
        *,
        policy: RunnerPolicy | None = None,
        policy_file: str | None = None,
        settings: RunnerSettings | None = None,
        resources: ResourceCache | None = None,
        engines: Mapping[BackendKind, ExecutionEngine] | None = None,
    ) -> None:
        self._settings = settings or RunnerSettings.from_env()
        cache = resources or RESOURCES
        if engines is None:
            local = LocalEngine(policy=_resolve_policy(policy, policy_file), settings=self._settings)
            self._v8 = V8Engine(settings=self._settings, resources=cache)
            engines = {
                BackendKind.DIRECT: local,
                BackendKind.TRANSFORM: TypedPythonEngine(local, settings=self._settings, resources=cache),
                BackendKind.EMBEDDED: self._v8,
            }
        else:
            embedded = engines.get(BackendKind.EMBEDDED)
            self._v8 = embedded if isinstance(embedded, V8Engine) else V8Engine(settings=self._settings, resources=cache)
        self._engines: dict[BackendKind, ExecutionEngine] = dict(engines)

    @property
    def settings(self) -> RunnerSettings:
        return self._settings

    def is_supported(self, language: str | GuestLanguage) -> bool:
        """Return True when the language has an execution backend.

        Example:
            ```python
            assert dispatcher.is_supported("JavaScript")
            ```
        """
        kind = backend_for(language)
        return kind is not None and kind in self._engines

    def on_runtime_load(self, callback: ProgressCallback | None) -> None:
        self._v8.on_runtime_load(callback)

    def is_runtime_loading(self) -> bool:
        return self._v8.is_runtime_loading()

    async def execute(
        self,
        source_code: str,
        language: str | GuestLanguage,
        stdin: str = "",
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> ExecutionResult:
        """Run source code once and return the captured result.

        Example:
            ```python
            result = await dispatcher.execute("print(input())", "python", stdin="hi", timeout_ms=2000)
            ```
        """
        parsed = GuestLanguage.parse(language)
        kind = backend_for(language)
        engine = self._engines.get(kind) if kind is not None else None
        if parsed is None or engine is None:
            logger.debug("Refusing unsupported language %r", language)
            return _unsupported_result(language)

        start = time.perf_counter()
        try:
            request = ExecutionRequest(
                source_code=source_code,
                language=parsed,
                stdin=stdin or "",
                timeout_ms=self._settings.resolve_timeout(timeout_ms),
            )
            result = await engine.execute(request)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s engine failed", kind.value)
            result = _failure_result(exc)
        if result.timed_out:
            return result
        return dataclasses.replace(result, duration_ms=(time.perf_counter() - start) * 1000)

    async def run_test_cases(
        self,
        source_code: str,
        language: str | GuestLanguage,
        test_cases: Iterable[TestCase | Mapping[str, Any]],
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> list[TestCaseResult]:
        """Run the code once per test case, in order, comparing trimmed stdout.

        Example:
            ```python
            results = await dispatcher.run_test_cases(code, "python", [TestCase("1 2", "3")])
            ```
        """
        results: list[TestCaseResult] = []
        for raw_case in test_cases:
            start = time.perf_counter()
            try:
                case = _as_test_case(raw_case)
                run = await self.execute(source_code, language, case.input, timeout_ms)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Test case run failed")
                results.append(_failed_case(raw_case, exc, (time.perf_counter() - start) * 1000))
                continue
            results.append(
                TestCaseResult(
                    input=case.input,
                    expected_output=case.expected_output.strip(),
                    actual_output=_display_output(run),
                    passed=run.exit_code == 0 and run.stdout.strip() == case.expected_output.strip(),
                    duration_ms=run.duration_ms,
                )
            )
        return results


_DEFAULT_DISPATCHER: Dispatcher | None = None


def default_dispatcher() -> Dispatcher:
    global _DEFAULT_DISPATCHER
    if _DEFAULT_DISPATCHER is None:
        _DEFAULT_DISPATCHER = Dispatcher()
    return _DEFAULT_DISPATCHER


def is_supported(language: str | GuestLanguage) -> bool:
    """Return True when code in this language can be executed.

    Example:
        ```python
        from safe_code_runner import is_supported
        assert not is_supported("rust")
        ```
    """
    return backend_for(language) is not None


async def execute(
    source_code: str,
    language: str | GuestLanguage,
    stdin: str = "",
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> ExecutionResult:
    """Execute code with the default dispatcher.

    Example:
        ```python
        from safe_code_runner import execute
        result = asyncio.run(execute("print('hello')", "python"))
        ```
    """
    try:
        dispatcher = default_dispatcher()
    except Exception as exc:
        logger.exception("Default dispatcher could not be created")
        return _failure_result(exc)
    return await dispatcher.execute(source_code, language, stdin, timeout_ms)


async def run_test_cases(
    source_code: str,
    language: str | GuestLanguage,
    test_cases: Iterable[TestCase | Mapping[str, Any]],
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> list[TestCaseResult]:
    """Run a batch of test cases with the default dispatcher.

    Example:
        ```python
        results = asyncio.run(run_test_cases(code, "javascript", [{"input": "3\\n4", "expectedOutput": "7"}]))
        ```
    """
    try:
        dispatcher = default_dispatcher()
    except Exception as exc:
        logger.exception("Default dispatcher could not be created")
        return [_failed_case(case, exc, 0.0) for case in test_cases]
    return await dispatcher.run_test_cases(source_code, language, test_cases, timeout_ms)


def on_runtime_load(callback: ProgressCallback | None) -> None:
    """Register the progress callback for the first JavaScript runtime load.

    Example:
        ```python
        on_runtime_load(lambda message: print(message))
        ```
    """
    default_dispatcher().on_runtime_load(callback)


def is_runtime_loading() -> bool:
    if _DEFAULT_DISPATCHER is None:
        return False
    return _DEFAULT_DISPATCHER.is_runtime_loading()
