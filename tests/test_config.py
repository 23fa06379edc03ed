import sys

import pytest

from safe_code_runner import ExecutionResult, RunnerSettings, TestCase
from safe_code_runner.execution.types import timeout_result


def test_settings_defaults() -> None:
    settings = RunnerSettings.from_env({})

    assert settings.default_timeout_ms == 10_000
    assert settings.timeout_grace_ms == 2_000
    assert settings.python_executable == sys.executable
    assert settings.mypy_cache_dir.endswith("mypy_cache")


def test_settings_from_env_values() -> None:
    settings = RunnerSettings.from_env(
        {
            "SCR_DEFAULT_TIMEOUT_MS": "5000",
            "SCR_TIMEOUT_GRACE_MS": "250",
            "SCR_MYPY_CACHE_DIR": "/tmp/scr-cache",
            "SCR_PYTHON": "/usr/bin/python3",
        }
    )

    assert settings.default_timeout_ms == 5000
    assert settings.timeout_grace_ms == 250
    assert settings.mypy_cache_dir == "/tmp/scr-cache"
    assert settings.python_executable == "/usr/bin/python3"


@pytest.mark.parametrize("raw", ["abc", "0", "-5"])
def test_settings_reject_invalid_integers(raw: str) -> None:
    with pytest.raises(ValueError, match="SCR_DEFAULT_TIMEOUT_MS"):
        RunnerSettings.from_env({"SCR_DEFAULT_TIMEOUT_MS": raw})


def test_resolve_timeout() -> None:
    settings = RunnerSettings(default_timeout_ms=3000)

    assert settings.resolve_timeout(None) == 3000
    assert settings.resolve_timeout(-1) == 3000
    assert settings.resolve_timeout(50) == 50


def test_timeout_result_appends_notice_to_partial_stderr() -> None:
    result = timeout_result(50, stdout="partial", stderr="warn")

    assert result.timed_out
    assert result.exit_code == 124
    assert result.stdout == "partial"
    assert result.stderr == "warn\nExecution timed out after 50ms"
    assert result.duration_ms == 50


def test_ok_requires_clean_exit() -> None:
    assert ExecutionResult("x", "", 0, 1.0).ok
    assert not ExecutionResult("", "", 1, 1.0).ok


def test_test_case_from_mapping_requires_expected_output() -> None:
    assert TestCase.from_mapping({"input": "1", "expectedOutput": "2"}) == TestCase("1", "2")
    with pytest.raises(ValueError, match="expectedOutput"):
        TestCase.from_mapping({"input": "1"})
