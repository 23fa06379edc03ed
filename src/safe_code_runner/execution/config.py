"""Engine-wide settings.

Settings come from environment variables so the same engine can be embedded
in different hosts without code changes. Defaults work out of the box.

``SCR_DEFAULT_TIMEOUT_MS``
    Wall-clock budget used when a caller passes no (or a non-positive) budget.
    Default 10000.

``SCR_TIMEOUT_GRACE_MS``
    Extra time granted to the embedded runtime's own watchdog before the host
    gives up on it and discards the runtime. Default 2000.

``SCR_MYPY_CACHE_DIR``
    Incremental cache directory for the type checker. Defaults to a
    directory under the system temp dir.

``SCR_PYTHON``
    Interpreter used for isolated contexts. Defaults to ``sys.executable``.
"""

from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_TIMEOUT_GRACE_MS = 2_000
NO_OUTPUT_LINE = "(no output)"
RUNTIME_LOADING_MESSAGE = "Loading JavaScript runtime (first run may take a few seconds)..."


def _default_mypy_cache_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "safe_code_runner" / "mypy_cache")


def _int_var(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {raw}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    """Host-side engine settings.

    Example:
        ```python
        settings = RunnerSettings.from_env({"SCR_DEFAULT_TIMEOUT_MS": "5000"})
        ```
    """

    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    timeout_grace_ms: int = DEFAULT_TIMEOUT_GRACE_MS
    mypy_cache_dir: str = ""
    python_executable: str = ""

    def __post_init__(self) -> None:
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")
        if self.timeout_grace_ms <= 0:
            raise ValueError("timeout_grace_ms must be positive")
        if not self.mypy_cache_dir:
            object.__setattr__(self, "mypy_cache_dir", _default_mypy_cache_dir())
        if not self.python_executable:
            object.__setattr__(self, "python_executable", sys.executable)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "RunnerSettings":
        """Load settings from environment variables.

        Example:
            ```python
            settings = RunnerSettings.from_env()
            ```
        """
        source = os.environ if env is None else env
        return cls(
            default_timeout_ms=_int_var(source, "SCR_DEFAULT_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            timeout_grace_ms=_int_var(source, "SCR_TIMEOUT_GRACE_MS", DEFAULT_TIMEOUT_GRACE_MS),
            mypy_cache_dir=source.get("SCR_MYPY_CACHE_DIR", "").strip(),
            python_executable=source.get("SCR_PYTHON", "").strip(),
        )

    def resolve_timeout(self, timeout_ms: int | None) -> int:
        """Return the effective budget for a run.

        Example:
            ```python
            budget = RunnerSettings().resolve_timeout(0)  # -> 10000
            ```
        """
        if timeout_ms is None or int(timeout_ms) <= 0:
            return self.default_timeout_ms
        return int(timeout_ms)
