from __future__ import annotations


class SafeCodeRunnerError(Exception):
    """Base class for internal engine failures.

    These never cross the dispatcher boundary; they are normalized into an
    `ExecutionResult` before reaching callers.
    """


class RuntimeLoadError(SafeCodeRunnerError):
    """A lazily-loaded toolchain or interpreter runtime could not be loaded.

    Example:
        ```python
        raise RuntimeLoadError("v8", "libmini_racer.so not found")
        ```
    """

    def __init__(self, resource: str, reason: str) -> None:
        super().__init__(f"Failed to load {resource} runtime: {reason}")
        self.resource = resource
        self.reason = reason


class ToolchainError(SafeCodeRunnerError):
    """The transformation toolchain crashed instead of producing diagnostics."""
