from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .types import GuestLanguage


class BackendKind(str, Enum):
    """The three execution strategies behind the dispatcher."""

    DIRECT = "direct"
    TRANSFORM = "transform"
    EMBEDDED = "embedded"


LANGUAGE_BACKENDS: dict[GuestLanguage, BackendKind] = {
    GuestLanguage.PYTHON: BackendKind.DIRECT,
    GuestLanguage.TYPED_PYTHON: BackendKind.TRANSFORM,
    GuestLanguage.JAVASCRIPT: BackendKind.EMBEDDED,
}


@dataclass(frozen=True, slots=True)
class BackendCapabilities:
    """Capability flags advertised by a backend.

    Example:
        ```python
        caps = BackendCapabilities(True, True, True, True)
        ```
    """

    isolated_process: bool
    supports_policy: bool
    supports_memory_limit: bool
    shared_runtime: bool


def backend_for(language: str | GuestLanguage) -> BackendKind | None:
    """Return the backend kind for a language id, or None when it has none.

    Example:
        ```python
        kind = backend_for("typed-python")  # BackendKind.TRANSFORM
        ```
    """
    parsed = GuestLanguage.parse(language)
    if parsed is None:
        return None
    return LANGUAGE_BACKENDS.get(parsed)


def supported_languages() -> list[GuestLanguage]:
    return list(LANGUAGE_BACKENDS)


def capabilities_for_backend(backend: BackendKind) -> BackendCapabilities:
    """Return capability flags for a backend kind.

    Example:
        ```python
        caps = capabilities_for_backend(BackendKind.EMBEDDED)
        ```
    """
    if backend in {BackendKind.DIRECT, BackendKind.TRANSFORM}:
        return BackendCapabilities(True, True, True, False)
    return BackendCapabilities(False, False, False, True)
