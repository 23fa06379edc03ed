from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_LIST_FIELDS = (
    "allowed_imports",
    "blocked_imports",
    "allowed_builtins",
    "blocked_builtins",
    "blocked_attributes",
)


def _default_policy_path() -> Path:
    """Return bundled default policy TOML path.

    Example:
        ```python
        path = _default_policy_path()
        ```
    """
    return Path(__file__).with_name("default_policy.toml")


def _read_policy_toml(path: Path) -> dict[str, Any]:
    """Read policy TOML and return the policy table.

    Example:
        ```python
        raw = _read_policy_toml(Path("/tmp/policy.toml"))
        ```
    """
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    policy_obj = raw.get("policy", raw)
    if not isinstance(policy_obj, dict):
        raise ValueError("Policy config must be a TOML table")
    return policy_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{field_name}' must be a list of strings")
    return list(value)


def _policy_fields(raw: dict[str, Any], base: dict[str, Any]) -> dict[str, Any]:
    """Merge a policy table over ``base``, validating each known key.

    Unknown keys are ignored so newer policy files still load.
    """
    merged = dict(base)
    if "mode" in raw:
        merged["mode"] = str(raw["mode"])
    for name in ("memory_limit_mb", "max_output_kb"):
        if name in raw:
            merged[name] = int(raw[name])
    for name in _LIST_FIELDS:
        if name in raw:
            merged[name] = _list_of_str(raw[name], name)
    return merged


# The bundled TOML is the single source of default guardrails.
_DEFAULTS = _policy_fields(_read_policy_toml(_default_policy_path()), {name: [] for name in _LIST_FIELDS})


def _default(name: str) -> Any:
    value = _DEFAULTS[name]
    return field(default_factory=value.copy) if isinstance(value, list) else value


@dataclass(slots=True)
class RunnerPolicy:
    """Guardrails applied inside each isolated Python context.

    The wall-clock budget is not part of the policy; it travels with every
    request. Attribute names in ``blocked_attributes`` may not be reached
    from guest code, whether written as ``obj.name``, passed to ``getattr``
    or embedded in a string.

    Example:
        ```python
        policy = RunnerPolicy(memory_limit_mb=128, blocked_imports=["os"])
        ```
    """

    mode: str = _default("mode")
    memory_limit_mb: int = _default("memory_limit_mb")
    max_output_kb: int = _default("max_output_kb")
    allowed_imports: list[str] = _default("allowed_imports")
    blocked_imports: list[str] = _default("blocked_imports")
    allowed_builtins: list[str] = _default("allowed_builtins")
    blocked_builtins: list[str] = _default("blocked_builtins")
    blocked_attributes: list[str] = _default("blocked_attributes")
    config_path: str | None = None

    def __post_init__(self) -> None:
        if self.mode not in {"allow", "restrict"}:
            raise ValueError("mode must be 'allow' or 'restrict'")
        if self.memory_limit_mb <= 0:
            raise ValueError("memory_limit_mb must be positive")
        if self.max_output_kb <= 0:
            raise ValueError("max_output_kb must be positive")

    @classmethod
    def from_file(cls, config_path: str) -> "RunnerPolicy":
        """Create a policy from a TOML file; missing keys keep the bundled defaults.

        Example:
            ```python
            policy = RunnerPolicy.from_file("/tmp/policy.toml")
            ```
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Policy file not found: {config_path}")
        fields = _policy_fields(_read_policy_toml(path), _DEFAULTS)
        for name in _LIST_FIELDS:
            fields[name] = list(fields[name])
        return cls(**fields, config_path=config_path)

    def to_payload(self) -> dict[str, Any]:
        """Serialize the guardrails for the worker message.

        Example:
            ```python
            payload = RunnerPolicy().to_payload()
            ```
        """
        return {
            "mode": self.mode,
            "memory_limit_mb": self.memory_limit_mb,
            "max_output_kb": self.max_output_kb,
            **{name: list(getattr(self, name)) for name in _LIST_FIELDS},
        }
