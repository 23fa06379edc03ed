import asyncio
from pathlib import Path

import pytest

from safe_code_runner import Dispatcher, ExecutionRequest, GuestLanguage, LocalEngine, RunnerPolicy


def run_code(code: str, policy: RunnerPolicy):
    engine = LocalEngine(policy=policy)
    return asyncio.run(engine.execute(ExecutionRequest(code, GuestLanguage.PYTHON)))


def test_policy_file_path_blocks_imports_and_builtins(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text(
        (
            "[policy]\n"
            "mode = \"restrict\"\n"
            "blocked_imports = [\"math\"]\n"
            "blocked_builtins = [\"len\"]\n"
        ),
        encoding="utf-8",
    )
    dispatcher = Dispatcher(policy_file=str(policy_file))

    import_result = asyncio.run(dispatcher.execute("import math", "python"))
    assert import_result.exit_code == 1
    assert "blocked by policy" in (import_result.error or "")

    builtin_result = asyncio.run(dispatcher.execute("print(len([1, 2, 3]))", "python"))
    assert builtin_result.exit_code == 1
    assert "name 'len' is not defined" in (builtin_result.error or "")


def test_policy_file_keeps_defaults_for_missing_keys(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nmemory_limit_mb = 64\n", encoding="utf-8")

    policy = RunnerPolicy.from_file(str(policy_file))

    assert policy.memory_limit_mb == 64
    assert policy.mode == "restrict"
    assert "os" in policy.blocked_imports
    assert policy.config_path == str(policy_file)
    assert "__subclasses__" in policy.blocked_attributes
    assert policy.to_payload()["blocked_attributes"] == policy.blocked_attributes


def test_policy_file_can_replace_blocked_attributes(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nblocked_attributes = [\"real\"]\n", encoding="utf-8")

    policy = RunnerPolicy.from_file(str(policy_file))
    assert policy.blocked_attributes == ["real"]

    result = run_code("print((3).real)", policy)
    assert result.exit_code == 1
    assert "Attribute 'real' is blocked by policy" in (result.error or "")


def test_policy_file_rejects_non_list_values(tmp_path: Path) -> None:
    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("[policy]\nblocked_attributes = \"__self__\"\n", encoding="utf-8")

    with pytest.raises(ValueError, match="blocked_attributes"):
        RunnerPolicy.from_file(str(policy_file))


def test_missing_policy_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RunnerPolicy.from_file(str(tmp_path / "absent.toml"))


def test_policy_and_policy_file_are_exclusive(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="not both"):
        Dispatcher(policy=RunnerPolicy(), policy_file=str(tmp_path / "policy.toml"))


def test_allow_mode_allows_only_selected_symbols() -> None:
    policy = RunnerPolicy(
        mode="allow",
        allowed_imports=["math"],
        allowed_builtins=["print", "len", "sum", "range", "input", "int"],
    )

    allowed = run_code("import math\nprint(int(math.sqrt(16)) + len(range(3)))", policy)
    assert allowed.ok is True
    assert allowed.stdout == "7"

    blocked_import = run_code("import json", policy)
    assert blocked_import.ok is False
    assert "not allowed by policy" in (blocked_import.error or "")

    blocked_builtin = run_code("print(abs(-1))", policy)
    assert blocked_builtin.ok is False
    assert "name 'abs' is not defined" in (blocked_builtin.error or "")


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"mode": "deny"}, "mode"),
        ({"memory_limit_mb": 0}, "memory_limit_mb"),
        ({"max_output_kb": -1}, "max_output_kb"),
    ],
)
def test_invalid_policy_values_raise(kwargs: dict, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RunnerPolicy(**kwargs)
