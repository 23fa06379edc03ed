from __future__ import annotations

import argparse
import asyncio
import json
import logging
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from safe_code_runner import Dispatcher, ExecutionResult, GuestLanguage, TestCase
from safe_code_runner.execution.capabilities import backend_for, capabilities_for_backend

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="scr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _add_run_options(cmd: argparse.ArgumentParser) -> None:
    cmd.add_argument("file", help="Source file with the candidate's code.")
    cmd.add_argument(
        "--language",
        "-l",
        required=True,
        help="Guest language id, e.g. python, typed-python, javascript.",
    )
    cmd.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Wall-clock budget per run in milliseconds (default: SCR_DEFAULT_TIMEOUT_MS or 10000).",
    )
    cmd.add_argument(
        "--policy-file",
        help="TOML policy applied to isolated Python contexts.",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser for running candidate code.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="scr",
        description=(
            "safe-code-runner CLI\n"
            "Run candidate code locally with captured output, timeouts and test cases."
        ),
        epilog=(
            "Quick Examples:\n"
            "  scr run solution.py --language python --stdin $'3\\n4'\n"
            "  scr run solution.js --language javascript --timeout-ms 2000\n"
            "  scr test solution.py --language typed-python --cases cases.json\n"
            "  scr languages"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log engine activity (runtime loads, timeouts, kills) to stderr.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run a source file once.",
        description=(
            "Run a source file once and print its captured output.\n"
            "The exit status mirrors the run's exit code (124 on timeout)."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_run_options(run_cmd)
    stdin_group = run_cmd.add_mutually_exclusive_group()
    stdin_group.add_argument("--stdin", default="", help="Text fed to the program's input.")
    stdin_group.add_argument("--stdin-file", help="File whose contents are fed to the program's input.")

    test_cmd = sub.add_parser(
        "test",
        help="Run a source file against test cases.",
        description=(
            "Run a source file once per test case and compare trimmed output.\n"
            "Cases are a JSON list of {\"input\": ..., \"expectedOutput\": ...} objects."
        ),
        epilog=(
            "Example:\n"
            "  scr test sum.py --language python --cases cases.json"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_run_options(test_cmd)
    test_cmd.add_argument("--cases", required=True, help="JSON file with the test cases.")

    sub.add_parser(
        "languages",
        help="List language ids and their execution backends.",
        description="List every known language id and whether it can be executed.",
        formatter_class=_HELP_FORMATTER,
    )

    return parser


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def build_dispatcher(args: argparse.Namespace) -> Dispatcher:
    """Create a Dispatcher from the CLI policy flag.

    Example:
        ```python
        dispatcher = build_dispatcher(args)
        ```
    """
    return Dispatcher(policy_file=args.policy_file)


def _load_cases(path: str) -> list[TestCase]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError("Test case file must contain a JSON list")
    return [TestCase.from_mapping(item) for item in raw]


def _print_result(result: ExecutionResult) -> None:
    """Render one run result as panels plus a status line.

    Example:
        ```python
        _print_result(ExecutionResult("hello", "", 0, 12.0))
        ```
    """
    _CONSOLE.print(Panel(Text(result.stdout), title="stdout", border_style="cyan"))
    if result.stderr:
        _CONSOLE.print(Panel(Text(result.stderr), title="stderr", border_style="red"))
    style = "bold green" if result.exit_code == 0 else "bold red"
    status = f"exit code {result.exit_code} in {result.duration_ms:.0f}ms"
    if result.error:
        status += f" ({result.error})"
    _CONSOLE.print(Text(status, style=style))


def _print_test_results(results: list[Any]) -> None:
    """Render test case results in a rich table.

    Example:
        ```python
        _print_test_results([TestCaseResult("1 2", "3", "3", True, 9.0)])
        ```
    """
    table = Table(title="Test Cases")
    table.add_column("#", style="cyan")
    table.add_column("Input")
    table.add_column("Expected")
    table.add_column("Actual")
    table.add_column("Result")
    table.add_column("Duration")
    for index, res in enumerate(results, start=1):
        table.add_row(
            str(index),
            Text(res.input),
            Text(res.expected_output),
            Text(res.actual_output),
            "[green]PASS[/green]" if res.passed else "[red]FAIL[/red]",
            f"{res.duration_ms:.0f}ms",
        )
    _CONSOLE.print(table)
    passed = sum(1 for res in results if res.passed)
    style = "bold green" if passed == len(results) else "bold red"
    _CONSOLE.print(Text(f"{passed}/{len(results)} passed", style=style))


def _print_languages() -> None:
    table = Table(title="Languages")
    table.add_column("Language", style="cyan")
    table.add_column("Backend", style="magenta")
    table.add_column("Isolated process")
    table.add_column("Shared runtime")
    for language in GuestLanguage:
        kind = backend_for(language)
        if kind is None:
            table.add_row(language.value, "[dim]unsupported[/dim]", "-", "-")
            continue
        caps = capabilities_for_backend(kind)
        table.add_row(
            language.value,
            kind.value,
            "yes" if caps.isolated_process else "no",
            "yes" if caps.shared_runtime else "no",
        )
    _CONSOLE.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `scr` CLI command handler.

    Example:
        ```python
        code = main(["run", "hello.py", "--language", "python"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)

    if args.command == "languages":
        _print_languages()
        return 0

    try:
        source = Path(args.file).read_text(encoding="utf-8")
        stdin = getattr(args, "stdin", "")
        if getattr(args, "stdin_file", None):
            stdin = Path(args.stdin_file).read_text(encoding="utf-8")
        cases = _load_cases(args.cases) if args.command == "test" else []
        dispatcher = build_dispatcher(args)
    except (OSError, ValueError) as exc:
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {exc}", border_style="red"))
        return 2

    dispatcher.on_runtime_load(lambda message: _CONSOLE.print(f"[dim]{message}[/dim]"))
    timeout_ms = args.timeout_ms or 0

    if args.command == "run":
        result = asyncio.run(dispatcher.execute(source, args.language, stdin, timeout_ms))
        _print_result(result)
        return result.exit_code
    if args.command == "test":
        results = asyncio.run(dispatcher.run_test_cases(source, args.language, cases, timeout_ms))
        _print_test_results(results)
        return 0 if results and all(res.passed for res in results) else 1

    parser.error("Unhandled command")
