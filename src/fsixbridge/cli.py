"""Command-line interface for fsixbridge."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.prompt import IntPrompt
from rich.table import Table

if TYPE_CHECKING:
    from fsixbridge.config import Config
    from fsixbridge.session import Session, SessionCoordinator

console = Console()
err_console = Console(stderr=True)

CLI_DOCUMENT_NAME = "fsixbridge-cli.fsx"


class ConsoleSink:
    """LogSink that prints to the terminal."""

    def info(self, message: str) -> None:
        console.print(message, markup=False, highlight=False)

    def error(self, message: str) -> None:
        err_console.print(message, style="red", markup=False, highlight=False)


class ConsoleInstallPrompt:
    """Asks on the terminal whether to install the missing daemon."""

    async def choose(self, message: str, choices: Sequence[str]) -> str | None:
        return await asyncio.to_thread(self._ask, message, list(choices))

    def _ask(self, message: str, choices: list[str]) -> str | None:
        console.print(f"[yellow]{message}[/yellow]")
        for number, choice in enumerate(choices, start=1):
            console.print(f"  [bold]{number}[/bold]. {choice}")
        try:
            picked = IntPrompt.ask(
                "Choice",
                choices=[str(n) for n in range(1, len(choices) + 1)],
                console=console,
            )
        except (EOFError, KeyboardInterrupt):
            return None
        return choices[picked - 1]


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="fsixbridge",
        description="Talk to an FsiX evaluation daemon from the command line",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Config file to use instead of the usual config cascade",
    )

    daemon_options = argparse.ArgumentParser(add_help=False)
    daemon_options.add_argument(
        "--init-line",
        default="fsix",
        help="Init line passed to the daemon (e.g. 'fsix --proj App.fsproj')",
    )
    daemon_options.add_argument(
        "--cwd",
        type=Path,
        default=None,
        help="Working directory for the daemon (default: current directory)",
    )
    daemon_options.add_argument(
        "--command",
        help="Daemon command line, or 'default' to use the installed .NET tool",
    )
    daemon_options.add_argument(
        "--transport",
        choices=["stdio", "socket"],
        help="How to connect to the daemon",
    )

    subparsers = parser.add_subparsers(dest="mode", help="Operation")

    eval_parser = subparsers.add_parser(
        "eval",
        parents=[daemon_options],
        help="Evaluate code and print the result",
    )
    eval_parser.add_argument("code", help="Code to evaluate")
    eval_parser.add_argument(
        "--hot-reload",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Ask the daemon to hot reload changed methods",
    )

    complete_parser = subparsers.add_parser(
        "complete",
        parents=[daemon_options],
        help="List completions at a caret position",
    )
    complete_parser.add_argument("text", help="Document text")
    complete_parser.add_argument(
        "--caret",
        type=int,
        default=None,
        help="Caret offset (default: end of text)",
    )

    diagnostics_parser = subparsers.add_parser(
        "diagnostics",
        parents=[daemon_options],
        help="Check a file and print its diagnostics",
    )
    diagnostics_parser.add_argument("file", type=Path, help="Source file to check")

    return parser


def _load_config(parsed: argparse.Namespace, cwd: Path) -> Config:
    from fsixbridge.config import TransportMode, load_config

    config = load_config(project_root=cwd, config_path=parsed.config)
    if parsed.command:
        config.daemon.command = parsed.command
    if parsed.transport:
        config.daemon.transport = TransportMode(parsed.transport)
    if parsed.verbose:
        config.logging.verbose = parsed.verbose
    return config


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.mode is None:
        parser.print_help()
        return 1

    cwd = (parsed.cwd or Path.cwd()).resolve()
    config = _load_config(parsed, cwd)

    from fsixbridge.logging import setup_logging
    setup_logging(config.logging)

    try:
        return asyncio.run(_run(parsed, config, cwd))
    except KeyboardInterrupt:
        err_console.print("[red]Interrupted[/red]")
        return 1


async def _run(parsed: argparse.Namespace, config: Config, cwd: Path) -> int:
    from fsixbridge.session import SessionCoordinator

    prompt = ConsoleInstallPrompt() if sys.stdin.isatty() else None
    document_uri = str(cwd / CLI_DOCUMENT_NAME)

    async with SessionCoordinator(config, prompt=prompt) as coordinator:
        if parsed.mode == "eval":
            return await _eval(coordinator, document_uri, parsed, cwd)

        session = await _session(coordinator, document_uri, parsed.init_line, cwd)
        if session is None:
            return 1
        if parsed.mode == "complete":
            return await _complete(session, parsed.text, parsed.caret)
        if parsed.mode == "diagnostics":
            return await _diagnostics(session, parsed.file)
    return 1


async def _session(
    coordinator: SessionCoordinator,
    document_uri: str,
    init_line: str,
    cwd: Path,
) -> Session | None:
    from fsixbridge.errors import InitFailure

    session = await coordinator.ensure_session(document_uri, init_line, cwd=cwd, echo=ConsoleSink())
    if isinstance(session, InitFailure):
        return None
    return session


async def _eval(
    coordinator: SessionCoordinator,
    document_uri: str,
    parsed: argparse.Namespace,
    cwd: Path,
) -> int:
    from fsixbridge.errors import FsixError, RemoteError
    from fsixbridge.session import report_evaluation

    sink = ConsoleSink()
    args = {} if parsed.hot_reload is None else {"hotReload": parsed.hot_reload}
    try:
        result = await coordinator.evaluate(
            document_uri, parsed.code, parsed.init_line, args=args, echo=sink, cwd=cwd
        )
    except (FsixError, RemoteError, TimeoutError) as e:
        err_console.print(f"[red]Error:[/red] {e}", highlight=False)
        return 1

    report_evaluation(result, sink)
    if result.ok:
        console.print(result.value or "", markup=False)
        return 0

    assert result.error is not None
    sink.error(result.error.format())
    return 1


async def _complete(session: Session, text: str, caret: int | None) -> int:
    from fsixbridge.errors import FsixError, RemoteError
    from fsixbridge.session import completion_context

    before = text if caret is None else text[:caret]
    lines = before.split("\n")
    caret, word = completion_context(text, len(lines) - 1, len(lines[-1]))

    try:
        items = await session.get_completions(text, caret, word)
    except (FsixError, RemoteError) as e:
        err_console.print(f"[red]Error:[/red] {e}", highlight=False)
        return 1

    table = Table(title=f"Completions for '{word}'")
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="dim")
    table.add_column("Insert")
    for item in items:
        table.add_row(item.display_text, item.kind or "", item.replacement_text)
    console.print(table)
    return 0


async def _diagnostics(session: Session, file: Path) -> int:
    from fsixbridge.errors import FsixError, RemoteError

    try:
        text = file.read_text(encoding="utf-8")
    except OSError as e:
        err_console.print(f"[red]Cannot read {file}:[/red] {e}")
        return 1

    try:
        diagnostics = await session.get_diagnostics(text)
    except (FsixError, RemoteError) as e:
        err_console.print(f"[red]Error:[/red] {e}", highlight=False)
        return 1

    if not diagnostics:
        console.print("[green]No diagnostics[/green]")
        return 0

    table = Table(title=str(file))
    table.add_column("Severity")
    table.add_column("Location", style="dim")
    table.add_column("Message")
    for d in diagnostics:
        style = "red" if d.is_error else "yellow"
        location = f"{d.range.start_line}:{d.range.start_column}"
        table.add_row(f"[{style}]{d.severity.value}[/{style}]", location, d.message)
    console.print(table)
    return 1 if any(d.is_error for d in diagnostics) else 0
