import argparse
import asyncio
import signal
import sys
from contextlib import suppress

from rich.console import Console
from rich.table import Table

from stepstream.app import open_session
from stepstream.config import ClientConfig
from stepstream.errors import StepStreamConfigurationError, StepStreamValidationError
from stepstream.log import setup_logging
from stepstream.session import ResearchSession
from stepstream.term_ui import PHASE_LABELS, TerminalRunView, run_with_terminal_ui


async def handle_ask(session: ResearchSession, args: argparse.Namespace) -> int:
    loop = asyncio.get_running_loop()
    with suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    try:
        state = await run_with_terminal_ui(session, args.question)
    finally:
        with suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    if state.phase == "idle":
        Console(stderr=True).print("[yellow]Research cancelled[/yellow]")
        return 130
    if session.run_id:
        Console(stderr=True).print(f"[dim]saved as {session.run_id}[/dim]")
    return 1 if state.phase == "error" else 0


async def handle_history(session: ResearchSession, args: argparse.Namespace) -> int:
    runs = await session.list_history(args.limit)
    table = Table(show_header=True, header_style="bold yellow", expand=True)
    table.add_column("Id", no_wrap=True)
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Question", overflow="fold")
    for run in runs:
        started = run.started_at.strftime("%Y-%m-%d %H:%M") if run.started_at else ""
        table.add_row(
            run.id or "", started, PHASE_LABELS.get(run.phase, run.phase), run.question
        )
    Console().print(table)
    return 0


async def handle_show(session: ResearchSession, args: argparse.Namespace) -> int:
    state = await session.load(args.id)
    view = TerminalRunView(state.question)
    view.update(state)
    Console().print(view.render())
    return 0 if session.run_id == args.id else 1


async def handle_delete(session: ResearchSession, args: argparse.Namespace) -> int:
    if await session.delete_history(args.id):
        Console().print(f"deleted {args.id}")
        return 0
    Console(stderr=True).print(f"[red]could not delete {args.id}[/red]")
    return 1


HANDLERS = {
    "ask": handle_ask,
    "history": handle_history,
    "show": handle_show,
    "delete": handle_delete,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Follow a research agent's steps from the terminal"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ask_parser = subparsers.add_parser(
        "ask", help="Run a research question and follow its steps live"
    )
    ask_parser.add_argument("question", help="Research question to send")

    history_parser = subparsers.add_parser("history", help="List saved research runs")
    history_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of runs to list (default: 20)",
    )

    show_parser = subparsers.add_parser("show", help="Render a saved research run")
    show_parser.add_argument("id", help="Identifier of the saved run")

    delete_parser = subparsers.add_parser("delete", help="Delete a saved research run")
    delete_parser.add_argument("id", help="Identifier of the saved run")

    return parser


async def run_command(config: ClientConfig, args: argparse.Namespace) -> int:
    async with open_session(config) as session:
        return await HANDLERS[args.command](session, args)


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ClientConfig.from_env()
    except StepStreamConfigurationError as exc:
        parser.exit(2, f"{parser.prog}: {exc}\n")

    setup_logging(config.log_level)
    try:
        exit_code = asyncio.run(run_command(config, args))
    except StepStreamValidationError as exc:
        parser.exit(2, f"{parser.prog}: {exc}\n")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
