"""Command-line interface for the build investigator."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule

from .config import REASONING_MODES, Config
from .errors import InvestigatorError
from .events import (
    AssistantChunk,
    Canceled,
    Completed,
    ContextCompacted,
    Diagnostics,
    EventChannel,
    MaxTurnsReached,
    ToolCallStarted,
    ToolResultReady,
    TurnStarted,
)
from .interrupt import AbortSignal, sigint_aborts
from .logger import get_logger, init_logging, log_exception, register_secret, truncate
from .session import InvestigationOptions, InvestigationSession

_log = get_logger("cli")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FATAL = 2

EXIT_WORDS = ("exit", "quit", "q")


async def render_events(channel: EventChannel, console: Console, verbose: bool = False) -> None:
    """Print agent progress as it happens."""
    async for event in channel:
        if isinstance(event, AssistantChunk):
            console.print(event.text, end="", markup=False, highlight=False)
        elif isinstance(event, TurnStarted):
            if verbose:
                console.print(Rule(f"Turn {event.turn}/{event.max_turns}", style="dim"))
        elif isinstance(event, ToolCallStarted):
            console.print(f"\n[cyan]> {event.name}[/cyan] [dim]{truncate(event.arguments, 160)}[/dim]")
        elif isinstance(event, ToolResultReady):
            if verbose:
                console.print(f"[dim]  {event.name} -> {truncate(event.content, 300)}[/dim]")
            else:
                console.print(f"[dim]  {event.name} -> {len(event.content)} chars[/dim]")
        elif isinstance(event, ContextCompacted):
            label = "compacted (context limit hit)" if event.emergency else "trimmed"
            console.print(f"[yellow]  context {label}: {event.before_chars} -> {event.after_chars} chars[/yellow]")
        elif isinstance(event, Canceled):
            console.print("\n[yellow]Investigation cancelled.[/yellow]")
        elif isinstance(event, MaxTurnsReached):
            console.print("\n[yellow]Maximum turns reached.[/yellow]")
        elif isinstance(event, Completed):
            console.print()
        elif isinstance(event, Diagnostics):
            if verbose:
                console.print(f"[dim]  diagnostics: {truncate(str(event.payload), 300)}[/dim]")


async def run_one(
    session: InvestigationSession,
    prompt: str,
    args: argparse.Namespace,
    console: Console,
) -> str:
    """Run one investigation with live output; Ctrl+C cancels it."""
    events = EventChannel()
    abort = AbortSignal()
    renderer = asyncio.ensure_future(render_events(events, console, args.verbose))
    options = InvestigationOptions(
        max_turns=args.max_turns,
        reasoning=args.reasoning,
        abort=abort,
        events=events,
    )
    try:
        with sigint_aborts(abort, asyncio.get_running_loop()):
            return await session.investigate(prompt, options)
    finally:
        events.close()
        await renderer


async def run_session(session: InvestigationSession, prompt: str, args: argparse.Namespace, console: Console) -> int:
    result = await run_one(session, prompt, args, console)
    console.print(Panel(Markdown(result or "(no answer)"), title="Result", border_style="green"))

    while args.interactive:
        try:
            follow_up = await asyncio.to_thread(console.input, "[bold]follow-up> [/bold]")
        except (EOFError, KeyboardInterrupt):
            break
        follow_up = follow_up.strip()
        if not follow_up:
            continue
        if follow_up.lower() in EXIT_WORDS:
            break
        result = await run_one(session, session.prompt_for("query", query=follow_up), args, console)
        console.print(Panel(Markdown(result or "(no answer)"), title="Result", border_style="green"))

    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="investigator",
        description="Investigate failing Azure DevOps builds with an LLM agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Investigate a specific build
  investigator --build 12345

  # Most recent failing build of a pipeline
  investigator --latest-failure --pipeline "AL-Full"

  # Free-form question, then keep asking follow-ups
  investigator -i "Why does the nightly build keep timing out?" --interactive
        """,
    )

    target = parser.add_mutually_exclusive_group()
    target.add_argument("-b", "--build", type=int, help="Build ID to investigate")
    target.add_argument(
        "-l", "--latest-failure",
        action="store_true",
        help="Investigate the most recent failing build",
    )
    target.add_argument("-i", "--investigate", type=str, metavar="QUERY", help="Free-form investigation request")

    parser.add_argument("-p", "--pipeline", type=str, help="Pipeline name filter for --latest-failure")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show tool results and debug logging")
    parser.add_argument("--max-turns", type=int, default=30, help="Maximum agent turns (default: 30)")
    parser.add_argument("--reasoning", choices=REASONING_MODES, default=None, help="Reasoning profile")
    parser.add_argument("-e", "--env", type=str, default=".env", help="Path to .env file (default: .env)")
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Keep prompting for follow-up questions after the first answer",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    init_logging(level=logging.DEBUG, stderr=args.verbose)
    console = Console()

    if args.max_turns < 1:
        console.print("[red]--max-turns must be at least 1[/red]")
        return EXIT_USAGE

    config = Config.from_env(Path(args.env))
    try:
        config.validate()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return EXIT_USAGE
    register_secret(config.azure_openai_key, config.ado_pat)

    session = InvestigationSession(config)
    try:
        if args.build is not None:
            prompt = session.prompt_for("build", build_id=args.build)
        elif args.latest_failure:
            prompt = session.prompt_for("latest", pipeline=args.pipeline)
        elif args.investigate:
            prompt = session.prompt_for("query", query=args.investigate)
        else:
            parser.print_help()
            return EXIT_USAGE
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return EXIT_USAGE

    try:
        return asyncio.run(run_session(session, prompt, args, console))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return EXIT_FATAL
    except InvestigatorError as e:
        log_exception(_log, "Investigation failed", e)
        console.print(f"[red]Investigation failed:[/red] {e}")
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
