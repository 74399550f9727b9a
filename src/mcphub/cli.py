"""mcphub CLI - process-based plugin supervisor.

Usage:
    mcphub serve                 # Run all plugins until interrupted
    mcphub plugin list           # List discovered plugins
    mcphub plugin tools NAME     # Show capabilities of one plugin
    mcphub plugin status         # Start all plugins and show their status
    mcphub plugin doctor         # Health check all plugins
    mcphub plugin call NAME      # Invoke a capability (e.g. hello-world.greet)

Options (before or after the subcommand):
    --plugins-dir DIR            # Override the plugins directory
    --log-level LEVEL            # DEBUG, INFO, WARNING, ERROR
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from . import __version__
from .config import Settings
from .plugins.admin import print_status_table
from .plugins.events import EventKind, EventSubscription
from .plugins.host import PluginHost

console = Console()

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Route all mcphub logging through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


async def _log_events(subscription: EventSubscription) -> None:
    async for event in subscription:
        if event.kind == EventKind.FAILED:
            style = "red" if event.terminal else "yellow"
            console.print(f"[{style}]{event.name}[/{style}] failed: {event.error}")
        elif event.kind == EventKind.STARTED:
            console.print(f"[green]{event.name}[/green] started (restarts: {event.restart_count})")


async def serve(settings: Settings) -> int:
    """Start every plugin and keep them supervised until SIGINT/SIGTERM."""
    host = PluginHost(settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C still raises
            pass

    watcher = asyncio.create_task(_log_events(host.events.subscribe()))
    try:
        await host.start_all()
        print_status_table(host.status())
        entries = host.catalog()
        console.print(
            f"Serving [bold]{len(entries)}[/bold] capabilities from "
            f"[bold]{len(host.registry.namespaces())}[/bold] plugins. Press Ctrl+C to stop."
        )
        await stop.wait()
    finally:
        console.print("Shutting down...")
        await host.shutdown()
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
    return 0


def add_common_options(parser: argparse.ArgumentParser, default=None) -> argparse.ArgumentParser:
    """Options accepted both before and after a subcommand."""
    parser.add_argument("--plugins-dir", default=default, help="Plugins directory override")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        default=default,
        help="Log level override",
    )
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcphub",
        description="mcphub: supervise plugin worker processes and route calls to their capabilities",
    )
    parser.add_argument("--version", action="version", version=f"mcphub {__version__}")
    add_common_options(parser)

    # Subcommand copies are suppressed when absent so they do not reset
    # a value given before the subcommand
    common = add_common_options(argparse.ArgumentParser(add_help=False), default=argparse.SUPPRESS)

    sub = parser.add_subparsers(dest="subcmd")

    # serve subcommand
    sub.add_parser("serve", help="Run all plugins until interrupted", parents=[common])

    # plugin subcommand (admin)
    from .plugins.admin import create_plugin_parser
    create_plugin_parser(sub, parents=[common])

    return parser


def main() -> None:
    args = build_parser().parse_args()

    settings = Settings.load()
    if args.plugins_dir:
        settings.plugins_dir = args.plugins_dir
    setup_logging(args.log_level or settings.log_level)

    if args.subcmd == "serve":
        try:
            raise SystemExit(asyncio.run(serve(settings)))
        except KeyboardInterrupt:
            raise SystemExit(130)

    if args.subcmd == "plugin":
        from .plugins.admin import run_plugin_command
        raise SystemExit(run_plugin_command(args))

    console.print(Panel(__doc__.strip(), title=f"mcphub {__version__}", border_style="cyan"))
    raise SystemExit(0)


if __name__ == "__main__":
    main()
