"""Plugin Admin CLI.

Provides commands for inspecting plugins:
- mcphub plugin list
- mcphub plugin tools
- mcphub plugin status
- mcphub plugin doctor
- mcphub plugin call
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import Settings
from .discovery import ManifestDirectorySource
from .host import PluginHost
from .models import WorkerState

console = Console()

_STATE_STYLES = {
    WorkerState.RUNNING.value: "green",
    WorkerState.STARTING.value: "yellow",
    WorkerState.STOPPING.value: "yellow",
    WorkerState.STOPPED.value: "dim",
    WorkerState.FAILED.value: "red",
}


def load_settings(args: argparse.Namespace) -> Settings:
    """Settings with command line overrides applied."""
    settings = Settings.load()
    plugins_dir = getattr(args, "plugins_dir", None)
    if plugins_dir:
        settings.plugins_dir = plugins_dir
    return settings


def _source(settings: Settings) -> ManifestDirectorySource:
    return ManifestDirectorySource(settings.plugins_dir, defaults=settings.process_defaults())


def _state_cell(state: str) -> str:
    style = _STATE_STYLES.get(state, "white")
    return f"[{style}]{state}[/{style}]"


def print_status_table(status: Dict[str, Dict[str, Any]]) -> None:
    table = Table(title="Plugin Status")
    table.add_column("Plugin", style="cyan")
    table.add_column("State")
    table.add_column("PID", justify="right")
    table.add_column("Restarts", justify="right")
    table.add_column("Tools", justify="right")
    table.add_column("Resources", justify="right")
    table.add_column("Prompts", justify="right")
    table.add_column("Error")

    for name, info in sorted(status.items()):
        error = info.get("error") or {}
        table.add_row(
            name,
            _state_cell(info["state"]),
            str(info["pid"] or "-"),
            str(info["restart_count"]),
            str(info["tool_count"]),
            str(info["resource_count"]),
            str(info["prompt_count"]),
            f"[red]{error.get('message', '')}[/red]" if error else "",
        )

    console.print(table)


def cmd_list(args: argparse.Namespace) -> int:
    """List discovered plugins."""
    settings = load_settings(args)
    descriptors = _source(settings).list()

    if not descriptors:
        console.print(f"[yellow]No plugins found in {settings.plugins_dir}.[/yellow]")
        console.print("\nA plugin is a directory containing a [bold]plugin.json[/bold] manifest.")
        return 0

    table = Table(title="Discovered Plugins")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Restart Policy", style="magenta")
    table.add_column("Depends On")
    table.add_column("Command")

    for d in descriptors:
        table.add_row(
            d.name,
            d.version,
            f"{d.restart_policy.value} ({d.max_restarts})",
            ", ".join(sorted(d.dependencies)) or "[dim]-[/dim]",
            " ".join(d.argv),
        )

    console.print(table)
    return 0


async def _tools(settings: Settings, name: str) -> int:
    descriptor = next((d for d in _source(settings).list() if d.name == name), None)
    if descriptor is None:
        console.print(f"[red]Plugin '{name}' not found.[/red]")
        return 1

    host = PluginHost(settings)
    console.print(f"Starting plugin '{name}'...")
    try:
        record = await host.start(descriptor)
        if record.state != WorkerState.RUNNING:
            message = record.last_error.message if record.last_error else record.state.value
            console.print(f"[red]Failed to start: {message}[/red]")
            return 1

        entries = [e for e in host.catalog() if e.owner_name == name]
        if not entries:
            console.print("[yellow]No capabilities advertised by this plugin.[/yellow]")
            return 0

        table = Table(title=f"Capabilities from '{name}' ({name}.*)")
        table.add_column("Name", style="cyan")
        table.add_column("Qualified Name", style="magenta")
        table.add_column("Kind")
        table.add_column("Description")
        for entry in entries:
            table.add_row(
                entry.local_name,
                entry.qualified_name,
                entry.kind.value,
                entry.description or "[dim]No description[/dim]",
            )
        console.print(table)
        return 0
    finally:
        await host.shutdown()


def cmd_tools(args: argparse.Namespace) -> int:
    """List capabilities of one plugin."""
    return asyncio.run(_tools(load_settings(args), args.name))


async def _status(settings: Settings) -> int:
    host = PluginHost(settings)
    try:
        await host.start_all(monitor=False)
        status = host.status()
        if not status:
            console.print("[yellow]No plugins configured.[/yellow]")
            return 0
        print_status_table(status)
        return 0
    finally:
        await host.shutdown()


def cmd_status(args: argparse.Namespace) -> int:
    """Start every plugin and show its status."""
    return asyncio.run(_status(load_settings(args)))


async def _doctor(settings: Settings) -> int:
    host = PluginHost(settings)
    try:
        await host.start_all(monitor=False)
        status = host.status()
        if not status:
            console.print("[yellow]No plugins configured.[/yellow]")
            return 0

        console.print("[bold]Plugin Health Check[/bold]\n")
        probes = {p.name: p for p in await host.check_health()}

        table = Table(title="Plugin Health")
        table.add_column("Plugin", style="cyan")
        table.add_column("Status")
        table.add_column("Details")

        failures = 0
        for name, info in sorted(status.items()):
            probe = probes.get(name)
            if probe is not None and probe.healthy and not probe.skipped:
                status_str = "[green]Healthy[/green]"
                details = f"{info['tool_count']} tools, answered in {probe.latency_ms} ms"
            elif probe is not None and not probe.skipped:
                failures += 1
                status_str = "[red]Unhealthy[/red]"
                details = probe.error or ""
            else:
                failures += 1
                status_str = _state_cell(info["state"])
                details = (info.get("error") or {}).get("message", "")
            table.add_row(name, status_str, details)

        console.print(table)
        return 1 if failures else 0
    finally:
        await host.shutdown()


def cmd_doctor(args: argparse.Namespace) -> int:
    """Check health of all plugins."""
    return asyncio.run(_doctor(load_settings(args)))


async def _call(
    settings: Settings,
    qualified_name: str,
    arguments: Dict[str, Any],
    timeout_s: Optional[float],
) -> int:
    host = PluginHost(settings)
    try:
        await host.start_all(monitor=False)
        result = await host.invoke(qualified_name, arguments, timeout_s)
    finally:
        await host.shutdown()

    if result.success:
        body = result.result if isinstance(result.result, str) else json.dumps(result.result, indent=2)
        console.print(Panel(body, title=qualified_name, border_style="green"))
        return 0

    error = result.error
    console.print(f"[red]{error.code}[/red]: {error.message}")
    return 1


def cmd_call(args: argparse.Namespace) -> int:
    """Invoke a capability by qualified name."""
    try:
        arguments = json.loads(args.args) if args.args else {}
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --args JSON: {e}[/red]")
        return 1
    if not isinstance(arguments, dict):
        console.print("[red]--args must be a JSON object.[/red]")
        return 1
    return asyncio.run(_call(load_settings(args), args.qualified_name, arguments, args.timeout))


def create_plugin_parser(
    subparsers: argparse._SubParsersAction,
    parents: Optional[List[argparse.ArgumentParser]] = None,
) -> None:
    """Add plugin subcommands to the argument parser.

    ``parents`` carries options every subcommand accepts, such as --plugins-dir.
    """
    parents = parents or []
    plugin_parser = subparsers.add_parser(
        "plugin",
        parents=parents,
        help="Inspect plugins",
        description="List, start, check and call plugin workers.",
    )

    plugin_sub = plugin_parser.add_subparsers(dest="plugin_cmd")

    # list
    p_list = plugin_sub.add_parser("list", help="List discovered plugins", parents=parents)
    p_list.set_defaults(func=cmd_list)

    # tools
    p_tools = plugin_sub.add_parser("tools", help="List capabilities of a plugin", parents=parents)
    p_tools.add_argument("name", help="Plugin name")
    p_tools.set_defaults(func=cmd_tools)

    # status
    p_status = plugin_sub.add_parser("status", help="Start all plugins and show their status", parents=parents)
    p_status.set_defaults(func=cmd_status)

    # doctor
    p_doctor = plugin_sub.add_parser("doctor", help="Check health of all plugins", parents=parents)
    p_doctor.set_defaults(func=cmd_doctor)

    # call
    p_call = plugin_sub.add_parser("call", help="Invoke a capability", parents=parents)
    p_call.add_argument("qualified_name", help="Capability name, e.g. hello-world.greet")
    p_call.add_argument("--args", help="Arguments as a JSON object")
    p_call.add_argument("--timeout", type=float, help="Call timeout in seconds")
    p_call.set_defaults(func=cmd_call)


def run_plugin_command(args: argparse.Namespace) -> int:
    """Run a plugin subcommand."""
    if not hasattr(args, "func"):
        # No subcommand given, show list by default
        return cmd_list(args)

    return args.func(args)
