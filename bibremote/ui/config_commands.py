"""
Configuration Management Commands

Interactive configuration wizard for the remote listener.
This module is lazy-loaded only when settings commands are used.
"""

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt
from rich.table import Table

from bibremote.core.configs import (
    CONFIG_PATH,
    RemotePreferences,
    get_remote_preferences,
    load_raw_config,
    parse_port,
    save_remote_preferences,
)

console = Console()


def handle_config(action: str) -> None:
    """
    Route to appropriate config action.

    Args:
        action: One of 'init' or 'show'
    """
    actions = {
        "init": init_config,
        "show": show_config,
    }

    if action not in actions:
        console.print(f"[red]Unknown action: {action}[/red]")
        console.print("Available actions: init, show")
        raise SystemExit(1)

    actions[action]()


def _current_preferences() -> RemotePreferences:
    try:
        return get_remote_preferences(load_raw_config())
    except ValueError as e:
        console.print(f"[yellow]Ignoring invalid configuration: {e}[/yellow]")
        return RemotePreferences()


def init_config() -> None:
    """Ask for port and enabled flag, then write the config file."""
    console.print(
        Panel.fit(
            "[bold blue]bibremote configuration[/bold blue]",
            title="Setup",
        )
    )
    current = _current_preferences()

    enabled = Confirm.ask(
        "Hand arguments over to an already running instance?",
        default=current.use_remote_server,
    )

    port = current.port
    while True:
        answer = IntPrompt.ask("Remote port", default=port)
        try:
            port = parse_port(answer)
            break
        except ValueError as e:
            console.print(f"[red]{e}[/red]")

    preferences = RemotePreferences(
        port=port,
        use_remote_server=enabled,
        timeout=current.timeout,
        identifier=current.identifier,
    )
    save_remote_preferences(preferences, CONFIG_PATH)
    console.print(f"[green]Config file saved at {CONFIG_PATH}[/green]")


def show_config() -> None:
    """Display the effective remote preferences."""
    preferences = _current_preferences()

    table = Table(title="Remote preferences")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Config file", str(CONFIG_PATH) if CONFIG_PATH.exists() else "(defaults)")
    table.add_row("Enabled", "yes" if preferences.use_remote_server else "no")
    table.add_row("Address", f"{preferences.host}:{preferences.port}")
    table.add_row("Timeout", f"{preferences.timeout:g}s")
    table.add_row("Identifier", preferences.identifier)
    console.print(table)
