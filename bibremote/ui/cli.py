"""Main CLI entry point - one subcommand per protocol operation."""

import logging
import time
from dataclasses import replace
from typing import List, Optional

import typer

from bibremote.core.configs import RemotePreferences, get_remote_preferences, load_raw_config
from bibremote.remote.client import RemoteClient

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="bibremote - keep a single running instance and hand work over to it.",
)

PORT_OPTION_HELP = "Port of the running instance (overrides configuration)"


# ============================================================================
# Shared Setup
# ============================================================================

def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_preferences(port: Optional[int]) -> RemotePreferences:
    """Load remote preferences, applying a --port override. Exits on error."""
    try:
        preferences = get_remote_preferences(load_raw_config())
    except ValueError as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        typer.echo("Run 'bibremote settings init' to set up configuration", err=True)
        raise typer.Exit(1)

    if port is not None:
        preferences = replace(preferences, port=port)
    return preferences


def _client(preferences: RemotePreferences) -> RemoteClient:
    return RemoteClient(
        port=preferences.port,
        host=preferences.host,
        timeout=preferences.timeout,
        identifier=preferences.identifier,
    )


def _serve_until_interrupted(manager) -> None:
    try:
        while manager.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        typer.echo("Shutting down.", err=True)
    finally:
        manager.stop()


# ============================================================================
# Commands
# ============================================================================

@app.command()
def ping(
    port: Optional[int] = typer.Option(None, "--port", "-p", min=1, max=65535, help=PORT_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """
    Check whether an instance is running.

    Exit code 0 if a running instance answered, 1 otherwise.
    """
    _configure_logging(verbose)
    preferences = _load_preferences(port)

    if _client(preferences).ping():
        typer.echo(f"Running instance found on port {preferences.port}")
        return
    typer.echo(f"No running instance on port {preferences.port}", err=True)
    raise typer.Exit(1)


@app.command()
def send(
    args: List[str] = typer.Argument(..., help="Arguments to hand to the running instance"),
    port: Optional[int] = typer.Option(None, "--port", "-p", min=1, max=65535, help=PORT_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """
    Forward command line arguments to the running instance.

    Example: bibremote send -- --open /tmp/x.bib
    """
    _configure_logging(verbose)
    preferences = _load_preferences(port)

    if not _client(preferences).send_command_line_arguments(args):
        typer.echo("Running instance did not accept the arguments", err=True)
        raise typer.Exit(1)
    typer.echo(f"Forwarded {len(args)} argument(s)")


@app.command()
def focus(
    port: Optional[int] = typer.Option(None, "--port", "-p", min=1, max=65535, help=PORT_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Ask the running instance to bring its window to the front."""
    _configure_logging(verbose)
    preferences = _load_preferences(port)

    if not _client(preferences).send_focus():
        typer.echo("Running instance did not accept the focus request", err=True)
        raise typer.Exit(1)
    typer.echo("Focus requested")


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", min=1, max=65535, help="Port to listen on"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """
    Run as the primary instance until interrupted.

    Prints every forwarded argument list and focus request.
    """
    from bibremote.core.instance import RunningInstance
    from bibremote.remote.server import RemoteListenerServerManager

    _configure_logging(verbose)
    preferences = _load_preferences(port)

    instance = RunningInstance(
        on_arguments=lambda received: typer.echo(f"Arguments: {received}"),
        on_focus=lambda: typer.echo("Focus requested"),
    )
    manager = RemoteListenerServerManager(instance, preferences)
    if not manager.start():
        typer.echo(f"Cannot listen on port {preferences.port}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Listening on {preferences.host}:{manager.port} (Ctrl+C to stop)")
    _serve_until_interrupted(manager)


@app.command(name="open")
def open_(
    args: Optional[List[str]] = typer.Argument(None, help="Arguments for the application"),
    port: Optional[int] = typer.Option(None, "--port", "-p", min=1, max=65535, help=PORT_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """
    Start the application, or hand the arguments to one that is running.

    Example: bibremote open -- --open /tmp/x.bib
    """
    from bibremote.core.instance import RunningInstance
    from bibremote.core.startup import StartupOutcome, hand_off_or_become_primary

    _configure_logging(verbose)
    preferences = _load_preferences(port)
    args = list(args or [])

    instance = RunningInstance(
        on_arguments=lambda received: typer.echo(f"Arguments: {received}"),
        on_focus=lambda: typer.echo("Focus requested"),
    )
    result = hand_off_or_become_primary(args, instance, preferences)

    if result.should_exit:
        typer.echo("Handed over to the running instance.")
        return

    if args:
        instance.handle_command_line_arguments(args)

    if result.outcome is StartupOutcome.STANDALONE:
        typer.echo("Running without remote listener.", err=True)
        return

    typer.echo(f"Primary instance listening on {preferences.host}:{result.manager.port}")
    _serve_until_interrupted(result.manager)


@app.command()
def settings(
    action: str = typer.Argument(..., help="Action: init or show"),
) -> None:
    """
    Manage remote configuration.

    Actions:
        init - Interactive configuration wizard
        show - Display current configuration

    Lazy import config_commands to keep Rich out of the hand-off path.
    """
    from bibremote.ui.config_commands import handle_config
    handle_config(action)


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
