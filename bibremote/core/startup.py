"""Startup sequence: hand off to a running instance or become primary.

    1. PING the configured port.
    2. A live instance answered -> forward argv (or FOCUS when argv is
       empty) and let this process exit.
    3. Nobody answered -> bind the listener and continue as primary.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from bibremote.core.configs import RemotePreferences
from bibremote.remote.client import RemoteClient
from bibremote.remote.handler import MessageHandler
from bibremote.remote.server import RemoteListenerServerManager

logger = logging.getLogger(__name__)


class StartupOutcome(Enum):
    FORWARDED = "forwarded"    # a running instance took over, exit now
    PRIMARY = "primary"        # listener bound, this is the running instance
    STANDALONE = "standalone"  # no listener (disabled or port unusable)


@dataclass
class StartupResult:
    outcome: StartupOutcome
    manager: Optional[RemoteListenerServerManager] = None

    @property
    def should_exit(self) -> bool:
        return self.outcome is StartupOutcome.FORWARDED


def hand_off_or_become_primary(
    args: List[str],
    handler: MessageHandler,
    preferences: RemotePreferences,
    client_factory: Callable[..., RemoteClient] = RemoteClient,
) -> StartupResult:
    """
    Decide whether this process is the primary instance.

    Args:
        args: This process's command line arguments
        handler: Session that forwarded requests are applied to if primary
        preferences: Remote preferences (port, timeout, identifier)
        client_factory: RemoteClient constructor, replaceable in tests

    Returns:
        StartupResult; when PRIMARY, the caller owns result.manager and must
        stop() it on shutdown
    """
    if not preferences.use_remote_server:
        logger.debug("Remote operation disabled, starting standalone")
        return StartupResult(StartupOutcome.STANDALONE)

    client = client_factory(
        port=preferences.port,
        host=preferences.host,
        timeout=preferences.timeout,
        identifier=preferences.identifier,
    )

    if client.ping():
        if args:
            delivered = client.send_command_line_arguments(args)
        else:
            delivered = client.send_focus()
        if delivered:
            logger.info("Arguments passed on to running instance. Shutting down.")
            return StartupResult(StartupOutcome.FORWARDED)
        logger.warning("Could not communicate with other running instance.")

    manager = RemoteListenerServerManager(handler, preferences)
    if manager.start():
        return StartupResult(StartupOutcome.PRIMARY, manager)
    return StartupResult(StartupOutcome.STANDALONE)
