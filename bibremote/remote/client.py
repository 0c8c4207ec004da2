"""Client side of the single-instance protocol.

A freshly started process uses this to find out whether another instance
is already listening and, if so, to hand its work over.

Usage:
    client = RemoteClient(port=6050)
    if client.ping():
        client.send_command_line_arguments(sys.argv[1:])
    else:
        # No running instance - start normally
        ...
"""

import logging
from typing import Sequence

from bibremote.remote.connection import DEFAULT_TIMEOUT, LOOPBACK_HOST, Connection
from bibremote.remote.errors import RemoteError
from bibremote.remote.protocol import APP_IDENTIFIER, MessageKind

logger = logging.getLogger(__name__)


class RemoteClient:
    """
    Talks to an already running instance.

    Every method opens its own connection, performs one exchange and
    reports a boolean. Nothing is retried and nothing is raised: "no
    running instance" is the common case, not an error.
    """

    def __init__(
        self,
        port: int,
        host: str = LOOPBACK_HOST,
        timeout: float = DEFAULT_TIMEOUT,
        identifier: str = APP_IDENTIFIER,
    ):
        """
        Initialize client.

        Args:
            port: Port the running instance listens on
            host: Loopback address of the running instance
            timeout: Seconds allowed for connect, send and receive each
            identifier: Identifier a genuine instance answers PING with
        """
        self.port = port
        self.host = host
        self.timeout = timeout
        self.identifier = identifier

    def ping(self) -> bool:
        """
        Check whether this application is listening on the port.

        Returns True only if the peer answers PONG with our identifier.
        """
        try:
            with self._open_connection() as connection:
                connection.send_message(MessageKind.PING)
                kind, payload = connection.receive_message()
        except RemoteError as e:
            logger.debug(f"Could not ping server at port {self.port}: {e}")
            return False

        if kind is MessageKind.PONG and payload == self.identifier:
            return True

        logger.error(
            f"Cannot use port {self.port} for remote operation; another "
            "application may be using it. Try specifying another port."
        )
        return False

    def send_command_line_arguments(self, args: Sequence[str]) -> bool:
        """
        Hand command line arguments to the running instance.

        Args:
            args: Raw argv (without program name), order preserved

        Returns:
            True if the running instance acknowledged with OK
        """
        args = list(args)
        try:
            with self._open_connection() as connection:
                connection.send_message(MessageKind.SEND_COMMAND_LINE_ARGUMENTS, args)
                kind, _ = connection.receive_message()
        except RemoteError as e:
            logger.debug(
                f"Could not send args {args} to the server at port {self.port}: {e}"
            )
            return False
        return kind is MessageKind.OK

    def send_focus(self) -> bool:
        """
        Ask the running instance to bring its main window to the front.

        Returns:
            True if the running instance acknowledged with OK
        """
        try:
            with self._open_connection() as connection:
                connection.send_message(MessageKind.FOCUS)
                kind, _ = connection.receive_message()
        except RemoteError as e:
            logger.debug(
                f"Could not send focus command to the server at port {self.port}: {e}"
            )
            return False
        return kind is MessageKind.OK

    def _open_connection(self) -> Connection:
        return Connection.open(self.host, self.port, self.timeout)
