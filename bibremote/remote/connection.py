"""Scoped, timeout-bounded TCP channel carrying protocol frames.

Usage:
    with Connection.open("127.0.0.1", 6050) as connection:
        connection.send_message(MessageKind.PING)
        envelope = connection.receive_message()
"""

import logging
import socket
from typing import Any, Optional

from bibremote.remote.errors import (
    ConnectError,
    RemoteIOError,
    RemoteTimeoutError,
)
from bibremote.remote.protocol import (
    HEADER,
    Envelope,
    MessageKind,
    check_frame_length,
    decode_body,
    encode,
)

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# Opening a large library can take a while before the peer answers.
DEFAULT_TIMEOUT = 120.0


class Connection:
    """
    One socket, one exchange.

    The same timeout bounds connect, send and receive. The socket is closed
    when the ``with`` block exits, whichever way it exits.
    """

    def __init__(self, sock: socket.socket, timeout: float = DEFAULT_TIMEOUT):
        self._sock: Optional[socket.socket] = sock
        self.timeout = timeout
        sock.settimeout(timeout)

    @classmethod
    def open(
        cls,
        host: str,
        port: int,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> "Connection":
        """
        Connect to ``host:port``.

        Raises:
            ConnectError: With reason "refused", "timeout" or "unreachable"
        """
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except ConnectionRefusedError as e:
            raise ConnectError(ConnectError.REFUSED, host, port) from e
        except socket.timeout as e:
            raise ConnectError(ConnectError.TIMEOUT, host, port) from e
        except OSError as e:
            raise ConnectError(ConnectError.UNREACHABLE, host, port) from e
        logger.debug(f"Connected to {host}:{port}")
        return cls(sock, timeout)

    @property
    def closed(self) -> bool:
        return self._sock is None

    def send_message(self, kind: MessageKind, payload: Any = None) -> None:
        """
        Encode and write one message.

        Raises:
            EncodingError: If the payload does not match the kind
            RemoteTimeoutError: If the peer does not accept the bytes in time
            RemoteIOError: On broken pipe or reset
        """
        data = encode(kind, payload)
        sock = self._require_socket()
        try:
            sock.sendall(data)
        except socket.timeout as e:
            raise RemoteTimeoutError(f"Timed out sending {kind.value}") from e
        except OSError as e:
            raise RemoteIOError(f"Failed to send {kind.value}: {e}") from e

    def receive_message(self) -> Envelope:
        """
        Block until one complete message has been read.

        Raises:
            RemoteTimeoutError: If no complete message arrives in time
            RemoteIOError: On reset, or if the peer closes mid-message
            DecodingError: If the message is malformed
        """
        (length,) = HEADER.unpack(self._recv_exact(HEADER.size))
        check_frame_length(length)
        return decode_body(self._recv_exact(length))

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        finally:
            self._sock = None

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise RemoteIOError("Connection is closed")
        return self._sock

    def _recv_exact(self, size: int) -> bytes:
        sock = self._require_socket()
        buffer = bytearray()
        while len(buffer) < size:
            try:
                chunk = sock.recv(size - len(buffer))
            except socket.timeout as e:
                raise RemoteTimeoutError(
                    f"No complete message within {self.timeout}s"
                ) from e
            except OSError as e:
                raise RemoteIOError(f"Failed to receive message: {e}") from e
            if not chunk:
                raise RemoteIOError(
                    f"Peer closed connection after {len(buffer)} of {size} bytes"
                )
            buffer.extend(chunk)
        return bytes(buffer)
