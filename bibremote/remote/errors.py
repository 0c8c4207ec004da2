"""Error taxonomy for the remote coordination protocol.

Every failure a single exchange can run into is one of these. Client
methods catch ``RemoteError`` and turn it into a ``False`` return value;
the listener catches it per connection and closes that connection.
"""


class RemoteError(Exception):
    """Base class for all remote protocol failures."""


class EncodingError(RemoteError):
    """Payload does not fit the message kind, or cannot be serialized."""


class DecodingError(RemoteError):
    """Bytes read from the peer are not a well-formed message."""


class ConnectError(RemoteError):
    """
    No connection could be established.

    ``reason`` is one of ``"refused"``, ``"timeout"`` or ``"unreachable"``.
    """

    REFUSED = "refused"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"

    def __init__(self, reason: str, host: str, port: int):
        self.reason = reason
        self.host = host
        self.port = port
        super().__init__(f"Cannot connect to {host}:{port} ({reason})")


class RemoteTimeoutError(RemoteError, TimeoutError):
    """Peer did not deliver (or accept) a complete message in time."""


class RemoteIOError(RemoteError, OSError):
    """Socket failed mid-exchange (reset, broken pipe, early close)."""
