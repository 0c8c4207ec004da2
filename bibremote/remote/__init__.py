"""Remote coordination protocol for bibremote.

A newly started process talks to the already running (primary) instance
over a loopback TCP socket instead of opening a second instance.

Architecture:
- protocol: message kinds and length-prefixed JSON framing
- Connection: one socket, one timeout-bounded exchange
- RemoteClient: ping / forward arguments / request focus, boolean results
- RemoteListenerServer: asyncio listener answering those requests
"""

from bibremote.remote.client import RemoteClient
from bibremote.remote.connection import Connection
from bibremote.remote.errors import (
    ConnectError,
    DecodingError,
    EncodingError,
    RemoteError,
    RemoteIOError,
    RemoteTimeoutError,
)
from bibremote.remote.handler import MessageHandler
from bibremote.remote.protocol import Envelope, MessageKind, decode, encode
from bibremote.remote.server import RemoteListenerServer, RemoteListenerServerManager

__all__ = [
    "RemoteClient",
    "Connection",
    "ConnectError",
    "DecodingError",
    "EncodingError",
    "RemoteError",
    "RemoteIOError",
    "RemoteTimeoutError",
    "MessageHandler",
    "Envelope",
    "MessageKind",
    "decode",
    "encode",
    "RemoteListenerServer",
    "RemoteListenerServerManager",
]
