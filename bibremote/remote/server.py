"""Async loopback TCP listener for the primary instance.

The primary instance binds the configured port at startup and answers:

    PING                         -> PONG + identifier
    SEND_COMMAND_LINE_ARGUMENTS  -> handler.handle_command_line_arguments(args), OK
    FOCUS                        -> handler.handle_focus(), OK

Each accepted connection carries exactly one exchange. Connections are
handled concurrently; calls into the handler are serialized.

Usage:
    manager = RemoteListenerServerManager(handler, preferences)
    if manager.start():
        ...  # run the application
        manager.stop()
"""

import asyncio
import ipaddress
import logging
import threading
from collections import Counter
from enum import Enum
from typing import Any, Callable, Optional, Set, Tuple

from bibremote.remote.connection import DEFAULT_TIMEOUT, LOOPBACK_HOST
from bibremote.remote.errors import DecodingError
from bibremote.remote.handler import MessageHandler
from bibremote.remote.protocol import (
    APP_IDENTIFIER,
    HEADER,
    Envelope,
    MessageKind,
    check_frame_length,
    decode_body,
    describe,
    encode,
)

logger = logging.getLogger(__name__)

Reply = Tuple[MessageKind, Any]


class ConnectionState(Enum):
    """Lifecycle of one accepted connection."""

    AWAITING_MESSAGE = "awaiting_message"
    DISPATCHING = "dispatching"
    REPLIED = "replied"
    CLOSED = "closed"


def is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class RemoteListenerServer:
    """
    Asyncio server answering single-instance requests.

    Must be started and stopped from within the event loop that runs it.
    """

    def __init__(
        self,
        handler: MessageHandler,
        port: int,
        host: str = LOOPBACK_HOST,
        timeout: float = DEFAULT_TIMEOUT,
        identifier: str = APP_IDENTIFIER,
    ):
        """
        Initialize listener.

        Args:
            handler: Running application the requests are applied to
            port: Port to bind (0 picks a free ephemeral port)
            host: Loopback address to bind
            timeout: Seconds a client may take to deliver its request
            identifier: Identifier sent back in PONG

        Raises:
            ValueError: If host is not a loopback address
        """
        if not is_loopback(host):
            raise ValueError(f"Refusing to listen on non-loopback address {host!r}")

        self.handler = handler
        self.port = port
        self.host = host
        self.timeout = timeout
        self.identifier = identifier

        self.server: Optional[asyncio.Server] = None
        self.connection_count: int = 0
        self.request_counts: Counter = Counter()
        self._dispatch_lock: Optional[asyncio.Lock] = None
        self._clients: Set[asyncio.Task] = set()

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually bound, or None before start()."""
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """
        Bind and start accepting connections.

        Raises:
            OSError: If the port cannot be bound (usually already in use)
        """
        self._dispatch_lock = asyncio.Lock()
        self.server = await asyncio.start_server(
            self._handle_client,
            host=self.host,
            port=self.port,
        )
        logger.info(f"Remote listener bound to {self.host}:{self.bound_port}")

    async def stop(self) -> None:
        """Stop accepting, drop in-flight connections and release the port."""
        if self.server is None:
            return

        self.server.close()

        clients = list(self._clients)
        for task in clients:
            task.cancel()
        if clients:
            await asyncio.gather(*clients, return_exceptions=True)

        await self.server.wait_closed()
        self.server = None
        logger.info("Remote listener stopped")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single client connection: one request, one reply."""
        task = asyncio.current_task()
        if task is not None:
            self._clients.add(task)
        self.connection_count += 1

        peer = writer.get_extra_info("peername")
        state = ConnectionState.AWAITING_MESSAGE
        try:
            envelope = await asyncio.wait_for(
                self._read_envelope(reader),
                timeout=self.timeout,
            )
            logger.debug(f"Received {describe(envelope)} from {peer}")
            self.request_counts[envelope.kind] += 1

            state = ConnectionState.DISPATCHING
            reply = await self._dispatch(envelope)
            if reply is None:
                return

            writer.write(encode(*reply))
            await asyncio.wait_for(writer.drain(), timeout=self.timeout)
            state = ConnectionState.REPLIED

        except asyncio.TimeoutError:
            logger.warning(f"Remote client {peer} timed out ({state.value})")
        except DecodingError as e:
            logger.warning(f"Malformed message from {peer}: {e}")
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            logger.debug(f"Remote client {peer} went away ({state.value}): {e}")
        except Exception as e:
            logger.exception(f"Error handling remote client {peer}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing connection to {peer}: {e}")
            logger.debug(
                f"Connection from {peer} {ConnectionState.CLOSED.value} "
                f"after {state.value}"
            )
            if task is not None:
                self._clients.discard(task)

    async def _read_envelope(self, reader: asyncio.StreamReader) -> Envelope:
        (length,) = HEADER.unpack(await reader.readexactly(HEADER.size))
        check_frame_length(length)
        return decode_body(await reader.readexactly(length))

    async def _dispatch(self, envelope: Envelope) -> Optional[Reply]:
        """Route a request to the handler and build its reply (None = no reply)."""
        kind = envelope.kind
        if kind is MessageKind.PING:
            return MessageKind.PONG, self.identifier
        elif kind is MessageKind.SEND_COMMAND_LINE_ARGUMENTS:
            await self._apply(
                self.handler.handle_command_line_arguments,
                list(envelope.payload),
            )
            return MessageKind.OK, None
        elif kind is MessageKind.FOCUS:
            await self._apply(self.handler.handle_focus)
            return MessageKind.OK, None
        else:
            # PONG and OK are replies; a client sending them is confused.
            logger.warning(f"Unexpected {kind.value} request, closing without reply")
            return None

    async def _apply(self, func: Callable[..., None], *args: Any) -> None:
        """Run a handler call off the event loop, one at a time."""
        async with self._dispatch_lock:
            await asyncio.to_thread(func, *args)


class RemoteListenerServerManager:
    """
    Runs a RemoteListenerServer on a background thread.

    The host application keeps its own main loop; the listener gets a
    private asyncio loop on a daemon thread.
    """

    def __init__(self, handler: MessageHandler, preferences: Any):
        """
        Args:
            handler: Running application the requests are applied to
            preferences: RemotePreferences (port, host, timeout, identifier)
        """
        self.handler = handler
        self.preferences = preferences

        self.server: Optional[RemoteListenerServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._start_error: Optional[OSError] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def port(self) -> int:
        """Bound port while running, configured port otherwise."""
        if self.server is not None and self.server.bound_port is not None:
            return self.server.bound_port
        return self.preferences.port

    def start(self) -> bool:
        """
        Bind the port and start serving in the background.

        Returns:
            True if the listener is running, False if the port could not be bound
        """
        if self.is_running:
            return True

        self.server = RemoteListenerServer(
            self.handler,
            port=self.preferences.port,
            host=self.preferences.host,
            timeout=self.preferences.timeout,
            identifier=self.preferences.identifier,
        )
        self._loop = asyncio.new_event_loop()
        self._ready.clear()
        self._start_error = None

        self._thread = threading.Thread(
            target=self._run,
            name="bibremote-listener",
            daemon=True,
        )
        self._thread.start()
        self._ready.wait()

        if self._start_error is not None:
            self._thread.join()
            self._thread = None
            self.server = None
            logger.error(
                f"Cannot listen on port {self.preferences.port} for remote "
                f"operation: {self._start_error}"
            )
            return False
        return True

    def stop(self) -> None:
        """Stop the listener and wait for its thread to finish."""
        if self._thread is None:
            return
        if self._loop is not None and self._thread.is_alive():
            self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join()
        self._thread = None
        self.server = None

    def _run(self) -> None:
        loop = self._loop
        asyncio.set_event_loop(loop)
        try:
            try:
                loop.run_until_complete(self.server.start())
            except OSError as e:
                self._start_error = e
                return
            finally:
                self._ready.set()

            loop.run_forever()
            loop.run_until_complete(self.server.stop())
        finally:
            loop.close()
