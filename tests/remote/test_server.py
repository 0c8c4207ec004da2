"""
Tests for remote/server.py - loopback listener and its background manager.

These tests validate dispatch per message kind, serialized application of
concurrent requests, and that one misbehaving peer never takes the listener
down.
"""

import socket
import threading
import time
import unittest
from typing import List

from bibremote.core.configs import RemotePreferences
from bibremote.remote.client import RemoteClient
from bibremote.remote.handler import MessageHandler
from bibremote.remote.protocol import HEADER, MessageKind, decode, encode
from bibremote.remote.server import (
    RemoteListenerServer,
    RemoteListenerServerManager,
    is_loopback,
)


class RecordingHandler(MessageHandler):
    """Records every argument one at a time, slowly, to expose interleaving."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.events: List[str] = []
        self.focus_count = 0

    def handle_command_line_arguments(self, args: List[str]) -> None:
        for arg in args:
            self.events.append(arg)
            time.sleep(self.delay)

    def handle_focus(self) -> None:
        self.focus_count += 1


class FailingHandler(MessageHandler):

    def handle_command_line_arguments(self, args: List[str]) -> None:
        raise RuntimeError("cannot open library")

    def handle_focus(self) -> None:
        raise RuntimeError("no window")


def _recv_all(sock: socket.socket) -> bytes:
    data = b""
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk


class ServerTestCase(unittest.TestCase):

    def start_manager(self, handler, timeout: float = 5.0, **kwargs) -> RemoteListenerServerManager:
        manager = RemoteListenerServerManager(
            handler,
            RemotePreferences(port=0, timeout=timeout, **kwargs),
        )
        self.assertTrue(manager.start())
        self.addCleanup(manager.stop)
        return manager

    def raw_connection(self, port: int, timeout: float = 5.0) -> socket.socket:
        sock = socket.create_connection(("127.0.0.1", port), timeout=timeout)
        self.addCleanup(sock.close)
        return sock


class TestDispatch(ServerTestCase):

    def setUp(self):
        self.handler = RecordingHandler()
        self.manager = self.start_manager(self.handler)
        self.port = self.manager.port

    def test_ping_answers_pong_with_identifier(self):
        sock = self.raw_connection(self.port)
        sock.sendall(encode(MessageKind.PING))
        self.assertEqual(decode(_recv_all(sock)), (MessageKind.PONG, "bibremote"))

    def test_arguments_reach_handler_then_ok(self):
        sock = self.raw_connection(self.port)
        sock.sendall(encode(MessageKind.SEND_COMMAND_LINE_ARGUMENTS, ["--open", "/tmp/x.bib"]))
        self.assertIs(decode(_recv_all(sock)).kind, MessageKind.OK)
        self.assertEqual(self.handler.events, ["--open", "/tmp/x.bib"])

    def test_focus_reaches_handler_then_ok(self):
        sock = self.raw_connection(self.port)
        sock.sendall(encode(MessageKind.FOCUS))
        self.assertIs(decode(_recv_all(sock)).kind, MessageKind.OK)
        self.assertEqual(self.handler.focus_count, 1)

    def test_one_exchange_per_connection(self):
        sock = self.raw_connection(self.port)
        sock.sendall(encode(MessageKind.PING))
        # decode() rejects trailing bytes: exactly one reply, then EOF
        reply = _recv_all(sock)
        self.assertEqual(decode(reply), (MessageKind.PONG, "bibremote"))
        self.assertEqual(self.manager.server.connection_count, 1)

    def test_reply_kinds_are_not_answered(self):
        for kind, payload in ((MessageKind.OK, None), (MessageKind.PONG, "bibremote")):
            with self.subTest(kind=kind):
                sock = self.raw_connection(self.port)
                sock.sendall(encode(kind, payload))
                self.assertEqual(_recv_all(sock), b"")
        self.assertTrue(RemoteClient(port=self.port, timeout=5.0).ping())

    def test_malformed_message_closes_connection(self):
        body = b'{"type": "SHUTDOWN"}'
        for data in (b"\x00\x00\x00\x05hello", HEADER.pack(len(body)) + body, b"\xff\xff\xff\xff"):
            with self.subTest(data=data):
                sock = self.raw_connection(self.port)
                sock.sendall(data)
                self.assertEqual(_recv_all(sock), b"")
        self.assertTrue(RemoteClient(port=self.port, timeout=5.0).ping())


class TestConcurrency(ServerTestCase):

    def test_concurrent_argument_forwarding_is_not_interleaved(self):
        handler = RecordingHandler(delay=0.02)
        manager = self.start_manager(handler)
        first = [f"a{i}" for i in range(10)]
        second = [f"b{i}" for i in range(10)]
        results = {}

        def send(name, args):
            client = RemoteClient(port=manager.port, timeout=10.0)
            results[name] = client.send_command_line_arguments(args)

        threads = [
            threading.Thread(target=send, args=("first", first)),
            threading.Thread(target=send, args=("second", second)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(results, {"first": True, "second": True})
        self.assertIn(handler.events, (first + second, second + first))

    def test_stalled_connection_does_not_block_others(self):
        manager = self.start_manager(RecordingHandler(), timeout=0.5)

        stalled = self.raw_connection(manager.port)
        stalled.sendall(HEADER.pack(100)[:2])

        start = time.monotonic()
        self.assertTrue(RemoteClient(port=manager.port, timeout=5.0).ping())
        self.assertLess(time.monotonic() - start, 0.5)

        self.assertEqual(_recv_all(stalled), b"")
        self.assertTrue(RemoteClient(port=manager.port, timeout=5.0).send_focus())

    def test_slow_handler_does_not_block_ping(self):
        handler = RecordingHandler(delay=0.5)
        manager = self.start_manager(handler)

        sender = threading.Thread(
            target=RemoteClient(port=manager.port, timeout=10.0).send_command_line_arguments,
            args=(["slow.bib"],),
        )
        sender.start()
        time.sleep(0.1)

        start = time.monotonic()
        self.assertTrue(RemoteClient(port=manager.port, timeout=5.0).ping())
        self.assertLess(time.monotonic() - start, 0.4)
        sender.join(timeout=5)


class TestHandlerFailure(ServerTestCase):

    def test_failing_handler_gets_no_ok(self):
        manager = self.start_manager(FailingHandler())
        client = RemoteClient(port=manager.port, timeout=5.0)
        with self.assertLogs("bibremote.remote.server", level="ERROR"):
            self.assertFalse(client.send_command_line_arguments(["x.bib"]))
        self.assertFalse(client.send_focus())
        self.assertTrue(client.ping())


class TestManagerLifecycle(ServerTestCase):

    def test_port_in_use(self):
        first = self.start_manager(RecordingHandler())
        second = RemoteListenerServerManager(
            RecordingHandler(),
            RemotePreferences(port=first.port, timeout=5.0),
        )
        self.assertFalse(second.start())
        self.assertFalse(second.is_running)
        self.assertTrue(first.is_running)

    def test_stop_releases_port(self):
        manager = RemoteListenerServerManager(
            RecordingHandler(),
            RemotePreferences(port=0, timeout=5.0),
        )
        self.assertTrue(manager.start())
        port = manager.port
        self.assertTrue(RemoteClient(port=port, timeout=5.0).ping())

        manager.stop()
        manager.stop()
        self.assertFalse(manager.is_running)
        self.assertFalse(RemoteClient(port=port, timeout=2.0).ping())

    def test_stop_with_connection_in_flight(self):
        manager = RemoteListenerServerManager(
            RecordingHandler(),
            RemotePreferences(port=0, timeout=30.0),
        )
        self.assertTrue(manager.start())
        stalled = self.raw_connection(manager.port)
        stalled.sendall(b"\x00")
        time.sleep(0.1)

        start = time.monotonic()
        manager.stop()
        self.assertLess(time.monotonic() - start, 5.0)
        self.assertEqual(_recv_all(stalled), b"")

    def test_start_twice_is_harmless(self):
        manager = self.start_manager(RecordingHandler())
        port = manager.port
        self.assertTrue(manager.start())
        self.assertEqual(manager.port, port)


class TestLoopbackOnly(unittest.TestCase):

    def test_is_loopback(self):
        self.assertTrue(is_loopback("127.0.0.1"))
        self.assertTrue(is_loopback("::1"))
        self.assertTrue(is_loopback("localhost"))
        self.assertFalse(is_loopback("0.0.0.0"))
        self.assertFalse(is_loopback("192.168.1.10"))
        self.assertFalse(is_loopback("example.org"))

    def test_refuses_wildcard_address(self):
        with self.assertRaises(ValueError):
            RemoteListenerServer(RecordingHandler(), port=0, host="0.0.0.0")


if __name__ == "__main__":
    unittest.main()
