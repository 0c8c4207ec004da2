"""Length-prefixed JSON protocol for single-instance coordination.

Every message travels as one frame:

    +----------------------+-------------------------------------------+
    | 4 bytes, big endian  | UTF-8 JSON body                           |
    | body length          | {"type": "<KIND>", "argument": <payload>} |
    +----------------------+-------------------------------------------+

Message kinds and their payloads:

    PING                          -> no payload
    PONG                          -> application identifier (str)
    SEND_COMMAND_LINE_ARGUMENTS   -> ordered list of strings (raw argv)
    FOCUS                         -> no payload
    OK                            -> no payload

The length header makes the stream self-delimiting, so argument strings may
contain any character (quotes, newlines, NUL) without extra escaping. Bodies
are written with JSON ``\\uXXXX`` escapes for non-ASCII characters, so argv
entries holding surrogate escapes (file names that are not valid UTF-8)
arrive unchanged.
"""

import json
import struct
from collections.abc import Sequence
from enum import Enum
from typing import Any, NamedTuple, Optional, Tuple, Union

from bibremote.remote.errors import DecodingError, EncodingError

# Identifier a running instance answers PING with.
APP_IDENTIFIER = "bibremote"

HEADER = struct.Struct("!I")

# Control messages are tiny; anything bigger is a confused or hostile peer.
MAX_MESSAGE_SIZE = 1024 * 1024

Payload = Union[None, str, Tuple[str, ...]]


class MessageKind(str, Enum):
    PING = "PING"
    PONG = "PONG"
    SEND_COMMAND_LINE_ARGUMENTS = "SEND_COMMAND_LINE_ARGUMENTS"
    FOCUS = "FOCUS"
    OK = "OK"


_EMPTY_KINDS = frozenset({MessageKind.PING, MessageKind.FOCUS, MessageKind.OK})


def _is_argument_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _check_payload(kind: MessageKind, payload: Any) -> Payload:
    """
    Validate a payload against its kind and return its canonical form.

    Raises:
        ValueError: If the payload has the wrong shape for ``kind``
    """
    if kind in _EMPTY_KINDS:
        if payload is not None:
            raise ValueError(
                f"{kind.value} carries no payload, got {type(payload).__name__}"
            )
        return None

    if kind is MessageKind.PONG:
        if not isinstance(payload, str):
            raise ValueError(
                f"PONG expects an identifier string, got {type(payload).__name__}"
            )
        return payload

    # SEND_COMMAND_LINE_ARGUMENTS
    if not _is_argument_sequence(payload):
        raise ValueError(
            f"{kind.value} expects a sequence of strings, got {type(payload).__name__}"
        )
    args = tuple(payload)
    for index, arg in enumerate(args):
        if not isinstance(arg, str):
            raise ValueError(
                f"{kind.value} argument {index} is {type(arg).__name__}, not str"
            )
    return args


class _EnvelopeFields(NamedTuple):
    kind: MessageKind
    payload: Payload = None


class Envelope(_EnvelopeFields):
    """
    One (kind, payload) pair.

    Construction validates the payload, so an Envelope with a payload that
    does not belong to its kind cannot exist. An Envelope is a tuple and
    compares equal to a plain ``(kind, payload)`` pair; argument payloads
    are compared by content, so ``["a"]`` and ``("a",)`` match.
    """

    __slots__ = ()

    def __new__(cls, kind: Any, payload: Any = None) -> "Envelope":
        try:
            kind = MessageKind(kind)
        except (ValueError, TypeError) as e:
            raise EncodingError(f"Unknown message kind: {kind!r}") from e
        try:
            payload = _check_payload(kind, payload)
        except ValueError as e:
            raise EncodingError(str(e)) from e
        return super().__new__(cls, kind, payload)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, tuple) or len(other) != 2:
            return NotImplemented
        kind, payload = other
        if isinstance(self.payload, tuple) and _is_argument_sequence(payload):
            payload = tuple(payload)
        return self.kind == kind and self.payload == payload

    def __ne__(self, other: Any) -> bool:
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    __hash__ = tuple.__hash__


def encode_body(envelope: Envelope) -> bytes:
    """Serialize an envelope to its JSON body (no length header)."""
    argument = envelope.payload
    if isinstance(argument, tuple):
        argument = list(argument)
    # ASCII escapes keep lone surrogates (undecodable argv bytes) intact.
    body = json.dumps(
        {"type": envelope.kind.value, "argument": argument}
    ).encode("utf-8")
    if len(body) > MAX_MESSAGE_SIZE:
        raise EncodingError(
            f"Message of {len(body)} bytes exceeds limit of {MAX_MESSAGE_SIZE}"
        )
    return body


def encode(kind: MessageKind, payload: Any = None) -> bytes:
    """
    Serialize one message to a complete frame.

    Args:
        kind: Message kind
        payload: Kind-specific payload (see module docstring)

    Returns:
        Length header followed by the JSON body

    Raises:
        EncodingError: If the payload does not match the kind
    """
    body = encode_body(Envelope(kind, payload))
    return HEADER.pack(len(body)) + body


def check_frame_length(length: int) -> int:
    """Reject length headers above MAX_MESSAGE_SIZE before reading the body."""
    if length > MAX_MESSAGE_SIZE:
        raise DecodingError(
            f"Frame length {length} exceeds limit of {MAX_MESSAGE_SIZE}"
        )
    return length


def decode_body(body: bytes) -> Envelope:
    """
    Deserialize a JSON body (without length header) into an Envelope.

    Raises:
        DecodingError: If the body is not JSON, has no known kind tag, or
            its payload does not match the kind
    """
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodingError(f"Malformed message body: {e}") from e

    if not isinstance(message, dict) or "type" not in message:
        raise DecodingError("Message has no 'type' tag")

    try:
        kind = MessageKind(message["type"])
    except (ValueError, TypeError) as e:
        raise DecodingError(f"Unknown message kind: {message['type']!r}") from e

    try:
        return Envelope(kind, message.get("argument"))
    except EncodingError as e:
        raise DecodingError(f"Invalid payload for {kind.value}: {e}") from e


def decode(data: bytes) -> Envelope:
    """
    Deserialize exactly one complete frame.

    Raises:
        DecodingError: If the frame is truncated, has trailing bytes, or its
            body is malformed
    """
    if len(data) < HEADER.size:
        raise DecodingError(
            f"Truncated header: {len(data)} of {HEADER.size} bytes"
        )
    (length,) = HEADER.unpack_from(data)
    check_frame_length(length)

    body = data[HEADER.size:]
    if len(body) < length:
        raise DecodingError(f"Truncated message: {len(body)} of {length} bytes")
    if len(body) > length:
        raise DecodingError(f"{len(body) - length} trailing bytes after message")
    return decode_body(body)


def describe(envelope: Optional[Envelope]) -> str:
    """Short human-readable form used in log messages."""
    if envelope is None:
        return "<none>"
    if envelope.payload is None:
        return envelope.kind.value
    return f"{envelope.kind.value}({envelope.payload!r})"
