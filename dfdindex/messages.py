"""Messages exchanged between clients, servers and workers, and their wire form."""

from __future__ import annotations

import socket
import struct
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Optional

from dfdindex.sourceinfo import SourceInfo

MAX_FRAME = 1 << 26

_U64 = struct.Struct(">Q")
_U32 = struct.Struct(">I")
_U16 = struct.Struct(">H")


class ProtocolError(Exception):
    """A message could not be encoded or decoded."""


class MessageType(IntEnum):
    """The first byte of every message."""

    FAIL = 0
    INDEX_REQUEST = 1
    INDEX_OK = 2
    DROP_REQUEST = 3
    DROP_OK = 4
    REREGISTER_REQUEST = 5
    REREGISTER_OK = 6
    SOURCE_REQUEST = 7
    SOURCE_LIST = 8
    INDEX_FORWARD = 9
    DROP_FORWARD = 10
    REREGISTER_FORWARD = 11
    SERVER_REG = 12
    SERVER_REG_RESPONSE = 13
    FORWARD_SERVER_REG = 14
    FORWARD_SERVER_OK = 15
    CLIENT_REG = 16
    CONTROL_REQUEST = 17
    CONTROL_OK = 18
    KEEP_ALIVE = 19
    ELECT_LEADER = 20
    ELECT_X = 21
    LEADER_X = 22
    BULLY = 23
    DOWNLOAD_INIT = 24
    DOWNLOAD_CONFIRM = 25
    REQUEST_CHUNK = 26
    DATA_CHUNK = 27
    FINISH_DOWNLOAD = 28
    MIGRATE_OK = 29


@dataclass(frozen=True)
class Message:
    """One message; only the fields its kind carries go on the wire."""

    kind: MessageType
    uuid: int = 0
    client_id: int = 0
    size: int = 0
    index: int = 0
    source: SourceInfo = field(default_factory=SourceInfo)
    sources: tuple[SourceInfo, ...] = ()
    text: str = ""
    data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", MessageType(self.kind))
        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(self, "data", bytes(self.data))


_INT_FIELDS = frozenset({"uuid", "client_id", "size", "index"})

_LAYOUTS: dict[MessageType, tuple[str, ...]] = {
    MessageType.FAIL: ("text",),
    MessageType.INDEX_REQUEST: ("uuid", "source", "size"),
    MessageType.INDEX_FORWARD: ("uuid", "source", "size"),
    MessageType.DROP_REQUEST: ("uuid", "client_id"),
    MessageType.DROP_FORWARD: ("uuid", "client_id"),
    MessageType.REREGISTER_REQUEST: ("source",),
    MessageType.REREGISTER_FORWARD: ("source",),
    MessageType.SOURCE_REQUEST: ("uuid",),
    MessageType.SOURCE_LIST: ("sources",),
    MessageType.SERVER_REG: ("source",),
    MessageType.FORWARD_SERVER_REG: ("source",),
    MessageType.SERVER_REG_RESPONSE: ("sources",),
    MessageType.CONTROL_REQUEST: ("uuid", "source"),
    MessageType.ELECT_X: ("index",),
    MessageType.LEADER_X: ("index",),
    MessageType.DOWNLOAD_CONFIRM: ("size", "text"),
    MessageType.REQUEST_CHUNK: ("index",),
    MessageType.DATA_CHUNK: ("index", "data"),
}

_FORWARDS = {
    MessageType.INDEX_REQUEST: MessageType.INDEX_FORWARD,
    MessageType.DROP_REQUEST: MessageType.DROP_FORWARD,
    MessageType.REREGISTER_REQUEST: MessageType.REREGISTER_FORWARD,
    MessageType.SERVER_REG: MessageType.FORWARD_SERVER_REG,
}


def fail_message(text: str) -> Message:
    """A failure reply carrying a human-readable reason."""
    return Message(MessageType.FAIL, text=text)


def to_forward(message: Message) -> Message:
    """The server-to-server version of a write or registration request."""
    if message.kind in _FORWARDS.values():
        return message
    try:
        return replace(message, kind=_FORWARDS[message.kind])
    except KeyError:
        raise ProtocolError(f"{message.kind.name} has no forwarded form") from None


def _pack(fmt: struct.Struct, value: int, what: str) -> bytes:
    try:
        return fmt.pack(value)
    except struct.error as exc:
        raise ProtocolError(f"{what} out of range: {value!r}") from exc


def _encode_source(source: SourceInfo) -> bytes:
    ip = source.ip_addr.encode()
    return (
        _pack(_U64, source.peer_id, "peer_id")
        + _pack(_U16, len(ip), "address length")
        + ip
        + _pack(_U16, source.port, "port")
    )


def encode_message(message: Message) -> bytes:
    """Serialise a message: its kind byte, then the fields its kind carries."""
    out = bytearray([message.kind])
    for name in _LAYOUTS.get(message.kind, ()):
        value = getattr(message, name)
        if name in _INT_FIELDS:
            out += _pack(_U64, value, name)
        elif name == "source":
            out += _encode_source(value)
        elif name == "sources":
            out += _pack(_U32, len(value), "source count")
            for source in value:
                out += _encode_source(source)
        elif name == "text":
            raw = value.encode()
            out += _pack(_U32, len(raw), "text length") + raw
        else:
            out += _pack(_U32, len(value), "data length") + value
    return bytes(out)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._pos = 0

    def take(self, count: int) -> bytes:
        end = self._pos + count
        if end > len(self._data):
            raise ProtocolError("message is truncated")
        chunk = bytes(self._data[self._pos:end])
        self._pos = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> int:
        return fmt.unpack(self.take(fmt.size))[0]

    def source(self) -> SourceInfo:
        peer_id = self.unpack(_U64)
        try:
            ip = self.take(self.unpack(_U16)).decode()
        except UnicodeDecodeError as exc:
            raise ProtocolError("address is not valid text") from exc
        port = self.unpack(_U16)
        return SourceInfo(peer_id, ip, port)

    def finished(self) -> bool:
        return self._pos == len(self._data)


def decode_message(data: bytes) -> Message:
    """Parse bytes produced by encode_message."""
    if not data:
        raise ProtocolError("empty message")
    try:
        kind = MessageType(data[0])
    except ValueError:
        raise ProtocolError(f"unknown message type {data[0]}") from None
    reader = _Reader(data[1:])
    fields: dict[str, object] = {}
    for name in _LAYOUTS.get(kind, ()):
        if name in _INT_FIELDS:
            fields[name] = reader.unpack(_U64)
        elif name == "source":
            fields[name] = reader.source()
        elif name == "sources":
            count = reader.unpack(_U32)
            fields[name] = tuple(reader.source() for _ in range(count))
        elif name == "text":
            try:
                fields[name] = reader.take(reader.unpack(_U32)).decode()
            except UnicodeDecodeError as exc:
                raise ProtocolError("text is not valid UTF-8") from exc
        else:
            fields[name] = reader.take(reader.unpack(_U32))
    if not reader.finished():
        raise ProtocolError("trailing bytes after message")
    return Message(kind, **fields)


def send_frame(sock: socket.socket, message: Message) -> None:
    """Send one length-prefixed message over a stream socket."""
    payload = encode_message(message)
    sock.sendall(_U32.pack(len(payload)) + payload)


def _recv_exact(sock: socket.socket, count: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < count:
        chunk = sock.recv(count - len(chunks))
        if not chunk:
            raise ConnectionError("connection closed by peer")
        chunks += chunk
    return bytes(chunks)


def recv_frame(sock: socket.socket, timeout: Optional[float] = None) -> Message:
    """Receive one length-prefixed message; raises TimeoutError when none arrives."""
    sock.settimeout(timeout)
    (length,) = _U32.unpack(_recv_exact(sock, _U32.size))
    if length > MAX_FRAME:
        raise ProtocolError(f"frame of {length} bytes is too large")
    return decode_message(_recv_exact(sock, length))