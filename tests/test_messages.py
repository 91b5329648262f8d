import socket

import pytest

from dfdindex.messages import (
    MAX_FRAME,
    Message,
    MessageType,
    ProtocolError,
    decode_message,
    encode_message,
    fail_message,
    recv_frame,
    send_frame,
    to_forward,
)
from dfdindex.sourceinfo import SourceInfo

PEER = SourceInfo(peer_id=7, ip_addr="10.0.0.5", port=4040)
OTHER = SourceInfo(peer_id=9, ip_addr="10.0.0.6", port=5050)

SAMPLES = [
    fail_message("Invalid message type."),
    Message(MessageType.INDEX_REQUEST, uuid=123, source=PEER, size=2048),
    Message(MessageType.INDEX_FORWARD, uuid=123, source=PEER, size=2048),
    Message(MessageType.DROP_REQUEST, uuid=11, client_id=22),
    Message(MessageType.REREGISTER_REQUEST, source=PEER),
    Message(MessageType.SOURCE_REQUEST, uuid=2**64 - 1),
    Message(MessageType.SOURCE_LIST, sources=(PEER, OTHER)),
    Message(MessageType.SERVER_REG_RESPONSE, sources=()),
    Message(MessageType.SERVER_REG, source=OTHER),
    Message(MessageType.CONTROL_REQUEST, uuid=5, source=PEER),
    Message(MessageType.ELECT_X, index=3),
    Message(MessageType.LEADER_X, index=1),
    Message(MessageType.DOWNLOAD_CONFIRM, size=999, text="temp.db"),
    Message(MessageType.REQUEST_CHUNK, index=4),
    Message(MessageType.DATA_CHUNK, index=4, data=b"\x00\x01chunk"),
    Message(MessageType.KEEP_ALIVE),
]


@pytest.mark.parametrize("message", SAMPLES)
def test_round_trip(message):
    assert decode_message(encode_message(message)) == message


@pytest.mark.parametrize("kind", list(MessageType))
def test_first_byte_is_kind(kind):
    encoded = encode_message(Message(kind))
    assert encoded[0] == kind
    assert decode_message(encoded) == Message(kind)


def test_fail_kind_is_zero():
    assert encode_message(fail_message("no")) == b"\x00\x00\x00\x00\x02no"


def test_fields_outside_layout_are_dropped():
    message = Message(MessageType.SOURCE_REQUEST, uuid=5, text="ignored", index=3)
    assert decode_message(encode_message(message)) == Message(MessageType.SOURCE_REQUEST, uuid=5)


def test_decode_empty():
    with pytest.raises(ProtocolError):
        decode_message(b"")


def test_decode_unknown_kind():
    with pytest.raises(ProtocolError):
        decode_message(bytes([255]))


def test_decode_truncated():
    encoded = encode_message(SAMPLES[1])
    with pytest.raises(ProtocolError):
        decode_message(encoded[:-1])


def test_decode_trailing_bytes():
    with pytest.raises(ProtocolError):
        decode_message(encode_message(Message(MessageType.INDEX_OK)) + b"x")


def test_encode_negative_uuid():
    with pytest.raises(ProtocolError):
        encode_message(Message(MessageType.SOURCE_REQUEST, uuid=-1))


@pytest.mark.parametrize(
    "kind, forward",
    [
        (MessageType.INDEX_REQUEST, MessageType.INDEX_FORWARD),
        (MessageType.DROP_REQUEST, MessageType.DROP_FORWARD),
        (MessageType.REREGISTER_REQUEST, MessageType.REREGISTER_FORWARD),
        (MessageType.SERVER_REG, MessageType.FORWARD_SERVER_REG),
        (MessageType.INDEX_FORWARD, MessageType.INDEX_FORWARD),
    ],
)
def test_to_forward(kind, forward):
    message = Message(kind, uuid=42, source=PEER)
    result = to_forward(message)
    assert result.kind == forward
    assert result.uuid == 42
    assert result.source == PEER


def test_to_forward_rejects_reads():
    with pytest.raises(ProtocolError):
        to_forward(Message(MessageType.SOURCE_REQUEST, uuid=1))


def test_frames_over_socketpair():
    left, right = socket.socketpair()
    with left, right:
        for message in SAMPLES[:4]:
            send_frame(left, message)
        received = [recv_frame(right, 1.0) for _ in range(4)]
    assert received == SAMPLES[:4]


def test_recv_frame_closed_peer():
    left, right = socket.socketpair()
    with right:
        left.close()
        with pytest.raises(ConnectionError):
            recv_frame(right, 1.0)


def test_recv_frame_timeout():
    left, right = socket.socketpair()
    with left, right:
        with pytest.raises(TimeoutError):
            recv_frame(right, 0.05)


def test_recv_frame_too_large():
    left, right = socket.socketpair()
    with left, right:
        left.sendall((MAX_FRAME + 1).to_bytes(4, "big"))
        with pytest.raises(ProtocolError):
            recv_frame(right, 1.0)