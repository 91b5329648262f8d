"""Forwarding of writes and registrations to the other known servers."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import MutableSequence, Sequence

from dfdindex.messages import (
    Message,
    MessageType,
    ProtocolError,
    recv_frame,
    send_frame,
    to_forward,
)
from dfdindex.sourceinfo import SourceInfo

log = logging.getLogger(__name__)

FORWARD_TIMEOUT = 2.0
_ATTEMPTS = 2


def _exchange(server: SourceInfo, message: Message, timeout: float) -> Message:
    with socket.create_connection((server.ip_addr, server.port), timeout=timeout) as sock:
        send_frame(sock, message)
        while True:
            reply = recv_frame(sock, timeout)
            if reply.kind != MessageType.KEEP_ALIVE:
                return reply


def forward_registration(
    message: Message,
    servers: Sequence[SourceInfo],
    timeout: float = FORWARD_TIMEOUT,
) -> int:
    """Tell every known server about a new one; return how many acknowledged."""
    if message.kind != MessageType.SERVER_REG:
        raise ProtocolError(f"expected SERVER_REG, got {message.kind.name}")
    forward = to_forward(message)
    registered = 0
    for server in servers:
        try:
            reply = _exchange(server, forward, timeout)
        except (OSError, ProtocolError) as exc:
            log.debug("registration forward to %s:%s failed: %s", server.ip_addr, server.port, exc)
            continue
        if reply.kind == MessageType.FORWARD_SERVER_OK:
            registered += 1
    return registered


def forward_request(
    message: Message,
    servers: Sequence[SourceInfo],
    expected_kind: MessageType,
    ok_kind: MessageType,
    timeout: float = FORWARD_TIMEOUT,
) -> list[SourceInfo]:
    """Send a write request to every server as a forward; return those that never acknowledged."""
    if message.kind != expected_kind:
        return list(servers)
    try:
        forward = to_forward(message)
    except ProtocolError:
        return list(servers)
    failed = []
    for server in servers:
        success = False
        for _ in range(_ATTEMPTS):
            try:
                reply = _exchange(server, forward, timeout)
            except (OSError, ProtocolError):
                continue
            if reply.kind == ok_kind:
                success = True
                break
        if not success:
            failed.append(server)
    return failed


def forward_index_request(
    message: Message, servers: Sequence[SourceInfo], timeout: float = FORWARD_TIMEOUT
) -> list[SourceInfo]:
    """Forward an index request; return the servers that failed."""
    if not servers:
        return []
    return forward_request(message, servers, MessageType.INDEX_REQUEST, MessageType.INDEX_OK, timeout)


def forward_drop_request(
    message: Message, servers: Sequence[SourceInfo], timeout: float = FORWARD_TIMEOUT
) -> list[SourceInfo]:
    """Forward a drop request; return the servers that failed."""
    if not servers:
        return []
    return forward_request(message, servers, MessageType.DROP_REQUEST, MessageType.DROP_OK, timeout)


def forward_reregister_request(
    message: Message, servers: Sequence[SourceInfo], timeout: float = FORWARD_TIMEOUT
) -> list[SourceInfo]:
    """Forward a reregister request; return the servers that failed."""
    if not servers:
        return []
    return forward_request(
        message, servers, MessageType.REREGISTER_REQUEST, MessageType.REREGISTER_OK, timeout
    )


def remove_failed_servers(
    known_servers: MutableSequence[SourceInfo],
    failed_servers: Sequence[SourceInfo],
    lock: threading.Lock,
) -> int:
    """Drop from known_servers every server whose address is among the failed; return how many."""
    failed = {(server.ip_addr, server.port) for server in failed_servers}
    for server in failed_servers:
        log.info("dropping unreachable server %s %s %s", server.ip_addr, server.port, server.peer_id)
    with lock:
        kept = [s for s in known_servers if (s.ip_addr, s.port) not in failed]
        removed = len(known_servers) - len(kept)
        known_servers[:] = kept
    return removed