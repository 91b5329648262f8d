"""Bully election among the read workers, used to pick a new write leader."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable, MutableSequence
from typing import Optional

from dfdindex.messages import (
    Message,
    MessageType,
    ProtocolError,
    decode_message,
    encode_message,
)

log = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
_DATAGRAM = 65535

_Address = tuple[str, int]
_Received = tuple[Optional[Message], _Address]


class ElectionNode:
    """One read worker's election listener.

    Each node owns a UDP socket whose port is published in ``listeners`` at the
    node's index.  When an election is called, the node challenges every node
    with a higher index; if none of them bullies it in time, it announces
    itself as leader to the requester.
    """

    response_timeout = 0.05
    polling_timeout = 0.05
    clearing_timeout = 0.01

    def __init__(
        self,
        index: int,
        sock: socket.socket,
        listeners: MutableSequence[int],
    ) -> None:
        self.index = index
        self.requester_port = 0
        self._sock = sock
        self._listeners = listeners
        self._call = threading.Event()
        listeners[index] = sock.getsockname()[1]

    def request_election(self, requester_port: int) -> None:
        """Ask this node to start an election and report the leader to a port."""
        self.requester_port = requester_port
        self._call.set()

    def _send_to(self, address: _Address, message: Message) -> None:
        try:
            self._sock.sendto(encode_message(message), address)
        except OSError as exc:
            log.debug("election node %d could not send to %s: %s", self.index, address, exc)

    def _send(self, port: int, message: Message) -> None:
        if port:
            self._send_to((LOCALHOST, port), message)

    def _receive(self, timeout: float) -> Optional[_Received]:
        self._sock.settimeout(timeout)
        try:
            data, sender = self._sock.recvfrom(_DATAGRAM)
        except OSError:
            return None
        try:
            return decode_message(data), sender
        except ProtocolError:
            return None, sender

    def _hold_election(self) -> None:
        challenge = Message(MessageType.ELECT_X, index=self.index)
        while True:
            for port in self._listeners[self.index + 1:]:
                self._send(port, challenge)
            received = self._receive(self.response_timeout)
            if received is None:
                self._send(self.requester_port, Message(MessageType.LEADER_X, index=self.index))
                return
            message, sender = received
            if message is None:
                continue
            if message.kind == MessageType.BULLY:
                while self._receive(self.clearing_timeout) is not None:
                    pass
                return
            if message.kind == MessageType.ELECT_X and message.index < self.index:
                self._send_to(sender, Message(MessageType.BULLY))

    def run(self, running: Callable[[], bool], alive: Callable[[], bool]) -> None:
        """Serve elections while both zero-argument callables return true."""
        in_election = False
        while running() and alive():
            if self._call.is_set() or in_election:
                self._call.clear()
                in_election = False
                self._hold_election()
                continue
            received = self._receive(self.polling_timeout)
            if received is None:
                continue
            message, sender = received
            if message is not None and message.kind == MessageType.ELECT_X:
                self._send_to(sender, Message(MessageType.BULLY))
                in_election = True