"""The server's long-running loops: workers, the control loop and the client listener."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from os import PathLike
from typing import Optional, Union

from dfdindex.connection import LOCALHOST, WorkerRegistry, handle_client
from dfdindex.database import Database
from dfdindex.election import ElectionNode
from dfdindex.messages import (
    Message,
    MessageType,
    ProtocolError,
    decode_message,
    encode_message,
    fail_message,
    recv_frame,
    send_frame,
)
from dfdindex.sourceinfo import SourceInfo
from dfdindex.worker_actions import (
    MessageRecorder,
    handle_drop_request,
    handle_index_request,
    handle_reregister_request,
    handle_server_registration,
    handle_source_request,
)

log = logging.getLogger(__name__)

WORKER_POLL = 0.05
ELECTION_SETTLE = 0.1
CONTROL_POLL = 0.2
CONTROL_ATTEMPTS = 3
CONTROL_TIMEOUT = 5.0
ACCEPT_POLL = 0.2
LISTEN_BACKLOG = 10

_DATAGRAM = 65535
_INVALID_KIND = "Invalid message type."

StrPath = Union[str, "PathLike[str]"]

_WRITE_KINDS = frozenset(
    {
        MessageType.INDEX_REQUEST,
        MessageType.INDEX_FORWARD,
        MessageType.DROP_REQUEST,
        MessageType.DROP_FORWARD,
        MessageType.REREGISTER_REQUEST,
        MessageType.REREGISTER_FORWARD,
    }
)
_ELECTION_CHATTER = frozenset({MessageType.ELECT_X, MessageType.LEADER_X})


@dataclass
class ServerContext:
    """Everything the server's threads share.

    ``setup_workers`` and ``setup_election_workers`` count the workers and
    election listeners that are ready; they are guarded by ``setup_cond``.
    ``writer_write_limit``, when set, makes a worker stop after serving more
    writes than the limit, which forces a leader election.
    """

    db: Database
    registry: WorkerRegistry
    our_address: SourceInfo = field(default_factory=SourceInfo)
    known_servers: list[SourceInfo] = field(default_factory=list)
    known_lock: threading.Lock = field(default_factory=threading.Lock)
    recorder: MessageRecorder = field(default_factory=MessageRecorder)
    control_queue: queue.Queue[tuple[SourceInfo, int]] = field(default_factory=queue.Queue)
    running: threading.Event = field(default_factory=threading.Event)
    temp_path: StrPath = "temp.db"
    setup_timeout: float = 5.0
    writer_write_limit: Optional[int] = None
    election_listeners: list[int] = field(default_factory=list)
    setup_cond: threading.Condition = field(default_factory=threading.Condition)
    setup_workers: int = 0
    setup_election_workers: int = 0
    listening: threading.Event = field(default_factory=threading.Event)
    listen_address: Optional[tuple[str, int]] = None

    def __post_init__(self) -> None:
        self.running.set()
        if not self.election_listeners:
            self.election_listeners = [0] * (self.registry.worker_count - 1)


def handle_worker_message(message: Message, context: ServerContext) -> Message:
    """Produce a worker's reply to one request."""
    kind = message.kind
    if kind in (MessageType.INDEX_REQUEST, MessageType.INDEX_FORWARD):
        return handle_index_request(message, context.db)
    if kind in (MessageType.DROP_REQUEST, MessageType.DROP_FORWARD):
        return handle_drop_request(message, context.db)
    if kind in (MessageType.REREGISTER_REQUEST, MessageType.REREGISTER_FORWARD):
        return handle_reregister_request(message, context.db)
    if kind == MessageType.SOURCE_REQUEST:
        return handle_source_request(message, context.db)
    if kind == MessageType.SERVER_REG:
        return handle_server_registration(
            message,
            context.db,
            context.known_servers,
            context.known_lock,
            context.recorder,
            context.temp_path,
        )
    if kind == MessageType.FORWARD_SERVER_REG:
        with context.known_lock:
            context.known_servers.append(message.source)
        return Message(MessageType.FORWARD_SERVER_OK)
    if kind == MessageType.CLIENT_REG:
        with context.known_lock:
            servers = tuple(context.known_servers)
        return Message(MessageType.SERVER_REG_RESPONSE, sources=servers)
    if kind == MessageType.CONTROL_REQUEST:
        if message.source.port == 0:
            return fail_message("Invalid message.")
        context.control_queue.put((message.source, message.uuid))
        return Message(MessageType.CONTROL_OK)
    return fail_message(_INVALID_KIND)


def _udp_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind((LOCALHOST, 0))
    except OSError:
        sock.close()
        raise
    return sock


def _setup_complete(context: ServerContext) -> bool:
    count = context.registry.worker_count
    return context.setup_workers == count and context.setup_election_workers == count - 1


def _register_setup(context: ServerContext, with_election: bool) -> None:
    with context.setup_cond:
        context.setup_workers += 1
        if with_election:
            context.setup_election_workers += 1
        context.setup_cond.notify_all()


def _await_setup(context: ServerContext) -> bool:
    with context.setup_cond:
        return context.setup_cond.wait_for(
            lambda: _setup_complete(context), timeout=context.setup_timeout
        )


def _receive(sock: socket.socket, timeout: float) -> Optional[tuple[Optional[Message], tuple]]:
    sock.settimeout(timeout)
    try:
        data, sender = sock.recvfrom(_DATAGRAM)
    except (TimeoutError, ConnectionResetError):
        return None
    try:
        return decode_message(data), sender
    except ProtocolError:
        return None, sender


def worker_loop(context: ServerContext, index: int, writer: bool) -> int:
    """Serve requests arriving on a worker's UDP port; return how many were answered."""
    registry = context.registry
    served = 0
    writes = 0
    done = threading.Event()
    with ExitStack() as stack:
        sock = stack.enter_context(_udp_socket())
        my_port = sock.getsockname()[1]
        node: Optional[ElectionNode] = None
        if not writer:
            election_sock = stack.enter_context(_udp_socket())
            node = ElectionNode(index, election_sock, context.election_listeners)

        with registry.state_lock:
            registry.stats[index] = True
            registry.strikes[index] = 0
            if writer:
                registry.write_port = my_port
            else:
                registry.read_ports[index] = my_port

        _register_setup(context, with_election=node is not None)
        if not _await_setup(context):
            log.error("worker %d gave up waiting for the pool to start", index)
            return 0

        node_thread: Optional[threading.Thread] = None
        if node is not None:
            node_thread = threading.Thread(
                target=node.run,
                args=(context.running.is_set, lambda: registry.stats[index] and not done.is_set()),
                daemon=True,
            )
            node_thread.start()

        current = index
        try:
            while context.running.is_set() and (
                registry.stats[current] or my_port == registry.write_port
            ):
                if current == registry.writer_index and my_port != registry.write_port:
                    break  # replaced as leader
                if my_port == registry.write_port:
                    current = registry.writer_index
                limit = context.writer_write_limit
                if limit is not None and writes > limit:
                    break

                received = _receive(sock, WORKER_POLL)
                if received is None:
                    continue
                message, sender = received
                if message is None:
                    response = fail_message(_INVALID_KIND)
                elif message.kind == MessageType.ELECT_LEADER:
                    if node is not None:
                        node.request_election(sender[1])
                        time.sleep(ELECTION_SETTLE)
                    continue
                elif message.kind in _ELECTION_CHATTER:
                    continue
                else:
                    response = handle_worker_message(message, context)
                    if message.kind in _WRITE_KINDS:
                        writes += 1
                        if writer:
                            log.debug("WRITES PERFORMED: %d", writes)
                try:
                    sock.sendto(encode_message(response), sender)
                except OSError as exc:
                    log.debug("worker %d could not reply to %s: %s", current, sender, exc)
                    continue
                served += 1
        except Exception:
            log.exception("worker %d failed", current)
            with registry.state_lock:
                registry.stats[current] = False
        finally:
            done.set()
            if node_thread is not None:
                node_thread.join()
    return served


def _reachable(client: SourceInfo) -> bool:
    for _ in range(CONTROL_ATTEMPTS):
        try:
            with socket.create_connection((client.ip_addr, client.port), timeout=CONTROL_TIMEOUT):
                return True
        except OSError:
            continue
    return False


def _send_drop(our_server: SourceInfo, request: Message) -> Message:
    with socket.create_connection(
        (our_server.ip_addr, our_server.port), timeout=CONTROL_TIMEOUT
    ) as sock:
        send_frame(sock, request)
        while True:
            reply = recv_frame(sock, CONTROL_TIMEOUT)
            if reply.kind != MessageType.KEEP_ALIVE:
                return reply


def control_loop(context: ServerContext) -> int:
    """Drop index entries of reported clients that cannot be reached; return drops sent."""
    dropped = 0
    while context.running.is_set():
        try:
            client, file_uuid = context.control_queue.get(timeout=CONTROL_POLL)
        except queue.Empty:
            continue
        try:
            if _reachable(client):
                continue
            request = Message(MessageType.DROP_REQUEST, uuid=file_uuid, client_id=client.peer_id)
            try:
                reply = _send_drop(context.our_address, request)
            except (OSError, ProtocolError) as exc:
                log.error("control: could not reach our own server: %s", exc)
                continue
            dropped += 1
            if reply.kind == MessageType.FAIL:
                log.error("control: %s", reply.text)
        finally:
            context.control_queue.task_done()
    return dropped


def listen_loop(context: ServerContext, host: str, port: int) -> int:
    """Accept client connections and serve each on its own thread; return how many."""
    accepted = 0
    with socket.create_server((host, port), backlog=LISTEN_BACKLOG) as server:
        server.settimeout(ACCEPT_POLL)
        context.listen_address = server.getsockname()[:2]
        context.listening.set()
        try:
            while context.running.is_set():
                try:
                    conn, _ = server.accept()
                except TimeoutError:
                    continue
                except OSError as exc:
                    log.debug("accept failed: %s", exc)
                    continue
                conn.settimeout(None)
                threading.Thread(
                    target=handle_client,
                    args=(
                        conn,
                        context.registry,
                        context.known_servers,
                        context.known_lock,
                        context.recorder,
                        context.temp_path,
                    ),
                    daemon=True,
                ).start()
                accepted += 1
        finally:
            context.listening.clear()
    return accepted