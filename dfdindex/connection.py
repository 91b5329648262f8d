"""Handling of one client connection: relaying its request to a worker and back."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import MutableSequence
from os import PathLike
from pathlib import Path
from typing import Optional, Union

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
from dfdindex.migration import MigrationError, mass_write_send, send_database
from dfdindex.sourceinfo import SourceInfo
from dfdindex.syncing import (
    forward_drop_request,
    forward_index_request,
    forward_registration,
    forward_reregister_request,
    remove_failed_servers,
)
from dfdindex.worker_actions import MessageRecorder

log = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
CLIENT_TIMEOUT = 5.0
WORKER_TIMEOUT = 0.5
KEEP_ALIVE_INTERVAL = 1.0
MAX_STRIKES = 5
WORKER_ATTEMPTS = 10
DOWN_MESSAGE = "Database appears to be down. Sorry, please try another server."

_DATAGRAM = 65535

StrPath = Union[str, "PathLike[str]"]

_FORWARDERS = {
    MessageType.INDEX_REQUEST: forward_index_request,
    MessageType.DROP_REQUEST: forward_drop_request,
    MessageType.REREGISTER_REQUEST: forward_reregister_request,
}


class WorkerRegistry:
    """Shared state of the worker pool: health, strikes and UDP ports.

    The last worker index is always the write leader; the others are readers
    whose ports live in ``read_ports`` at their own index.
    """

    def __init__(self, worker_count: int) -> None:
        if worker_count < 2:
            raise ValueError("at least one reader and one writer are needed")
        self.worker_count = worker_count
        self.stats = [False] * worker_count
        self.strikes = [0] * worker_count
        self.read_ports = [0] * (worker_count - 1)
        self.write_port = 0
        self.next_reader = 0
        self.workers: list[Optional[threading.Thread]] = [None] * worker_count
        self.joining_server: Optional[SourceInfo] = None
        self.state_lock = threading.Lock()
        self.election_lock = threading.Lock()

    @property
    def writer_index(self) -> int:
        return self.worker_count - 1


def select_worker(request: Message, registry: WorkerRegistry) -> tuple[int, int]:
    """Pick the worker for a request: (index, port), or (-1, 0) if the reader is down."""
    with registry.state_lock:
        if request.kind == MessageType.SOURCE_REQUEST:
            worker_id = registry.next_reader
            registry.next_reader = (worker_id + 1) % (registry.worker_count - 1)
            if not registry.stats[worker_id] or registry.read_ports[worker_id] == 0:
                result = (-1, 0)
            else:
                result = (worker_id, registry.read_ports[worker_id])
        else:
            result = (registry.writer_index, registry.write_port)
    log.debug("WORKER: %d", result[0])
    return result


def broadcast_to_servers(
    request: Message,
    known_servers: MutableSequence[SourceInfo],
    lock: threading.Lock,
) -> list[SourceInfo]:
    """Pass a handled request on to the other servers; return those that failed."""
    with lock:
        servers = list(known_servers)
    forwarder = _FORWARDERS.get(request.kind)
    if forwarder is not None:
        failed = forwarder(request, servers)
        if failed:
            remove_failed_servers(known_servers, failed, lock)
        return failed
    if request.kind == MessageType.SERVER_REG:
        registered = forward_registration(request, servers)
        log.info("registration forwarded to and acknowledged by %d servers", registered)
    return []


def _receive_datagram(sock: socket.socket, timeout: float) -> Optional[Message]:
    sock.settimeout(timeout)
    try:
        data, _ = sock.recvfrom(_DATAGRAM)
    except OSError:
        return None
    try:
        return decode_message(data)
    except ProtocolError:
        return None


def worker_no_reply(sock: socket.socket, worker_id: int, registry: WorkerRegistry) -> Optional[int]:
    """Count a missed reply; past the limit mark the worker down or elect a new writer.

    Returns the index of the newly elected leader, if an election took place.
    """
    with registry.state_lock:
        registry.strikes[worker_id] += 1
        if registry.strikes[worker_id] < MAX_STRIKES:
            return None
        if worker_id != registry.writer_index:
            registry.stats[worker_id] = False
            registry.strikes[worker_id] = 0
            return None

    if not registry.election_lock.acquire(blocking=False):
        return None
    try:
        with registry.state_lock:
            registry.stats[worker_id] = False
            reader_port = registry.read_ports[registry.next_reader]
        log.info("CALLING ELECTION...")
        try:
            sock.sendto(encode_message(Message(MessageType.ELECT_LEADER)), (LOCALHOST, reader_port))
        except OSError as exc:
            log.error("could not call election: %s", exc)
            return None
        response = _receive_datagram(sock, WORKER_TIMEOUT)
        if response is None or response.kind != MessageType.LEADER_X:
            return None
        leader = response.index
        if not 0 <= leader < registry.writer_index:
            return None
        log.info("ELECTED LEADER=%d", leader)
        with registry.state_lock:
            registry.write_port = registry.read_ports[leader]
            registry.stats[leader] = False
            registry.read_ports[leader] = 0
            registry.strikes[worker_id] = 0
            registry.stats[worker_id] = True
            registry.workers[leader], registry.workers[worker_id] = (
                registry.workers[worker_id],
                registry.workers[leader],
            )
        return leader
    finally:
        registry.election_lock.release()


class _KeepAlive:
    """Sends KEEP_ALIVE to the client every second while a request is pending."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                send_frame(self._sock, Message(MessageType.KEEP_ALIVE))
            except OSError:
                return
            self._stop.wait(KEEP_ALIVE_INTERVAL)

    def __enter__(self) -> _KeepAlive:
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._stop.set()
        self._thread.join()


def _reply(client_sock: socket.socket, message: Message) -> None:
    try:
        send_frame(client_sock, message)
    except OSError as exc:
        log.debug("could not reply to client: %s", exc)


def _serve_migration(
    client_sock: socket.socket,
    client: SourceInfo,
    registry: WorkerRegistry,
    recorder: MessageRecorder,
    temp_path: StrPath,
) -> None:
    try:
        send_database(client_sock, temp_path)
    except MigrationError as exc:
        log.error("database send failed: %s", exc)
    recorder.stop()
    pending = recorder.drain()
    target = registry.joining_server or client
    if target.port:
        mass_write_send(target, pending)


def _relay(
    client_sock: socket.socket,
    request: Message,
    registry: WorkerRegistry,
    worker_sock: socket.socket,
) -> Optional[Message]:
    payload = encode_message(request)
    with _KeepAlive(client_sock):
        for _ in range(WORKER_ATTEMPTS):
            worker_id, port = select_worker(request, registry)
            if worker_id == -1:
                continue
            try:
                worker_sock.sendto(payload, (LOCALHOST, port))
            except OSError:
                with registry.state_lock:
                    registry.strikes[worker_id] += 1
                continue
            response = _receive_datagram(worker_sock, WORKER_TIMEOUT)
            if response is not None:
                if response.kind == MessageType.FAIL:
                    log.info("worker replied with failure: %s", response.text)
                with registry.state_lock:
                    registry.strikes[worker_id] = 0
                return response
            worker_no_reply(worker_sock, worker_id, registry)
    return None


def handle_client(
    client_sock: socket.socket,
    registry: WorkerRegistry,
    known_servers: MutableSequence[SourceInfo],
    lock: threading.Lock,
    recorder: MessageRecorder,
    temp_path: StrPath = "temp.db",
) -> Optional[Message]:
    """Serve one connection; return the reply sent to the client, if any."""
    with client_sock:
        try:
            request = recv_frame(client_sock, CLIENT_TIMEOUT)
        except (OSError, ProtocolError) as exc:
            log.debug("no request from client: %s", exc)
            return None

        client = SourceInfo()
        if request.kind == MessageType.SERVER_REG:
            client = SourceInfo(ip_addr=request.source.ip_addr, port=request.source.port)

        if request.kind == MessageType.MIGRATE_OK:
            Path(temp_path).unlink(missing_ok=True)
            return None

        if request.kind == MessageType.DOWNLOAD_INIT:
            _serve_migration(client_sock, client, registry, recorder, temp_path)
            return None

        recorder.record(request)

        try:
            worker_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            worker_sock.bind((LOCALHOST, 0))
        except OSError as exc:
            log.error("could not open worker socket: %s", exc)
            return None

        with worker_sock:
            response = _relay(client_sock, request, registry, worker_sock)

        if response is None:
            failure = fail_message(DOWN_MESSAGE)
            _reply(client_sock, failure)
            return failure

        _reply(client_sock, response)

    broadcast_to_servers(request, known_servers, lock)
    if request.kind == MessageType.SERVER_REG:
        with lock:
            known_servers.append(client)
        registry.joining_server = client
    with lock:
        log.info("SERVER LIST: %s", [(s.ip_addr, s.port) for s in known_servers])
    return response