"""Copying the index database to a server that joins the network."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Iterable, MutableSequence
from os import PathLike
from pathlib import Path
from typing import Union

from dfdindex.database import Database, DatabaseError
from dfdindex.messages import (
    Message,
    MessageType,
    ProtocolError,
    fail_message,
    recv_frame,
    send_frame,
    to_forward,
)
from dfdindex.sourceinfo import SourceInfo

log = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 16
MIGRATION_FILE_NAME = "temp.db"
MIGRATION_TIMEOUT = 5.0

StrPath = Union[str, "PathLike[str]"]

_WRITE_REQUESTS = frozenset(
    {MessageType.INDEX_REQUEST, MessageType.DROP_REQUEST, MessageType.REREGISTER_REQUEST}
)
_WRITE_FORWARDS = frozenset(
    {MessageType.INDEX_FORWARD, MessageType.DROP_FORWARD, MessageType.REREGISTER_FORWARD}
)


class MigrationError(Exception):
    """The database could not be handed over between servers."""


def _recv_reply(sock: socket.socket, timeout: float) -> Message:
    while True:
        reply = recv_frame(sock, timeout)
        if reply.kind != MessageType.KEEP_ALIVE:
            return reply


def _try_send(sock: socket.socket, message: Message) -> None:
    try:
        send_frame(sock, message)
    except OSError as exc:
        log.debug("could not send %s: %s", message.kind.name, exc)


def send_database(sock: socket.socket, path: StrPath) -> int:
    """Serve a database file chunk by chunk to a joining server; return chunks sent."""
    source = Path(path)
    try:
        size = source.stat().st_size
        handle = source.open("rb")
    except OSError as exc:
        _try_send(sock, fail_message("Database did not backup."))
        raise MigrationError("Database did not backup.") from exc
    with handle:
        try:
            send_frame(sock, Message(MessageType.DOWNLOAD_CONFIRM, size=size, text=MIGRATION_FILE_NAME))
        except OSError as exc:
            raise MigrationError(f"could not confirm download: {exc}") from exc
        sent = 0
        while True:
            try:
                request = recv_frame(sock, MIGRATION_TIMEOUT)
            except (OSError, ProtocolError):
                break
            if request.kind != MessageType.REQUEST_CHUNK:
                break
            offset = request.index * CHUNK_SIZE
            try:
                if offset >= size:
                    raise OSError(f"chunk {request.index} is past the end of the file")
                handle.seek(offset)
                data = handle.read(CHUNK_SIZE)
            except OSError as exc:
                _try_send(sock, fail_message("Sorry, file appears to be unavailable."))
                raise MigrationError("Sorry, file appears to be unavailable.") from exc
            try:
                send_frame(sock, Message(MessageType.DATA_CHUNK, index=request.index, data=data))
            except OSError as exc:
                raise MigrationError(f"could not send chunk {request.index}: {exc}") from exc
            sent += 1
    return sent


def _download(sock: socket.socket, dest: Path, timeout: float) -> int:
    send_frame(sock, Message(MessageType.DOWNLOAD_INIT))
    confirm = _recv_reply(sock, timeout)
    if confirm.kind == MessageType.FAIL:
        raise MigrationError(confirm.text)
    if (
        confirm.kind != MessageType.DOWNLOAD_CONFIRM
        or confirm.size == 0
        or confirm.text != MIGRATION_FILE_NAME
    ):
        raise MigrationError("Failed to parse download confirmation for db migration.")
    chunks = -(-confirm.size // CHUNK_SIZE)
    received = 0
    try:
        with dest.open("wb") as out:
            for index in range(chunks):
                send_frame(sock, Message(MessageType.REQUEST_CHUNK, index=index))
                reply = _recv_reply(sock, timeout)
                if reply.kind == MessageType.FAIL:
                    raise MigrationError(reply.text)
                if reply.kind != MessageType.DATA_CHUNK or reply.index != index:
                    raise MigrationError(f"Failed to parse chunk {index} at db migration.")
                out.write(reply.data)
                received += len(reply.data)
        if received != confirm.size:
            raise MigrationError(
                f"received {received} bytes of a {confirm.size}-byte database"
            )
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    _try_send(sock, Message(MessageType.FINISH_DOWNLOAD))
    return received


def receive_database(
    server: SourceInfo,
    dest_path: StrPath,
    timeout: float = MIGRATION_TIMEOUT,
) -> int:
    """Download a server's database backup into a file; return its size."""
    try:
        with socket.create_connection((server.ip_addr, server.port), timeout=timeout) as sock:
            return _download(sock, Path(dest_path), timeout)
    except (OSError, ProtocolError) as exc:
        raise MigrationError(f"db migration from {server.ip_addr}:{server.port} failed: {exc}") from exc


def mass_write_send(new_server: SourceInfo, messages: Iterable[Message]) -> int:
    """Replay recorded writes to a new server as forwards; return how many were sent."""
    sent = 0
    for message in messages:
        if message.kind in _WRITE_REQUESTS:
            outgoing = to_forward(message)
        elif message.kind in _WRITE_FORWARDS:
            outgoing = message
        else:
            continue
        try:
            with socket.create_connection(
                (new_server.ip_addr, new_server.port), timeout=MIGRATION_TIMEOUT
            ) as sock:
                send_frame(sock, outgoing)
        except OSError as exc:
            log.error("mass send, msg failed to send %s: %s", message.kind.name, exc)
            continue
        sent += 1
    return sent


def join_network(
    known_server: SourceInfo,
    db: Database,
    known_servers: MutableSequence[SourceInfo],
    lock: threading.Lock,
    our_server: SourceInfo,
    temp_path: StrPath = MIGRATION_FILE_NAME,
) -> list[SourceInfo]:
    """Register with a known server, take over its servers and database; return the servers."""
    address = f"{known_server.ip_addr}:{known_server.port}"
    try:
        with socket.create_connection(
            (known_server.ip_addr, known_server.port), timeout=MIGRATION_TIMEOUT
        ) as sock:
            log.info("connected to sister server @ %s", address)
            send_frame(sock, Message(MessageType.SERVER_REG, source=our_server))
            reply = _recv_reply(sock, MIGRATION_TIMEOUT)
    except (OSError, ProtocolError) as exc:
        raise MigrationError(f"could not register with server @ {address}: {exc}") from exc
    if reply.kind == MessageType.FAIL:
        raise MigrationError(reply.text)
    if reply.kind != MessageType.SERVER_REG_RESPONSE:
        raise MigrationError(f"unexpected {reply.kind.name} reply from server @ {address}")

    with lock:
        known_servers[:] = [*reply.sources, known_server]
        servers = list(known_servers)
    log.info("Registered with server network: %s", [(s.ip_addr, s.port) for s in servers])

    temp = Path(temp_path)
    try:
        receive_database(known_server, temp)
    except MigrationError as exc:
        log.error("db migration failed: %s", exc)
    else:
        try:
            db.merge_databases(temp)
        except DatabaseError as exc:
            log.error("db receive merge failed: %s", exc)
        temp.unlink(missing_ok=True)

    try:
        with socket.create_connection(
            (known_server.ip_addr, known_server.port), timeout=MIGRATION_TIMEOUT
        ) as sock:
            send_frame(sock, Message(MessageType.MIGRATE_OK))
    except OSError as exc:
        log.error("Failed to send db ack to %s: %s", address, exc)
    return servers