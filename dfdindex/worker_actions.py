"""What a worker does with each kind of request it is handed."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Sequence
from os import PathLike
from typing import Union

from dfdindex.database import Database, DatabaseError
from dfdindex.messages import Message, MessageType, fail_message
from dfdindex.sourceinfo import SourceInfo

log = logging.getLogger(__name__)

_INVALID_KIND = "Invalid message type."


class MessageRecorder:
    """Queue of write requests kept while the database is migrating to a new server."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._recording = False
        self._messages: deque[Message] = deque()

    @property
    def recording(self) -> bool:
        with self._lock:
            return self._recording

    def start(self) -> None:
        """Begin keeping requests."""
        with self._lock:
            self._recording = True

    def stop(self) -> None:
        """Stop keeping requests; those already kept stay queued."""
        with self._lock:
            self._recording = False

    def record(self, message: Message) -> bool:
        """Keep a message if recording; return whether it was kept."""
        with self._lock:
            if self._recording:
                self._messages.append(message)
            return self._recording

    def drain(self) -> list[Message]:
        """Remove and return every kept message, oldest first."""
        with self._lock:
            messages = list(self._messages)
            self._messages.clear()
            return messages


def _accepts(message: Message, *kinds: MessageType) -> bool:
    return message.kind in kinds


def handle_index_request(message: Message, db: Database) -> Message:
    """Record that a peer holds a file."""
    if not _accepts(message, MessageType.INDEX_REQUEST, MessageType.INDEX_FORWARD):
        return fail_message(_INVALID_KIND)
    if message.uuid == 0:
        return fail_message("Insufficient file data provided.")
    try:
        db.index_file(message.uuid, message.source, message.size)
    except DatabaseError as exc:
        return fail_message(str(exc))
    return Message(MessageType.INDEX_OK)


def handle_drop_request(message: Message, db: Database) -> Message:
    """Forget that a peer holds a file."""
    if not _accepts(message, MessageType.DROP_REQUEST, MessageType.DROP_FORWARD):
        return fail_message(_INVALID_KIND)
    if message.uuid == 0 or message.client_id == 0:
        return fail_message("Either or both of the received UUID's are malformed.")
    try:
        db.drop_index(message.uuid, message.client_id)
    except DatabaseError as exc:
        return fail_message(str(exc))
    return Message(MessageType.DROP_OK)


def handle_reregister_request(message: Message, db: Database) -> Message:
    """Store a peer's new address."""
    if not _accepts(message, MessageType.REREGISTER_REQUEST, MessageType.REREGISTER_FORWARD):
        return fail_message(_INVALID_KIND)
    if message.source.port == 0:
        return fail_message("Insufficient address data provided.")
    try:
        db.update_client(message.source)
    except DatabaseError as exc:
        return fail_message(str(exc))
    return Message(MessageType.REREGISTER_OK)


def handle_source_request(message: Message, db: Database) -> Message:
    """List the peers that hold a file."""
    if not _accepts(message, MessageType.SOURCE_REQUEST):
        return fail_message(_INVALID_KIND)
    if message.uuid == 0:
        return fail_message("Invalid file uuid provided.")
    try:
        sources = db.grab_sources(message.uuid)
    except DatabaseError as exc:
        return fail_message(str(exc))
    return Message(MessageType.SOURCE_LIST, sources=tuple(sources))


def handle_server_registration(
    message: Message,
    db: Database,
    known_servers: Sequence[SourceInfo],
    lock: threading.Lock,
    recorder: MessageRecorder,
    backup_path: Union[str, "PathLike[str]"],
) -> Message:
    """Start recording writes, back up the database and reply with the known servers."""
    if not _accepts(message, MessageType.SERVER_REG):
        return fail_message(_INVALID_KIND)
    recorder.start()
    try:
        db.backup_database(backup_path)
    except DatabaseError as exc:
        log.error("db backup into file failed: %s", exc)
    with lock:
        servers = tuple(known_servers)
    return Message(MessageType.SERVER_REG_RESPONSE, sources=servers)