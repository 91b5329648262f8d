"""The index database: which peers hold which files."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from os import PathLike
from typing import Union

from dfdindex.queries import (
    Pair,
    QueryError,
    create_table,
    do_attach,
    do_delete,
    do_detach,
    do_insert,
    do_insert_or_ignore,
    do_select,
    do_update,
    sql_literal,
)
from dfdindex.sourceinfo import SourceInfo

PEER_TABLE = "peers"
PEER_KEY = ("id", "INTEGER")
PEER_ATTRIBUTES = (("ip", "TEXT"), ("port", "INTEGER"))

FILE_TABLE = "files"
FILE_KEY = ("uuid", "INTEGER")
FILE_ATTRIBUTES = (("size", "INTEGER"),)

INDEX_TABLE = "file_index"
INDEX_KEY = ("index_key", "TEXT")
INDEX_ATTRIBUTES = (("peer_id", "INTEGER"), ("file_uuid", "INTEGER"))
INDEX_FOREIGN_KEYS = (
    ("peer_id", PEER_TABLE, PEER_KEY[0]),
    ("file_uuid", FILE_TABLE, FILE_KEY[0]),
)

_ATTACH_NAME = "copy"

StrPath = Union[str, "PathLike[str]"]


class DatabaseError(Exception):
    """An index database operation failed."""


def index_key(indexer: SourceInfo, uuid: int) -> str:
    """Composite key of the index table for a peer and a file."""
    return f"{indexer.peer_id}|{uuid}"


@contextmanager
def _translated() -> Iterator[None]:
    try:
        yield
    except QueryError as exc:
        raise DatabaseError(str(exc)) from exc
    except sqlite3.Error as exc:
        raise DatabaseError(str(exc)) from exc


class Database:
    """SQLite store of peers, files and who indexes what; safe across threads."""

    def __init__(self, path: StrPath) -> None:
        try:
            self._conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Could not open database: {exc}") from exc
        self._lock = threading.RLock()
        try:
            self._setup()
        except DatabaseError:
            self._conn.close()
            raise

    def _setup(self) -> None:
        with self._lock, _translated():
            existing = {row[0] for row in do_select(self._conn, "sqlite_master", ["name"], ["type='table'"])}
            tables = (
                (PEER_TABLE, PEER_KEY, (), PEER_ATTRIBUTES),
                (FILE_TABLE, FILE_KEY, (), FILE_ATTRIBUTES),
                (INDEX_TABLE, INDEX_KEY, INDEX_FOREIGN_KEYS, INDEX_ATTRIBUTES),
            )
            for name, key, foreign, attributes in tables:
                if name not in existing:
                    create_table(self._conn, name, key, foreign, attributes)

    @contextmanager
    def _write(self) -> Iterator[None]:
        with self._lock, _translated():
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _insert_or_update(self, table: str, pk_pair: Pair, values: Sequence[Pair]) -> None:
        column, key = pk_pair
        found = do_select(self._conn, table, [column], [f"{column}={sql_literal(key)}"])
        if found:
            do_update(self._conn, table, pk_pair, values)
        else:
            do_insert(self._conn, table, [*values, pk_pair])

    def _store_peer(self, indexer: SourceInfo) -> None:
        self._insert_or_update(
            PEER_TABLE,
            (PEER_KEY[0], indexer.peer_id),
            [(PEER_ATTRIBUTES[0][0], indexer.ip_addr), (PEER_ATTRIBUTES[1][0], indexer.port)],
        )

    def index_file(self, uuid: int, indexer: SourceInfo, f_size: int) -> None:
        """Record that a peer holds a file of a given size."""
        with self._write():
            self._store_peer(indexer)
            self._insert_or_update(
                FILE_TABLE,
                (FILE_KEY[0], uuid),
                [(FILE_ATTRIBUTES[0][0], f_size)],
            )
            self._insert_or_update(
                INDEX_TABLE,
                (INDEX_KEY[0], index_key(indexer, uuid)),
                [(INDEX_ATTRIBUTES[0][0], indexer.peer_id), (INDEX_ATTRIBUTES[1][0], uuid)],
            )

    def drop_index(self, f_uuid: int, c_uuid: int) -> None:
        """Forget that a peer holds a file."""
        key = index_key(SourceInfo(peer_id=c_uuid), f_uuid)
        with self._write():
            do_delete(self._conn, INDEX_TABLE, (INDEX_KEY[0], key))

    def grab_sources(self, uuid: int) -> list[SourceInfo]:
        """Addresses of every peer indexing a file."""
        with self._lock, _translated():
            peers = do_select(
                self._conn,
                INDEX_TABLE,
                [INDEX_ATTRIBUTES[0][0]],
                [f"{INDEX_ATTRIBUTES[1][0]}={sql_literal(uuid)}"],
            )
            if not peers:
                raise DatabaseError("No peers are indexing this file.")
            columns = [PEER_KEY[0], PEER_ATTRIBUTES[0][0], PEER_ATTRIBUTES[1][0]]
            sources = []
            for (peer_id,) in peers:
                rows = do_select(self._conn, PEER_TABLE, columns, [f"{PEER_KEY[0]}={peer_id}"])
                if not rows or len(rows[0]) != 3 or None in rows[0]:
                    raise DatabaseError("Missing data for peer.")
                found_id, ip_addr, port = rows[0]
                try:
                    sources.append(SourceInfo(int(found_id), ip_addr, int(port)))
                except (TypeError, ValueError) as exc:
                    raise DatabaseError("Missing data for peer.") from exc
            return sources

    def update_client(self, indexer: SourceInfo) -> None:
        """Insert a peer or update its address."""
        with self._write():
            self._store_peer(indexer)

    def backup_database(self, path: StrPath) -> None:
        """Write a full copy of the database to a file."""
        with self._lock:
            try:
                copy = sqlite3.connect(str(path))
            except sqlite3.Error as exc:
                raise DatabaseError("Couldn't open a copy. Are write perms restricted?") from exc
            try:
                self._conn.backup(copy)
            except sqlite3.Error as exc:
                raise DatabaseError("Backup failed.") from exc
            finally:
                copy.close()

    def merge_databases(self, path: StrPath) -> None:
        """Copy rows missing here from another database file."""
        with self._lock, _translated():
            do_attach(self._conn, str(path), _ATTACH_NAME)
            try:
                for table in (PEER_TABLE, FILE_TABLE, INDEX_TABLE):
                    do_insert_or_ignore(self._conn, _ATTACH_NAME, table)
            finally:
                do_detach(self._conn, _ATTACH_NAME)

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()