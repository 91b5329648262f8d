"""Builders and runners for the SQL statements used by the index database."""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from typing import Optional, Union

Value = Union[int, str]
Column = tuple[str, str]
ForeignKey = tuple[str, str, str]
Pair = tuple[str, Value]
Row = list[Optional[str]]


class QueryError(Exception):
    """A statement failed or did not change what it had to."""


def sql_literal(value: Value) -> str:
    """Render an integer or string as an SQL literal."""
    if isinstance(value, bool):
        raise TypeError("booleans are not valid column values")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise TypeError(f"unsupported column value: {value!r}")


def _execute(conn: sqlite3.Connection, query: str, prefix: str = "") -> sqlite3.Cursor:
    try:
        return conn.execute(query)
    except sqlite3.Error as exc:
        raise QueryError(f"{prefix}{exc}") from exc


def create_table(
    conn: sqlite3.Connection,
    name: str,
    primary_key: Column,
    foreign_keys: Sequence[ForeignKey],
    attributes: Sequence[Column],
) -> None:
    """Create a table with a primary key, attributes and foreign keys."""
    parts = [f"{primary_key[0]} {primary_key[1]} PRIMARY KEY NOT NULL"]
    parts.extend(f"{column} {kind}" for column, kind in attributes)
    parts.extend(
        f"FOREIGN KEY ({column}) REFERENCES {table}({ref}) ON DELETE RESTRICT"
        for column, table, ref in foreign_keys
    )
    query = f"CREATE TABLE {name}({','.join(parts)});"
    _execute(conn, query, "Could not create table.\nSQLITE ERROR MESSAGE:\n")


def drop_table(conn: sqlite3.Connection, name: str) -> None:
    """Drop a table."""
    _execute(conn, f"DROP TABLE {name};", "Could not drop table.\nSQLITE ERROR MESSAGE:\n")


def _as_text(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)


def do_select(
    conn: sqlite3.Connection,
    table_name: str,
    attributes: Sequence[str],
    conditions: Sequence[str],
) -> list[Row]:
    """Select columns from rows meeting every condition, as text."""
    query = f"SELECT {','.join(attributes)} FROM {table_name}"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += ";"
    cursor = _execute(conn, query)
    return [[_as_text(value) for value in row] for row in cursor.fetchall()]


def do_insert(conn: sqlite3.Connection, table_name: str, values: Sequence[Pair]) -> None:
    """Insert one row built from column/value pairs."""
    columns = ",".join(column for column, _ in values)
    literals = ",".join(sql_literal(value) for _, value in values)
    cursor = _execute(conn, f"INSERT INTO {table_name}({columns}) VALUES ({literals});")
    if cursor.rowcount < 1:
        raise QueryError("No row could be inserted.")


def do_update(
    conn: sqlite3.Connection,
    table_name: str,
    pk_pair: Pair,
    values: Sequence[Pair],
) -> None:
    """Update the row with the given primary key."""
    assignments = ",".join(f"{column}={sql_literal(value)}" for column, value in values)
    query = (
        f"UPDATE {table_name} SET {assignments} "
        f"WHERE {pk_pair[0]}={sql_literal(pk_pair[1])};"
    )
    cursor = _execute(conn, query)
    if cursor.rowcount < 1:
        raise QueryError("Could not update row.")


def do_delete(conn: sqlite3.Connection, table_name: str, pk_pair: Pair) -> None:
    """Delete the row with the given primary key, if any."""
    _execute(conn, f"DELETE FROM {table_name} WHERE {pk_pair[0]}={sql_literal(pk_pair[1])};")


def do_attach(conn: sqlite3.Connection, to_attach: str, attach_as: str) -> None:
    """Attach another database file under a schema name."""
    path = to_attach.replace("'", "''")
    _execute(conn, f"ATTACH DATABASE '{path}' as '{attach_as}';")


def do_insert_or_ignore(conn: sqlite3.Connection, attached_as: str, table_name: str) -> None:
    """Copy every row of an attached table, skipping rows already present."""
    _execute(
        conn,
        f"INSERT OR IGNORE INTO main.{table_name} SELECT * FROM {attached_as}.{table_name};",
    )


def do_detach(conn: sqlite3.Connection, attached_as: str) -> None:
    """Detach a database attached earlier."""
    _execute(conn, f"DETACH DATABASE {attached_as};")