import sqlite3

import pytest

from dfdindex.queries import (
    QueryError,
    create_table,
    do_attach,
    do_delete,
    do_detach,
    do_insert,
    do_insert_or_ignore,
    do_select,
    do_update,
    drop_table,
    sql_literal,
)


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:", isolation_level=None)
    create_table(connection, "items", ("id", "INTEGER"), [], [("name", "TEXT"), ("qty", "INTEGER")])
    yield connection
    connection.close()


def test_sql_literal_integer_and_string():
    assert sql_literal(42) == "42"
    assert sql_literal("abc") == "'abc'"


def test_sql_literal_escapes_quotes():
    assert sql_literal("it's") == "'it''s'"


def test_sql_literal_rejects_other_types():
    with pytest.raises(TypeError):
        sql_literal(1.5)
    with pytest.raises(TypeError):
        sql_literal(True)


def test_insert_then_select_returns_text(conn):
    do_insert(conn, "items", [("name", "bolt"), ("qty", 3), ("id", 1)])
    assert do_select(conn, "items", ["id", "name", "qty"], []) == [["1", "bolt", "3"]]


def test_select_conditions_are_combined(conn):
    do_insert(conn, "items", [("id", 1), ("name", "bolt"), ("qty", 3)])
    do_insert(conn, "items", [("id", 2), ("name", "nut"), ("qty", 3)])
    rows = do_select(conn, "items", ["id"], ["qty=3", "name='nut'"])
    assert rows == [["2"]]


def test_select_missing_value_is_none(conn):
    do_insert(conn, "items", [("id", 5)])
    assert do_select(conn, "items", ["name"], ["id=5"]) == [[None]]


def test_insert_duplicate_key_fails(conn):
    do_insert(conn, "items", [("id", 1)])
    with pytest.raises(QueryError):
        do_insert(conn, "items", [("id", 1)])


def test_update_changes_row(conn):
    do_insert(conn, "items", [("id", 1), ("name", "bolt")])
    do_update(conn, "items", ("id", 1), [("name", "screw"), ("qty", 9)])
    assert do_select(conn, "items", ["name", "qty"], ["id=1"]) == [["screw", "9"]]


def test_update_missing_row_fails(conn):
    with pytest.raises(QueryError, match="Could not update row."):
        do_update(conn, "items", ("id", 99), [("name", "x")])


def test_delete_removes_row(conn):
    do_insert(conn, "items", [("id", 1)])
    do_insert(conn, "items", [("id", 2)])
    do_delete(conn, "items", ("id", 1))
    assert do_select(conn, "items", ["id"], []) == [["2"]]


def test_create_existing_table_fails(conn):
    with pytest.raises(QueryError, match="Could not create table."):
        create_table(conn, "items", ("id", "INTEGER"), [], [])


def test_drop_table(conn):
    drop_table(conn, "items")
    with pytest.raises(QueryError, match="Could not drop table."):
        drop_table(conn, "items")


def test_create_table_with_foreign_key(conn):
    create_table(conn, "links", ("key", "TEXT"), [("item", "items", "id")], [("item", "INTEGER")])
    do_insert(conn, "links", [("key", "a"), ("item", 1)])
    assert do_select(conn, "links", ["key", "item"], []) == [["a", "1"]]


def test_attach_copy_detach(conn, tmp_path):
    other_path = tmp_path / "other.db"
    other = sqlite3.connect(str(other_path), isolation_level=None)
    create_table(other, "items", ("id", "INTEGER"), [], [("name", "TEXT"), ("qty", "INTEGER")])
    do_insert(other, "items", [("id", 1), ("name", "theirs")])
    do_insert(other, "items", [("id", 2), ("name", "new")])
    other.close()

    do_insert(conn, "items", [("id", 1), ("name", "ours")])
    do_attach(conn, str(other_path), "copy")
    do_insert_or_ignore(conn, "copy", "items")
    do_detach(conn, "copy")

    rows = do_select(conn, "items", ["id", "name"], [])
    assert sorted(rows) == [["1", "ours"], ["2", "new"]]
    with pytest.raises(QueryError):
        do_select(conn, "copy.items", ["id"], [])


def test_detach_unknown_fails(conn):
    with pytest.raises(QueryError):
        do_detach(conn, "nothing")