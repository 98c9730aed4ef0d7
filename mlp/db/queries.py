"""Query layer: builds SQL text and parameters for every store operation.

Callers pass logical arguments and get back a Query; nothing outside this
module writes SQL. Table and column names come from the schema registry and
are still checked here before being interpolated.
"""

import re
from collections.abc import Mapping
from typing import Any, NamedTuple

_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

COMPARISON_COLUMNS = ("historic_captures", "modern_captures")


class Query(NamedTuple):
    sql: str
    params: tuple = ()


def _ident(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


_NODE_COLUMNS = """
    n.id, n.type, n.owner_id, n.owner_type, n.fs_path, n.status,
    n.created_at, n.updated_at,
    EXISTS (SELECT 1 FROM nodes d WHERE d.owner_id = n.id) AS has_dependents
"""

# -- Nodes --


def select_node(node_id: int) -> Query:
    return Query(f"SELECT {_NODE_COLUMNS} FROM nodes n WHERE n.id = ?", (node_id,))


def select_nodes_by_owner(owner_id: int) -> Query:
    return Query(
        f"SELECT {_NODE_COLUMNS} FROM nodes n WHERE n.owner_id = ? ORDER BY n.id",
        (owner_id,),
    )


def insert_node(
    type_name: str,
    owner_id: int | None,
    owner_type: str | None,
    fs_path: str | None,
    status: str | None,
    timestamp: str,
) -> Query:
    return Query(
        """
        INSERT INTO nodes (type, owner_id, owner_type, fs_path, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (type_name, owner_id, owner_type, fs_path, status, timestamp, timestamp),
    )


def update_node_owner(
    node_id: int,
    owner_id: int,
    owner_type: str,
    fs_path: str | None,
    status: str | None,
    timestamp: str,
) -> Query:
    return Query(
        """
        UPDATE nodes
        SET owner_id = ?, owner_type = ?, fs_path = ?, status = ?, updated_at = ?
        WHERE id = ?
        """,
        (owner_id, owner_type, fs_path, status, timestamp, node_id),
    )


def update_node_fs_path(node_id: int, fs_path: str | None, timestamp: str) -> Query:
    return Query(
        "UPDATE nodes SET fs_path = ?, updated_at = ? WHERE id = ?",
        (fs_path, timestamp, node_id),
    )


def touch_node(node_id: int, timestamp: str) -> Query:
    return Query("UPDATE nodes SET updated_at = ? WHERE id = ?", (timestamp, node_id))


def delete_node(node_id: int) -> Query:
    return Query("DELETE FROM nodes WHERE id = ?", (node_id,))


# -- Entity tables --


def select_entity(table: str, key: str, node_id: int) -> Query:
    return Query(
        f"SELECT * FROM {_ident(table)} WHERE {_ident(key)} = ?",
        (node_id,),
    )


def insert_entity(table: str, data: Mapping[str, Any]) -> Query:
    columns = ", ".join(_ident(c) for c in data)
    placeholders = ", ".join("?" for _ in data)
    return Query(
        f"INSERT INTO {_ident(table)} ({columns}) VALUES ({placeholders})",
        tuple(data.values()),
    )


def update_entity(table: str, key: str, node_id: int, data: Mapping[str, Any]) -> Query:
    fields = {k: v for k, v in data.items() if k != key}
    if not fields:
        raise ValueError(f"Nothing to update in {table}")
    assignments = ", ".join(f"{_ident(c)} = ?" for c in fields)
    return Query(
        f"UPDATE {_ident(table)} SET {assignments} WHERE {_ident(key)} = ?",
        (*fields.values(), node_id),
    )


def delete_entity(table: str, key: str, node_id: int) -> Query:
    return Query(f"DELETE FROM {_ident(table)} WHERE {_ident(key)} = ?", (node_id,))


# -- Comparisons --


def _comparison_column(column: str) -> str:
    if column not in COMPARISON_COLUMNS:
        raise ValueError(f"Not a comparison column: {column!r}")
    return column


def select_comparisons(column: str, node_id: int) -> Query:
    column = _comparison_column(column)
    return Query(
        f"""
        SELECT historic_captures, modern_captures FROM comparisons
        WHERE {column} = ?
        ORDER BY historic_captures, modern_captures
        """,
        (node_id,),
    )


def delete_comparisons(column: str, node_id: int) -> Query:
    column = _comparison_column(column)
    return Query(f"DELETE FROM comparisons WHERE {column} = ?", (node_id,))


def insert_comparison(historic_id: int, modern_id: int) -> Query:
    return Query(
        """
        INSERT OR IGNORE INTO comparisons (historic_captures, modern_captures)
        VALUES (?, ?)
        """,
        (historic_id, modern_id),
    )


# -- Files --


def insert_file(
    owner_id: int,
    owner_type: str,
    file_type: str,
    filename: str,
    mimetype: str | None,
    file_size: int,
    timestamp: str,
) -> Query:
    return Query(
        """
        INSERT INTO files
            (owner_id, owner_type, file_type, filename, mimetype, file_size, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (owner_id, owner_type, file_type, filename, mimetype, file_size, timestamp),
    )


def select_files_by_owner(owner_id: int) -> Query:
    return Query(
        """
        SELECT id, owner_id, owner_type, file_type, filename, mimetype, file_size
        FROM files WHERE owner_id = ? ORDER BY id
        """,
        (owner_id,),
    )


def delete_files_by_owner(owner_id: int) -> Query:
    return Query("DELETE FROM files WHERE owner_id = ?", (owner_id,))
