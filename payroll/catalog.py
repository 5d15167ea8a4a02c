"""DuckDB catalog helpers.

These helpers centralize common patterns for querying DuckDB's catalog
(duckdb_views/duckdb_tables), safely counting rows, and turning views
into tables once a pipeline step has produced them.
"""

from __future__ import annotations

from typing import Iterable

import duckdb


def quote_ident(name: str) -> str:
    """Quote an identifier for DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def _excluded(name: str, exclude_prefixes: Iterable[str]) -> bool:
    for p in exclude_prefixes:
        if p and name.startswith(p):
            return True
    return False


def list_views(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return view names from the catalog."""
    where = "" if include_internal else "WHERE internal = false"
    rows = conn.execute(
        f"SELECT view_name FROM duckdb_views() {where} ORDER BY view_name"
    ).fetchall()
    names = [r[0] for r in rows]
    if exclude_prefixes:
        names = [n for n in names if not _excluded(n, exclude_prefixes)]
    return names


def view_exists(conn: duckdb.DuckDBPyConnection, view_name: str) -> bool:
    """Return True if a user view exists."""
    rows = conn.execute(
        "SELECT 1 FROM duckdb_views() WHERE view_name = ? AND internal = false",
        [view_name],
    ).fetchall()
    return bool(rows)


def list_tables(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return table names from the catalog."""
    where = "" if include_internal else "WHERE internal = false"
    rows = conn.execute(
        f"SELECT table_name FROM duckdb_tables() {where} ORDER BY table_name"
    ).fetchall()
    names = [r[0] for r in rows]
    if exclude_prefixes:
        names = [n for n in names if not _excluded(n, exclude_prefixes)]
    return names


def table_exists(conn: duckdb.DuckDBPyConnection, table_name: str) -> bool:
    """Return True if a user table exists."""
    rows = conn.execute(
        "SELECT 1 FROM duckdb_tables() WHERE table_name = ? AND internal = false",
        [table_name],
    ).fetchall()
    return bool(rows)


def relation_exists(conn: duckdb.DuckDBPyConnection, name: str) -> bool:
    """Return True if *name* is a user table or view."""
    return table_exists(conn, name) or view_exists(conn, name)


def count_rows(conn: duckdb.DuckDBPyConnection, relation_name: str) -> int | None:
    """Return COUNT(*) for a table/view, or None on error."""
    try:
        row = conn.execute(
            f"SELECT COUNT(*) FROM {quote_ident(relation_name)}"
        ).fetchone()
    except duckdb.Error:
        return None
    if not row:
        return 0
    return int(row[0])


def count_rows_display(conn: duckdb.DuckDBPyConnection, relation_name: str) -> str:
    """Return a display-friendly row count (or 'error')."""
    n = count_rows(conn, relation_name)
    return str(n) if n is not None else "error"


def materialize_views(
    conn: duckdb.DuckDBPyConnection,
    view_names: list[str],
) -> int:
    """Materialize a list of views as tables.

    For each view that exists, does a 3-step swap: CREATE TABLE from view,
    DROP VIEW, RENAME TABLE. Duplicates are ignored and missing views are
    skipped.

    Returns the number of views materialized.
    """
    unique_names = list(dict.fromkeys(view_names))

    materialized = 0
    for view_name in unique_names:
        if not view_exists(conn, view_name):
            continue

        # Drop any leftover tmp table from a previous crashed run, then
        # swap with cleanup on failure so the catalog is never left with
        # the view gone and the tmp table not renamed.
        tmp_name = f"_materialize_tmp_{view_name}"
        conn.execute(f"DROP TABLE IF EXISTS {quote_ident(tmp_name)}")
        conn.execute(
            f"CREATE TABLE {quote_ident(tmp_name)} AS "
            f"SELECT * FROM {quote_ident(view_name)}"
        )
        try:
            conn.execute(f"DROP VIEW {quote_ident(view_name)}")
            conn.execute(
                f"ALTER TABLE {quote_ident(tmp_name)} RENAME TO {quote_ident(view_name)}"
            )
        except duckdb.Error:
            conn.execute(f"DROP TABLE IF EXISTS {quote_ident(tmp_name)}")
            raise
        materialized += 1

    return materialized
