from datetime import date
from typing import Iterable

import duckdb

_parser_conn: duckdb.DuckDBPyConnection | None = None


class SchemaError(ValueError):
    """Raised when a table is missing a column a pipeline step depends on."""


def get_parser_conn() -> duckdb.DuckDBPyConnection:
    """Lazy singleton in-memory connection for SQL parsing."""
    global _parser_conn
    if _parser_conn is None:
        _parser_conn = duckdb.connect(":memory:")
    return _parser_conn


def split_sql_statements(sql_text: str) -> list[str]:
    """Split SQL text into individual statements using DuckDB's parser."""
    sql_text = (sql_text or "").strip()
    if not sql_text:
        return []
    try:
        statements = get_parser_conn().extract_statements(sql_text)
    except duckdb.Error:
        # Fallback for unparseable garbage: return as single statement
        return [sql_text]
    return [s.query.strip() for s in statements if s.query.strip()]


def sql_literal(value: str | date) -> str:
    """Render a string or date as a SQL literal.

    Views cannot hold prepared-statement parameters, so configuration
    values that end up inside a view definition are inlined this way.
    """
    if isinstance(value, date):
        return f"DATE '{value.isoformat()}'"
    return "'" + str(value).replace("'", "''") + "'"


def sql_in_list(values: Iterable[str]) -> str:
    """Render ``('a', 'b')`` for an IN clause. Empty input yields ``''``."""
    rendered = [sql_literal(v) for v in values]
    if not rendered:
        return ""
    return "(" + ", ".join(rendered) + ")"


def get_column_names(conn: duckdb.DuckDBPyConnection, table_name: str) -> set[str]:
    """Get the set of column names for a table or view."""
    rows = conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_name = ?
        """,
        [table_name],
    ).fetchall()
    return {row[0] for row in rows}


def get_column_schema(
    conn: duckdb.DuckDBPyConnection, table_name: str
) -> list[tuple[str, str]]:
    """Get the column names and data types for a table or view."""
    rows = conn.execute(
        """
        SELECT column_name, data_type
        FROM information_schema.columns
        WHERE table_name = ?
        ORDER BY ordinal_position
        """,
        [table_name],
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def require_columns(
    conn: duckdb.DuckDBPyConnection, table_name: str, columns: Iterable[str]
) -> None:
    """Raise SchemaError if *table_name* lacks any of *columns*."""
    actual = get_column_names(conn, table_name)
    if not actual:
        raise SchemaError(f"Table '{table_name}' does not exist or has no columns.")
    missing = [c for c in columns if c not in actual]
    if missing:
        raise SchemaError(
            f"Table '{table_name}' is missing required column(s): "
            f"{', '.join(missing)}. Actual columns: {', '.join(sorted(actual))}"
        )
