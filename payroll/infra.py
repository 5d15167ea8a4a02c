"""Pipeline infrastructure tables.

Centralizes creation and persistence for pipeline-internal tables:
- _trace (+ _trace_seq)
- _step_meta
- _run_meta
"""

from __future__ import annotations

import importlib.metadata
import json
import logging
import platform
import sys
import time
from typing import Any

import duckdb

from .sql_utils import get_column_schema

log = logging.getLogger(__name__)


def init_infra(conn: duckdb.DuckDBPyConnection) -> None:
    """Ensure all pipeline infra tables exist."""
    ensure_trace(conn)
    ensure_step_meta(conn)
    ensure_run_meta(conn)


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


def ensure_trace(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the _trace table."""
    conn.execute("CREATE SEQUENCE IF NOT EXISTS _trace_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _trace (
            id INTEGER DEFAULT nextval('_trace_seq'),
            timestamp TIMESTAMP DEFAULT current_timestamp,
            step VARCHAR,
            source VARCHAR,
            query VARCHAR NOT NULL,
            success BOOLEAN NOT NULL,
            error VARCHAR,
            row_count INTEGER,
            elapsed_ms DOUBLE
        )
        """
    )


def log_trace(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    success: bool,
    *,
    error: str | None = None,
    row_count: int | None = None,
    elapsed_ms: float | None = None,
    step: str | None = None,
    source: str | None = None,
) -> None:
    """Log a SQL query execution to the _trace table."""
    conn.execute(
        """
        INSERT INTO _trace (step, source, query, success, error, row_count, elapsed_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [step, source, query, success, error, row_count, elapsed_ms],
    )


def run_sql(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    params: list[Any] | None = None,
    *,
    step: str | None = None,
    source: str | None = None,
) -> list[tuple[Any, ...]]:
    """Execute one statement, record it in _trace, and return its rows.

    Errors are traced and then re-raised; pipeline steps never continue
    past a failed statement.
    """
    start_time = time.perf_counter()
    try:
        if params is None:
            cursor = conn.execute(query)
        else:
            cursor = conn.execute(query, params)
        rows = cursor.fetchall() if cursor.description else []
    except duckdb.Error as e:
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        log.debug("[%s] statement failed: %s", step or "?", e)
        log_trace(
            conn,
            query,
            success=False,
            error=str(e),
            elapsed_ms=elapsed_ms,
            step=step,
            source=source,
        )
        raise

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    log_trace(
        conn,
        query,
        success=True,
        row_count=len(rows),
        elapsed_ms=elapsed_ms,
        step=step,
        source=source,
    )
    return rows


# ---------------------------------------------------------------------------
# Step metadata
# ---------------------------------------------------------------------------


def ensure_step_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _step_meta (
            step VARCHAR PRIMARY KEY,
            meta_json VARCHAR NOT NULL
        )
        """
    )


def persist_step_meta(
    conn: duckdb.DuckDBPyConnection, step: str, meta: dict[str, Any]
) -> None:
    """Persist per-step run metadata in _step_meta (overwrite per step)."""
    ensure_step_meta(conn)
    conn.execute("DELETE FROM _step_meta WHERE step = ?", [step])
    conn.execute(
        "INSERT INTO _step_meta (step, meta_json) VALUES (?, ?)",
        [step, json.dumps(meta, sort_keys=True, default=str)],
    )


def read_step_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, dict[str, Any]]:
    """Read per-step metadata. Returns empty dict if table doesn't exist."""
    try:
        rows = conn.execute("SELECT step, meta_json FROM _step_meta").fetchall()
    except duckdb.Error:
        return {}
    return {step: json.loads(meta) for step, meta in rows}


# ---------------------------------------------------------------------------
# Run metadata
# ---------------------------------------------------------------------------


def ensure_run_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _run_meta (
            key VARCHAR PRIMARY KEY,
            value VARCHAR
        )
        """
    )


def persist_run_meta(
    conn: duckdb.DuckDBPyConnection,
    config: Any,
    *,
    input_row_counts: dict[str, int] | None = None,
    reports: list[str] | None = None,
) -> None:
    """Write run-level metadata to _run_meta."""
    ensure_run_meta(conn)
    conn.execute("DELETE FROM _run_meta")

    try:
        pkg_version = importlib.metadata.version("nyc-payroll")
    except importlib.metadata.PackageNotFoundError:
        pkg_version = "unknown"

    rows: list[tuple[str, str]] = [
        ("meta_version", "1"),
        ("created_at_utc", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
        ("package_version", pkg_version),
        ("python_version", sys.version.split()[0]),
        ("platform", platform.platform()),
        ("reference_date", config.reference_date.isoformat()),
        ("leave_status", config.leave_status),
        ("table", config.table),
        (
            "income_sources",
            json.dumps(dict(config.income_rules.overrides), sort_keys=True),
        ),
    ]

    if input_row_counts:
        input_schemas = {
            table: [
                {"name": r[0], "type": r[1]} for r in get_column_schema(conn, table)
            ]
            for table in sorted(input_row_counts)
        }
        rows.append(("inputs_row_counts", json.dumps(input_row_counts, sort_keys=True)))
        rows.append(("inputs_schema", json.dumps(input_schemas, sort_keys=True)))

    if reports is not None:
        rows.append(("reports", json.dumps(sorted(reports))))

    conn.executemany("INSERT INTO _run_meta (key, value) VALUES (?, ?)", rows)


def read_run_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, str]:
    """Read run metadata. Returns empty dict if table doesn't exist."""
    try:
        return dict(conn.execute("SELECT key, value FROM _run_meta").fetchall())
    except duckdb.Error:
        return {}


def upsert_run_meta(
    conn: duckdb.DuckDBPyConnection, rows: list[tuple[str, str]]
) -> None:
    """Upsert additional run metadata rows."""
    ensure_run_meta(conn)
    conn.executemany(
        """
        INSERT INTO _run_meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        rows,
    )
