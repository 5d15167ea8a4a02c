"""Schema normalizer: turn the raw payroll snapshot into its canonical shape.

Steps run in a fixed order because later steps depend on the column
names earlier steps produce:

1. ``drop_columns``          drop ``mid_init`` and ``payroll_number``
2. ``rename_leave_status``   ``leave_status_as_of_june_thirty`` -> ``leave_status``
3. ``canonicalize_casing``   upper-case the listed boroughs and the police agency
4. ``rename_work_location``  ``work_location_borough`` -> ``work_location``
5. ``filter_scope``          delete rows outside the five boroughs

All steps run against a private staging copy. The canonical table is only
replaced, in one transaction, once every step has succeeded, so readers
never see a partially renamed or partially filtered table.

Every step inspects the current schema first, which makes the whole run
idempotent: normalizing an already-clean table is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import duckdb

from .catalog import count_rows, quote_ident, table_exists
from .infra import log_trace, run_sql
from .sql_utils import SchemaError, get_column_names, sql_in_list

log = logging.getLogger(__name__)

STEP = "normalize"

NYC_BOROUGHS = ("BROOKLYN", "BRONX", "MANHATTAN", "QUEENS", "RICHMOND")

# Only these locations and agencies are re-cased. Other casing variants
# (e.g. "brooklyn") are left alone and removed by the scope filter.
CASED_LOCATIONS = ("Bronx", "Manhattan", "Queens", "Richmond")
CASED_AGENCIES = ("Police Department",)

DROPPED_COLUMNS = ("mid_init", "payroll_number")
LEAVE_STATUS_RENAME = ("leave_status_as_of_june_thirty", "leave_status")
WORK_LOCATION_RENAME = ("work_location_borough", "work_location")


@dataclass
class NormalizeResult:
    """Summary of a normalizer run."""

    rows_before: int
    rows_after: int
    dropped_columns: list[str] = field(default_factory=list)
    renamed_columns: list[tuple[str, str]] = field(default_factory=list)
    locations_recased: int = 0
    agencies_recased: int = 0

    @property
    def rows_deleted(self) -> int:
        return self.rows_before - self.rows_after

    @property
    def changed(self) -> bool:
        return bool(
            self.dropped_columns
            or self.renamed_columns
            or self.locations_recased
            or self.agencies_recased
            or self.rows_deleted
        )

    def as_meta(self) -> dict[str, Any]:
        return {
            "rows_before": self.rows_before,
            "rows_after": self.rows_after,
            "rows_deleted": self.rows_deleted,
            "dropped_columns": self.dropped_columns,
            "renamed_columns": [list(r) for r in self.renamed_columns],
            "locations_recased": self.locations_recased,
            "agencies_recased": self.agencies_recased,
        }


def check_structure(conn: duckdb.DuckDBPyConnection, table: str) -> None:
    """Raise SchemaError unless *table* has every column the steps need.

    A renamed column may be present under either its raw or its canonical
    name (the latter when the table was already normalized), but not both.
    """
    cols = get_column_names(conn, table)
    if not cols:
        raise SchemaError(f"Table '{table}' does not exist or has no columns.")

    errors: list[str] = []
    if "agency_name" not in cols:
        errors.append("missing column 'agency_name'")
    for old, new in (LEAVE_STATUS_RENAME, WORK_LOCATION_RENAME):
        if old in cols and new in cols:
            errors.append(f"both '{old}' and '{new}' are present")
        elif old not in cols and new not in cols:
            errors.append(f"missing column '{old}' (or its canonical name '{new}')")

    if errors:
        raise SchemaError(
            f"Table '{table}' cannot be normalized: " + "; ".join(errors) + "."
        )


# ---------------------------------------------------------------------------
# Steps (each operates on the staging table)
# ---------------------------------------------------------------------------


def _drop_columns(
    conn: duckdb.DuckDBPyConnection, table: str, result: NormalizeResult
) -> None:
    cols = get_column_names(conn, table)
    for col in DROPPED_COLUMNS:
        if col not in cols:
            continue
        run_sql(
            conn,
            f"ALTER TABLE {quote_ident(table)} DROP COLUMN {quote_ident(col)}",
            step=STEP,
            source="drop_columns",
        )
        result.dropped_columns.append(col)


def _rename(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    old: str,
    new: str,
    source: str,
    result: NormalizeResult,
) -> None:
    if old not in get_column_names(conn, table):
        return
    run_sql(
        conn,
        f"ALTER TABLE {quote_ident(table)} "
        f"RENAME COLUMN {quote_ident(old)} TO {quote_ident(new)}",
        step=STEP,
        source=source,
    )
    result.renamed_columns.append((old, new))


def _rename_leave_status(
    conn: duckdb.DuckDBPyConnection, table: str, result: NormalizeResult
) -> None:
    _rename(conn, table, *LEAVE_STATUS_RENAME, "rename_leave_status", result)


def _rename_work_location(
    conn: duckdb.DuckDBPyConnection, table: str, result: NormalizeResult
) -> None:
    _rename(conn, table, *WORK_LOCATION_RENAME, "rename_work_location", result)


def _recase(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    column: str,
    values: tuple[str, ...],
) -> int:
    """Upper-case values of *column* that match *values* case-insensitively.

    Returns the number of rows whose value actually changed.
    """
    # All-NULL columns can arrive typed as INTEGER.
    text = f"CAST({quote_ident(column)} AS VARCHAR)"
    col = quote_ident(column)
    match = (
        f"lower({text}) IN {sql_in_list(v.lower() for v in values)} "
        f"AND {text} <> upper({text})"
    )
    rows = run_sql(
        conn,
        f"SELECT count(*) FROM {quote_ident(table)} WHERE {match}",
        step=STEP,
        source="canonicalize_casing",
    )
    n = int(rows[0][0]) if rows else 0
    if n:
        run_sql(
            conn,
            f"UPDATE {quote_ident(table)} SET {col} = upper({col}) WHERE {match}",
            step=STEP,
            source="canonicalize_casing",
        )
    return n


def _canonicalize_casing(
    conn: duckdb.DuckDBPyConnection, table: str, result: NormalizeResult
) -> None:
    cols = get_column_names(conn, table)
    # Already-renamed tables are re-cased under the canonical name.
    location = (
        WORK_LOCATION_RENAME[0]
        if WORK_LOCATION_RENAME[0] in cols
        else WORK_LOCATION_RENAME[1]
    )
    result.locations_recased = _recase(conn, table, location, CASED_LOCATIONS)
    result.agencies_recased = _recase(conn, table, "agency_name", CASED_AGENCIES)


def _filter_scope(
    conn: duckdb.DuckDBPyConnection, table: str, result: NormalizeResult
) -> None:
    col = f"CAST({quote_ident(WORK_LOCATION_RENAME[1])} AS VARCHAR)"
    run_sql(
        conn,
        f"DELETE FROM {quote_ident(table)} "
        f"WHERE {col} IS NULL OR {col} NOT IN {sql_in_list(NYC_BOROUGHS)}",
        step=STEP,
        source="filter_scope",
    )


NORMALIZE_STEPS: list[
    tuple[str, Callable[[duckdb.DuckDBPyConnection, str, NormalizeResult], None]]
] = [
    ("drop_columns", _drop_columns),
    ("rename_leave_status", _rename_leave_status),
    ("canonicalize_casing", _canonicalize_casing),
    ("rename_work_location", _rename_work_location),
    ("filter_scope", _filter_scope),
]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _swap_in(conn: duckdb.DuckDBPyConnection, table: str, staging: str) -> None:
    """Replace *table* with *staging* in a single transaction."""
    statements = [
        f"DROP TABLE {quote_ident(table)}",
        f"ALTER TABLE {quote_ident(staging)} RENAME TO {quote_ident(table)}",
    ]
    conn.begin()
    try:
        for q in statements:
            conn.execute(q)
        conn.commit()
    except duckdb.Error:
        conn.rollback()
        conn.execute(f"DROP TABLE IF EXISTS {quote_ident(staging)}")
        raise
    for q in statements:
        log_trace(conn, q, success=True, step=STEP, source="swap")


def normalize_payroll(
    conn: duckdb.DuckDBPyConnection, table: str = "payroll"
) -> NormalizeResult:
    """Normalize *table* in place and return a summary of what changed.

    Raises SchemaError (before touching anything) if a required column is
    missing. Any other failure also leaves *table* unchanged.
    """
    if not table_exists(conn, table):
        raise SchemaError(f"Table '{table}' does not exist.")
    check_structure(conn, table)

    rows_before = count_rows(conn, table) or 0
    result = NormalizeResult(rows_before=rows_before, rows_after=rows_before)

    staging = f"_normalize_tmp_{table}"
    conn.execute(f"DROP TABLE IF EXISTS {quote_ident(staging)}")
    run_sql(
        conn,
        f"CREATE TABLE {quote_ident(staging)} AS SELECT * FROM {quote_ident(table)}",
        step=STEP,
        source="stage",
    )
    try:
        for name, apply in NORMALIZE_STEPS:
            apply(conn, staging, result)
            log.debug("  normalize.%s done", name)
    except Exception:
        conn.execute(f"DROP TABLE IF EXISTS {quote_ident(staging)}")
        raise

    result.rows_after = count_rows(conn, staging) or 0
    if not result.changed:
        conn.execute(f"DROP TABLE {quote_ident(staging)}")
        log.info("  %s: already normalized (%d rows)", table, rows_before)
        return result

    _swap_in(conn, table, staging)

    log.info(
        "  %s: %d -> %d rows (%d out of scope), dropped [%s], renamed %d column(s)",
        table,
        result.rows_before,
        result.rows_after,
        result.rows_deleted,
        ", ".join(result.dropped_columns),
        len(result.renamed_columns),
    )
    if result.locations_recased or result.agencies_recased:
        log.info(
            "  %s: re-cased %d location(s), %d agency name(s)",
            table,
            result.locations_recased,
            result.agencies_recased,
        )
    return result
