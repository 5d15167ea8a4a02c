"""Validation views for pipeline steps.

A check is a query returning ``status`` and ``message`` columns. Each one
is wrapped into a view named ``{step}__validation_{check}``:

- any row with lower(status) = 'fail' fails the step
- rows with lower(status) = 'warn' are reported but do not fail it
- a check returning no rows passes

The views stay in the database so a finished run can be re-inspected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

import duckdb

from .catalog import quote_ident
from .classifier import CLASSIFICATION_VIEW, OTHER_LEVEL
from .infra import run_sql
from .normalizer import (
    DROPPED_COLUMNS,
    LEAVE_STATUS_RENAME,
    NYC_BOROUGHS,
    WORK_LOCATION_RENAME,
    CASED_AGENCIES,
    NormalizeResult,
)
from .sql_utils import get_column_names, sql_in_list, sql_literal

log = logging.getLogger(__name__)

_VALIDATION_VIEW_REQUIRED_COLS = ["status", "message"]
_VALIDATION_STATUS_ALLOWED = {"pass", "warn", "fail"}
MAX_INLINE_MESSAGES = 20  # Cap messages shown inline in error/warning output


def validation_view_name(step: str, check: str) -> str:
    return f"{step}__validation_{check}"


@dataclass
class CheckOutcome:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors


def _format_rows(header: str, msgs: list[str]) -> str:
    count = len(msgs)
    sample = msgs[:MAX_INLINE_MESSAGES]
    detail = "\n".join(f"  {m}" for m in sample)
    if count > MAX_INLINE_MESSAGES:
        detail += f"\n  ... and {count - MAX_INLINE_MESSAGES} more"
    return f"{header} ({count}):\n{detail}"


def _evaluate_view(
    conn: duckdb.DuckDBPyConnection, view_name: str, outcome: CheckOutcome
) -> None:
    cols = {c.lower() for c in get_column_names(conn, view_name)}
    missing = [c for c in _VALIDATION_VIEW_REQUIRED_COLS if c not in cols]
    if missing:
        outcome.errors.append(
            f"Validation view '{view_name}' is missing required column(s): "
            f"{', '.join(missing)}"
        )
        return

    view = quote_ident(view_name)
    bad = conn.execute(
        f"SELECT DISTINCT lower(status) FROM {view} "
        "WHERE status IS NOT NULL AND lower(status) NOT IN ('pass', 'warn', 'fail')"
    ).fetchall()
    if bad:
        bad_vals = ", ".join(sorted(str(r[0]) for r in bad))
        allowed = ", ".join(sorted(_VALIDATION_STATUS_ALLOWED))
        outcome.errors.append(
            f"Validation view '{view_name}' has invalid status value(s): {bad_vals}. "
            f"Allowed: {allowed}"
        )
        return

    for status, target in (("fail", outcome.errors), ("warn", outcome.warnings)):
        rows = conn.execute(
            f"SELECT message FROM {view} WHERE lower(status) = ?", [status]
        ).fetchall()
        if rows:
            label = "Fail rows in" if status == "fail" else "Warnings via"
            target.append(
                _format_rows(f"{label} '{view_name}'", [str(r[0]) for r in rows])
            )


def run_checks(
    conn: duckdb.DuckDBPyConnection, step: str, checks: Mapping[str, str]
) -> CheckOutcome:
    """Define and evaluate validation views for *step*.

    Raises duckdb.Error if a check query itself is invalid.
    """
    outcome = CheckOutcome()
    for check, query in sorted(checks.items()):
        view_name = validation_view_name(step, check)
        run_sql(
            conn,
            f"CREATE OR REPLACE VIEW {quote_ident(view_name)} AS\n"
            f"{query.rstrip().rstrip(';')}",
            step=step,
            source="validation",
        )
        _evaluate_view(conn, view_name, outcome)

    for w in outcome.warnings:
        log.warning("[%s] %s", step, w)
    return outcome


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------


def normalize_checks(
    table: str, result: NormalizeResult | None = None
) -> dict[str, str]:
    """Checks asserting the cleaned-table invariants."""
    t = quote_ident(table)
    location = f"CAST({quote_ident(WORK_LOCATION_RENAME[1])} AS VARCHAR)"
    stale_columns = [*DROPPED_COLUMNS, LEAVE_STATUS_RENAME[0], WORK_LOCATION_RENAME[0]]
    checks = {
        "scope": f"""
            SELECT
                CASE WHEN count(*) > 0 THEN 'fail' ELSE 'pass' END AS status,
                format('{{}} row(s) with a work_location outside the five boroughs', count(*)) AS message
            FROM {t}
            WHERE {location} IS NULL OR {location} NOT IN {sql_in_list(NYC_BOROUGHS)}
                OR {location} <> upper({location})
        """,
        "agency_casing": f"""
            SELECT 'fail' AS status,
                format('agency_name {{}} is not upper-case', agency_name) AS message
            FROM (
                SELECT DISTINCT agency_name
                FROM (SELECT CAST("agency_name" AS VARCHAR) AS agency_name FROM {t})
                WHERE lower(agency_name) IN {sql_in_list(a.lower() for a in CASED_AGENCIES)}
                    AND agency_name <> upper(agency_name)
            )
        """,
        "columns": f"""
            SELECT 'fail' AS status,
                format('column {{}} should not exist after normalization', column_name) AS message
            FROM information_schema.columns
            WHERE table_name = {sql_literal(table)}
                AND column_name IN {sql_in_list(stale_columns)}
        """,
    }
    if result is not None:
        checks["rows_deleted"] = f"""
            SELECT 'warn' AS status,
                '{result.rows_deleted} row(s) removed by the borough scope filter' AS message
            WHERE {result.rows_deleted} > 0
        """
    return checks


def classify_checks() -> dict[str, str]:
    """Checks reporting data-quality exclusions made by the classifier."""
    view = quote_ident(CLASSIFICATION_VIEW)
    return {
        "income": f"""
            SELECT 'warn' AS status,
                format('{{}} employee(s) with non-positive or missing yearly income excluded from level reporting', n) AS message
            FROM (
                SELECT count(*) AS n FROM {view}
                WHERE yearly_income IS NULL OR yearly_income <= 0
            )
            WHERE n > 0
        """,
        "other_level": f"""
            SELECT 'warn' AS status,
                format('{{}} employee(s) have a start date after the reference date', n) AS message
            FROM (
                SELECT count(*) AS n FROM {view}
                WHERE employee_level = {sql_literal(OTHER_LEVEL)}
            )
            WHERE n > 0
        """,
    }
