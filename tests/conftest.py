"""Shared fixtures and helpers for the payroll test suite."""

from datetime import date, timedelta
from typing import Any

import duckdb
import pytest

from payroll.infra import init_infra
from payroll.ingest import ingest_table

REFERENCE_DATE = date(2022, 12, 31)


@pytest.fixture
def conn():
    """In-memory DuckDB connection for each test."""
    c = duckdb.connect(":memory:")
    init_infra(c)
    yield c
    c.close()


def _raw_row(**overrides: Any) -> dict[str, Any]:
    """One raw payroll record as published by the portal."""
    row = {
        "fiscal_year": 2022,
        "payroll_number": 56,
        "agency_name": "POLICE DEPARTMENT",
        "last_name": "SMITH",
        "first_name": "JOHN",
        "mid_init": "A",
        "agency_start_date": date(2018, 7, 1),
        "work_location_borough": "MANHATTAN",
        "title_description": "POLICE OFFICER",
        "leave_status_as_of_june_thirty": "ACTIVE",
        "base_salary": 85000.0,
        "pay_basis": "per Annum",
        "regular_hours": 2080.0,
        "regular_gross_paid": 84000.0,
        "ot_hours": 100.0,
        "total_ot_paid": 6000.0,
        "total_other_pay": 1000.0,
    }
    row.update(overrides)
    return row


def _started(days: int) -> date:
    """Start date *days* before the reference date."""
    return REFERENCE_DATE - timedelta(days=days)


def _load_raw(
    conn: duckdb.DuckDBPyConnection, rows: list[dict[str, Any]], table: str = "payroll"
) -> None:
    ingest_table(conn, rows, table)


def _columns(conn: duckdb.DuckDBPyConnection, table: str = "payroll") -> list[str]:
    rows = conn.execute(
        "SELECT column_name FROM information_schema.columns "
        "WHERE table_name = ? ORDER BY ordinal_position",
        [table],
    ).fetchall()
    return [r[0] for r in rows]


def _views(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of user-defined view names."""
    rows = conn.execute(
        "SELECT view_name FROM duckdb_views() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}


def _tables(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of user-defined table names."""
    rows = conn.execute(
        "SELECT table_name FROM duckdb_tables() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}
