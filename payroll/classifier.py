"""Employee classifier: yearly income and seniority level per employee.

Reads the normalized payroll table and defines:

- ``employee_level(days)``     a SQL macro mapping tenure in days to a level
- ``employee_classification``  one row per (employee, agency, start date)
- ``leveled_employees``        the rows eligible for level-based reporting
                               (``yearly_income > 0``)

Income comes from ``base_salary`` except for agencies that never populate
it; for those :class:`IncomeRules` points at ``regular_gross_paid``.

The same rules are available in plain Python (:func:`level_for_days`,
:func:`classify`) for callers that work on individual records.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Sequence

import duckdb

from .catalog import count_rows, quote_ident
from .infra import run_sql
from .sql_utils import (
    SchemaError,
    get_column_schema,
    require_columns,
    sql_in_list,
    sql_literal,
)

log = logging.getLogger(__name__)

STEP = "classify"

BASE_SALARY = "base_salary"
REGULAR_GROSS_PAID = "regular_gross_paid"
INCOME_SOURCES = (BASE_SALARY, REGULAR_GROSS_PAID)

HOURLY_AGENCIES = (
    "DEPT OF ED PER SESSION TEACHER",
    "BOARD OF ELECTION POLL WORKERS",
    "DEPT OF ED HRLY SUPPORT STAFF",
)

CLASSIFICATION_VIEW = "employee_classification"
LEVELED_VIEW = "leveled_employees"
LEVEL_MACRO = "employee_level"

REQUIRED_COLUMNS = (
    "first_name",
    "last_name",
    "agency_name",
    "agency_start_date",
    "leave_status",
    BASE_SALARY,
    REGULAR_GROSS_PAID,
)

# Text start dates are either ISO or the portal's MM/DD/YYYY.
_US_DATE_FORMAT = "%m/%d/%Y"


# ---------------------------------------------------------------------------
# Income rules
# ---------------------------------------------------------------------------


def _default_overrides() -> dict[str, str]:
    return {agency: REGULAR_GROSS_PAID for agency in HOURLY_AGENCIES}


@dataclass(frozen=True)
class IncomeRules:
    """Which compensation column stands in for yearly income, per agency.

    Attributes:
        overrides: agency_name -> source column, for agencies that do not
            report through the default column.
        default: Source column for every other agency.
    """

    overrides: Mapping[str, str] = field(default_factory=_default_overrides)
    default: str = BASE_SALARY

    def __post_init__(self) -> None:
        for agency, source in [("(default)", self.default), *self.overrides.items()]:
            if source not in INCOME_SOURCES:
                raise ValueError(
                    f"Income source for {agency} must be one of "
                    f"{', '.join(INCOME_SOURCES)}; got '{source}'."
                )

    def source_for(self, agency_name: str | None) -> str:
        if agency_name is None:
            return self.default
        return self.overrides.get(agency_name, self.default)

    def agencies_using(self, source: str) -> list[str]:
        """Agencies explicitly mapped to *source* (sorted)."""
        return sorted(a for a, s in self.overrides.items() if s == source)

    def non_default_agencies(self) -> list[str]:
        return sorted(a for a, s in self.overrides.items() if s != self.default)

    def sql_expression(self, agency_column: str = "agency_name") -> str:
        """CASE expression selecting the income column for each row."""
        whens: list[str] = []
        for source in INCOME_SOURCES:
            if source == self.default:
                continue
            agencies = self.agencies_using(source)
            if agencies:
                whens.append(
                    f"WHEN {quote_ident(agency_column)} IN {sql_in_list(agencies)} "
                    f"THEN {quote_ident(source)}"
                )
        if not whens:
            return quote_ident(self.default)
        return (
            "CASE " + " ".join(whens) + f" ELSE {quote_ident(self.default)} END"
        )


# ---------------------------------------------------------------------------
# Level bands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LevelBand:
    label: str
    low: int
    high: int | None  # inclusive; None = unbounded

    def contains(self, days: int) -> bool:
        return days >= self.low and (self.high is None or days <= self.high)

    def sql_condition(self, expr: str) -> str:
        if self.high is None:
            return f"{expr} >= {self.low}"
        return f"{expr} BETWEEN {self.low} AND {self.high}"


# Single cut points: 3285 days is the last Mid-senior day.
LEVEL_BANDS = (
    LevelBand("Entry level", 0, 1095),
    LevelBand("Mid level", 1096, 2190),
    LevelBand("Mid-senior", 2191, 3285),
    LevelBand("Senior level", 3286, None),
)
OTHER_LEVEL = "other"
LEVEL_ORDER = tuple(b.label for b in LEVEL_BANDS) + (OTHER_LEVEL,)


def level_for_days(days: int | None) -> str:
    """Map tenure in days to an employee level."""
    if days is None:
        return OTHER_LEVEL
    for band in LEVEL_BANDS:
        if band.contains(days):
            return band.label
    return OTHER_LEVEL


def level_case_sql(expr: str) -> str:
    """SQL CASE expression equivalent to :func:`level_for_days`."""
    whens = " ".join(
        f"WHEN {band.sql_condition(expr)} THEN {sql_literal(band.label)}"
        for band in LEVEL_BANDS
    )
    return f"CASE {whens} ELSE {sql_literal(OTHER_LEVEL)} END"


# ---------------------------------------------------------------------------
# Record-level classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Classification:
    employee_name: str
    agency_name: str
    agency_start_date: date
    days_employed: int
    yearly_income: float | None
    employee_level: str

    @property
    def reportable(self) -> bool:
        """True if the record may appear in level-based aggregates."""
        return self.yearly_income is not None and self.yearly_income > 0


def classify(
    records: Sequence[Mapping[str, Any]],
    reference_date: date,
    rules: IncomeRules | None = None,
    leave_status: str = "ACTIVE",
) -> Classification:
    """Classify one employee from their payroll rows.

    *records* are the cleaned rows of a single employee at a single agency
    (typically one per fiscal year). Only rows whose ``leave_status`` is
    *leave_status* count; income is averaged over those.
    """
    if not records:
        raise ValueError("classify() needs at least one payroll record")
    records = [r for r in records if r.get("leave_status") == leave_status]
    if not records:
        raise ValueError(f"classify() found no records with leave_status '{leave_status}'")
    rules = rules or IncomeRules()
    first = records[0]

    start = first.get("agency_start_date")
    if start is None:
        raise ValueError("agency_start_date is required for classification")
    if isinstance(start, datetime):
        start = start.date()

    agency = first.get("agency_name")
    column = rules.source_for(agency)
    values = [float(r[column]) for r in records if r.get(column) is not None]
    yearly_income = sum(values) / len(values) if values else None

    days = (reference_date - start).days
    name = " ".join(
        str(p) for p in (first.get("first_name"), first.get("last_name")) if p
    )
    return Classification(
        employee_name=name,
        agency_name=agency,
        agency_start_date=start,
        days_employed=days,
        yearly_income=yearly_income,
        employee_level=level_for_days(days),
    )


# ---------------------------------------------------------------------------
# Table-level classification
# ---------------------------------------------------------------------------


def start_date_expression(conn: duckdb.DuckDBPyConnection, table: str) -> str:
    """SQL expression yielding ``agency_start_date`` as a DATE.

    Raises SchemaError if the column has a type that cannot hold a date.
    """
    types = dict(get_column_schema(conn, table))
    col = quote_ident("agency_start_date")
    dtype = (types.get("agency_start_date") or "").upper()
    if dtype == "DATE":
        return col
    if dtype.startswith("TIMESTAMP"):
        return f"CAST({col} AS DATE)"
    if dtype == "VARCHAR":
        return (
            f"COALESCE(TRY_CAST({col} AS DATE), "
            f"CAST(TRY_STRPTIME({col}, {sql_literal(_US_DATE_FORMAT)}) AS DATE))"
        )
    raise SchemaError(
        f"Column 'agency_start_date' in '{table}' has unsupported type '{dtype}'."
    )


@dataclass
class ClassifyResult:
    employees: int
    leveled: int
    reference_date: date
    level_counts: dict[str, int] = field(default_factory=dict)

    @property
    def excluded(self) -> int:
        """Employees left out of level reporting for non-positive income."""
        return self.employees - self.leveled

    def as_meta(self) -> dict[str, Any]:
        return {
            "employees": self.employees,
            "leveled": self.leveled,
            "excluded_non_positive_income": self.excluded,
            "reference_date": self.reference_date.isoformat(),
            "level_counts": self.level_counts,
        }


def classify_employees(
    conn: duckdb.DuckDBPyConnection,
    reference_date: date,
    *,
    rules: IncomeRules | None = None,
    table: str = "payroll",
    leave_status: str = "ACTIVE",
) -> ClassifyResult:
    """Define the classification macro and views over a normalized *table*.

    Raises SchemaError if *table* lacks a required column (i.e. it was not
    normalized first).
    """
    rules = rules or IncomeRules()
    require_columns(conn, table, REQUIRED_COLUMNS)
    start_expr = start_date_expression(conn, table)
    ref = sql_literal(reference_date)

    run_sql(
        conn,
        f"CREATE OR REPLACE MACRO {LEVEL_MACRO}(days) AS {level_case_sql('days')}",
        step=STEP,
        source="macro",
    )
    run_sql(
        conn,
        f"""
        CREATE OR REPLACE VIEW {quote_ident(CLASSIFICATION_VIEW)} AS
        WITH records AS (
            SELECT
                trim(concat_ws(' ', "first_name", "last_name")) AS employee_name,
                "agency_name",
                {start_expr} AS agency_start_date,
                {rules.sql_expression()} AS income
            FROM {quote_ident(table)}
            WHERE "leave_status" = {sql_literal(leave_status)}
        ),
        employees AS (
            SELECT
                employee_name,
                agency_name,
                agency_start_date,
                avg(income) AS yearly_income
            FROM records
            WHERE agency_start_date IS NOT NULL
            GROUP BY employee_name, agency_name, agency_start_date
        )
        SELECT
            employee_name,
            agency_name,
            agency_start_date,
            date_diff('day', agency_start_date, {ref}) AS days_employed,
            yearly_income,
            {LEVEL_MACRO}(date_diff('day', agency_start_date, {ref})) AS employee_level
        FROM employees
        """,
        step=STEP,
        source=CLASSIFICATION_VIEW,
    )
    run_sql(
        conn,
        f"""
        CREATE OR REPLACE VIEW {quote_ident(LEVELED_VIEW)} AS
        SELECT *
        FROM {quote_ident(CLASSIFICATION_VIEW)}
        WHERE yearly_income > 0
        """,
        step=STEP,
        source=LEVELED_VIEW,
    )

    level_counts = dict(
        run_sql(
            conn,
            f"SELECT employee_level, count(*) FROM {quote_ident(LEVELED_VIEW)} "
            "GROUP BY employee_level",
            step=STEP,
            source="level_counts",
        )
    )
    result = ClassifyResult(
        employees=count_rows(conn, CLASSIFICATION_VIEW) or 0,
        leveled=count_rows(conn, LEVELED_VIEW) or 0,
        reference_date=reference_date,
        level_counts={k: int(v) for k, v in level_counts.items()},
    )
    log.info(
        "  %s: %d employee(s) as of %s, %d leveled, %d excluded (income <= 0)",
        CLASSIFICATION_VIEW,
        result.employees,
        reference_date.isoformat(),
        result.leveled,
        result.excluded,
    )
    return result
