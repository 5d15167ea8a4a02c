"""Tests for payroll/classifier.py: income selection and level bands."""

from datetime import date, datetime

import pytest

from payroll.classifier import (
    BASE_SALARY,
    CLASSIFICATION_VIEW,
    HOURLY_AGENCIES,
    LEVEL_MACRO,
    LEVELED_VIEW,
    OTHER_LEVEL,
    REGULAR_GROSS_PAID,
    IncomeRules,
    classify,
    classify_employees,
    level_case_sql,
    level_for_days,
    start_date_expression,
)
from payroll.normalizer import normalize_payroll
from payroll.sql_utils import SchemaError
from tests.conftest import REFERENCE_DATE, _load_raw, _raw_row, _started, _views

BOUNDARIES = [
    (0, "Entry level"),
    (1095, "Entry level"),
    (1096, "Mid level"),
    (2190, "Mid level"),
    (2191, "Mid-senior"),
    (3284, "Mid-senior"),
    (3285, "Mid-senior"),
    (3286, "Senior level"),
    (12000, "Senior level"),
    (-5, OTHER_LEVEL),
    (None, OTHER_LEVEL),
]


def _classified(conn, **kwargs) -> dict[str, tuple]:
    classify_employees(conn, REFERENCE_DATE, **kwargs)
    rows = conn.execute(
        f"SELECT employee_name, days_employed, yearly_income, employee_level "
        f"FROM {CLASSIFICATION_VIEW}"
    ).fetchall()
    return {r[0]: r[1:] for r in rows}


class TestLevelForDays:
    @pytest.mark.parametrize("days,level", BOUNDARIES)
    def test_boundaries(self, days, level):
        assert level_for_days(days) == level

    def test_sql_agrees_with_python(self, conn):
        days = [d for d, _ in BOUNDARIES]
        rows = conn.execute(
            f"SELECT d, {level_case_sql('d')} FROM (SELECT unnest(CAST(? AS INTEGER[])) AS d)",
            [days],
        ).fetchall()
        assert {d: lvl for d, lvl in rows} == {d: level_for_days(d) for d in days}


class TestIncomeRules:
    def test_default_mapping(self):
        rules = IncomeRules()
        for agency in HOURLY_AGENCIES:
            assert rules.source_for(agency) == REGULAR_GROSS_PAID
        assert rules.source_for("POLICE DEPARTMENT") == BASE_SALARY
        assert rules.source_for(None) == BASE_SALARY

    def test_rejects_unknown_source(self):
        with pytest.raises(ValueError, match="must be one of"):
            IncomeRules(overrides={"X": "total_ot_paid"})

    def test_sql_expression_without_overrides(self):
        assert IncomeRules(overrides={}).sql_expression() == '"base_salary"'

    def test_sql_expression_with_overrides(self):
        expr = IncomeRules(overrides={"A": REGULAR_GROSS_PAID}).sql_expression()
        assert expr.startswith("CASE WHEN")
        assert "'A'" in expr
        assert expr.endswith('ELSE "base_salary" END')

    def test_non_default_agencies(self):
        rules = IncomeRules(overrides={"B": REGULAR_GROSS_PAID, "A": BASE_SALARY})
        assert rules.non_default_agencies() == ["B"]


class TestClassifyRecord:
    def test_mid_level(self):
        result = classify(
            [
                {
                    "first_name": "JOHN",
                    "last_name": "SMITH",
                    "agency_name": "POLICE DEPARTMENT",
                    "agency_start_date": _started(1200),
                    "leave_status": "ACTIVE",
                    "base_salary": 50000.0,
                }
            ],
            REFERENCE_DATE,
        )
        assert result.days_employed == 1200
        assert result.employee_level == "Mid level"
        assert result.yearly_income == 50000.0
        assert result.employee_name == "JOHN SMITH"
        assert result.reportable

    def test_hourly_agency_averages_gross_paid(self):
        records = [
            {
                "agency_name": "DEPT OF ED PER SESSION TEACHER",
                "agency_start_date": datetime(2020, 1, 1, 0, 0),
                "leave_status": "ACTIVE",
                "base_salary": 40.0,
                "regular_gross_paid": gross,
            }
            for gross in (1000.0, 3000.0)
        ]
        result = classify(records, REFERENCE_DATE)
        assert result.yearly_income == 2000.0
        assert result.agency_start_date == date(2020, 1, 1)

    def test_zero_income_not_reportable(self):
        result = classify(
            [
                {
                    "agency_name": "X",
                    "agency_start_date": _started(10),
                    "leave_status": "ACTIVE",
                    "base_salary": 0.0,
                }
            ],
            REFERENCE_DATE,
        )
        assert not result.reportable

    def test_only_selected_leave_status_counts(self):
        records = [
            {"agency_name": "X", "agency_start_date": _started(10),
             "leave_status": "ACTIVE", "base_salary": 80000.0},
            {"agency_name": "X", "agency_start_date": _started(10),
             "leave_status": "CEASED", "base_salary": 20000.0},
        ]
        assert classify(records, REFERENCE_DATE).yearly_income == 80000.0
        assert classify(records, REFERENCE_DATE, leave_status="CEASED").yearly_income == 20000.0

    def test_no_records_with_leave_status(self):
        with pytest.raises(ValueError, match="leave_status 'ACTIVE'"):
            classify(
                [{"agency_name": "X", "agency_start_date": _started(10), "leave_status": "CEASED"}],
                REFERENCE_DATE,
            )

    def test_empty_records(self):
        with pytest.raises(ValueError, match="at least one"):
            classify([], REFERENCE_DATE)

    def test_missing_start_date(self):
        with pytest.raises(ValueError, match="agency_start_date"):
            classify([{"agency_name": "X", "leave_status": "ACTIVE"}], REFERENCE_DATE)


class TestClassifyEmployees:
    def test_creates_macro_and_views(self, conn):
        _load_raw(conn, [_raw_row()])
        normalize_payroll(conn)
        classify_employees(conn, REFERENCE_DATE)

        assert {CLASSIFICATION_VIEW, LEVELED_VIEW} <= _views(conn)
        assert conn.execute(f"SELECT {LEVEL_MACRO}(3285)").fetchone()[0] == "Mid-senior"

    def test_end_to_end_bronx_police(self, conn):
        _load_raw(
            conn,
            [
                _raw_row(
                    work_location_borough="bronx",
                    agency_name="police department",
                    base_salary=50000.0,
                    agency_start_date=_started(1200),
                )
            ],
        )
        normalize_payroll(conn)
        classified = _classified(conn)
        assert classified["JOHN SMITH"] == (1200, 50000.0, "Mid level")

    def test_income_source_per_agency(self, conn):
        _load_raw(
            conn,
            [
                _raw_row(first_name="A", agency_name="FIRE DEPARTMENT"),
                _raw_row(
                    first_name="B",
                    agency_name="BOARD OF ELECTION POLL WORKERS",
                    base_salary=1.0,
                    regular_gross_paid=900.0,
                ),
            ],
        )
        normalize_payroll(conn)
        classified = _classified(conn)
        assert classified["A SMITH"][1] == 85000.0
        assert classified["B SMITH"][1] == 900.0

    def test_income_averaged_over_fiscal_years(self, conn):
        _load_raw(
            conn,
            [
                _raw_row(fiscal_year=2021, base_salary=80000.0),
                _raw_row(fiscal_year=2022, base_salary=90000.0),
            ],
        )
        normalize_payroll(conn)
        assert _classified(conn)["JOHN SMITH"][1] == 85000.0

    def test_boundaries_in_sql(self, conn):
        days = [1095, 1096, 2190, 2191, 3284, 3285, 3286, -5]
        _load_raw(
            conn,
            [_raw_row(first_name=f"E{d}", agency_start_date=_started(d)) for d in days],
        )
        normalize_payroll(conn)
        classified = _classified(conn)
        for d in days:
            assert classified[f"E{d} SMITH"][0] == d
            assert classified[f"E{d} SMITH"][2] == level_for_days(d)

    def test_non_positive_income_excluded_from_leveled(self, conn):
        _load_raw(
            conn,
            [
                _raw_row(first_name="PAID"),
                _raw_row(first_name="ZERO", base_salary=0.0),
                _raw_row(first_name="NEG", base_salary=-10.0),
            ],
        )
        normalize_payroll(conn)
        result = classify_employees(conn, REFERENCE_DATE)

        leveled = conn.execute(f"SELECT employee_name FROM {LEVELED_VIEW}").fetchall()
        assert leveled == [("PAID SMITH",)]
        assert result.employees == 3
        assert result.leveled == 1
        assert result.excluded == 2

    def test_leave_status_filter(self, conn):
        _load_raw(
            conn,
            [
                _raw_row(first_name="ON"),
                _raw_row(first_name="OFF", leave_status_as_of_june_thirty="ON LEAVE"),
            ],
        )
        normalize_payroll(conn)
        assert set(_classified(conn)) == {"ON SMITH"}
        assert set(_classified(conn, leave_status="ON LEAVE")) == {"OFF SMITH"}

    def test_record_classify_agrees_with_view(self, conn):
        _load_raw(
            conn,
            [
                _raw_row(fiscal_year=2021, base_salary=80000.0),
                _raw_row(
                    fiscal_year=2022,
                    base_salary=20000.0,
                    leave_status_as_of_june_thirty="CEASED",
                ),
            ],
        )
        normalize_payroll(conn)
        days, income, level = _classified(conn)["JOHN SMITH"]

        records = conn.execute("SELECT * FROM payroll").pl().to_dicts()
        result = classify(records, REFERENCE_DATE)
        assert (result.days_employed, result.yearly_income, result.employee_level) == (
            days,
            income,
            level,
        )
        assert income == 80000.0

    def test_text_start_dates(self, conn):
        _load_raw(
            conn,
            [
                _raw_row(first_name="ISO", agency_start_date="2019-12-31"),
                _raw_row(first_name="US", agency_start_date="12/31/2019"),
                _raw_row(first_name="BAD", agency_start_date="not a date"),
            ],
        )
        normalize_payroll(conn)
        classified = _classified(conn)
        assert classified["ISO SMITH"][0] == 1096
        assert classified["US SMITH"][0] == 1096
        assert "BAD SMITH" not in classified

    def test_requires_normalized_table(self, conn):
        _load_raw(conn, [_raw_row()])
        with pytest.raises(SchemaError, match="leave_status"):
            classify_employees(conn, REFERENCE_DATE)

    def test_does_not_write_to_payroll(self, conn):
        _load_raw(conn, [_raw_row()])
        normalize_payroll(conn)
        before = conn.execute("SELECT * FROM payroll").fetchall()
        classify_employees(conn, REFERENCE_DATE)
        assert conn.execute("SELECT * FROM payroll").fetchall() == before


class TestStartDateExpression:
    def test_unsupported_type(self, conn):
        conn.execute("CREATE TABLE t (agency_start_date INTEGER)")
        with pytest.raises(SchemaError, match="unsupported type"):
            start_date_expression(conn, "t")

    def test_date_column_used_directly(self, conn):
        conn.execute("CREATE TABLE t (agency_start_date DATE)")
        assert start_date_expression(conn, "t") == '"agency_start_date"'
