"""Report catalog: descriptive queries over the cleaned payroll table.

Each report is a ``CREATE OR REPLACE VIEW report_<name>`` statement built
from the pipeline configuration. Reports are independent of each other;
they only read the payroll table, the classification views and (for the
location report) the borough reference table. After a pipeline run they
are materialized as tables of the same name.

Ratio reports only consider rows with a positive denominator
(``regular_hours > 0``, ``regular_gross_paid > 0``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import duckdb
import polars as pl

from .catalog import count_rows, quote_ident, relation_exists
from .classifier import LEVEL_ORDER, LEVELED_VIEW, start_date_expression
from .config import PipelineConfig
from .infra import run_sql
from .sql_utils import sql_in_list, sql_literal, split_sql_statements

log = logging.getLogger(__name__)

STEP = "reports"
REPORT_PREFIX = "report_"

REPORT_DESCRIPTIONS: dict[str, str] = {
    "agency_headcount": "Payroll records per agency and fiscal year, ranked by size",
    "agency_compensation": "Average base, regular and total pay for the focus agencies",
    "budget_variance": "Budgeted base salary against actual pay per salaried agency",
    "overtime_reliance": "Overtime pay and hours relative to regular pay, per agency",
    "hourly_wage_percentiles": "Hourly wage distribution per fiscal year",
    "pay_growth": "Year-over-year change in average base salary per agency",
    "hiring_seasonality": "Share of hires by start month",
    "tenure_vs_leave": "Days employed by leave status",
    "level_summary": "Headcount and income per employee level",
    "borough_correlation": "Salary and headcount against borough home cost and population",
}
REPORT_NAMES = tuple(REPORT_DESCRIPTIONS)


@dataclass(frozen=True)
class Report:
    """A named report query.

    Attributes:
        name: Short name; the output relation is ``report_<name>``.
        description: One-line summary shown by the CLI.
        sql: Statement(s) creating the output view.
        requires: Relations that must exist for the report to run.
    """

    name: str
    description: str
    sql: str
    requires: tuple[str, ...] = ()

    @property
    def relation(self) -> str:
        return report_relation(self.name)


def report_relation(name: str) -> str:
    return f"{REPORT_PREFIX}{name}"


def _salaried_filter(config: PipelineConfig) -> str:
    """Predicate excluding agencies whose base_salary is not an annual figure."""
    hourly = config.income_rules.non_default_agencies()
    if not hourly:
        return "TRUE"
    return f'"agency_name" NOT IN {sql_in_list(hourly)}'


def _focus_filter(config: PipelineConfig) -> str:
    t = quote_ident(config.table)
    if config.focus_agencies:
        return f'"agency_name" IN {sql_in_list(config.focus_agencies)}'
    return (
        f'"agency_name" IN (SELECT "agency_name" FROM {t} '
        f'GROUP BY "agency_name" ORDER BY count(*) DESC, "agency_name" '
        f"LIMIT {int(config.top_agencies)})"
    )


def build_reports(
    conn: duckdb.DuckDBPyConnection, config: PipelineConfig
) -> list[Report]:
    """Build the report catalog for a normalized payroll table."""
    t = quote_ident(config.table)
    ref = sql_literal(config.reference_date)
    start = start_date_expression(conn, config.table)
    salaried = _salaried_filter(config)
    boroughs = quote_ident(config.boroughs_table)

    def view(name: str) -> str:
        return f"CREATE OR REPLACE VIEW {quote_ident(report_relation(name))} AS"

    return [
        Report(
            name="agency_headcount",
            description=REPORT_DESCRIPTIONS["agency_headcount"],
            sql=f"""
                {view("agency_headcount")}
                SELECT
                    fiscal_year,
                    agency_name,
                    count(*) AS headcount,
                    rank() OVER (PARTITION BY fiscal_year ORDER BY count(*) DESC) AS size_rank
                FROM {t}
                GROUP BY fiscal_year, agency_name
            """,
            requires=(config.table,),
        ),
        Report(
            name="agency_compensation",
            description=REPORT_DESCRIPTIONS["agency_compensation"],
            sql=f"""
                {view("agency_compensation")}
                SELECT
                    agency_name,
                    fiscal_year,
                    count(*) AS headcount,
                    round(avg(base_salary), 2) AS avg_base_salary,
                    round(avg(regular_gross_paid), 2) AS avg_regular_gross_paid,
                    round(avg(
                        coalesce(regular_gross_paid, 0)
                        + coalesce(total_ot_paid, 0)
                        + coalesce(total_other_pay, 0)
                    ), 2) AS avg_total_pay
                FROM {t}
                WHERE {_focus_filter(config)}
                GROUP BY agency_name, fiscal_year
            """,
            requires=(config.table,),
        ),
        Report(
            name="budget_variance",
            description=REPORT_DESCRIPTIONS["budget_variance"],
            sql=f"""
                {view("budget_variance")}
                WITH totals AS (
                    SELECT
                        agency_name,
                        fiscal_year,
                        sum(base_salary) AS budgeted,
                        sum(
                            coalesce(regular_gross_paid, 0)
                            + coalesce(total_ot_paid, 0)
                            + coalesce(total_other_pay, 0)
                        ) AS actual
                    FROM {t}
                    WHERE {salaried}
                    GROUP BY agency_name, fiscal_year
                )
                SELECT
                    agency_name,
                    fiscal_year,
                    round(budgeted, 2) AS budgeted,
                    round(actual, 2) AS actual,
                    round(actual - budgeted, 2) AS variance,
                    CASE WHEN budgeted > 0
                        THEN round(100.0 * (actual - budgeted) / budgeted, 2)
                    END AS variance_pct
                FROM totals
            """,
            requires=(config.table,),
        ),
        Report(
            name="overtime_reliance",
            description=REPORT_DESCRIPTIONS["overtime_reliance"],
            sql=f"""
                {view("overtime_reliance")}
                SELECT
                    agency_name,
                    round(sum(coalesce(total_ot_paid, 0)), 2) AS total_ot_paid,
                    round(sum(regular_gross_paid), 2) AS regular_gross_paid,
                    round(sum(coalesce(total_ot_paid, 0)) / sum(regular_gross_paid), 4) AS ot_pay_ratio,
                    round(sum(coalesce(ot_hours, 0)) / sum(regular_hours), 4) AS ot_hours_ratio,
                    rank() OVER (
                        ORDER BY sum(coalesce(total_ot_paid, 0)) / sum(regular_gross_paid) DESC
                    ) AS reliance_rank
                FROM {t}
                WHERE regular_hours > 0 AND regular_gross_paid > 0
                GROUP BY agency_name
            """,
            requires=(config.table,),
        ),
        Report(
            name="hourly_wage_percentiles",
            description=REPORT_DESCRIPTIONS["hourly_wage_percentiles"],
            sql=f"""
                {view("hourly_wage_percentiles")}
                WITH wages AS (
                    SELECT fiscal_year, regular_gross_paid / regular_hours AS hourly_wage
                    FROM {t}
                    WHERE regular_hours > 0
                )
                SELECT
                    fiscal_year,
                    count(*) AS records,
                    round(quantile_cont(hourly_wage, 0.25), 2) AS p25,
                    round(quantile_cont(hourly_wage, 0.50), 2) AS p50,
                    round(quantile_cont(hourly_wage, 0.75), 2) AS p75,
                    round(quantile_cont(hourly_wage, 0.90), 2) AS p90
                FROM wages
                GROUP BY fiscal_year
            """,
            requires=(config.table,),
        ),
        Report(
            name="pay_growth",
            description=REPORT_DESCRIPTIONS["pay_growth"],
            sql=f"""
                {view("pay_growth")}
                WITH yearly AS (
                    SELECT agency_name, fiscal_year, avg(base_salary) AS avg_base_salary
                    FROM {t}
                    WHERE {salaried}
                    GROUP BY agency_name, fiscal_year
                )
                SELECT
                    agency_name,
                    fiscal_year,
                    round(avg_base_salary, 2) AS avg_base_salary,
                    round(avg_base_salary - lag(avg_base_salary) OVER w, 2) AS change,
                    round(
                        100.0 * (avg_base_salary / nullif(lag(avg_base_salary) OVER w, 0) - 1),
                        2
                    ) AS change_pct
                FROM yearly
                WINDOW w AS (PARTITION BY agency_name ORDER BY fiscal_year)
            """,
            requires=(config.table,),
        ),
        Report(
            name="hiring_seasonality",
            description=REPORT_DESCRIPTIONS["hiring_seasonality"],
            sql=f"""
                {view("hiring_seasonality")}
                WITH hires AS (
                    SELECT DISTINCT first_name, last_name, agency_name, {start} AS start_date
                    FROM {t}
                )
                SELECT
                    month(start_date) AS start_month,
                    monthname(start_date) AS month_name,
                    count(*) AS hires,
                    round(100.0 * count(*) / sum(count(*)) OVER (), 2) AS pct_of_hires
                FROM hires
                WHERE start_date IS NOT NULL
                GROUP BY month(start_date), monthname(start_date)
            """,
            requires=(config.table,),
        ),
        Report(
            name="tenure_vs_leave",
            description=REPORT_DESCRIPTIONS["tenure_vs_leave"],
            sql=f"""
                {view("tenure_vs_leave")}
                WITH tenure AS (
                    SELECT leave_status, date_diff('day', {start}, {ref}) AS days_employed
                    FROM {t}
                    WHERE {start} IS NOT NULL
                )
                SELECT
                    leave_status,
                    count(*) AS records,
                    round(avg(days_employed), 1) AS avg_days_employed,
                    median(days_employed) AS median_days_employed,
                    round(avg(days_employed) / 365.0, 2) AS avg_years_employed
                FROM tenure
                GROUP BY leave_status
            """,
            requires=(config.table,),
        ),
        Report(
            name="level_summary",
            description=REPORT_DESCRIPTIONS["level_summary"],
            sql=f"""
                {view("level_summary")}
                SELECT
                    employee_level,
                    list_position({list(LEVEL_ORDER)}, employee_level) AS level_order,
                    count(*) AS employees,
                    round(avg(yearly_income), 2) AS avg_yearly_income,
                    round(median(yearly_income), 2) AS median_yearly_income,
                    min(days_employed) AS min_days_employed,
                    max(days_employed) AS max_days_employed
                FROM {quote_ident(LEVELED_VIEW)}
                GROUP BY employee_level
            """,
            requires=(LEVELED_VIEW,),
        ),
        Report(
            name="borough_correlation",
            description=REPORT_DESCRIPTIONS["borough_correlation"],
            sql=f"""
                {view("borough_correlation")}
                WITH by_borough AS (
                    SELECT work_location, count(*) AS headcount, avg(base_salary) AS avg_base_salary
                    FROM {t}
                    WHERE {salaried}
                    GROUP BY work_location
                ),
                joined AS (
                    SELECT
                        b.work_location,
                        b.headcount,
                        round(b.avg_base_salary, 2) AS avg_base_salary,
                        r.population,
                        r.avg_home_cost
                    FROM by_borough AS b
                    JOIN {boroughs} AS r ON r.work_location = b.work_location
                )
                SELECT
                    *,
                    corr(avg_base_salary, avg_home_cost) OVER () AS salary_home_cost_corr,
                    corr(headcount, population) OVER () AS headcount_population_corr
                FROM joined
            """,
            requires=(config.table, config.boroughs_table),
        ),
    ]


def run_reports(
    conn: duckdb.DuckDBPyConnection, reports: list[Report]
) -> dict[str, int]:
    """Create each report view whose inputs exist.

    Returns report name -> row count for the reports that ran. Reports with
    a missing input are skipped and logged.
    """
    counts: dict[str, int] = {}
    for report in reports:
        missing = [r for r in report.requires if not relation_exists(conn, r)]
        if missing:
            log.info("  %s: skipped (missing %s)", report.relation, ", ".join(missing))
            continue
        for q in split_sql_statements(report.sql):
            run_sql(conn, q, step=STEP, source=report.name)
        n = count_rows(conn, report.relation) or 0
        counts[report.name] = n
        log.info("  %s: %d rows", report.relation, n)
    return counts


def fetch_report(
    conn: duckdb.DuckDBPyConnection, name: str, limit: int | None = None
) -> pl.DataFrame:
    """Return a report as a Polars DataFrame.

    Raises ValueError if the report has not been produced.
    """
    relation = report_relation(name)
    if not relation_exists(conn, relation):
        raise ValueError(f"Report '{name}' not found (no relation '{relation}').")
    query = f"SELECT * FROM {quote_ident(relation)}"
    if limit is not None:
        query += f" LIMIT {int(limit)}"
    return conn.execute(query).pl()


def export_report(conn: duckdb.DuckDBPyConnection, name: str, path: Path) -> None:
    """Write a report to *path* as CSV or Parquet (by suffix)."""
    df = fetch_report(conn, name)
    suffix = path.suffix.lower()
    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".csv":
        df.write_csv(path)
    elif suffix == ".parquet":
        df.write_parquet(path)
    else:
        raise ValueError(f"Unsupported export format: {suffix}")
