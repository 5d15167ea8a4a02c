"""CLI entry point for the NYC payroll pipeline.

Usage:
    # Normalize, classify and report on a raw snapshot
    payroll run data/citywide_payroll.csv --boroughs data/boroughs.csv

    # Inspect a finished run
    payroll show runs/payroll_20240101_120000.db
    payroll report runs/payroll_20240101_120000.db level_summary

    # List the available reports
    payroll reports
"""

import json
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import duckdb
from dotenv import find_dotenv, load_dotenv

# Load .env by walking upward from the CWD.
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

from payroll.catalog import count_rows_display, list_tables, list_views
from payroll.config import ConfigError, load_config, parse_date
from payroll.infra import read_run_meta, read_step_meta
from payroll.pipeline import EXPORT_FORMATS, Pipeline
from payroll.reports import (
    REPORT_DESCRIPTIONS,
    REPORT_NAMES,
    REPORT_PREFIX,
    fetch_report,
)

log = logging.getLogger(__name__)


def _configure_logging(quiet: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else logging.INFO,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def _meta_json(meta: dict[str, str], key: str) -> Any:
    """Parse a JSON blob from run meta."""
    raw = meta.get(key)
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def _default_output_db_path(now: datetime | None = None) -> Path:
    """Generate a default output .db path from the current timestamp."""
    if now is None:
        now = datetime.now(timezone.utc)
    return Path("runs") / f"payroll_{now.strftime('%Y%m%d_%H%M%S')}.db"


def _open_db(target: Path) -> duckdb.DuckDBPyConnection:
    if target.suffix != ".db":
        raise click.ClickException(f"{target} is not a .db file.")
    if not target.exists():
        raise click.ClickException(f"{target} does not exist.")
    try:
        return duckdb.connect(str(target), read_only=True)
    except duckdb.Error as e:
        raise click.ClickException(f"Cannot open {target} as a DuckDB database: {e}")


@click.group()
def main():
    """NYC payroll: normalize, classify and report."""


@main.command()
@click.argument("raw", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--boroughs",
    "-b",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Borough reference table (work_location, population, avg_home_cost)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output database path (default: runs/payroll_<timestamp>.db)",
)
@click.option(
    "--reference-date",
    default=None,
    help="Date tenure is measured against, YYYY-MM-DD (default: from config)",
)
@click.option(
    "--leave-status",
    default=None,
    help="Leave status kept by the classifier (default: from config)",
)
@click.option(
    "--export-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Write every report to this directory after a successful run",
)
@click.option(
    "--export-format",
    type=click.Choice(list(EXPORT_FORMATS)),
    default="csv",
    show_default=True,
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite output file without prompting",
)
def run(
    raw: Path,
    boroughs: Path | None,
    output: Path | None,
    reference_date: str | None,
    leave_status: str | None,
    export_dir: Path | None,
    export_format: str,
    quiet: bool,
    force: bool,
):
    """Run the pipeline on a raw payroll snapshot (csv or parquet)."""
    _configure_logging(quiet)

    try:
        config = load_config()
        if reference_date is not None:
            config = replace(config, reference_date=parse_date(reference_date))
        if leave_status is not None:
            config = replace(config, leave_status=leave_status.strip())
    except ConfigError as e:
        raise click.ClickException(str(e))

    if output is None:
        output = _default_output_db_path()
    elif output.suffix != ".db":
        output = output.with_suffix(".db")
        log.warning("Output path adjusted to %s (added .db suffix)", output)

    if output.exists() and not force:
        click.confirm(
            f"{output} already exists and will be overwritten. Continue?",
            abort=True,
        )

    try:
        pipeline = Pipeline(
            db_path=output,
            payroll_source=raw,
            boroughs_source=boroughs,
            config=config,
            export_dir=export_dir,
            export_format=export_format,
        )
    except ValueError as e:
        raise click.ClickException(str(e))

    log.info("Input: %s", raw)
    if boroughs is not None:
        log.info("Boroughs: %s", boroughs)
    log.info("Output: %s", output)
    log.info("Reference date: %s", config.reference_date.isoformat())
    log.info("Leave status: %s", config.leave_status)

    result = pipeline.run()

    log.info("Saved to: %s", output)
    log.info("Step metadata: SELECT step, meta_json FROM _step_meta")
    log.info("SQL trace: SELECT * FROM _trace")

    if not quiet and result.reports:
        click.echo(f"\nReports: {len(result.reports)}")
        for name, n in result.reports.items():
            click.echo(f"  {REPORT_PREFIX}{name}: {n} rows")
    for path, err in result.export_errors.items():
        click.echo(f"  export {path}: FAILED ({err})", err=True)

    sys.exit(0 if result.success else 1)


@main.command()
@click.argument("target", type=click.Path(path_type=Path))
def show(target: Path):
    """Show the metadata, steps and reports of a finished run."""
    conn = _open_db(target)
    try:
        meta = read_run_meta(conn)
        if not meta:
            raise click.ClickException(
                f"{target} has no run metadata; not a payroll run database."
            )
        steps = read_step_meta(conn)

        click.echo(f"Run: {target}\n")
        click.echo(f"Created: {meta.get('created_at_utc', '(unknown)')}")
        click.echo(f"Version: {meta.get('package_version', '(unknown)')}")
        click.echo(f"Reference date: {meta.get('reference_date', '(unknown)')}")
        click.echo(f"Leave status: {meta.get('leave_status', '(unknown)')}")

        counts = _meta_json(meta, "inputs_row_counts")
        if counts:
            click.echo("\nInputs:")
            for name in sorted(counts):
                click.echo(f"  {name}: {counts[name]} rows")

        if steps:
            click.echo("\nSteps:")
            for name in ("ingest", "normalize", "classify", "reports"):
                if name not in steps:
                    continue
                step = steps[name]
                line = f"  {name}: {step.get('validation', '?')}"
                if step.get("elapsed_s") is not None:
                    line += f" ({step['elapsed_s']}s)"
                click.echo(line)
                if step.get("error"):
                    click.echo(f"    error: {step['error']}")

        checks = [v for v in list_views(conn, exclude_prefixes=("_",)) if "__validation_" in v]
        if checks:
            click.echo(f"\nValidation views ({len(checks)}):")
            for name in checks:
                click.echo(f"  {name}")

        tables = list_tables(conn, exclude_prefixes=("_",))
        reports = [t for t in tables if t.startswith(REPORT_PREFIX)]
        if reports:
            click.echo(f"\nReports ({len(reports)}):")
            for name in reports:
                click.echo(f"  {name}: {count_rows_display(conn, name)} rows")

        exports = _meta_json(meta, "exports")
        if exports:
            errors = exports.get("errors") or {}
            click.echo(f"\nExports: {exports.get('dir')}")
            if errors:
                for path in sorted(errors):
                    click.echo(f"  {path}: FAILED ({errors[path]})")
            else:
                click.echo("  all OK")
    finally:
        conn.close()


@main.command()
@click.argument("target", type=click.Path(path_type=Path))
@click.argument("name", type=click.Choice(list(REPORT_NAMES)))
@click.option("--limit", "-n", type=int, default=None, help="Maximum rows to print")
def report(target: Path, name: str, limit: int | None):
    """Print one report from a finished run."""
    conn = _open_db(target)
    try:
        df = fetch_report(conn, name, limit=limit)
    except ValueError as e:
        raise click.ClickException(str(e))
    finally:
        conn.close()
    click.echo(df)


@main.command("reports")
def list_reports():
    """List the available reports."""
    width = max(len(n) for n in REPORT_NAMES)
    for name in REPORT_NAMES:
        click.echo(f"  {name:<{width}}  {REPORT_DESCRIPTIONS[name]}")


if __name__ == "__main__":
    main()
