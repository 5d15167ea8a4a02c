"""Pipeline orchestrator: ingest, normalize, classify, report, export.

A pipeline run produces a single DuckDB database containing:
- The payroll table (normalized in place) and the borough reference table
- The classification macro and views
- One ``report_<name>`` table per report that ran
- Validation views and metadata/trace tables

Steps run strictly in order and the run stops at the first failed step:
nothing downstream may read a table the normalizer has not finished with.

Usage:

    pipeline = Pipeline(
        db_path="runs/payroll.db",
        payroll_source="data/citywide_payroll.csv",
        boroughs_source="data/boroughs.csv",
        config=load_config(),
        export_dir="out/",
    )

    result = pipeline.run()
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import duckdb

from .catalog import materialize_views
from .checks import classify_checks, normalize_checks, run_checks
from .classifier import classify_employees
from .config import PipelineConfig
from .infra import (
    init_infra,
    persist_run_meta,
    persist_step_meta,
    upsert_run_meta,
)
from .ingest import ingest_boroughs, ingest_source
from .normalizer import normalize_payroll
from .reports import build_reports, export_report, report_relation, run_reports

log = logging.getLogger(__name__)

# Type alias: Callable[[], TableData] | TableData | FileInput | Path | str
InputValue = Any

EXPORT_FORMATS = ("csv", "parquet")


@dataclass
class StepResult:
    name: str
    success: bool
    message: str
    elapsed_s: float
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineResult:
    """Aggregated results from a pipeline run."""

    success: bool  # True if every step passed and every export succeeded
    steps: dict[str, StepResult]
    elapsed_s: float
    reports: dict[str, int] = field(default_factory=dict)  # name -> row count
    export_errors: dict[str, str] = field(default_factory=dict)


class StepFailed(RuntimeError):
    """Raised inside a step to fail it with validation messages."""


@dataclass
class Pipeline:
    """A one-shot payroll analysis run backed by a fresh DuckDB database.

    Args:
        db_path: Path for the output database (created fresh).
        payroll_source: Raw payroll snapshot: a csv/parquet path, table
            data, or a callable returning table data.
        boroughs_source: Optional borough reference table (same forms).
        config: Reference date, income rules and report settings.
        export_dir: If set, every report is written there after a
            successful run.
        export_format: ``csv`` or ``parquet``.
    """

    db_path: Path | str
    payroll_source: InputValue
    boroughs_source: InputValue | None = None
    config: PipelineConfig = field(default_factory=PipelineConfig)
    export_dir: Path | str | None = None
    export_format: str = "csv"

    def __post_init__(self) -> None:
        if self.export_format not in EXPORT_FORMATS:
            raise ValueError(
                f"export_format must be one of {', '.join(EXPORT_FORMATS)}; "
                f"got '{self.export_format}'"
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _ingest(self, conn: duckdb.DuckDBPyConnection) -> dict[str, Any]:
        counts = {
            self.config.table: ingest_source(
                conn, self.payroll_source, self.config.table
            )
        }
        if self.boroughs_source is not None:
            counts[self.config.boroughs_table] = ingest_boroughs(
                conn, self.boroughs_source, self.config.boroughs_table
            )
        return {"row_counts": counts}

    def _normalize(self, conn: duckdb.DuckDBPyConnection) -> dict[str, Any]:
        result = normalize_payroll(conn, self.config.table)
        outcome = run_checks(
            conn, "normalize", normalize_checks(self.config.table, result)
        )
        if not outcome.passed:
            raise StepFailed("\n".join(outcome.errors))
        return result.as_meta() | {"warnings": len(outcome.warnings)}

    def _classify(self, conn: duckdb.DuckDBPyConnection) -> dict[str, Any]:
        result = classify_employees(
            conn,
            self.config.reference_date,
            rules=self.config.income_rules,
            table=self.config.table,
            leave_status=self.config.leave_status,
        )
        outcome = run_checks(conn, "classify", classify_checks())
        if not outcome.passed:
            raise StepFailed("\n".join(outcome.errors))
        return result.as_meta() | {"warnings": len(outcome.warnings)}

    def _reports(self, conn: duckdb.DuckDBPyConnection) -> dict[str, Any]:
        counts = run_reports(conn, build_reports(conn, self.config))
        n = materialize_views(conn, [report_relation(name) for name in counts])
        log.debug("Materialized %d report(s)", n)
        return {"row_counts": counts}

    def _run_step(
        self,
        conn: duckdb.DuckDBPyConnection,
        name: str,
        fn: Callable[[duckdb.DuckDBPyConnection], dict[str, Any]],
    ) -> StepResult:
        log.info("[%s] Starting", name)
        start = time.time()
        try:
            meta = fn(conn)
            result = StepResult(name, True, "OK", time.time() - start, meta)
        except (duckdb.Error, ValueError, TypeError, OSError, RuntimeError) as e:
            result = StepResult(name, False, str(e), time.time() - start)
            log.error("[%s] FAILED: %s", name, e)

        persist_step_meta(
            conn,
            name,
            {
                "validation": "PASSED" if result.success else "FAILED",
                "elapsed_s": round(result.elapsed_s, 2),
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
                **({"error": result.message} if not result.success else {}),
                **result.meta,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------

    def _run_exports(
        self, conn: duckdb.DuckDBPyConnection, reports: list[str]
    ) -> dict[str, str]:
        """Write every report. Returns dict of path -> error for failures."""
        errors: dict[str, str] = {}
        out_dir = Path(self.export_dir)
        for name in reports:
            path = out_dir / f"{name}.{self.export_format}"
            try:
                export_report(conn, name, path)
                log.info("  %s: OK", path)
            except (duckdb.Error, ValueError, OSError) as e:
                errors[str(path)] = str(e)
                log.error("  %s: FAILED (%s)", path, e)
        return errors

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(self) -> PipelineResult:
        """Run every step in order, then exports if all steps passed."""
        start_time = time.time()

        db_path = Path(self.db_path)
        if db_path.exists():
            db_path.unlink()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = duckdb.connect(str(db_path))
        try:
            init_infra(conn)

            steps: dict[str, StepResult] = {}
            for name, fn in (
                ("ingest", self._ingest),
                ("normalize", self._normalize),
                ("classify", self._classify),
                ("reports", self._reports),
            ):
                result = self._run_step(conn, name, fn)
                steps[name] = result
                if not result.success:
                    break

            all_success = "reports" in steps and all(
                s.success for s in steps.values()
            )
            report_counts: dict[str, int] = {}
            if all_success:
                report_counts = steps["reports"].meta["row_counts"]
            input_counts = steps["ingest"].meta.get("row_counts") or None

            persist_run_meta(
                conn,
                self.config,
                input_row_counts=input_counts,
                reports=list(report_counts),
            )

            export_errors: dict[str, str] = {}
            if all_success and self.export_dir is not None:
                log.info("--- Exports (%d) ---", len(report_counts))
                export_errors = self._run_exports(conn, list(report_counts))
                upsert_run_meta(
                    conn,
                    [
                        (
                            "exports",
                            json.dumps(
                                {"dir": str(self.export_dir), "errors": export_errors},
                                sort_keys=True,
                            ),
                        )
                    ],
                )

            elapsed_s = time.time() - start_time
            status = "ALL PASSED" if all_success else "FAILED"
            log.info("--- Pipeline complete: %s (%.1fs) ---", status, elapsed_s)
            for name, result in steps.items():
                log.info("  %s: %s", name, "PASS" if result.success else "FAIL")

            return PipelineResult(
                success=all_success and not export_errors,
                steps=steps,
                elapsed_s=elapsed_s,
                reports=report_counts,
                export_errors=export_errors,
            )
        finally:
            conn.close()
