from datetime import datetime, timezone
from pathlib import Path

import duckdb
import polars as pl
import pytest
from click.testing import CliRunner

from payroll.reports import REPORT_NAMES
from scripts.cli import _default_output_db_path, main
from tests.conftest import _raw_row, _started


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run CLI commands from an empty directory so no pyproject is picked up."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PAYROLL_REFERENCE_DATE", raising=False)
    monkeypatch.delenv("PAYROLL_LEAVE_STATUS", raising=False)
    return tmp_path


def _write_raw(directory: Path) -> Path:
    path = directory / "raw.csv"
    pl.DataFrame(
        [
            _raw_row(
                work_location_borough="bronx",
                agency_name="police department",
                agency_start_date=_started(1200),
            ),
            _raw_row(first_name="OUT", work_location_borough="NASSAU"),
        ]
    ).write_csv(path)
    return path


def _run(workdir: Path, *extra: str):
    raw = _write_raw(workdir)
    out = workdir / "out.db"
    result = CliRunner().invoke(main, ["run", str(raw), "-o", str(out), *extra])
    return result, out


class TestRun:
    def test_success(self, workdir):
        result, out = _run(workdir)
        assert result.exit_code == 0, result.output
        assert out.exists()
        assert "report_level_summary" in result.output

    def test_adds_db_suffix(self, workdir):
        raw = _write_raw(workdir)
        result = CliRunner().invoke(main, ["run", str(raw), "-o", str(workdir / "out")])
        assert result.exit_code == 0, result.output
        assert (workdir / "out.db").exists()

    def test_reference_date_option(self, workdir):
        result, out = _run(workdir, "--reference-date", "2030-01-01", "-q")
        assert result.exit_code == 0, result.output
        show = CliRunner().invoke(main, ["show", str(out)])
        assert "Reference date: 2030-01-01" in show.output

    def test_invalid_reference_date(self, workdir):
        result, _ = _run(workdir, "--reference-date", "01/01/2030")
        assert result.exit_code != 0
        assert "YYYY-MM-DD" in result.output

    def test_overwrite_prompt_abort(self, workdir):
        raw = _write_raw(workdir)
        out = workdir / "out.db"
        out.write_text("existing")
        result = CliRunner().invoke(main, ["run", str(raw), "-o", str(out)], input="n\n")
        assert result.exit_code != 0
        assert out.read_text() == "existing"

    def test_failed_run_exit_code(self, workdir):
        path = workdir / "raw.csv"
        pl.DataFrame([{"agency_name": "X", "first_name": "A"}]).write_csv(path)
        result = CliRunner().invoke(main, ["run", str(path), "-o", str(workdir / "o.db")])
        assert result.exit_code == 1

    def test_export_dir(self, workdir):
        result, _ = _run(workdir, "--export-dir", str(workdir / "exports"), "-f")
        assert result.exit_code == 0, result.output
        assert (workdir / "exports" / "level_summary.csv").exists()

    def test_default_output_path(self):
        now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert _default_output_db_path(now) == Path("runs") / "payroll_20240102_030405.db"


class TestShow:
    def test_show_run(self, workdir):
        _, out = _run(workdir, "-q")
        result = CliRunner().invoke(main, ["show", str(out)])
        assert result.exit_code == 0, result.output
        assert "Reference date: 2022-12-31" in result.output
        assert "payroll: 2 rows" in result.output
        assert "normalize: PASSED" in result.output
        assert "report_agency_headcount: 1 rows" in result.output
        assert "normalize__validation_scope" in result.output

    def test_show_missing(self, workdir):
        result = CliRunner().invoke(main, ["show", str(workdir / "nope.db")])
        assert result.exit_code != 0
        assert "does not exist" in result.output

    def test_show_not_a_run(self, workdir):
        path = workdir / "other.db"
        duckdb.connect(str(path)).close()
        result = CliRunner().invoke(main, ["show", str(path)])
        assert result.exit_code != 0
        assert "no run metadata" in result.output


class TestReport:
    def test_print_report(self, workdir):
        _, out = _run(workdir, "-q")
        result = CliRunner().invoke(main, ["report", str(out), "level_summary"])
        assert result.exit_code == 0, result.output
        assert "Mid level" in result.output

    def test_unknown_report_name(self, workdir):
        _, out = _run(workdir, "-q")
        result = CliRunner().invoke(main, ["report", str(out), "nope"])
        assert result.exit_code != 0

    def test_report_not_produced(self, workdir):
        _, out = _run(workdir, "-q")
        result = CliRunner().invoke(main, ["report", str(out), "borough_correlation"])
        assert result.exit_code != 0
        assert "not found" in result.output


def test_list_reports():
    result = CliRunner().invoke(main, ["reports"])
    assert result.exit_code == 0
    for name in REPORT_NAMES:
        assert name in result.output
