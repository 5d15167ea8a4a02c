"""NYC payroll analysis: core modules."""

from .classifier import (
    Classification,
    IncomeRules,
    classify,
    classify_employees,
    level_for_days,
)
from .config import PipelineConfig, load_config
from .ingest import coerce_to_dataframe, ingest_boroughs, ingest_source, ingest_table
from .normalizer import NormalizeResult, normalize_payroll
from .pipeline import Pipeline, PipelineResult
from .reports import build_reports, export_report, fetch_report, run_reports
from .sql_utils import SchemaError

__all__ = [
    # Classifier
    "Classification",
    "IncomeRules",
    "classify",
    "classify_employees",
    "level_for_days",
    # Configuration
    "PipelineConfig",
    "load_config",
    # Ingestion
    "coerce_to_dataframe",
    "ingest_boroughs",
    "ingest_source",
    "ingest_table",
    # Normalizer
    "NormalizeResult",
    "normalize_payroll",
    # Pipeline
    "Pipeline",
    "PipelineResult",
    # Reports
    "build_reports",
    "export_report",
    "fetch_report",
    "run_reports",
    # Errors
    "SchemaError",
]
