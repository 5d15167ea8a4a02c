"""Pipeline configuration.

Defaults can be overridden from ``[tool.payroll]`` in the project's
``pyproject.toml`` and then from the environment (a ``.env`` file is
loaded by the CLI)::

    [tool.payroll]
    reference_date = 2022-12-31
    leave_status = "ACTIVE"
    focus_agencies = ["POLICE DEPARTMENT", "FIRE DEPARTMENT"]
    top_agencies = 5

    [tool.payroll.income_sources]
    "DEPT OF ED PER SESSION TEACHER" = "regular_gross_paid"

Environment overrides: ``PAYROLL_REFERENCE_DATE``, ``PAYROLL_LEAVE_STATUS``.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Mapping

from .classifier import BASE_SALARY, IncomeRules

DEFAULT_REFERENCE_DATE = date(2022, 12, 31)
REFERENCE_DATE_ENV = "PAYROLL_REFERENCE_DATE"
LEAVE_STATUS_ENV = "PAYROLL_LEAVE_STATUS"

_KNOWN_KEYS = {
    "reference_date",
    "leave_status",
    "focus_agencies",
    "top_agencies",
    "table",
    "boroughs_table",
    "income_sources",
    "default_income_source",
}


class ConfigError(ValueError):
    """Raised for invalid pipeline configuration."""


@dataclass(frozen=True)
class PipelineConfig:
    """Settings shared by the classifier and the reports.

    Attributes:
        reference_date: Analysis cutoff that tenure is measured against.
        leave_status: Leave status the classifier keeps.
        income_rules: Per-agency income source.
        focus_agencies: Agencies compared in the compensation report. Empty
            means the ``top_agencies`` largest by headcount.
        top_agencies: How many agencies to pick when none are listed.
        table: Name of the payroll table.
        boroughs_table: Name of the borough reference table.
    """

    reference_date: date = DEFAULT_REFERENCE_DATE
    leave_status: str = "ACTIVE"
    income_rules: IncomeRules = field(default_factory=IncomeRules)
    focus_agencies: tuple[str, ...] = ()
    top_agencies: int = 5
    table: str = "payroll"
    boroughs_table: str = "boroughs"


def parse_date(value: Any) -> date:
    """Parse a ``YYYY-MM-DD`` string (or pass a date through)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as e:
            raise ConfigError(f"Invalid date '{value}': expected YYYY-MM-DD") from e
    raise ConfigError(f"Invalid date value of type {type(value).__name__}")


def _read_tool_table(path: Path) -> dict[str, Any]:
    try:
        data = tomllib.loads(path.read_text())
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    section = data.get("tool", {}).get("payroll", {})
    if not isinstance(section, dict):
        raise ConfigError(f"[tool.payroll] in {path} must be a table")
    return section


def config_from_mapping(raw: Mapping[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from a ``[tool.payroll]``-shaped mapping."""
    unknown = set(raw) - _KNOWN_KEYS
    if unknown:
        raise ConfigError(
            f"Unknown [tool.payroll] key(s): {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(sorted(_KNOWN_KEYS))}"
        )

    kwargs: dict[str, Any] = {}
    if "reference_date" in raw:
        kwargs["reference_date"] = parse_date(raw["reference_date"])
    for key in ("leave_status", "table", "boroughs_table"):
        if key in raw:
            val = raw[key]
            if not isinstance(val, str) or not val.strip():
                raise ConfigError(f"{key} must be a non-empty string")
            kwargs[key] = val.strip()
    if "focus_agencies" in raw:
        agencies = raw["focus_agencies"]
        if not isinstance(agencies, list) or not all(
            isinstance(a, str) for a in agencies
        ):
            raise ConfigError("focus_agencies must be a list of strings")
        kwargs["focus_agencies"] = tuple(agencies)
    if "top_agencies" in raw:
        top = raw["top_agencies"]
        if not isinstance(top, int) or isinstance(top, bool) or top < 1:
            raise ConfigError("top_agencies must be a positive integer")
        kwargs["top_agencies"] = top

    if "income_sources" in raw or "default_income_source" in raw:
        overrides = raw.get("income_sources", IncomeRules().overrides)
        if not isinstance(overrides, Mapping):
            raise ConfigError("income_sources must be a table of agency = column")
        try:
            kwargs["income_rules"] = IncomeRules(
                overrides=dict(overrides),
                default=raw.get("default_income_source", BASE_SALARY),
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e

    return PipelineConfig(**kwargs)


def load_config(
    pyproject_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> PipelineConfig:
    """Load configuration from pyproject.toml and the environment.

    *pyproject_path* defaults to ``pyproject.toml`` in the current
    directory; a missing file just means defaults.
    """
    path = pyproject_path or Path.cwd() / "pyproject.toml"
    raw = _read_tool_table(path) if path.exists() else {}
    config = config_from_mapping(raw)

    env = os.environ if env is None else env
    if env.get(REFERENCE_DATE_ENV):
        config = replace(config, reference_date=parse_date(env[REFERENCE_DATE_ENV]))
    if env.get(LEAVE_STATUS_ENV):
        config = replace(config, leave_status=env[LEAVE_STATUS_ENV].strip())
    return config
