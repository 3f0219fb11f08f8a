"""Cohort loading + schema normalization for the IPTp trial export."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd

from .config import COLUMNS
from .errors import SchemaError

_TRUE_TOKENS = {"1", "yes", "y", "true", "t", "positive", "pos"}
_FALSE_TOKENS = {"0", "no", "n", "false", "f", "negative", "neg"}


@dataclass
class CohortData:
    raw_df: pd.DataFrame
    load_notes: list[str] = field(default_factory=list)
    source_path: Path | None = None


def _standardize_binary(x: object) -> float:
    if pd.isna(x):
        return np.nan
    if isinstance(x, (bool, np.bool_)):
        return float(x)
    if isinstance(x, (int, float, np.integer, np.floating)):
        if x == 1:
            return 1.0
        if x == 0:
            return 0.0
        return np.nan
    s = str(x).strip().lower()
    if s in _TRUE_TOKENS:
        return 1.0
    if s in _FALSE_TOKENS:
        return 0.0
    return np.nan


def _category_levels(config: dict, column: str, observed: pd.Series) -> list[str]:
    raw_levels = config.get("category_levels", {}).get(column)
    if raw_levels:
        return [str(x) for x in raw_levels]
    return sorted(str(x) for x in observed.dropna().unique())


def _normalize_category(
    series: pd.Series,
    levels: list[str],
    *,
    column: str,
    lowercase: bool,
    ordered: bool,
    notes: list[str],
) -> pd.Categorical:
    cleaned = series.astype("string").str.strip()
    if lowercase:
        cleaned = cleaned.str.lower()
    cleaned = cleaned.where(cleaned.notna() & cleaned.ne(""), pd.NA)
    unexpected_mask = cleaned.notna() & ~cleaned.isin(levels)
    unexpected_count = int(unexpected_mask.sum())
    if unexpected_count:
        bad_values = sorted(set(cleaned.loc[unexpected_mask].tolist()))
        msg = (
            f"Found {unexpected_count} rows with unexpected {column} values "
            f"({', '.join(bad_values[:5])}); setting them to missing for analysis."
        )
        logging.warning(msg)
        notes.append(msg)
        cleaned = cleaned.mask(unexpected_mask, pd.NA)
    return pd.Categorical(cleaned.astype(object).where(cleaned.notna(), np.nan), categories=levels, ordered=ordered)


def _coerce_numeric(df: pd.DataFrame, column: str) -> pd.Series:
    raw = df[column]
    values = pd.to_numeric(raw, errors="coerce")
    bad = raw.notna() & values.isna()
    if bool(bad.any()):
        preview = ", ".join(str(v) for v in raw.loc[bad].unique()[:5])
        raise SchemaError(column, f"{int(bad.sum())} non-numeric values ({preview}).")
    return values.astype(float)


def _coerce_count(df: pd.DataFrame, column: str) -> pd.Series:
    values = _coerce_numeric(df, column)
    negative = values < 0
    if bool(negative.any()):
        raise SchemaError(column, f"{int(negative.sum())} negative values; counts must be non-negative.")
    fractional = values.notna() & (values % 1 != 0)
    if bool(fractional.any()):
        raise SchemaError(column, f"{int(fractional.sum())} non-integer values; counts must be whole numbers.")
    return values


def check_required_columns(df: pd.DataFrame, required: list[str]) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaError(missing[0], f"required column(s) absent from input: {', '.join(missing)}.")


def normalize_cohort(df: pd.DataFrame, config: dict, notes: list[str] | None = None) -> pd.DataFrame:
    """Type the raw export columns; raises SchemaError for structural problems."""
    notes = notes if notes is not None else []
    check_required_columns(df, COLUMNS["required"])
    out = df.copy()

    for col in COLUMNS["date"]:
        if col not in out.columns:
            continue
        parsed = pd.to_datetime(out[col], errors="coerce")
        unparsed = int((out[col].notna() & parsed.isna()).sum())
        if unparsed:
            msg = f"{col}: {unparsed} unparseable dates set to missing."
            logging.warning(msg)
            notes.append(msg)
        out[col] = parsed

    for col in COLUMNS["numeric"]:
        if col in out.columns:
            out[col] = _coerce_numeric(out, col)
    for col in COLUMNS["count"]:
        if col in out.columns:
            out[col] = _coerce_count(out, col)

    if "malaria_infection_rate_pregnancy" in out.columns:
        rate = out["malaria_infection_rate_pregnancy"]
        out_of_range = rate.notna() & ~rate.between(0.0, 1.0)
        if bool(out_of_range.any()):
            msg = f"malaria_infection_rate_pregnancy: {int(out_of_range.sum())} values outside [0, 1] set to missing."
            logging.warning(msg)
            notes.append(msg)
            out.loc[out_of_range, "malaria_infection_rate_pregnancy"] = np.nan

    for col in [*COLUMNS["binary"], *COLUMNS["comorbidity"]]:
        if col not in out.columns:
            continue
        mapped = out[col].map(_standardize_binary)
        unrecognized = out[col].notna() & mapped.isna()
        n_bad = int(unrecognized.sum())
        if n_bad and col in COLUMNS["required"]:
            preview = ", ".join(str(v) for v in out.loc[unrecognized, col].unique()[:5])
            raise SchemaError(col, f"{n_bad} values are not recognizable as yes/no ({preview}).")
        if n_bad:
            msg = f"{col}: {n_bad} unrecognized flag values set to missing."
            logging.warning(msg)
            notes.append(msg)
        out[col] = mapped

    arm_levels = _category_levels(config, "study_arm", out["study_arm"].astype("string").str.strip())
    out["study_arm"] = _normalize_category(
        out["study_arm"], arm_levels, column="study_arm", lowercase=False, ordered=False, notes=notes
    )
    observed_arms = out["study_arm"].dropna().unique()
    if len(observed_arms) < 2:
        raise SchemaError("study_arm", f"at least two study arms are required; observed {list(observed_arms)}.")

    out["education_level"] = _normalize_category(
        out["education_level"],
        _category_levels(config, "education_level", out["education_level"]),
        column="education_level",
        lowercase=True,
        ordered=True,
        notes=notes,
    )
    if "placental_malaria" in out.columns:
        out["placental_malaria"] = _normalize_category(
            out["placental_malaria"],
            _category_levels(config, "placental_malaria", out["placental_malaria"]),
            column="placental_malaria",
            lowercase=True,
            ordered=False,
            notes=notes,
        )

    if "total_malaria_episodes_pregnancy" in out.columns:
        inconsistent = out["total_malaria_episodes_pregnancy"] > out["total_malaria_episodes"]
        if bool(inconsistent.any()):
            msg = (
                f"{int(inconsistent.sum())} rows report more malaria episodes during pregnancy than lifetime; "
                "values kept as recorded."
            )
            logging.warning(msg)
            notes.append(msg)

    return out


def load_cohort_data(path: str | Path, config: dict) -> CohortData:
    source = Path(path)
    logging.info("Reading cohort export: %s", source)
    raw = pd.read_csv(source)
    logging.info("Loaded %s rows x %s columns", len(raw), raw.shape[1])
    notes: list[str] = []
    typed = normalize_cohort(raw, config, notes=notes)
    return CohortData(raw_df=typed, load_notes=notes, source_path=source)
