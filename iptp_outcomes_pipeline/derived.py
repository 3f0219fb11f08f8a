"""Derived exposure bins and the composite adverse birth outcome.

Everything downstream (tables, models, prediction) reads the single
``DerivedDataset`` built here, so each recode exists in exactly one place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

GRAVIDITY_LEVELS = ["1", "2–3", "≥4"]
PARITY_LEVELS = ["0", "1–2", "≥3"]
EPISODE_LEVELS = ["1", "2–3", "≥4"]
PRETERM_LEVELS = ["1", "2"]
AGE_GROUP_LEVELS = ["Young", "Older"]

DERIVED_SOURCES = {
    "age_group": ["age_at_enrollment_years"],
    "gravidity_category": ["gravidity"],
    "parity_category": ["parity"],
    "malaria_episodes_category": ["total_malaria_episodes"],
    "malaria_episodes_pregnancy_category": ["total_malaria_episodes_pregnancy"],
    "preterm_births_category": ["preterm_births_count"],
    "low_birth_weight": ["birth_weight_kg"],
    "adverse_birth_outcome": ["preterm_births_count", "stillbirth", "birth_weight_kg"],
    "any_comorbidity": ["hypertension", "diabetes", "asthma", "sickle_cell_disease", "hiv_status"],
}


@dataclass(frozen=True, eq=False)
class DerivedDataset:
    frame: pd.DataFrame
    missingness: pd.DataFrame
    notes: tuple[str, ...] = field(default_factory=tuple)

    def complete_cases(self, columns: list[str]) -> pd.DataFrame:
        """Copy of the rows with no missing value in ``columns``."""
        missing = [c for c in columns if c not in self.frame.columns]
        if missing:
            raise KeyError(f"Columns not in derived dataset: {', '.join(missing)}")
        return self.frame.dropna(subset=columns).copy()


def age_group(age: float, cutoff: float = 25.0) -> str | float:
    if pd.isna(age):
        return np.nan
    return "Young" if age < cutoff else "Older"


def gravidity_category(gravidity: float) -> str | float:
    if pd.isna(gravidity) or gravidity < 1:
        return np.nan
    if gravidity == 1:
        return "1"
    if gravidity <= 3:
        return "2–3"
    return "≥4"


def parity_category(parity: float) -> str | float:
    if pd.isna(parity) or parity < 0:
        return np.nan
    if parity == 0:
        return "0"
    if parity <= 2:
        return "1–2"
    return "≥3"


def episode_category(count: float) -> str | float:
    # 0 and 1 share the "1" bucket.
    if pd.isna(count) or count < 0:
        return np.nan
    if count <= 1:
        return "1"
    if count <= 3:
        return "2–3"
    return "≥4"


def preterm_category(count: float) -> str | float:
    # 0 and 1 share the "1" bucket; counts above 2 fall outside the recorded range.
    if pd.isna(count) or count < 0 or count > 2:
        return np.nan
    if count <= 1:
        return "1"
    return "2"


def low_birth_weight(weight_kg: pd.Series, threshold_kg: float = 2.5) -> pd.Series:
    weight = pd.to_numeric(weight_kg, errors="coerce")
    return pd.Series(np.where(weight.isna(), np.nan, (weight < threshold_kg).astype(float)), index=weight.index)


def adverse_birth_outcome(preterm_count: pd.Series, stillbirth: pd.Series, lbw: pd.Series) -> pd.Series:
    """Three-valued OR: 1 if any component is known true, 0 if all are known false, else missing."""
    components = pd.DataFrame(
        {
            "preterm": np.where(preterm_count.isna(), np.nan, (preterm_count > 0).astype(float)),
            "stillbirth": np.where(stillbirth.isna(), np.nan, (stillbirth == 1).astype(float)),
            "lbw": np.where(lbw.isna(), np.nan, (lbw == 1).astype(float)),
        },
        index=preterm_count.index,
    )
    return _any_flag(components)


def _any_flag(flags: pd.DataFrame) -> pd.Series:
    any_true = flags.eq(1.0).any(axis=1)
    all_known = flags.notna().all(axis=1)
    out = pd.Series(np.nan, index=flags.index)
    out[any_true] = 1.0
    out[~any_true & all_known] = 0.0
    return out


def _as_category(values: pd.Series, levels: list[str], ordered: bool = True) -> pd.Categorical:
    return pd.Categorical(values, categories=levels, ordered=ordered)


def _missingness_table(frame: pd.DataFrame) -> pd.DataFrame:
    rows: list[dict[str, object]] = []
    n_total = int(len(frame))
    for col, sources in DERIVED_SOURCES.items():
        if col not in frame.columns:
            continue
        n_missing = int(frame[col].isna().sum())
        rows.append(
            {
                "variable": col,
                "source_columns": ",".join(sources),
                "n_total": n_total,
                "n_missing": n_missing,
                "missing_rate": (n_missing / n_total) if n_total else np.nan,
            }
        )
    return pd.DataFrame(rows, columns=["variable", "source_columns", "n_total", "n_missing", "missing_rate"])


def derive_variables(df: pd.DataFrame, config: dict) -> DerivedDataset:
    out = df.copy()
    notes: list[str] = []
    cutoff = float(config.get("young_age_cutoff", 25.0))
    lbw_threshold = float(config.get("low_birth_weight_kg", 2.5))

    out["age_group"] = _as_category(
        out["age_at_enrollment_years"].map(lambda x: age_group(x, cutoff)), AGE_GROUP_LEVELS, ordered=False
    )
    out["gravidity_category"] = _as_category(out["gravidity"].map(gravidity_category), GRAVIDITY_LEVELS)
    out["parity_category"] = _as_category(out["parity"].map(parity_category), PARITY_LEVELS)
    out["malaria_episodes_category"] = _as_category(
        out["total_malaria_episodes"].map(episode_category), EPISODE_LEVELS
    )
    if "total_malaria_episodes_pregnancy" in out.columns:
        out["malaria_episodes_pregnancy_category"] = _as_category(
            out["total_malaria_episodes_pregnancy"].map(episode_category), EPISODE_LEVELS
        )
    out["preterm_births_category"] = _as_category(out["preterm_births_count"].map(preterm_category), PRETERM_LEVELS)

    out["low_birth_weight"] = low_birth_weight(out["birth_weight_kg"], lbw_threshold)
    out["adverse_birth_outcome"] = adverse_birth_outcome(
        out["preterm_births_count"], out["stillbirth"], out["low_birth_weight"]
    )

    comorbidity_cols = [c for c in DERIVED_SOURCES["any_comorbidity"] if c in out.columns]
    if comorbidity_cols:
        out["any_comorbidity"] = _any_flag(out[comorbidity_cols])

    zero_gravidity = int((out["gravidity"] == 0).sum())
    if zero_gravidity:
        notes.append(f"gravidity_category: {zero_gravidity} rows with gravidity 0 set to missing.")
    preterm_over = int((out["preterm_births_count"] > 2).sum())
    if preterm_over:
        notes.append(f"preterm_births_category: {preterm_over} rows with counts above 2 set to missing.")

    missingness = _missingness_table(out)
    for _, row in missingness.iterrows():
        if row["n_missing"]:
            logging.info(
                "Derived %s: %s/%s missing (sources: %s)",
                row["variable"],
                row["n_missing"],
                row["n_total"],
                row["source_columns"],
            )
    n_outcome = int(out["adverse_birth_outcome"].notna().sum())
    events = int(out["adverse_birth_outcome"].sum())
    logging.info("adverse_birth_outcome: %s events among %s rows with a determinable outcome", events, n_outcome)
    for note in notes:
        logging.warning(note)

    return DerivedDataset(frame=out, missingness=missingness, notes=tuple(notes))
