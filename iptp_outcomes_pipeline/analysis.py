"""Analysis modules for the IPTp regimen x malaria burden birth-outcome study."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .derived import DerivedDataset, derive_variables
from .errors import ModelFitError, PartitionError
from .prediction import PredictionResults, run_predictive_evaluation
from .regression import LogitModel, compare_models, fit_logistic, likelihood_ratio_test, predicted_probability_series
from .tables import build_summary_table, format_summary_table, summary_p_values

OUTCOME = "adverse_birth_outcome"
INTERACTION_PREDICTORS = [
    "total_malaria_episodes",
    "study_arm",
    "age_at_enrollment_years",
    "gravidity",
    "education_level",
]
INTERACTION_PAIR = ("total_malaria_episodes", "study_arm")
SUBGROUP_PREDICTORS = ["gravidity", "total_malaria_episodes", "study_arm", "education_level"]


@dataclass
class AnalysisBundle:
    derived: DerivedDataset
    table1: pd.DataFrame
    table1_formatted: pd.DataFrame
    outcome_components: pd.DataFrame
    logistic_interaction: pd.DataFrame
    logistic_main: pd.DataFrame
    logistic_subgroup: pd.DataFrame
    lrt: pd.DataFrame
    model_comparison: pd.DataFrame
    gvif: pd.DataFrame
    logit_diagnostics: pd.DataFrame
    predicted_probabilities: pd.DataFrame
    prediction: PredictionResults | None
    forest_ready: pd.DataFrame
    notes: list[str]
    artifacts: dict[str, object]


def _error_df(label: str, exc: Exception) -> pd.DataFrame:
    terms = getattr(exc, "terms", [])
    return pd.DataFrame({"model": [label], "error": [str(exc)], "terms": [", ".join(terms)]})


def _event_cell(label: str, scope: str, level: str, g: pd.DataFrame, threshold: int) -> dict[str, object]:
    n = int(len(g))
    events = int(g[OUTCOME].sum())
    return {
        "analysis": label,
        "scope": scope,
        "level": level,
        "n": n,
        "events": events,
        "nonevents": n - events,
        "event_rate": events / n if n else np.nan,
        "sparse": min(events, n - events) < threshold,
    }


def _build_logit_diagnostics(
    data: pd.DataFrame,
    *,
    label: str,
    parameter_count: int | None,
    config: dict | None = None,
) -> pd.DataFrame:
    """Event counts behind one model: overall, per study arm, and per arm x education level.

    A cell is ``sparse`` when its events or non-events fall below
    ``logit_event_cell_warn_threshold``. Sparse arm x education cells are the
    ones that separate the outcome or go missing from a training partition.
    """
    cfg = config or {}
    threshold = int(cfg.get("logit_event_cell_warn_threshold", 5))
    epv_warn = float(cfg.get("logit_events_per_parameter_warn_threshold", 10.0))

    rows = [_event_cell(label, "overall", "overall", data, threshold)]
    for arm, g in data.groupby("study_arm", observed=True):
        rows.append(_event_cell(label, "study_arm", str(arm), g, threshold))
    if "education_level" in data.columns:
        for (arm, edu), g in data.groupby(["study_arm", "education_level"], observed=True):
            rows.append(_event_cell(label, "study_arm x education_level", f"{arm} / {edu}", g, threshold))
    out = pd.DataFrame(rows)
    out["n_parameters"] = parameter_count

    overall = rows[0]
    logging.info("%s: n=%s events=%s", label, overall["n"], overall["events"])
    sparse = out.loc[out["sparse"] & out["scope"].ne("overall"), "level"].tolist()
    if sparse:
        logging.warning("%s: sparse event cells (<%s): %s", label, threshold, ", ".join(sparse))

    if parameter_count is not None and overall["n"]:
        epv = min(overall["events"], overall["nonevents"]) / max(parameter_count - 1, 1)
        out["events_per_parameter"] = epv
        if epv < epv_warn:
            logging.warning("%s: low events-per-parameter (%.2f < %.2f)", label, epv, epv_warn)
    return out


def _fit_or_record(
    derived: DerivedDataset,
    predictors: list[str],
    *,
    label: str,
    config: dict,
    notes: list[str],
    interaction: tuple[str, str] | None = None,
    data: pd.DataFrame | None = None,
    model_store: dict[str, LogitModel] | None = None,
    diagnostics_store: list[pd.DataFrame] | None = None,
) -> tuple[LogitModel | None, pd.DataFrame]:
    source = derived.frame if data is None else data
    try:
        model = fit_logistic(source, OUTCOME, predictors, interaction=interaction, label=label, config=config)
    except ModelFitError as exc:
        logging.error("%s", exc)
        notes.append(f"{label}: model not estimated ({exc}).")
        if diagnostics_store is not None:
            cc = derived.complete_cases([OUTCOME, *predictors])
            cc = cc.loc[cc.index.isin(source.index)]
            diagnostics_store.append(
                _build_logit_diagnostics(cc, label=label, parameter_count=None, config=config)
            )
        return None, _error_df(label, exc)

    notes.extend(model.notes)
    if model.n_excluded:
        notes.append(f"{label}: {model.n_excluded} rows excluded for missing model variables (n={model.n}).")
    if model_store is not None:
        model_store[label] = model
    if diagnostics_store is not None:
        diagnostics_store.append(
            _build_logit_diagnostics(
                model.fitted_frame(),
                label=label,
                parameter_count=model.n_parameters,
                config=config,
            )
        )
    return model, model.coefficients.copy()


def run_logistic_models(
    derived: DerivedDataset,
    config: dict,
    notes: list[str],
    model_store: dict[str, LogitModel] | None = None,
    diagnostics_store: list[pd.DataFrame] | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Interaction model (A), main-effects model (B), and their LRT."""
    model_a, int_out = _fit_or_record(
        derived,
        INTERACTION_PREDICTORS,
        interaction=INTERACTION_PAIR,
        label="logistic_interaction",
        config=config,
        notes=notes,
        model_store=model_store,
        diagnostics_store=diagnostics_store,
    )
    model_b, main_out = _fit_or_record(
        derived,
        INTERACTION_PREDICTORS,
        label="logistic_main_effects",
        config=config,
        notes=notes,
        model_store=model_store,
        diagnostics_store=diagnostics_store,
    )

    if model_a is not None and model_b is not None:
        lrt = likelihood_ratio_test(model_a, model_b)
        row = lrt.iloc[0]
        logging.info(
            "LRT interaction: deviance diff=%.3f df=%s p=%.4g",
            row["deviance_diff"],
            row["df_diff"],
            row["p_value"],
        )
    else:
        lrt = pd.DataFrame(
            {
                "model_full": ["logistic_interaction"],
                "model_reduced": ["logistic_main_effects"],
                "policy_note": ["LRT skipped because at least one model was not estimated."],
            }
        )
    return int_out, main_out, lrt


def run_subgroup_models(
    derived: DerivedDataset,
    config: dict,
    notes: list[str],
    model_store: dict[str, LogitModel] | None = None,
    diagnostics_store: list[pd.DataFrame] | None = None,
) -> pd.DataFrame:
    """Main-effects model restricted to participants younger than the age cutoff."""
    cutoff = float(config.get("young_age_cutoff", 25.0))
    known_age = derived.complete_cases(["age_at_enrollment_years"])
    young = known_age.loc[known_age["age_at_enrollment_years"] < cutoff]
    logging.info("Subgroup age<%s: %s of %s rows", cutoff, len(young), len(derived.frame))
    _, out = _fit_or_record(
        derived,
        SUBGROUP_PREDICTORS,
        data=young,
        label="logistic_subgroup_young",
        config=config,
        notes=notes,
        model_store=model_store,
        diagnostics_store=diagnostics_store,
    )
    return out


def build_outcome_components(derived: DerivedDataset, config: dict) -> pd.DataFrame:
    components = [c for c in config.get("outcome_components", []) if c in derived.frame.columns]
    return build_summary_table(derived.frame, continuous=["birth_weight_kg"], categorical=components)


def build_forest_ready(coefficient_tables: list[pd.DataFrame]) -> pd.DataFrame:
    frames: list[pd.DataFrame] = []
    for tab in coefficient_tables:
        if tab.empty or not {"term", "odds_ratio", "ci_low", "ci_high", "model"}.issubset(tab.columns):
            continue
        tmp = tab.loc[tab["term"] != "Intercept", ["model", "term", "odds_ratio", "ci_low", "ci_high", "p_value"]].copy()
        tmp = tmp.rename(columns={"odds_ratio": "estimate"})
        tmp["effect_type"] = "OR"
        frames.append(tmp)
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True, sort=False)


def _predicted_probabilities(models: dict[str, LogitModel], config: dict) -> pd.DataFrame:
    n_points = int(config.get("prediction_grid_points", 25))
    frames: list[pd.DataFrame] = []
    specs = [
        ("logistic_interaction", "total_malaria_episodes"),
        ("logistic_main_effects", "total_malaria_episodes"),
        ("logistic_subgroup_young", "gravidity"),
    ]
    for label, covariate in specs:
        model = models.get(label)
        if model is None:
            continue
        frames.append(predicted_probability_series(model, covariate, by="study_arm", n_points=n_points))
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True, sort=False)


def run_all_analyses(raw_df: pd.DataFrame, config: dict, notes: list[str] | None = None) -> AnalysisBundle:
    notes = list(notes or [])
    model_store: dict[str, LogitModel] = {}
    logit_diag_chunks: list[pd.DataFrame] = []

    derived = derive_variables(raw_df, config)
    notes.extend(derived.notes)
    frame = derived.frame

    continuous = [c for c in config.get("summary_continuous", []) if c in frame.columns]
    categorical = [c for c in config.get("summary_categorical", []) if c in frame.columns]
    table1 = build_summary_table(frame, continuous, categorical)
    p_values = summary_p_values(
        frame,
        continuous,
        categorical,
        continuous_test=config.get("summary_continuous_test", "parametric"),
        categorical_test=config.get("summary_categorical_test", "auto"),
    )
    table1_formatted = format_summary_table(table1, p_values)
    outcome_components = build_outcome_components(derived, config)

    logistic_interaction, logistic_main, lrt = run_logistic_models(
        derived,
        config=config,
        notes=notes,
        model_store=model_store,
        diagnostics_store=logit_diag_chunks,
    )
    logistic_subgroup = run_subgroup_models(
        derived,
        config=config,
        notes=notes,
        model_store=model_store,
        diagnostics_store=logit_diag_chunks,
    )

    fitted = list(model_store.values())
    model_comparison = compare_models(fitted) if fitted else pd.DataFrame()
    gvif = pd.concat([m.gvif() for m in fitted], ignore_index=True) if fitted else pd.DataFrame()
    predicted = _predicted_probabilities(model_store, config)

    prediction: PredictionResults | None
    try:
        prediction = run_predictive_evaluation(frame, config, notes)
    except PartitionError as exc:
        logging.error("Predictive evaluation skipped: %s", exc)
        notes.append(f"Predictive evaluation skipped: {exc}")
        prediction = None

    forest_ready = build_forest_ready([logistic_interaction, logistic_main, logistic_subgroup])
    logit_diagnostics = (
        pd.concat(logit_diag_chunks, ignore_index=True, sort=False)
        if logit_diag_chunks
        else pd.DataFrame(columns=["analysis", "scope", "level", "n", "events", "nonevents", "event_rate", "sparse"])
    )

    artifacts: dict[str, object] = {
        "models": model_store,
        "prediction_models": prediction.models if prediction is not None else {},
        "summary_p_values": p_values,
    }

    return AnalysisBundle(
        derived=derived,
        table1=table1,
        table1_formatted=table1_formatted,
        outcome_components=outcome_components,
        logistic_interaction=logistic_interaction,
        logistic_main=logistic_main,
        logistic_subgroup=logistic_subgroup,
        lrt=lrt,
        model_comparison=model_comparison,
        gvif=gvif,
        logit_diagnostics=logit_diagnostics,
        predicted_probabilities=predicted,
        prediction=prediction,
        forest_ready=forest_ready,
        notes=notes,
        artifacts=artifacts,
    )
