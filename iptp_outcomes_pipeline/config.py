"""Configuration for the IPTp regimen x malaria burden birth-outcome analyses."""

from __future__ import annotations

import os
from pathlib import Path

CHANGE_LOG = [
    "2026-10-14: Added exploratory prediction comparison (logistic vs random forest vs gradient boosting) on a stratified 70/30 split.",
    "2026-10-14: Gradient boosting hyperparameters now selected by 10-fold CV grid search on the training partition only.",
    "2026-10-12: Added GVIF multicollinearity diagnostics and likelihood-ratio test for the malaria x arm interaction.",
    "2026-10-12: Added age<25 subgroup model for the gravidity question.",
    "2026-10-10: Replaced repeated per-section recoding with a single derived dataset shared by every analysis.",
    "2026-10-10: Composite adverse birth outcome = preterm birth OR stillbirth OR low birth weight (<2.5 kg).",
    "2026-10-09: Baseline table by study arm with complete-case-per-variable summaries and configurable tests.",
]

ASSUMPTIONS = [
    "Input is the single-site trial export with one row per enrolled participant and snake_case column names.",
    "Birth weight is recorded in kilograms; low birth weight is < 2.5 kg.",
    "Malaria episode and preterm birth buckets labelled '1' cover counts 0 and 1; this grouping is reproduced as recorded.",
    "Gravidity 0 is not a valid value for an enrolled pregnancy and is treated as missing for gravidity_category.",
    "Rows with missing values are excluded per analysis (complete cases on that analysis' variables), never imputed.",
    "Odds-ratio confidence intervals are Wald intervals exp(coef +/- 1.96*SE), not profile-likelihood intervals.",
    "The prediction comparison is exploratory; the logistic regression models are the primary analysis.",
]

COLUMNS = {
    "date": ["enrollment_date", "withdrawal_date", "child_withdrawal_date"],
    "numeric": [
        "age_at_enrollment_years",
        "gestational_age_at_enrollment_weeks",
        "malaria_infection_rate_pregnancy",
        "birth_weight_kg",
    ],
    "count": [
        "gravidity",
        "parity",
        "total_malaria_episodes",
        "total_malaria_episodes_pregnancy",
        "preterm_births_count",
    ],
    "binary": ["stillbirth"],
    "comorbidity": ["hypertension", "diabetes", "asthma", "sickle_cell_disease", "hiv_status"],
    "required": [
        "study_arm",
        "age_at_enrollment_years",
        "education_level",
        "gravidity",
        "parity",
        "total_malaria_episodes",
        "birth_weight_kg",
        "stillbirth",
        "preterm_births_count",
    ],
}

CONFIG = {
    "input_path": os.environ.get("IPTP_INPUT_CSV", "").strip(),
    "output_dir": os.environ.get(
        "IPTP_OUTPUT_DIR",
        str(Path(__file__).resolve().parents[1] / "iptp_outputs"),
    ),
    "random_seed": 42,
    "outcome": "adverse_birth_outcome",
    "young_age_cutoff": 25.0,
    "low_birth_weight_kg": 2.5,
    "wald_z": 1.96,
    "reference_levels": {
        "education_level": "none",
    },
    "category_levels": {
        # None -> sorted observed levels.
        "study_arm": None,
        "education_level": ["none", "primary", "secondary", "tertiary", "university"],
        "placental_malaria": ["no infection", "acute", "chronic", "past"],
    },
    "summary_missing_policy": "exclude",
    "summary_continuous_test": "parametric",
    "summary_categorical_test": "auto",
    "summary_continuous": [
        "age_at_enrollment_years",
        "gestational_age_at_enrollment_weeks",
        "birth_weight_kg",
        "malaria_infection_rate_pregnancy",
    ],
    "summary_categorical": [
        "age_group",
        "education_level",
        "gravidity_category",
        "parity_category",
        "malaria_episodes_category",
        "malaria_episodes_pregnancy_category",
        "preterm_births_category",
        "placental_malaria",
        "hypertension",
        "diabetes",
        "asthma",
        "sickle_cell_disease",
        "hiv_status",
        "any_comorbidity",
    ],
    "outcome_components": ["low_birth_weight", "stillbirth", "preterm_births_category", "adverse_birth_outcome"],
    "logit_event_cell_warn_threshold": 5,
    "logit_events_per_parameter_warn_threshold": 10.0,
    "logit_maxiter": 100,
    "unstable_se_threshold": 50.0,
    "unstable_coef_threshold": 15.0,
    "prediction_grid_points": 25,
    "test_size": 0.3,
    "split_prevalence_tolerance": 0.05,
    "split_min_positive_per_stratum": 2,
    "split_strata_column": "study_arm",
    "cv_folds": 10,
    "gbm_learning_rate_range": (0.01, 0.2),
    "gbm_learning_rate_steps": 4,
    "gbm_max_depth_range": (1, 4),
    "gbm_n_estimators": 200,
    "rf_n_estimators": 500,
    "rf_min_samples_leaf": 5,
    "n_jobs": 1,
    "calibration_bins": 10,
    "print_tables": False,
    "print_table_max_rows": 30,
}

REQUIRED_OUTPUT_FILES = [
    "derived_dataset.csv",
    "derived_missingness.csv",
    "table1_baseline_by_arm.csv",
    "table1_formatted.csv",
    "outcome_components_by_arm.csv",
    "logistic_interaction.csv",
    "logistic_main_effects.csv",
    "logistic_subgroup_young.csv",
    "likelihood_ratio_test.csv",
    "model_comparison.csv",
    "gvif.csv",
    "logit_model_diagnostics.csv",
    "predicted_probabilities.csv",
    "prediction_auc.csv",
    "roc_curves.csv",
    "calibration.csv",
    "gbm_grid_search.csv",
    "feature_importance.csv",
    "forest_plot_ready.csv",
    "REPORT.md",
]


def validate_config(config: dict | None = None) -> None:
    cfg = CONFIG if config is None else config
    if not str(cfg.get("input_path", "")).strip():
        raise ValueError("IPTP_INPUT_CSV is empty. Set IPTP_INPUT_CSV or pass input_path before running.")
    if cfg.get("summary_missing_policy") != "exclude":
        raise ValueError(
            f"Unsupported summary_missing_policy {cfg.get('summary_missing_policy')!r}; only 'exclude' is implemented."
        )
    test_size = float(cfg["test_size"])
    if not 0.0 < test_size < 1.0:
        raise ValueError(f"test_size must be in (0, 1); got {test_size}.")
    if int(cfg["cv_folds"]) < 2:
        raise ValueError(f"cv_folds must be >= 2; got {cfg['cv_folds']}.")
    lr_lo, lr_hi = cfg["gbm_learning_rate_range"]
    if not 0.0 < float(lr_lo) <= float(lr_hi):
        raise ValueError(f"gbm_learning_rate_range must satisfy 0 < low <= high; got {cfg['gbm_learning_rate_range']}.")
    depth_lo, depth_hi = cfg["gbm_max_depth_range"]
    if not 1 <= int(depth_lo) <= int(depth_hi):
        raise ValueError(f"gbm_max_depth_range must satisfy 1 <= low <= high; got {cfg['gbm_max_depth_range']}.")


def ensure_output_dir(config: dict | None = None) -> Path:
    cfg = CONFIG if config is None else config
    out_dir = Path(cfg["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir
