"""Exploratory discrimination/calibration comparison: logistic vs tree ensembles."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.api as sm
from sklearn.compose import ColumnTransformer
from sklearn.ensemble import GradientBoostingClassifier, RandomForestClassifier
from sklearn.metrics import brier_score_loss, roc_auc_score, roc_curve
from sklearn.model_selection import GridSearchCV, StratifiedKFold, train_test_split
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError, PerfectSeparationWarning

from .errors import ModelFitError, PartitionError
from .regression import LogitModel, fit_logistic

FEATURES = ["total_malaria_episodes", "study_arm", "age_at_enrollment_years", "gravidity", "education_level"]
CATEGORICAL_FEATURES = ["study_arm", "education_level"]
INTERACTION = ("total_malaria_episodes", "study_arm")


@dataclass
class DataSplit:
    train: pd.DataFrame
    test: pd.DataFrame
    seed: int
    n_excluded: int
    prevalence_train: float
    prevalence_test: float

    def summary(self, outcome: str) -> pd.DataFrame:
        rows = []
        for name, part in (("train", self.train), ("test", self.test)):
            rows.append(
                {
                    "partition": name,
                    "n": int(len(part)),
                    "events": int(part[outcome].sum()),
                    "prevalence": float(part[outcome].mean()),
                    "seed": self.seed,
                    "n_excluded_before_split": self.n_excluded,
                }
            )
        return pd.DataFrame(rows)


@dataclass
class PredictionResults:
    auc: pd.DataFrame
    roc: pd.DataFrame
    calibration: pd.DataFrame
    grid_search: pd.DataFrame
    feature_importance: pd.DataFrame
    split_summary: pd.DataFrame
    test_predictions: pd.DataFrame
    models: dict[str, object] = field(default_factory=dict)


def _class_counts(y: pd.Series) -> dict[str, int]:
    return {"positives": int((y == 1).sum()), "negatives": int((y == 0).sum())}


def stratified_split(
    df: pd.DataFrame,
    outcome: str,
    *,
    predictors: list[str],
    test_size: float = 0.3,
    seed: int = 42,
    strata_column: str | None = "study_arm",
    min_per_stratum: int = 2,
    tolerance: float = 0.05,
) -> DataSplit:
    """Outcome-stratified train/test split on complete cases.

    Raises PartitionError with the observed counts when a class (overall or
    within a ``strata_column`` level) is too sparse to appear in both
    partitions, or when the partition prevalences drift apart by more than
    ``max(tolerance, 1 / n_test)``.
    """
    columns = list(dict.fromkeys([outcome, *predictors, *([strata_column] if strata_column else [])]))
    frame = df.dropna(subset=columns).copy()
    n_excluded = int(len(df) - len(frame))
    y = frame[outcome].astype(int)
    min_per_stratum = max(int(min_per_stratum), 2)

    overall = _class_counts(y)
    if overall["positives"] < min_per_stratum or overall["negatives"] < min_per_stratum:
        raise PartitionError(
            f"Too few cases of one outcome class to stratify (minimum {min_per_stratum} each).", overall
        )
    if strata_column:
        by_stratum = {str(level): _class_counts(g[outcome]) for level, g in frame.groupby(strata_column, observed=True)}
        sparse = {k: v for k, v in by_stratum.items() if v["positives"] < min_per_stratum}
        if sparse:
            raise PartitionError(
                f"{strata_column} level(s) {', '.join(sparse)} have fewer than {min_per_stratum} positive outcomes.",
                by_stratum,
            )

    try:
        train_idx, test_idx = train_test_split(frame.index, test_size=test_size, random_state=seed, stratify=y)
    except ValueError as exc:
        raise PartitionError(f"Stratified split failed: {exc}", overall) from exc

    train = frame.loc[sorted(train_idx)].copy()
    test = frame.loc[sorted(test_idx)].copy()
    for name, part in (("train", train), ("test", test)):
        counts = _class_counts(part[outcome])
        if counts["positives"] == 0 or counts["negatives"] == 0:
            raise PartitionError(f"{name} partition lacks an outcome class.", counts)

    prev_train = float(train[outcome].mean())
    prev_test = float(test[outcome].mean())
    allowed = max(float(tolerance), 1.0 / len(test))
    if abs(prev_train - prev_test) > allowed:
        raise PartitionError(
            f"Partition prevalences differ by {abs(prev_train - prev_test):.3f} (allowed {allowed:.3f}).",
            {"prevalence_train": prev_train, "prevalence_test": prev_test},
        )
    logging.info(
        "Split seed=%s: train n=%s (prev %.3f), test n=%s (prev %.3f), excluded=%s",
        seed,
        len(train),
        prev_train,
        len(test),
        prev_test,
        n_excluded,
    )
    return DataSplit(
        train=train,
        test=test,
        seed=seed,
        n_excluded=n_excluded,
        prevalence_train=prev_train,
        prevalence_test=prev_test,
    )


def _tree_preprocessor(categorical: list[str], numeric: list[str]) -> ColumnTransformer:
    return ColumnTransformer(
        transformers=[
            ("cat", OneHotEncoder(handle_unknown="ignore", sparse_output=False), categorical),
            ("num", "passthrough", numeric),
        ]
    )


def _tree_inputs(frame: pd.DataFrame, categorical: list[str], numeric: list[str]) -> pd.DataFrame:
    x = frame[[*categorical, *numeric]].copy()
    for col in categorical:
        x[col] = x[col].astype(str)
    for col in numeric:
        x[col] = x[col].astype(float)
    return x


def roc_table(y_true: np.ndarray, y_prob: np.ndarray, label: str) -> pd.DataFrame:
    fpr, tpr, thresholds = roc_curve(y_true, y_prob)
    return pd.DataFrame({"model": label, "fpr": fpr, "tpr": tpr, "threshold": thresholds})


def calibration_table(y_true: np.ndarray, y_prob: np.ndarray, label: str, n_bins: int = 10) -> pd.DataFrame:
    """Observed event rate vs mean predicted probability in equal-width bins."""
    y = np.asarray(y_true, dtype=float)
    p = np.asarray(y_prob, dtype=float)
    bin_id = np.minimum((p * n_bins).astype(int), n_bins - 1)
    frame = pd.DataFrame({"bin": bin_id, "y": y, "p": p})
    grouped = frame.groupby("bin").agg(n=("y", "size"), observed_rate=("y", "mean"), mean_predicted=("p", "mean"))
    grouped = grouped.reset_index()
    grouped.insert(0, "model", label)
    grouped["bin_lower"] = grouped["bin"] / n_bins
    grouped["bin_upper"] = (grouped["bin"] + 1) / n_bins
    return grouped[["model", "bin", "bin_lower", "bin_upper", "n", "mean_predicted", "observed_rate"]]


def calibration_slope_intercept(y_true: np.ndarray, y_prob: np.ndarray) -> tuple[float, float]:
    """Logistic recalibration of the outcome on logit(p): (slope, intercept)."""
    p = np.clip(np.asarray(y_prob, dtype=float), 1e-7, 1 - 1e-7)
    logit_p = np.log(p / (1 - p))
    with warnings.catch_warnings():
        warnings.filterwarnings("error", category=PerfectSeparationWarning)
        warnings.filterwarnings("error", category=ConvergenceWarning)
        fit = sm.GLM(np.asarray(y_true, dtype=float), sm.add_constant(logit_p), family=sm.families.Binomial()).fit()
    intercept, slope = np.asarray(fit.params, dtype=float)
    return float(slope), float(intercept)


def _gbm_grid(config: dict) -> dict[str, list]:
    lr_lo, lr_hi = config.get("gbm_learning_rate_range", (0.01, 0.2))
    steps = int(config.get("gbm_learning_rate_steps", 4))
    depth_lo, depth_hi = config.get("gbm_max_depth_range", (1, 4))
    return {
        "gbm__learning_rate": [float(x) for x in np.linspace(float(lr_lo), float(lr_hi), steps)],
        "gbm__max_depth": list(range(int(depth_lo), int(depth_hi) + 1)),
    }


def fit_random_forest(train: pd.DataFrame, outcome: str, config: dict) -> Pipeline:
    numeric = [f for f in FEATURES if f not in CATEGORICAL_FEATURES]
    pipe = Pipeline(
        steps=[
            ("pre", _tree_preprocessor(CATEGORICAL_FEATURES, numeric)),
            (
                "rf",
                RandomForestClassifier(
                    n_estimators=int(config.get("rf_n_estimators", 500)),
                    min_samples_leaf=int(config.get("rf_min_samples_leaf", 5)),
                    random_state=int(config.get("random_seed", 42)),
                    n_jobs=int(config.get("n_jobs", 1)),
                ),
            ),
        ]
    )
    pipe.fit(_tree_inputs(train, CATEGORICAL_FEATURES, numeric), train[outcome].astype(int))
    return pipe


def fit_gradient_boosting(train: pd.DataFrame, outcome: str, config: dict) -> GridSearchCV:
    """Grid-searched gradient boosting; CV folds are drawn from ``train`` only."""
    folds = int(config.get("cv_folds", 10))
    seed = int(config.get("random_seed", 42))
    y = train[outcome].astype(int)
    counts = _class_counts(y)
    if min(counts.values()) < folds:
        raise PartitionError(f"Training partition cannot support {folds}-fold stratified CV.", counts)

    numeric = [f for f in FEATURES if f not in CATEGORICAL_FEATURES]
    pipe = Pipeline(
        steps=[
            ("pre", _tree_preprocessor(CATEGORICAL_FEATURES, numeric)),
            (
                "gbm",
                GradientBoostingClassifier(
                    n_estimators=int(config.get("gbm_n_estimators", 200)),
                    random_state=seed,
                ),
            ),
        ]
    )
    search = GridSearchCV(
        pipe,
        _gbm_grid(config),
        cv=StratifiedKFold(n_splits=folds, shuffle=True, random_state=seed),
        scoring="roc_auc",
        n_jobs=int(config.get("n_jobs", 1)),
        refit=True,
    )
    search.fit(_tree_inputs(train, CATEGORICAL_FEATURES, numeric), y)
    logging.info("gradient_boosting: best params %s (CV AUC %.3f)", search.best_params_, search.best_score_)
    return search


def _feature_importance(pipe: Pipeline, step: str, label: str) -> pd.DataFrame:
    names = pipe.named_steps["pre"].get_feature_names_out()
    importances = pipe.named_steps[step].feature_importances_
    out = pd.DataFrame({"model": label, "feature": names, "importance": importances})
    return out.sort_values("importance", ascending=False, ignore_index=True)


def _grid_search_table(search: GridSearchCV) -> pd.DataFrame:
    cv = pd.DataFrame(search.cv_results_)
    out = pd.DataFrame(
        {
            "learning_rate": cv["param_gbm__learning_rate"].astype(float),
            "max_depth": cv["param_gbm__max_depth"].astype(int),
            "mean_cv_auc": cv["mean_test_score"],
            "std_cv_auc": cv["std_test_score"],
            "rank": cv["rank_test_score"],
        }
    )
    return out.sort_values("rank", ignore_index=True)


def _error_frame(label: str, exc: Exception) -> pd.DataFrame:
    return pd.DataFrame({"model": [label], "error": [str(exc)]})


def discrimination_metrics(y_true: np.ndarray, y_prob: np.ndarray) -> dict[str, float]:
    """AUC and Brier score of ``y_prob`` against the observed 0/1 outcome."""
    return {
        "auc": float(roc_auc_score(y_true, y_prob)),
        "brier": float(brier_score_loss(y_true, y_prob)),
    }


def score_on_seen_levels(model: LogitModel, frame: pd.DataFrame) -> tuple[pd.Series, dict[str, list[str]]]:
    """Predicted probabilities for the rows whose categorical levels ``model`` was fit on.

    Rows carrying a level absent from the fitting data are left out of the
    returned series; the second element lists those levels per column.
    """
    keep = pd.Series(True, index=frame.index)
    unseen: dict[str, list[str]] = {}
    for col, levels in model.category_levels.items():
        values = frame[col].astype(str)
        bad = ~values.isin(levels)
        if bool(bad.any()):
            unseen[col] = sorted(set(values[bad]))
            keep &= ~bad
    scored = frame.loc[keep]
    if scored.empty:
        return pd.Series(dtype=float), unseen
    return pd.Series(model.predict_proba(scored), index=scored.index), unseen


def run_predictive_evaluation(df: pd.DataFrame, config: dict, notes: list[str]) -> PredictionResults:
    outcome = str(config.get("outcome", "adverse_birth_outcome"))
    split = stratified_split(
        df,
        outcome,
        predictors=FEATURES,
        test_size=float(config.get("test_size", 0.3)),
        seed=int(config.get("random_seed", 42)),
        strata_column=config.get("split_strata_column", "study_arm"),
        min_per_stratum=int(config.get("split_min_positive_per_stratum", 2)),
        tolerance=float(config.get("split_prevalence_tolerance", 0.05)),
    )
    numeric = [f for f in FEATURES if f not in CATEGORICAL_FEATURES]
    x_test = _tree_inputs(split.test, CATEGORICAL_FEATURES, numeric)

    models: dict[str, object] = {}
    scores: dict[str, pd.Series] = {}
    extras: dict[str, dict[str, object]] = {}
    error_rows: list[pd.DataFrame] = []
    grid_table = pd.DataFrame()
    importance_frames: list[pd.DataFrame] = []

    try:
        logit = fit_logistic(
            split.train, outcome, FEATURES, interaction=INTERACTION, label="logistic_interaction", config=config
        )
        models["logistic_interaction"] = logit
        y_prob, unseen = score_on_seen_levels(logit, split.test)
        scores["logistic_interaction"] = y_prob
        if unseen:
            n_dropped = int(len(split.test) - len(y_prob))
            detail = "; ".join(f"{col}: {', '.join(levels)}" for col, levels in unseen.items())
            msg = f"logistic_interaction: {n_dropped} test rows not scored, levels absent from training ({detail})."
            logging.warning(msg)
            notes.append(msg)
            extras["logistic_interaction"] = {"unscored_levels": detail}
    except (ModelFitError, ValueError) as exc:
        notes.append(f"Prediction logistic_interaction failed: {exc}")
        error_rows.append(_error_frame("logistic_interaction", exc))

    try:
        rf = fit_random_forest(split.train, outcome, config)
        models["random_forest"] = rf
        scores["random_forest"] = pd.Series(rf.predict_proba(x_test)[:, 1], index=split.test.index)
        importance_frames.append(_feature_importance(rf, "rf", "random_forest"))
    except ValueError as exc:
        notes.append(f"Prediction random_forest failed: {exc}")
        error_rows.append(_error_frame("random_forest", exc))

    try:
        search = fit_gradient_boosting(split.train, outcome, config)
        models["gradient_boosting"] = search.best_estimator_
        scores["gradient_boosting"] = pd.Series(search.predict_proba(x_test)[:, 1], index=split.test.index)
        extras["gradient_boosting"] = {"best_params": str(search.best_params_), "cv_auc": float(search.best_score_)}
        grid_table = _grid_search_table(search)
        importance_frames.append(_feature_importance(search.best_estimator_, "gbm", "gradient_boosting"))
    except (PartitionError, ValueError) as exc:
        notes.append(f"Prediction gradient_boosting failed: {exc}")
        error_rows.append(_error_frame("gradient_boosting", exc))

    n_bins = int(config.get("calibration_bins", 10))
    auc_rows: list[dict[str, object]] = []
    roc_frames: list[pd.DataFrame] = []
    cal_frames: list[pd.DataFrame] = []
    test_predictions = pd.DataFrame({outcome: split.test[outcome].astype(int)}, index=split.test.index)
    for label, series in scores.items():
        y_true = split.test.loc[series.index, outcome].astype(int).to_numpy()
        y_prob = series.to_numpy(dtype=float)
        if len(np.unique(y_true)) < 2:
            msg = f"{label}: scored test rows hold a single outcome class; AUC not defined."
            notes.append(msg)
            error_rows.append(pd.DataFrame({"model": [label], "error": [msg]}))
            continue
        metrics = discrimination_metrics(y_true, y_prob)
        try:
            slope, intercept = calibration_slope_intercept(y_true, y_prob)
        except (PerfectSeparationError, PerfectSeparationWarning, ConvergenceWarning, np.linalg.LinAlgError) as exc:
            notes.append(f"{label}: calibration slope not estimable ({exc}).")
            slope, intercept = np.nan, np.nan
        auc_rows.append(
            {
                "model": label,
                **metrics,
                "calibration_slope": slope,
                "calibration_intercept": intercept,
                "n_train": int(len(split.train)),
                "n_test": int(len(split.test)),
                "n_scored": int(len(y_true)),
                "events_test": int(y_true.sum()),
                **extras.get(label, {}),
            }
        )
        roc_frames.append(roc_table(y_true, y_prob, label))
        cal_frames.append(calibration_table(y_true, y_prob, label, n_bins=n_bins))
        test_predictions[f"p_{label}"] = series
        logging.info("%s: test AUC %.3f (n=%s)", label, metrics["auc"], len(y_true))

    auc_table = pd.DataFrame(auc_rows)
    if error_rows:
        auc_table = pd.concat([auc_table, *error_rows], ignore_index=True, sort=False)

    return PredictionResults(
        auc=auc_table,
        roc=pd.concat(roc_frames, ignore_index=True) if roc_frames else pd.DataFrame(columns=["model", "fpr", "tpr", "threshold"]),
        calibration=pd.concat(cal_frames, ignore_index=True) if cal_frames else pd.DataFrame(),
        grid_search=grid_table,
        feature_importance=pd.concat(importance_frames, ignore_index=True) if importance_frames else pd.DataFrame(),
        split_summary=split.summary(outcome),
        test_predictions=test_predictions,
        models=models,
    )
