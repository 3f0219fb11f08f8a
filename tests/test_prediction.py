"""
Stratified split and predictive evaluation tests.

Run with: pytest tests/test_prediction.py -v
"""

import numpy as np
import pandas as pd
import pytest

from iptp_outcomes_pipeline.errors import PartitionError
from iptp_outcomes_pipeline.prediction import (
    FEATURES,
    INTERACTION,
    DataSplit,
    calibration_slope_intercept,
    calibration_table,
    discrimination_metrics,
    fit_gradient_boosting,
    roc_table,
    run_predictive_evaluation,
    score_on_seen_levels,
    stratified_split,
)
from iptp_outcomes_pipeline.regression import fit_logistic

OUTCOME = "adverse_birth_outcome"


def _split(frame, seed=42, **kwargs):
    return stratified_split(frame, OUTCOME, predictors=FEATURES, test_size=0.3, seed=seed, **kwargs)


class TestStratifiedSplit:
    """Tests for the outcome-stratified train/test split."""

    def test_deterministic_for_seed(self, derived_cohort):
        """Test the same seed gives the same partitions."""
        a = _split(derived_cohort.frame, seed=5)
        b = _split(derived_cohort.frame, seed=5)
        assert a.train.index.equals(b.train.index)
        assert a.test.index.equals(b.test.index)

    def test_seed_changes_partition(self, derived_cohort):
        """Test a different seed gives a different test partition."""
        a = _split(derived_cohort.frame, seed=5)
        b = _split(derived_cohort.frame, seed=6)
        assert not a.test.index.equals(b.test.index)

    def test_partition_counts(self, derived_cohort):
        """Test train + test = input - excluded, with no overlap."""
        frame = derived_cohort.frame.copy()
        frame.loc[frame.index[:7], "education_level"] = np.nan
        split = _split(frame)
        assert split.n_excluded == 7
        assert len(split.train) + len(split.test) == len(frame) - 7
        assert split.train.index.intersection(split.test.index).empty

    def test_prevalence_within_tolerance(self, derived_cohort):
        """Test that partition prevalences stay within the tolerance."""
        split = _split(derived_cohort.frame)
        allowed = max(0.05, 1.0 / len(split.test))
        assert abs(split.prevalence_train - split.prevalence_test) <= allowed
        summary = split.summary(OUTCOME)
        assert summary["n"].sum() == len(split.train) + len(split.test)

    def test_too_few_positives(self, derived_cohort):
        """Test PartitionError carries the observed counts."""
        frame = derived_cohort.frame.copy()
        frame[OUTCOME] = 0.0
        frame.loc[frame.index[0], OUTCOME] = 1.0
        with pytest.raises(PartitionError) as excinfo:
            _split(frame)
        assert excinfo.value.counts["positives"] == 1

    def test_arm_without_positives(self, derived_cohort):
        """Test an arm with no events raises PartitionError naming the arm."""
        frame = derived_cohort.frame.copy()
        frame.loc[frame["study_arm"] == "DP", OUTCOME] = 0.0
        with pytest.raises(PartitionError, match="DP"):
            _split(frame)


class TestScores:
    """Tests for discrimination and calibration metrics."""

    def test_perfect_score_auc(self):
        """Test a score equal to the outcome has AUC exactly 1 and Brier 0."""
        y = np.array([0, 0, 1, 0, 1, 1, 0, 1])
        metrics = discrimination_metrics(y, y.astype(float))
        assert metrics["auc"] == 1.0
        assert metrics["brier"] == 0.0

    def test_constant_score_auc(self):
        """Test a constant score has AUC exactly 0.5."""
        y = np.array([0, 1, 0, 1, 0, 1])
        assert discrimination_metrics(y, np.full(6, 0.4))["auc"] == 0.5

    def test_roc_endpoints(self):
        """Test the ROC table runs from (0, 0) to (1, 1)."""
        y = np.array([0, 0, 0, 1, 1, 1])
        roc = roc_table(y, np.array([0.1, 0.2, 0.3, 0.7, 0.8, 0.9]), "perfect")
        assert (roc["fpr"].iloc[0], roc["tpr"].iloc[0]) == (0.0, 0.0)
        assert (roc["fpr"].iloc[-1], roc["tpr"].iloc[-1]) == (1.0, 1.0)

    def test_calibration_bins(self):
        """Test bin counts add up and observed rates lie in [0, 1]."""
        rng = np.random.default_rng(0)
        p = rng.uniform(0, 1, 400)
        y = (rng.random(400) < p).astype(int)
        table = calibration_table(y, p, "model", n_bins=10)
        assert table["n"].sum() == 400
        assert table["observed_rate"].between(0, 1).all()
        assert (table["bin_upper"] - table["bin_lower"]).round(10).eq(0.1).all()

    def test_calibration_slope_near_one(self):
        """Test a calibrated score has slope near 1 and intercept near 0."""
        rng = np.random.default_rng(42)
        p = rng.uniform(0.1, 0.9, 2000)
        y = (rng.random(2000) < p).astype(int)
        slope, intercept = calibration_slope_intercept(y, p)
        assert abs(slope - 1.0) < 0.25
        assert abs(intercept) < 0.25


class TestClassifiers:
    """Tests for the classifier comparison."""

    def test_gbm_needs_enough_per_fold(self, derived_cohort, config):
        """Test GBM CV refuses a training set with fewer events than folds."""
        train = derived_cohort.frame.copy()
        train[OUTCOME] = 0.0
        train.loc[train.index[:5], OUTCOME] = 1.0
        with pytest.raises(PartitionError, match="10-fold"):
            fit_gradient_boosting(train, OUTCOME, config)

    @pytest.mark.slow
    def test_full_comparison(self, derived_cohort, config):
        """Test all three classifiers are scored on the test partition."""
        config = {**config, "rf_n_estimators": 50, "gbm_n_estimators": 30, "cv_folds": 3}
        notes = []
        results = run_predictive_evaluation(derived_cohort.frame, config, notes)
        assert set(results.auc["model"]) == {"logistic_interaction", "random_forest", "gradient_boosting"}
        assert results.auc["auc"].between(0, 1).all()
        assert len(results.grid_search) == 4 * 4
        assert set(results.roc["model"]) == set(results.auc["model"])
        assert len(results.test_predictions) == int(results.split_summary.set_index("partition").loc["test", "n"])


class TestUnseenLevels:
    """Tests for test rows carrying a level the logistic model never saw."""

    def test_seen_rows_scored(self, derived_cohort, config):
        """Test only rows with training levels are scored and the rest are listed."""
        frame = derived_cohort.frame
        university = frame["education_level"] == "university"
        model = fit_logistic(
            frame.loc[~university], OUTCOME, FEATURES, interaction=INTERACTION, label="no_university", config=config
        )
        test = pd.concat([frame.loc[~university].head(40), frame.loc[university].head(3)])
        scores, unseen = score_on_seen_levels(model, test)
        assert unseen == {"education_level": ["university"]}
        assert len(scores) == 40
        assert not scores.index.isin(frame.index[university]).any()
        assert scores.between(0, 1).all()

    @pytest.mark.slow
    def test_logistic_kept_in_comparison(self, derived_cohort, config, monkeypatch):
        """Test the logistic model keeps its AUC row when the test partition holds a new level."""
        frame = derived_cohort.frame
        university = frame["education_level"] == "university"
        train = frame.loc[~university].iloc[::2]
        test = frame.drop(index=train.index)
        split = DataSplit(
            train=train,
            test=test,
            seed=0,
            n_excluded=0,
            prevalence_train=float(train[OUTCOME].mean()),
            prevalence_test=float(test[OUTCOME].mean()),
        )
        monkeypatch.setattr("iptp_outcomes_pipeline.prediction.stratified_split", lambda *args, **kwargs: split)
        config = {**config, "rf_n_estimators": 50, "gbm_n_estimators": 30, "cv_folds": 3, "gbm_learning_rate_steps": 2}
        notes = []
        results = run_predictive_evaluation(frame, config, notes)
        row = results.auc.set_index("model").loc["logistic_interaction"]
        assert 0 <= row["auc"] <= 1
        assert row["n_scored"] == len(test) - int(university.sum())
        assert row["unscored_levels"] == "education_level: university"
        assert any("not scored" in n for n in notes)
        assert results.test_predictions.loc[frame.index[university], "p_logistic_interaction"].isna().all()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
