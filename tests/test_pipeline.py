"""
End-to-end tests for the analysis bundle and the main entrypoint.

Run with: pytest tests/test_pipeline.py -v
"""

import pandas as pd
import pytest

from iptp_outcomes_pipeline.analysis import _build_logit_diagnostics, run_all_analyses, run_subgroup_models
from iptp_outcomes_pipeline.cohort import normalize_cohort
from iptp_outcomes_pipeline.config import REQUIRED_OUTPUT_FILES
from iptp_outcomes_pipeline.derived import derive_variables
from iptp_outcomes_pipeline.regression import LogitModel
from iptp_outcomes_pipeline.synthetic import generate_trial_cohort

FAST = {"rf_n_estimators": 50, "gbm_n_estimators": 30, "cv_folds": 3, "gbm_learning_rate_steps": 2}


class TestKnownScenario:
    """Tests on the hand-built 20-subject cohort."""

    def test_outcome_components_by_arm(self, twenty_subjects, config):
        """Test the composite outcome counts per arm in the components table."""
        typed = normalize_cohort(twenty_subjects, config)
        bundle = run_all_analyses(typed, {**config, **FAST})
        comp = bundle.outcome_components
        rows = comp.loc[(comp["variable"] == "adverse_birth_outcome") & (comp["level"] == "1")]
        counts = rows.set_index("strata_level")["n"]
        assert counts["SP"] == 5
        assert counts["DP"] == 3
        assert counts["Overall"] == 8
        missing = comp.loc[(comp["variable"] == "adverse_birth_outcome") & (comp["stat"] == "missing")]
        assert missing.set_index("strata_level").loc["DP", "n"] == 1

    def test_failures_are_recorded_not_raised(self, twenty_subjects, config):
        """Test that small-sample model failures become notes and error rows."""
        typed = normalize_cohort(twenty_subjects, config)
        bundle = run_all_analyses(typed, {**config, **FAST})
        for table in (bundle.logistic_interaction, bundle.logistic_main, bundle.logistic_subgroup):
            assert "model" in table.columns
            assert "error" in table.columns or "odds_ratio" in table.columns
        assert any("gravidity 0" in n for n in bundle.notes)

    def test_diagnostics_follow_model_rows(self, twenty_subjects, config):
        """Test diagnostics count the complete-case rows each model sees."""
        typed = normalize_cohort(twenty_subjects, config)
        bundle = run_all_analyses(typed, {**config, **FAST})
        assert "odds_ratio" in bundle.logistic_interaction.columns
        diag = bundle.logit_diagnostics
        overall = diag.loc[diag["scope"] == "overall"].set_index("analysis")["n"]
        assert overall["logistic_interaction"] == 19
        assert overall["logistic_subgroup_young"] == 9


class TestSubgroup:
    """Tests for the age-restricted model."""

    def test_no_rows_outside_filter(self, derived_cohort, config):
        """Test the subgroup model only sees participants under the cutoff."""
        store = {}
        run_subgroup_models(derived_cohort, config, [], model_store=store)
        model = store["logistic_subgroup_young"]
        assert isinstance(model, LogitModel)
        fitted_ids = model.fitted_frame().index
        ages = derived_cohort.frame.loc[fitted_ids, "age_at_enrollment_years"]
        assert (ages < 25).all()
        assert model.n == int((derived_cohort.frame["age_at_enrollment_years"] < 25).sum())


class TestLogitDiagnostics:
    """Tests for the event-count diagnostics behind each model."""

    def test_arm_by_education_cells(self, derived_cohort, config):
        """Test arm x education cells partition the rows and flag sparse cells."""
        data = derived_cohort.frame.dropna(subset=["adverse_birth_outcome"])
        diag = _build_logit_diagnostics(data, label="model_a", parameter_count=9, config=config)
        cells = diag.loc[diag["scope"] == "study_arm x education_level"]
        assert len(cells) == 2 * 5
        assert "SP / university" in set(cells["level"])
        assert cells["n"].sum() == len(data)
        assert diag["sparse"].dtype == bool
        assert (cells["sparse"] == (cells[["events", "nonevents"]].min(axis=1) < 5)).all()
        assert diag["events_per_parameter"].notna().all()


class TestAnalysisBundle:
    """Tests for the full analysis bundle on a synthetic trial."""

    @pytest.mark.slow
    def test_bundle_tables(self, config):
        """Test every analysis output is populated for a healthy cohort."""
        raw = generate_trial_cohort(n_per_arm=300, seed=21, interaction_effect=0.3)
        typed = normalize_cohort(raw, config)
        bundle = run_all_analyses(typed, {**config, **FAST})
        assert int(bundle.lrt["df_diff"].iloc[0]) == 1
        assert set(bundle.model_comparison["model"]) == {
            "logistic_interaction",
            "logistic_main_effects",
            "logistic_subgroup_young",
        }
        assert {"study_arm", "education_level"} <= set(bundle.gvif["term"])
        assert not bundle.predicted_probabilities.empty
        assert bundle.prediction is not None
        assert (bundle.forest_ready["term"] != "Intercept").all()
        assert "any_comorbidity" in set(bundle.table1["variable"])
        assert "study_arm x education_level" in set(bundle.logit_diagnostics["scope"])
        derived_again = derive_variables(typed, config)
        pd.testing.assert_frame_equal(bundle.derived.frame, derived_again.frame)


class TestIntegration:
    """Integration tests for the main entrypoint."""

    @pytest.mark.slow
    def test_main_writes_outputs(self, tmp_path, monkeypatch):
        """Test the full pipeline writes every expected artifact."""
        from iptp_outcomes_pipeline import config as config_module
        from iptp_outcomes_pipeline.main import main

        for key, value in FAST.items():
            monkeypatch.setitem(config_module.CONFIG, key, value)

        csv_path = tmp_path / "export.csv"
        generate_trial_cohort(n_per_arm=200, seed=4, missing_rate=0.02).to_csv(csv_path, index=False)
        result = main(input_path=csv_path, output_dir=tmp_path / "out")

        for file_name in REQUIRED_OUTPUT_FILES:
            assert (tmp_path / "out" / file_name).exists(), file_name
        assert not any(n.startswith("Missing expected output artifact") for n in result.notes)
        report = (tmp_path / "out" / "REPORT.md").read_text(encoding="utf-8")
        assert "Likelihood-ratio test" in report


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
