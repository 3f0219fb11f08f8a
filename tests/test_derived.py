"""
Derived-variable tests: exposure buckets and the composite outcome.

Run with: pytest tests/test_derived.py -v
"""

import numpy as np
import pandas as pd
import pytest

from iptp_outcomes_pipeline.cohort import normalize_cohort
from iptp_outcomes_pipeline.derived import (
    EPISODE_LEVELS,
    GRAVIDITY_LEVELS,
    PARITY_LEVELS,
    adverse_birth_outcome,
    age_group,
    derive_variables,
    episode_category,
    gravidity_category,
    low_birth_weight,
    parity_category,
    preterm_category,
)


class TestBuckets:
    """Tests for the count bucketing functions."""

    def test_episode_zero_and_one_share_bucket(self):
        """Test that 0 and 1 malaria episodes both land in the '1' bucket."""
        assert episode_category(0) == "1"
        assert episode_category(1) == "1"
        assert episode_category(2) == "2–3"
        assert episode_category(3) == "2–3"
        assert episode_category(4) == "≥4"
        assert episode_category(17) == "≥4"

    def test_preterm_zero_and_one_share_bucket(self):
        """Test the preterm bucket merge and the out-of-range count."""
        assert preterm_category(0) == "1"
        assert preterm_category(1) == "1"
        assert preterm_category(2) == "2"
        assert pd.isna(preterm_category(3))

    def test_gravidity_boundaries(self):
        """Test gravidity bins; zero is not a valid gravidity."""
        assert pd.isna(gravidity_category(0))
        assert gravidity_category(1) == "1"
        assert gravidity_category(2) == "2–3"
        assert gravidity_category(3) == "2–3"
        assert gravidity_category(4) == "≥4"

    def test_parity_boundaries(self):
        """Test parity bins."""
        assert parity_category(0) == "0"
        assert parity_category(1) == "1–2"
        assert parity_category(2) == "1–2"
        assert parity_category(3) == "≥3"

    def test_age_group_cutoff(self):
        """Test that the cutoff itself is in the older group."""
        assert age_group(24.9) == "Young"
        assert age_group(25.0) == "Older"
        assert pd.isna(age_group(np.nan))

    def test_missing_inputs_stay_missing(self):
        """Test that every bucket maps a missing count to missing."""
        for fn in (episode_category, preterm_category, gravidity_category, parity_category):
            assert pd.isna(fn(np.nan))

    @pytest.mark.parametrize(
        "fn,levels",
        [(episode_category, EPISODE_LEVELS), (gravidity_category, GRAVIDITY_LEVELS), (parity_category, PARITY_LEVELS)],
    )
    def test_buckets_cover_every_valid_count(self, fn, levels):
        """Test that each valid count maps to exactly one declared level."""
        start = 1 if fn is gravidity_category else 0
        for count in range(start, 30):
            assert fn(count) in levels


class TestCompositeOutcome:
    """Tests for low birth weight and the adverse birth outcome."""

    def test_low_birth_weight_threshold(self):
        """Test that LBW is strictly below 2.5 kg."""
        lbw = low_birth_weight(pd.Series([2.49, 2.5, 3.1, np.nan]))
        assert lbw.iloc[0] == 1.0
        assert lbw.iloc[1] == 0.0
        assert lbw.iloc[2] == 0.0
        assert pd.isna(lbw.iloc[3])

    def test_any_component_sets_outcome(self):
        """Test each component alone produces an adverse outcome."""
        preterm = pd.Series([1.0, 0.0, 0.0, 0.0])
        stillbirth = pd.Series([0.0, 1.0, 0.0, 0.0])
        lbw = pd.Series([0.0, 0.0, 1.0, 0.0])
        out = adverse_birth_outcome(preterm, stillbirth, lbw)
        assert out.tolist() == [1.0, 1.0, 1.0, 0.0]

    def test_missing_component_handling(self):
        """Test three-valued OR: a known positive wins, otherwise missing stays missing."""
        preterm = pd.Series([np.nan, np.nan, 0.0])
        stillbirth = pd.Series([1.0, 0.0, 0.0])
        lbw = pd.Series([0.0, 0.0, np.nan])
        out = adverse_birth_outcome(preterm, stillbirth, lbw)
        assert out.iloc[0] == 1.0
        assert pd.isna(out.iloc[1])
        assert pd.isna(out.iloc[2])

    def test_outcome_iff_any_component(self, derived_cohort):
        """Test the composite equals the OR of its components on determinable rows."""
        frame = derived_cohort.frame
        known = frame["adverse_birth_outcome"].notna()
        component = (
            (frame["preterm_births_count"] > 0)
            | (frame["stillbirth"] == 1)
            | (frame["birth_weight_kg"] < 2.5)
        )
        assert (frame.loc[known, "adverse_birth_outcome"] == component[known].astype(float)).all()

    def test_derivation_is_idempotent(self, raw_cohort, config):
        """Test that deriving twice gives the same derived columns."""
        typed = normalize_cohort(raw_cohort, config)
        once = derive_variables(typed, config).frame
        twice = derive_variables(once, config).frame
        pd.testing.assert_frame_equal(once, twice)


class TestDeriveVariables:
    """Tests for the derived dataset as a whole."""

    def test_input_not_mutated(self, raw_cohort, config):
        """Test that derivation works on a copy."""
        typed = normalize_cohort(raw_cohort, config)
        before = typed.copy()
        derive_variables(typed, config)
        pd.testing.assert_frame_equal(typed, before)

    def test_known_counts(self, twenty_subjects, config):
        """Test the hand-built cohort produces the expected composite counts."""
        derived = derive_variables(normalize_cohort(twenty_subjects, config), config)
        frame = derived.frame
        assert int(frame["adverse_birth_outcome"].notna().sum()) == 19
        assert int(frame["adverse_birth_outcome"].sum()) == 8
        by_arm = frame.groupby("study_arm", observed=True)["adverse_birth_outcome"].sum()
        assert by_arm["SP"] == 5
        assert by_arm["DP"] == 3

    def test_gravidity_zero_noted(self, twenty_subjects, config):
        """Test that gravidity 0 becomes missing and is reported."""
        derived = derive_variables(normalize_cohort(twenty_subjects, config), config)
        assert pd.isna(derived.frame.loc[11, "gravidity_category"])
        assert any("gravidity 0" in note for note in derived.notes)

    def test_missingness_table(self, twenty_subjects, config):
        """Test that missingness counts reflect the undeterminable outcome."""
        derived = derive_variables(normalize_cohort(twenty_subjects, config), config)
        row = derived.missingness.set_index("variable").loc["adverse_birth_outcome"]
        assert row["n_missing"] == 1
        assert row["n_total"] == 20

    def test_complete_cases_unknown_column(self, derived_cohort):
        """Test that complete_cases rejects unknown columns."""
        with pytest.raises(KeyError):
            derived_cohort.complete_cases(["not_a_column"])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
