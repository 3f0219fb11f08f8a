import numpy as np
import pandas as pd
import pytest

from iptp_outcomes_pipeline.cohort import normalize_cohort
from iptp_outcomes_pipeline.config import CONFIG
from iptp_outcomes_pipeline.derived import derive_variables
from iptp_outcomes_pipeline.synthetic import generate_trial_cohort


@pytest.fixture
def config():
    """Copy of the default configuration with a dummy input path."""
    cfg = dict(CONFIG)
    cfg["input_path"] = "unused.csv"
    return cfg


@pytest.fixture
def raw_cohort():
    """Raw-schema synthetic cohort, 150 participants per arm."""
    return generate_trial_cohort(n_per_arm=150, seed=7)


@pytest.fixture
def derived_cohort(raw_cohort, config):
    """Normalized and derived synthetic cohort."""
    return derive_variables(normalize_cohort(raw_cohort, config), config)


@pytest.fixture
def twenty_subjects():
    """Hand-built 20-subject cohort with a known outcome per row.

    Rows 0-4 are adverse in arm SP (LBW, preterm, stillbirth, LBW, preterm);
    rows 10-12 are adverse in arm DP; row 19 has no birth weight and no
    positive component, so its composite outcome is undeterminable.
    """
    n = 20
    df = pd.DataFrame(
        {
            "subject_id": [f"S{i:02d}" for i in range(n)],
            "enrollment_date": ["2020-03-01"] * n,
            "study_arm": ["SP"] * 10 + ["DP"] * 10,
            "age_at_enrollment_years": [19, 22, 24, 27, 31, 20, 23, 29, 35, 26, 18, 21, 30, 33, 24, 25, 28, 22, 36, 27],
            "education_level": ["none", "primary", "secondary", "primary", "tertiary"] * 4,
            "gravidity": [1, 2, 3, 4, 1, 2, 5, 1, 2, 3, 1, 0, 2, 4, 3, 1, 2, 6, 1, 2],
            "parity": [0, 1, 2, 3, 0, 1, 4, 0, 1, 2, 0, 0, 1, 3, 2, 0, 1, 5, 0, 1],
            "total_malaria_episodes": [0, 1, 2, 3, 4, 5, 0, 1, 2, 3, 4, 1, 0, 2, 3, 1, 0, 6, 2, 1],
            "birth_weight_kg": [2.1, 3.0, 3.2, 2.49, 3.1, 2.5, 3.3, 3.4, 2.9, 3.6, 2.2, 3.1, 3.0, 3.2, 3.5, 2.8, 3.1, 3.3, 2.7, np.nan],
            "stillbirth": ["No", "No", "Yes", "No", "No"] + ["No"] * 5 + ["No", "No", "Yes"] + ["No"] * 7,
            "preterm_births_count": [0, 1, 0, 0, 2, 0, 0, 0, 0, 0, 0, 1, 0, 0, 0, 0, 0, 0, 0, 0],
        }
    )
    return df


@pytest.fixture
def planted_twenty():
    """20 subjects where adverse outcomes rise with episodes and are more frequent under SP.

    Both arms share the episode counts 0-4 (two subjects each); SP has five
    adverse outcomes and DP three, all carried by low birth weight.
    """
    episodes = [0, 0, 1, 1, 2, 2, 3, 3, 4, 4]
    adverse = [0, 0, 0, 1, 0, 1, 0, 1, 1, 1] + [0, 0, 0, 0, 0, 1, 0, 0, 1, 1]
    n = 20
    return pd.DataFrame(
        {
            "subject_id": [f"P{i:02d}" for i in range(n)],
            "enrollment_date": ["2021-06-01"] * n,
            "study_arm": ["SP"] * 10 + ["DP"] * 10,
            "age_at_enrollment_years": [21, 24, 26, 19, 30, 28, 23, 33, 25, 27, 22, 29, 20, 31, 26, 24, 35, 18, 27, 23],
            "education_level": ["none", "primary", "secondary", "tertiary"] * 5,
            "gravidity": [1, 2, 3, 1, 4, 2, 1, 3, 2, 5, 2, 1, 3, 4, 1, 2, 3, 1, 2, 4],
            "parity": [0, 1, 2, 0, 3, 1, 0, 2, 1, 4, 1, 0, 2, 3, 0, 1, 2, 0, 1, 3],
            "total_malaria_episodes": episodes * 2,
            "birth_weight_kg": [2.2 if a else 3.1 for a in adverse],
            "stillbirth": ["No"] * n,
            "preterm_births_count": [0] * n,
        }
    )
