"""Synthetic IPTp trial cohorts with planted effects, for mock runs and tests."""

from __future__ import annotations

import numpy as np
import pandas as pd

EDUCATION_LEVELS = ["none", "primary", "secondary", "tertiary", "university"]
PLACENTAL_LEVELS = ["no infection", "acute", "chronic", "past"]


def generate_trial_cohort(
    n_per_arm: int = 200,
    *,
    seed: int = 42,
    arms: tuple[str, str] = ("SP", "DP"),
    intercept: float = -1.2,
    episode_effect: float = 0.35,
    arm_effect: float = 0.0,
    interaction_effect: float = 0.0,
    gravidity_effect: float = -0.15,
    missing_rate: float = 0.0,
) -> pd.DataFrame:
    """Raw-schema cohort whose composite outcome follows a planted logistic model.

    The second arm carries ``arm_effect`` and ``interaction_effect`` (per
    malaria episode). Each simulated adverse outcome is realized through
    exactly one component: low birth weight, preterm birth, or stillbirth.
    """
    rng = np.random.default_rng(seed)
    n = 2 * n_per_arm
    arm = np.repeat(list(arms), n_per_arm)
    second_arm = (arm == arms[1]).astype(float)

    age = np.round(rng.uniform(16, 40, n), 1)
    gravidity = 1 + rng.poisson(1.5, n)
    parity = np.maximum(gravidity - 1 - rng.binomial(gravidity - 1, 0.1), 0)
    episodes = rng.poisson(2.0, n)
    episodes_pregnancy = rng.binomial(episodes, 0.4)
    education = rng.choice(EDUCATION_LEVELS, size=n, p=[0.1, 0.35, 0.35, 0.1, 0.1])

    linear = (
        intercept
        + episode_effect * episodes
        + arm_effect * second_arm
        + interaction_effect * episodes * second_arm
        + gravidity_effect * (gravidity - 2)
    )
    adverse = rng.random(n) < 1.0 / (1.0 + np.exp(-linear))

    component = rng.choice(["lbw", "preterm", "stillbirth"], size=n, p=[0.5, 0.35, 0.15])
    normal_weight = np.round(np.clip(rng.normal(3.2, 0.35, n), 2.5, 4.6), 2)
    low_weight = np.round(rng.uniform(1.6, 2.45, n), 2)
    birth_weight = np.where(adverse & (component == "lbw"), low_weight, normal_weight)
    preterm = np.where(adverse & (component == "preterm"), rng.choice([1, 2], size=n, p=[0.85, 0.15]), 0)
    stillbirth = np.where(adverse & (component == "stillbirth"), "Yes", "No")

    enrollment = pd.Timestamp("2019-01-07") + pd.to_timedelta(rng.integers(0, 540, n), unit="D")
    withdrawn = rng.random(n) < 0.05

    df = pd.DataFrame(
        {
            "subject_id": [f"IPT{i + 1:04d}" for i in range(n)],
            "enrollment_date": enrollment.strftime("%Y-%m-%d"),
            "withdrawal_date": np.where(
                withdrawn, (enrollment + pd.Timedelta(days=90)).strftime("%Y-%m-%d"), None
            ),
            "child_withdrawal_date": None,
            "study_arm": arm,
            "age_at_enrollment_years": age,
            "gestational_age_at_enrollment_weeks": np.round(rng.uniform(16, 28, n), 1),
            "education_level": education,
            "gravidity": gravidity,
            "parity": parity,
            "hypertension": rng.choice(["Yes", "No"], size=n, p=[0.08, 0.92]),
            "diabetes": rng.choice(["Yes", "No"], size=n, p=[0.03, 0.97]),
            "asthma": rng.choice(["Yes", "No"], size=n, p=[0.05, 0.95]),
            "total_malaria_episodes": episodes,
            "total_malaria_episodes_pregnancy": episodes_pregnancy,
            "malaria_infection_rate_pregnancy": np.round(rng.uniform(0, 0.6, n), 3),
            "placental_malaria": rng.choice(PLACENTAL_LEVELS, size=n, p=[0.6, 0.15, 0.15, 0.1]),
            "birth_weight_kg": birth_weight,
            "stillbirth": stillbirth,
            "preterm_births_count": preterm,
        }
    )

    if missing_rate > 0:
        for col in ["birth_weight_kg", "education_level", "gestational_age_at_enrollment_weeks"]:
            mask = rng.random(n) < missing_rate
            df[col] = df[col].astype(object)
            df.loc[mask, col] = np.nan
    return df
