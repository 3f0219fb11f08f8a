import os
import sys
import tempfile
from pathlib import Path

import numpy as np

from iptp_outcomes_pipeline.synthetic import generate_trial_cohort

np.random.seed(42)

work_dir = Path(tempfile.mkdtemp(prefix="iptp_mock_"))
csv_path = work_dir / "iptp_trial_export.csv"
out_dir = work_dir / "outputs"

cohort = generate_trial_cohort(
    n_per_arm=250,
    seed=42,
    episode_effect=0.35,
    arm_effect=-0.3,
    interaction_effect=0.25,
    missing_rate=0.03,
)

# A handful of messy rows the loader should note but tolerate.
cohort.loc[cohort.index[:3], "education_level"] = ["Primary ", "SECONDARY", "vocational"]
cohort.loc[cohort.index[3], "gravidity"] = 0
cohort.loc[cohort.index[4], "malaria_infection_rate_pregnancy"] = 1.7
cohort.loc[cohort.index[5], "enrollment_date"] = "not recorded"
cohort.to_csv(csv_path, index=False)

os.environ["IPTP_INPUT_CSV"] = str(csv_path)
os.environ["IPTP_OUTPUT_DIR"] = str(out_dir)

from iptp_outcomes_pipeline.main import main

result = main(input_path=csv_path, output_dir=out_dir)
missing = [n for n in result.notes if n.startswith("Missing expected output artifact")]
if missing:
    print("\n".join(missing))
    sys.exit(1)

print(f"Outputs in {result.output_dir}")
print("MOCK_RUN_SUCCESS")
