"""Main entrypoint for the IPTp birth-outcome pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from .analysis import AnalysisBundle, run_all_analyses
from .cohort import CohortData, load_cohort_data
from .config import ASSUMPTIONS, CHANGE_LOG, CONFIG, REQUIRED_OUTPUT_FILES, ensure_output_dir, validate_config
from .reporting import write_report


@dataclass
class PipelineRunResult:
    output_dir: Path
    generated_files: list[str]
    cohort_data: CohortData
    analyses: AnalysisBundle
    notes: list[str]


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _print_df(label: str, df: pd.DataFrame, max_rows: int = 30) -> None:
    print(f"\n===== {label} =====")
    if df.empty:
        print("[empty]")
        return
    if len(df) > max_rows:
        print(df.head(max_rows).to_string(index=False))
        print(f"... ({len(df)} rows total)")
    else:
        print(df.to_string(index=False))


def _save_table(
    *,
    file_name: str,
    df: pd.DataFrame,
    output_dir: Path,
    index: bool = False,
    print_tables: bool = False,
    print_max_rows: int = 30,
) -> Path:
    out_path = output_dir / file_name
    df.to_csv(out_path, index=index)
    logging.info("Saved %s (%s rows)", file_name, len(df))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not df.empty:
        logging.debug("%s preview:\n%s", file_name, df.head(20).to_string(index=False))
    if print_tables:
        _print_df(file_name, df, max_rows=print_max_rows)
    return out_path


def _verify_outputs(output_dir: Path, notes: list[str]) -> None:
    for file_name in REQUIRED_OUTPUT_FILES:
        if file_name == "REPORT.md":
            continue
        if not (output_dir / file_name).exists():
            notes.append(f"Missing expected output artifact: {file_name}")


def _cohort_summary(cohort_data: CohortData, analyses: AnalysisBundle) -> pd.DataFrame:
    frame = analyses.derived.frame
    rows = [
        {"step": "Rows loaded", "n": int(len(cohort_data.raw_df))},
        {"step": "Rows with determinable adverse_birth_outcome", "n": int(frame["adverse_birth_outcome"].notna().sum())},
        {"step": "Adverse birth outcomes", "n": int(frame["adverse_birth_outcome"].sum())},
    ]
    for arm, g in frame.groupby("study_arm", observed=True):
        rows.append({"step": f"Study arm {arm}", "n": int(len(g))})
    if not analyses.model_comparison.empty:
        for _, row in analyses.model_comparison.iterrows():
            rows.append({"step": f"Complete cases in {row['model']}", "n": int(row["n"])})
    return pd.DataFrame(rows)


def main(input_path: str | Path | None = None, output_dir: str | Path | None = None) -> PipelineRunResult:
    _configure_logging()
    config = dict(CONFIG)
    if input_path is not None:
        config["input_path"] = str(input_path)
    if output_dir is not None:
        config["output_dir"] = str(output_dir)
    validate_config(config)

    out_dir = ensure_output_dir(config)
    print_tables = bool(config.get("print_tables", False))
    print_max_rows = int(config.get("print_table_max_rows", 30))

    logging.info("Starting IPTp birth-outcome pipeline. input=%s", config["input_path"])
    logging.info("Output directory: %s", out_dir)

    cohort_data = load_cohort_data(config["input_path"], config)
    analyses = run_all_analyses(cohort_data.raw_df, config, notes=cohort_data.load_notes)

    generated_files: list[str] = []
    output_map: list[tuple[str, pd.DataFrame]] = [
        ("derived_dataset.csv", analyses.derived.frame),
        ("derived_missingness.csv", analyses.derived.missingness),
        ("table1_baseline_by_arm.csv", analyses.table1),
        ("table1_formatted.csv", analyses.table1_formatted),
        ("outcome_components_by_arm.csv", analyses.outcome_components),
        ("logistic_interaction.csv", analyses.logistic_interaction),
        ("logistic_main_effects.csv", analyses.logistic_main),
        ("logistic_subgroup_young.csv", analyses.logistic_subgroup),
        ("likelihood_ratio_test.csv", analyses.lrt),
        ("model_comparison.csv", analyses.model_comparison),
        ("gvif.csv", analyses.gvif),
        ("logit_model_diagnostics.csv", analyses.logit_diagnostics),
        ("predicted_probabilities.csv", analyses.predicted_probabilities),
        ("forest_plot_ready.csv", analyses.forest_ready),
    ]
    prediction = analyses.prediction
    if prediction is not None:
        output_map.extend(
            [
                ("prediction_auc.csv", prediction.auc),
                ("roc_curves.csv", prediction.roc),
                ("calibration.csv", prediction.calibration),
                ("gbm_grid_search.csv", prediction.grid_search),
                ("feature_importance.csv", prediction.feature_importance),
                ("prediction_split_summary.csv", prediction.split_summary),
            ]
        )

    for file_name, df in output_map:
        path = _save_table(
            file_name=file_name,
            df=df,
            output_dir=out_dir,
            print_tables=print_tables,
            print_max_rows=print_max_rows,
        )
        generated_files.append(path.name)

    notes = list(analyses.notes)
    _verify_outputs(out_dir, notes)

    report_path = write_report(
        output_dir=out_dir,
        change_log=CHANGE_LOG,
        assumptions=ASSUMPTIONS,
        cohort_summary=_cohort_summary(cohort_data, analyses),
        logistic_interaction=analyses.logistic_interaction,
        lrt=analyses.lrt,
        prediction_auc=prediction.auc if prediction is not None else pd.DataFrame(),
        generated_files=generated_files,
        notes=notes,
    )
    generated_files.append(report_path.name)

    logging.info("Pipeline complete. Generated files:")
    for fp in sorted(generated_files):
        logging.info("- %s", fp)

    return PipelineRunResult(
        output_dir=out_dir,
        generated_files=sorted(generated_files),
        cohort_data=cohort_data,
        analyses=analyses,
        notes=notes,
    )


def cli() -> None:
    main()


if __name__ == "__main__":
    cli()
