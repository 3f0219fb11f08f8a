"""Report generation for the IPTp birth-outcome pipeline outputs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd


def _fmt_num(x: object, digits: int = 3) -> str:
    if x is None or pd.isna(x):
        return "NA"
    return f"{float(x):.{digits}f}"


def _fmt_p(x: object) -> str:
    if x is None or pd.isna(x):
        return "NA"
    return "<0.001" if float(x) < 0.001 else f"{float(x):.3f}"


def _interaction_lines(logistic_interaction: pd.DataFrame) -> list[str]:
    if logistic_interaction.empty or "term" not in logistic_interaction.columns:
        return ["- Interaction model not estimated."]
    rows = logistic_interaction.loc[logistic_interaction["term"].astype(str).str.contains(":")]
    if rows.empty:
        return ["- No interaction terms in fitted model."]
    return [
        f"- `{row['term']}`: OR {_fmt_num(row['odds_ratio'], 2)} "
        f"(95% CI {_fmt_num(row['ci_low'], 2)}-{_fmt_num(row['ci_high'], 2)}), p={_fmt_p(row['p_value'])}"
        for _, row in rows.iterrows()
    ]


def write_report(
    *,
    output_dir: Path,
    change_log: list[str],
    assumptions: list[str],
    cohort_summary: pd.DataFrame,
    logistic_interaction: pd.DataFrame,
    lrt: pd.DataFrame,
    prediction_auc: pd.DataFrame,
    generated_files: list[str],
    notes: list[str],
) -> Path:
    report_path = output_dir / "REPORT.md"

    lines: list[str] = []
    lines.append("# REPORT: IPTp regimen, malaria burden, and adverse birth outcomes")
    lines.append("")

    lines.append("## Change Log")
    for entry in change_log:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Assumptions")
    for entry in assumptions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Cohort")
    if cohort_summary.empty:
        lines.append("- Cohort summary unavailable.")
    else:
        for _, row in cohort_summary.iterrows():
            lines.append(f"- {row.get('step', 'step')}: {row.get('n', 'NA')}")
    lines.append("")

    lines.append("## Malaria episodes x study arm")
    lines.extend(_interaction_lines(logistic_interaction))
    if not lrt.empty and "p_value" in lrt.columns:
        row = lrt.iloc[0]
        lines.append(
            f"- Likelihood-ratio test vs main-effects model: deviance diff {_fmt_num(row['deviance_diff'])}, "
            f"df {int(row['df_diff'])}, p={_fmt_p(row['p_value'])}"
        )
    else:
        lines.append("- Likelihood-ratio test not available.")
    lines.append("")

    lines.append("## Exploratory prediction (test partition)")
    if prediction_auc.empty or "auc" not in prediction_auc.columns:
        lines.append("- Prediction comparison not available.")
    else:
        for _, row in prediction_auc.iterrows():
            if pd.notna(row.get("auc")):
                lines.append(f"- {row['model']}: AUC {_fmt_num(row['auc'])}, Brier {_fmt_num(row.get('brier'))}")
            else:
                lines.append(f"- {row['model']}: failed ({row.get('error', 'unknown error')})")
    lines.append("")

    lines.append("## Generated Artifacts")
    for fp in sorted(generated_files):
        lines.append(f"- `{fp}`")
    lines.append("")

    lines.append("## Notes")
    if not notes:
        lines.append("- None.")
    else:
        for note in notes:
            lines.append(f"- {note}")
    lines.append("")

    lines.append("## Interpretation Guardrails")
    lines.append("- The '1' bucket of the malaria-episode and preterm-birth categories includes zero counts.")
    lines.append("- Odds-ratio intervals are Wald intervals; small-sample profile intervals may differ.")
    lines.append("- Tree-ensemble comparisons are exploratory and do not replace the regression analyses.")

    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path
