"""Baseline / outcome summary tables stratified by study arm."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from scipy import stats

OVERALL_LABEL = "Overall"

CONTINUOUS_TESTS = ("parametric", "nonparametric")
CATEGORICAL_TESTS = ("chi2", "fisher", "auto")


def _level_label(x: object) -> str:
    if isinstance(x, (float, np.floating)) and float(x).is_integer():
        return str(int(x))
    return str(x)


def _variable_levels(series: pd.Series) -> list[object]:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return sorted(series.dropna().unique().tolist())


def round_percentages(counts: np.ndarray | list[int], decimals: int = 1) -> np.ndarray:
    """Largest-remainder rounding so rounded percentages sum to exactly 100."""
    counts = np.asarray(counts, dtype=float)
    total = counts.sum()
    if total <= 0:
        return np.full(len(counts), np.nan)
    scale = 10**decimals
    raw = counts / total * 100.0 * scale
    floored = np.floor(raw + 1e-9)
    shortfall = int(round(100.0 * scale - floored.sum()))
    if shortfall > 0:
        order = np.argsort(-(raw - floored), kind="stable")
        floored[order[:shortfall]] += 1
    return floored / scale


def _strata_groups(df: pd.DataFrame, strata: str, include_overall: bool) -> list[tuple[str, pd.DataFrame]]:
    groups = [(str(level), g) for level, g in df.groupby(strata, dropna=True, observed=False)]
    if include_overall:
        groups.append((OVERALL_LABEL, df))
    return groups


def build_summary_table(
    df: pd.DataFrame,
    continuous: list[str],
    categorical: list[str],
    strata: str = "study_arm",
    *,
    include_overall: bool = True,
) -> pd.DataFrame:
    """Long-format summary: one row per (stratum, variable, level, stat).

    Missing values are excluded per variable; a ``missing`` row carries the
    excluded count and never enters a percentage denominator.
    """
    scoped = df.loc[df[strata].notna()]
    dropped = int(len(df) - len(scoped))
    if dropped:
        logging.info("Summary table: %s rows without %s excluded", dropped, strata)

    rows: list[dict[str, object]] = []
    for stratum, g in _strata_groups(scoped, strata, include_overall):
        rows.append({"strata_level": stratum, "variable": "N", "level": "overall", "stat": "count", "n": int(len(g)), "value": float(len(g))})
        for var in continuous:
            if var not in g.columns:
                continue
            non_null = pd.to_numeric(g[var], errors="coerce").dropna()
            n = int(non_null.shape[0])
            rows.append({"strata_level": stratum, "variable": var, "level": "mean", "stat": "mean", "n": n, "value": float(non_null.mean()) if n else np.nan})
            rows.append({"strata_level": stratum, "variable": var, "level": "sd", "stat": "sd", "n": n, "value": float(non_null.std(ddof=1)) if n > 1 else np.nan})
            rows.append({"strata_level": stratum, "variable": var, "level": "missing", "stat": "missing", "n": int(len(g) - n), "value": np.nan})
        for var in categorical:
            if var not in g.columns:
                continue
            levels = _variable_levels(scoped[var])
            non_null = g[var].dropna()
            counts = np.array([int((non_null == level).sum()) for level in levels])
            pcts = round_percentages(counts)
            for level, cnt, pct in zip(levels, counts, pcts):
                rows.append({"strata_level": stratum, "variable": var, "level": _level_label(level), "stat": "percent", "n": int(cnt), "value": float(pct)})
            rows.append({"strata_level": stratum, "variable": var, "level": "missing", "stat": "missing", "n": int(len(g) - len(non_null)), "value": np.nan})
    return pd.DataFrame(rows, columns=["strata_level", "variable", "level", "stat", "n", "value"])


def _continuous_p_value(groups: list[pd.Series], test: str) -> tuple[float, str]:
    clean = [pd.to_numeric(g, errors="coerce").dropna() for g in groups]
    clean = [g for g in clean if len(g) > 0]
    if len(clean) < 2 or any(len(g) < 2 for g in clean):
        return np.nan, "-"
    if test == "parametric":
        if len(clean) == 2:
            return float(stats.ttest_ind(clean[0], clean[1]).pvalue), "t-test"
        return float(stats.f_oneway(*clean).pvalue), "ANOVA"
    if len(clean) == 2:
        return float(stats.mannwhitneyu(clean[0], clean[1], alternative="two-sided").pvalue), "Mann-Whitney U"
    return float(stats.kruskal(*clean).pvalue), "Kruskal-Wallis"


def _categorical_p_value(df: pd.DataFrame, var: str, strata: str, test: str) -> tuple[float, str]:
    scoped = df.loc[df[var].notna() & df[strata].notna()]
    tab = pd.crosstab(scoped[var], scoped[strata])
    tab = tab.loc[tab.sum(axis=1) > 0, tab.sum(axis=0) > 0]
    if tab.shape[0] < 2 or tab.shape[1] < 2:
        return np.nan, "-"
    _, p_chi2, _, expected = stats.chi2_contingency(tab)
    is_2x2 = tab.shape == (2, 2)
    if is_2x2 and (test == "fisher" or (test == "auto" and float(expected.min()) < 5)):
        _, p_fisher = stats.fisher_exact(tab.to_numpy())
        return float(p_fisher), "Fisher's exact"
    return float(p_chi2), "Chi-square"


def summary_p_values(
    df: pd.DataFrame,
    continuous: list[str],
    categorical: list[str],
    strata: str = "study_arm",
    *,
    continuous_test: str | None = "parametric",
    categorical_test: str | None = "auto",
) -> pd.DataFrame:
    """Omnibus p-value per variable comparing strata (complete cases per variable)."""
    if continuous_test is not None and continuous_test not in CONTINUOUS_TESTS:
        raise ValueError(f"continuous_test must be one of {CONTINUOUS_TESTS} or None; got {continuous_test!r}")
    if categorical_test is not None and categorical_test not in CATEGORICAL_TESTS:
        raise ValueError(f"categorical_test must be one of {CATEGORICAL_TESTS} or None; got {categorical_test!r}")

    rows: list[dict[str, object]] = []
    scoped = df.loc[df[strata].notna()]
    if continuous_test is not None:
        for var in continuous:
            if var not in scoped.columns:
                continue
            groups = [g[var] for _, g in scoped.groupby(strata, observed=True)]
            p, name = _continuous_p_value(groups, continuous_test)
            rows.append({"variable": var, "test": name, "p_value": p})
    if categorical_test is not None:
        for var in categorical:
            if var not in scoped.columns:
                continue
            p, name = _categorical_p_value(scoped, var, strata, categorical_test)
            rows.append({"variable": var, "test": name, "p_value": p})
    return pd.DataFrame(rows, columns=["variable", "test", "p_value"])


def _fmt_p(p: object) -> str:
    if p is None or pd.isna(p):
        return ""
    if float(p) < 0.001:
        return "<0.001"
    return f"{float(p):.3f}"


def format_summary_table(long_table: pd.DataFrame, p_values: pd.DataFrame | None = None) -> pd.DataFrame:
    """Render the long summary into label + one display column per stratum."""
    if long_table.empty:
        return pd.DataFrame(columns=["label"])
    strata_order = list(dict.fromkeys(long_table["strata_level"].tolist()))
    p_lookup: dict[str, tuple[object, str]] = {}
    if p_values is not None and not p_values.empty:
        p_lookup = {row["variable"]: (row["p_value"], row["test"]) for _, row in p_values.iterrows()}

    indexed = long_table.set_index(["variable", "level", "stat", "strata_level"]).sort_index()
    rows: list[dict[str, object]] = []

    def _cell(var: str, level: str, stat: str, stratum: str) -> pd.Series | None:
        key = (var, level, stat, stratum)
        return indexed.loc[key] if key in indexed.index else None

    n_row: dict[str, object] = {"label": "N"}
    for s in strata_order:
        cell = _cell("N", "overall", "count", s)
        n_row[s] = str(int(cell["n"])) if cell is not None else ""
    rows.append(n_row)

    for var in dict.fromkeys(long_table.loc[long_table["variable"] != "N", "variable"].tolist()):
        block = long_table.loc[long_table["variable"] == var]
        p, test = p_lookup.get(var, (np.nan, ""))
        if "mean" in set(block["stat"]):
            row: dict[str, object] = {"label": f"{var}, mean (SD)", "p_value": _fmt_p(p), "test": test}
            for s in strata_order:
                mean = _cell(var, "mean", "mean", s)
                sd = _cell(var, "sd", "sd", s)
                if mean is None or pd.isna(mean["value"]):
                    row[s] = ""
                else:
                    sd_txt = f"{sd['value']:.2f}" if sd is not None and pd.notna(sd["value"]) else "NA"
                    row[s] = f"{mean['value']:.2f} ({sd_txt})"
            rows.append(row)
        else:
            rows.append({"label": f"{var}, n (%)", "p_value": _fmt_p(p), "test": test, **{s: "" for s in strata_order}})
            for level in dict.fromkeys(block.loc[block["stat"] == "percent", "level"].tolist()):
                row = {"label": f"  {level}"}
                for s in strata_order:
                    cell = _cell(var, level, "percent", s)
                    if cell is None or pd.isna(cell["value"]):
                        row[s] = f"{int(cell['n'])} (NA)" if cell is not None else ""
                    else:
                        row[s] = f"{int(cell['n'])} ({cell['value']:.1f}%)"
                rows.append(row)
        miss_row: dict[str, object] = {"label": "  Missing"}
        any_missing = False
        for s in strata_order:
            cell = _cell(var, "missing", "missing", s)
            n_missing = int(cell["n"]) if cell is not None else 0
            any_missing = any_missing or n_missing > 0
            miss_row[s] = str(n_missing)
        if any_missing:
            rows.append(miss_row)

    out = pd.DataFrame(rows)
    ordered = ["label", *strata_order, "p_value", "test"]
    return out.reindex(columns=ordered).fillna("")
