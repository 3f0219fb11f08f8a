"""Binomial logistic regression, model comparison, and GVIF diagnostics."""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError, PerfectSeparationWarning

from .errors import ModelFitError

COEFFICIENT_COLUMNS = ["model", "term", "coef", "odds_ratio", "std_error", "statistic", "p_value", "ci_low", "ci_high"]

_LEVEL_SUFFIX = re.compile(r"\[[^\]]*\]")


def term_of_column(column: str) -> str:
    """Strip patsy level suffixes: ``x:study_arm[T.B]`` -> ``x:study_arm``."""
    return _LEVEL_SUFFIX.sub("", column)


def _is_categorical(series: pd.Series) -> bool:
    return isinstance(series.dtype, pd.CategoricalDtype) or series.dtype == object or pd.api.types.is_string_dtype(series)


@dataclass(frozen=True, eq=False)
class LogitModel:
    label: str
    formula: str
    outcome: str
    predictors: tuple[str, ...]
    n: int
    n_excluded: int
    events: int
    coefficients: pd.DataFrame
    deviance: float
    log_likelihood: float
    n_parameters: int
    aic: float
    bic: float
    category_levels: dict[str, list[str]]
    typical_values: dict[str, object]
    notes: tuple[str, ...] = ()
    _result: object = field(default=None, repr=False, compare=False)
    _frame: pd.DataFrame = field(default=None, repr=False, compare=False)

    def _prepare(self, frame: pd.DataFrame) -> pd.DataFrame:
        missing = [c for c in self.predictors if c not in frame.columns]
        if missing:
            raise KeyError(f"{self.label}: prediction frame lacks {', '.join(missing)}")
        x = frame[list(self.predictors)].copy()
        if bool(x.isna().any().any()):
            raise ValueError(f"{self.label}: prediction frame has missing predictor values")
        for col in self.predictors:
            if col in self.category_levels:
                levels = self.category_levels[col]
                values = x[col].astype(str)
                unseen = sorted(set(values) - set(levels))
                if unseen:
                    raise ValueError(f"{self.label}: {col} levels not seen in fitting data: {', '.join(unseen)}")
                x[col] = pd.Categorical(values, categories=levels)
            else:
                x[col] = pd.to_numeric(x[col], errors="coerce").astype(float)
        return x

    def predict_proba(self, frame: pd.DataFrame) -> np.ndarray:
        """Predicted P(outcome = 1) for each row of ``frame``."""
        return np.asarray(self._result.predict(self._prepare(frame)), dtype=float)

    def predict_with_ci(self, frame: pd.DataFrame, alpha: float = 0.05) -> pd.DataFrame:
        summary = self._result.get_prediction(self._prepare(frame)).summary_frame(alpha=alpha)
        return pd.DataFrame(
            {
                "predicted_probability": np.asarray(summary["mean"], dtype=float),
                "ci_low": np.asarray(summary["mean_ci_lower"], dtype=float),
                "ci_high": np.asarray(summary["mean_ci_upper"], dtype=float),
            },
            index=frame.index,
        )

    def design_frame(self) -> pd.DataFrame:
        """Model matrix of the fitted rows, including the intercept column."""
        model = self._result.model
        return pd.DataFrame(np.asarray(model.exog), columns=list(model.exog_names), index=self._frame.index)

    def term_columns(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for col in self.design_frame().columns:
            if col == "Intercept":
                continue
            out.setdefault(term_of_column(col), []).append(col)
        return out

    def fitted_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def gvif(self, basis: str = "coefficients") -> pd.DataFrame:
        """GVIF per term.

        ``basis="coefficients"`` uses the correlation of the coefficient
        estimates (as car::vif does for GLMs); ``basis="design"`` uses the
        correlation of the model-matrix columns.
        """
        terms = self.term_columns()
        if basis == "coefficients":
            cov = pd.DataFrame(self._result.cov_params())
            keep = [c for c in cov.columns if c != "Intercept"]
            corr = coefficient_correlation(cov.loc[keep, keep])
        elif basis == "design":
            design = self.design_frame().drop(columns=["Intercept"], errors="ignore")
            corr = design_correlation(design)
        else:
            raise ValueError(f"basis must be 'coefficients' or 'design'; got {basis!r}")
        out = compute_gvif(corr, terms)
        out.insert(0, "model", self.label)
        out["basis"] = basis
        return out


def design_correlation(design: pd.DataFrame) -> pd.DataFrame:
    constant = [c for c in design.columns if float(design[c].std(ddof=0)) == 0.0]
    if constant:
        raise ValueError(f"Constant design columns have no correlation: {', '.join(constant)}")
    return design.corr()


def coefficient_correlation(cov: pd.DataFrame) -> pd.DataFrame:
    sd = np.sqrt(np.diag(cov.to_numpy()))
    corr = cov.to_numpy() / np.outer(sd, sd)
    return pd.DataFrame(corr, index=cov.index, columns=cov.columns)


def compute_gvif(corr: pd.DataFrame, term_columns: dict[str, list[str]]) -> pd.DataFrame:
    """Generalized VIF (Fox & Monette 1992) from a predictor correlation matrix.

    GVIF_j = det(R_jj) * det(R_-j,-j) / det(R); the adjusted value
    GVIF^(1/(2*Df)) is comparable across terms with different Df.
    """
    columns = list(corr.columns)
    r = corr.to_numpy(dtype=float)
    det_all = float(np.linalg.det(r))
    rows: list[dict[str, object]] = []
    for term, cols in term_columns.items():
        idx = [columns.index(c) for c in cols]
        others = [i for i in range(len(columns)) if i not in idx]
        if not others:
            gvif = 1.0
        else:
            det_term = float(np.linalg.det(r[np.ix_(idx, idx)]))
            det_other = float(np.linalg.det(r[np.ix_(others, others)]))
            gvif = det_term * det_other / det_all if det_all > 0 else np.inf
        df_term = len(cols)
        rows.append(
            {
                "term": term,
                "gvif": gvif,
                "df": df_term,
                "gvif_adjusted": gvif ** (1.0 / (2.0 * df_term)),
            }
        )
    return pd.DataFrame(rows, columns=["term", "gvif", "df", "gvif_adjusted"])


def _aliased_columns(exog: np.ndarray, names: list[str]) -> list[str]:
    kept: list[int] = []
    aliased: list[str] = []
    for j in range(exog.shape[1]):
        candidate = exog[:, [*kept, j]]
        if np.linalg.matrix_rank(candidate) > len(kept):
            kept.append(j)
        else:
            aliased.append(names[j])
    return aliased


def _unstable_columns(result, config: dict) -> list[str]:
    se_threshold = float(config.get("unstable_se_threshold", 50.0))
    coef_threshold = float(config.get("unstable_coef_threshold", 15.0))
    params = pd.Series(result.params)
    bse = pd.Series(result.bse)
    flagged = (
        ~np.isfinite(params.to_numpy())
        | ~np.isfinite(bse.to_numpy())
        | (params.abs().to_numpy() > coef_threshold)
        | (bse.to_numpy() > se_threshold)
    )
    return [str(name) for name, flag in zip(params.index, flagged) if flag]


def _splits_outcome(x: pd.Series, y: pd.Series) -> bool:
    """True when a single cutpoint on ``x`` (ties allowed) separates the outcome classes."""
    pos, neg = x[y == 1], x[y == 0]
    if pos.empty or neg.empty or x.nunique() < 2:
        return False
    return bool(pos.min() >= neg.max() or neg.min() >= pos.max())


def _separating_columns(
    frame: pd.DataFrame,
    outcome: str,
    predictors: list[str],
    category_levels: dict[str, list[str]],
    interaction: tuple[str, str] | None,
) -> list[str]:
    """Design columns whose observed values alone separate the outcome.

    Numeric predictors are checked for a separating cutpoint, non-reference
    levels for a single outcome class, and a numeric x categorical
    interaction for a cutpoint inside each non-reference level.
    """
    y = frame[outcome]
    flagged: list[str] = []
    for col in predictors:
        if col in category_levels:
            for level in category_levels[col][1:]:
                within = y[frame[col] == level]
                if len(within) and within.nunique() == 1:
                    flagged.append(f"{col}[T.{level}]")
        elif _splits_outcome(frame[col], y):
            flagged.append(col)

    if interaction is not None:
        a, b = interaction
        if (a in category_levels) != (b in category_levels):
            num, cat = (b, a) if a in category_levels else (a, b)
            if num not in flagged:
                for level in category_levels[cat][1:]:
                    mask = frame[cat] == level
                    if _splits_outcome(frame.loc[mask, num], y[mask]):
                        name = f"{a}:{b}[T.{level}]" if num == a else f"{a}[T.{level}]:{b}"
                        flagged.append(name)
    return flagged


def _coefficient_table(result, label: str, wald_z: float) -> pd.DataFrame:
    params = pd.Series(result.params)
    bse = pd.Series(result.bse)
    # Exploding estimates give infinite odds ratios and bounds; these rows are
    # already listed in the unstable-estimates note.
    with np.errstate(over="ignore"):
        odds_ratio = np.exp(params.values)
        ci_low = np.exp(params.values - wald_z * bse.values)
        ci_high = np.exp(params.values + wald_z * bse.values)
    return pd.DataFrame(
        {
            "model": label,
            "term": params.index,
            "coef": params.values,
            "odds_ratio": odds_ratio,
            "std_error": bse.values,
            "statistic": pd.Series(result.tvalues).values,
            "p_value": pd.Series(result.pvalues).values,
            "ci_low": ci_low,
            "ci_high": ci_high,
        },
        columns=COEFFICIENT_COLUMNS,
    )


def _model_frame(
    data: pd.DataFrame,
    outcome: str,
    predictors: list[str],
    *,
    label: str,
    config: dict,
    notes: list[str],
) -> tuple[pd.DataFrame, dict[str, list[str]]]:
    absent = [c for c in [outcome, *predictors] if c not in data.columns]
    if absent:
        raise ModelFitError(label, "columns absent from data", absent)
    frame = data[[outcome, *predictors]].dropna().copy()
    if frame.empty:
        raise ModelFitError(label, "no complete cases for model variables", predictors)

    y = pd.to_numeric(frame[outcome], errors="coerce")
    if not set(y.unique()).issubset({0.0, 1.0}):
        raise ModelFitError(label, f"outcome {outcome} is not coded 0/1", [outcome])
    if y.nunique() < 2:
        raise ModelFitError(label, f"outcome {outcome} has a single observed class", [outcome])
    frame[outcome] = y.astype(float)

    references = config.get("reference_levels", {})
    category_levels: dict[str, list[str]] = {}
    for col in predictors:
        if not _is_categorical(frame[col]):
            frame[col] = pd.to_numeric(frame[col], errors="coerce").astype(float)
            continue
        series = frame[col]
        declared = [str(x) for x in series.cat.categories] if isinstance(series.dtype, pd.CategoricalDtype) else []
        values = series.astype(str)
        observed = [lvl for lvl in declared if lvl in set(values)] or sorted(values.unique())
        unused = [lvl for lvl in declared if lvl not in observed]
        if unused:
            msg = f"{label}: {col} levels with no complete-case observations removed: {', '.join(unused)}"
            logging.warning(msg)
            notes.append(msg)
        if len(observed) < 2:
            raise ModelFitError(label, f"{col} has a single observed level ({', '.join(observed)})", [col])
        ref = str(references.get(col, observed[0]))
        if ref not in observed:
            msg = f"{label}: reference level {ref!r} for {col} not observed; using {observed[0]!r}"
            logging.warning(msg)
            notes.append(msg)
            ref = observed[0]
        levels = [ref, *[lvl for lvl in observed if lvl != ref]]
        frame[col] = pd.Categorical(values, categories=levels)
        category_levels[col] = levels
    return frame, category_levels


def build_formula(outcome: str, predictors: list[str], interaction: tuple[str, str] | None = None) -> str:
    if interaction is None:
        return f"{outcome} ~ " + " + ".join(predictors)
    a, b = interaction
    rest = [p for p in predictors if p not in (a, b)]
    return f"{outcome} ~ " + " + ".join([f"{a} * {b}", *rest])


def fit_logistic(
    data: pd.DataFrame,
    outcome: str,
    predictors: list[str],
    interaction: tuple[str, str] | None = None,
    *,
    label: str,
    config: dict | None = None,
) -> LogitModel:
    """Fit a binomial GLM with logit link on the complete cases of the model variables.

    Raises ModelFitError naming the offending term(s) when the design matrix
    is rank-deficient, the outcome has one class, or estimation separates /
    fails to converge.
    """
    cfg = config or {}
    notes: list[str] = []
    predictors = list(predictors)
    if interaction is not None:
        for var in interaction:
            if var not in predictors:
                predictors.append(var)

    frame, category_levels = _model_frame(data, outcome, predictors, label=label, config=cfg, notes=notes)
    n_excluded = int(len(data) - len(frame))
    formula = build_formula(outcome, predictors, interaction)

    model = smf.glm(formula=formula, data=frame, family=sm.families.Binomial())
    exog = np.asarray(model.exog, dtype=float)
    names = list(model.exog_names)
    if np.linalg.matrix_rank(exog) < exog.shape[1]:
        aliased = _aliased_columns(exog, names)
        raise ModelFitError(
            label,
            "rank-deficient design matrix; coefficients not estimable",
            [f"{term_of_column(c)} ({c})" for c in aliased],
        )

    maxiter = int(cfg.get("logit_maxiter", 100))
    try:
        with warnings.catch_warnings():
            warnings.filterwarnings("error", category=PerfectSeparationWarning)
            warnings.filterwarnings("error", category=ConvergenceWarning)
            result = model.fit(maxiter=maxiter)
        if not bool(getattr(result, "converged", True)):
            raise ConvergenceWarning("IRLS did not converge")
    except (PerfectSeparationError, PerfectSeparationWarning, ConvergenceWarning, np.linalg.LinAlgError) as exc:
        offending = _separating_columns(frame, outcome, predictors, category_levels, interaction)
        if not offending:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                try:
                    offending = [c for c in _unstable_columns(model.fit(maxiter=maxiter), cfg) if c != "Intercept"]
                except (np.linalg.LinAlgError, ValueError, OverflowError):
                    offending = []
        raise ModelFitError(label, f"estimation failed ({exc})", offending) from exc

    unstable = _unstable_columns(result, cfg)
    non_finite = [c for c in unstable if not np.isfinite(float(result.bse[c]))]
    if non_finite:
        raise ModelFitError(label, "non-finite standard errors", non_finite)
    if unstable:
        msg = (
            f"{label}: unstable estimates (large coefficient or SE; odds-ratio bounds may be infinite) "
            f"for {', '.join(unstable)}"
        )
        logging.warning(msg)
        notes.append(msg)

    typical: dict[str, object] = {}
    for col in predictors:
        typical[col] = category_levels[col][0] if col in category_levels else float(frame[col].mean())

    wald_z = float(cfg.get("wald_z", 1.96))
    n = int(len(frame))
    events = int(frame[outcome].sum())
    logging.info("%s: fitted n=%s events=%s excluded=%s deviance=%.3f", label, n, events, n_excluded, result.deviance)
    return LogitModel(
        label=label,
        formula=formula,
        outcome=outcome,
        predictors=tuple(predictors),
        n=n,
        n_excluded=n_excluded,
        events=events,
        coefficients=_coefficient_table(result, label, wald_z),
        deviance=float(result.deviance),
        log_likelihood=float(result.llf),
        n_parameters=int(len(result.params)),
        aic=float(result.aic),
        bic=float(result.bic_llf),
        category_levels=category_levels,
        typical_values=typical,
        notes=tuple(notes),
        _result=result,
        _frame=frame,
    )


def likelihood_ratio_test(full: LogitModel, reduced: LogitModel) -> pd.DataFrame:
    """Deviance-difference chi-square test of ``full`` against nested ``reduced``."""
    if full.n != reduced.n:
        raise ValueError(
            f"LRT requires models fit on the same rows: {full.label} n={full.n}, {reduced.label} n={reduced.n}"
        )
    df_diff = full.n_parameters - reduced.n_parameters
    if df_diff <= 0:
        raise ValueError(f"{full.label} must have more parameters than {reduced.label} (df difference {df_diff})")
    deviance_diff = reduced.deviance - full.deviance
    p_value = float(stats.chi2.sf(deviance_diff, df_diff))
    return pd.DataFrame(
        [
            {
                "model_full": full.label,
                "model_reduced": reduced.label,
                "n": full.n,
                "deviance_full": full.deviance,
                "deviance_reduced": reduced.deviance,
                "deviance_diff": deviance_diff,
                "df_diff": df_diff,
                "p_value": p_value,
            }
        ]
    )


def compare_models(models: list[LogitModel]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "model": m.label,
                "formula": m.formula,
                "n": m.n,
                "n_excluded": m.n_excluded,
                "events": m.events,
                "n_parameters": m.n_parameters,
                "deviance": m.deviance,
                "log_likelihood": m.log_likelihood,
                "aic": m.aic,
                "bic": m.bic,
            }
            for m in models
        ]
    )


def _covariate_grid(model: LogitModel, covariate: str, n_points: int) -> list[object]:
    if covariate in model.category_levels:
        return list(model.category_levels[covariate])
    values = model.fitted_frame()[covariate]
    lo, hi = float(values.min()), float(values.max())
    is_integer = bool((values % 1 == 0).all())
    if is_integer and (hi - lo + 1) <= n_points:
        return [float(v) for v in np.arange(lo, hi + 1)]
    return [float(v) for v in np.linspace(lo, hi, n_points)]


def predicted_probability_series(
    model: LogitModel,
    covariate: str,
    by: str | None = None,
    grid: list[object] | None = None,
    *,
    n_points: int = 25,
) -> pd.DataFrame:
    """Predicted probabilities across ``covariate`` per level of ``by``.

    Remaining predictors are held at their fitted-sample mean (numeric) or
    reference level (categorical).
    """
    if covariate not in model.predictors:
        raise KeyError(f"{model.label}: {covariate} is not a model predictor")
    if by is not None and by not in model.category_levels:
        raise KeyError(f"{model.label}: {by} is not a categorical model predictor")

    values = grid if grid is not None else _covariate_grid(model, covariate, n_points)
    by_levels = model.category_levels[by] if by is not None else [None]

    rows: list[dict[str, object]] = []
    for level in by_levels:
        for value in values:
            row = dict(model.typical_values)
            row[covariate] = value
            if by is not None:
                row[by] = level
            rows.append(row)
    grid_frame = pd.DataFrame(rows)
    preds = model.predict_with_ci(grid_frame)

    out = pd.DataFrame(
        {
            "model": model.label,
            "covariate": covariate,
            "covariate_value": grid_frame[covariate].astype(str) if covariate in model.category_levels else grid_frame[covariate],
            "by": by or "",
            "by_level": grid_frame[by].astype(str) if by is not None else "",
        }
    )
    return pd.concat([out, preds], axis=1)
