"""Linear regression with heteroskedasticity diagnostics and three alternative
standard-error estimates.

The estimators all come from statsmodels; this module fits them on the same
design and lines the results up so they can be compared term by term:

* classical OLS standard errors (assume constant error variance),
* sandwich (heteroskedasticity-consistent, HC0-HC3) standard errors,
* robust regression (M-estimation) standard errors,
* pairs-bootstrap standard errors.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
import seaborn as sns

import statsmodels.api as sm
from statsmodels.stats.diagnostic import het_breuschpagan, het_white

from datasets import clean_numeric_column

SIGNIFICANCE_LEVEL = 0.05
DEFAULT_BOOTSTRAP_REPS = 1000
DEFAULT_COV_TYPE = 'HC3'
HC_COV_TYPES = ('HC0', 'HC1', 'HC2', 'HC3')
ROBUST_NORMS = {
    'huber': sm.robust.norms.HuberT,
    'tukey': sm.robust.norms.TukeyBiweight,
    'hampel': sm.robust.norms.Hampel,
}
COMPARISON_COLUMNS = ['coef', 'classical_se', 'sandwich_se', 'robust_se', 'bootstrap_se']


class RegressionError(Exception):
    pass


@dataclass
class HeteroskedasticityTest:
    name: str
    statistic: float
    p_value: float
    f_statistic: float
    f_p_value: float


def _ensure_list(values: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(values, str): return [values]
    return list(values)


def _design(df: pd.DataFrame, y: str, x: Union[str, Sequence[str]]) -> Tuple[pd.Series, pd.DataFrame]:
    """Return (endog, exog-with-constant) over the complete rows of ``y`` and ``x``."""
    x_cols = _ensure_list(x)
    if not x_cols: raise RegressionError("At least one predictor column is required.")
    missing = [col for col in [y] + x_cols if col not in df.columns]
    if missing: raise RegressionError(f"Column(s) not found: {', '.join(missing)}.")
    data = pd.DataFrame({col: clean_numeric_column(df[col]) for col in dict.fromkeys([y] + x_cols)})
    non_numeric = [col for col in data.columns if not pd.api.types.is_numeric_dtype(data[col].dtype)]
    if non_numeric: raise RegressionError(f"Column(s) are not numeric: {', '.join(non_numeric)}.")
    data = data.dropna().astype(float)
    if len(data) <= len(x_cols) + 1:
        raise RegressionError(f"Need more than {len(x_cols) + 1} complete rows to fit {y} ~ {' + '.join(x_cols)}, found {len(data)}.")
    exog = sm.add_constant(data[x_cols], has_constant='add')
    return data[y], exog


def fit_ols(df: pd.DataFrame, y: str, x: Union[str, Sequence[str]]):
    """Fit ``y`` on ``x`` (plus an intercept, named ``const``) by ordinary least squares."""
    endog, exog = _design(df, y, x)
    return sm.OLS(endog, exog).fit()


def breusch_pagan(results) -> HeteroskedasticityTest:
    """Breusch-Pagan test: do the squared residuals depend linearly on the regressors?"""
    lm, lm_p, f_stat, f_p = het_breuschpagan(results.resid, results.model.exog)
    return HeteroskedasticityTest('Breusch-Pagan', float(lm), float(lm_p), float(f_stat), float(f_p))


def white_test(results) -> HeteroskedasticityTest:
    """White's test, which also picks up squares and cross products of the regressors."""
    lm, lm_p, f_stat, f_p = het_white(results.resid, results.model.exog)
    return HeteroskedasticityTest('White', float(lm), float(lm_p), float(f_stat), float(f_p))


def is_heteroskedastic(test: HeteroskedasticityTest, alpha: float = SIGNIFICANCE_LEVEL) -> bool:
    return test.p_value < alpha


def sandwich_standard_errors(results, cov_type: str = DEFAULT_COV_TYPE) -> pd.Series:
    if cov_type not in HC_COV_TYPES:
        raise RegressionError(f"Unsupported covariance type '{cov_type}'. Choose one of: {', '.join(HC_COV_TYPES)}.")
    return results.model.fit(cov_type=cov_type).bse


def robust_regression_standard_errors(df: pd.DataFrame, y: str, x: Union[str, Sequence[str]],
                                      norm: str = 'huber') -> pd.Series:
    """Standard errors from an M-estimator fit, which downweights large residuals."""
    if norm not in ROBUST_NORMS:
        raise RegressionError(f"Unknown robust norm '{norm}'. Choose one of: {', '.join(ROBUST_NORMS)}.")
    endog, exog = _design(df, y, x)
    return sm.RLM(endog, exog, M=ROBUST_NORMS[norm]()).fit().bse


def bootstrap_standard_errors(df: pd.DataFrame, y: str, x: Union[str, Sequence[str]],
                              n_boot: int = DEFAULT_BOOTSTRAP_REPS, seed: Optional[int] = None) -> pd.Series:
    """Resample rows with replacement, refit each time, and report the spread of the coefficients.

    Draws whose design matrix is rank deficient can't be fitted and are skipped.
    """
    if n_boot < 2: raise RegressionError(f"n_boot must be at least 2, got {n_boot}.")
    endog, exog = _design(df, y, x)
    y_values = endog.to_numpy(); x_values = exog.to_numpy()
    n_obs, n_params = x_values.shape
    rng = np.random.default_rng(seed)
    draws = []
    skipped = 0
    for _ in range(n_boot):
        idx = rng.integers(0, n_obs, size=n_obs)
        x_boot = x_values[idx]
        if np.linalg.matrix_rank(x_boot) < n_params:
            skipped += 1
            continue
        coef, *_ = np.linalg.lstsq(x_boot, y_values[idx], rcond=None)
        draws.append(coef)
    if skipped: print(f"[WARN] Skipped {skipped} of {n_boot} bootstrap draws with a rank-deficient design.")
    if len(draws) < 2: raise RegressionError("Fewer than 2 usable bootstrap draws; the data has too little variation.")
    return pd.Series(np.std(np.asarray(draws), axis=0, ddof=1), index=exog.columns)


def compare_standard_errors(df: pd.DataFrame, y: str, x: Union[str, Sequence[str]], cov_type: str = DEFAULT_COV_TYPE,
                            norm: str = 'huber', n_boot: int = DEFAULT_BOOTSTRAP_REPS,
                            seed: Optional[int] = None) -> pd.DataFrame:
    """One row per term: the OLS coefficient and its four standard-error estimates."""
    results = fit_ols(df, y, x)
    table = pd.DataFrame({
        'coef': results.params,
        'classical_se': results.bse,
        'sandwich_se': sandwich_standard_errors(results, cov_type),
        'robust_se': robust_regression_standard_errors(df, y, x, norm),
        'bootstrap_se': bootstrap_standard_errors(df, y, x, n_boot=n_boot, seed=seed),
    }, columns=COMPARISON_COLUMNS)
    table.index.name = 'term'
    bp = breusch_pagan(results)
    verdict = "non-constant" if is_heteroskedastic(bp) else "no evidence of non-constant"
    print(f"[INFO] {y} ~ {' + '.join(_ensure_list(x))}: Breusch-Pagan p = {bp.p_value:.4f} ({verdict} error variance).")
    return table


def residual_plot(results, title: Optional[str] = None) -> Figure:
    """Residuals against fitted values; a funnel shape points to heteroskedasticity."""
    fig, ax = plt.subplots(figsize=(7.5, 5))
    sns.scatterplot(x=np.asarray(results.fittedvalues), y=np.asarray(results.resid), alpha=0.6, ax=ax)
    ax.axhline(0, color='grey', linestyle='--', linewidth=1)
    ax.set_xlabel("Fitted values"); ax.set_ylabel("Residuals")
    ax.set_title(title if title is not None else "Residuals vs Fitted", fontsize=12)
    fig.tight_layout(pad=1.0)
    return fig


def make_residual_renderer(y: str, x: Union[str, Sequence[str]]) -> Callable[[pd.DataFrame], Figure]:
    """Return a sub-table -> residual plot callable, fitting ``y ~ x`` separately per group."""
    def render(sub_table: pd.DataFrame) -> Figure:
        return residual_plot(fit_ols(sub_table, y, x))

    return render
