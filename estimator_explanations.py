# estimator_explanations.py

import html
from typing import Any, Dict

import pandas as pd

ESTIMATOR_DETAILS: Dict[str, Dict[str, Any]] = {
    "breusch_pagan": {
        "title": "🔍 Breusch-Pagan Test: Is the Spread Constant?",
        "description": "This test checks whether the variance of a regression's errors changes with the predictors. Non-constant variance is called <strong>heteroskedasticity</strong>.",
        "when_to_use": [
            "You have fitted a <strong>linear regression</strong> and want to know if the usual standard errors can be trusted.",
            "A residuals-vs-fitted plot shows a <strong>funnel or fan shape</strong>.",
            "You suspect the spread of the outcome grows with one of the predictors (e.g., spending varies more among high earners)."
        ],
        "key_assumptions": [
            "The variance, if it changes, changes <strong>linearly</strong> with the predictors.",
            "Errors are <strong>independent</strong>."
        ],
        "basic_idea": "It regresses the squared residuals on the predictors. If the predictors explain the squared residuals, the spread of the errors depends on them.",
        "interpretation": "A <strong>small p-value</strong> (e.g., < 0.05) means the error variance is not constant, so classical standard errors are unreliable. A <strong>large p-value</strong> means there's no strong evidence against constant variance."
    },
    "white": {
        "title": "🔍 White Test: A More General Spread Check",
        "description": "Like Breusch-Pagan, but it also looks at squares and cross products of the predictors, so it catches curved patterns in the spread.",
        "when_to_use": [
            "You want a heteroskedasticity check that doesn't assume a linear variance pattern.",
            "You have a moderate number of predictors (the auxiliary regression grows quickly)."
        ],
        "key_assumptions": [
            "Errors are <strong>independent</strong>.",
            "Enough observations to fit the expanded auxiliary regression."
        ],
        "basic_idea": "It regresses the squared residuals on the predictors, their squares and their products.",
        "interpretation": "A <strong>small p-value</strong> suggests heteroskedasticity (or sometimes a mis-specified model)."
    },
    "classical_se": {
        "title": "📏 Classical OLS Standard Errors",
        "description": "The default standard errors reported by ordinary least squares. They assume every error has the <strong>same variance</strong>.",
        "when_to_use": [
            "The Breusch-Pagan or White test shows <strong>no evidence</strong> of non-constant variance.",
            "As a baseline to compare the alternatives against."
        ],
        "key_assumptions": [
            "<strong>Homoscedasticity</strong> (constant error variance).",
            "<strong>Independence of errors</strong>."
        ],
        "basic_idea": "It scales the inverse of X'X by a single pooled estimate of the error variance.",
        "interpretation": "If the error variance is not constant, these can be <strong>too small or too large</strong>, making confidence intervals and p-values misleading."
    },
    "sandwich_se": {
        "title": "🥪 Sandwich (Heteroskedasticity-Consistent) Standard Errors",
        "description": "Also called robust or HC standard errors. They keep the OLS coefficients but estimate their uncertainty without assuming constant variance.",
        "when_to_use": [
            "The spread of the residuals <strong>changes</strong> across observations.",
            "You want to keep the OLS estimates and only fix the inference.",
            "HC3 is a good default for small and medium samples; HC1 matches the common Stata default."
        ],
        "key_assumptions": [
            "<strong>Independence of errors</strong> (use clustered errors otherwise).",
            "A reasonably large sample; HC0 in particular is biased downwards in small samples."
        ],
        "basic_idea": "The variance is written as bread x meat x bread: (X'X)^-1 [sum of e_i^2 x_i x_i'] (X'X)^-1. Each observation contributes its own squared residual instead of a shared variance. HC1 to HC3 rescale the residuals to correct small-sample bias.",
        "interpretation": "Compare with the classical standard errors. A large gap means heteroskedasticity matters for your conclusions; report the sandwich version."
    },
    "robust_se": {
        "title": "🛡️ Robust Regression (M-Estimation) Standard Errors",
        "description": "Robust regression refits the line while <strong>downweighting observations with large residuals</strong> (Huber, Tukey or Hampel weights), then reports standard errors for that fit.",
        "when_to_use": [
            "A few <strong>outliers</strong> or heavy tails are pulling the OLS line around.",
            "You want a second opinion on the coefficients, not just on their uncertainty."
        ],
        "key_assumptions": [
            "Outliers are in the outcome, not extreme values of the predictors.",
            "Errors are <strong>independent</strong>."
        ],
        "basic_idea": "It minimises a loss that grows more slowly than the square for big residuals, solved by iteratively reweighted least squares.",
        "interpretation": "If robust and OLS coefficients differ a lot, a handful of observations are driving the OLS result. Its standard errors belong to the robust coefficients."
    },
    "bootstrap_se": {
        "title": "🎲 Bootstrap Standard Errors",
        "description": "Resample the rows with replacement many times, refit the regression each time, and measure how much the coefficients move.",
        "when_to_use": [
            "You don't want to rely on a formula for the variance.",
            "Samples are moderate and rows are <strong>independent</strong>.",
            "As a check on the sandwich estimate: the pairs bootstrap is also valid under heteroskedasticity."
        ],
        "key_assumptions": [
            "Rows are <strong>independent</strong> (dependent data needs a block or cluster bootstrap).",
            "Enough replications (1,000 or more is typical for standard errors)."
        ],
        "basic_idea": "The spread (standard deviation) of the coefficient across the refits estimates its standard error.",
        "interpretation": "It should land close to the sandwich standard error when heteroskedasticity is the only problem. A big disagreement points to small samples or influential rows."
    },
}

COLUMN_LABELS = {'coef': "Coefficient"}


def explain(name: str) -> Dict[str, Any]:
    try:
        return ESTIMATOR_DETAILS[name]
    except KeyError:
        raise KeyError(f"No explanation for '{name}'. Known: {', '.join(ESTIMATOR_DETAILS)}") from None


def comparison_table_html(table: pd.DataFrame, digits: int = 4) -> str:
    """Render a standard-error comparison table with each estimator's title as its column header."""
    if table is None or table.empty: return "<p>No estimates available to compare.</p>"
    headers = []
    for col in table.columns:
        label = COLUMN_LABELS.get(col) or ESTIMATOR_DETAILS.get(col, {}).get("title") or str(col)
        headers.append(f"<th>{label}</th>")
    html_output = "<table class='preview-table'><thead><tr><th>Term</th>" + "".join(headers) + "</tr></thead><tbody>"
    for term, row in table.iterrows():
        cells = "".join(f"<td>{value:.{digits}f}</td>" for value in row.to_numpy(dtype=float))
        html_output += f"<tr><td><strong>{html.escape(str(term))}</strong></td>{cells}</tr>"
    html_output += "</tbody></table>"
    return html_output
