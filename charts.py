import os
from typing import Any, Dict, List, Optional, Sequence, Union

import pandas as pd
from pandas.api.types import is_datetime64_any_dtype, is_numeric_dtype, is_string_dtype

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from matplotlib import cycler
from matplotlib.figure import Figure
import seaborn as sns

from datasets import NON_NUMERIC_NAME_HINTS, clean_numeric_column, get_simplified_column_types
from grouped_export import (DEFAULT_EXTENSION, ExportConfig, ExportOutcome, TableLike, as_table, export,
                            filename_destination, resolve_key_order)

DEFAULT_FIGSIZE = (7.5, 5)
MAX_BARS = 20

NUMERIC_TYPES = ['numerical', 'categorical_numeric']
CATEGORY_TYPES = ['categorical', 'categorical_numeric']

CHART_REQUIREMENTS: Dict[str, Dict[str, Any]] = {
    "Histogram": {'exact_cols': 1, 'numerical': 1},
    "Box Plot": {'exact_cols': 1, 'numerical': 1},
    "Density Plot": {'exact_cols': 1, 'numerical': 1},
    "Bar Chart (Counts)": {'exact_cols': 1, 'categorical': 1},
    "Scatter Plot": {'min_cols': 2, 'max_cols': 3, 'numerical': 2},
    "Line Chart": {'exact_cols': 2, 'numerical': 1},
    "Box Plots (by Category)": {'exact_cols': 2, 'categorical': 1, 'numerical': 1},
    "Bar Chart (Aggregated)": {'exact_cols': 2, 'categorical': 1, 'numerical': 1},
}
CHART_TYPES = list(CHART_REQUIREMENTS)


class ChartError(Exception):
    pass


def plot_style():
    """Context manager with the whitegrid look and muted palette, leaving global rcParams untouched."""
    rc = dict(sns.axes_style("whitegrid"))
    rc.update({'axes.prop_cycle': cycler(color=sns.color_palette("muted")), 'figure.dpi': 90, 'font.size': 9})
    return plt.rc_context(rc)


def validate_columns_for_chart(chart_type: str, columns: List[str], df: pd.DataFrame) -> Optional[str]:
    """Return a readable reason why ``columns`` can't make a ``chart_type``, or None if they can."""
    if chart_type not in CHART_REQUIREMENTS:
        return f"Unknown chart type '{chart_type}'. Choose one of: {', '.join(CHART_TYPES)}."
    if not columns: return "No columns selected."
    missing = [col for col in columns if col not in df.columns]
    if missing: return f"Column(s) not found: {', '.join(missing)}. Check spelling?"
    req = CHART_REQUIREMENTS[chart_type]
    num_selected = len(columns)
    if 'exact_cols' in req and num_selected != req['exact_cols']: return f"{chart_type} needs exactly {req['exact_cols']} column(s), but you selected {num_selected}."
    if 'min_cols' in req and num_selected < req['min_cols']: return f"{chart_type} needs at least {req['min_cols']} columns, you selected {num_selected}."
    if 'max_cols' in req and num_selected > req['max_cols']: return f"{chart_type} uses at most {req['max_cols']} columns, you selected {num_selected}."

    col_types = get_simplified_column_types(df[columns])
    num_numeric = sum(1 for c in columns if col_types.get(c) in NUMERIC_TYPES)
    num_categorical = sum(1 for c in columns if col_types.get(c) in CATEGORY_TYPES)
    col_details = "; ".join(f"'{c}' (as {col_types.get(c, 'unknown')})" for c in columns)
    err_msg_parts = []
    if num_numeric < req.get('numerical', 0): err_msg_parts.append(f"{req['numerical']} numerical column(s) (found {num_numeric})")
    if num_categorical < req.get('categorical', 0): err_msg_parts.append(f"{req['categorical']} categorical column(s) (found {num_categorical})")
    if err_msg_parts: return f"{chart_type} needs: {', '.join(err_msg_parts)}. You provided ({col_details})."
    return None


def prepare_chart_frame(df: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    df_plot = df[list(columns)].copy()
    for col_name in columns:
        if is_string_dtype(df_plot[col_name].dtype) and not any(hint in str(col_name).lower() for hint in NON_NUMERIC_NAME_HINTS):
            df_plot[col_name] = clean_numeric_column(df_plot[col_name])
    return df_plot.ffill().bfill()


def render_chart(df: pd.DataFrame, chart_type: str, columns: Sequence[str], title: Optional[str] = None,
                 xlabel: Optional[str] = None, ylabel: Optional[str] = None) -> Figure:
    """Draw ``chart_type`` from ``columns`` of ``df`` on a new figure and return it."""
    columns = list(columns)
    df_plot = prepare_chart_frame(df, [c for c in columns if c in df.columns])
    validation_error = validate_columns_for_chart(chart_type, columns, df_plot)
    if validation_error: raise ChartError(validation_error)

    col_types = get_simplified_column_types(df_plot)
    with plot_style():
        return _draw_chart(df_plot, chart_type, columns, col_types, title, xlabel, ylabel)


def _draw_chart(df_plot, chart_type, columns, col_types, title, xlabel, ylabel) -> Figure:
    col1 = columns[0]
    col2 = columns[1] if len(columns) > 1 else None
    default_title = chart_type; default_xlabel = col1; default_ylabel = None

    fig, ax = plt.subplots(figsize=DEFAULT_FIGSIZE)
    try:
        if chart_type == "Histogram":
            sns.histplot(data=df_plot, x=col1, kde=df_plot[col1].nunique() > 1, ax=ax); default_ylabel = "Frequency"
        elif chart_type == "Box Plot":
            sns.boxplot(data=df_plot, y=col1, ax=ax); default_xlabel = None; default_ylabel = col1
        elif chart_type == "Density Plot":
            sns.kdeplot(data=df_plot, x=col1, fill=True, ax=ax); default_ylabel = "Density"
        elif chart_type == "Bar Chart (Counts)":
            counts = df_plot[col1].value_counts().nlargest(MAX_BARS)
            sns.barplot(x=counts.index.astype(str), y=counts.values, ax=ax); default_ylabel = "Count"
            ax.tick_params(axis='x', labelrotation=65)
        elif chart_type == "Scatter Plot":
            hue_col = columns[2] if len(columns) > 2 else None
            sns.scatterplot(data=df_plot, x=col1, y=col2, hue=hue_col, alpha=0.7, ax=ax)
            default_ylabel = col2
            default_title = f"Scatter: {col1} vs {col2}" + (f" by {hue_col}" if hue_col else "")
        elif chart_type == "Line Chart":
            df_line = df_plot
            if is_datetime64_any_dtype(df_line[col1]) or is_numeric_dtype(df_line[col1]): df_line = df_line.sort_values(by=col1)
            sns.lineplot(data=df_line, x=col1, y=col2, ax=ax); default_ylabel = col2
            ax.tick_params(axis='x', labelrotation=45)
        elif chart_type == "Box Plots (by Category)":
            cat_col, num_col = _category_then_numeric(columns, col_types)
            sns.boxplot(data=df_plot, x=cat_col, y=num_col, ax=ax); default_xlabel = cat_col; default_ylabel = num_col
            ax.tick_params(axis='x', labelrotation=65)
        elif chart_type == "Bar Chart (Aggregated)":
            cat_col, num_col = _category_then_numeric(columns, col_types)
            agg_data = df_plot.groupby(cat_col, observed=True)[num_col].mean().nlargest(MAX_BARS)
            sns.barplot(x=agg_data.index.astype(str), y=agg_data.values, ax=ax)
            default_xlabel = cat_col; default_ylabel = f"Mean of {num_col}"; default_title = f"{chart_type} of {num_col} by {cat_col}"
            ax.tick_params(axis='x', labelrotation=65)

        ax.set_title(title if title is not None else default_title, fontsize=12)
        if xlabel is not None: ax.set_xlabel(xlabel)
        elif default_xlabel: ax.set_xlabel(default_xlabel)
        if ylabel is not None: ax.set_ylabel(ylabel)
        elif default_ylabel: ax.set_ylabel(default_ylabel)
        fig.tight_layout(pad=1.0)
    except Exception:
        plt.close(fig)
        raise
    return fig


def _category_then_numeric(columns: List[str], col_types: Dict[str, str]):
    first, second = columns[0], columns[1]
    if col_types.get(first) == 'numerical' and col_types.get(second) in CATEGORY_TYPES: return second, first
    return first, second


def make_renderer(chart_type: str, columns: Sequence[str], title: Optional[str] = None,
                  xlabel: Optional[str] = None, ylabel: Optional[str] = None):
    """Return a sub-table -> Figure callable for ``grouped_export.export``."""
    if chart_type not in CHART_REQUIREMENTS:
        raise ChartError(f"Unknown chart type '{chart_type}'. Choose one of: {', '.join(CHART_TYPES)}.")
    columns = list(columns)

    def render(sub_table: pd.DataFrame) -> Figure:
        return render_chart(sub_table, chart_type, columns, title=title, xlabel=xlabel, ylabel=ylabel)

    return render


def export_grouped_charts(table: TableLike, group_key: str, chart_type: str, columns: Sequence[str],
                          directory: Union[str, os.PathLike], ordered_key_values: Optional[Sequence[Any]] = None,
                          extension: str = DEFAULT_EXTENSION, config: Optional[ExportConfig] = None) -> List[ExportOutcome]:
    """Draw one ``chart_type`` per group of ``group_key`` and save it as ``<directory>/<group>.<extension>``.

    When ``ordered_key_values`` is omitted every group is exported, in the
    column's declared order (categorical columns) or order of first appearance.
    """
    df = as_table(table)
    render = make_renderer(chart_type, columns)
    if ordered_key_values is None: ordered_key_values = resolve_key_order(df, group_key)
    return export(df, group_key, ordered_key_values, render, filename_destination(directory, extension), config=config)
