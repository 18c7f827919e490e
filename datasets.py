import os
from typing import Dict, Optional, Union

import pandas as pd
from pandas.api.types import (is_datetime64_any_dtype, is_numeric_dtype,
                              is_string_dtype)

ALLOWED_EXTENSIONS = {'csv', 'xls', 'xlsx'}

# --- Column name hints used by type inference ---
NON_NUMERIC_NAME_HINTS = ['id', 'code', 'name', 'person', 'country', 'category', 'product', 'type', 'status', 'gender',
                          'region', 'city', 'state', 'text', 'desc', 'comment', 'notes', 'message', 'address', 'url',
                          'path', 'file', 'postcode', 'zip', 'sku', 'identifier', 'key', 'species', 'group']
DATE_NAME_HINTS = ['date', 'time', 'yr', 'year', 'month', 'day', 'timestamp']
RATING_NAME_HINTS = ['rating', 'level', 'quality', 'score', 'grade', 'tier']
ID_NUMERIC_NAME_HINTS = ['id', 'identifier', 'key', 'number', 'no', 'personid']
COMMON_CATEGORY_NAME_HINTS = ['country', 'category', 'product', 'type', 'status', 'gender', 'region', 'city', 'state',
                              'species', 'group']


class DatasetError(Exception):
    pass


def allowed_file(filename: str) -> bool:
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def load_table(filepath: Union[str, os.PathLike]) -> pd.DataFrame:
    """Read a CSV or Excel file into a DataFrame.

    CSV files that fail to decode are retried as latin1 before giving up.
    """
    filepath = os.fspath(filepath)
    filename = os.path.basename(filepath)
    if not allowed_file(filename):
        raise DatasetError(f"Unsupported file type for '{filename}'. Use one of: {', '.join(sorted(ALLOWED_EXTENSIONS))}.")
    df = None
    try:
        if filename.lower().endswith('.csv'):
            df = pd.read_csv(filepath, low_memory=False)
        else:
            df = pd.read_excel(filepath, engine='openpyxl')
    except UnicodeDecodeError as read_err:
        print(f"[WARN] Initial read error for {filename}: {read_err}. Retrying with latin1.")
        try:
            df = pd.read_csv(filepath, encoding='latin1', low_memory=False)
            print(f"[INFO] Read {filename} with latin1 encoding after initial failure.")
        except Exception as latin1_err:
            raise DatasetError(f"Could not read '{filename}' (also failed with latin1: {str(latin1_err)[:100]})") from latin1_err
    except pd.errors.EmptyDataError as e:
        raise DatasetError(f"'{filename}' is empty.") from e
    except Exception as e:
        raise DatasetError(f"Could not read '{filename}': {str(e)[:100]}") from e
    if df is None or df.empty:
        raise DatasetError(f"'{filename}' has no rows.")
    print(f"[INFO] Loaded {filename}: {len(df)} rows, {len(df.columns)} columns.")
    return df


def clean_numeric_column(series: pd.Series) -> pd.Series:
    """Strip currency, thousands and percent marks and coerce to numbers.

    Returns the input unchanged when nothing in it parses as a number.
    """
    if series is None or is_numeric_dtype(series.dtype): return series
    if series.dtype == 'object' or is_string_dtype(series.dtype):
        stripped = series.astype(str).str.replace(r'[$,%]', '', regex=True).str.strip().replace('', pd.NA)
        numeric = pd.to_numeric(stripped, errors='coerce')
        if numeric.notna().any(): return numeric
    return series


def _name_has(col_name: str, hints) -> bool:
    lowered = str(col_name).lower()
    return any(hint in lowered for hint in hints)


def _as_datetime(series: pd.Series) -> Optional[pd.Series]:
    sample = series.dropna().iloc[:10]
    if sample.empty: return None
    try:
        pd.to_datetime(sample, errors='raise')
    except (ValueError, TypeError):
        return None
    converted = pd.to_datetime(series, errors='coerce')
    if converted.notna().sum() / max(1, series.count()) > 0.7: return converted
    return None


def _classify_numeric(series: pd.Series, col_name: str, unique_count: int, non_null_count: int) -> str:
    if _name_has(col_name, ID_NUMERIC_NAME_HINTS) and unique_count >= max(1, non_null_count * 0.90) and unique_count > 20:
        return 'id_like_text'
    values = series.dropna()
    try:
        is_integer_like = bool((values.astype(float) % 1 == 0).all())
    except (ValueError, TypeError):
        is_integer_like = pd.api.types.is_integer_dtype(values.dtype)
    if not is_integer_like: return 'numerical'
    if _name_has(col_name, RATING_NAME_HINTS): return 'categorical_numeric' if unique_count < 25 else 'numerical'
    return 'categorical_numeric' if unique_count <= 5 else 'numerical'


def _classify_text(col_name: str, unique_count: int, non_null_count: int) -> str:
    if unique_count <= 1: return 'categorical'
    if _name_has(col_name, COMMON_CATEGORY_NAME_HINTS) and unique_count < 750: return 'categorical'
    if unique_count < max(10, non_null_count * 0.6) and unique_count < 500: return 'categorical'
    return 'id_like_text'


def get_simplified_column_types(df: pd.DataFrame) -> Dict[str, str]:
    """Label each column as numerical, categorical, categorical_numeric, datetime, id_like_text, empty or other."""
    simplified_types: Dict[str, str] = {}
    if df is None or df.empty: return simplified_types
    for col_name in df.columns:
        series = df[col_name]
        try:
            is_text = series.dtype == 'object' or is_string_dtype(series.dtype)
            if is_text and _name_has(col_name, DATE_NAME_HINTS):
                converted = _as_datetime(series)
                if converted is not None: series = converted; is_text = False
            if is_text and not _name_has(col_name, NON_NUMERIC_NAME_HINTS + DATE_NAME_HINTS):
                cleaned = clean_numeric_column(series)
                if is_numeric_dtype(cleaned.dtype): series = cleaned

            unique_count = series.nunique(dropna=True)
            non_null_count = series.count()
            if non_null_count == 0: simplified_types[col_name] = 'empty'
            elif isinstance(series.dtype, pd.CategoricalDtype): simplified_types[col_name] = 'categorical'
            elif series.dtype == bool: simplified_types[col_name] = 'categorical'
            elif is_numeric_dtype(series.dtype): simplified_types[col_name] = _classify_numeric(series, col_name, unique_count, non_null_count)
            elif is_datetime64_any_dtype(series.dtype): simplified_types[col_name] = 'datetime'
            elif is_string_dtype(series.dtype) or series.dtype == 'object': simplified_types[col_name] = _classify_text(col_name, unique_count, non_null_count)
            else: simplified_types[col_name] = 'other'
        except Exception as e:
            print(f"[WARN] Type check failed for column '{col_name}' (dtype: {df[col_name].dtype}): {e}")
            simplified_types[col_name] = 'other'
    return simplified_types
