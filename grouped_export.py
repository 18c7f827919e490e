"""Split a table by a grouping column, render one artifact per group and save
each one to a destination named after its group.

The order of ``ordered_key_values`` is the only link between a group's rows
and the file it lands in: index ``i`` of that list is rendered from the rows
whose key equals ``ordered_key_values[i]`` and written to
``destination_for(i, ordered_key_values[i])``.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from matplotlib.figure import Figure

DEFAULT_DPI = 100
DEFAULT_EXTENSION = 'png'
DEFAULT_FILENAME_TEMPLATE = '{key}.{ext}'
SVG_HASH_SALT = 'grouped-export'

TableLike = Union[pd.DataFrame, Iterable[Mapping[str, Any]]]
Renderer = Callable[[pd.DataFrame], Any]
DestinationFor = Callable[[int, Hashable], Any]


# --- Errors ---
class ExportError(Exception):
    """Base class for grouped export failures."""


class EmptyTableError(ExportError):
    pass


class GroupKeyError(ExportError):
    pass


class UnrankedKeyError(ExportError):
    """The declared key order does not rank every value found in the table."""

    def __init__(self, group_key: str, unranked: Sequence[Any]):
        self.group_key = group_key
        self.unranked = list(unranked)
        super().__init__(f"Declared order for '{group_key}' has no rank for: {', '.join(map(repr, self.unranked))}")


class DuplicateKeyValueError(ExportError):
    def __init__(self, duplicates: Sequence[Any]):
        self.duplicates = list(duplicates)
        super().__init__(f"Key value(s) listed more than once: {', '.join(map(repr, self.duplicates))}")


class MissingGroupError(ExportError):
    def __init__(self, group_key: str, missing: Sequence[Any]):
        self.group_key = group_key
        self.missing = list(missing)
        super().__init__(f"No rows with '{group_key}' equal to: {', '.join(map(repr, self.missing))}")


class DuplicateDestinationError(ExportError):
    def __init__(self, destination: Any, key_values: Sequence[Any]):
        self.destination = destination
        self.key_values = list(key_values)
        super().__init__(f"Destination '{destination}' produced for more than one group: {', '.join(map(repr, self.key_values))}")


class RenderError(ExportError):
    def __init__(self, key_value: Any, cause: BaseException):
        self.key_value = key_value
        self.cause = cause
        super().__init__(f"Rendering group {key_value!r} failed: {type(cause).__name__}: {cause}")


class PersistError(ExportError):
    def __init__(self, destination: Any, cause: BaseException):
        self.destination = destination
        self.cause = cause
        super().__init__(f"Writing '{destination}' failed: {type(cause).__name__}: {cause}")


# --- Config & results ---
def _env_flag(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class ExportConfig:
    fail_fast: bool = False
    dpi: int = DEFAULT_DPI
    tag_title: bool = True
    make_dirs: bool = True

    @classmethod
    def from_env(cls) -> 'ExportConfig':
        """Build a config from GROUPED_EXPORT_FAIL_FAST and GROUPED_EXPORT_DPI."""
        return cls(fail_fast=_env_flag(os.environ.get('GROUPED_EXPORT_FAIL_FAST')),
                   dpi=int(os.environ.get('GROUPED_EXPORT_DPI', DEFAULT_DPI)))


@dataclass
class ExportOutcome:
    key_value: Any
    destination: Any
    error: Optional[ExportError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# --- Table helpers ---
def as_table(table: TableLike) -> pd.DataFrame:
    if isinstance(table, pd.DataFrame): return table
    rows = list(table)
    if rows:
        columns = set(rows[0])
        for position, row in enumerate(rows[1:], start=1):
            if set(row) != columns:
                raise ExportError(f"Row {position} has columns {sorted(row)}, expected {sorted(columns)}.")
    return pd.DataFrame(rows)


def _require_key(df: pd.DataFrame, group_key: str) -> None:
    if group_key not in df.columns:
        raise GroupKeyError(f"Group column '{group_key}' not found. Available: {', '.join(map(str, df.columns))}")


def partition_table(table: TableLike, group_key: str) -> Dict[Any, pd.DataFrame]:
    """Map each key value to its rows, keeping the original row order inside each group.

    Groups appear in order of first appearance. Rows with a missing key form
    their own group so no row is dropped.
    """
    df = as_table(table)
    _require_key(df, group_key)
    grouped = df.groupby(group_key, sort=False, dropna=False, observed=True)
    return {key_value: sub_table for key_value, sub_table in grouped}


def resolve_key_order(table: TableLike, group_key: str, order: Optional[Sequence[Any]] = None) -> List[Any]:
    """Return the key values present in ``table`` in their declared order.

    The declared order is ``order`` when given, else the categories of a
    categorical column. It must rank every value in the table. Without any
    declared order, values come back in order of first appearance.
    """
    df = as_table(table)
    _require_key(df, group_key)
    column = df[group_key]
    present = list(pd.unique(column.dropna()))
    if order is None and isinstance(column.dtype, pd.CategoricalDtype):
        order = list(column.cat.categories)
    if order is None: return present
    ranked = set(order)
    unranked = [value for value in present if value not in ranked]
    if unranked: raise UnrankedKeyError(group_key, unranked)
    present_values = set(present)
    return [value for value in order if value in present_values]


# --- Destinations ---
def _safe_name(key_value: Any) -> str:
    name = str(key_value).strip()
    for sep in {os.sep, '/', '\\'}:
        name = name.replace(sep, '_')
    return name or '_'


def filename_destination(directory: Union[str, os.PathLike], extension: str = DEFAULT_EXTENSION,
                         template: str = DEFAULT_FILENAME_TEMPLATE) -> DestinationFor:
    """Build a ``destination_for`` that names files ``template`` inside ``directory``.

    The template may use ``{key}``, ``{index}`` and ``{ext}``.
    """
    base = Path(directory)
    ext = extension.lstrip('.')

    def destination_for(index: int, key_value: Any) -> Path:
        return base / template.format(key=_safe_name(key_value), index=index, ext=ext)

    return destination_for


def _destination_id(destination: Any) -> Any:
    if isinstance(destination, (str, os.PathLike)):
        return os.path.normpath(os.fspath(destination))
    return destination


def _plan_destinations(key_values: Sequence[Any], destination_for: DestinationFor) -> List[Any]:
    destinations = []
    claimed: Dict[Any, Any] = {}
    for index, key_value in enumerate(key_values):
        destination = destination_for(index, key_value)
        dest_id = _destination_id(destination)
        if dest_id in claimed:
            raise DuplicateDestinationError(destination, [claimed[dest_id], key_value])
        claimed[dest_id] = key_value
        destinations.append(destination)
    return destinations


# --- Artifacts ---
def _figure_of(artifact: Any) -> Optional[Figure]:
    if isinstance(artifact, Figure): return artifact
    figure = getattr(artifact, 'figure', None)
    return figure if isinstance(figure, Figure) else None


def tag_artifact(artifact: Any, key_value: Any) -> Any:
    """Title a chart with its group's key value. Non-chart artifacts pass through untouched."""
    figure = _figure_of(artifact)
    if figure is None: return artifact
    axes = figure.get_axes()
    if len(axes) == 1: axes[0].set_title(str(key_value))
    else: figure.suptitle(str(key_value))
    return artifact


def _stable_metadata(path: Path) -> Optional[Dict[str, Any]]:
    # Timestamps would make repeated exports differ byte for byte.
    suffix = path.suffix.lower()
    if suffix == '.pdf': return {'CreationDate': None}
    if suffix == '.svg': return {'Date': None}
    return None


def _discard(artifacts: Iterable[Any]) -> None:
    for artifact in artifacts:
        figure = _figure_of(artifact)
        if figure is not None: plt.close(figure)


def save_artifact(artifact: Any, destination: Any, config: ExportConfig) -> None:
    """Write a figure (or raw bytes/text) to ``destination``; figures are closed afterwards."""
    path = Path(destination)
    if config.make_dirs: path.parent.mkdir(parents=True, exist_ok=True)
    figure = _figure_of(artifact)
    if figure is not None:
        try:
            metadata = _stable_metadata(path)
            kwargs = {'metadata': metadata} if metadata else {}
            # A fixed salt keeps SVG element ids the same from one export to the next.
            with matplotlib.rc_context({'svg.hashsalt': SVG_HASH_SALT}):
                figure.savefig(path, dpi=config.dpi, bbox_inches='tight', **kwargs)
        finally:
            plt.close(figure)
    elif isinstance(artifact, (bytes, bytearray)): path.write_bytes(bytes(artifact))
    elif isinstance(artifact, str): path.write_text(artifact, encoding='utf-8')
    else:
        raise TypeError(f"Don't know how to save a {type(artifact).__name__}; return a matplotlib Figure, bytes or str.")


# --- Export ---
def _check_unique(key_values: Sequence[Any]) -> None:
    seen = set(); duplicates = []
    for value in key_values:
        if value in seen and value not in duplicates: duplicates.append(value)
        seen.add(value)
    if duplicates: raise DuplicateKeyValueError(duplicates)


def export(table: TableLike, group_key: str, ordered_key_values: Sequence[Any], render: Renderer,
           destination_for: DestinationFor, config: Optional[ExportConfig] = None,
           persist: Optional[Callable[[Any, Any, ExportConfig], None]] = None) -> List[ExportOutcome]:
    """Render and save one artifact per key value, in the order given.

    Missing groups, repeated key values and clashing destinations raise before
    anything is rendered or written. Render and write failures are recorded on
    each group's outcome, or raised straight away when ``config.fail_fast`` is set.
    """
    config = config or ExportConfig()
    persist = persist or save_artifact
    df = as_table(table)
    if df.empty: raise EmptyTableError("Cannot export groups from an empty table.")
    _require_key(df, group_key)
    key_values = list(ordered_key_values)
    _check_unique(key_values)

    groups = partition_table(df, group_key)
    missing = [value for value in key_values if value not in groups]
    if missing: raise MissingGroupError(group_key, missing)
    destinations = _plan_destinations(key_values, destination_for)
    outcomes = [ExportOutcome(key_value=value, destination=dest) for value, dest in zip(key_values, destinations)]
    print(f"[INFO] Exporting {len(outcomes)} group(s) of '{group_key}' ({len(groups)} present in table).")

    for outcome in outcomes:
        artifact = None
        try:
            artifact = render(groups[outcome.key_value])
            if config.tag_title: tag_artifact(artifact, outcome.key_value)
        except Exception as e:
            error = RenderError(outcome.key_value, e)
            print(f"[ERROR] {error}")
            if artifact is not None: _discard([artifact])
            if config.fail_fast: raise error from e
            outcome.error = error
            continue
        try:
            persist(artifact, outcome.destination, config)
        except Exception as e:
            error = PersistError(outcome.destination, e)
            print(f"[ERROR] {error}")
            _discard([artifact])
            if config.fail_fast: raise error from e
            outcome.error = error

    summary = summarize_outcomes(outcomes)
    print(f"[INFO] Export finished: {summary['succeeded']} saved, {summary['failed']} failed.")
    return outcomes


def summarize_outcomes(outcomes: Sequence[ExportOutcome]) -> Dict[str, Any]:
    failed = [outcome.key_value for outcome in outcomes if not outcome.ok]
    return {'succeeded': len(outcomes) - len(failed), 'failed': len(failed), 'failed_keys': failed}
