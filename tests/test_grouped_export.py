from __future__ import annotations

import warnings

import matplotlib.pyplot as plt
import pandas as pd
import pytest

from grouped_export import (
    DuplicateDestinationError,
    DuplicateKeyValueError,
    EmptyTableError,
    ExportConfig,
    ExportError,
    GroupKeyError,
    MissingGroupError,
    PersistError,
    RenderError,
    UnrankedKeyError,
    export,
    filename_destination,
    partition_table,
    resolve_key_order,
    summarize_outcomes,
    tag_artifact,
)


def _values_text(sub_table):
    return ",".join(str(v) for v in sub_table["value"])


def _numbered(tmp_path):
    return lambda index, key_value: tmp_path / f"out{index + 1}.txt"


@pytest.fixture
def table():
    return pd.DataFrame({
        "group": ["A", "B", "A", "C", "B", "A"],
        "value": [1, 2, 3, 4, 5, 6],
    })


def test_partition_keeps_every_row_once(table):
    groups = partition_table(table, "group")
    assert list(groups) == ["A", "B", "C"]
    assert list(groups["A"]["value"]) == [1, 3, 6]
    rebuilt = pd.concat(groups.values()).sort_index()
    pd.testing.assert_frame_equal(rebuilt, table)


def test_partition_keeps_rows_with_missing_key():
    df = pd.DataFrame({"group": ["A", None, "A"], "value": [1, 2, 3]})
    groups = partition_table(df, "group")
    assert sum(len(sub) for sub in groups.values()) == 3


def test_partition_accepts_row_mappings():
    rows = [{"group": "A", "value": 1}, {"group": "B", "value": 2}]
    groups = partition_table(rows, "group")
    assert list(groups) == ["A", "B"]


def test_ragged_rows_are_rejected():
    rows = [{"group": "A", "value": 1}, {"group": "B"}]
    with pytest.raises(ExportError):
        partition_table(rows, "group")


def test_export_writes_each_group_to_its_destination(table, tmp_path):
    outcomes = export(table, "group", ["A", "B"], _values_text, _numbered(tmp_path))

    assert [o.key_value for o in outcomes] == ["A", "B"]
    assert all(o.ok for o in outcomes)
    assert (tmp_path / "out1.txt").read_text() == "1,3,6"
    assert (tmp_path / "out2.txt").read_text() == "2,5"
    assert not (tmp_path / "out3.txt").exists()


def test_order_decides_which_file_gets_which_group(tmp_path):
    df = pd.DataFrame({"group": ["A", "B"], "value": [1, 2]})
    first, second = tmp_path / "first", tmp_path / "second"
    first.mkdir(); second.mkdir()

    export(df, "group", ["A", "B"], _values_text, _numbered(first))
    export(df, "group", ["B", "A"], _values_text, _numbered(second))

    assert (first / "out1.txt").read_text() == "1"
    assert (first / "out2.txt").read_text() == "2"
    assert (second / "out1.txt").read_text() == "2"
    assert (second / "out2.txt").read_text() == "1"


def test_missing_group_aborts_before_any_write(table, tmp_path):
    rendered = []

    def render(sub_table):
        rendered.append(sub_table)
        return _values_text(sub_table)

    with pytest.raises(MissingGroupError) as exc:
        export(table, "group", ["A", "Z"], render, _numbered(tmp_path))
    assert exc.value.missing == ["Z"]
    assert rendered == []
    assert list(tmp_path.iterdir()) == []


def test_duplicate_destination_aborts_before_any_write(table, tmp_path):
    with pytest.raises(DuplicateDestinationError) as exc:
        export(table, "group", ["A", "B"], _values_text, lambda i, v: tmp_path / "same.txt")
    assert exc.value.key_values == ["A", "B"]
    assert list(tmp_path.iterdir()) == []


def test_equivalent_paths_count_as_duplicates(table, tmp_path):
    paths = {"A": str(tmp_path / "x.txt"), "B": str(tmp_path / "sub" / ".." / "x.txt")}
    with pytest.raises(DuplicateDestinationError):
        export(table, "group", ["A", "B"], _values_text, lambda i, v: paths[v])


def test_repeated_key_value_is_rejected(table, tmp_path):
    with pytest.raises(DuplicateKeyValueError):
        export(table, "group", ["A", "A"], _values_text, _numbered(tmp_path))
    assert list(tmp_path.iterdir()) == []


def test_render_failure_is_recorded_and_other_groups_still_saved(table, tmp_path):
    def render(sub_table):
        if sub_table["group"].iloc[0] == "B":
            raise ValueError("bad group")
        return _values_text(sub_table)

    outcomes = export(table, "group", ["A", "B"], render, _numbered(tmp_path))

    assert outcomes[0].ok
    assert isinstance(outcomes[1].error, RenderError)
    assert outcomes[1].error.key_value == "B"
    assert isinstance(outcomes[1].error.cause, ValueError)
    assert (tmp_path / "out1.txt").read_text() == "1,3,6"
    assert not (tmp_path / "out2.txt").exists()
    assert summarize_outcomes(outcomes) == {"succeeded": 1, "failed": 1, "failed_keys": ["B"]}


def test_fail_fast_raises_on_first_render_error(table, tmp_path):
    def render(sub_table):
        if sub_table["group"].iloc[0] == "B":
            raise ValueError("bad group")
        return _values_text(sub_table)

    with pytest.raises(RenderError):
        export(table, "group", ["A", "B", "C"], render, _numbered(tmp_path), config=ExportConfig(fail_fast=True))
    assert (tmp_path / "out1.txt").read_text() == "1,3,6"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["out1.txt"]


def test_persist_failure_is_attributed_to_destination(table, tmp_path):
    def persist(artifact, destination, config):
        if destination.name == "out1.txt":
            raise OSError("disk full")
        destination.write_text(artifact)

    outcomes = export(table, "group", ["A", "B"], _values_text, _numbered(tmp_path), persist=persist)

    assert isinstance(outcomes[0].error, PersistError)
    assert outcomes[0].error.destination == tmp_path / "out1.txt"
    assert outcomes[1].ok
    assert (tmp_path / "out2.txt").read_text() == "2,5"


def test_fail_fast_raises_on_persist_error(table, tmp_path):
    def persist(artifact, destination, config):
        raise OSError("read-only")

    with pytest.raises(PersistError):
        export(table, "group", ["A"], _values_text, _numbered(tmp_path), config=ExportConfig(fail_fast=True), persist=persist)


def test_unsavable_artifact_becomes_persist_error(table, tmp_path):
    outcomes = export(table, "group", ["A"], lambda sub: object(), _numbered(tmp_path))
    assert isinstance(outcomes[0].error, PersistError)


def test_empty_table_and_unknown_column(tmp_path):
    with pytest.raises(EmptyTableError):
        export(pd.DataFrame({"group": [], "value": []}), "group", [], _values_text, _numbered(tmp_path))
    with pytest.raises(GroupKeyError):
        export(pd.DataFrame({"group": ["A"]}), "kind", ["A"], _values_text, _numbered(tmp_path))


def _bar_figure(sub_table):
    fig, ax = plt.subplots()
    ax.bar(range(len(sub_table)), sub_table["value"])
    return fig


@pytest.mark.parametrize("extension, magic", [("png", b"\x89PNG"), ("svg", b"<?xml"), ("pdf", b"%PDF")])
def test_figures_are_titled_and_saved_identically_twice(table, tmp_path, extension, magic):
    first = export(table, "group", ["A", "C"], _bar_figure, filename_destination(tmp_path / "one", extension))
    second = export(table, "group", ["A", "C"], _bar_figure, filename_destination(tmp_path / "two", extension))

    assert all(o.ok for o in first + second)
    for name in (f"A.{extension}", f"C.{extension}"):
        one = (tmp_path / "one" / name).read_bytes()
        assert one.startswith(magic)
        assert one == (tmp_path / "two" / name).read_bytes()
    assert plt.get_fignums() == []


def test_many_groups_keep_one_figure_open_at_a_time(tmp_path):
    df = pd.DataFrame({"group": [f"g{i:02d}" for i in range(25)], "value": range(25)})
    open_counts = []

    def render(sub_table):
        fig = _bar_figure(sub_table)
        open_counts.append(len(plt.get_fignums()))
        return fig

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        outcomes = export(df, "group", list(df["group"]), render, filename_destination(tmp_path))

    assert all(o.ok for o in outcomes)
    assert len(list(tmp_path.iterdir())) == 25
    assert max(open_counts) == 1
    assert not [w for w in caught if "More than 20 figures" in str(w.message)]
    assert plt.get_fignums() == []


class _Unprintable:
    def __str__(self):
        raise ValueError("no display name")


def test_figure_is_closed_when_titling_fails(tmp_path):
    key = _Unprintable()
    df = pd.DataFrame({"group": [key, key], "value": [1, 2]})

    outcomes = export(df, "group", [key], _bar_figure, lambda index, key_value: tmp_path / f"{index}.png")

    assert isinstance(outcomes[0].error, RenderError)
    assert isinstance(outcomes[0].error.cause, ValueError)
    assert list(tmp_path.iterdir()) == []
    assert plt.get_fignums() == []


def test_tag_artifact_sets_axes_title():
    fig, ax = plt.subplots()
    tag_artifact(fig, "setosa")
    assert ax.get_title() == "setosa"

    fig2, _ = plt.subplots(1, 2)
    tag_artifact(fig2, 3)
    assert fig2._suptitle.get_text() == "3"
    assert tag_artifact("text", "A") == "text"


def test_filename_destination_sanitises_keys(tmp_path):
    destination_for = filename_destination(tmp_path, extension=".svg", template="{index:02d}_{key}.{ext}")
    assert destination_for(0, "a/b") == tmp_path / "00_a_b.svg"
    assert destination_for(4, 2.5) == tmp_path / "04_2.5.svg"


def test_resolve_key_order_uses_categories():
    df = pd.DataFrame({"size": pd.Categorical(["M", "S", "L", "S"], categories=["S", "M", "L", "XL"])})
    assert resolve_key_order(df, "size") == ["S", "M", "L"]


def test_resolve_key_order_needs_a_rank_for_every_value(table):
    assert resolve_key_order(table, "group", ["C", "A", "B", "D"]) == ["C", "A", "B"]
    assert resolve_key_order(table, "group") == ["A", "B", "C"]
    with pytest.raises(UnrankedKeyError) as exc:
        resolve_key_order(table, "group", ["A", "B"])
    assert exc.value.unranked == ["C"]


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("GROUPED_EXPORT_FAIL_FAST", "true")
    monkeypatch.setenv("GROUPED_EXPORT_DPI", "72")
    config = ExportConfig.from_env()
    assert config.fail_fast is True
    assert config.dpi == 72

    monkeypatch.delenv("GROUPED_EXPORT_FAIL_FAST")
    assert ExportConfig.from_env().fail_fast is False
