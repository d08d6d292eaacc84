"""Tests for the count data normalizer (scprop.core.count_table)."""

import numpy as np
import pandas as pd
import pytest

from scprop import CountTable, MalformedInputError, from_records, normalize_counts

# --------------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------------


@pytest.fixture
def cells():
    """One row per cell, with a per-sample covariate and a per-cell QC column."""
    return pd.DataFrame(
        {
            "sample": ["s1", "s1", "s1", "s2", "s2", "s1"],
            "cell_type": ["T", "B", "T", "T", "T", "Mono"],
            "condition": ["ctrl", "ctrl", "ctrl", "treated", "treated", "ctrl"],
            "n_genes": [1200, 900, 1500, 1100, 800, 950],
        }
    )


# --------------------------------------------------------------------------
# Per-cell records
# --------------------------------------------------------------------------


def test_cell_rows_are_counted(cells):
    table = normalize_counts(cells, sample_col="sample", group_col="cell_type")
    assert table.samples == ("s1", "s2")
    assert table.groups == ("B", "Mono", "T")
    np.testing.assert_array_equal(table.counts, [[1, 1, 2], [0, 0, 2]])


def test_totals_conserved(cells):
    """Per-sample group counts sum to the number of cells of the sample."""
    table = normalize_counts(cells, sample_col="sample", group_col="cell_type")
    expected = cells.groupby("sample").size().loc[list(table.samples)].to_numpy()
    np.testing.assert_array_equal(table.totals, expected)


def test_cell_level_columns_dropped_by_default(cells):
    table = normalize_counts(cells, sample_col="sample", group_col="cell_type")
    assert list(table.covariates.columns) == ["condition"]
    assert table.covariates.loc["s2", "condition"] == "treated"


def test_explicit_varying_covariate_rejected(cells):
    with pytest.raises(MalformedInputError, match="vary within a sample"):
        normalize_counts(
            cells,
            sample_col="sample",
            group_col="cell_type",
            covariate_cols=["n_genes"],
        )


# --------------------------------------------------------------------------
# Aggregated records
# --------------------------------------------------------------------------


def test_missing_pairs_are_zero(count_records):
    partial = count_records[
        ~((count_records["sample"] == "s0") & (count_records["group"] == "B"))
    ]
    table = normalize_counts(partial, count_col="count")
    assert table.counts[table.samples.index("s0"), table.groups.index("B")] == 0


def test_count_column_values(count_records):
    table = normalize_counts(count_records, count_col="count")
    assert table.counts.shape == (6, 3)
    assert table.counts.dtype == np.int64
    assert table.counts.sum() == count_records["count"].sum()


def test_categorical_order_is_kept():
    df = pd.DataFrame(
        {
            "sample": ["a", "a", "b", "b"],
            "group": pd.Categorical(["z", "y", "z", "y"], categories=["z", "y"]),
            "count": [1, 2, 3, 4],
        }
    )
    table = normalize_counts(df, count_col="count")
    assert table.groups == ("z", "y")
    np.testing.assert_array_equal(table.counts, [[1, 2], [3, 4]])


@pytest.mark.parametrize(
    "counts, message",
    [
        ([1, -1, 2, 3], "non-negative"),
        ([1, 1.5, 2, 3], "integers"),
        ([1, "x", 2, 3], "numeric"),
    ],
)
def test_invalid_counts_rejected(counts, message):
    df = pd.DataFrame(
        {"sample": ["a", "a", "b", "b"], "group": ["x", "y", "x", "y"], "n": counts}
    )
    with pytest.raises(MalformedInputError, match=message):
        normalize_counts(df, count_col="n")


def test_duplicate_pairs_rejected():
    df = pd.DataFrame(
        {"sample": ["a", "a", "b"], "group": ["x", "x", "y"], "n": [1, 2, 3]}
    )
    with pytest.raises(MalformedInputError, match="Duplicate"):
        normalize_counts(df, count_col="n")


def test_zero_total_sample_rejected():
    df = pd.DataFrame(
        {"sample": ["a", "a", "b", "b"], "group": ["x", "y", "x", "y"], "n": [1, 2, 0, 0]}
    )
    with pytest.raises(MalformedInputError, match="zero total"):
        normalize_counts(df, count_col="n")


def test_missing_column_rejected(cells):
    with pytest.raises(MalformedInputError, match="Missing required columns"):
        normalize_counts(cells, sample_col="donor", group_col="cell_type")


def test_empty_records_rejected():
    with pytest.raises(MalformedInputError):
        normalize_counts(pd.DataFrame(columns=["sample", "group"]))


# --------------------------------------------------------------------------
# CountTable
# --------------------------------------------------------------------------


def test_counts_are_read_only(count_records):
    table = normalize_counts(count_records, count_col="count")
    with pytest.raises(ValueError):
        table.counts[0, 0] = 10


def test_long_view(count_records):
    table = normalize_counts(count_records, count_col="count")
    long = table.to_long()
    assert list(long.columns) == ["sample", "group", "count", "total", "proportion"]
    assert len(long) == table.n_samples * table.n_groups
    sums = long.groupby("sample")["proportion"].sum()
    np.testing.assert_allclose(sums.to_numpy(), 1.0)


def test_with_counts_keeps_labels(count_records):
    table = normalize_counts(count_records, count_col="count")
    other = table.with_counts(np.ones_like(table.counts))
    assert other.samples == table.samples
    assert other.groups == table.groups
    assert other is not table
    assert table.counts.sum() != other.counts.sum()


def test_covariates_cannot_be_edited_in_place(count_records):
    table = normalize_counts(
        count_records, count_col="count", covariate_cols=["type", "age"]
    )
    before = table.covariates
    edited = table.covariates
    edited.loc[edited.index[0], "type"] = "metastatic"
    edited["extra"] = 1
    pd.testing.assert_frame_equal(table.covariates, before)
    assert "extra" not in table.covariates.columns


def test_covariates_copied_on_construction():
    frame = pd.DataFrame({"type": ["x", "y"]}, index=["a", "b"])
    table = CountTable(
        counts=np.ones((2, 2)), samples=("a", "b"), groups=("g1", "g2"),
        covariates=frame,
    )
    frame.loc["a", "type"] = "z"
    assert table.covariates.loc["a", "type"] == "x"


def test_shape_mismatch_rejected():
    with pytest.raises(MalformedInputError):
        CountTable(
            counts=np.ones((2, 3)),
            samples=("a", "b"),
            groups=("x", "y"),
            covariates=pd.DataFrame(index=["a", "b"]),
        )


# --------------------------------------------------------------------------
# Format adapter records
# --------------------------------------------------------------------------


class _ListAdapter:
    def __init__(self, rows):
        self.rows = rows

    def records(self):
        return iter(self.rows)


def test_from_records_tuples():
    table = from_records(
        [
            ("a", "x", 3, {"type": "ctrl"}),
            ("a", "y", 1, {"type": "ctrl"}),
            ("b", "x", 2, {"type": "case"}),
            ("b", "y", 5, {"type": "case"}),
        ]
    )
    np.testing.assert_array_equal(table.counts, [[3, 1], [2, 5]])
    assert table.covariates.loc["b", "type"] == "case"


def test_from_records_adapter():
    adapter = _ListAdapter([("a", "x", 3, {}), ("a", "y", 1, {}), ("b", "x", 2, {})])
    table = from_records(adapter)
    np.testing.assert_array_equal(table.counts, [[3, 1], [2, 0]])


def test_from_records_malformed_tuple():
    with pytest.raises(MalformedInputError, match="tuples"):
        from_records([("a", "x", 3)])


def test_from_records_reserved_covariate():
    with pytest.raises(MalformedInputError, match="reserved"):
        from_records([("a", "x", 3, {"count": 1})])
