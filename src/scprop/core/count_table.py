"""
Canonical count table for compositional analysis.

This module turns raw observation records (one row per cell, or one row per
sample/cell-group pair with a count column) into a ``CountTable``: a dense,
read-only ``(n_samples, n_groups)`` count matrix with per-sample totals and
per-sample covariates. Every downstream component consumes this table; it is
validated here so that inference never starts on malformed input.
"""

from dataclasses import dataclass, field
from typing import (
    Any,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import numpy as np
import pandas as pd

from ..errors import MalformedInputError

# Column names used by the long (sample, group) view and by adapter records
SAMPLE_COLUMN = "sample"
GROUP_COLUMN = "group"
COUNT_COLUMN = "count"

# ==============================================================================
# Format adapter contract
# ==============================================================================


@runtime_checkable
class FormatAdapter(Protocol):
    """Converts an external single-cell container into observation tuples.

    Implementations yield ``(sample, group, count, covariates)`` tuples where
    ``covariates`` maps covariate names to the sample's values.
    """

    def records(self) -> Iterable[Tuple[Hashable, Hashable, int, Mapping[str, Any]]]:
        ...


# ==============================================================================
# Count table
# ==============================================================================


@dataclass(frozen=True, eq=False, init=False)
class CountTable:
    """Read-only per-sample, per-group counts with per-sample covariates.

    Parameters
    ----------
    counts : np.ndarray, shape ``(n_samples, n_groups)``
        Non-negative integer counts. Stored read-only.
    samples : tuple
        Sample identifiers, in row order.
    groups : tuple
        Cell-group identifiers, in column order.
    covariates : pd.DataFrame
        One row per sample (indexed by sample identifier), one column per
        covariate. The table keeps its own copy; the ``covariates`` property
        hands out copies, so edits to it never reach the table.
    """

    counts: np.ndarray
    samples: Tuple[Hashable, ...]
    groups: Tuple[Hashable, ...]
    _covariates: pd.DataFrame = field(repr=False)

    def __init__(
        self,
        counts: np.ndarray,
        samples: Sequence[Hashable],
        groups: Sequence[Hashable],
        covariates: pd.DataFrame,
    ):
        counts = np.array(counts, dtype=np.int64)
        counts.setflags(write=False)
        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "samples", tuple(samples))
        object.__setattr__(self, "groups", tuple(groups))
        object.__setattr__(
            self, "_covariates", covariates.loc[list(self.samples)].copy()
        )
        if counts.shape != (len(self.samples), len(self.groups)):
            raise MalformedInputError(
                f"Count matrix shape {counts.shape} does not match "
                f"{len(self.samples)} samples x {len(self.groups)} groups"
            )

    # --------------------------------------------------------------------------

    @property
    def covariates(self) -> pd.DataFrame:
        """Copy of the per-sample covariate table, indexed by sample."""
        return self._covariates.copy()

    @property
    def n_samples(self) -> int:
        """Number of samples."""
        return len(self.samples)

    @property
    def n_groups(self) -> int:
        """Number of cell groups."""
        return len(self.groups)

    @property
    def totals(self) -> np.ndarray:
        """Per-sample total cell count, shape ``(n_samples,)``."""
        return self.counts.sum(axis=1)

    @property
    def proportions(self) -> np.ndarray:
        """Observed per-sample proportions, shape ``(n_samples, n_groups)``."""
        return self.counts / self.totals[:, None]

    # --------------------------------------------------------------------------

    def to_long(self) -> pd.DataFrame:
        """Long view keyed by ``(sample, group)`` with totals and proportions."""
        sample_idx, group_idx = np.indices(self.counts.shape)
        totals = self.totals
        long = pd.DataFrame(
            {
                SAMPLE_COLUMN: np.asarray(self.samples, dtype=object)[
                    sample_idx.ravel()
                ],
                GROUP_COLUMN: np.asarray(self.groups, dtype=object)[
                    group_idx.ravel()
                ],
                COUNT_COLUMN: self.counts.ravel(),
                "total": totals[sample_idx.ravel()],
            }
        )
        long["proportion"] = long[COUNT_COLUMN] / long["total"]
        return long

    # --------------------------------------------------------------------------

    def with_counts(self, counts: np.ndarray) -> "CountTable":
        """Return a new table with the same labels and covariates."""
        return CountTable(
            counts=counts,
            samples=self.samples,
            groups=self.groups,
            covariates=self._covariates,
        )


# ==============================================================================
# Normalizer
# ==============================================================================


def _ordered_levels(values: pd.Series) -> List[Hashable]:
    """Level order: category order if categorical, else sorted if sortable."""
    if isinstance(values.dtype, pd.CategoricalDtype):
        present = set(values.unique())
        return [c for c in values.cat.categories if c in present]
    unique = list(pd.unique(values))
    try:
        return sorted(unique)
    except TypeError:
        # Mixed label types keep first-appearance order
        return unique


# ------------------------------------------------------------------------------


def _validate_counts(values: pd.Series) -> np.ndarray:
    """Coerce a count column to int64, rejecting negative or fractional values."""
    numeric = pd.to_numeric(values, errors="coerce")
    if numeric.isna().any():
        bad = values[numeric.isna()].head(3).tolist()
        raise MalformedInputError(f"Counts must be numeric, got {bad}")
    arr = numeric.to_numpy(dtype=np.float64)
    if (arr < 0).any():
        raise MalformedInputError(
            f"Counts must be non-negative, got minimum {arr.min()}"
        )
    if not np.all(np.equal(np.floor(arr), arr)):
        raise MalformedInputError("Counts must be integers")
    return arr.astype(np.int64)


# ------------------------------------------------------------------------------


def normalize_counts(
    records,
    sample_col: str = SAMPLE_COLUMN,
    group_col: str = GROUP_COLUMN,
    count_col: Optional[str] = None,
    covariate_cols: Optional[Sequence[str]] = None,
) -> CountTable:
    """Validate raw observation records and reshape them into a CountTable.

    Parameters
    ----------
    records : pd.DataFrame or DataFrame-like
        Raw observations. Either one row per cell (``count_col=None``) or one
        row per (sample, group) pair carrying a count column.
    sample_col : str, default="sample"
        Column identifying the sample.
    group_col : str, default="group"
        Column identifying the cell group.
    count_col : str, optional
        Column holding counts. If None, rows are counted.
    covariate_cols : sequence of str, optional
        Per-sample covariates to keep. Defaults to every remaining column.

    Returns
    -------
    CountTable
        Canonical table with samples as rows and cell groups as columns.

    Raises
    ------
    MalformedInputError
        On missing columns, duplicate (sample, group) pairs, negative or
        fractional counts, covariates that vary within a sample, or samples
        whose total count is zero.
    """
    if isinstance(records, pd.DataFrame):
        df = records
    else:
        try:
            df = pd.DataFrame(records)
        except (TypeError, ValueError) as e:
            raise MalformedInputError(
                f"Records cannot be read as a table: {e}"
            ) from e

    if len(df) == 0:
        raise MalformedInputError("No observations were provided")

    required = [sample_col, group_col] + ([count_col] if count_col else [])
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise MalformedInputError(
            f"Missing required columns {missing}; available: {list(df.columns)}"
        )

    if df[sample_col].isna().any() or df[group_col].isna().any():
        raise MalformedInputError("Sample and group identifiers must not be missing")

    explicit_covariates = covariate_cols is not None
    if not explicit_covariates:
        covariate_cols = [c for c in df.columns if c not in required]
    else:
        covariate_cols = list(covariate_cols)
        absent = [c for c in covariate_cols if c not in df.columns]
        if absent:
            raise MalformedInputError(f"Unknown covariate columns {absent}")

    samples = _ordered_levels(df[sample_col])
    groups = _ordered_levels(df[group_col])

    # Build the dense count matrix
    if count_col is not None:
        duplicated = df.duplicated([sample_col, group_col], keep=False)
        if duplicated.any():
            pairs = (
                df.loc[duplicated, [sample_col, group_col]]
                .drop_duplicates()
                .head(3)
                .itertuples(index=False, name=None)
            )
            raise MalformedInputError(
                f"Duplicate (sample, group) pairs: {list(pairs)}"
            )
        values = _validate_counts(df[count_col])
        long = pd.DataFrame(
            {
                "s": df[sample_col].to_numpy(),
                "g": df[group_col].to_numpy(),
                "n": values,
            }
        )
        matrix = long.pivot(index="s", columns="g", values="n")
    else:
        matrix = (
            df.groupby([sample_col, group_col], observed=True)
            .size()
            .unstack(fill_value=0)
        )
    matrix = matrix.reindex(index=samples, columns=groups).fillna(0)
    counts = matrix.to_numpy(dtype=np.int64)

    empty = [s for s, total in zip(samples, counts.sum(axis=1)) if total == 0]
    if empty:
        raise MalformedInputError(f"Samples with zero total count: {empty}")

    # Per-sample covariates must not vary within a sample. Cell-level columns
    # picked up by default (barcodes, QC metrics) are dropped instead.
    if covariate_cols:
        n_distinct = df.groupby(sample_col, observed=True)[
            covariate_cols
        ].nunique(dropna=False)
        varying = n_distinct.columns[(n_distinct > 1).any(axis=0)].tolist()
        if varying and explicit_covariates:
            raise MalformedInputError(
                f"Covariates {varying} vary within a sample; covariates must "
                "be constant per sample"
            )
        covariate_cols = [c for c in covariate_cols if c not in varying]
    if covariate_cols:
        covariates = (
            df.groupby(sample_col, observed=True)[covariate_cols]
            .first()
            .reindex(samples)
        )
    else:
        covariates = pd.DataFrame(index=pd.Index(samples, name=sample_col))
    covariates.index.name = sample_col

    return CountTable(
        counts=counts, samples=samples, groups=groups, covariates=covariates
    )


# ------------------------------------------------------------------------------


def from_records(
    records: Iterable[Tuple[Hashable, Hashable, int, Mapping[str, Any]]],
) -> CountTable:
    """Build a CountTable from ``(sample, group, count, covariates)`` tuples.

    This is the entry point for format adapters; see ``FormatAdapter``.

    Raises
    ------
    MalformedInputError
        If a record is not a 4-tuple with a covariate mapping, or if the
        resulting table fails ``normalize_counts`` validation.
    """
    if isinstance(records, FormatAdapter):
        records = records.records()

    rows = []
    try:
        for record in records:
            sample, group, count, covariates = record
            row = dict(covariates or {})
            clash = {SAMPLE_COLUMN, GROUP_COLUMN, COUNT_COLUMN} & set(row)
            if clash:
                raise MalformedInputError(
                    f"Covariate names {sorted(clash)} are reserved"
                )
            row.update(
                {SAMPLE_COLUMN: sample, GROUP_COLUMN: group, COUNT_COLUMN: count}
            )
            rows.append(row)
    except (TypeError, ValueError) as e:
        if isinstance(e, MalformedInputError):
            raise
        raise MalformedInputError(
            "Adapter records must be (sample, group, count, covariates) "
            f"tuples: {e}"
        ) from e

    return normalize_counts(
        pd.DataFrame(rows),
        sample_col=SAMPLE_COLUMN,
        group_col=GROUP_COLUMN,
        count_col=COUNT_COLUMN,
    )
