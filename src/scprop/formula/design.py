"""
Design matrix schemas.

A ``DesignSchema`` is the immutable resolution of a parsed ``Formula`` against
a covariate table. The fixed-effect columns come from patsy: its ``DesignInfo``
records which covariates are categorical, their levels and coding, and is
reused through ``build_design_matrices`` for new covariate values (prediction
and simulation). Column names are rewritten from patsy's ``type[T.cancer]``
form to ``typecancer`` and ordered intercept first, then main effects in
declaration order. Random-intercept groupings are resolved alongside.
"""

from dataclasses import dataclass
from typing import Hashable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from patsy import EvalEnvironment, PatsyError, build_design_matrices, dmatrix
from patsy.design_info import DesignInfo

from ..errors import FormulaError, MalformedInputError
from .contrast import INTERCEPT
from .parser import parse_formula
from .terms import Formula

# ==============================================================================
# Column and grouping specifications
# ==============================================================================


@dataclass(frozen=True)
class DesignColumn:
    """One column of a design matrix.

    Parameters
    ----------
    name : str
        Column name: ``(Intercept)``, the covariate name for numeric
        covariates, or ``<covariate><level>`` for factor levels.
    covariate : str, optional
        Covariate the column derives from; None for the intercept.
    level : hashable, optional
        Factor level the column indicates; None for intercept/numeric columns.
    baseline : bool
        Whether the column sets a baseline abundance (the intercept, or a
        full-coded factor in a formula without intercept) rather than a
        contrast against one.
    """

    name: str
    covariate: Optional[str] = None
    level: Optional[Hashable] = None
    baseline: bool = False


@dataclass(frozen=True)
class FactorCoding:
    """Coding of a categorical covariate; ``reference`` is None when full."""

    covariate: str
    levels: Tuple[Hashable, ...]
    reference: Optional[Hashable]

    @property
    def coded_levels(self) -> Tuple[Hashable, ...]:
        """Levels that receive their own indicator column."""
        return tuple(
            lv for lv in self.levels if self.reference is None or lv != self.reference
        )


@dataclass(frozen=True)
class RandomEffectGrouping:
    """Levels of a covariate carrying a random intercept."""

    covariate: str
    levels: Tuple[Hashable, ...]

    @property
    def n_levels(self) -> int:
        return len(self.levels)


# ==============================================================================
# Helpers
# ==============================================================================


def _factor_levels(values: pd.Series) -> Tuple[Hashable, ...]:
    if isinstance(values.dtype, pd.CategoricalDtype):
        present = set(values.dropna().unique())
        return tuple(c for c in values.cat.categories if c in present)
    unique = list(pd.unique(values.dropna()))
    try:
        return tuple(sorted(unique))
    except TypeError:
        return tuple(unique)


def _require_columns(covariates: pd.DataFrame, names: Sequence[str]) -> None:
    missing = [n for n in names if n not in covariates.columns]
    if missing:
        raise FormulaError(
            f"Formula references unknown covariates {missing}; available: "
            f"{list(covariates.columns)}"
        )


def _require_complete(covariates: pd.DataFrame, names: Sequence[str]) -> None:
    for name in names:
        if covariates[name].isna().any():
            raise MalformedInputError(f"Covariate '{name}' has missing values")


def _patsy_frame(
    covariates: pd.DataFrame, names: Sequence[str], resolving: bool
) -> pd.DataFrame:
    """Covariate columns in the form patsy codes them consistently.

    Unused categories are dropped when resolving so they get no column; when
    building, categoricals become plain objects so patsy matches them against
    the resolved levels instead of comparing category sets.
    """
    frame = covariates.loc[:, list(names)].copy()
    for name in names:
        if isinstance(frame[name].dtype, pd.CategoricalDtype):
            if resolving:
                frame[name] = frame[name].cat.remove_unused_categories()
            else:
                frame[name] = frame[name].astype(object)
    return frame


# ==============================================================================
# Design schema
# ==============================================================================


@dataclass(frozen=True)
class DesignSchema:
    """Immutable mapping from covariates to a numeric design matrix.

    Build with ``DesignSchema.from_formula``; never construct directly.

    Parameters
    ----------
    formula : Formula
        Parsed formula.
    design_info : patsy.DesignInfo
        patsy's resolution of the fixed-effect terms.
    columns : tuple of DesignColumn
        Columns in declaration order.
    order : tuple of int
        Position in patsy's column order of each entry of ``columns``.
    factors : tuple of FactorCoding
        Coding of each categorical fixed effect.
    random_effects : tuple of RandomEffectGrouping
        Random-intercept groupings in declaration order.
    """

    formula: Formula
    design_info: DesignInfo
    columns: Tuple[DesignColumn, ...]
    order: Tuple[int, ...]
    factors: Tuple[FactorCoding, ...]
    random_effects: Tuple[RandomEffectGrouping, ...]

    # --------------------------------------------------------------------------
    # Construction
    # --------------------------------------------------------------------------

    @classmethod
    def from_formula(
        cls, formula: Union[str, Formula], covariates: pd.DataFrame
    ) -> "DesignSchema":
        """Resolve a formula against a per-sample covariate table.

        Parameters
        ----------
        formula : str or Formula
            Formula to resolve.
        covariates : pd.DataFrame
            One row per sample.

        Returns
        -------
        DesignSchema
            Schema with columns ordered intercept first, then main effects in
            declaration order.

        Raises
        ------
        FormulaError
            If the formula references unknown covariates or yields no columns.
        MalformedInputError
            If a referenced covariate has missing values.
        """
        formula = parse_formula(formula)
        _require_columns(covariates, formula.covariates)
        _require_complete(covariates, formula.covariates)
        if not formula.intercept and not formula.fixed:
            raise FormulaError(f"Formula {formula} produces an empty design")

        desc = formula.model_desc()
        frame = _patsy_frame(covariates, formula.fixed_covariates, resolving=True)
        try:
            design_info = dmatrix(
                desc, frame, eval_env=EvalEnvironment([{}]), NA_action="raise"
            ).design_info
        except PatsyError as err:
            raise FormulaError(f"Cannot resolve formula {formula}: {err}") from err

        # model_desc lists the intercept first, then one term per fixed effect
        parsed_terms = ((None,) if formula.intercept else ()) + formula.fixed
        columns, order, factors = [], [], []
        for term, parsed in zip(desc.rhs_termlist, parsed_terms):
            span = design_info.term_slices[term]
            positions = list(range(span.start, span.stop))
            order.extend(positions)
            if parsed is None:
                columns.append(DesignColumn(INTERCEPT, baseline=True))
                continue
            factor = term.factors[0]
            info = design_info.factor_infos[factor]
            if info.type == "numerical":
                columns.append(DesignColumn(parsed.name, covariate=parsed.name))
                continue
            levels = tuple(info.categories)
            contrast = design_info.term_codings[term][0].contrast_matrices[factor]
            full = contrast.matrix.shape[1] == len(levels)
            coded = [levels[int(np.argmax(contrast.matrix[:, k]))]
                     for k in range(contrast.matrix.shape[1])]
            reference = None if full else next(lv for lv in levels if lv not in coded)
            factors.append(FactorCoding(parsed.name, levels, reference))
            columns.extend(
                DesignColumn(
                    f"{parsed.name}{level}",
                    covariate=parsed.name,
                    level=level,
                    baseline=full,
                )
                for level in coded
            )

        names = [c.name for c in columns]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise FormulaError(
                f"Formula {formula} produces ambiguous column names {duplicated}"
            )

        random_effects = tuple(
            RandomEffectGrouping(name, _factor_levels(covariates[name].astype(object)))
            for name in formula.random_groupings
        )
        return cls(
            formula=formula,
            design_info=design_info,
            columns=tuple(columns),
            order=tuple(order),
            factors=tuple(factors),
            random_effects=random_effects,
        )

    # --------------------------------------------------------------------------
    # Accessors
    # --------------------------------------------------------------------------

    @property
    def column_names(self) -> Tuple[str, ...]:
        """Ordered design column names."""
        return tuple(c.name for c in self.columns)

    @property
    def n_columns(self) -> int:
        return len(self.columns)

    @property
    def baseline_mask(self) -> np.ndarray:
        """Boolean mask of baseline columns."""
        return np.array([c.baseline for c in self.columns], dtype=bool)

    @property
    def has_intercept(self) -> bool:
        return self.formula.intercept

    @property
    def numeric(self) -> Tuple[str, ...]:
        """Fixed-effect covariates entering as numeric columns."""
        coded = {f.covariate for f in self.factors}
        return tuple(c for c in self.formula.fixed_covariates if c not in coded)

    @property
    def covariates(self) -> Tuple[str, ...]:
        """Covariates the schema reads."""
        return self.formula.covariates

    # --------------------------------------------------------------------------
    # Matrix building
    # --------------------------------------------------------------------------

    def build(self, covariates: pd.DataFrame) -> np.ndarray:
        """Numeric design matrix, shape ``(n_rows, n_columns)``.

        Raises
        ------
        FormulaError
            If a covariate is missing or a factor holds an unseen level.
        MalformedInputError
            If a covariate has missing values.
        """
        names = self.formula.fixed_covariates
        _require_columns(covariates, names)
        _require_complete(covariates, names)
        for coding in self.factors:
            unseen = set(covariates[coding.covariate].unique()) - set(coding.levels)
            if unseen:
                raise FormulaError(
                    f"Covariate '{coding.covariate}' has levels "
                    f"{sorted(map(str, unseen))} not seen when the design was "
                    "resolved"
                )
        frame = _patsy_frame(covariates, names, resolving=False)
        try:
            (matrix,) = build_design_matrices(
                [self.design_info], frame, NA_action="raise"
            )
        except PatsyError as err:
            raise FormulaError(
                f"Cannot build the design of {self.formula}: {err}"
            ) from err
        return np.asarray(matrix, dtype=np.float64)[:, list(self.order)]

    # --------------------------------------------------------------------------

    def random_effect_index(self, covariates: pd.DataFrame) -> np.ndarray:
        """Level index per row and grouping, shape ``(n_rows, n_groupings)``.

        Levels not seen when the schema was resolved get index ``-1`` and
        contribute no random effect.
        """
        _require_columns(covariates, self.formula.random_groupings)
        index = np.full((len(covariates), len(self.random_effects)), -1, np.int32)
        for f, grouping in enumerate(self.random_effects):
            lookup = {level: i for i, level in enumerate(grouping.levels)}
            index[:, f] = [
                lookup.get(v, -1) for v in covariates[grouping.covariate].astype(object)
            ]
        return index

    # --------------------------------------------------------------------------

    def reduced_mask(self, formula: Union[str, Formula]) -> np.ndarray:
        """Columns kept by a reduced formula.

        Baseline columns are always kept; other columns are kept when their
        covariate appears as a fixed effect of ``formula``.

        Raises
        ------
        FormulaError
            If ``formula`` references covariates this schema does not use.
        """
        reduced = parse_formula(formula)
        extra = [c for c in reduced.covariates if c not in self.covariates]
        if extra:
            raise FormulaError(
                f"Reduced formula {reduced} references covariates {extra} "
                f"absent from {self.formula}"
            )
        kept = set(reduced.fixed_covariates)
        return np.array(
            [c.baseline or c.covariate in kept for c in self.columns], dtype=bool
        )


# ==============================================================================
# Cross-formula validation
# ==============================================================================


def validate_designs(composition: Formula, variability: Formula) -> None:
    """Check that a variability formula is compatible with its composition one.

    Raises
    ------
    FormulaError
        If the variability formula references covariates absent from the
        composition formula, declares random effects, or has no intercept.
    """
    absent = [
        c for c in variability.fixed_covariates if c not in composition.covariates
    ]
    if absent:
        raise FormulaError(
            f"Variability formula {variability} references covariates {absent} "
            f"absent from the composition formula {composition}"
        )
    if variability.random:
        raise FormulaError(
            f"Variability formula {variability} cannot declare random effects"
        )
    if not variability.intercept:
        raise FormulaError(
            f"Variability formula {variability} must keep its intercept; it "
            "anchors the mean-variability association"
        )
