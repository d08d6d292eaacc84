"""
Term lists of model formulas.

A formula such as ``~ type + age + (1 | batch)`` is parsed once into a
``Formula``: the fixed-effect terms patsy parsed, plus the random intercepts
patsy has no syntax for. Design matrices are resolved from these terms, never
from the formula string.
"""

import keyword
from dataclasses import dataclass
from typing import Tuple

from patsy import INTERCEPT as PATSY_INTERCEPT
from patsy import EvalFactor, ModelDesc, Term

# ==============================================================================
# Terms
# ==============================================================================


@dataclass(frozen=True)
class CovariateTerm:
    """A fixed main effect of one covariate."""

    name: str

    @property
    def code(self) -> str:
        """Expression patsy evaluates to fetch the covariate."""
        if self.name.isidentifier() and not keyword.iskeyword(self.name):
            return self.name
        return f"Q({self.name!r})"

    def __str__(self) -> str:
        return self.name if self.name.isidentifier() else f"`{self.name}`"


# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class RandomInterceptTerm:
    """A random intercept per level of a grouping covariate, ``(1 | name)``."""

    grouping: str

    def __str__(self) -> str:
        name = self.grouping if self.grouping.isidentifier() else f"`{self.grouping}`"
        return f"(1 | {name})"


# ==============================================================================
# Formula
# ==============================================================================


@dataclass(frozen=True)
class Formula:
    """Parsed right-hand side of a model formula.

    Parameters
    ----------
    intercept : bool
        Whether the design has an intercept column.
    fixed : tuple of CovariateTerm
        Main effects in declaration order, without duplicates.
    random : tuple of RandomInterceptTerm
        Random intercepts in declaration order, without duplicates.
    """

    intercept: bool = True
    fixed: Tuple[CovariateTerm, ...] = ()
    random: Tuple[RandomInterceptTerm, ...] = ()

    # --------------------------------------------------------------------------

    @property
    def fixed_covariates(self) -> Tuple[str, ...]:
        """Names of covariates entering as fixed effects."""
        return tuple(t.name for t in self.fixed)

    @property
    def random_groupings(self) -> Tuple[str, ...]:
        """Names of covariates grouping random intercepts."""
        return tuple(t.grouping for t in self.random)

    @property
    def covariates(self) -> Tuple[str, ...]:
        """Every covariate the formula references, in declaration order."""
        seen = []
        for name in self.fixed_covariates + self.random_groupings:
            if name not in seen:
                seen.append(name)
        return tuple(seen)

    # --------------------------------------------------------------------------

    def model_desc(self) -> ModelDesc:
        """Fixed-effect part as a patsy ``ModelDesc`` (no left-hand side)."""
        terms = [PATSY_INTERCEPT] if self.intercept else []
        terms += [Term([EvalFactor(t.code)]) for t in self.fixed]
        return ModelDesc([], terms)

    def __str__(self) -> str:
        parts = ["1" if self.intercept else "0"]
        parts += [str(t) for t in self.fixed]
        parts += [str(t) for t in self.random]
        return "~ " + " + ".join(parts)
