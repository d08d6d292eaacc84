"""
Linear contrasts over design columns.

A contrast string such as ``"typecancer - typehealthy"`` or
``"(treatedA + treatedB) / 2 - control"`` is parsed into a ``LinearContrast``:
a weight per design column. Names are design column names; names with spaces
or other special characters are written in backticks, and the intercept
column may be written as ``(Intercept)``. The arithmetic is evaluated by
patsy's linear-constraint parser.
"""

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from patsy import PatsyError
from patsy.constraint import linear_constraint

from ..errors import FormulaError, UnknownContrastError

INTERCEPT = "(Intercept)"

# backticked name | bare (Intercept) | plain name not preceded by a digit
_NAME_RE = re.compile(r"`([^`]+)`|(?<![\w.])(\(Intercept\))|(?<![\w.])([A-Za-z_][\w.]*)")

# ==============================================================================
# Linear contrast
# ==============================================================================


@dataclass(frozen=True)
class LinearContrast:
    """A named linear combination of design columns.

    Parameters
    ----------
    label : str
        Text the contrast was parsed from (or the column name).
    weights : tuple of (str, float)
        Non-zero weight per referenced column, in first-reference order.
    """

    label: str
    weights: Tuple[Tuple[str, float], ...]

    @property
    def columns(self) -> Tuple[str, ...]:
        """Referenced column names."""
        return tuple(name for name, _ in self.weights)

    def is_resolvable(self, columns: Sequence[str]) -> bool:
        """Whether every referenced column is in ``columns``."""
        return all(name in columns for name in self.columns)

    def vector(self, columns: Sequence[str]) -> np.ndarray:
        """Weight vector aligned to ``columns``.

        Raises
        ------
        UnknownContrastError
            If a referenced column is absent.
        """
        columns = list(columns)
        vec = np.zeros(len(columns))
        for name, weight in self.weights:
            if name not in columns:
                raise UnknownContrastError(name, columns)
            vec[columns.index(name)] = weight
        return vec

    @classmethod
    def from_column(cls, name: str) -> "LinearContrast":
        """Contrast selecting a single column."""
        return cls(label=name, weights=((name, 1.0),))


# ==============================================================================
# Parser
# ==============================================================================


def _alias(j: int) -> str:
    return f"__col{j}__"


def parse_contrast(text: str, columns: Sequence[str]) -> LinearContrast:
    """Parse a contrast expression against the available design columns.

    Column names are swapped for plain aliases before patsy evaluates the
    expression, so names patsy would split (``(Intercept)``, backticked
    names) reach it as single variables.

    Parameters
    ----------
    text : str
        Linear expression over column names.
    columns : sequence of str
        Design column names that may be referenced.

    Returns
    -------
    LinearContrast
        Parsed contrast with non-zero weights only.

    Raises
    ------
    UnknownContrastError
        If a name is not one of ``columns``.
    FormulaError
        If the expression is malformed, non-linear, an equation, has a
        constant offset, or has every weight cancel out.

    Examples
    --------
    >>> c = parse_contrast("typeB - typeA", ["typeA", "typeB"])
    >>> c.vector(["typeA", "typeB"])
    array([-1.,  1.])
    """
    if not isinstance(text, str) or not text.strip():
        raise FormulaError(f"Contrast must be a non-empty string, got {text!r}")
    text = text.strip()
    columns = list(columns)
    referenced: List[int] = []

    def _substitute(match: re.Match) -> str:
        name = next(g for g in match.groups() if g is not None)
        if name not in columns:
            raise UnknownContrastError(name, columns)
        j = columns.index(name)
        if j not in referenced:
            referenced.append(j)
        return _alias(j)

    aliased = _NAME_RE.sub(_substitute, text)
    if re.search(r"[=,]", aliased):
        raise FormulaError(f"Contrast {text!r} must be an expression, not an equation")

    try:
        with np.errstate(divide="ignore", invalid="ignore"):
            constraint = linear_constraint(
                aliased, [_alias(j) for j in range(len(columns))]
            )
    except PatsyError as err:
        raise FormulaError(f"Cannot parse contrast {text!r}: {err}") from err

    coefs = constraint.coefs[0]
    if not np.all(np.isfinite(coefs)) or not np.all(np.isfinite(constraint.constants)):
        raise FormulaError(f"Division by zero in {text!r}")
    if constraint.constants[0, 0] != 0:
        raise FormulaError(f"Contrast {text!r} has a constant offset")
    weights = tuple((columns[j], float(coefs[j])) for j in referenced if coefs[j] != 0)
    if not weights:
        raise FormulaError(f"Contrast {text!r} has no non-zero weights")
    return LinearContrast(label=text, weights=weights)
