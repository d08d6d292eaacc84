"""
Model formula parsing.

Fixed effects use patsy's formula language: ``~ type + age``, ``~ 0 + type``,
``~ type - 1``. Two additions are lifted out before patsy sees the text:

- random intercepts ``(1 | grouping)``, replaced by placeholder names;
- names in backticks, rewritten to patsy ``Q("...")`` lookups.

Only main effects of plain covariates are accepted; interactions and
transformations are rejected.
"""

import ast
import re
from typing import List, Union

from patsy import ModelDesc, PatsyError

from ..errors import FormulaError
from .terms import CovariateTerm, Formula, RandomInterceptTerm

_NAME = r"`[^`]+`|[A-Za-z_.][A-Za-z0-9_.]*"
_RANDOM_RE = re.compile(rf"\(\s*1\s*\|\s*({_NAME})\s*\)")
_BACKTICK_RE = re.compile(r"`([^`]+)`")
_PLACEHOLDER_RE = re.compile(r"^__random_intercept_(\d+)__$")
_QUOTED_RE = re.compile(r"^Q\((.*)\)$")


def _unquote(name: str) -> str:
    return name[1:-1] if name.startswith("`") else name


def _covariate_name(code: str, text: str) -> str:
    """Covariate name behind a patsy factor expression."""
    if code.isidentifier():
        return code
    quoted = _QUOTED_RE.match(code)
    if quoted is not None:
        try:
            name = ast.literal_eval(quoted.group(1))
        except (ValueError, SyntaxError):
            name = None
        if isinstance(name, str):
            return name
    raise FormulaError(
        f"Term {code!r} in {text!r} is not a covariate name; write names with "
        "special characters in backticks"
    )


# ------------------------------------------------------------------------------


def parse_formula(formula: Union[str, Formula]) -> Formula:
    """Parse a formula string into a ``Formula``; formulas pass through.

    Raises
    ------
    FormulaError
        On syntax errors, a left-hand side, interaction terms, or terms that
        are not plain covariate names.

    Examples
    --------
    >>> parse_formula("~ type + (1 | batch)").covariates
    ('type', 'batch')
    >>> parse_formula("~ 0 + type").intercept
    False
    """
    if isinstance(formula, Formula):
        return formula
    if not isinstance(formula, str) or not formula.strip():
        raise FormulaError(f"Formula must be a non-empty string, got {formula!r}")
    text = formula.strip()
    if not text.startswith("~"):
        raise FormulaError(f"Formula {text!r} must start with '~'")

    groupings: List[str] = []

    def _lift(match: re.Match) -> str:
        groupings.append(_unquote(match.group(1)))
        return f"__random_intercept_{len(groupings) - 1}__"

    rewritten = _RANDOM_RE.sub(_lift, text)
    rewritten = _BACKTICK_RE.sub(lambda m: f"Q({m.group(1)!r})", rewritten)
    try:
        desc = ModelDesc.from_formula(rewritten)
    except PatsyError as err:
        raise FormulaError(f"Cannot parse formula {text!r}: {err}") from err

    if desc.lhs_termlist:
        raise FormulaError(f"Formula {text!r} must not have a left-hand side")

    intercept = False
    fixed, random = [], []
    for term in desc.rhs_termlist:
        if not term.factors:
            intercept = True
            continue
        if len(term.factors) > 1:
            raise FormulaError(
                f"Interaction term {term.name()!r} in {text!r} is not supported"
            )
        code = term.factors[0].code
        placeholder = _PLACEHOLDER_RE.match(code)
        if placeholder is not None:
            parsed = RandomInterceptTerm(groupings[int(placeholder.group(1))])
            if parsed not in random:
                random.append(parsed)
        else:
            parsed = CovariateTerm(_covariate_name(code, text))
            if parsed not in fixed:
                fixed.append(parsed)

    return Formula(intercept=intercept, fixed=tuple(fixed), random=tuple(random))
