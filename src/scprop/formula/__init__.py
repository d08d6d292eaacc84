"""
Formula parsing, design matrix resolution and linear contrasts.
"""

from .terms import CovariateTerm, RandomInterceptTerm, Formula
from .parser import parse_formula
from .design import (
    DesignColumn,
    FactorCoding,
    RandomEffectGrouping,
    DesignSchema,
    validate_designs,
)
from .contrast import INTERCEPT, LinearContrast, parse_contrast

__all__ = [
    # AST
    "CovariateTerm",
    "RandomInterceptTerm",
    "Formula",
    "parse_formula",
    # Design
    "DesignColumn",
    "FactorCoding",
    "RandomEffectGrouping",
    "DesignSchema",
    "validate_designs",
    # Contrasts
    "INTERCEPT",
    "LinearContrast",
    "parse_contrast",
]
