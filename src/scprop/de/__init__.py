"""Bayesian hypothesis testing of composition and variability effects.

Quick start
-----------

>>> from scprop.de import hypothesis_test
>>> result = hypothesis_test(fitted, ["typecancer - typehealthy"])
>>> result.to_dataframe()           # wide c_/v_ table
>>> result.significant("composition")

Functions
---------
- ``hypothesis_test()``: effect estimates, effect probabilities, ``pH0`` and
  Bayesian FDR per effect and cell group.
- ``compute_bayesian_fdr()`` / ``compute_pefp()`` /
  ``find_pH0_threshold()``: Bayesian error control on ``pH0`` values.
"""

from ._hypothesis import hypothesis_test, summarize_effect, effect_draws
from ._error_control import compute_bayesian_fdr, compute_pefp, find_pH0_threshold
from .results import EffectEstimate, HypothesisTestResult

__all__ = [
    "hypothesis_test",
    "summarize_effect",
    "effect_draws",
    "compute_bayesian_fdr",
    "compute_pefp",
    "find_pH0_threshold",
    "EffectEstimate",
    "HypothesisTestResult",
]
