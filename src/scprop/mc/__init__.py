"""Bayesian model comparison for SCPROP.

Models fitted with ``FitConfig(enable_loo=True)`` retain pointwise
log-likelihoods ``(draws, n_samples, n_groups)``; this module turns them into
PSIS-LOO estimates of out-of-sample predictive accuracy and ranks models.

Quick start
-----------

>>> from scprop.mc import compare_models
>>> mc = compare_models({"type": fit_type, "null": fit_null})
>>> mc.rank()              # pandas DataFrame, best model first
>>> print(mc.summary())    # ranking plus Pareto k diagnostics

Low-level functions
-------------------
- ``compute_psis_loo()``: NumPy/SciPy PSIS-LOO with Pareto fitting.
- ``psis_loo_summary()``: text summary of a PSIS-LOO result.
"""

from ._psis_loo import compute_psis_loo, psis_loo_summary
from .results import ModelComparison, compare_models

__all__ = [
    "compute_psis_loo",
    "psis_loo_summary",
    "ModelComparison",
    "compare_models",
]
