"""Model comparison results.

- ``ModelComparison``: stores per-model PSIS-LOO results computed on a common
  set of observations and ranks the models by ``elpd_loo``.
- ``compare_models()``: factory accepting a mapping of names to fitted models
  that retained pointwise log-likelihoods.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Mapping

import numpy as np
import pandas as pd

from ._psis_loo import compute_psis_loo, psis_loo_summary

if TYPE_CHECKING:
    from ..mcmc.results import FittedModel

# ---------------------------------------------------------------------------
# Results class
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class ModelComparison:
    """PSIS-LOO comparison of models fitted to the same observations.

    Parameters
    ----------
    model_names : list of str
        Model names, in the order given.
    loo : dict
        ``compute_psis_loo`` output per model name.
    n_observations : int
        Observations shared by every model (excluded outliers of any model
        are dropped from all of them).
    """

    model_names: List[str]
    loo: Dict[str, dict]
    n_observations: int

    def rank(self) -> pd.DataFrame:
        """Models ranked by ``elpd_loo`` (best first).

        ``elpd_diff`` and ``se_diff`` are relative to the best model and use
        the pointwise differences.
        """
        best = max(self.model_names, key=lambda m: self.loo[m]["elpd_loo"])
        best_i = self.loo[best]["elpd_loo_i"]
        n = self.n_observations
        rows = []
        for name in self.model_names:
            result = self.loo[name]
            pointwise = result["elpd_loo_i"]
            diff = pointwise - best_i
            rows.append(
                {
                    "model": name,
                    "elpd_loo": result["elpd_loo"],
                    "se": float(np.sqrt(n * np.var(pointwise))),
                    "p_loo": result["p_loo"],
                    "looic": result["looic"],
                    "elpd_diff": float(diff.sum()),
                    "se_diff": float(np.sqrt(n * np.var(diff))),
                    "n_bad_k": result["n_bad"],
                }
            )
        table = pd.DataFrame(rows).sort_values("elpd_loo", ascending=False)
        return table.reset_index(drop=True)

    def summary(self) -> str:
        """Ranking table followed by each model's Pareto k diagnostics."""
        parts = [self.rank().to_string(index=False)]
        for name in self.model_names:
            parts.append(f"\n[{name}]\n" + psis_loo_summary(self.loo[name]))
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def compare_models(models: Mapping[str, "FittedModel"]) -> ModelComparison:
    """Compare fitted models by PSIS-LOO.

    Parameters
    ----------
    models : mapping of str to FittedModel
        At least two models fitted to the same count table with
        ``FitConfig(enable_loo=True)``.

    Returns
    -------
    ModelComparison

    Raises
    ------
    ValueError
        If fewer than two models are given, a model has no pointwise
        log-likelihoods, or the models were fitted to different counts.

    Examples
    --------
    >>> comparison = compare_models({"type": fit_type, "null": fit_null})
    >>> comparison.rank()[["model", "elpd_loo", "elpd_diff"]]
    """
    names = list(models)
    if len(names) < 2:
        raise ValueError(f"At least two models are required, got {len(names)}")

    reference = models[names[0]].count_table.counts
    observed = np.ones(reference.shape, dtype=bool)
    for name in names:
        fitted = models[name]
        if fitted.pointwise_log_likelihood is None:
            raise ValueError(
                f"Model '{name}' has no pointwise log-likelihoods; refit with "
                "FitConfig(enable_loo=True)"
            )
        if not np.array_equal(fitted.count_table.counts, reference):
            raise ValueError(
                f"Model '{name}' was fitted to different counts than "
                f"'{names[0]}'"
            )
        observed &= ~np.asarray(fitted.outlier_mask)

    loo = {
        name: compute_psis_loo(models[name].pointwise_log_likelihood, observed=observed)
        for name in names
    }
    return ModelComparison(
        model_names=names, loo=loo, n_observations=int(observed.sum())
    )
