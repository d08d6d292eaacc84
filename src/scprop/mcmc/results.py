"""
Results class for SCPROP MCMC inference.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..core.count_table import CountTable
from ..errors import ConvergenceError
from ..formula.design import DesignSchema
from ..models.compositional import ModelData, random_effect_site
from ..models.config import EffectKind, FitConfig

# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------


def _readonly(array) -> np.ndarray:
    out = np.array(array)
    out.setflags(write=False)
    return out


def _frozen_samples(samples: Mapping[str, np.ndarray]) -> Mapping[str, np.ndarray]:
    return MappingProxyType({k: _readonly(v) for k, v in samples.items()})


# ==============================================================================
# Fitted model
# ==============================================================================


@dataclass(frozen=True, eq=False)
class FittedModel:
    """Immutable posterior of a compositional model fit.

    Re-fitting (for example after flagging outliers) produces a new
    ``FittedModel``; nothing mutates an existing one, so instances can be
    shared freely across threads.

    Attributes
    ----------
    samples : Mapping[str, np.ndarray]
        Posterior draws merged across chains (chain-major order). Key sites:
        ``beta`` ``(draws, P, K)``, ``gamma`` ``(draws, Pv, K)``,
        ``re_<grouping>`` ``(draws, levels, K)`` plus hyperparameters.
    chain_samples : tuple of Mapping[str, np.ndarray]
        The same draws split by chain.
    diagnostics : pd.DataFrame
        Element-wise ``mean``, ``sd``, ``r_hat`` and ``n_eff`` of the
        monitored sites.
    convergence_warnings : tuple of str
        Convergence problems found after sampling.
    convergence_error : ConvergenceError or None
        Set when R-hat or effective sample size failed their thresholds.
    n_divergences : int
        Divergent transitions after warmup, over all chains.
    outlier_mask : np.ndarray of bool, shape ``(n_samples, n_groups)``
        Observations excluded from the likelihood.
    count_table : CountTable
        Data the model was fitted to.
    composition_schema, variability_schema : DesignSchema
        Resolved composition and variability designs.
    model_data : ModelData
        Arrays the model was conditioned on.
    config : FitConfig
        Configuration of the fit.
    pointwise_log_likelihood : np.ndarray or None
        ``(draws, n_samples, n_groups)`` log-likelihoods, retained only when
        ``config.enable_loo``; excluded observations are zero.
    """

    samples: Mapping[str, np.ndarray]
    chain_samples: Tuple[Mapping[str, np.ndarray], ...]
    diagnostics: pd.DataFrame
    convergence_warnings: Tuple[str, ...]
    convergence_error: Optional[ConvergenceError]
    n_divergences: int
    outlier_mask: np.ndarray
    count_table: CountTable
    composition_schema: DesignSchema
    variability_schema: DesignSchema
    model_data: ModelData
    config: FitConfig
    pointwise_log_likelihood: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, "samples", _frozen_samples(self.samples))
        object.__setattr__(
            self,
            "chain_samples",
            tuple(_frozen_samples(c) for c in self.chain_samples),
        )
        object.__setattr__(self, "outlier_mask", _readonly(self.outlier_mask))
        object.__setattr__(self, "convergence_warnings", tuple(self.convergence_warnings))
        if self.pointwise_log_likelihood is not None:
            object.__setattr__(
                self,
                "pointwise_log_likelihood",
                _readonly(self.pointwise_log_likelihood),
            )

    # --------------------------------------------------------------------------
    # Shape and labels
    # --------------------------------------------------------------------------

    @property
    def n_draws(self) -> int:
        """Number of merged posterior draws."""
        return int(self.samples["beta"].shape[0])

    @property
    def n_chains(self) -> int:
        return len(self.chain_samples)

    @property
    def groups(self) -> tuple:
        """Cell-group labels, in column order."""
        return self.count_table.groups

    @property
    def sample_ids(self) -> tuple:
        """Sample labels, in row order."""
        return self.count_table.samples

    @property
    def is_degraded(self) -> bool:
        """Whether convergence diagnostics failed their thresholds."""
        return self.convergence_error is not None

    @property
    def has_variability_effects(self) -> bool:
        """Whether the variability formula has covariates beyond the intercept."""
        return self.variability_schema.n_columns > 1

    @property
    def n_outliers(self) -> np.ndarray:
        """Excluded observations per cell group, shape ``(n_groups,)``."""
        return self.outlier_mask.sum(axis=0)

    # --------------------------------------------------------------------------
    # Coefficients
    # --------------------------------------------------------------------------

    def columns(self, kind: EffectKind) -> Tuple[str, ...]:
        """Design column names of the composition or variability predictor."""
        kind = EffectKind(kind)
        if kind is EffectKind.COMPOSITION:
            return self.composition_schema.column_names
        return self.variability_schema.column_names

    def coefficients(self, kind: EffectKind) -> np.ndarray:
        """Posterior coefficient draws, shape ``(draws, columns, n_groups)``."""
        kind = EffectKind(kind)
        site = "beta" if kind is EffectKind.COMPOSITION else "gamma"
        return self.samples[site]

    def random_effects(self) -> Dict[str, np.ndarray]:
        """Posterior random intercepts per grouping ``(draws, levels, K)``."""
        return {
            name: self.samples[random_effect_site(name)]
            for name in self.model_data.re_names
        }

    def coefficient_summary(self, kind: EffectKind = EffectKind.COMPOSITION) -> pd.DataFrame:
        """Posterior mean and standard deviation of every coefficient."""
        draws = self.coefficients(kind)
        index = pd.MultiIndex.from_product(
            [self.columns(kind), list(self.groups)], names=["column", "group"]
        )
        return pd.DataFrame(
            {
                "mean": draws.mean(axis=0).ravel(),
                "sd": draws.std(axis=0).ravel(),
            },
            index=index,
        )

    # --------------------------------------------------------------------------
    # Model comparison
    # --------------------------------------------------------------------------

    def loo(self) -> dict:
        """PSIS-LOO statistics from the retained pointwise log-likelihoods.

        Excluded observations are dropped.

        Raises
        ------
        ValueError
            If the model was fitted without ``enable_loo``.
        """
        from ..mc._psis_loo import compute_psis_loo

        if self.pointwise_log_likelihood is None:
            raise ValueError(
                "Pointwise log-likelihoods were not retained; refit with "
                "FitConfig(enable_loo=True)"
            )
        return compute_psis_loo(
            self.pointwise_log_likelihood, observed=~self.outlier_mask
        )

    # --------------------------------------------------------------------------

    def __repr__(self) -> str:
        status = "degraded" if self.is_degraded else "converged"
        return (
            f"FittedModel(samples={self.count_table.n_samples}, "
            f"groups={self.count_table.n_groups}, draws={self.n_draws}, "
            f"composition='{self.composition_schema.formula}', "
            f"variability='{self.variability_schema.formula}', {status})"
        )
