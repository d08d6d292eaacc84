"""
Parameter group definitions for model configuration using Pydantic for type
safety and validation.

Each group collects a logically related set of options (priors, sampler
settings, outlier detection, hypothesis testing) that compose the overall fit
configuration. All groups are frozen and forbid unknown fields, so a
configuration cannot be mutated after construction or silently carry a typo.
"""

from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ==============================================================================
# Prior Configuration Group
# ==============================================================================


class PriorConfig(BaseModel):
    """Prior parameters with automatic validation.

    Location/scale pairs are ``(loc, scale)`` of a Normal distribution; single
    floats are scales of HalfNormal distributions.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    intercept_scale: float = Field(
        3.0, gt=0, description="HalfNormal scale of baseline-column spread"
    )
    effect_scale: float = Field(
        1.0, gt=0, description="HalfNormal scale of composition-slope shrinkage"
    )
    random_effect_scale: float = Field(
        1.0, gt=0, description="HalfNormal scale of random-intercept spread"
    )
    variability_intercept: Tuple[float, float] = Field(
        (5.0, 2.0),
        description="Normal prior on the mean-variability association intercept",
    )
    variability_slope: Tuple[float, float] = Field(
        (0.0, 0.6),
        description="Normal prior on the mean-variability association slope",
    )
    variability_sd: float = Field(
        1.0, gt=0, description="HalfNormal scale of residual log-concentration"
    )
    variability_effect_scale: float = Field(
        1.0, gt=0, description="HalfNormal scale of variability-slope shrinkage"
    )
    bimodal_gap_scale: float = Field(
        2.0,
        gt=0,
        description="HalfNormal scale of the gap between the two association "
        "intercepts of the bimodal prior",
    )
    bimodal_weight: Tuple[float, float] = Field(
        (2.0, 2.0), description="Beta prior on the bimodal mixture weight"
    )

    # --------------------------------------------------------------------------
    # Validation Methods
    # --------------------------------------------------------------------------

    @field_validator("variability_intercept", "variability_slope")
    @classmethod
    def validate_normal_params(cls, v: Tuple[float, float]) -> Tuple[float, float]:
        """Validate Normal parameters (location free, scale positive)."""
        if v[1] <= 0:
            raise ValueError(f"Normal scale parameter must be positive, got {v}")
        return v

    @field_validator("bimodal_weight")
    @classmethod
    def validate_beta_params(cls, v: Tuple[float, float]) -> Tuple[float, float]:
        """Validate that Beta parameters are positive."""
        if any(x <= 0 for x in v):
            raise ValueError(f"Beta parameters must be positive, got {v}")
        return v


# ==============================================================================
# MCMC Configuration Group
# ==============================================================================


class MCMCConfig(BaseModel):
    """Configuration for Markov Chain Monte Carlo inference."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    n_samples: int = Field(1_000, gt=0, description="Samples kept per chain")
    n_warmup: int = Field(500, gt=0, description="Warmup iterations per chain")
    n_chains: int = Field(4, gt=0, description="Number of independent chains")
    seed: int = Field(42, ge=0, description="Seed of the chain PRNG keys")
    max_r_hat: float = Field(
        1.05, gt=1.0, description="Largest acceptable split R-hat"
    )
    min_n_eff: float = Field(
        50.0, ge=0, description="Smallest acceptable effective sample size"
    )
    mcmc_kwargs: Optional[Dict[str, Any]] = Field(
        None, description="Additional keyword arguments for the NUTS kernel"
    )


# ==============================================================================
# Fit Configuration Group
# ==============================================================================


class FitConfig(BaseModel):
    """Complete configuration of a model fit.

    Parameters
    ----------
    bimodal_mean_variability_association : bool
        If True, the variability intercept of each cell group follows a
        two-component mixture around two mean-variability regression lines;
        otherwise a single regression line is used.
    cores : int
        Maximum number of chains executed concurrently.
    enable_loo : bool
        Retain per-observation pointwise log-likelihoods for leave-one-out
        model comparison.
    mcmc : MCMCConfig
        Sampler settings.
    priors : PriorConfig
        Prior hyperparameters.
    raise_on_convergence_failure : bool
        Raise ``ConvergenceError`` instead of attaching it to the fitted
        model as a warning.
    verbose : bool
        Print progress messages.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    bimodal_mean_variability_association: bool = Field(
        False, description="Two-component mean-variability association prior"
    )
    cores: int = Field(1, gt=0, description="Chains executed in parallel")
    enable_loo: bool = Field(
        False, description="Retain pointwise log-likelihoods"
    )
    mcmc: MCMCConfig = Field(default_factory=MCMCConfig)
    priors: PriorConfig = Field(default_factory=PriorConfig)
    raise_on_convergence_failure: bool = Field(
        False, description="Raise instead of warn on convergence failure"
    )
    verbose: bool = Field(False, description="Print progress messages")

    # --------------------------------------------------------------------------

    def with_updated_mcmc(self, **mcmc) -> "FitConfig":
        """Create a new config with updated sampler settings."""
        return self.model_copy(update={"mcmc": self.mcmc.model_copy(update=mcmc)})

    # --------------------------------------------------------------------------

    def with_updated_priors(self, **priors) -> "FitConfig":
        """Create a new config with updated priors (immutable pattern)."""
        return self.model_copy(
            update={"priors": self.priors.model_copy(update=priors)}
        )


# ==============================================================================
# Outlier Configuration Group
# ==============================================================================


class OutlierConfig(BaseModel):
    """Configuration for posterior-predictive outlier detection."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    threshold: float = Field(
        0.01,
        gt=0,
        lt=1,
        description="Two-sided posterior predictive tail probability below "
        "which an observation is flagged",
    )
    max_passes: int = Field(3, gt=0, description="Maximum flag/refit passes")
    n_predictive_draws: int = Field(
        1_000, gt=0, description="Posterior draws used for the predictive check"
    )
    seed: int = Field(0, ge=0, description="Seed of the predictive draws")


# ==============================================================================
# Hypothesis Test Configuration Group
# ==============================================================================


class HypothesisTestConfig(BaseModel):
    """Configuration for effect estimation and testing."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    credible_level: float = Field(
        0.95, gt=0, lt=1, description="Mass of the equal-tailed interval"
    )
    composition_threshold: float = Field(
        0.2, ge=0, description="Minimal composition effect (logit fold change)"
    )
    variability_threshold: float = Field(
        0.2, ge=0, description="Minimal variability effect (log fold change)"
    )
    confidence: float = Field(
        0.95,
        gt=0,
        lt=1,
        description="Probability above which an effect is called significant",
    )
