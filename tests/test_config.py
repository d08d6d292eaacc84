"""Tests for the pydantic configuration groups (scprop.models.config)."""

import pytest
from pydantic import ValidationError

from scprop import (
    EffectKind,
    FitConfig,
    HypothesisTestConfig,
    MCMCConfig,
    OutlierConfig,
    OutlierStage,
    PriorConfig,
    SimulationMode,
)

# --------------------------------------------------------------------------
# Defaults
# --------------------------------------------------------------------------


def test_fit_config_defaults():
    config = FitConfig()
    assert not config.bimodal_mean_variability_association
    assert config.cores == 1
    assert not config.enable_loo
    assert not config.raise_on_convergence_failure
    assert isinstance(config.mcmc, MCMCConfig)
    assert isinstance(config.priors, PriorConfig)


def test_hypothesis_defaults():
    config = HypothesisTestConfig()
    assert config.credible_level == 0.95
    assert config.composition_threshold == 0.2
    assert config.confidence == 0.95


def test_outlier_defaults():
    config = OutlierConfig()
    assert config.threshold == 0.01
    assert config.max_passes == 3


# --------------------------------------------------------------------------
# Immutability and validation
# --------------------------------------------------------------------------


def test_configs_are_frozen():
    config = FitConfig()
    with pytest.raises(ValidationError):
        config.cores = 4


def test_unknown_field_rejected():
    with pytest.raises(ValidationError):
        MCMCConfig(n_sample=10)


@pytest.mark.parametrize(
    "factory",
    [
        lambda: MCMCConfig(n_chains=0),
        lambda: MCMCConfig(max_r_hat=1.0),
        lambda: PriorConfig(effect_scale=0.0),
        lambda: PriorConfig(variability_slope=(0.0, -1.0)),
        lambda: PriorConfig(bimodal_weight=(1.0, 0.0)),
        lambda: HypothesisTestConfig(credible_level=1.0),
        lambda: OutlierConfig(threshold=0.0),
        lambda: FitConfig(cores=0),
    ],
)
def test_invalid_values_rejected(factory):
    with pytest.raises(ValidationError):
        factory()


def test_with_updated_mcmc_returns_copy():
    base = FitConfig()
    updated = base.with_updated_mcmc(n_chains=2, seed=7)
    assert updated.mcmc.n_chains == 2
    assert updated.mcmc.seed == 7
    assert base.mcmc.n_chains == 4
    assert updated.priors == base.priors


def test_with_updated_priors_returns_copy():
    base = FitConfig()
    updated = base.with_updated_priors(effect_scale=0.5)
    assert updated.priors.effect_scale == 0.5
    assert base.priors.effect_scale == 1.0


# --------------------------------------------------------------------------
# Enums
# --------------------------------------------------------------------------


def test_effect_kind_prefix():
    assert EffectKind.COMPOSITION.prefix == "c_"
    assert EffectKind("variability").prefix == "v_"


def test_simulation_mode_from_string():
    assert SimulationMode("hyperprior") is SimulationMode.HYPERPRIOR
    with pytest.raises(ValueError):
        SimulationMode("prior")


def test_outlier_terminal_stages():
    assert OutlierStage.CONVERGED.is_terminal
    assert OutlierStage.EXHAUSTED.is_terminal
    assert not OutlierStage.REFIT.is_terminal
