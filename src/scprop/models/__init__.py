"""
SCPROP models package.

This package contains the compositional model definition and its
configuration system.
"""

from .config import (
    PriorConfig,
    MCMCConfig,
    FitConfig,
    OutlierConfig,
    HypothesisTestConfig,
    EffectKind,
    SimulationMode,
    OutlierStage,
)

from .compositional import (
    ModelData,
    compositional_model,
    composition_predictor,
    proportion_logits,
    beta_binomial_concentrations,
    identified_sites,
    random_effect_site,
    random_scale_site,
)

__all__ = [
    # Configuration
    "PriorConfig",
    "MCMCConfig",
    "FitConfig",
    "OutlierConfig",
    "HypothesisTestConfig",
    "EffectKind",
    "SimulationMode",
    "OutlierStage",
    # Model
    "ModelData",
    "compositional_model",
    "composition_predictor",
    "proportion_logits",
    "beta_binomial_concentrations",
    "identified_sites",
    "random_effect_site",
    "random_scale_site",
]
