"""
Configuration system for SCPROP models.

Uses Pydantic for validation and enums for type safety. All configs are
immutable.
"""

from .enums import EffectKind, SimulationMode, OutlierStage
from .groups import (
    PriorConfig,
    MCMCConfig,
    FitConfig,
    OutlierConfig,
    HypothesisTestConfig,
)

__all__ = [
    # Config types
    "FitConfig",
    # Parameter groups
    "PriorConfig",
    "MCMCConfig",
    "OutlierConfig",
    "HypothesisTestConfig",
    # Enums
    "EffectKind",
    "SimulationMode",
    "OutlierStage",
]
