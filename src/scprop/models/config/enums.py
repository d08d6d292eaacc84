"""
Enums and constants for model configuration.

Enums restrict configuration values to a fixed set of choices, so invalid
options are rejected at construction time rather than deep inside inference.
"""

from enum import Enum

# ==============================================================================
# Enums for model configuration
# ==============================================================================


class EffectKind(str, Enum):
    """Which linear predictor an effect belongs to."""

    COMPOSITION = "composition"
    VARIABILITY = "variability"

    @property
    def prefix(self) -> str:
        """Column prefix used in tabular reports (``c_`` or ``v_``)."""
        return "c_" if self is EffectKind.COMPOSITION else "v_"


# ------------------------------------------------------------------------------


class SimulationMode(str, Enum):
    """Which part of a fitted model drives posterior predictive simulation."""

    # Every posterior quantity, including sample-level random effects
    POSTERIOR = "posterior"
    # Group coefficients from the posterior, random effects ignored
    NO_RANDOM_EFFECTS = "no_random_effects"
    # Group coefficients redrawn from the global hyperparameters
    HYPERPRIOR = "hyperprior"


# ------------------------------------------------------------------------------


class OutlierStage(str, Enum):
    """Stages of the outlier detection state machine."""

    INITIAL_FIT = "initial_fit"
    FLAGGING = "flagging"
    REFIT = "refit"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        """Whether no further passes follow this stage."""
        return self in (OutlierStage.CONVERGED, OutlierStage.EXHAUSTED)
